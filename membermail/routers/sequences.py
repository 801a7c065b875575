"""Sequences router — JSON API for automation sequences and their steps."""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from membermail.container import Services, get_services
from membermail.errors import ConflictError, NotFoundError, ValidationError
from membermail.services import sequences as sequence_admin
from membermail.services import steps as step_admin
from membermail.services.events import supported_events

router = APIRouter(prefix="/automations")

_STATUS_FOR = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
}


def _http_error(e: Exception) -> HTTPException:
    for exc_type, status in _STATUS_FOR.items():
        if isinstance(e, exc_type):
            return HTTPException(status_code=status, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="JSON body must be an object")
    return body


@router.get("/events")
async def list_events():
    """Trigger events a sequence can subscribe to."""
    return {"events": supported_events()}


@router.get("/sequences")
async def list_sequences(
    company_id: str = Query(..., alias="companyId"),
    services: Services = Depends(get_services),
):
    return {"sequences": sequence_admin.list_sequences(services.store, company_id)}


@router.post("/sequences", status_code=201)
async def create_sequence(request: Request, services: Services = Depends(get_services)):
    body = await _json_body(request)
    try:
        sequence = sequence_admin.create_sequence(
            services.store,
            company_id=body.get("companyId"),
            name=body.get("name"),
            trigger_event=body.get("triggerEvent"),
            description=body.get("description"),
            timezone=body.get("timezone"),
        )
    except (ValidationError, NotFoundError, ConflictError) as e:
        raise _http_error(e)
    return {"sequence": sequence}


@router.get("/sequences/{sequence_id}")
async def get_sequence(sequence_id: int, services: Services = Depends(get_services)):
    try:
        return {"sequence": sequence_admin.get_sequence(services.store, sequence_id)}
    except NotFoundError as e:
        raise _http_error(e)


@router.patch("/sequences/{sequence_id}")
async def update_sequence(sequence_id: int, request: Request,
                          services: Services = Depends(get_services)):
    body = await _json_body(request)
    try:
        return {"sequence": sequence_admin.update_sequence(services.store, sequence_id, body)}
    except (ValidationError, NotFoundError, ConflictError) as e:
        raise _http_error(e)


@router.post("/sequences/{sequence_id}/steps", status_code=201)
async def create_step(sequence_id: int, request: Request,
                      services: Services = Depends(get_services)):
    body = await _json_body(request)
    try:
        return {"step": step_admin.create_step(services.store, sequence_id, body)}
    except (ValidationError, NotFoundError, ConflictError) as e:
        raise _http_error(e)


@router.patch("/sequences/{sequence_id}/steps/{step_id}")
async def update_step(sequence_id: int, step_id: int, request: Request,
                      services: Services = Depends(get_services)):
    body = await _json_body(request)
    try:
        return {"step": step_admin.update_step(services.store, sequence_id, step_id, body)}
    except (ValidationError, NotFoundError, ConflictError) as e:
        raise _http_error(e)


@router.delete("/sequences/{sequence_id}/steps/{step_id}", status_code=204)
async def delete_step(sequence_id: int, step_id: int,
                      services: Services = Depends(get_services)):
    try:
        step_admin.delete_step(services.store, sequence_id, step_id)
    except NotFoundError as e:
        raise _http_error(e)
    return Response(status_code=204)
