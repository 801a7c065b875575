"""Webhooks — receives Whop platform events and queues them for automation."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from membermail.container import Services, get_services
from membermail.errors import SignatureError
from membermail.services.context import extract_context
from membermail.services.signatures import SIGNATURE_HEADER, lookup_secret, verify_signature
from membermail.services.triggers import TriggerEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks")


@router.post("/whop")
async def whop_webhook(request: Request, services: Services = Depends(get_services)):
    """Verify a Whop delivery, queue it, and acknowledge at once.

    Everything after the signature check happens on the trigger worker;
    its outcome never changes this response, so the platform has no reason
    to redeliver.
    """
    raw_body = (await request.body()).decode("utf-8", errors="replace")
    try:
        body = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")

    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    company_id = extract_context(data).company_id

    secret = lookup_secret(services.store, company_id, services.settings["webhook_secret"])
    if not secret:
        logger.warning("Webhook for unknown company %r", company_id)
        raise HTTPException(status_code=401, detail="Unknown company")

    try:
        verify_signature(
            raw_body,
            request.headers.get(SIGNATURE_HEADER),
            secret,
            max_skew_seconds=services.settings["webhook_max_skew_seconds"],
        )
    except SignatureError as e:
        raise HTTPException(status_code=401, detail=f"Invalid signature: {e}")

    action = body.get("action")
    services.triggers.enqueue(TriggerEvent(
        raw_event=action if isinstance(action, str) else "",
        payload=data,
        company_id=company_id,
    ))
    return {"status": "ok"}
