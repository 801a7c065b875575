"""Manual / cron-driven dispatcher pass."""

import asyncio
import hmac

from fastapi import APIRouter, Depends, Header, HTTPException

from membermail.container import Services, get_services

router = APIRouter(prefix="/automations")


@router.post("/process")
async def process_now(
    x_cron_secret: str = Header(""),
    services: Services = Depends(get_services),
):
    """Run one dispatcher pass immediately and report what it did."""
    expected = services.settings["cron_secret"]
    if expected and not hmac.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid cron secret")

    result = await asyncio.to_thread(services.dispatcher.run_pass)
    return {"ok": True, **result}
