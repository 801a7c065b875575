"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from membermail.container import Services
from membermail.routers import dispatch, sequences, unsubscribe, webhooks

logger = logging.getLogger(__name__)


def _lifespan(services: Services):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the trigger worker and the dispatcher timer; stop both on shutdown."""
        services.triggers.start()

        scheduler = None
        try:
            from membermail.scheduler import build_scheduler
            scheduler = build_scheduler(
                services.dispatcher, services.settings["dispatch_interval_seconds"],
            )
            scheduler.start()
            logger.info("Scheduler started — dispatching step runs every %ss",
                        services.settings["dispatch_interval_seconds"])
        except Exception as e:
            logger.warning("Scheduler failed to start: %s", e)

        yield

        if scheduler is not None:
            scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        services.triggers.stop()

    return lifespan


def create_app(services: Services) -> FastAPI:
    app = FastAPI(
        title="MemberMail Automations",
        description="Event-triggered email sequences for Whop communities.",
        version="1.0.0",
        lifespan=_lifespan(services),
    )
    app.state.services = services

    @app.get("/health", include_in_schema=False)
    async def health():
        return {"status": "ok"}

    for r in [webhooks, sequences, dispatch, unsubscribe]:
        app.include_router(r.router)

    return app
