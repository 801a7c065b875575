"""Service wiring — builds every collaborator once and hands it to the app."""

from dataclasses import dataclass, field

from fastapi import Request

from membermail import config
from membermail.services.dispatcher import Dispatcher, RetryPolicy
from membermail.services.mailer import ResendMailSender
from membermail.services.members import SupabaseMemberDirectory
from membermail.services.triggers import TriggerPipeline, TriggerQueue
from membermail.supabase_client import SupabaseStore, create_store, utc_now


@dataclass
class Services:
    store: SupabaseStore
    members: object
    sender: object
    dispatcher: Dispatcher
    pipeline: TriggerPipeline
    triggers: TriggerQueue
    clock: object = utc_now
    settings: dict = field(default_factory=dict)


def default_settings() -> dict:
    return {
        "webhook_secret": config.WHOP_WEBHOOK_SECRET,
        "webhook_max_skew_seconds": config.WEBHOOK_MAX_SKEW_SECONDS,
        "cron_secret": config.AUTOMATION_CRON_SECRET,
        "unsubscribe_secret": config.UNSUBSCRIBE_SECRET,
        "dispatch_interval_seconds": config.DISPATCH_INTERVAL_SECONDS,
    }


def build_services(store: SupabaseStore, sender=None, members=None, clock=utc_now,
                   settings: dict | None = None) -> Services:
    """Assemble the engine around an existing store.

    ``sender`` and ``members`` default to the Resend and Supabase
    implementations; tests pass fakes.
    """
    settings = {**default_settings(), **(settings or {})}
    members = members or SupabaseMemberDirectory(store)
    sender = sender or ResendMailSender(
        api_key=config.RESEND_API_KEY,
        from_address=config.EMAIL_FROM,
        public_url=config.PUBLIC_URL,
        unsubscribe_secret=settings["unsubscribe_secret"],
    )
    dispatcher = Dispatcher(
        store, sender, members, clock=clock,
        retry=RetryPolicy(
            max_attempts=config.MAX_SEND_ATTEMPTS,
            base_seconds=config.RETRY_BASE_SECONDS,
            max_seconds=config.RETRY_MAX_SECONDS,
        ),
        batch_size=config.DISPATCH_BATCH_SIZE,
    )
    pipeline = TriggerPipeline(store, clock=clock)
    return Services(
        store=store,
        members=members,
        sender=sender,
        dispatcher=dispatcher,
        pipeline=pipeline,
        triggers=TriggerQueue(pipeline, maxsize=config.TRIGGER_QUEUE_SIZE),
        clock=clock,
        settings=settings,
    )


def build_default_services() -> Services:
    """Production wiring from environment configuration."""
    return build_services(create_store(config.SUPABASE_URL, config.SUPABASE_SERVICE_KEY))


def get_services(request: Request) -> Services:
    """FastAPI dependency: the services attached to the running app."""
    return request.app.state.services
