"""Sequence administration — create, read and update automation sequences."""

import logging

from membermail.errors import NotFoundError, ValidationError
from membermail.services.events import event_label, normalize
from membermail.services.status import SequenceStatus, change_sequence_status
from membermail.supabase_client import SupabaseStore, to_iso, utc_now

logger = logging.getLogger(__name__)

SEQUENCES_TABLE = "automation_sequences"


def _hour(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 23:
        raise ValidationError(f"{field} must be an hour between 0 and 23")
    return value


def create_sequence(store: SupabaseStore, company_id: str, name: str, trigger_event: str,
                    description: str | None = None, timezone: str | None = None) -> dict:
    """Create a draft sequence. The trigger is stored as its canonical code."""
    if not company_id or not isinstance(company_id, str):
        raise ValidationError("companyId is required")
    if not name or not isinstance(name, str) or not name.strip():
        raise ValidationError("name is required")
    event = normalize(trigger_event)
    if event is None:
        raise ValidationError("Unsupported trigger event")

    now = to_iso(utc_now())
    sequence = store.insert(SEQUENCES_TABLE, {
        "company_id": company_id,
        "name": name.strip(),
        "description": description,
        "trigger_event": event.value,
        "trigger_label": event_label(event),
        "status": SequenceStatus.DRAFT.value,
        "timezone": timezone or "UTC",
        "quiet_hours_enabled": False,
        "quiet_hours_start": None,
        "quiet_hours_end": None,
        "created_at": now,
        "updated_at": now,
    })
    logger.info("Created sequence %s (%s) for company %s", sequence.get("id"), event.value, company_id)
    return sequence


def list_sequences(store: SupabaseStore, company_id: str) -> list[dict]:
    return store.select(SEQUENCES_TABLE, match={"company_id": company_id},
                        order="created_at", order_desc=True)


def get_sequence(store: SupabaseStore, sequence_id) -> dict:
    """Sequence row plus its steps in position order."""
    sequence = store.select_one(SEQUENCES_TABLE, match={"id": sequence_id})
    if not sequence:
        raise NotFoundError(f"Sequence {sequence_id} not found")
    steps = store.select("automation_steps", match={"sequence_id": sequence_id}, order="position")
    return {**sequence, "steps": steps}


def update_sequence(store: SupabaseStore, sequence_id, body: dict) -> dict:
    """Patch descriptive fields, quiet hours, and status.

    Status changes go through the sequence status machine. The trigger is
    fixed at creation.
    """
    if "triggerEvent" in body or "trigger_event" in body:
        raise ValidationError("triggerEvent cannot be changed after creation")

    updates = {}
    if "name" in body:
        if not isinstance(body["name"], str) or not body["name"].strip():
            raise ValidationError("name must be a non-empty string")
        updates["name"] = body["name"].strip()
    if "description" in body:
        updates["description"] = str(body["description"]) if body["description"] else None
    if "timezone" in body:
        if not isinstance(body["timezone"], str) or not body["timezone"]:
            raise ValidationError("timezone must be an IANA timezone name")
        updates["timezone"] = body["timezone"]
    if "quietHoursEnabled" in body:
        updates["quiet_hours_enabled"] = bool(body["quietHoursEnabled"])
    if "quietHoursStart" in body:
        updates["quiet_hours_start"] = _hour(body["quietHoursStart"], "quietHoursStart")
    if "quietHoursEnd" in body:
        updates["quiet_hours_end"] = _hour(body["quietHoursEnd"], "quietHoursEnd")

    status = body.get("status")
    if not updates and status is None:
        raise ValidationError("No fields to update")

    if not store.select_one(SEQUENCES_TABLE, columns="id", match={"id": sequence_id}):
        raise NotFoundError(f"Sequence {sequence_id} not found")

    if status is not None:
        change_sequence_status(store, sequence_id, status)
    if updates:
        updates["updated_at"] = to_iso(utc_now())
        store.update(SEQUENCES_TABLE, updates, {"id": sequence_id})
    return get_sequence(store, sequence_id)
