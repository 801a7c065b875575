"""Step administration — create, patch and delete the steps of a sequence.

Positions are append-only: a new step goes after the current maximum, and
deleting a step leaves a gap rather than renumbering the survivors.
"""

import logging

from postgrest.exceptions import APIError

from membermail.errors import ConflictError, NotFoundError, ValidationError
from membermail.services.status import attach_campaign
from membermail.services.step_scheduler import DELAY_UNITS
from membermail.supabase_client import SupabaseStore, is_unique_violation, to_iso, utc_now

logger = logging.getLogger(__name__)

STEPS_TABLE = "automation_steps"

# Concurrent appends can race for the same next position.
_APPEND_ATTEMPTS = 3


def _parse_int(value, field: str, minimum: int) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, str):
        value = value.strip()
        if not value.lstrip("-").isdigit():
            raise ValidationError(f"{field} must be an integer")
        value = int(value)
    if not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value < minimum:
        qualifier = "non-negative" if minimum == 0 else "positive"
        raise ValidationError(f"{field} must be a {qualifier} integer")
    return value


def _parse_unit(value) -> str:
    if value not in DELAY_UNITS:
        raise ValidationError(f"delayUnit must be one of: {', '.join(DELAY_UNITS)}")
    return value


def _pick(body: dict, *keys):
    for key in keys:
        if key in body:
            return True, body[key]
    return False, None


def _get_sequence(store: SupabaseStore, sequence_id) -> dict:
    sequence = store.select_one("automation_sequences", match={"id": sequence_id})
    if not sequence:
        raise NotFoundError(f"Sequence {sequence_id} not found")
    return sequence


def next_position(store: SupabaseStore, sequence_id) -> int:
    last = store.select(STEPS_TABLE, columns="position", match={"sequence_id": sequence_id},
                        order="position", order_desc=True, limit=1)
    return (last[0]["position"] if last else 0) + 1


def create_step(store: SupabaseStore, sequence_id, body: dict) -> dict:
    """Append a step and attach its campaign to the sequence.

    ``body`` keys: campaignId (required), delayValue (default 0), delayUnit
    (default minutes), metadata (optional object).
    """
    sequence = _get_sequence(store, sequence_id)

    present, campaign_id = _pick(body, "campaignId", "campaign_id")
    if not present or campaign_id is None:
        raise ValidationError("campaignId is required")
    campaign_id = _parse_int(campaign_id, "campaignId", 1)

    present, delay_value = _pick(body, "delayValue", "delay_value")
    delay_value = _parse_int(delay_value, "delayValue", 0) if present else 0

    present, delay_unit = _pick(body, "delayUnit", "delay_unit")
    delay_unit = _parse_unit(delay_unit) if present else "minutes"

    metadata = body.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")

    if not store.select_one("campaigns", columns="id", match={"id": campaign_id}):
        raise NotFoundError(f"Campaign {campaign_id} not found")

    step = None
    for _ in range(_APPEND_ATTEMPTS):
        now = to_iso(utc_now())
        step = store.insert_unique(STEPS_TABLE, {
            "sequence_id": sequence["id"],
            "campaign_id": campaign_id,
            "position": next_position(store, sequence["id"]),
            "delay_value": delay_value,
            "delay_unit": delay_unit,
            "metadata": metadata,
            "created_at": now,
            "updated_at": now,
        })
        if step:
            break
    if not step:
        raise ConflictError("Could not allocate a step position, try again")

    attach_campaign(store, campaign_id, sequence)
    logger.info("Added step %s (position %s) to sequence %s",
                step["id"], step["position"], sequence["id"])
    return step


def update_step(store: SupabaseStore, sequence_id, step_id, body: dict) -> dict:
    """Patch position, delayValue and/or delayUnit in place.

    Unknown keys and out-of-range values are dropped; the patch is rejected
    only when nothing usable is left.
    """
    step = store.select_one(STEPS_TABLE, match={"id": step_id, "sequence_id": sequence_id})
    if not step:
        raise NotFoundError(f"Step {step_id} not found in sequence {sequence_id}")

    updates = {}
    rejected = []
    for column, keys, parse in (
        ("position", ("position",), lambda v: _parse_int(v, "position", 1)),
        ("delay_value", ("delayValue", "delay_value"), lambda v: _parse_int(v, "delayValue", 0)),
        ("delay_unit", ("delayUnit", "delay_unit"), _parse_unit),
    ):
        present, value = _pick(body, *keys)
        if not present:
            continue
        try:
            updates[column] = parse(value)
        except ValidationError as e:
            rejected.append(str(e))

    if not updates:
        if rejected:
            raise ValidationError("; ".join(rejected))
        raise ValidationError("No fields to update")
    if rejected:
        logger.info("Step %s: ignoring invalid fields (%s)", step_id, "; ".join(rejected))

    target = updates.get("position")
    if target is not None and target != step["position"]:
        taken = store.select_one(STEPS_TABLE, columns="id",
                                 match={"sequence_id": sequence_id, "position": target})
        if taken:
            raise ConflictError(f"Position {target} is already used by step {taken['id']}")

    updates["updated_at"] = to_iso(utc_now())
    try:
        rows = store.update(STEPS_TABLE, updates, {"id": step_id, "sequence_id": sequence_id})
    except APIError as e:
        if is_unique_violation(e):
            raise ConflictError(f"Position {target} is already in use")
        raise
    if not rows:
        raise NotFoundError(f"Step {step_id} not found in sequence {sequence_id}")
    return rows[0]


def delete_step(store: SupabaseStore, sequence_id, step_id) -> dict:
    """Hard delete. Remaining positions are left as they are."""
    removed = store.delete(STEPS_TABLE, {"id": step_id, "sequence_id": sequence_id})
    if not removed:
        raise NotFoundError(f"Step {step_id} not found in sequence {sequence_id}")
    logger.info("Deleted step %s from sequence %s", step_id, sequence_id)
    return removed[0]
