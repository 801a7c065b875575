"""Step scheduler — turns a sequence's steps into per-member step runs.

Every step's delay is measured from the enrollment time, not from the
previous step. A step at "1 day" fires one day after enrollment whatever
the earlier steps say, so editing one step's delay never shifts another.
"""

import logging
from datetime import datetime, timedelta

from membermail.services.status import StepRunStatus
from membermail.supabase_client import SupabaseStore, parse_iso, to_iso

logger = logging.getLogger(__name__)

DELAY_UNIT_SECONDS = {
    "minutes": 60,
    "hours": 60 * 60,
    "days": 24 * 60 * 60,
}
DELAY_UNITS = tuple(DELAY_UNIT_SECONDS)

STEP_RUNS_TABLE = "automation_step_runs"
STEP_RUN_KEY = "step_id,member_id"


def to_seconds(delay_value: int, delay_unit: str) -> int:
    """Offset in seconds for a step delay. Raises ValueError on bad input."""
    if delay_unit not in DELAY_UNIT_SECONDS:
        raise ValueError(f"Unknown delay unit: {delay_unit!r}")
    if isinstance(delay_value, bool) or not isinstance(delay_value, int) or delay_value < 0:
        raise ValueError(f"Delay must be a non-negative integer, got {delay_value!r}")
    return delay_value * DELAY_UNIT_SECONDS[delay_unit]


def ordered_steps(steps: list[dict]) -> list[dict]:
    return sorted(steps, key=lambda s: s["position"])


def compute_schedule(enrolled_at: datetime, steps: list[dict]) -> list[tuple[dict, datetime]]:
    """(step, due time) pairs in ascending position order."""
    plan = []
    for step in ordered_steps(steps):
        offset = to_seconds(step.get("delay_value") or 0, step.get("delay_unit") or "minutes")
        plan.append((step, enrolled_at + timedelta(seconds=offset)))
    return plan


def schedule(store: SupabaseStore, enrollment: dict, steps: list[dict]) -> list[dict]:
    """Write one pending run per (step, member) for a fresh enrollment.

    The write is an upsert that ignores rows already present, so a
    redelivered event cannot schedule a step twice for the same member.
    Returns the runs this call actually created.
    """
    enrolled_at = parse_iso(enrollment["enrolled_at"])
    rows = [
        {
            "enrollment_id": enrollment["id"],
            "sequence_id": enrollment["sequence_id"],
            "step_id": step["id"],
            "campaign_id": step["campaign_id"],
            "member_id": enrollment["member_id"],
            "position": step["position"],
            "scheduled_at": to_iso(due),
            "status": StepRunStatus.PENDING.value,
            "attempt_count": 0,
            "executed_at": None,
        }
        for step, due in compute_schedule(enrolled_at, steps)
    ]

    created = store.upsert_ignore_duplicates(STEP_RUNS_TABLE, rows, on_conflict=STEP_RUN_KEY)
    if created:
        logger.info(
            "Scheduled %d step run(s) for member %s in sequence %s",
            len(created), enrollment["member_id"], enrollment["sequence_id"],
        )
    return created


def schedule_campaign(store: SupabaseStore, campaign: dict, member_id: str,
                      now: datetime) -> dict | None:
    """Write the single pending run of a standalone automation campaign.

    The run has no enrollment, sequence or step. Its delay comes from the
    campaign's own ``trigger_delay_value``/``trigger_delay_unit``. A partial
    unique index allows one open run per (campaign, member), so a repeated
    trigger while a run is still pending returns None.
    """
    try:
        offset = to_seconds(campaign.get("trigger_delay_value") or 0,
                            campaign.get("trigger_delay_unit") or "minutes")
    except ValueError as e:
        logger.warning("Campaign %s has an invalid trigger delay: %s", campaign["id"], e)
        return None

    run = store.insert_unique(STEP_RUNS_TABLE, {
        "enrollment_id": None,
        "sequence_id": None,
        "step_id": None,
        "campaign_id": campaign["id"],
        "member_id": member_id,
        "position": 0,
        "scheduled_at": to_iso(now + timedelta(seconds=offset)),
        "status": StepRunStatus.PENDING.value,
        "attempt_count": 0,
        "executed_at": None,
    })
    if run is None:
        logger.debug("Member %s already has an open run of campaign %s", member_id, campaign["id"])
        return None
    logger.info("Scheduled campaign %s for member %s at %s",
                campaign["id"], member_id, run["scheduled_at"])
    return run
