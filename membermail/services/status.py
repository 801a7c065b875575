"""Status machines for sequences, step runs and campaign automation attachment."""

import logging
from enum import Enum

from membermail.errors import ConflictError, NotFoundError, ValidationError
from membermail.supabase_client import SupabaseStore, to_iso, utc_now

logger = logging.getLogger(__name__)


class SequenceStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class StepRunStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


SEQUENCE_TRANSITIONS: dict[SequenceStatus, frozenset] = {
    SequenceStatus.DRAFT: frozenset({SequenceStatus.ACTIVE}),
    SequenceStatus.ACTIVE: frozenset({SequenceStatus.PAUSED}),
    SequenceStatus.PAUSED: frozenset({SequenceStatus.ACTIVE}),
}

# pending -> sending is the claim; sending -> pending is a retry or deferral.
STEP_RUN_TRANSITIONS: dict[StepRunStatus, frozenset] = {
    StepRunStatus.PENDING: frozenset({StepRunStatus.SENDING}),
    StepRunStatus.SENDING: frozenset({
        StepRunStatus.SENT,
        StepRunStatus.FAILED,
        StepRunStatus.PENDING,
        StepRunStatus.SKIPPED,
    }),
    StepRunStatus.SENT: frozenset(),
    StepRunStatus.FAILED: frozenset(),
    StepRunStatus.SKIPPED: frozenset(),
}

TERMINAL_STEP_RUN_STATUSES = frozenset({
    StepRunStatus.SENT, StepRunStatus.FAILED, StepRunStatus.SKIPPED,
})


def can_transition_sequence(current: str, target: str) -> bool:
    try:
        return SequenceStatus(target) in SEQUENCE_TRANSITIONS[SequenceStatus(current)]
    except ValueError:
        return False


def can_transition_step_run(current: str, target: str) -> bool:
    try:
        return StepRunStatus(target) in STEP_RUN_TRANSITIONS[StepRunStatus(current)]
    except ValueError:
        return False


def accepts_enrollments(sequence: dict) -> bool:
    """Only active sequences take new entrants.

    Pausing stops new enrollments; runs already scheduled for earlier
    entrants keep firing.
    """
    return sequence.get("status") == SequenceStatus.ACTIVE.value


def change_sequence_status(store: SupabaseStore, sequence_id, target: str) -> dict:
    """Move a sequence along draft -> active <-> paused.

    The write is guarded on the status we validated against, so two racing
    operators cannot both apply a transition from the same starting state.
    """
    try:
        target_status = SequenceStatus(target)
    except ValueError:
        raise ValidationError(f"status must be one of: {', '.join(s.value for s in SequenceStatus)}")

    sequence = store.select_one("automation_sequences", match={"id": sequence_id})
    if not sequence:
        raise NotFoundError(f"Sequence {sequence_id} not found")

    current = sequence["status"]
    if current == target_status.value:
        return sequence
    if not can_transition_sequence(current, target_status.value):
        raise ConflictError(f"Cannot move sequence from {current} to {target_status.value}")

    updated = store.conditional_update(
        "automation_sequences",
        {"status": target_status.value, "updated_at": to_iso(utc_now())},
        {"id": sequence_id, "status": current},
    )
    if not updated:
        raise ConflictError(f"Sequence {sequence_id} changed status concurrently")

    store.log_action(
        "sequence_status_changed", "sequence", str(sequence_id),
        f"{current} -> {target_status.value}",
    )
    logger.info("Sequence %s: %s -> %s", sequence_id, current, target_status.value)
    return updated


# ---------------------------------------------------------------------------
# Campaign attachment
# ---------------------------------------------------------------------------

def bind_campaign(store: SupabaseStore, campaign_id, sequence_id) -> dict:
    """Put a campaign into automation mode, owned by ``sequence_id``."""
    rows = store.update("campaigns", {
        "send_mode": "automation",
        "automation_sequence_id": sequence_id,
    }, {"id": campaign_id})
    if not rows:
        raise NotFoundError(f"Campaign {campaign_id} not found")
    return rows[0]


def mirror_sequence_status(store: SupabaseStore, campaign_id, sequence: dict) -> dict:
    """Copy the sequence's status onto the campaign, once.

    This is a snapshot taken at attachment time; later sequence status
    changes are not propagated.
    """
    rows = store.update("campaigns", {
        "automation_status": sequence.get("status") or SequenceStatus.DRAFT.value,
    }, {"id": campaign_id})
    return rows[0] if rows else {}


def attach_campaign(store: SupabaseStore, campaign_id, sequence: dict) -> dict:
    bind_campaign(store, campaign_id, sequence["id"])
    return mirror_sequence_status(store, campaign_id, sequence)


def campaign_can_dispatch(campaign: dict | None, sequence_id) -> bool:
    """A campaign sends for a run only while it is still bound to that run's sequence."""
    if not campaign:
        return False
    return (
        campaign.get("send_mode") == "automation"
        and str(campaign.get("automation_sequence_id")) == str(sequence_id)
    )


def standalone_campaign_can_dispatch(campaign: dict | None) -> bool:
    """A campaign with no sequence sends only while it is an active automation."""
    if not campaign:
        return False
    return (
        campaign.get("send_mode") == "automation"
        and campaign.get("automation_sequence_id") is None
        and campaign.get("automation_status") == SequenceStatus.ACTIVE.value
    )
