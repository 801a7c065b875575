"""Sequence resolver and enrollment manager."""

import logging
from dataclasses import dataclass
from datetime import datetime

from membermail.services.context import TriggerContext
from membermail.services.events import CanonicalEvent, is_course_event
from membermail.services.status import SequenceStatus, accepts_enrollments
from membermail.supabase_client import SupabaseStore, parse_iso, to_iso

logger = logging.getLogger(__name__)

ENROLLMENTS_TABLE = "automation_enrollments"

# Matches the unique key (sequence_id, member_id, dedupe_key): one enrollment
# per member per sequence.
ACTIVE_DEDUPE_KEY = "active"


@dataclass(frozen=True)
class AlreadyEnrolled:
    """Another delivery of the same event got there first."""
    sequence_id: object
    member_id: str


def resolve(store: SupabaseStore, company_id: str | None, event: CanonicalEvent | None) -> list[dict]:
    """Active sequences of a company that fire on ``event``. Empty is a normal answer."""
    if not company_id or event is None:
        return []
    return store.select("automation_sequences", match={
        "company_id": company_id,
        "trigger_event": event.value,
        "status": SequenceStatus.ACTIVE.value,
    })


def resolve_campaigns(store: SupabaseStore, company_id: str | None,
                      event: CanonicalEvent | None) -> list[dict]:
    """Active automation campaigns of a company that fire on ``event`` without a sequence."""
    if not company_id or event is None:
        return []
    campaigns = store.select("campaigns", match={
        "company_id": company_id,
        "send_mode": "automation",
        "automation_status": SequenceStatus.ACTIVE.value,
        "trigger_event": event.value,
    })
    return [c for c in campaigns if c.get("automation_sequence_id") is None]


def load_steps(store: SupabaseStore, sequence_id) -> list[dict]:
    return store.select("automation_steps", match={"sequence_id": sequence_id}, order="position")


def steps_present_at(steps: list[dict], enrolled_at: datetime) -> list[dict]:
    """Steps that already existed at ``enrolled_at``. Steps added later are not retroactive."""
    return [
        s for s in steps
        if not s.get("created_at") or parse_iso(s["created_at"]) <= enrolled_at
    ]


def _meta(metadata: dict, *keys):
    for key in keys:
        if metadata.get(key):
            return str(metadata[key])
    return None


def course_metadata_matches(metadata: dict | None, context: TriggerContext,
                            event: CanonicalEvent) -> bool:
    """Whether a sequence's first-step metadata accepts this course trigger.

    Course sequences are pinned to a course (and optionally a chapter or a
    lesson); other sequences must not carry course metadata at all.
    """
    if not is_course_event(event):
        return not (metadata and _meta(metadata, "course_id", "courseId"))
    if not context.course_id or not metadata:
        return False

    trigger_kind = _meta(metadata, "trigger_kind", "triggerKind")
    if trigger_kind and trigger_kind != event.value:
        return False
    for keys, actual in (
        (("course_id", "courseId"), context.course_id),
        (("chapter_id", "chapterId"), context.chapter_id),
        (("lesson_id", "lessonId"), context.lesson_id),
    ):
        expected = _meta(metadata, *keys)
        if expected and expected != actual:
            return False
    return True


def enroll(store: SupabaseStore, sequence: dict, member_id: str, now: datetime):
    """Create the member's enrollment in ``sequence``.

    Returns the new enrollment row, ``AlreadyEnrolled`` when the unique key
    rejected the insert (a concurrent or repeated delivery won), or None when
    the sequence does not accept entrants right now.
    """
    if not member_id or not accepts_enrollments(sequence):
        return None

    enrollment = store.insert_unique(ENROLLMENTS_TABLE, {
        "sequence_id": sequence["id"],
        "member_id": member_id,
        "status": "active",
        "dedupe_key": ACTIVE_DEDUPE_KEY,
        "enrolled_at": to_iso(now),
        "completed_at": None,
    })
    if enrollment is None:
        logger.debug("Member %s already enrolled in sequence %s", member_id, sequence["id"])
        return AlreadyEnrolled(sequence["id"], member_id)

    store.log_action(
        "sequence_enrolled", "sequence", str(sequence["id"]),
        f"member {member_id} enrolled",
    )
    logger.info("Enrolled member %s in sequence %s", member_id, sequence["id"])
    return enrollment


def find_enrollment(store: SupabaseStore, sequence_id, member_id: str) -> dict | None:
    return store.select_one(ENROLLMENTS_TABLE, match={
        "sequence_id": sequence_id,
        "member_id": member_id,
        "dedupe_key": ACTIVE_DEDUPE_KEY,
    })


def close_if_finished(store: SupabaseStore, enrollment_id, now: datetime) -> bool:
    """Mark an enrollment completed once none of its runs are pending or sending."""
    if store.count_open_step_runs(enrollment_id):
        return False
    closed = store.conditional_update(ENROLLMENTS_TABLE, {
        "status": "completed",
        "completed_at": to_iso(now),
    }, {"id": enrollment_id, "status": "active"})
    return closed is not None
