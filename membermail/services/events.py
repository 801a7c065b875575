"""Event normalizer — maps raw Whop webhook actions onto the canonical trigger taxonomy."""

import re
from enum import Enum

# Bump when codes are added, renamed or removed.
TAXONOMY_VERSION = 1


class CanonicalEvent(str, Enum):
    MEMBER_CREATED = "member_created"
    ACCESS_PASS_REMOVED = "access_pass_removed"
    MEMBERSHIP_CANCEL_AT_PERIOD_END_CHANGED = "membership_cancel_at_period_end_changed"
    MEMBERSHIP_EXPERIENCE_CLAIMED = "membership_experience_claimed"
    MEMBERSHIP_METADATA_UPDATED = "membership_metadata_updated"
    MEMBERSHIP_WENT_INVALID = "membership_went_invalid"
    MEMBERSHIP_WENT_VALID = "membership_went_valid"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_AFFILIATE_REWARD_CREATED = "payment_affiliate_reward_created"
    REFUND_CREATED = "refund_created"
    REFUND_UPDATED = "refund_updated"
    DISPUTE_CREATED = "dispute_created"
    DISPUTE_UPDATED = "dispute_updated"
    DISPUTE_ALERT_CREATED = "dispute_alert_created"
    RESOLUTION_CREATED = "resolution_created"
    RESOLUTION_UPDATED = "resolution_updated"
    RESOLUTION_DECIDED = "resolution_decided"
    APP_MEMBERSHIP_CANCEL_AT_PERIOD_END_CHANGED = "app_membership_cancel_at_period_end_changed"
    APP_MEMBERSHIP_WENT_INVALID = "app_membership_went_invalid"
    APP_MEMBERSHIP_WENT_VALID = "app_membership_went_valid"
    APP_PAYMENT_FAILED = "app_payment_failed"
    APP_PAYMENT_PENDING = "app_payment_pending"
    APP_PAYMENT_SUCCEEDED = "app_payment_succeeded"
    COURSE_LESSON_STARTED = "course_lesson_started"
    COURSE_LESSON_COMPLETED = "course_lesson_completed"
    COURSE_CHAPTER_COMPLETED = "course_chapter_completed"
    COURSE_STARTED = "course_started"
    COURSE_COMPLETED = "course_completed"


E = CanonicalEvent

_LABELS: dict[CanonicalEvent, str] = {
    E.MEMBER_CREATED: "New member joined",
    E.ACCESS_PASS_REMOVED: "Member access removed",
    E.MEMBERSHIP_CANCEL_AT_PERIOD_END_CHANGED: "Membership Cancellation Changed",
    E.MEMBERSHIP_EXPERIENCE_CLAIMED: "Membership Experience Claimed",
    E.MEMBERSHIP_METADATA_UPDATED: "Membership Metadata Updated",
    E.MEMBERSHIP_WENT_INVALID: "Membership Expired",
    E.MEMBERSHIP_WENT_VALID: "Membership Activated",
    E.PAYMENT_FAILED: "Payment Failed",
    E.PAYMENT_PENDING: "Payment Pending",
    E.PAYMENT_SUCCEEDED: "Payment Successful",
    E.PAYMENT_AFFILIATE_REWARD_CREATED: "Affiliate Reward Created",
    E.REFUND_CREATED: "Refund Created",
    E.REFUND_UPDATED: "Refund Updated",
    E.DISPUTE_CREATED: "Dispute Created",
    E.DISPUTE_UPDATED: "Dispute Updated",
    E.DISPUTE_ALERT_CREATED: "Dispute Alert Created",
    E.RESOLUTION_CREATED: "Resolution Created",
    E.RESOLUTION_UPDATED: "Resolution Updated",
    E.RESOLUTION_DECIDED: "Resolution Decided",
    E.APP_MEMBERSHIP_CANCEL_AT_PERIOD_END_CHANGED: "App: Membership Cancellation Changed",
    E.APP_MEMBERSHIP_WENT_INVALID: "App: Membership Expired",
    E.APP_MEMBERSHIP_WENT_VALID: "App: Membership Activated",
    E.APP_PAYMENT_FAILED: "App: Payment Failed",
    E.APP_PAYMENT_PENDING: "App: Payment Pending",
    E.APP_PAYMENT_SUCCEEDED: "App: Payment Successful",
    E.COURSE_LESSON_STARTED: "Course: Lesson Started",
    E.COURSE_LESSON_COMPLETED: "Course: Lesson Completed",
    E.COURSE_CHAPTER_COMPLETED: "Course: Chapter Completed",
    E.COURSE_STARTED: "Course: Course Started",
    E.COURSE_COMPLETED: "Course: Course Completed",
}

# Provider spellings that don't reduce to the canonical code on their own.
_EXTRA_ALIASES: dict[str, CanonicalEvent] = {
    "membership_cancellation_changed": E.MEMBERSHIP_CANCEL_AT_PERIOD_END_CHANGED,
    "membership_expired": E.MEMBERSHIP_WENT_INVALID,
    "membership_activated": E.MEMBERSHIP_WENT_VALID,
    "app_membership_cancellation_changed": E.APP_MEMBERSHIP_CANCEL_AT_PERIOD_END_CHANGED,
    "course_lesson_interaction_completed": E.COURSE_LESSON_COMPLETED,
}

COURSE_EVENTS = frozenset({
    E.COURSE_LESSON_STARTED,
    E.COURSE_LESSON_COMPLETED,
    E.COURSE_CHAPTER_COMPLETED,
    E.COURSE_STARTED,
    E.COURSE_COMPLETED,
})

_SEPARATORS = re.compile(r"[^a-z0-9]+")


def _fold(raw: str) -> str:
    """Lowercase and collapse every run of separators to a single underscore."""
    return _SEPARATORS.sub("_", raw.lower()).strip("_")


_LOOKUP: dict[str, CanonicalEvent] = {code.value: code for code in CanonicalEvent}
_LOOKUP.update({_fold(alias): code for alias, code in _EXTRA_ALIASES.items()})


def normalize(raw_event) -> CanonicalEvent | None:
    """Map a provider event string to its canonical code.

    Case and punctuation are ignored, so ``"PAYMENT.SUCCEEDED"`` and
    ``"payment_succeeded"`` agree. Anything unrecognized (including
    non-strings) yields None; that means "no automation applies", not an error.
    """
    if not isinstance(raw_event, str):
        return None
    return _LOOKUP.get(_fold(raw_event))


def event_label(event: CanonicalEvent) -> str:
    return _LABELS[event]


def supported_events() -> list[dict]:
    """Codes and labels, in taxonomy order, for pickers and API clients."""
    return [{"code": code.value, "label": _LABELS[code]} for code in CanonicalEvent]


def is_course_event(event: CanonicalEvent) -> bool:
    return event in COURSE_EVENTS
