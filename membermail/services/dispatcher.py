"""Execution dispatcher — claims due step runs and sends them exactly once.

A pass selects pending runs whose ``scheduled_at`` has passed and, for each,
tries to flip it ``pending -> sending`` with a single guarded UPDATE. Only
the worker whose UPDATE matched goes on to send; every other worker (thread,
process or host) sees an empty result and moves on. No in-memory lock is
involved, so any number of dispatchers may overlap.

After the claim::

    sending -> skipped   step deleted, campaign detached, member suppressed
    sending -> pending   quiet hours (no attempt used) or transient failure
                         below the attempt ceiling (exponential backoff)
    sending -> failed    permanent failure, or retries exhausted
    sending -> sent      provider accepted the message

If the provider accepted a message but the sent write fails, the run stays
in ``sending``. It is never put back to ``pending``, so it is never resent.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from membermail.errors import PermanentSendError
from membermail.services.enrollment import close_if_finished
from membermail.services.members import is_suppressed
from membermail.services.status import (
    TERMINAL_STEP_RUN_STATUSES,
    StepRunStatus,
    campaign_can_dispatch,
    can_transition_step_run,
    standalone_campaign_can_dispatch,
)
from membermail.supabase_client import SupabaseStore, to_iso, utc_now

logger = logging.getLogger(__name__)

STEP_RUNS_TABLE = "automation_step_runs"

DEFAULT_QUIET_START = 9
DEFAULT_QUIET_END = 20

# Outcomes after which the enrollment may have no open runs left.
_CLOSING_OUTCOMES = frozenset(s.value for s in TERMINAL_STEP_RUN_STATUSES)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_seconds: int = 300
    max_seconds: int = 6 * 60 * 60

    def backoff(self, attempts: int) -> timedelta:
        """Delay before the next try, doubling with each attempt already made."""
        seconds = self.base_seconds * (2 ** max(attempts - 1, 0))
        return timedelta(seconds=min(seconds, self.max_seconds))


def quiet_hours_resume_at(sequence: dict | None, now: datetime) -> datetime | None:
    """When ``now`` is inside the sequence's quiet hours, the UTC time sending may resume.

    ``quiet_hours_start``/``quiet_hours_end`` bound the *allowed* local hours
    ``[start, end)``; a start later than the end wraps past midnight.
    """
    if not sequence or not sequence.get("quiet_hours_enabled"):
        return None

    start = sequence.get("quiet_hours_start")
    end = sequence.get("quiet_hours_end")
    start = DEFAULT_QUIET_START if start is None else int(start)
    end = DEFAULT_QUIET_END if end is None else int(end)
    if start == end:
        return None

    try:
        tz = ZoneInfo(sequence.get("timezone") or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r on sequence %s, using UTC",
                       sequence.get("timezone"), sequence.get("id"))
        tz = timezone.utc

    local = now.astimezone(tz)
    if start < end:
        allowed = start <= local.hour < end
    else:
        allowed = local.hour >= start or local.hour < end
    if allowed:
        return None

    resume = local.replace(hour=start, minute=0, second=0, microsecond=0)
    if resume <= local:
        resume += timedelta(days=1)
    return resume.astimezone(timezone.utc)


class Dispatcher:
    def __init__(self, store: SupabaseStore, sender, members, clock=utc_now,
                 retry: RetryPolicy | None = None, batch_size: int = 50):
        self._store = store
        self._sender = sender
        self._members = members
        self._clock = clock
        self._retry = retry or RetryPolicy()
        self._batch_size = batch_size

    def find_due(self, now: datetime) -> list[dict]:
        """Pending runs due at ``now``, ordered by due time then step position."""
        runs = self._store.select_due_step_runs(to_iso(now), self._batch_size)
        return sorted(runs, key=lambda r: (r["scheduled_at"], r.get("position") or 0))

    def run_pass(self, now: datetime | None = None) -> dict:
        """Process every due run once. Returns outcome counts."""
        now = now or self._clock()
        counts = {
            "processed": 0, "sent": 0, "skipped": 0, "failed": 0,
            "retried": 0, "deferred": 0, "claim_lost": 0, "unconfirmed": 0,
        }
        for run in self.find_due(now):
            counts["processed"] += 1
            outcome = self.execute(run, now)
            counts[outcome] += 1

        if counts["processed"]:
            logger.info(
                "Dispatch pass: %d processed, %d sent, %d skipped, %d failed, "
                "%d retried, %d deferred, %d claimed elsewhere, %d unconfirmed",
                counts["processed"], counts["sent"], counts["skipped"], counts["failed"],
                counts["retried"], counts["deferred"], counts["claim_lost"], counts["unconfirmed"],
            )
        return counts

    def claim(self, run: dict, now: datetime) -> dict | None:
        """pending -> sending, or None if another worker got there first."""
        return self._store.conditional_update(
            STEP_RUNS_TABLE,
            {"status": StepRunStatus.SENDING.value, "updated_at": to_iso(now)},
            {"id": run["id"], "status": StepRunStatus.PENDING.value},
        )

    def execute(self, run: dict, now: datetime) -> str:
        """Claim and carry out one run. Returns the outcome name."""
        claimed = self.claim(run, now)
        if not claimed:
            logger.debug("Step run %s already claimed", run["id"])
            return "claim_lost"

        try:
            outcome = self._deliver(claimed, now)
        except PermanentSendError as e:
            outcome = self._fail(claimed, now, str(e), attempts=self._attempts(claimed) + 1)
        except Exception as e:
            outcome = self._retry_or_fail(claimed, now, e)

        if outcome in _CLOSING_OUTCOMES and claimed.get("enrollment_id") is not None:
            close_if_finished(self._store, claimed["enrollment_id"], now)
        return outcome

    # ------------------------------------------------------------------

    @staticmethod
    def _attempts(run: dict) -> int:
        return int(run.get("attempt_count") or 0)

    def _finish(self, run: dict, status: StepRunStatus, now: datetime, **fields) -> dict | None:
        """Leave ``sending`` for ``status``. Guarded so a run never leaves a terminal state.

        Returns None, with a warning, when the run was no longer ``sending``.
        """
        if not can_transition_step_run(StepRunStatus.SENDING.value, status.value):
            raise ValueError(f"Step run {run['id']} cannot move from sending to {status.value}")
        data = {"status": status.value, "updated_at": to_iso(now), **fields}
        row = self._store.conditional_update(
            STEP_RUNS_TABLE, data,
            {"id": run["id"], "status": StepRunStatus.SENDING.value},
        )
        if row is None:
            logger.warning("Step run %s left sending before it could be marked %s",
                           run["id"], status.value)
        return row

    def _skip(self, run: dict, now: datetime, reason: str) -> str:
        logger.info("Skipping step run %s: %s", run["id"], reason)
        if self._finish(run, StepRunStatus.SKIPPED, now, last_error=reason) is None:
            return "claim_lost"
        return "skipped"

    def _load(self, run: dict) -> tuple[dict | None, dict | None, str | None]:
        """(campaign, sequence, skip reason) for a claimed run.

        Runs without a step belong to a standalone automation campaign and
        have no sequence, so no quiet hours apply to them.
        """
        if run.get("step_id") is None:
            campaign = self._store.select_one("campaigns", match={"id": run["campaign_id"]})
            if not standalone_campaign_can_dispatch(campaign):
                return campaign, None, "campaign no longer an active automation"
            return campaign, None, None

        step = self._store.select_one("automation_steps", match={"id": run["step_id"]})
        if not step:
            return None, None, "step deleted"
        campaign = self._store.select_one("campaigns", match={"id": step["campaign_id"]})
        if not campaign_can_dispatch(campaign, run["sequence_id"]):
            return campaign, None, "campaign not attached to sequence"
        sequence = self._store.select_one("automation_sequences", match={"id": run["sequence_id"]})
        return campaign, sequence, None

    def _deliver(self, run: dict, now: datetime) -> str:
        campaign, sequence, reason = self._load(run)
        if reason:
            return self._skip(run, now, reason)

        member = self._members.get_member(run["member_id"])
        if is_suppressed(member):
            return self._skip(run, now, "member suppressed")

        resume_at = quiet_hours_resume_at(sequence, now)
        if resume_at:
            logger.info("Step run %s deferred to %s (quiet hours)", run["id"], to_iso(resume_at))
            if self._finish(run, StepRunStatus.PENDING, now, scheduled_at=to_iso(resume_at)) is None:
                return "claim_lost"
            return "deferred"

        # Only the provider call is classified as transient or permanent.
        message_id = self._sender.send(campaign, member)
        return self._record_sent(run, campaign, now, message_id)

    def _record_sent(self, run: dict, campaign: dict, now: datetime, message_id: str | None) -> str:
        """sending -> sent. A failed write leaves the run in ``sending`` so it is never resent."""
        try:
            self._finish(
                run, StepRunStatus.SENT, now,
                executed_at=to_iso(now),
                attempt_count=self._attempts(run) + 1,
                provider_message_id=message_id or "",
                last_error=None,
            )
        except Exception as e:
            logger.error(
                "Step run %s was sent (message %s) but could not be marked sent, "
                "leaving it in sending: %s", run["id"], message_id, e,
            )
            return "unconfirmed"
        logger.info("Sent campaign %s to member %s (step run %s)",
                    campaign["id"], run["member_id"], run["id"])
        return "sent"

    def _retry_or_fail(self, run: dict, now: datetime, error: Exception) -> str:
        attempts = self._attempts(run) + 1
        if attempts >= self._retry.max_attempts:
            return self._fail(run, now, f"retries exhausted: {error}", attempts=attempts)

        next_at = now + self._retry.backoff(attempts)
        logger.warning(
            "Step run %s attempt %d/%d failed (%s); retrying at %s",
            run["id"], attempts, self._retry.max_attempts, error, to_iso(next_at),
        )
        retried = self._finish(
            run, StepRunStatus.PENDING, now,
            attempt_count=attempts,
            scheduled_at=to_iso(next_at),
            last_error=str(error),
        )
        return "retried" if retried else "claim_lost"

    def _fail(self, run: dict, now: datetime, reason: str, attempts: int) -> str:
        logger.error("Step run %s failed permanently: %s", run["id"], reason)
        if self._finish(run, StepRunStatus.FAILED, now, attempt_count=attempts, last_error=reason) is None:
            return "claim_lost"
        self._store.log_action("step_run_failed", "step_run", str(run["id"]), reason)
        return "failed"
