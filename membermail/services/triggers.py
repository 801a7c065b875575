"""Trigger handling — from a verified webhook delivery to scheduled step runs.

The webhook handler only enqueues; ``TriggerQueue`` hands each delivery to
a supervised worker thread that runs ``TriggerPipeline``. Nothing the
pipeline does is visible to the webhook caller.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field

from membermail.services.context import extract_context
from membermail.services.enrollment import (
    AlreadyEnrolled,
    course_metadata_matches,
    enroll,
    find_enrollment,
    load_steps,
    resolve,
    resolve_campaigns,
    steps_present_at,
)
from membermail.services.events import normalize
from membermail.services.step_scheduler import schedule, schedule_campaign
from membermail.supabase_client import SupabaseStore, parse_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerEvent:
    raw_event: str
    payload: dict
    company_id: str | None = None


@dataclass
class TriggerResult:
    status: str
    reason: str = ""
    enrolled: list = field(default_factory=list)
    already_enrolled: list = field(default_factory=list)
    campaigns: list = field(default_factory=list)
    scheduled: int = 0


class TriggerPipeline:
    def __init__(self, store: SupabaseStore, clock=utc_now):
        self._store = store
        self._clock = clock

    def handle(self, event: TriggerEvent) -> TriggerResult:
        """normalize -> extract -> resolve -> enroll -> schedule.

        Standalone automation campaigns matching the event get one run each,
        after the sequences.

        Unknown events and payloads without company/member ids end the
        pipeline quietly with an ``ignored`` result.
        """
        canonical = normalize(event.raw_event)
        if canonical is None:
            logger.debug("Ignoring unrecognized event %r", event.raw_event)
            return TriggerResult("ignored", "unrecognized event")

        context = extract_context(event.payload)
        company_id = event.company_id or context.company_id
        if not company_id or not context.member_id:
            logger.debug("Ignoring %s: missing company or member id", canonical.value)
            return TriggerResult("ignored", "missing company or member id")

        now = self._clock()
        result = TriggerResult("processed")
        for sequence in resolve(self._store, company_id, canonical):
            steps = load_steps(self._store, sequence["id"])
            if not steps:
                continue
            if not course_metadata_matches(steps[0].get("metadata"), context, canonical):
                continue

            outcome = enroll(self._store, sequence, context.member_id, now)
            if isinstance(outcome, AlreadyEnrolled):
                result.already_enrolled.append(sequence["id"])
                result.scheduled += self._schedule_unscheduled(sequence, context.member_id, steps)
                continue
            if outcome is None:
                continue

            result.enrolled.append(sequence["id"])
            result.scheduled += len(schedule(self._store, outcome, steps))

        for campaign in resolve_campaigns(self._store, company_id, canonical):
            metadata = campaign.get("automation_trigger_metadata")
            if not course_metadata_matches(metadata, context, canonical):
                continue
            if schedule_campaign(self._store, campaign, context.member_id, now):
                result.campaigns.append(campaign["id"])
                result.scheduled += 1
        return result

    def _schedule_unscheduled(self, sequence: dict, member_id: str, steps: list[dict]) -> int:
        """Write the runs of an existing enrollment that never got any.

        Happens when an earlier delivery enrolled the member and then failed
        before its runs were written. Enrollments that have runs are left alone.
        """
        enrollment = find_enrollment(self._store, sequence["id"], member_id)
        if not enrollment or enrollment.get("status") != "active":
            return 0
        if self._store.has_step_runs(enrollment["id"]):
            return 0
        steps = steps_present_at(steps, parse_iso(enrollment["enrolled_at"]))
        created = schedule(self._store, enrollment, steps)
        if created:
            logger.warning("Enrollment %s had no step runs, scheduled %d on redelivery",
                           enrollment["id"], len(created))
        return len(created)


class TriggerQueue:
    """Bounded in-process channel between the webhook route and the pipeline worker."""

    def __init__(self, pipeline: TriggerPipeline, maxsize: int = 1000):
        self._pipeline = pipeline
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._worker: threading.Thread | None = None
        self._stopping = threading.Event()
        self._lock = threading.Lock()
        self.stats = {"enqueued": 0, "dropped": 0, "handled": 0, "errors": 0}

    def enqueue(self, event: TriggerEvent) -> bool:
        """Hand an event to the worker without blocking. False if it was dropped."""
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.stats["dropped"] += 1
            logger.warning("Trigger queue full, dropping %r", event.raw_event)
            return False
        self.stats["enqueued"] += 1
        if self._worker is not None:
            self._ensure_worker()
        return True

    def _process(self, event: TriggerEvent) -> None:
        try:
            result = self._pipeline.handle(event)
            self.stats["handled"] += 1
            if result.enrolled:
                logger.info("%s enrolled member in %d sequence(s)",
                            event.raw_event, len(result.enrolled))
        except Exception:
            self.stats["errors"] += 1
            logger.exception("Failed to handle automation trigger %r", event.raw_event)

    def drain(self) -> int:
        """Process everything queued, in the calling thread. Returns the count."""
        count = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return count
            try:
                self._process(event)
            finally:
                self._queue.task_done()
            count += 1

    def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                event = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._process(event)
            finally:
                self._queue.task_done()

    def _ensure_worker(self) -> None:
        """(Re)start the worker thread if it is not alive."""
        with self._lock:
            if self._stopping.is_set():
                return
            if self._worker is not None and self._worker.is_alive():
                return
            if self._worker is not None:
                logger.error("Trigger worker died, restarting")
            self._worker = threading.Thread(target=self._run, name="trigger-worker", daemon=True)
            self._worker.start()

    def start(self) -> None:
        self._stopping.clear()
        self._ensure_worker()
        logger.info("Trigger worker started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker, then finish whatever is still queued."""
        self._stopping.set()
        worker = self._worker
        if worker is not None:
            worker.join(timeout)
        self.drain()
        logger.info("Trigger worker stopped")
