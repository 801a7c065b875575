"""Shared fixtures for MemberMail tests.

Provides:
- fake_db: an in-memory stand-in for the supabase-py client that enforces
  the unique constraints from schema.sql and executes each request
  atomically (one lock per database), like a single SQL statement would
- store / services / client: the engine wired around fake_db
- fakes for the mail sender and the clock
- sample data factories for sequences, steps, campaigns, members, step runs
"""

import itertools
import os
import threading
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest
from postgrest.exceptions import APIError

# Set env vars before any MemberMail imports
os.environ.setdefault("SUPABASE_URL", "https://fake.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "fake-key")
os.environ.setdefault("RESEND_API_KEY", "")

WEBHOOK_SECRET = "test-webhook-secret"
CRON_SECRET = "test-cron-secret"
UNSUBSCRIBE_SECRET = "test-unsubscribe-secret"
START = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)

UNIQUE_KEYS = {
    "automation_enrollments": [("sequence_id", "member_id", "dedupe_key")],
    "automation_step_runs": [("step_id", "member_id")],
    "automation_steps": [("sequence_id", "position")],
    "members": [("platform_member_id",)],
}

# Partial unique indexes: (columns, predicate a row must satisfy to be indexed).
PARTIAL_UNIQUE_KEYS = {
    "automation_step_runs": [(
        ("campaign_id", "member_id"),
        lambda r: r.get("step_id") is None and r.get("status") in ("pending", "sending"),
    )],
}


def _duplicate_key(table, cols):
    return APIError({
        "code": "23505",
        "message": f'duplicate key value violates unique constraint "{table}_{"_".join(cols)}_key"',
        "details": None,
        "hint": None,
    })


# ---------------------------------------------------------------------------
# In-memory fake Supabase
# ---------------------------------------------------------------------------

class FakeQueryResult:
    def __init__(self, data=None, count=None):
        self.data = data or []
        self.count = count


class FakeQueryBuilder:
    """Mimics the supabase-py query builder chain."""

    def __init__(self, db, table_name):
        self._db = db
        self._table = table_name
        self._filters = []
        self._order_col = None
        self._order_desc = False
        self._limit_val = None
        self._insert_data = None
        self._upsert_data = None
        self._upsert_conflict = None
        self._ignore_duplicates = False
        self._update_data = None
        self._delete_mode = False

    def select(self, columns="*", count=None):
        return self

    def insert(self, data):
        self._insert_data = data
        return self

    def upsert(self, data, on_conflict="", ignore_duplicates=False):
        self._upsert_data = data
        self._upsert_conflict = on_conflict
        self._ignore_duplicates = ignore_duplicates
        return self

    def update(self, data):
        self._update_data = data
        return self

    def delete(self):
        self._delete_mode = True
        return self

    def eq(self, col, val):
        self._filters.append(("eq", col, val))
        return self

    def lte(self, col, val):
        self._filters.append(("lte", col, val))
        return self

    def in_(self, col, values):
        self._filters.append(("in", col, list(values)))
        return self

    def order(self, col, desc=False):
        self._order_col = col
        self._order_desc = desc
        return self

    def limit(self, n):
        self._limit_val = n
        return self

    def _match(self, row):
        for op, col, val in self._filters:
            row_val = row.get(col)
            if op == "eq" and str(row_val) != str(val):
                return False
            if op == "lte" and (row_val is None or str(row_val) > str(val)):
                return False
            if op == "in" and row_val not in val:
                return False
        return True

    def _conflicts(self, rows, candidate, skip=None):
        keys = [(cols, None) for cols in UNIQUE_KEYS.get(self._table, [])]
        keys += PARTIAL_UNIQUE_KEYS.get(self._table, [])
        for cols, where in keys:
            # NULLs never collide in a unique index
            if any(candidate.get(c) is None for c in cols):
                continue
            if where and not where(candidate):
                continue
            for existing in rows:
                if existing is skip or (where and not where(existing)):
                    continue
                if all(str(existing.get(c)) == str(candidate.get(c)) for c in cols):
                    return cols
        return None

    def _new_row(self, data):
        row = dict(data)
        row.setdefault("id", next(self._db.ids[self._table]))
        return row

    def execute(self):
        with self._db.lock:
            return self._execute()

    def _execute(self):
        table = self._db.store[self._table]

        if self._insert_data is not None:
            batch = self._insert_data if isinstance(self._insert_data, list) else [self._insert_data]
            created = []
            for data in batch:
                row = self._new_row(data)
                cols = self._conflicts(table, row)
                if cols:
                    raise _duplicate_key(self._table, cols)
                table.append(row)
                created.append(dict(row))
            return FakeQueryResult(data=created)

        if self._upsert_data is not None:
            batch = self._upsert_data if isinstance(self._upsert_data, list) else [self._upsert_data]
            conflict_cols = [c.strip() for c in (self._upsert_conflict or "").split(",") if c.strip()]
            written = []
            for data in batch:
                existing = None
                if conflict_cols:
                    existing = next(
                        (r for r in table
                         if all(str(r.get(c)) == str(data.get(c)) for c in conflict_cols)),
                        None,
                    )
                if existing is not None:
                    if self._ignore_duplicates:
                        continue
                    existing.update(data)
                    written.append(dict(existing))
                    continue
                row = self._new_row(data)
                table.append(row)
                written.append(dict(row))
            return FakeQueryResult(data=written)

        if self._update_data is not None:
            matched = [row for row in table if self._match(row)]
            for row in matched:
                candidate = {**row, **self._update_data}
                cols = self._conflicts(table, candidate, skip=row)
                if cols:
                    raise _duplicate_key(self._table, cols)
            for row in matched:
                row.update(self._update_data)
            return FakeQueryResult(data=[dict(r) for r in matched])

        if self._delete_mode:
            removed = [r for r in table if self._match(r)]
            table[:] = [r for r in table if not self._match(r)]
            return FakeQueryResult(data=[dict(r) for r in removed])

        # SELECT
        rows = [r for r in table if self._match(r)]
        if self._order_col:
            rows.sort(key=lambda r: r.get(self._order_col, ""), reverse=self._order_desc)
        if self._limit_val is not None:
            rows = rows[:self._limit_val]
        return FakeQueryResult(data=[dict(r) for r in rows])


class FakeDB:
    """In-memory store keyed by table name."""

    def __init__(self):
        self.store = defaultdict(list)
        self.ids = defaultdict(lambda: itertools.count(1))
        self.lock = threading.RLock()

    def table(self, name):
        return FakeQueryBuilder(self, name)

    def rows(self, table, **match):
        return [r for r in self.store[table] if all(r.get(k) == v for k, v in match.items())]


# ---------------------------------------------------------------------------
# Fakes for external collaborators
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMailSender:
    """Records sends; ``fail_with`` exceptions are raised in order, one per send."""

    def __init__(self):
        self.sent = []
        self.fail_with = []
        self.on_send = None

    def send(self, campaign, member):
        if self.on_send:
            self.on_send(campaign, member)
        if self.fail_with:
            raise self.fail_with.pop(0)
        self.sent.append((campaign["id"], member["platform_member_id"]))
        return f"msg-{len(self.sent)}"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_db():
    return FakeDB()


@pytest.fixture
def store(fake_db):
    from membermail.supabase_client import SupabaseStore
    return SupabaseStore(fake_db)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sender():
    return FakeMailSender()


@pytest.fixture
def services(store, sender, clock):
    from membermail.container import build_services
    return build_services(store, sender=sender, clock=clock, settings={
        "webhook_secret": WEBHOOK_SECRET,
        "cron_secret": CRON_SECRET,
        "unsubscribe_secret": UNSUBSCRIBE_SECRET,
    })


@pytest.fixture
def client(services):
    """Sync test client; the trigger worker and scheduler are not started."""
    from fastapi.testclient import TestClient
    from membermail.app import create_app

    @asynccontextmanager
    async def noop_lifespan(app):
        yield

    app = create_app(services)
    app.router.lifespan_context = noop_lifespan
    with TestClient(app) as c:
        yield c


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------

_ids = itertools.count(1000)


def make_sequence(**overrides):
    defaults = {
        "id": next(_ids),
        "company_id": "biz_C",
        "name": "Welcome flow",
        "description": None,
        "trigger_event": "membership_went_valid",
        "trigger_label": "Membership Activated",
        "status": "active",
        "timezone": "UTC",
        "quiet_hours_enabled": False,
        "quiet_hours_start": None,
        "quiet_hours_end": None,
        "created_at": START.isoformat(),
        "updated_at": START.isoformat(),
    }
    defaults.update(overrides)
    return defaults


def make_campaign(**overrides):
    defaults = {
        "id": next(_ids),
        "company_id": "biz_C",
        "subject": "Hello",
        "html_content": "<html><body><p>Hi there</p></body></html>",
        "send_mode": "manual",
        "automation_sequence_id": None,
        "automation_status": None,
        "trigger_event": None,
        "trigger_delay_value": 0,
        "trigger_delay_unit": "minutes",
        "automation_trigger_metadata": None,
    }
    defaults.update(overrides)
    return defaults


def make_step(**overrides):
    defaults = {
        "id": next(_ids),
        "sequence_id": None,
        "campaign_id": None,
        "position": 1,
        "delay_value": 0,
        "delay_unit": "minutes",
        "metadata": None,
        "created_at": START.isoformat(),
    }
    defaults.update(overrides)
    return defaults


def make_member(**overrides):
    defaults = {
        "id": next(_ids),
        "company_id": "biz_C",
        "platform_member_id": "mber_M",
        "email": "member@example.com",
        "name": "Test Member",
        "status": "active",
    }
    defaults.update(overrides)
    return defaults


def make_api_error(code="57014", message="canceling statement due to statement timeout"):
    return APIError({"code": code, "message": message, "details": None, "hint": None})


def make_step_run(**overrides):
    defaults = {
        "id": next(_ids),
        "enrollment_id": None,
        "sequence_id": None,
        "step_id": None,
        "campaign_id": None,
        "member_id": "mber_M",
        "position": 1,
        "scheduled_at": START.isoformat(),
        "status": "pending",
        "attempt_count": 0,
        "executed_at": None,
        "last_error": None,
    }
    defaults.update(overrides)
    return defaults


def seed_sequence(fake_db, steps=((0, "minutes"),), member=True, **sequence_overrides):
    """Insert an active sequence with automation campaigns, one per step, and a member.

    ``steps`` is a list of (delay_value, delay_unit) in position order.
    Returns (sequence, [step, ...]).
    """
    sequence = make_sequence(**sequence_overrides)
    fake_db.store["automation_sequences"].append(sequence)
    created = []
    for position, (delay_value, delay_unit) in enumerate(steps, start=1):
        campaign = make_campaign(
            subject=f"Step {position}",
            send_mode="automation",
            automation_sequence_id=sequence["id"],
            automation_status=sequence["status"],
        )
        step = make_step(
            sequence_id=sequence["id"],
            campaign_id=campaign["id"],
            position=position,
            delay_value=delay_value,
            delay_unit=delay_unit,
        )
        fake_db.store["campaigns"].append(campaign)
        fake_db.store["automation_steps"].append(step)
        created.append(step)
    if member and not fake_db.rows("members", platform_member_id="mber_M"):
        fake_db.store["members"].append(make_member())
    return sequence, created
