"""Supabase store — query helpers and atomic write primitives for the automation tables."""

import logging
from datetime import datetime, timezone

from postgrest.exceptions import APIError
from supabase import Client, create_client

logger = logging.getLogger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


def create_store(url: str, service_key: str) -> "SupabaseStore":
    """Build the store once at process start."""
    if not url or not service_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
    return SupabaseStore(create_client(url, service_key))


def is_unique_violation(exc: Exception) -> bool:
    """True when a storage error is a duplicate-key rejection."""
    return isinstance(exc, APIError) and str(getattr(exc, "code", "")) == UNIQUE_VIOLATION


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_iso(dt: datetime) -> str:
    """Serialise a timestamp the way every table stores it (UTC, second precision)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class SupabaseStore:
    """Thin wrapper over a supabase-py client.

    Every mutating helper is a single PostgREST request, i.e. a single SQL
    statement, so callers get row-level atomicity without read-then-write.
    """

    def __init__(self, client: Client):
        self._client = client

    def _table(self, name: str):
        """Return a table query builder."""
        return self._client.table(name)

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    def insert(self, table: str, data: dict) -> dict:
        """Insert a row and return it."""
        result = self._table(table).insert(data).execute()
        return result.data[0] if result.data else {}

    def insert_unique(self, table: str, data: dict) -> dict | None:
        """Insert a row guarded by a unique constraint.

        Returns the new row, or None when the constraint rejected it.
        """
        try:
            return self.insert(table, data)
        except APIError as e:
            if is_unique_violation(e):
                return None
            raise

    def upsert_ignore_duplicates(self, table: str, rows: list[dict], on_conflict: str) -> list[dict]:
        """INSERT ... ON CONFLICT DO NOTHING. Returns only the rows actually inserted."""
        if not rows:
            return []
        q = self._table(table).upsert(rows, on_conflict=on_conflict, ignore_duplicates=True)
        result = q.execute()
        return result.data or []

    def update(self, table: str, data: dict, match: dict) -> list[dict]:
        """Update rows matching conditions and return them."""
        q = self._table(table).update(data)
        for k, v in match.items():
            q = q.eq(k, v)
        result = q.execute()
        return result.data or []

    def conditional_update(self, table: str, data: dict, match: dict) -> dict | None:
        """UPDATE ... WHERE <match>; the row when the guard held, else None.

        Put the expected current state in ``match`` (e.g. ``status='pending'``)
        to get a compare-and-set that only one concurrent caller can win.
        """
        rows = self.update(table, data, match)
        return rows[0] if rows else None

    def delete(self, table: str, match: dict) -> list:
        """Delete rows matching conditions."""
        q = self._table(table).delete()
        for k, v in match.items():
            q = q.eq(k, v)
        result = q.execute()
        return result.data or []

    def select(self, table: str, columns: str = "*", match: dict | None = None,
               order: str | None = None, order_desc: bool = False,
               limit: int | None = None) -> list[dict]:
        """Select rows with optional filtering, ordering, and limit."""
        q = self._table(table).select(columns)
        if match:
            for k, v in match.items():
                q = q.eq(k, v)
        if order:
            q = q.order(order, desc=order_desc)
        if limit:
            q = q.limit(limit)
        result = q.execute()
        return result.data or []

    def select_one(self, table: str, columns: str = "*", match: dict | None = None) -> dict | None:
        """Select a single row."""
        rows = self.select(table, columns, match, limit=1)
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Step runs
    # ------------------------------------------------------------------

    def select_due_step_runs(self, now_iso: str, limit: int) -> list[dict]:
        """Pending step runs whose scheduled time has passed, oldest first."""
        q = self._table("automation_step_runs").select("*")
        q = q.eq("status", "pending").lte("scheduled_at", now_iso)
        q = q.order("scheduled_at").limit(limit)
        result = q.execute()
        return result.data or []

    def count_open_step_runs(self, enrollment_id) -> int:
        """Runs of an enrollment that have not reached a terminal status."""
        q = self._table("automation_step_runs").select("id")
        q = q.eq("enrollment_id", enrollment_id).in_("status", ["pending", "sending"])
        result = q.execute()
        return len(result.data or [])

    def has_step_runs(self, enrollment_id) -> bool:
        """Whether any run, in any status, was ever written for an enrollment."""
        q = self._table("automation_step_runs").select("id")
        q = q.eq("enrollment_id", enrollment_id).limit(1)
        result = q.execute()
        return bool(result.data)

    # ------------------------------------------------------------------
    # Audit Log
    # ------------------------------------------------------------------

    def log_action(self, action: str, entity_type: str = "", entity_id: str = "",
                   details: str = "") -> dict:
        """Record an operator-visible event."""
        return self.insert("audit_log", {
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "details": details,
        })
