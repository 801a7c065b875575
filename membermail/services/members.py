"""Member directory — member lookup and suppression status."""

import logging

from membermail.supabase_client import SupabaseStore, to_iso, utc_now

logger = logging.getLogger(__name__)

MEMBERS_TABLE = "members"

# Statuses that must never receive automated mail.
SUPPRESSED_STATUSES = frozenset({"unsubscribed", "cancelled", "bounced", "complained"})


def is_suppressed(member: dict | None) -> bool:
    """A missing member counts as suppressed: there is no one to send to."""
    if not member:
        return True
    return (member.get("status") or "").lower() in SUPPRESSED_STATUSES


class SupabaseMemberDirectory:
    def __init__(self, store: SupabaseStore):
        self._store = store

    def get_member(self, member_id: str) -> dict | None:
        """Look a member up by platform member id."""
        return self._store.select_one(MEMBERS_TABLE, match={"platform_member_id": member_id})

    def unsubscribe(self, member_id: str) -> bool:
        """Mark a member unsubscribed. Returns False when the member is unknown."""
        rows = self._store.update(MEMBERS_TABLE, {
            "status": "unsubscribed",
            "updated_at": to_iso(utc_now()),
        }, {"platform_member_id": member_id})
        if not rows:
            return False
        self._store.log_action("member_unsubscribed", "member", member_id)
        logger.info("Member %s unsubscribed", member_id)
        return True
