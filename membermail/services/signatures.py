"""Webhook signature verification for Whop deliveries.

Header format: ``t=<unix seconds>,v1=<hex hmac>``; the HMAC-SHA256 is taken
over ``"<t>.<raw body>"`` with the company's webhook secret.
"""

import hashlib
import hmac
import time

from membermail.errors import SignatureError
from membermail.supabase_client import SupabaseStore

SIGNATURE_HEADER = "x-whop-signature"


def sign(body: str, secret: str, timestamp: int) -> str:
    """Build a header value; used by tests and local tooling."""
    digest = hmac.new(secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def verify_signature(body: str, header: str | None, secret: str,
                     max_skew_seconds: int = 300, now: float | None = None) -> None:
    """Raise SignatureError unless ``header`` is a fresh, valid signature of ``body``."""
    if not header:
        raise SignatureError("Missing signature header")
    parts = dict(
        part.split("=", 1) for part in header.split(",") if "=" in part
    )
    timestamp_raw = parts.get("t", "")
    sent = parts.get("v1", "")
    if not timestamp_raw or not sent:
        raise SignatureError("Invalid signature header")

    try:
        timestamp = int(timestamp_raw)
    except ValueError:
        raise SignatureError("Invalid signature timestamp")
    current = time.time() if now is None else now
    if abs(current - timestamp) > max_skew_seconds:
        raise SignatureError("Signature timestamp outside tolerance")

    expected = sign(body, secret, timestamp).split("v1=", 1)[1]
    if not hmac.compare_digest(expected, sent):
        raise SignatureError("Signature mismatch")


def lookup_secret(store: SupabaseStore, company_id: str | None, fallback: str = "") -> str:
    """Per-company webhook secret, or the shared fallback."""
    if company_id:
        row = store.select_one("company_webhooks", match={"company_id": company_id})
        if row and row.get("webhook_secret"):
            return row["webhook_secret"]
    return fallback
