"""MemberMail configuration — loaded from environment variables."""

import os
from pathlib import Path

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parent.parent

load_dotenv(REPO_ROOT / ".env")

# Supabase
SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_SERVICE_KEY = os.environ.get("SUPABASE_SERVICE_KEY", "")

# Resend (email sending)
RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
EMAIL_FROM = os.environ.get("EMAIL_FROM", "MemberMail <no-reply@example.com>")

# Whop webhooks (fallback secret when a company has none stored)
WHOP_WEBHOOK_SECRET = os.environ.get("WHOP_WEBHOOK_SECRET", "")
WEBHOOK_MAX_SKEW_SECONDS = int(os.environ.get("WEBHOOK_MAX_SKEW_SECONDS", "300"))

# Cron / manual dispatch auth
AUTOMATION_CRON_SECRET = os.environ.get("AUTOMATION_CRON_SECRET", "")

# Unsubscribe links
UNSUBSCRIBE_SECRET = os.environ.get("UNSUBSCRIBE_SECRET", "")
PUBLIC_URL = os.environ.get("PUBLIC_URL", "http://localhost:8000")

# Dispatcher
DISPATCH_INTERVAL_SECONDS = int(os.environ.get("DISPATCH_INTERVAL_SECONDS", "60"))
DISPATCH_BATCH_SIZE = int(os.environ.get("DISPATCH_BATCH_SIZE", "50"))
MAX_SEND_ATTEMPTS = int(os.environ.get("MAX_SEND_ATTEMPTS", "5"))
RETRY_BASE_SECONDS = int(os.environ.get("RETRY_BASE_SECONDS", "300"))
RETRY_MAX_SECONDS = int(os.environ.get("RETRY_MAX_SECONDS", "21600"))

# Trigger queue
TRIGGER_QUEUE_SIZE = int(os.environ.get("TRIGGER_QUEUE_SIZE", "1000"))

# Server
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))
