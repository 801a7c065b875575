#!/usr/bin/env python3
"""MemberMail — automation engine server.

Launch: python3 membermail_server.py
Serves at http://0.0.0.0:8000 (or PORT env var)
"""

import logging
import sys

import uvicorn

from membermail.config import HOST, PORT, SUPABASE_SERVICE_KEY, SUPABASE_URL


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    print("=" * 60)
    print("  MemberMail — Automations")
    print("=" * 60)

    if not SUPABASE_URL or not SUPABASE_SERVICE_KEY:
        print("\n  ERROR: SUPABASE_URL and SUPABASE_SERVICE_KEY must be set.")
        sys.exit(1)

    from membermail.app import create_app
    from membermail.container import build_default_services

    app = create_app(build_default_services())

    url = f"http://{HOST}:{PORT}"
    print(f"\n  API: {url}/docs")
    print("  Press Ctrl+C to stop\n")
    uvicorn.run(app, host=HOST, port=PORT, log_level="info")


if __name__ == "__main__":
    main()
