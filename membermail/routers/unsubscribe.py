"""Unsubscribe endpoint — public, no auth required.

One-click link in every automated email. The HMAC signature keeps people
from unsubscribing members other than themselves.
"""

import html

from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse

from membermail.container import Services, get_services
from membermail.services.mailer import verify_unsubscribe_token

router = APIRouter()


@router.get("/unsubscribe")
async def unsubscribe_page(
    m: str = Query(""),
    sig: str = Query(""),
    services: Services = Depends(get_services),
):
    if not m or not sig:
        return HTMLResponse(_render_page(
            "Invalid Link",
            "This unsubscribe link is missing required information.",
            success=False,
        ), status_code=400)

    if not verify_unsubscribe_token(m, sig, services.settings["unsubscribe_secret"]):
        return HTMLResponse(_render_page(
            "Invalid Link",
            "This unsubscribe link is invalid or has been tampered with.",
            success=False,
        ), status_code=400)

    services.members.unsubscribe(m)
    return HTMLResponse(_render_page(
        "You've been unsubscribed",
        "You won't receive future emails from this sender. "
        "If this was a mistake, contact support or re-subscribe in your account.",
        success=True,
    ))


def _render_page(title: str, message: str, success: bool) -> str:
    color = "#1A8A82" if success else "#c0392b"
    title = html.escape(title)
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>{title}</title>
  <style>
    body {{ background: #0b0b0b; color: #eaeaea; font-family: system-ui, sans-serif; margin: 0; padding: 40px; }}
    .card {{ max-width: 560px; margin: 40px auto; background: #141414; border: 1px solid #222; border-radius: 12px; padding: 24px; text-align: center; }}
    .card h1 {{ color: {color}; margin: 0 0 12px; }}
  </style>
</head>
<body>
  <div class="card">
    <h1>{title}</h1>
    <p>{html.escape(message)}</p>
  </div>
</body>
</html>"""
