"""Mail sender — delivers one campaign to one member via Resend.

Also owns the unsubscribe footer: every automated email links to a signed
unsubscribe URL for the recipient.
"""

import hashlib
import hmac
import logging
import urllib.parse

import requests
import resend
from resend.exceptions import ResendError

from membermail.errors import PermanentSendError, TransientSendError

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = 429


def generate_unsubscribe_token(member_id: str, secret: str) -> str:
    """HMAC token binding an unsubscribe link to one member."""
    key = (secret or "fallback-dev-secret").encode()
    return hmac.new(key, f"unsubscribe:{member_id}".encode(), hashlib.sha256).hexdigest()[:32]


def verify_unsubscribe_token(member_id: str, token: str, secret: str) -> bool:
    expected = generate_unsubscribe_token(member_id, secret)
    return hmac.compare_digest(expected, token or "")


def build_unsubscribe_url(member_id: str, public_url: str, secret: str) -> str:
    params = urllib.parse.urlencode({
        "m": member_id,
        "sig": generate_unsubscribe_token(member_id, secret),
    })
    return f"{public_url.rstrip('/')}/unsubscribe?{params}"


def inject_unsubscribe(html: str, unsubscribe_url: str) -> str:
    """Append the unsubscribe footer before </body>, before </html>, or at the end."""
    block = (
        '<div style="text-align:center;padding:16px 32px;font-family:system-ui,sans-serif;'
        'font-size:11px;color:#8a8a8a;border-top:1px solid #e5e5e5">'
        f'<a href="{unsubscribe_url}" style="color:#8a8a8a;text-decoration:underline">'
        'Unsubscribe</a> from future emails'
        '</div>'
    )
    if '</body>' in html:
        return html.replace('</body>', f'{block}</body>')
    if '</html>' in html:
        return html.replace('</html>', f'{block}</html>')
    return html + block


def _status_code(exc: ResendError) -> int:
    try:
        return int(getattr(exc, "code", 0) or 0)
    except (TypeError, ValueError):
        return 0


class ResendMailSender:
    """Sends campaign content through the Resend API.

    Failures come back as ``TransientSendError`` (worth retrying) or
    ``PermanentSendError`` (give up now).
    """

    def __init__(self, api_key: str, from_address: str, public_url: str, unsubscribe_secret: str):
        self._api_key = api_key
        self._from = from_address
        self._public_url = public_url
        self._unsubscribe_secret = unsubscribe_secret

    def render(self, campaign: dict, member: dict) -> str:
        url = build_unsubscribe_url(
            str(member["platform_member_id"]), self._public_url, self._unsubscribe_secret,
        )
        return inject_unsubscribe(campaign.get("html_content") or "", url)

    def send(self, campaign: dict, member: dict) -> str:
        """Deliver ``campaign`` to ``member``; returns the provider message id."""
        if not self._api_key:
            raise PermanentSendError("RESEND_API_KEY not set")
        email = (member.get("email") or "").strip()
        if not email:
            raise PermanentSendError(f"Member {member.get('platform_member_id')} has no email address")

        params = {
            "from": self._from,
            "to": [email],
            "subject": campaign.get("subject") or "",
            "html": self.render(campaign, member),
        }
        resend.api_key = self._api_key
        try:
            result = resend.Emails.send(params)
        except ResendError as e:
            code = _status_code(e)
            if code == _TRANSIENT_STATUS or code >= 500:
                raise TransientSendError(f"Resend {code}: {e}") from e
            raise PermanentSendError(f"Resend {code or 'error'}: {e}") from e
        except (requests.RequestException, ConnectionError, TimeoutError) as e:
            raise TransientSendError(f"Network error talking to Resend: {e}") from e

        return (result or {}).get("id", "")
