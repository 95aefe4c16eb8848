from __future__ import annotations

import asyncio
import html
from typing import Any

import resend
import structlog

from backend.src.config import Settings
from backend.src.contracts.models import User

logger = structlog.get_logger(__name__)

_MAX_RETRIES = 3
_BASE_DELAY = 1.0


def render_email_html(
    title: str,
    message: str,
    payload: dict[str, Any],
    frontend_url: str,
) -> str:
    """Render the HTML body for an alert email."""
    safe_title = html.escape(title)
    safe_message = html.escape(message)
    action_url = payload.get("action_url")
    preferences_url = f"{frontend_url}/dashboard/settings"

    action_block = ""
    if action_url:
        action_block = (
            f'<a href="{html.escape(str(action_url), quote=True)}" '
            'style="display:inline-block;background:#4f46e5;color:#ffffff;text-decoration:none;'
            'padding:12px 32px;border-radius:6px;font-size:16px;font-weight:600;">View Alert</a>'
        )

    return f"""\
<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><meta name="viewport" content="width=device-width,initial-scale=1"><title>{safe_title}</title></head>
<body style="margin:0;padding:0;background:#f4f4f5;font-family:Arial,Helvetica,sans-serif;">
<table width="100%" cellpadding="0" cellspacing="0" style="background:#f4f4f5;padding:24px 0;">
<tr><td align="center">
<table width="600" cellpadding="0" cellspacing="0" style="background:#ffffff;border-radius:8px;overflow:hidden;">
  <tr><td style="background:#4f46e5;padding:20px 24px;color:#ffffff;font-size:20px;font-weight:bold;">
    SaaS Price Watch
  </td></tr>
  <tr><td style="padding:24px;">
    <h1 style="margin:0 0 12px;font-size:22px;color:#1a1a2e;">{safe_title}</h1>
    <p style="margin:0 0 20px;font-size:16px;line-height:1.6;color:#333333;">{safe_message}</p>
    {action_block}
  </td></tr>
  <tr><td style="padding:16px 24px;background:#f9fafb;border-top:1px solid #e5e7eb;font-size:12px;color:#9ca3af;text-align:center;">
    You're receiving this because you track this plan on SaaS Price Watch.<br>
    <a href="{preferences_url}" style="color:#6b7280;">Manage your notification preferences</a>
  </td></tr>
</table>
</td></tr>
</table>
</body>
</html>"""


class EmailNotifier:
    """Channel that sends alert emails via the Resend API."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        resend.api_key = settings.resend_api_key

    async def send(
        self,
        user: User,
        title: str,
        message: str,
        payload: dict[str, Any],
    ) -> bool:
        body = render_email_html(
            title=title,
            message=message,
            payload=payload,
            frontend_url=self._settings.frontend_url,
        )

        log = logger.bind(
            user_id=str(user.id),
            email=user.email,
            channel="email",
        )

        last_exc: Exception | None = None
        for attempt in range(_MAX_RETRIES):
            try:
                await asyncio.to_thread(
                    resend.Emails.send,
                    {
                        "from": f"{self._settings.resend_from_name} <{self._settings.resend_from_email}>",
                        "to": [user.email],
                        "subject": title,
                        "html": body,
                        "text": message,
                    },
                )
                log.info("email_sent", attempt=attempt + 1)
                return True
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                delay = _BASE_DELAY * (2**attempt)
                log.warning(
                    "email_send_failed",
                    attempt=attempt + 1,
                    error=str(exc),
                    retry_in=delay,
                )
                if attempt < _MAX_RETRIES - 1:
                    await asyncio.sleep(delay)

        log.error("email_send_exhausted", error=str(last_exc))
        return False
