from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from backend.src.contracts.models import User

logger = structlog.get_logger(__name__)

_MAX_RETRIES = 3
_BASE_DELAY = 1.0


def build_slack_payload(title: str, message: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Build the incoming-webhook body for a Slack alert."""
    blocks: list[dict[str, Any]] = [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*{title}*\n{message}"},
        }
    ]
    action_url = payload.get("action_url")
    if action_url:
        blocks.append(
            {
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": f"<{action_url}|View alert>"}],
            }
        )
    return {"text": title, "blocks": blocks}


class SlackNotifier:
    """Channel that posts alerts to a user's Slack incoming webhook."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(10.0))

    async def send(
        self,
        user: User,
        title: str,
        message: str,
        payload: dict[str, Any],
    ) -> bool:
        webhook_url = user.get_preferences().slack_webhook_url
        if not webhook_url:
            return True

        body = build_slack_payload(title, message, payload)
        log = logger.bind(user_id=str(user.id), channel="slack")

        last_exc: Exception | None = None
        for attempt in range(_MAX_RETRIES):
            try:
                if self._client is not None:
                    response = await self._client.post(webhook_url, json=body)
                else:
                    async with self._build_client() as client:
                        response = await client.post(webhook_url, json=body)
                response.raise_for_status()
                log.info("slack_message_sent", attempt=attempt + 1)
                return True
            except httpx.HTTPError as exc:
                last_exc = exc
                delay = _BASE_DELAY * (2**attempt)
                log.warning(
                    "slack_send_failed",
                    attempt=attempt + 1,
                    error=str(exc),
                    retry_in=delay,
                )
                if attempt < _MAX_RETRIES - 1:
                    await asyncio.sleep(delay)

        log.error("slack_send_exhausted", error=str(last_exc))
        return False
