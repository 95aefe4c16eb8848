from __future__ import annotations

import asyncio
import uuid
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.src.contracts.errors import DispatchError
from backend.src.notifier.email_notifier import EmailNotifier
from backend.src.notifier.slack_notifier import SlackNotifier
from backend.src.users.repository import UserRepository

logger = structlog.get_logger(__name__)


class NotifierRegistry:
    """Notification sink that routes an alert to each channel the user enabled.

    Adding a new channel requires only adding a new notifier class and
    registering it here -- no pipeline code needs to change.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        email_notifier: EmailNotifier,
        slack_notifier: SlackNotifier,
    ) -> None:
        self._session_factory = session_factory
        self._email = email_notifier
        self._slack = slack_notifier

    async def send(
        self,
        user_id: uuid.UUID,
        title: str,
        message: str,
        payload: dict[str, Any],
    ) -> bool:
        """Deliver to all enabled channels; True only if every channel succeeded.

        - ``email`` is sent when the user's email preference is on.
        - ``slack`` is sent when the user configured a Slack webhook URL.
        """
        log = logger.bind(user_id=str(user_id))

        async with self._session_factory() as session:
            user = await UserRepository(session).get_by_id(user_id)
        if user is None:
            raise DispatchError(f"User {user_id} not found")

        preferences = user.get_preferences()
        tasks: dict[str, asyncio.Task[bool]] = {}

        if preferences.email:
            tasks["email"] = asyncio.create_task(
                self._email.send(user, title, message, payload)
            )

        if preferences.slack_webhook_url:
            tasks["slack"] = asyncio.create_task(
                self._slack.send(user, title, message, payload)
            )

        if not tasks:
            log.info("notify_skipped_no_channels")
            return True

        results: dict[str, bool] = {}
        for channel, task in tasks.items():
            try:
                results[channel] = await task
            except Exception as exc:  # noqa: BLE001
                log.error("notify_channel_error", channel=channel, error=str(exc))
                results[channel] = False

        log.info("notify_complete", results=results)
        return all(results.values())
