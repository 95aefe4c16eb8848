from __future__ import annotations

import asyncio
import uuid
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.alerts.repository import AlertRepository
from backend.src.config import Settings, settings as default_settings
from backend.src.contracts.errors import DispatchError, PersistenceError
from backend.src.contracts.interfaces import INotificationSink
from backend.src.contracts.models import (
    ChangeDirection,
    ChangeResult,
    Plan,
    PriceAlert,
    TrackedSubscription,
)
from backend.src.matcher.matcher import SubscriptionMatcher

logger = structlog.get_logger(__name__)

_CURRENCY_SYMBOLS: dict[str, str] = {"USD": "$", "EUR": "€", "GBP": "£", "JPY": "¥", "INR": "₹"}


def format_money(amount: float, currency: str) -> str:
    symbol = _CURRENCY_SYMBOLS.get(currency.upper())
    if symbol is None:
        return f"{currency.upper()} {amount:.2f}"
    return f"{symbol}{amount:.2f}"


def build_alert_text(
    product_name: str,
    plan_name: str,
    currency: str,
    change: ChangeResult,
) -> tuple[str, str]:
    """Return the (title, message) pair shown to the user for a price change."""
    increased = change.direction == ChangeDirection.INCREASE
    title = f"Price {'Increase' if increased else 'Decrease'} Alert: {product_name}"

    old_display = format_money(change.old_price or 0.0, currency)
    new_display = format_money(change.new_price or 0.0, currency)
    message = (
        f"The price for {product_name} {plan_name} has "
        f"{'increased' if increased else 'decreased'} from {old_display} to {new_display}"
    )
    if change.delta_percent is not None:
        message += f" ({change.delta_percent:+.1f}%)"
    return title, message


class AlertDispatcher:
    """Turn a detected price change into alert rows and notifications.

    All qualifying alerts are committed before any delivery starts.
    Deliveries run as background tasks; a failed delivery is logged and
    never touches the stored alert.
    """

    def __init__(
        self,
        sink: INotificationSink,
        matcher: SubscriptionMatcher | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._sink = sink
        self._matcher = matcher if matcher is not None else SubscriptionMatcher()
        self._settings = settings if settings is not None else default_settings
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending_deliveries(self) -> int:
        return len(self._pending)

    async def dispatch(
        self,
        session: AsyncSession,
        plan: Plan,
        product_name: str,
        change: ChangeResult,
        subscribers: list[TrackedSubscription],
    ) -> list[PriceAlert]:
        log = logger.bind(plan_id=str(plan.id), product=product_name)
        if not change.changed or change.direction is None:
            return []

        qualifying = self._matcher.match(change, subscribers)
        if not qualifying:
            log.info("no_qualifying_subscribers", subscribers_count=len(subscribers))
            return []

        title, message = build_alert_text(product_name, plan.name, plan.currency, change)
        alerts = [
            PriceAlert(
                id=uuid.uuid4(),
                user_id=subscription.user_id,
                plan_id=plan.id,
                kind=change.direction.value,
                old_price=change.old_price,
                new_price=change.new_price,
                delta_abs=change.delta_abs,
                delta_percent=change.delta_percent,
                title=title,
                message=message,
                is_read=False,
            )
            for subscription in qualifying
        ]

        plan_id = str(plan.id)
        payload_base: dict[str, Any] = {
            "plan_id": plan_id,
            "product_name": product_name,
            "plan_name": plan.name,
            "kind": change.direction.value,
            "old_price": change.old_price,
            "new_price": change.new_price,
            "delta_percent": change.delta_percent,
            "currency": plan.currency,
            "action_url": f"{self._settings.frontend_url}/dashboard/alerts",
        }
        deliveries = [(alert.user_id, str(alert.id)) for alert in alerts]

        try:
            await AlertRepository(session).add_many(alerts)
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            log.error("alert_persist_failed", error=str(exc))
            raise PersistenceError(f"Could not store alerts for plan {plan_id}") from exc

        log.info("alerts_created", alert_count=len(alerts), kind=change.direction.value)

        for user_id, alert_id in deliveries:
            payload = {**payload_base, "alert_id": alert_id}
            task = asyncio.create_task(self._deliver(user_id, title, message, payload))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        return alerts

    async def _deliver(
        self,
        user_id: uuid.UUID,
        title: str,
        message: str,
        payload: dict[str, Any],
    ) -> None:
        log = logger.bind(user_id=str(user_id), alert_id=payload.get("alert_id"))
        try:
            delivered = await self._sink.send(user_id, title, message, payload)
        except DispatchError as exc:
            log.warning("alert_delivery_failed", error=str(exc))
            return
        except Exception:  # noqa: BLE001
            log.error("alert_delivery_error", exc_info=True)
            return

        if delivered:
            log.info("alert_delivered")
        else:
            log.warning("alert_delivery_failed", error="sink reported failure")

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown, tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
