from __future__ import annotations

import asyncio
import random
import uuid
from datetime import datetime, timedelta

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.src.config import Settings, settings as default_settings
from backend.src.contracts.errors import PersistenceError
from backend.src.contracts.interfaces import IExtractor
from backend.src.contracts.models import (
    CycleStatus,
    CycleTriggerResult,
    ExtractionErrorKind,
    ExtractionFailure,
    ExtractionStatus,
    Plan,
    ProductRunResult,
    ProductTarget,
    RawPlanSnapshot,
    RawSnapshot,
    utcnow,
)
from backend.src.differ.differ import ChangeDetector
from backend.src.dispatcher.dispatcher import AlertDispatcher, format_money
from backend.src.matcher.matcher import PlanMatcher
from backend.src.products.repository import ProductRepository
from backend.src.snapshots.repository import SnapshotStore
from backend.src.subscriptions.repository import SubscriptionIndex

logger = structlog.get_logger(__name__)


class PriceWatchScheduler:
    """Orchestrates periodic extraction, snapshotting, diffing and alert dispatch.

    One cycle at a time: ``_is_running`` is checked and set with no await in
    between, so the interval job and a manual trigger can never both start
    a cycle. Within a cycle at most ``max_concurrent_extractions`` products
    are extracted at once, and a per-product lock keeps a manual product
    trigger from overlapping a cycle's extraction of the same product.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        extractor: IExtractor,
        dispatcher: AlertDispatcher,
        plan_matcher: PlanMatcher | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._extractor = extractor
        self._dispatcher = dispatcher
        self._plan_matcher = plan_matcher if plan_matcher is not None else PlanMatcher()
        self._settings = settings if settings is not None else default_settings

        self._scheduler = AsyncIOScheduler()
        self._is_running = False
        self._cycle_task: asyncio.Task[None] | None = None
        self._semaphore = asyncio.Semaphore(self._settings.max_concurrent_extractions)
        self._product_locks: dict[str, asyncio.Lock] = {}

    # ── Lifecycle ──────────────────────────────────────────────────────────

    def start(self) -> None:
        self._scheduler.add_job(
            self.run_cycle,
            trigger=IntervalTrigger(minutes=self._settings.scrape_interval_minutes),
            id="price_watch_cycle",
            name="Extract due products and dispatch price alerts",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "scheduler_configured",
            interval_minutes=self._settings.scrape_interval_minutes,
            max_concurrent=self._settings.max_concurrent_extractions,
        )

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("scheduler_shutdown")

    @property
    def is_running(self) -> bool:
        return self._is_running

    def cycle_status(self) -> CycleStatus:
        return CycleStatus(is_running=self._is_running)

    def is_product_busy(self, slug: str) -> bool:
        lock = self._product_locks.get(slug)
        return lock is not None and lock.locked()

    # ── Triggers ───────────────────────────────────────────────────────────

    def trigger_full_cycle(self) -> CycleTriggerResult:
        """Start a cycle in the background unless one is already running.

        Must be called from inside the running event loop.
        """
        if self._is_running:
            logger.info("cycle_trigger_rejected_already_running")
            return CycleTriggerResult(already_running=True)
        self._is_running = True
        self._cycle_task = asyncio.create_task(self._run_owned_cycle())
        logger.info("cycle_triggered_manually")
        return CycleTriggerResult(already_running=False)

    async def run_cycle(self) -> bool:
        """Run one cycle to completion; False when another cycle held the flag."""
        if self._is_running:
            logger.info("cycle_skipped_already_running")
            return False
        self._is_running = True
        await self._run_owned_cycle()
        return True

    async def wait_for_cycle(self) -> None:
        if self._cycle_task is not None:
            await self._cycle_task

    async def trigger_product(self, slug: str) -> ProductRunResult:
        """Extract one product immediately with a single attempt."""
        log = logger.bind(product=slug)
        if self._is_running:
            log.info("product_trigger_rejected_cycle_running")
            return ProductRunResult(success=False, message="Scraping is already in progress")

        lock = self._lock_for(slug)
        if lock.locked():
            log.info("product_trigger_rejected_busy")
            return ProductRunResult(success=False, message=f"{slug} is already being scraped")

        async with lock:
            async with self._session_factory() as session:
                product = await ProductRepository(session).get_by_slug(slug)
                target = product.to_target() if product is not None else None

            if target is None:
                return ProductRunResult(success=False, message="Product not found")
            if not target.plans:
                return ProductRunResult(
                    success=False, message="No active plans found for product"
                )
            return await self._run_product(target, max_attempts=1)

    # ── Cycle ──────────────────────────────────────────────────────────────

    async def select_due(self, now: datetime | None = None) -> list[ProductTarget]:
        """Products due for extraction, in the order the cycle will run them."""
        async with self._session_factory() as session:
            products = await ProductRepository(session).get_due(
                now if now is not None else utcnow(),
                timedelta(hours=self._settings.scrape_staleness_hours),
                limit=self._settings.max_products_per_cycle,
            )
            return [product.to_target() for product in products]

    async def _run_owned_cycle(self) -> None:
        try:
            await self._run_cycle()
        except Exception:
            logger.error("cycle_failed", exc_info=True)
        finally:
            self._is_running = False

    async def _run_cycle(self) -> None:
        targets = await self.select_due()
        logger.info("cycle_start", due_count=len(targets))
        if not targets:
            logger.info("cycle_complete", succeeded=0, failed=0, skipped=0)
            return

        results = await asyncio.gather(
            *(self._worker(target) for target in targets),
            return_exceptions=True,
        )

        succeeded = failed = skipped = 0
        for target, result in zip(targets, results):
            if isinstance(result, BaseException):
                failed += 1
                logger.error("product_task_crashed", product=target.slug, error=str(result))
            elif result is None:
                skipped += 1
            elif result.success:
                succeeded += 1
            else:
                failed += 1

        logger.info("cycle_complete", succeeded=succeeded, failed=failed, skipped=skipped)

    async def _worker(self, target: ProductTarget) -> ProductRunResult | None:
        lock = self._lock_for(target.slug)
        async with self._semaphore:
            if lock.locked():
                logger.info("product_busy_skipped", product=target.slug)
                return None
            async with lock:
                result = await self._run_product(
                    target, max_attempts=self._settings.scrape_max_attempts
                )
            await asyncio.sleep(self._politeness_delay())
        return result

    def _lock_for(self, slug: str) -> asyncio.Lock:
        lock = self._product_locks.get(slug)
        if lock is None:
            lock = self._product_locks[slug] = asyncio.Lock()
        return lock

    def _politeness_delay(self) -> float:
        low = self._settings.scrape_delay_min_ms
        high = max(low, self._settings.scrape_delay_max_ms)
        return random.uniform(low, high) / 1000.0

    # ── Per product ────────────────────────────────────────────────────────

    async def _set_status(
        self,
        product_id: uuid.UUID,
        status: ExtractionStatus,
        *,
        error: str | None = None,
    ) -> None:
        # A terminal failure counts as an attempt for due selection
        attempted_at = utcnow() if status is ExtractionStatus.FAILED else None
        async with self._session_factory() as session:
            await ProductRepository(session).set_status(
                product_id, status, attempted_at=attempted_at, error=error
            )
            await session.commit()

    async def _extract_once(self, target: ProductTarget) -> RawSnapshot | ExtractionFailure:
        timeout = self._settings.extraction_timeout_seconds
        try:
            return await asyncio.wait_for(self._extractor.extract(target), timeout=timeout)
        except asyncio.TimeoutError:
            return ExtractionFailure(
                product_slug=target.slug,
                kind=ExtractionErrorKind.NAVIGATION_TIMEOUT,
                message=f"Extraction did not finish within {timeout:.0f}s",
            )

    def _match_plans(
        self, target: ProductTarget, snapshot: RawSnapshot
    ) -> dict[uuid.UUID, RawPlanSnapshot] | ExtractionFailure:
        matched = self._plan_matcher.match(
            [(plan.id, plan.name) for plan in target.plans], snapshot.plans
        )
        if matched:
            return matched
        return ExtractionFailure(
            product_slug=target.slug,
            kind=ExtractionErrorKind.NO_PRICING_MARKUP_FOUND,
            message=(
                "No extracted plan matched a tracked plan (found: "
                + ", ".join(p.plan_name for p in snapshot.plans)
                + ")"
            ),
        )

    async def _run_product(self, target: ProductTarget, max_attempts: int) -> ProductRunResult:
        log = logger.bind(product=target.slug)
        attempts = 0
        try:
            await self._set_status(target.id, ExtractionStatus.IN_PROGRESS)

            while True:
                attempts += 1
                log.info("extraction_attempt", attempt=attempts, max_attempts=max_attempts)

                outcome = await self._extract_once(target)
                if isinstance(outcome, RawSnapshot):
                    matched = self._match_plans(target, outcome)
                    if not isinstance(matched, ExtractionFailure):
                        return await self._persist_and_alert(target, matched, attempts)
                    outcome = matched

                if attempts >= max_attempts:
                    break
                delay = self._settings.scrape_retry_base_delay_seconds * attempts
                log.warning(
                    "extraction_retry",
                    attempt=attempts,
                    kind=outcome.kind.value,
                    error=outcome.message,
                    retry_in=delay,
                )
                await asyncio.sleep(delay)

            await self._set_status(
                target.id,
                ExtractionStatus.FAILED,
                error=f"{outcome.kind.value}: {outcome.message}",
            )
            log.error(
                "extraction_exhausted",
                attempts=attempts,
                kind=outcome.kind.value,
                error=outcome.message,
            )
            return ProductRunResult(
                success=False,
                message=f"Failed to scrape {target.name}: {outcome.message}",
                attempts=attempts,
            )
        except Exception as exc:
            log.error("product_run_crashed", attempts=attempts, exc_info=True)
            try:
                await self._set_status(
                    target.id, ExtractionStatus.FAILED, error=f"unexpected: {exc}"
                )
            except SQLAlchemyError:
                log.error("status_update_failed", exc_info=True)
            return ProductRunResult(
                success=False,
                message=f"Failed to scrape {target.name}: {exc}",
                attempts=attempts,
            )

    async def _persist_and_alert(
        self,
        target: ProductTarget,
        matched: dict[uuid.UUID, RawPlanSnapshot],
        attempts: int,
    ) -> ProductRunResult:
        log = logger.bind(product=target.slug)
        now = utcnow()

        async with self._session_factory() as session:
            try:
                store = SnapshotStore(session)
                for plan_id, raw in matched.items():
                    await store.append(plan_id, raw, observed_at=now)
                await ProductRepository(session).set_status(
                    target.id, ExtractionStatus.SUCCESS, extracted_at=now, attempted_at=now
                )
                await session.commit()
            except (PersistenceError, SQLAlchemyError) as exc:
                await session.rollback()
                log.error("snapshot_persist_failed", error=str(exc))
                await self._set_status(
                    target.id, ExtractionStatus.FAILED, error=f"persistence: {exc}"
                )
                return ProductRunResult(
                    success=False,
                    message=f"Failed to store prices for {target.name}: {exc}",
                    attempts=attempts,
                )

            log.info("snapshots_persisted", plan_count=len(matched))

            for plan_id in matched:
                try:
                    await self._detect_and_dispatch(session, target, plan_id)
                except Exception:
                    await session.rollback()
                    log.error("alert_chain_failed", plan_id=str(plan_id), exc_info=True)

        first = next(iter(matched.values()))
        return ProductRunResult(
            success=True,
            message=(
                f"Successfully scraped {target.name}. "
                f"Price: {format_money(first.price, first.currency)}"
            ),
            extracted_price=first.price,
            attempts=attempts,
        )

    async def _detect_and_dispatch(
        self, session: AsyncSession, target: ProductTarget, plan_id: uuid.UUID
    ) -> None:
        change = await ChangeDetector(SnapshotStore(session)).detect(plan_id)
        if not change.changed:
            return

        subscribers = await SubscriptionIndex(session).subscribers_for(plan_id)
        plan = await session.get(Plan, plan_id)
        if plan is None:
            return
        await self._dispatcher.dispatch(session, plan, target.name, change, subscribers)
