from __future__ import annotations

import random
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from bs4 import BeautifulSoup
from playwright.async_api import BrowserContext, Route, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from backend.src.config import Settings, settings as default_settings
from backend.src.contracts.errors import ExtractionError
from backend.src.contracts.models import (
    ExtractionErrorKind,
    ExtractionFailure,
    ProductTarget,
    RawPlanSnapshot,
    RawSnapshot,
)
from backend.src.scraper.strategies import (
    ExtractionStrategy,
    StrategyRegistry,
    build_default_registry,
    looks_like_challenge,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_USER_AGENTS: list[str] = [
    (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_2) "
        "AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15"
    ),
    (
        "Mozilla/5.0 (X11; Linux x86_64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) "
        "Gecko/20100101 Firefox/121.0"
    ),
]

_BLOCKED_RESOURCE_TYPES: frozenset[str] = frozenset({"image", "font", "stylesheet", "media"})
_BLOCKED_STATUS_CODES: frozenset[int] = frozenset({401, 403, 429, 503})


async def _block_non_essential(route: Route) -> None:
    if route.request.resource_type in _BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


def parse_pricing_page(html: str, strategy: ExtractionStrategy) -> list[RawPlanSnapshot]:
    """Run a strategy against captured page HTML.

    Raises ExtractionError when nothing usable is found, distinguishing an
    anti-bot interstitial from markup the strategy does not recognise.
    """
    soup = BeautifulSoup(html, "lxml")
    plans = strategy.extract_plans(soup)
    if plans:
        return plans
    if looks_like_challenge(soup):
        raise ExtractionError(
            ExtractionErrorKind.BLOCKED_OR_CHALLENGED,
            "Anti-bot challenge page served instead of pricing",
        )
    raise ExtractionError(
        ExtractionErrorKind.NO_PRICING_MARKUP_FOUND,
        f"No recognizable pricing markup ({type(strategy).__name__})",
    )


class PlaywrightExtractor:
    """Loads a product's pricing page in a headless browser and extracts its plans.

    Every call gets its own browser and context, torn down on all exit
    paths. Failures are returned as ExtractionFailure values so callers can
    decide whether to retry.
    """

    def __init__(
        self,
        registry: StrategyRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._registry = registry if registry is not None else build_default_registry()
        self._settings = settings if settings is not None else default_settings

    @property
    def registry(self) -> StrategyRegistry:
        return self._registry

    def _random_user_agent(self) -> str:
        return random.choice(self._settings.user_agents or _USER_AGENTS)

    def _random_proxy(self) -> dict[str, Any] | None:
        if not self._settings.proxy_urls:
            return None
        return {"server": random.choice(self._settings.proxy_urls)}

    @asynccontextmanager
    async def browser_session(self) -> AsyncIterator[BrowserContext]:
        """Yield an isolated browser context; browser and context are always closed."""
        async with async_playwright() as pw:
            browser = await pw.chromium.launch(headless=True, proxy=self._random_proxy())
            try:
                context = await browser.new_context(
                    user_agent=self._random_user_agent(),
                    viewport={"width": 1920, "height": 1080},
                    locale="en-US",
                    timezone_id="America/New_York",
                )
                try:
                    await context.route("**/*", _block_non_essential)
                    yield context
                finally:
                    await context.close()
            finally:
                await browser.close()

    async def _load_page(self, url: str, strategy: ExtractionStrategy) -> str:
        log = logger.bind(url=url)
        async with self.browser_session() as context:
            page = await context.new_page()
            try:
                response = await page.goto(
                    url,
                    wait_until="domcontentloaded",
                    timeout=self._settings.navigation_timeout_ms,
                )
            except PlaywrightTimeoutError as exc:
                raise ExtractionError(
                    ExtractionErrorKind.NAVIGATION_TIMEOUT,
                    f"Timed out loading {url}",
                ) from exc
            except PlaywrightError as exc:
                raise ExtractionError(
                    ExtractionErrorKind.NAVIGATION_TIMEOUT,
                    f"Navigation to {url} failed: {exc}",
                ) from exc

            if response is not None and response.status in _BLOCKED_STATUS_CODES:
                raise ExtractionError(
                    ExtractionErrorKind.BLOCKED_OR_CHALLENGED,
                    f"{url} answered HTTP {response.status}",
                )

            try:
                await page.wait_for_load_state(
                    "networkidle", timeout=self._settings.navigation_timeout_ms
                )
            except PlaywrightTimeoutError:
                # Pages with long-polling never go idle; extract what rendered.
                log.debug("network_idle_timeout")

            if strategy.ready_selector and self._settings.selector_timeout_ms > 0:
                try:
                    await page.wait_for_selector(
                        strategy.ready_selector,
                        timeout=self._settings.selector_timeout_ms,
                    )
                except PlaywrightTimeoutError:
                    log.info("ready_selector_missing", selector=strategy.ready_selector)

            return await page.content()

    async def extract(self, product: ProductTarget) -> RawSnapshot | ExtractionFailure:
        log = logger.bind(product=product.slug, url=product.source_url)
        strategy = self._registry.get(product.slug)
        log.info("extraction_start", strategy=type(strategy).__name__)

        try:
            html = await self._load_page(product.source_url, strategy)
            plans = parse_pricing_page(html, strategy)
        except ExtractionError as exc:
            log.warning("extraction_failed", kind=exc.kind.value, error=exc.message)
            return ExtractionFailure(
                product_slug=product.slug,
                kind=exc.kind,
                message=exc.message,
            )

        log.info(
            "extraction_complete",
            plan_count=len(plans),
            plans=[p.plan_name for p in plans],
        )
        return RawSnapshot(product_slug=product.slug, url=product.source_url, plans=plans)
