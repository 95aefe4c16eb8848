from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from bs4 import BeautifulSoup

from backend.src.config import Settings
from backend.src.contracts.errors import ExtractionError
from backend.src.contracts.models import (
    BillingCycle,
    ExtractionErrorKind,
    ExtractionFailure,
    PlanRef,
    ProductTarget,
    RawSnapshot,
)
from backend.src.scraper.scraper import PlaywrightExtractor, parse_pricing_page
from backend.src.scraper.strategies import (
    GenericStrategy,
    SlackStrategy,
    StrategyRegistry,
    build_default_registry,
    detect_billing_cycle,
    detect_currency,
    looks_like_challenge,
    parse_price,
)

SLACK_HTML = """
<html><head><title>Slack pricing</title></head><body>
  <div data-qa="pricing_card">
    <h3>Free</h3>
    <span data-qa="price">$0</span>
    <ul><li>90 days of message history</li></ul>
  </div>
  <div data-qa="pricing_card">
    <h3>Pro</h3>
    <span data-qa="price">$8.75 USD per person/month</span>
    <ul><li>Unlimited message history</li><li>Huddles</li><li>Huddles</li></ul>
  </div>
  <div data-qa="pricing_card">
    <h3>Enterprise Grid</h3>
    <span data-qa="price">Contact sales</span>
  </div>
</body></html>
"""

GENERIC_HTML = """
<html><body>
  <section class="pricing-card">
    <h2>Starter</h2><p class="price">€1.299,00 per year</p>
    <li class="feature">5 projects</li>
  </section>
  <section class="pricing-card">
    <h2>Starter</h2><p class="price">€1.299,00 per year</p>
  </section>
  <section class="pricing-card">
    <h2>Lifetime</h2><p class="price">£49 one-time</p>
  </section>
</body></html>
"""

CHALLENGE_HTML = """
<html><head><title>Just a moment...</title></head>
<body><div id="cf-challenge-running">Checking your browser</div></body></html>
"""

REDESIGNED_HTML = """
<html><head><title>Pricing</title></head>
<body><div class="tiers-v2"><div class="tier">Pro - 10 dollars</div></div></body></html>
"""


def _target(slug: str = "slack") -> ProductTarget:
    return ProductTarget(
        id=uuid.uuid4(),
        slug=slug,
        name=slug.title(),
        source_url=f"https://{slug}.example.com/pricing",
        plans=[PlanRef(id=uuid.uuid4(), name="Pro")],
    )


# ── Price parsing ─────────────────────────────────────────────────────────────


class TestParsePrice:
    def test_dollar_price(self) -> None:
        assert parse_price("$8.75") == 8.75

    def test_integer_price(self) -> None:
        assert parse_price("$12 per month") == 12.0

    def test_thousands_separator(self) -> None:
        assert parse_price("$1,299") == 1299.0

    def test_european_format(self) -> None:
        assert parse_price("€1.299,00") == 1299.0

    def test_comma_decimal(self) -> None:
        assert parse_price("149,00 kr") == 149.0

    def test_free_is_zero(self) -> None:
        assert parse_price("Free") == 0.0

    def test_contact_sales_is_none(self) -> None:
        assert parse_price("Contact sales") is None

    def test_empty_is_none(self) -> None:
        assert parse_price("   ") is None

    def test_discount_badge_not_merged(self) -> None:
        assert parse_price("$15 20% off") == 15.0

    def test_seat_count_not_merged(self) -> None:
        assert parse_price("$10 2 users") == 10.0

    def test_space_thousands_separator(self) -> None:
        assert parse_price("1\xa0299,00 €") == 1299.0



class TestDetectors:
    def test_currency_markers(self) -> None:
        assert detect_currency("€10") == "EUR"
        assert detect_currency("£10") == "GBP"
        assert detect_currency("$10") == "USD"
        assert detect_currency("10", default="NOK") == "NOK"

    def test_billing_cycle(self) -> None:
        assert detect_billing_cycle("$10 per month") == BillingCycle.MONTHLY
        assert detect_billing_cycle("$100 per year") == BillingCycle.YEARLY
        assert detect_billing_cycle("$8/mo billed annually") == BillingCycle.MONTHLY
        assert detect_billing_cycle("$49 one-time") == BillingCycle.ONE_TIME
        assert detect_billing_cycle("$10") == BillingCycle.MONTHLY

    def test_challenge_by_title(self) -> None:
        soup = BeautifulSoup(CHALLENGE_HTML, "lxml")
        assert looks_like_challenge(soup) is True

    def test_normal_page_is_not_challenge(self) -> None:
        soup = BeautifulSoup(SLACK_HTML, "lxml")
        assert looks_like_challenge(soup) is False


# ── Strategies ────────────────────────────────────────────────────────────────


class TestSlackStrategy:
    def test_extracts_priced_plans(self) -> None:
        plans = SlackStrategy().extract_plans(BeautifulSoup(SLACK_HTML, "lxml"))
        names = [p.plan_name for p in plans]
        assert names == ["Free", "Pro"]

    def test_pro_plan_fields(self) -> None:
        plans = SlackStrategy().extract_plans(BeautifulSoup(SLACK_HTML, "lxml"))
        pro = next(p for p in plans if p.plan_name == "Pro")
        assert pro.price == 8.75
        assert pro.currency == "USD"
        assert pro.billing_cycle == BillingCycle.MONTHLY
        assert pro.features == ["Unlimited message history", "Huddles"]
        assert pro.source == "web_scraping"

    def test_free_plan_is_zero_not_missing(self) -> None:
        plans = SlackStrategy().extract_plans(BeautifulSoup(SLACK_HTML, "lxml"))
        free = next(p for p in plans if p.plan_name == "Free")
        assert free.price == 0.0

    def test_ready_selector_is_card_selector(self) -> None:
        assert SlackStrategy().ready_selector == '[data-qa="pricing_card"]'


class TestGenericStrategy:
    def test_dedupes_and_parses(self) -> None:
        plans = GenericStrategy().extract_plans(BeautifulSoup(GENERIC_HTML, "lxml"))
        assert [p.plan_name for p in plans] == ["Starter", "Lifetime"]

        starter, lifetime = plans
        assert starter.price == 1299.0
        assert starter.currency == "EUR"
        assert starter.billing_cycle == BillingCycle.YEARLY
        assert lifetime.currency == "GBP"
        assert lifetime.billing_cycle == BillingCycle.ONE_TIME

    def test_has_no_ready_selector(self) -> None:
        assert GenericStrategy().ready_selector is None

    def test_price_container_with_badge(self) -> None:
        html = (
            '<div class="plan-card"><h3>Team</h3>'
            '<div class="price">$15 <span>20% off</span></div></div>'
        )
        plans = GenericStrategy().extract_plans(BeautifulSoup(html, "lxml"))
        assert [(p.plan_name, p.price) for p in plans] == [("Team", 15.0)]



class TestStrategyRegistry:
    def test_known_slug(self) -> None:
        registry = build_default_registry()
        assert isinstance(registry.get("slack"), SlackStrategy)
        assert "slack" in registry
        assert "microsoft-365" in registry.slugs

    def test_unknown_slug_falls_back(self) -> None:
        registry = build_default_registry()
        assert "acme" not in registry
        assert isinstance(registry.get("acme"), GenericStrategy)

    def test_custom_fallback(self) -> None:
        fallback = SlackStrategy()
        registry = StrategyRegistry(fallback=fallback)
        assert registry.get("anything") is fallback


# ── Page parsing ──────────────────────────────────────────────────────────────


class TestParsePricingPage:
    def test_returns_plans(self) -> None:
        plans = parse_pricing_page(SLACK_HTML, SlackStrategy())
        assert len(plans) == 2

    def test_challenge_page_is_blocked(self) -> None:
        with pytest.raises(ExtractionError) as exc_info:
            parse_pricing_page(CHALLENGE_HTML, SlackStrategy())
        assert exc_info.value.kind == ExtractionErrorKind.BLOCKED_OR_CHALLENGED

    def test_redesigned_page_has_no_markup(self) -> None:
        with pytest.raises(ExtractionError) as exc_info:
            parse_pricing_page(REDESIGNED_HTML, SlackStrategy())
        assert exc_info.value.kind == ExtractionErrorKind.NO_PRICING_MARKUP_FOUND


# ── Extractor ─────────────────────────────────────────────────────────────────


@pytest.fixture()
def extractor() -> PlaywrightExtractor:
    return PlaywrightExtractor(
        settings=Settings(
            database_url="sqlite+aiosqlite:///:memory:",
            proxy_urls=["http://proxy-1:8080"],
            user_agents=["TestAgent/1.0"],
        )
    )


class TestPlaywrightExtractor:
    @pytest.mark.asyncio
    async def test_extract_success(self, extractor: PlaywrightExtractor) -> None:
        with patch.object(extractor, "_load_page", AsyncMock(return_value=SLACK_HTML)) as load:
            result = await extractor.extract(_target("slack"))

        assert isinstance(result, RawSnapshot)
        assert result.product_slug == "slack"
        assert [p.plan_name for p in result.plans] == ["Free", "Pro"]
        url, strategy = load.call_args.args
        assert url == "https://slack.example.com/pricing"
        assert isinstance(strategy, SlackStrategy)

    @pytest.mark.asyncio
    async def test_extract_challenge_returns_failure(
        self, extractor: PlaywrightExtractor
    ) -> None:
        with patch.object(extractor, "_load_page", AsyncMock(return_value=CHALLENGE_HTML)):
            result = await extractor.extract(_target("slack"))

        assert isinstance(result, ExtractionFailure)
        assert result.kind == ExtractionErrorKind.BLOCKED_OR_CHALLENGED

    @pytest.mark.asyncio
    async def test_extract_navigation_timeout_returns_failure(
        self, extractor: PlaywrightExtractor
    ) -> None:
        error = ExtractionError(ExtractionErrorKind.NAVIGATION_TIMEOUT, "Timed out")
        with patch.object(extractor, "_load_page", AsyncMock(side_effect=error)):
            result = await extractor.extract(_target("notion"))

        assert isinstance(result, ExtractionFailure)
        assert result.kind == ExtractionErrorKind.NAVIGATION_TIMEOUT
        assert result.product_slug == "notion"

    @pytest.mark.asyncio
    async def test_unknown_product_uses_generic_strategy(
        self, extractor: PlaywrightExtractor
    ) -> None:
        with patch.object(extractor, "_load_page", AsyncMock(return_value=GENERIC_HTML)) as load:
            result = await extractor.extract(_target("acme"))

        assert isinstance(result, RawSnapshot)
        assert isinstance(load.call_args.args[1], GenericStrategy)

    def test_rotation_uses_configured_pools(self, extractor: PlaywrightExtractor) -> None:
        assert extractor._random_user_agent() == "TestAgent/1.0"
        assert extractor._random_proxy() == {"server": "http://proxy-1:8080"}

    def test_no_proxy_when_unconfigured(self) -> None:
        extractor = PlaywrightExtractor(
            settings=Settings(database_url="sqlite+aiosqlite:///:memory:")
        )
        assert extractor._random_proxy() is None
        assert extractor._random_user_agent()
