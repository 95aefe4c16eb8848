from __future__ import annotations

import abc
import re

import structlog
from bs4 import BeautifulSoup, Tag

from backend.src.contracts.models import BillingCycle, RawPlanSnapshot

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# Separators only group thousands when exactly three digits follow.
_NUMBER_PATTERN = re.compile(r"\d{1,3}(?:[ \xa0.,]\d{3})+(?:[.,]\d{1,2})?|\d+(?:[.,]\d{1,2})?")


_CURRENCY_MARKERS: list[tuple[str, str]] = [
    ("US$", "USD"),
    ("€", "EUR"),
    ("£", "GBP"),
    ("¥", "JPY"),
    ("₹", "INR"),
    ("$", "USD"),
    ("EUR", "EUR"),
    ("GBP", "GBP"),
    ("USD", "USD"),
]

_MONTHLY_MARKERS = ("/mo", "per month", "a month", "monthly")
_YEARLY_MARKERS = ("/yr", "/year", "per year", "annually", "a year", "yearly")
_ONE_TIME_MARKERS = ("one-time", "one time", "lifetime")
_FREE_MARKERS = ("free",)

# Page titles served by common bot-protection interstitials.
_CHALLENGE_TITLES = (
    "just a moment",
    "attention required",
    "access denied",
    "are you a robot",
    "security check",
    "pardon our interruption",
)
_CHALLENGE_SELECTORS = (
    "#challenge-form",
    "#cf-challenge-running",
    "#challenge-running",
    "div#px-captcha",
    "form#captcha-form",
)


def parse_price(text: str) -> float | None:
    """Extract a numeric price from text like '$8.75', '€1.299,00', 'Free'.

    Returns None when no price can be read, so a missing price is never
    confused with a genuine free tier (0.0).
    """
    cleaned = text.strip()
    if not cleaned:
        return None

    match = _NUMBER_PATTERN.search(cleaned)
    if match is None:
        if any(marker in cleaned.lower() for marker in _FREE_MARKERS):
            return 0.0
        return None

    number = match.group(0).replace("\xa0", " ")
    # Handle European format: "1.299,00" with "," as decimal
    if "," in number and "." in number:
        if number.rfind(",") > number.rfind("."):
            number = number.replace(".", "").replace(",", ".")
        else:
            number = number.replace(",", "")
    elif "," in number:
        parts = number.split(",")
        if len(parts) == 2 and len(parts[1]) == 2:
            # e.g. "149,00" -> "149.00"
            number = number.replace(",", ".")
        else:
            # e.g. "1,299" -> "1299"
            number = number.replace(",", "")
    number = number.replace(" ", "")
    try:
        return float(number)
    except ValueError:
        return None


def detect_currency(text: str, default: str = "USD") -> str:
    for marker, code in _CURRENCY_MARKERS:
        if marker in text:
            return code
    return default


def detect_billing_cycle(text: str) -> BillingCycle:
    lower = text.lower()
    if any(marker in lower for marker in _ONE_TIME_MARKERS):
        return BillingCycle.ONE_TIME
    # "per month, billed annually" is still a monthly price
    if any(marker in lower for marker in _MONTHLY_MARKERS):
        return BillingCycle.MONTHLY
    if any(marker in lower for marker in _YEARLY_MARKERS):
        return BillingCycle.YEARLY
    return BillingCycle.MONTHLY


def looks_like_challenge(soup: BeautifulSoup) -> bool:
    """Return True if the page is an anti-bot interstitial rather than content."""
    title = soup.title.get_text(strip=True).lower() if soup.title else ""
    if any(marker in title for marker in _CHALLENGE_TITLES):
        return True
    return any(soup.select_one(selector) is not None for selector in _CHALLENGE_SELECTORS)


class ExtractionStrategy(abc.ABC):
    """Locates pricing plans within a loaded pricing page."""

    # Selector the browser waits for before the DOM is captured.
    ready_selector: str | None = None
    default_currency: str = "USD"

    @abc.abstractmethod
    def extract_plans(self, soup: BeautifulSoup) -> list[RawPlanSnapshot]:
        ...


class CardStrategy(ExtractionStrategy):
    """Pricing pages laid out as one card per plan.

    ``card_selectors`` are tried in rank order and the first selector that
    matches anything wins; the remaining selectors run inside each card.
    """

    card_selectors: tuple[str, ...] = ()
    name_selector: str = "h2, h3"
    price_selector: str = ".price"
    feature_selector: str = "li"

    @property
    def ready_selector(self) -> str | None:  # type: ignore[override]
        return ", ".join(self.card_selectors) if self.card_selectors else None

    def extract_plans(self, soup: BeautifulSoup) -> list[RawPlanSnapshot]:
        cards: list[Tag] = []
        matched_selector: str | None = None
        for selector in self.card_selectors:
            cards = soup.select(selector)
            if cards:
                matched_selector = selector
                break

        plans: list[RawPlanSnapshot] = []
        seen_names: set[str] = set()
        for card in cards:
            try:
                plan = self._parse_card(card)
            except Exception:
                logger.warning(
                    "plan_card_parse_error",
                    card_html=str(card)[:200],
                    exc_info=True,
                )
                continue
            if plan is None or plan.plan_name.lower() in seen_names:
                continue
            seen_names.add(plan.plan_name.lower())
            plans.append(plan)

        logger.debug(
            "plan_cards_parsed",
            strategy=type(self).__name__,
            selector=matched_selector,
            cards=len(cards),
            plans=len(plans),
        )
        return plans

    def _parse_card(self, card: Tag) -> RawPlanSnapshot | None:
        name_el = card.select_one(self.name_selector)
        name = name_el.get_text(" ", strip=True) if name_el else ""
        if not name:
            return None

        price_el = card.select_one(self.price_selector)
        if price_el is None:
            return None
        price_text = price_el.get_text(" ", strip=True)
        price = parse_price(price_text)
        if price is None:
            # "Contact sales" and friends: no observable price for this plan
            return None

        features: list[str] = []
        for feature_el in card.select(self.feature_selector):
            feature = feature_el.get_text(" ", strip=True)
            if feature and feature not in features:
                features.append(feature)

        card_text = card.get_text(" ", strip=True)
        return RawPlanSnapshot(
            plan_name=name,
            price=price,
            currency=detect_currency(price_text, self.default_currency),
            billing_cycle=detect_billing_cycle(card_text),
            features=features,
        )


class SlackStrategy(CardStrategy):
    card_selectors = ('[data-qa="pricing_card"]',)
    name_selector = "h3"
    price_selector = '[data-qa="price"]'


class NotionStrategy(CardStrategy):
    card_selectors = ('[data-testid="pricing-plan"]',)
    name_selector = "h3"
    price_selector = '[data-testid="price"]'


class FigmaStrategy(CardStrategy):
    card_selectors = ('[data-testid="pricing-card"]',)
    name_selector = "h2"
    price_selector = '[data-testid="price-amount"]'


class SalesforceStrategy(CardStrategy):
    card_selectors = (
        ".pricing-card",
        '[data-testid*="pricing"]',
        ".price-card",
        ".plan-card",
    )
    name_selector = "h2, h3, .plan-name, .title"
    price_selector = '.price, .cost, [class*="price"]'
    feature_selector = "li, .feature"


class HubSpotStrategy(CardStrategy):
    card_selectors = ('[data-test-id*="pricing"], .pricing-card, .plan-card',)
    name_selector = "h2, h3, .plan-title"
    price_selector = '.price, .cost, [class*="price"]'


class Microsoft365Strategy(CardStrategy):
    card_selectors = ('.m-product-placement-item, .pricing-card, [data-m*="pricing"]',)
    name_selector = "h3, h4, .product-title"
    price_selector = '.price, .cost, [class*="price"]'


class ZoomStrategy(CardStrategy):
    card_selectors = ('.pricing-card, .plan-card, [class*="pricing"]',)
    name_selector = "h2, h3, .plan-name"
    price_selector = '.price, .cost, [class*="price"]'


class AsanaStrategy(CardStrategy):
    card_selectors = ('[data-testid*="pricing"], .pricing-card, .plan-card',)
    name_selector = "h2, h3, .plan-title"
    price_selector = '.price, .cost, [class*="price"]'


class GenericStrategy(CardStrategy):
    """Fallback for sites without a dedicated strategy: tries common pricing markup in rank order."""

    card_selectors = (
        '[data-testid*="pricing"]',
        '[data-test*="pricing"]',
        ".pricing-card",
        ".plan-card",
        ".price-card",
        '[class*="pricing"]',
        '[class*="plan"]',
    )
    name_selector = 'h1, h2, h3, h4, .title, .name, [class*="title"], [class*="name"]'
    price_selector = '.price, .cost, [class*="price"], [class*="cost"]'
    feature_selector = 'li, .feature, [class*="feature"]'

    @property
    def ready_selector(self) -> str | None:  # type: ignore[override]
        # Too broad to be a meaningful readiness signal; rely on network idle.
        return None


class StrategyRegistry:
    """Maps product slugs to extraction strategies, with a generic fallback.

    New sites are supported by registering a strategy here; the extractor
    never branches on the product itself.
    """

    def __init__(self, fallback: ExtractionStrategy | None = None) -> None:
        self._strategies: dict[str, ExtractionStrategy] = {}
        self._fallback = fallback if fallback is not None else GenericStrategy()

    def register(self, slug: str, strategy: ExtractionStrategy) -> None:
        self._strategies[slug] = strategy

    def get(self, slug: str) -> ExtractionStrategy:
        strategy = self._strategies.get(slug)
        if strategy is None:
            logger.debug("strategy_fallback", product=slug)
            return self._fallback
        return strategy

    def __contains__(self, slug: object) -> bool:
        return slug in self._strategies

    @property
    def slugs(self) -> list[str]:
        return sorted(self._strategies)


def build_default_registry() -> StrategyRegistry:
    registry = StrategyRegistry()
    registry.register("slack", SlackStrategy())
    registry.register("notion", NotionStrategy())
    registry.register("figma", FigmaStrategy())
    registry.register("salesforce", SalesforceStrategy())
    registry.register("hubspot", HubSpotStrategy())
    registry.register("microsoft-365", Microsoft365Strategy())
    registry.register("zoom", ZoomStrategy())
    registry.register("asana", AsanaStrategy())
    return registry
