from __future__ import annotations

import uuid

import structlog
from thefuzz import fuzz

from backend.src.contracts.models import (
    ChangeDirection,
    ChangeResult,
    RawPlanSnapshot,
    TrackedSubscription,
)

logger = structlog.get_logger(__name__)

# Threshold for fuzzy matching extracted plan names against catalogue plan names
FUZZY_MATCH_THRESHOLD = 80


def _normalise_plan_name(name: str) -> str:
    """Lowercase and drop filler words vendors sprinkle around tier names."""
    cleaned = name.strip().lower()
    for filler in (" plan", " tier", " edition"):
        if cleaned.endswith(filler):
            cleaned = cleaned[: -len(filler)]
    return cleaned.strip()


def _best_match(
    plan_name: str, extracted: list[RawPlanSnapshot]
) -> tuple[RawPlanSnapshot | None, int]:
    best: RawPlanSnapshot | None = None
    best_score = 0
    target = _normalise_plan_name(plan_name)
    for candidate in extracted:
        candidate_name = _normalise_plan_name(candidate.plan_name)
        if candidate_name == target:
            return candidate, 100
        # Plain ratio: token_set_ratio would score "Pro" vs "Business Pro" as 100
        score = fuzz.ratio(target, candidate_name)
        if score > best_score:
            best, best_score = candidate, score
    return best, best_score


class PlanMatcher:
    """Pair a product's catalogue plans with the plans found on its pricing page.

    Matching rules:
    - Exact match on normalised name wins outright
    - Otherwise the closest fuzzy match at or above the threshold (80)
    - A product with a single active plan falls back to the first extracted
      plan when nothing matches by name
    - Each extracted plan is used at most once
    """

    def match(
        self,
        plans: list[tuple[uuid.UUID, str]],
        extracted: list[RawPlanSnapshot],
    ) -> dict[uuid.UUID, RawPlanSnapshot]:
        matched: dict[uuid.UUID, RawPlanSnapshot] = {}
        remaining = list(extracted)

        for plan_id, plan_name in plans:
            candidate, score = _best_match(plan_name, remaining)
            if candidate is None or score < FUZZY_MATCH_THRESHOLD:
                logger.debug(
                    "plan_unmatched",
                    plan=plan_name,
                    best=candidate.plan_name if candidate else None,
                    score=score,
                )
                continue
            matched[plan_id] = candidate
            remaining.remove(candidate)

        if not matched and len(plans) == 1 and extracted:
            plan_id, plan_name = plans[0]
            logger.info(
                "plan_fallback_to_first",
                plan=plan_name,
                extracted=extracted[0].plan_name,
            )
            matched[plan_id] = extracted[0]

        logger.info(
            "plan_matching_complete",
            plans_count=len(plans),
            extracted_count=len(extracted),
            matched_count=len(matched),
        )
        return matched


class SubscriptionMatcher:
    """Decide whether a detected price change is worth an alert for a subscriber.

    Matching rules:
    - Only ``changed`` results from active subscriptions qualify
    - Increases need ``alert_on_increase``
    - Decreases need ``alert_on_decrease``; a set ``target_price`` acts as a
      ceiling, so the new price must be at or below it
    """

    def qualifies(self, change: ChangeResult, subscription: TrackedSubscription) -> bool:
        if not change.changed or not subscription.is_active:
            return False

        if change.direction == ChangeDirection.INCREASE:
            return bool(subscription.alert_on_increase)

        if change.direction == ChangeDirection.DECREASE:
            if not subscription.alert_on_decrease:
                return False
            if subscription.target_price is not None and change.new_price is not None:
                if change.new_price > subscription.target_price:
                    logger.debug(
                        "skipped_above_target_price",
                        user_id=str(subscription.user_id),
                        new_price=change.new_price,
                        target_price=subscription.target_price,
                    )
                    return False
            return True

        return False

    def match(
        self,
        change: ChangeResult,
        subscriptions: list[TrackedSubscription],
    ) -> list[TrackedSubscription]:
        qualifying = [s for s in subscriptions if self.qualifies(change, s)]
        logger.info(
            "subscription_matching_complete",
            plan_id=str(change.plan_id),
            subscribers_count=len(subscriptions),
            qualifying_count=len(qualifying),
        )
        return qualifying
