"""Cost-aware re-ranking of a selected route.

Given the candidate picked by the model selector, the optimizer enumerates
the alternative routes known for the same question type, scores each one
and returns the best that survives the budget filter.

Scores (all 0..1):
    quality   static per service
    cost      1 - min(1, price / 0.10); free services score 1.0
    speed     static per service
    budgetFit 1 - request cost as a share of remaining daily and monthly
              budget, multiplied together, floored at 0 (0.5 with no budget)

Effectiveness:
    unbudgeted (no budget, daily < $1 or monthly < $10):
        0.2 * quality + 0.7 * cost + 0.1 * speed, then +0.5 for free
        routes and -0.3 for paid ones. Budget fit is not used here.
    budgeted:
        0.4 * quality + 0.3 * cost + 0.2 * speed + 0.1 * budgetFit

Budget filter: a route costing more than 10% of the remaining daily budget
or 1% of the remaining monthly budget is dropped. If nothing survives the
original candidate is returned unchanged. Any internal error returns the
original candidate annotated with the error.
"""

from __future__ import annotations

import calendar
import time
from collections.abc import Collection, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

import structlog

from framesense.services.usage import UsageTracker
from framesense.types import Budget, RouteCandidate, RouteScores

log = structlog.get_logger(__name__)

COST_SCALE = 0.10
DEFAULT_QUALITY = 0.5
DEFAULT_SPEED = 0.5
UNBUDGETED_DAILY_FLOOR = 1.0
UNBUDGETED_MONTHLY_FLOOR = 10.0
FREE_ROUTE_BONUS = 0.5
PAID_ROUTE_PENALTY = 0.3
DAILY_SHARE_CAP = 0.1
MONTHLY_SHARE_CAP = 0.01


@dataclass(frozen=True)
class ServiceProfile:
    """Static price/quality/speed figures for one upstream service."""
    base_cost: float
    quality: float
    speed: float
    provider: str


SERVICE_PROFILES: Mapping[str, ServiceProfile] = MappingProxyType({
    "enhanced-ocr": ServiceProfile(0.0, 0.7, 0.8, "local"),
    "google-vision-text": ServiceProfile(0.0015, 0.95, 0.9, "google"),
    "google-vision-objects": ServiceProfile(0.006, 0.9, 0.85, "google"),
    "google-vision-logos": ServiceProfile(0.0015, 0.9, 0.85, "google"),
    "google-vision-web": ServiceProfile(0.0035, 0.95, 0.8, "google"),
    "openai-gpt4-vision": ServiceProfile(0.04, 0.98, 0.6, "openai"),
    "openai-gpt35-vision": ServiceProfile(0.02, 0.85, 0.8, "openai"),
    "open-source-api": ServiceProfile(0.0, 0.6, 0.5, "plugin"),
})

# question type id -> (service_id, model_id, estimated_cost) alternatives
ALTERNATIVE_ROUTES: Mapping[str, tuple[tuple[str, str, float], ...]] = MappingProxyType({
    "PURE_TEXT": (
        ("enhanced-ocr", "tesseract", 0.0),
        ("google-vision-text", "google-vision", 0.0015),
    ),
    "COUNT_OBJECTS": (
        ("google-vision-objects", "google-vision", 0.006),
        ("openai-gpt35-vision", "gpt-3.5-vision", 0.02),
    ),
    "DETECT_OBJECTS": (
        ("google-vision-objects", "google-vision", 0.006),
        ("openai-gpt35-vision", "gpt-3.5-vision", 0.02),
    ),
    "DESCRIBE_SCENE": (
        ("openai-gpt35-vision", "gpt-3.5-vision", 0.02),
        ("openai-gpt4-vision", "gpt-4-vision", 0.04),
        ("google-vision-objects", "google-vision", 0.006),
        ("enhanced-ocr", "enhanced-ocr", 0.0),
    ),
    "IDENTIFY_CELEBRITY": (
        ("google-vision-web", "google-vision-web", 0.0035),
        ("openai-gpt4-vision", "gpt-4-vision", 0.04),
    ),
    "DETECT_LOGOS": (
        ("google-vision-logos", "google-vision", 0.0015),
        ("openai-gpt4-vision", "gpt-4-vision", 0.04),
    ),
    "ANALYZE_DOCUMENT": (
        ("enhanced-ocr", "enhanced-ocr", 0.0),
        ("google-vision-text", "google-vision", 0.0015),
    ),
})


def is_unbudgeted(budget: Budget | None) -> bool:
    """True for users without a meaningful budget (free-tier style scoring)."""
    if budget is None or not budget.is_set:
        return True
    if budget.daily and budget.daily < UNBUDGETED_DAILY_FLOOR:
        return True
    return bool(budget.monthly and budget.monthly < UNBUDGETED_MONTHLY_FLOOR)


class CostOptimizer:
    """Re-ranks routes by cost-effectiveness under a user's budget."""

    def __init__(
        self,
        usage: UsageTracker | None = None,
        *,
        profiles: Mapping[str, ServiceProfile] | None = None,
        alternatives: Mapping[str, tuple[tuple[str, str, float], ...]] | None = None,
    ) -> None:
        self._usage = usage
        self._profiles = dict(profiles or SERVICE_PROFILES)
        self._alternatives = dict(alternatives or ALTERNATIVE_ROUTES)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def optimize_route(
        self,
        candidate: RouteCandidate,
        budget: Budget | None = None,
        *,
        allowed_services: Collection[str] | None = None,
    ) -> RouteCandidate:
        """Return the most cost-effective route for candidate's question type.

        Never raises; on failure the original candidate comes back with
        optimization["error"] set.
        """
        start = time.perf_counter()
        try:
            routes = self.alternative_routes(candidate, allowed_services)
            remaining = await self._remaining_budget(budget)
            scored = [self._score(route, budget, remaining) for route in routes]
            scored.sort(key=lambda r: r.scores.effectiveness, reverse=True)
            surviving = self.filter_by_budget(scored, budget, remaining)
            if surviving:
                best = surviving[0]
                best.optimization = {
                    "original_cost": candidate.estimated_cost,
                    "optimized_cost": best.estimated_cost,
                    "savings": round(candidate.estimated_cost - best.estimated_cost, 6),
                    "quality_trade": self.quality_trade(candidate.service_id, best.service_id),
                    "alternatives_considered": len(routes),
                    "route_id": best.route_id,
                    "optimization_ms": round((time.perf_counter() - start) * 1000, 2),
                }
        except Exception as exc:
            log.error(
                "cost_optimizer.failed",
                service_id=candidate.service_id,
                error=str(exc),
            )
            return replace(
                candidate,
                optimization={"error": str(exc), "fallback": True},
            )

        if not surviving:
            log.info(
                "cost_optimizer.no_budget_compatible_route",
                service_id=candidate.service_id,
                considered=len(routes),
            )
            return replace(
                candidate,
                optimization={
                    "original_cost": candidate.estimated_cost,
                    "optimized_cost": candidate.estimated_cost,
                    "savings": 0.0,
                    "alternatives_considered": len(routes),
                    "budget_filtered": True,
                },
            )

        log.info(
            "cost_optimizer.selected",
            original=candidate.service_id,
            selected=best.service_id,
            effectiveness=round(best.scores.effectiveness, 3),
            savings=best.optimization["savings"],
        )
        return best

    def alternative_routes(
        self,
        candidate: RouteCandidate,
        allowed_services: Collection[str] | None = None,
    ) -> list[RouteCandidate]:
        """The original route followed by the known alternatives.

        Alternatives outside allowed_services are skipped; the original is
        always kept.
        """
        routes = [replace(candidate, route_type="original", scores=None, optimization={})]
        for service_id, model_id, cost in self._alternatives.get(candidate.question_type_id, ()):
            if allowed_services is not None and service_id not in allowed_services:
                continue
            routes.append(
                replace(
                    candidate,
                    service_id=service_id,
                    model_id=model_id,
                    estimated_cost=cost,
                    route_type="alternative",
                    scores=None,
                    optimization={},
                    selection_reason="cost-optimized",
                )
            )
        return routes

    def filter_by_budget(
        self,
        routes: list[RouteCandidate],
        budget: Budget | None,
        remaining: tuple[float | None, float | None] | None = None,
    ) -> list[RouteCandidate]:
        """Drop routes costing over 10% of remaining daily or 1% of remaining monthly budget."""
        if budget is None or not budget.is_set:
            return list(routes)
        daily_left, monthly_left = remaining or (budget.daily, budget.monthly)
        kept = []
        for route in routes:
            if daily_left is not None and route.estimated_cost > daily_left * DAILY_SHARE_CAP:
                continue
            if monthly_left is not None and route.estimated_cost > monthly_left * MONTHLY_SHARE_CAP:
                continue
            kept.append(route)
        return kept

    def quality_trade(self, original_service: str, optimized_service: str) -> dict[str, Any]:
        before = self._profile(original_service).quality
        after = self._profile(optimized_service).quality
        return {
            "quality_delta": round(after - before, 4),
            "quality_percentage": round((after / before - 1) * 100, 2) if before else 0.0,
            "acceptable": abs(after - before) < 0.2,
        }

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _profile(self, service_id: str) -> ServiceProfile:
        return self._profiles.get(
            service_id,
            ServiceProfile(0.0, DEFAULT_QUALITY, DEFAULT_SPEED, "unknown"),
        )

    @staticmethod
    def cost_score(price: float) -> float:
        return 1.0 - min(1.0, max(price, 0.0) / COST_SCALE)

    @staticmethod
    def budget_fit(
        price: float,
        budget: Budget | None,
        remaining: tuple[float | None, float | None],
    ) -> float:
        if budget is None or not budget.is_set:
            return 0.5
        score = 1.0
        for left in remaining:
            if left is not None:
                score *= max(0.0, 1 - price / max(left, 0.01))
        return max(0.0, min(1.0, score))

    def _score(
        self,
        route: RouteCandidate,
        budget: Budget | None,
        remaining: tuple[float | None, float | None],
    ) -> RouteCandidate:
        profile = self._profile(route.service_id)
        cost = self.cost_score(route.estimated_cost)
        fit = self.budget_fit(route.estimated_cost, budget, remaining)

        if is_unbudgeted(budget):
            effectiveness = profile.quality * 0.2 + cost * 0.7 + profile.speed * 0.1
            if route.estimated_cost == 0:
                effectiveness += FREE_ROUTE_BONUS
            else:
                effectiveness -= PAID_ROUTE_PENALTY
        else:
            effectiveness = (
                profile.quality * 0.4 + cost * 0.3 + profile.speed * 0.2 + fit * 0.1
            )

        route.scores = RouteScores(
            quality=profile.quality,
            cost=cost,
            speed=profile.speed,
            budget_fit=fit,
            effectiveness=effectiveness,
        )
        return route

    # ------------------------------------------------------------------
    # Spend lookups (best-effort)
    # ------------------------------------------------------------------

    async def _spend(self, user_id: str | None) -> tuple[float, float]:
        if self._usage is None or user_id is None:
            return 0.0, 0.0
        try:
            daily = await self._usage.get_daily_spend(user_id)
            monthly = await self._usage.get_monthly_spend(user_id)
        except Exception as exc:
            log.warning("cost_optimizer.spend_lookup_failed", user_id=user_id, error=str(exc))
            return 0.0, 0.0
        return daily, monthly

    async def _remaining_budget(
        self,
        budget: Budget | None,
    ) -> tuple[float | None, float | None]:
        if budget is None or not budget.is_set:
            return None, None
        daily_spent, monthly_spent = await self._spend(budget.user_id)
        daily_left = max(0.0, budget.daily - daily_spent) if budget.daily else None
        monthly_left = max(0.0, budget.monthly - monthly_spent) if budget.monthly else None
        return daily_left, monthly_left

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def recommendations(self, user_id: str) -> list[dict[str, Any]]:
        daily, monthly = await self._spend(user_id)
        recs = []
        if monthly > 50:
            recs.append({
                "type": "high_cost_usage",
                "message": "Consider using more cost-effective alternatives for basic tasks",
                "potential_savings": round(monthly * 0.3, 4),
            })
        if daily > 5:
            recs.append({
                "type": "batching",
                "message": "Batch similar requests together to reduce per-request overhead",
                "potential_savings": round(daily * 0.1, 4),
            })
        recs.append({
            "type": "caching",
            "message": "Enable aggressive caching to reduce repeated API calls",
            "potential_savings": round(monthly * 0.4, 4),
        })
        return recs

    async def projected_monthly_cost(self, user_id: str) -> float:
        """Month-to-date spend plus today's spend for each remaining day."""
        daily, monthly = await self._spend(user_id)
        today = datetime.now(UTC)
        days_in_month = calendar.monthrange(today.year, today.month)[1]
        return round(monthly + daily * (days_in_month - today.day), 4)

    async def should_alert_budget(
        self,
        budget: Budget | None,
        request_cost: float,
        alert_threshold: float = 0.8,
    ) -> bool:
        """True when this request would push monthly spend past the alert threshold."""
        if budget is None or not budget.monthly:
            return False
        _, monthly = await self._spend(budget.user_id)
        threshold = min(1.0, max(0.0, alert_threshold))
        return monthly + request_cost >= budget.monthly * threshold
