"""Tests for cost-aware route re-ranking.

Covers:
- Unbudgeted users are steered to free routes
- Budgeted scoring and the 10% daily / 1% monthly filter
- Remaining budget takes recorded spend into account
- Failures return the original candidate annotated with the error
- Reporting helpers (recommendations, alerts)
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from framesense.routing.cost_optimizer import (
    SERVICE_PROFILES,
    CostOptimizer,
    ServiceProfile,
    is_unbudgeted,
)
from framesense.types import Budget, RouteCandidate


def _candidate(
    service_id: str = "openai-gpt35-vision",
    model_id: str = "gpt-3.5-vision",
    cost: float = 0.015,
    question_type_id: str = "DESCRIBE_SCENE",
) -> RouteCandidate:
    return RouteCandidate(
        service_id=service_id,
        model_id=model_id,
        estimated_cost=cost,
        question_type_id=question_type_id,
    )


@pytest.fixture
def optimizer() -> CostOptimizer:
    return CostOptimizer()


# ---------------------------------------------------------------------------
# Unbudgeted scoring
# ---------------------------------------------------------------------------


class TestUnbudgeted:
    """Users without a meaningful budget."""

    @pytest.mark.asyncio
    async def test_free_route_preferred(self, optimizer) -> None:
        result = await optimizer.optimize_route(_candidate(), None)

        assert result.service_id == "enhanced-ocr"
        assert result.estimated_cost == 0.0
        assert result.route_type == "alternative"
        assert result.optimization["savings"] == pytest.approx(0.015)
        assert result.optimization["alternatives_considered"] == 5
        assert result.scores.budget_fit == 0.5

    @pytest.mark.asyncio
    async def test_allowed_services_restrict_alternatives(self, optimizer) -> None:
        result = await optimizer.optimize_route(
            _candidate(),
            None,
            allowed_services={"openai-gpt35-vision", "google-vision-objects"},
        )

        assert result.service_id == "google-vision-objects"
        assert result.optimization["alternatives_considered"] == 3

    @pytest.mark.asyncio
    async def test_unknown_question_type_keeps_original(self, optimizer) -> None:
        result = await optimizer.optimize_route(_candidate(question_type_id="CUSTOM_ANALYSIS"))

        assert result.service_id == "openai-gpt35-vision"
        assert result.route_type == "original"
        assert result.optimization["alternatives_considered"] == 1

    @pytest.mark.parametrize(
        ("budget", "expected"),
        [
            (None, True),
            (Budget(), True),
            (Budget(daily=0.5), True),
            (Budget(monthly=5.0), True),
            (Budget(monthly=20.0), False),
            (Budget(daily=1.0, monthly=100.0), False),
        ],
    )
    def test_is_unbudgeted(self, budget, expected) -> None:
        assert is_unbudgeted(budget) is expected


# ---------------------------------------------------------------------------
# Budgeted scoring
# ---------------------------------------------------------------------------


class TestBudgeted:
    """Budget filter and weighted scoring."""

    @pytest.mark.asyncio
    async def test_expensive_route_excluded(self, optimizer) -> None:
        budget = Budget(user_id="user-1", daily=1.0, monthly=100.0)
        candidate = _candidate("openai-gpt4-vision", "gpt-4-vision", cost=0.20)

        result = await optimizer.optimize_route(candidate, budget)

        assert result.estimated_cost <= 0.1
        assert result.service_id == "google-vision-objects"
        assert result.optimization["savings"] == pytest.approx(0.194)
        assert result.optimization["quality_trade"]["acceptable"] is True

    @pytest.mark.asyncio
    async def test_nothing_survives_returns_original(self, optimizer) -> None:
        budget = Budget(user_id="user-1", daily=1.0, monthly=100.0)
        candidate = _candidate("openai-gpt4-vision", "gpt-4-vision", 0.20, "CUSTOM_ANALYSIS")

        result = await optimizer.optimize_route(candidate, budget)

        assert result.service_id == "openai-gpt4-vision"
        assert result.estimated_cost == 0.20
        assert result.optimization["budget_filtered"] is True

    @pytest.mark.asyncio
    async def test_remaining_budget_uses_recorded_spend(self, usage) -> None:
        usage.set_usage("user-1", daily_spend=0.95)
        optimizer = CostOptimizer(usage)
        budget = Budget(user_id="user-1", daily=1.0, monthly=100.0)

        result = await optimizer.optimize_route(_candidate(), budget)

        # 10% of the remaining $0.05 leaves only the free route
        assert result.service_id == "enhanced-ocr"

    @pytest.mark.asyncio
    async def test_spend_lookup_failure_counts_as_zero(self) -> None:
        tracker = AsyncMock()
        tracker.get_daily_spend.side_effect = RuntimeError("billing down")
        optimizer = CostOptimizer(tracker)
        budget = Budget(user_id="user-1", daily=1.0, monthly=100.0)

        result = await optimizer.optimize_route(_candidate(), budget)

        assert result.service_id == "google-vision-objects"

    def test_filter_by_budget_without_budget_keeps_all(self, optimizer) -> None:
        routes = [_candidate(cost=5.0), _candidate(cost=0.0)]

        assert optimizer.filter_by_budget(routes, None) == routes

    def test_filter_by_budget_monthly_cap(self, optimizer) -> None:
        routes = [_candidate(cost=0.05), _candidate(cost=0.2)]

        kept = optimizer.filter_by_budget(routes, Budget(monthly=10.0))

        assert [r.estimated_cost for r in kept] == [0.05]


# ---------------------------------------------------------------------------
# Failure handling and helpers
# ---------------------------------------------------------------------------


class TestFailuresAndHelpers:
    """Error annotation and scoring helpers."""

    @pytest.mark.asyncio
    async def test_internal_error_returns_original(self, optimizer) -> None:
        candidate = _candidate()

        with patch.object(optimizer, "alternative_routes", side_effect=RuntimeError("boom")):
            result = await optimizer.optimize_route(candidate)

        assert result.service_id == candidate.service_id
        assert result.optimization == {"error": "boom", "fallback": True}

    @pytest.mark.asyncio
    async def test_zero_quality_original_does_not_raise(self) -> None:
        profiles = dict(SERVICE_PROFILES)
        profiles["openai-gpt4-vision"] = ServiceProfile(0.04, 0.0, 0.6, "openai")
        optimizer = CostOptimizer(profiles=profiles)

        result = await optimizer.optimize_route(
            _candidate("openai-gpt4-vision", "gpt-4-vision", 0.04)
        )

        assert result.service_id == "enhanced-ocr"
        assert result.optimization["quality_trade"]["quality_percentage"] == 0.0
        assert result.optimization["quality_trade"]["quality_delta"] == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_metadata_failure_returns_original(self, optimizer) -> None:
        candidate = _candidate()

        with patch.object(optimizer, "quality_trade", side_effect=ZeroDivisionError("zero")):
            result = await optimizer.optimize_route(candidate)

        assert result.service_id == candidate.service_id
        assert result.optimization == {"error": "zero", "fallback": True}

    @pytest.mark.parametrize(
        ("price", "expected"),
        [(0.0, 1.0), (0.05, 0.5), (0.1, 0.0), (0.2, 0.0)],
    )
    def test_cost_score(self, price, expected) -> None:
        assert CostOptimizer.cost_score(price) == pytest.approx(expected)

    def test_budget_fit_without_budget(self) -> None:
        assert CostOptimizer.budget_fit(0.02, None, (None, None)) == 0.5

    def test_quality_trade(self, optimizer) -> None:
        trade = optimizer.quality_trade("openai-gpt4-vision", "enhanced-ocr")

        assert trade["quality_delta"] == pytest.approx(-0.28)
        assert trade["acceptable"] is False

    @pytest.mark.asyncio
    async def test_recommendations(self, usage) -> None:
        usage.set_usage("user-1", daily_spend=6.0, monthly_spend=60.0)
        optimizer = CostOptimizer(usage)

        recs = await optimizer.recommendations("user-1")

        assert [r["type"] for r in recs] == ["high_cost_usage", "batching", "caching"]
        assert recs[-1]["potential_savings"] == pytest.approx(24.0)

    @pytest.mark.asyncio
    async def test_should_alert_budget(self, usage) -> None:
        usage.set_usage("user-1", monthly_spend=79.0)
        optimizer = CostOptimizer(usage)
        budget = Budget(user_id="user-1", monthly=100.0)

        assert await optimizer.should_alert_budget(budget, 1.0) is True
        assert await optimizer.should_alert_budget(budget, 0.5) is False
        assert await optimizer.should_alert_budget(None, 1.0) is False

    @pytest.mark.asyncio
    async def test_projected_monthly_cost_without_spend(self, optimizer) -> None:
        assert await optimizer.projected_monthly_cost("user-1") == 0.0
