"""User/billing collaborator interface and an in-memory implementation.

The routing core reads spend and request counts and reports successful
requests back. Every call is best-effort from the core's point of view:
callers catch and log failures and carry on.

InMemoryUsageTracker keeps per-user counters and resets them when a new
UTC day or month starts. It is not persistent and is meant for tests,
development and single-process deployments.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

import structlog

from framesense.types import Budget, Tier, UserTierProfile

log = structlog.get_logger(__name__)


@runtime_checkable
class UsageTracker(Protocol):
    """What the core needs from the user/billing system."""

    async def get_daily_spend(self, user_id: str) -> float:
        ...

    async def get_monthly_spend(self, user_id: str) -> float:
        ...

    async def get_user_tier_profile(self, user_id: str) -> UserTierProfile:
        ...

    async def get_budget(self, user_id: str) -> Budget | None:
        ...

    async def track_access(
        self,
        user_id: str,
        question_type_id: str,
        service_id: str,
        cost: float,
    ) -> None:
        ...


@dataclass
class UserUsage:
    """Counters for one user.

    Attributes:
        daily_spend: USD spent today
        monthly_spend: USD spent this month
        daily_requests: Requests tracked today
        monthly_requests: Requests tracked this month
        last_reset_date: Date of last daily reset (YYYY-MM-DD)
        last_reset_month: Month of last monthly reset (YYYY-MM)
    """

    daily_spend: float = 0.0
    monthly_spend: float = 0.0
    daily_requests: int = 0
    monthly_requests: int = 0
    last_reset_date: str = ""
    last_reset_month: str = ""

    def __post_init__(self) -> None:
        if not self.last_reset_date:
            self.last_reset_date = datetime.now(UTC).strftime("%Y-%m-%d")
        if not self.last_reset_month:
            self.last_reset_month = datetime.now(UTC).strftime("%Y-%m")


class InMemoryUsageTracker:
    """Per-user usage counters with day/month rollover."""

    def __init__(self, default_tier: Tier = Tier.FREE) -> None:
        self._default_tier = Tier(default_tier)
        self._tiers: dict[str, Tier] = {}
        self._budgets: dict[str, Budget] = {}
        self._usage: dict[str, UserUsage] = {}
        # (user_id, question_type_id, service_id, cost) in arrival order
        self.history: list[tuple[str, str, str, float]] = []

    # ------------------------------------------------------------------
    # Setup helpers
    # ------------------------------------------------------------------

    def set_tier(self, user_id: str, tier: Tier | str) -> None:
        self._tiers[user_id] = Tier(tier)

    def set_budget(self, user_id: str, daily: float | None = None, monthly: float | None = None) -> None:
        self._budgets[user_id] = Budget(user_id=user_id, daily=daily, monthly=monthly)

    def set_usage(self, user_id: str, **counters: float) -> None:
        """Overwrite counters (daily_spend, monthly_requests, ...) for a user."""
        usage = self._get_usage(user_id)
        for name, value in counters.items():
            if not hasattr(usage, name):
                raise AttributeError(f"Unknown usage counter: {name}")
            setattr(usage, name, value)

    # ------------------------------------------------------------------
    # UsageTracker
    # ------------------------------------------------------------------

    async def get_daily_spend(self, user_id: str) -> float:
        return self._get_usage(user_id).daily_spend

    async def get_monthly_spend(self, user_id: str) -> float:
        return self._get_usage(user_id).monthly_spend

    async def get_budget(self, user_id: str) -> Budget | None:
        return self._budgets.get(user_id)

    async def get_user_tier_profile(self, user_id: str) -> UserTierProfile:
        usage = self._get_usage(user_id)
        return UserTierProfile(
            user_id=user_id,
            tier=self._tiers.get(user_id, self._default_tier),
            daily_spend=usage.daily_spend,
            monthly_spend=usage.monthly_spend,
            daily_request_count=usage.daily_requests,
            monthly_request_count=usage.monthly_requests,
        )

    async def track_access(
        self,
        user_id: str,
        question_type_id: str,
        service_id: str,
        cost: float,
    ) -> None:
        usage = self._get_usage(user_id)
        usage.daily_requests += 1
        usage.monthly_requests += 1
        usage.daily_spend += cost
        usage.monthly_spend += cost
        self.history.append((user_id, question_type_id, service_id, cost))
        log.debug(
            "usage.tracked",
            user_id=user_id,
            question_type=question_type_id,
            service_id=service_id,
            cost=cost,
            daily_requests=usage.daily_requests,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_usage(self, user_id: str) -> UserUsage:
        usage = self._usage.get(user_id)
        if usage is None:
            usage = self._usage[user_id] = UserUsage()
        self._maybe_reset(user_id, usage)
        return usage

    def _maybe_reset(self, user_id: str, usage: UserUsage) -> None:
        """Reset daily/monthly counters if a new period has started."""
        now = datetime.now(UTC)
        current_date = now.strftime("%Y-%m-%d")
        current_month = now.strftime("%Y-%m")

        if current_date != usage.last_reset_date:
            log.info("usage.daily_reset", user_id=user_id, previous_requests=usage.daily_requests)
            usage.daily_spend = 0.0
            usage.daily_requests = 0
            usage.last_reset_date = current_date

        if current_month != usage.last_reset_month:
            log.info("usage.monthly_reset", user_id=user_id, previous_requests=usage.monthly_requests)
            usage.monthly_spend = 0.0
            usage.monthly_requests = 0
            usage.last_reset_month = current_month
