"""Subscription tier gating and request limits.

validate_access() is a pure check against a UserTierProfile snapshot. It
returns an AccessDecision; a denial always names a reason and the tier that
would lift it. Checks run in this order and the first failure wins:

    tier_insufficient -> daily_limit -> monthly_limit -> size_limit
        -> concurrency_limit -> cost_limit

track_access() reports a successful request to the usage collaborator in
the background; tracking failures are logged and never reach the caller.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

import structlog

from framesense.classification.question_types import QuestionType
from framesense.errors import AccessDenied
from framesense.services.usage import UsageTracker
from framesense.types import Tier, UserTierProfile

log = structlog.get_logger(__name__)

MB = 1024 * 1024


@dataclass(frozen=True)
class TierLimits:
    """Usage limits of one subscription tier."""
    daily_requests: int
    monthly_requests: int
    max_image_bytes: int
    max_concurrent_requests: int
    monthly_cost_limit: float | None = None


TIER_LIMITS: Mapping[Tier, TierLimits] = MappingProxyType({
    Tier.FREE: TierLimits(
        daily_requests=10,
        monthly_requests=200,
        max_image_bytes=2 * MB,
        max_concurrent_requests=1,
    ),
    Tier.PRO: TierLimits(
        daily_requests=100,
        monthly_requests=2000,
        max_image_bytes=10 * MB,
        max_concurrent_requests=3,
        monthly_cost_limit=50.0,
    ),
    Tier.PREMIUM: TierLimits(
        daily_requests=1000,
        monthly_requests=20000,
        max_image_bytes=50 * MB,
        max_concurrent_requests=10,
        monthly_cost_limit=500.0,
    ),
})

# Lowest tier allowed to call each upstream service
SERVICE_TIERS: Mapping[str, Tier] = MappingProxyType({
    "enhanced-ocr": Tier.FREE,
    "google-vision-text": Tier.FREE,
    "open-source-api": Tier.FREE,
    "google-vision-objects": Tier.PRO,
    "google-vision-logos": Tier.PRO,
    "openai-gpt35-vision": Tier.PRO,
    "google-vision-web": Tier.PREMIUM,
    "openai-gpt4-vision": Tier.PREMIUM,
})

_UPGRADE_OFFERS: tuple[dict[str, Any], ...] = (
    {
        "tier": Tier.PRO,
        "benefits": [
            "10x more requests (100/day)",
            "Object detection & counting",
            "Logo recognition",
            "Advanced scene analysis",
            "Email support",
        ],
        "enabled_question_types": [
            "COUNT_OBJECTS", "DETECT_OBJECTS", "DESCRIBE_SCENE", "DETECT_LOGOS", "ANALYZE_DOCUMENT",
        ],
        "monthly_cost": 19.99,
    },
    {
        "tier": Tier.PREMIUM,
        "benefits": [
            "1000 requests/day",
            "Celebrity identification",
            "Web entity search",
            "Priority processing",
            "Priority support",
        ],
        "enabled_question_types": ["IDENTIFY_CELEBRITY", "CUSTOM_ANALYSIS"],
        "monthly_cost": 99.99,
    },
)


@dataclass(frozen=True)
class AccessDecision:
    """Result of validate_access(). Denials carry reason and suggested_tier."""
    allowed: bool
    tier: Tier
    reason: str | None = None
    suggested_tier: Tier | None = None
    message: str = ""
    usage: dict[str, float] = field(default_factory=dict, compare=False)
    limits: dict[str, float] = field(default_factory=dict, compare=False)

    def to_error(self) -> AccessDenied:
        return AccessDenied(
            self.reason or "denied",
            self.message,
            suggested_tier=str(self.suggested_tier) if self.suggested_tier else None,
        )


class TierAccessControl:
    """Entitlement checks plus best-effort usage reporting."""

    def __init__(
        self,
        usage: UsageTracker | None = None,
        *,
        limits: Mapping[Tier, TierLimits] | None = None,
        service_tiers: Mapping[str, Tier] | None = None,
    ) -> None:
        self._usage = usage
        self._limits = dict(limits or TIER_LIMITS)
        self._service_tiers = dict(service_tiers or SERVICE_TIERS)
        self._tracking: set[asyncio.Task[None]] = set()

    def limits_for(self, tier: Tier | str) -> TierLimits:
        return self._limits[Tier(tier)]

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def validate_access(
        self,
        question_type: QuestionType,
        profile: UserTierProfile,
        *,
        image_size: int | None = None,
        active_requests: int = 0,
    ) -> AccessDecision:
        """Check whether profile may ask question_type right now.

        Args:
            question_type: Classified question type
            profile: Snapshot of the user's tier and usage
            image_size: Image size in bytes, if known
            active_requests: The user's other requests currently in flight
        """
        tier = profile.tier
        limits = self.limits_for(tier)
        required = question_type.minimum_tier
        # None at the top tier
        busier_tier = tier.next_up()
        usage = {
            "daily": profile.daily_request_count,
            "monthly": profile.monthly_request_count,
            "concurrent": active_requests,
            "monthly_cost": profile.monthly_spend,
        }
        limit_view = {
            "daily": limits.daily_requests,
            "monthly": limits.monthly_requests,
            "concurrent": limits.max_concurrent_requests,
            "max_image_bytes": limits.max_image_bytes,
        }

        def deny(reason: str, suggested: Tier | None, message: str) -> AccessDecision:
            log.info(
                "tier_access.denied",
                user_id=profile.user_id,
                tier=str(tier),
                question_type=question_type.id,
                reason=reason,
                suggested_tier=str(suggested) if suggested else None,
            )
            return AccessDecision(
                allowed=False,
                tier=tier,
                reason=reason,
                suggested_tier=suggested,
                message=message,
                usage=usage,
                limits=limit_view,
            )

        if not tier.can_access(required):
            return deny(
                "tier_insufficient",
                required,
                f"{question_type.id} requires {required} tier or higher",
            )
        if profile.daily_request_count >= limits.daily_requests:
            return deny(
                "daily_limit",
                busier_tier,
                f"Daily limit of {limits.daily_requests} requests exceeded",
            )
        if profile.monthly_request_count >= limits.monthly_requests:
            return deny(
                "monthly_limit",
                busier_tier,
                f"Monthly limit of {limits.monthly_requests} requests exceeded",
            )
        if image_size is not None and not self.validate_image_size(tier, image_size):
            return deny(
                "size_limit",
                self._smallest_tier_for_size(image_size),
                f"Image of {image_size} bytes exceeds the {limits.max_image_bytes} byte limit",
            )
        if active_requests >= limits.max_concurrent_requests:
            return deny(
                "concurrency_limit",
                busier_tier,
                f"Maximum {limits.max_concurrent_requests} concurrent requests allowed",
            )
        if limits.monthly_cost_limit is not None:
            projected = profile.monthly_spend + question_type.estimated_cost
            if projected > limits.monthly_cost_limit:
                return deny(
                    "cost_limit",
                    busier_tier,
                    f"Monthly cost limit of ${limits.monthly_cost_limit:.2f} would be exceeded",
                )

        log.debug(
            "tier_access.allowed",
            user_id=profile.user_id,
            tier=str(tier),
            question_type=question_type.id,
        )
        return AccessDecision(allowed=True, tier=tier, usage=usage, limits=limit_view)

    def validate_image_size(self, tier: Tier | str, image_size: int) -> bool:
        return image_size <= self.limits_for(tier).max_image_bytes

    def _smallest_tier_for_size(self, image_size: int) -> Tier | None:
        for tier in Tier:
            if image_size <= self._limits[tier].max_image_bytes:
                return tier
        return None

    def can_access_service(self, service_id: str, tier: Tier | str) -> bool:
        """Unknown services are premium-only."""
        required = self._service_tiers.get(service_id, Tier.PREMIUM)
        return Tier(tier).can_access(required)

    def available_services(self, tier: Tier | str) -> list[str]:
        return [sid for sid in self._service_tiers if self.can_access_service(sid, tier)]

    def upgrade_recommendations(
        self,
        profile: UserTierProfile,
        denied_question_types: list[str],
    ) -> list[dict[str, Any]]:
        """Offers for tiers above the user's that unlock any denied type."""
        offers = []
        for offer in _UPGRADE_OFFERS:
            if offer["tier"].level <= profile.tier.level:
                continue
            if any(qt in offer["enabled_question_types"] for qt in denied_question_types):
                offers.append({**offer, "tier": str(offer["tier"])})
        return offers

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def track_access(
        self,
        user_id: str,
        question_type_id: str,
        service_id: str,
        cost: float = 0.0,
    ) -> asyncio.Task[None] | None:
        """Report a successful request without waiting for the collaborator.

        Returns the background task (tests may await it), or None when no
        usage collaborator is configured.
        """
        if self._usage is None:
            return None
        task = asyncio.create_task(
            self._track(user_id, question_type_id, service_id, cost),
            name=f"track-access-{user_id}",
        )
        self._tracking.add(task)
        task.add_done_callback(self._tracking.discard)
        return task

    async def _track(self, user_id: str, question_type_id: str, service_id: str, cost: float) -> None:
        try:
            await self._usage.track_access(user_id, question_type_id, service_id, cost)
        except Exception as exc:
            log.warning(
                "tier_access.track_failed",
                user_id=user_id,
                service_id=service_id,
                error=str(exc),
            )

    async def drain(self) -> None:
        """Wait for in-flight tracking tasks."""
        if self._tracking:
            await asyncio.gather(*list(self._tracking), return_exceptions=True)
