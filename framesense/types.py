"""Value types shared across classification, selection and routing.

Everything here is a plain dataclass or StrEnum. Registries and tables live
next to the component that owns them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class Tier(StrEnum):
    """User subscription level. Ordering: free < pro < premium."""
    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"

    @property
    def level(self) -> int:
        return _TIER_LEVELS[self]

    def can_access(self, required: Tier | str) -> bool:
        """True when this tier is at or above required."""
        return self.level >= Tier(required).level

    def next_up(self) -> Tier | None:
        order = list(Tier)
        idx = order.index(self)
        return order[idx + 1] if idx + 1 < len(order) else None


_TIER_LEVELS = {Tier.FREE: 0, Tier.PRO: 1, Tier.PREMIUM: 2}


class Prioritize(StrEnum):
    """Heuristic used when neither preference nor default model applies."""
    BALANCED = "balanced"
    COST = "cost"
    SPEED = "speed"
    QUALITY = "quality"


@dataclass
class UserTierProfile:
    """Externally owned view of a user's entitlement and usage.

    The core only reads it; usage updates go back through the billing
    collaborator.
    """
    user_id: str
    tier: Tier = Tier.FREE
    daily_spend: float = 0.0
    monthly_spend: float = 0.0
    daily_request_count: int = 0
    monthly_request_count: int = 0

    def __post_init__(self) -> None:
        self.tier = Tier(self.tier)


@dataclass(frozen=True)
class Budget:
    """Optional per-user spending limits in USD. None means "not set"."""
    user_id: str | None = None
    daily: float | None = None
    monthly: float | None = None

    @property
    def is_set(self) -> bool:
        return bool(self.daily) or bool(self.monthly)


@dataclass(frozen=True)
class SelectionOptions:
    """Options for model selection."""
    prioritize: Prioritize = Prioritize.BALANCED


@dataclass
class RouteScores:
    """Per-candidate scores computed by the cost optimizer (all 0..1 except effectiveness)."""
    quality: float
    cost: float
    speed: float
    budget_fit: float
    effectiveness: float

    def to_dict(self) -> dict[str, float]:
        return {
            "quality": self.quality,
            "cost": self.cost,
            "speed": self.speed,
            "budget_fit": self.budget_fit,
            "effectiveness": self.effectiveness,
        }


@dataclass
class RouteCandidate:
    """One way of answering a request: a service plus the model behind it.

    Ephemeral; produced per request and never persisted.
    """
    service_id: str
    model_id: str
    estimated_cost: float
    question_type_id: str = ""
    scores: RouteScores | None = None
    selection_reason: str = ""
    fallback_model_id: str | None = None
    route_type: str = "original"
    optimization: dict[str, Any] = field(default_factory=dict)

    @property
    def route_id(self) -> str:
        return f"{self.service_id}-{self.model_id}-{self.estimated_cost}".replace(".", "_")
