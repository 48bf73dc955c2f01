"""Domain exceptions for the routing core.

Rejections that happen before any upstream cost is incurred
(AccessDenied, NoEligibleModel) carry a structured payload so callers can
return them to users directly. Component-local failures (CacheUnavailable,
CompressionFailure) are raised inside a component and caught by it.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class FailureKind(StrEnum):
    """Classification of an upstream service failure."""
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTH_ERROR = "auth_error"
    SERVICE_DOWN = "service_down"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNKNOWN = "unknown_error"


class FrameSenseError(Exception):
    """Base exception for all routing core failures."""


class UnknownServiceType(FrameSenseError, KeyError):
    """No cache strategy is registered for the requested service type."""

    def __init__(self, service_type: str) -> None:
        self.service_type = service_type
        super().__init__(f"Unknown service type: {service_type}")

    def __str__(self) -> str:
        return self.args[0]


class UnknownModel(FrameSenseError, KeyError):
    """Model id not present in the registry."""

    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        super().__init__(f"Model {model_id} not found")

    def __str__(self) -> str:
        return self.args[0]


class DuplicateTypeId(FrameSenseError, ValueError):
    """A question type with the same id is already registered."""


class DuplicateModelId(FrameSenseError, ValueError):
    """A model with the same id is already registered."""


class NoEligibleModel(FrameSenseError):
    """No enabled model satisfies tier, cost ceiling and capabilities.

    Terminal for the (question type, tier) pair; only a tier upgrade helps.
    """

    def __init__(self, question_type_id: str, tier: str) -> None:
        self.question_type_id = question_type_id
        self.tier = tier
        super().__init__(
            f"No available models for tier {tier} with capabilities "
            f"required by {question_type_id}"
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "category": "no_eligible_model",
            "message": str(self),
            "question_type": self.question_type_id,
            "tier": self.tier,
            "suggested_actions": [
                "Upgrade your plan to unlock more analysis models",
                "Contact support if problems continue",
            ],
        }


class AccessDenied(FrameSenseError):
    """User is not entitled to run this request right now."""

    def __init__(
        self,
        reason: str,
        message: str,
        suggested_tier: str | None = None,
    ) -> None:
        self.reason = reason
        self.message = message
        self.suggested_tier = suggested_tier
        super().__init__(message)

    def to_payload(self) -> dict[str, Any]:
        actions = []
        if self.suggested_tier:
            actions.append(f"Upgrade to {self.suggested_tier} for higher limits")
        if self.reason in ("daily_limit", "monthly_limit", "concurrency_limit"):
            actions.append("Try again later")
        actions.append("Contact support if problems continue")
        return {
            "category": "access_denied",
            "reason": self.reason,
            "message": self.message,
            "suggested_tier": self.suggested_tier,
            "upgrade_url": (
                f"/upgrade?tier={self.suggested_tier}&reason={self.reason}"
                if self.suggested_tier
                else None
            ),
            "suggested_actions": actions,
        }


class CacheUnavailable(FrameSenseError):
    """A cache tier could not be reached."""


class CompressionFailure(FrameSenseError):
    """A payload could not be compressed or decompressed."""


class UpstreamFailure(FrameSenseError):
    """An upstream analysis service returned an error."""

    def __init__(
        self,
        message: str,
        *,
        kind: FailureKind = FailureKind.UNKNOWN,
        service_id: str | None = None,
    ) -> None:
        self.kind = kind
        self.service_id = service_id
        super().__init__(message)


class FallbackExhausted(FrameSenseError):
    """Every step of a fallback chain failed."""

    def __init__(self, attempts: list[dict[str, Any]]) -> None:
        self.attempts = attempts
        super().__init__("All fallback options exhausted")
