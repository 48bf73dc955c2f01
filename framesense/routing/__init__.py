"""Question routing: model selection, tier gating, cost optimisation, fallback.

Public API:
- Router / RouteRequest / RouteOutcome: the end-to-end pipeline
- ModelSelector / ModelDescriptor: capability and tier aware model choice
- TierAccessControl / AccessDecision: entitlement and usage limit checks
- CostOptimizer: cheaper equivalent routes within budget
- FallbackManager / FallbackResult: retries, fallback chains, degraded responses
"""

from framesense.routing.cost_optimizer import CostOptimizer, is_unbudgeted
from framesense.routing.fallback import (
    FALLBACK_CHAINS,
    FallbackChainEntry,
    FallbackCondition,
    FallbackManager,
    FallbackRequest,
    FallbackResult,
    RetryPolicy,
    classify_error,
)
from framesense.routing.model_registry import (
    TIER_MODEL_PERMISSIONS,
    ModelDescriptor,
    TierModelPermissions,
    builtin_models,
)
from framesense.routing.model_selector import ModelSelector
from framesense.routing.router import RouteOutcome, RouteRequest, Router
from framesense.routing.tier_access import (
    SERVICE_TIERS,
    TIER_LIMITS,
    AccessDecision,
    TierAccessControl,
    TierLimits,
)

__all__ = [
    "FALLBACK_CHAINS",
    "SERVICE_TIERS",
    "TIER_LIMITS",
    "TIER_MODEL_PERMISSIONS",
    "AccessDecision",
    "CostOptimizer",
    "FallbackChainEntry",
    "FallbackCondition",
    "FallbackManager",
    "FallbackRequest",
    "FallbackResult",
    "ModelDescriptor",
    "ModelSelector",
    "RetryPolicy",
    "RouteOutcome",
    "RouteRequest",
    "Router",
    "TierAccessControl",
    "TierLimits",
    "TierModelPermissions",
    "builtin_models",
    "classify_error",
    "is_unbudgeted",
]
