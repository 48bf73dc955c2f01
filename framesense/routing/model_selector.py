"""Model selection under tier, cost ceiling and capability constraints.

Selection order:
1. The user's preferred model, if eligible
2. The question type's default model, if eligible
3. A heuristic: cheapest, fastest, best quality, or (default) the balanced
   ratio quality / (cost * 100 + 1)

An empty eligible set raises NoEligibleModel; that is terminal for the
(question type, tier) pair.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any

import structlog

from framesense.classification.question_types import QuestionType
from framesense.errors import DuplicateModelId, NoEligibleModel, UnknownModel
from framesense.routing.model_registry import (
    TIER_MODEL_PERMISSIONS,
    ModelDescriptor,
    TierModelPermissions,
    builtin_models,
)
from framesense.types import Prioritize, RouteCandidate, SelectionOptions, Tier

log = structlog.get_logger(__name__)

# Reference model for savings estimates
BASELINE_MODEL_ID = "gpt-4-vision"


class ModelSelector:
    """Chooses a model (and the service running it) for a question type."""

    def __init__(
        self,
        models: Iterable[ModelDescriptor] | None = None,
        tier_permissions: Mapping[Tier, TierModelPermissions] | None = None,
    ) -> None:
        self._models: dict[str, ModelDescriptor] = {}
        for model in builtin_models() if models is None else models:
            self.register_model(model)
        self._permissions = dict(tier_permissions or TIER_MODEL_PERMISSIONS)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    @property
    def models(self) -> Mapping[str, ModelDescriptor]:
        return MappingProxyType(self._models)

    def get_model(self, model_id: str) -> ModelDescriptor:
        try:
            return self._models[model_id]
        except KeyError:
            raise UnknownModel(model_id) from None

    def register_model(self, model: ModelDescriptor) -> None:
        """Add a model descriptor.

        Raises:
            DuplicateModelId: a model with the same id already exists
        """
        if model.id in self._models:
            raise DuplicateModelId(f"Model {model.id} already exists")
        self._models[model.id] = model
        log.debug("model_selector.model_registered", model_id=model.id, enabled=model.enabled)

    def toggle_model(self, model_id: str, enabled: bool) -> None:
        """Enable or disable a model; unknown ids are ignored."""
        model = self._models.get(model_id)
        if model is None:
            log.warning("model_selector.toggle_unknown_model", model_id=model_id)
            return
        model.enabled = enabled
        log.info("model_selector.model_toggled", model_id=model_id, enabled=enabled)

    def permissions_for(self, tier: Tier | str) -> TierModelPermissions:
        try:
            return self._permissions[Tier(tier)]
        except (KeyError, ValueError):
            return self._permissions[Tier.FREE]

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def validate_tier_access(self, model: ModelDescriptor, tier: Tier | str) -> bool:
        """Tier level at or above the model's and provider allowed for the tier."""
        user = self.permissions_for(tier)
        required = self.permissions_for(model.tier)
        if user.level < required.level:
            return False
        return user.allows_provider(model.provider)

    def available_models(
        self,
        tier: Tier | str,
        capabilities: Iterable[str] = (),
    ) -> list[ModelDescriptor]:
        """Eligible models, best quality first, then cheapest."""
        permissions = self.permissions_for(tier)
        required = set(capabilities)
        eligible = [
            model
            for model in self._models.values()
            if model.enabled
            and self.validate_tier_access(model, tier)
            and model.cost_per_request <= permissions.max_cost_per_request
            and required <= model.capabilities
        ]
        eligible.sort(key=lambda m: (-m.quality_score, m.cost_per_request))
        return eligible

    def fallback_model(self, primary: ModelDescriptor) -> ModelDescriptor | None:
        """Highest-quality enabled model sharing a capability with primary."""
        candidates = [
            model
            for model in self._models.values()
            if model.enabled
            and model.id != primary.id
            and model.capabilities & primary.capabilities
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda m: m.quality_score)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_model(
        self,
        question_type: QuestionType,
        tier: Tier | str,
        preference: str | None = None,
        options: SelectionOptions | None = None,
    ) -> RouteCandidate:
        """Pick a model for question_type.

        Raises:
            NoEligibleModel: nothing passes the tier/cost/capability filter
        """
        options = options or SelectionOptions()
        eligible = self.available_models(tier, question_type.capability_tags)
        if not eligible:
            log.info(
                "model_selector.no_eligible_model",
                question_type=question_type.id,
                tier=str(tier),
            )
            raise NoEligibleModel(question_type.id, str(Tier(tier)))

        by_id = {model.id: model for model in eligible}
        if preference and preference in by_id:
            return self._candidate(by_id[preference], question_type, "user-preference")

        default = by_id.get(question_type.default_model_id)
        if default is not None:
            return self._candidate(default, question_type, "question-type-default")

        match options.prioritize:
            case Prioritize.COST:
                chosen = min(eligible, key=lambda m: m.cost_per_request)
            case Prioritize.SPEED:
                chosen = min(eligible, key=lambda m: m.avg_response_time_sec)
            case Prioritize.QUALITY:
                chosen = max(eligible, key=lambda m: m.quality_score)
            case _:
                chosen = max(eligible, key=lambda m: m.balanced_ratio())
        return self._candidate(chosen, question_type, f"smart-selection:{options.prioritize}")

    def _candidate(
        self,
        model: ModelDescriptor,
        question_type: QuestionType,
        reason: str,
    ) -> RouteCandidate:
        fallback = self.fallback_model(model)
        candidate = RouteCandidate(
            service_id=model.service_for(question_type.default_service_id),
            model_id=model.id,
            estimated_cost=model.cost_per_request,
            question_type_id=question_type.id,
            selection_reason=reason,
            fallback_model_id=fallback.id if fallback else None,
        )
        log.debug(
            "model_selector.selected",
            question_type=question_type.id,
            model_id=model.id,
            service_id=candidate.service_id,
            reason=reason,
        )
        return candidate

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def cost_estimate(self, model_id: str, expected_usage: int = 100) -> dict[str, Any]:
        """Monthly cost of model_id at expected_usage requests, with savings vs the baseline.

        Raises:
            UnknownModel: model_id is not registered
        """
        model = self.get_model(model_id)
        monthly = model.cost_per_request * expected_usage
        savings = {"amount": 0.0, "percentage": 0.0}
        baseline = self._models.get(BASELINE_MODEL_ID)
        if baseline is not None and baseline.id != model.id and baseline.cost_per_request > 0:
            baseline_cost = baseline.cost_per_request * expected_usage
            saved = baseline_cost - monthly
            savings = {
                "amount": max(0.0, saved),
                "percentage": max(0.0, saved / baseline_cost * 100),
            }
        return {
            "model_id": model.id,
            "cost_per_request": model.cost_per_request,
            "expected_usage": expected_usage,
            "monthly_cost": monthly,
            "savings": savings,
        }

    def performance_stats(self) -> list[dict[str, Any]]:
        """Enabled models, best quality first."""
        return [
            {
                "id": model.id,
                "provider": model.provider,
                "quality_score": model.quality_score,
                "avg_response_time_sec": model.avg_response_time_sec,
                "cost_per_request": model.cost_per_request,
                "tier": str(model.tier),
                "capabilities": len(model.capabilities),
            }
            for model in sorted(
                (m for m in self._models.values() if m.enabled),
                key=lambda m: -m.quality_score,
            )
        ]
