"""Tests for model selection under tier, cost and capability constraints."""

from __future__ import annotations

from dataclasses import replace

import pytest

from framesense.classification import QuestionClassifier
from framesense.errors import DuplicateModelId, NoEligibleModel, UnknownModel
from framesense.routing.model_registry import ModelDescriptor, builtin_models
from framesense.routing.model_selector import ModelSelector
from framesense.types import Prioritize, SelectionOptions, Tier


@pytest.fixture
def selector() -> ModelSelector:
    return ModelSelector()


@pytest.fixture
def qtypes():
    return QuestionClassifier().question_types


class TestEligibility:
    """available_models() filtering and ordering."""

    def test_free_tier_text_models(self, selector) -> None:
        ids = [m.id for m in selector.available_models(Tier.FREE, {"text-extraction"})]

        assert ids == ["enhanced-ocr", "tesseract"]

    def test_pro_excludes_premium_models(self, selector) -> None:
        ids = {m.id for m in selector.available_models(Tier.PRO)}

        assert "gpt-4-vision" not in ids
        assert "google-vision-web" not in ids
        assert {"gpt-3.5-vision", "google-vision"} <= ids

    def test_disabled_models_excluded(self, selector) -> None:
        assert "ollama-llava" not in {m.id for m in selector.available_models(Tier.PREMIUM)}

        selector.toggle_model("ollama-llava", True)

        assert "ollama-llava" in {m.id for m in selector.available_models(Tier.FREE)}

    def test_sorted_by_quality_then_cost(self, selector) -> None:
        models = selector.available_models(Tier.PREMIUM, {"object-detection"})
        qualities = [m.quality_score for m in models]

        assert qualities == sorted(qualities, reverse=True)
        assert models[0].id == "gpt-4-vision"

    def test_validate_tier_access_checks_provider(self, selector) -> None:
        google = selector.get_model("google-vision")

        assert selector.validate_tier_access(google, Tier.PRO)
        assert not selector.validate_tier_access(google, Tier.FREE)


class TestSelectModel:
    """select_model() precedence."""

    def test_default_model_for_premium_scene(self, selector, qtypes) -> None:
        candidate = selector.select_model(qtypes["DESCRIBE_SCENE"], Tier.PREMIUM)

        assert candidate.model_id == "gpt-4-vision"
        assert candidate.service_id == "openai-gpt4-vision"
        assert candidate.selection_reason == "question-type-default"
        assert candidate.estimated_cost == 0.03

    def test_pro_scene_falls_to_heuristic(self, selector, qtypes) -> None:
        candidate = selector.select_model(qtypes["DESCRIBE_SCENE"], Tier.PRO)

        assert candidate.model_id == "gpt-3.5-vision"
        assert candidate.service_id == "openai-gpt35-vision"
        assert candidate.selection_reason == "smart-selection:balanced"

    def test_preference_wins_when_eligible(self, selector, qtypes) -> None:
        candidate = selector.select_model(qtypes["DETECT_OBJECTS"], Tier.PREMIUM, "gpt-4-vision")

        assert candidate.model_id == "gpt-4-vision"
        assert candidate.selection_reason == "user-preference"

    def test_ineligible_preference_ignored(self, selector, qtypes) -> None:
        candidate = selector.select_model(qtypes["DETECT_OBJECTS"], Tier.PRO, "gpt-4-vision")

        assert candidate.model_id == "google-vision"
        assert candidate.service_id == "google-vision-objects"

    def test_free_text_uses_tesseract(self, selector, qtypes) -> None:
        candidate = selector.select_model(qtypes["PURE_TEXT"], Tier.FREE)

        assert candidate.model_id == "tesseract"
        assert candidate.service_id == "enhanced-ocr"
        assert candidate.estimated_cost == 0.0

    def test_shared_model_picks_matching_service(self, selector, qtypes) -> None:
        candidate = selector.select_model(qtypes["DETECT_LOGOS"], Tier.PRO)

        assert candidate.model_id == "google-vision"
        assert candidate.service_id == "google-vision-logos"

    @pytest.mark.parametrize(
        ("prioritize", "expected"),
        [
            (Prioritize.COST, "tesseract"),
            (Prioritize.SPEED, "tesseract"),
            (Prioritize.QUALITY, "gpt-4-vision"),
            (Prioritize.BALANCED, "enhanced-ocr"),
        ],
    )
    def test_heuristics(self, prioritize, expected, qtypes) -> None:
        # drop the default model so the heuristic decides
        models = [m for m in builtin_models() if m.id != "google-vision"]
        selector = ModelSelector(models)

        text_only = replace(
            qtypes["ANALYZE_DOCUMENT"], capability_tags=frozenset({"text-extraction"})
        )

        candidate = selector.select_model(
            text_only,
            Tier.PREMIUM,
            options=SelectionOptions(prioritize=prioritize),
        )

        assert candidate.model_id == expected

    def test_no_eligible_model(self, selector, qtypes) -> None:
        with pytest.raises(NoEligibleModel) as exc_info:
            selector.select_model(qtypes["IDENTIFY_CELEBRITY"], Tier.PRO)

        payload = exc_info.value.to_payload()
        assert payload["category"] == "no_eligible_model"
        assert payload["tier"] == "pro"

    def test_custom_analysis_needs_plugin_model(self, selector, qtypes) -> None:
        with pytest.raises(NoEligibleModel):
            selector.select_model(qtypes["CUSTOM_ANALYSIS"], Tier.PREMIUM)

        selector.toggle_model("replicate-custom", True)
        candidate = selector.select_model(qtypes["CUSTOM_ANALYSIS"], Tier.PREMIUM)

        assert candidate.service_id == "open-source-api"

    def test_fallback_model_attached(self, selector, qtypes) -> None:
        candidate = selector.select_model(qtypes["DESCRIBE_SCENE"], Tier.PREMIUM)

        assert candidate.fallback_model_id == "google-vision"


class TestRegistry:
    """Model registration and reporting."""

    def test_duplicate_rejected(self, selector) -> None:
        with pytest.raises(DuplicateModelId):
            selector.register_model(builtin_models()[0])

    def test_unknown_model(self, selector) -> None:
        with pytest.raises(UnknownModel):
            selector.get_model("nope")

    def test_toggle_unknown_is_ignored(self, selector) -> None:
        selector.toggle_model("nope", True)

        assert "nope" not in selector.models

    def test_register_custom_model(self, selector, qtypes) -> None:
        selector.register_model(
            ModelDescriptor(
                id="local-ocr-xl",
                provider="tesseract",
                tier=Tier.FREE,
                capabilities=frozenset({"text-extraction"}),
                cost_per_request=0.0,
                avg_response_time_sec=1,
                quality_score=90,
                services=("enhanced-ocr",),
            )
        )

        candidate = selector.select_model(qtypes["PURE_TEXT"], Tier.FREE, "local-ocr-xl")
        assert candidate.model_id == "local-ocr-xl"

    def test_invalid_descriptor(self) -> None:
        with pytest.raises(ValueError):
            ModelDescriptor(
                id="broken",
                provider="openai",
                tier=Tier.PRO,
                capabilities=frozenset(),
                cost_per_request=0.01,
                avg_response_time_sec=1,
                quality_score=120,
                services=("openai-gpt35-vision",),
            )

    def test_cost_estimate_savings(self, selector) -> None:
        estimate = selector.cost_estimate("gpt-3.5-vision", expected_usage=100)

        assert estimate["monthly_cost"] == pytest.approx(1.5)
        assert estimate["savings"]["amount"] == pytest.approx(1.5)
        assert estimate["savings"]["percentage"] == pytest.approx(50.0)

    def test_performance_stats_only_enabled(self, selector) -> None:
        stats = selector.performance_stats()

        assert stats[0]["id"] == "gpt-4-vision"
        assert all(s["id"] != "huggingface-blip2" for s in stats)
