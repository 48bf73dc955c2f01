"""Tests for fallback chains.

Covers:
- Error classification (explicit kinds, TimeoutError, message patterns)
- Chain building: tier filtering, primary first, emergency chain
- Dispatch retries only retryable failures
- Chain walk: next service, similar-image cache step, exhaustion
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from framesense.cache.key_strategy import KeyParams
from framesense.classification import QuestionClassifier
from framesense.errors import FailureKind, UpstreamFailure
from framesense.routing.fallback import (
    CACHE_STEP,
    DEFAULT_RETRY_POLICY,
    ERROR_STEP,
    NO_RETRY,
    FallbackCondition,
    FallbackManager,
    FallbackRequest,
    classify_error,
    suggested_actions,
    user_message,
)
from framesense.services.base import AnalysisParams
from framesense.services.registry import ServiceRegistry
from framesense.types import Tier


@pytest.fixture
def qtypes():
    return QuestionClassifier().question_types


@pytest.fixture
def registry() -> ServiceRegistry:
    return ServiceRegistry()


@pytest.fixture
def manager(registry, cache_store, settings) -> FallbackManager:
    return FallbackManager(registry, cache=cache_store, settings=settings)


def _request(question_type, image: bytes = b"image-bytes", tier: Tier = Tier.FREE) -> FallbackRequest:
    return FallbackRequest(
        question_type=question_type,
        image=image,
        params=AnalysisParams(question="what does this say", language="en"),
        user_tier=tier,
    )


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


class TestClassifyError:
    """classify_error() mapping."""

    @pytest.mark.parametrize(
        ("error", "kind", "retryable"),
        [
            (UpstreamFailure("nope", kind=FailureKind.AUTH_ERROR), FailureKind.AUTH_ERROR, False),
            (UpstreamFailure("it timed out"), FailureKind.TIMEOUT, True),
            (TimeoutError(), FailureKind.TIMEOUT, True),
            (RuntimeError("429 Too Many Requests"), FailureKind.RATE_LIMIT, True),
            (RuntimeError("Unauthorized"), FailureKind.AUTH_ERROR, False),
            (RuntimeError("Monthly quota reached"), FailureKind.QUOTA_EXCEEDED, False),
            (RuntimeError("503 Service Unavailable"), FailureKind.SERVICE_DOWN, True),
            (RuntimeError("boom"), FailureKind.UNKNOWN, True),
            (None, FailureKind.UNKNOWN, True),
        ],
    )
    def test_classification(self, error, kind, retryable) -> None:
        info = classify_error(error)

        assert info.kind is kind
        assert info.retryable is retryable

    def test_user_message_counts_alternatives(self) -> None:
        info = classify_error(RuntimeError("503"))

        assert "We tried 2 alternatives" in user_message(info, 2)
        assert "We tried 1 alternative but" in user_message(info, 1)
        assert user_message(info, 0).endswith("Please try again later.")

    def test_rate_limit_actions(self) -> None:
        actions = suggested_actions(classify_error(RuntimeError("rate limit hit")))

        assert actions[0] == "Try again in a few minutes"
        assert "Consider upgrading for higher limits" in actions
        assert actions[-1] == "Contact support if problems continue"


# ---------------------------------------------------------------------------
# Chain building
# ---------------------------------------------------------------------------


class TestBuildChain:
    """build_chain() and describe_chain()."""

    def test_free_text_chain(self, manager, qtypes) -> None:
        chain = manager.build_chain("enhanced-ocr", qtypes["PURE_TEXT"], Tier.FREE)

        assert [e.service_id for e in chain] == [
            "enhanced-ocr", "google-vision-text", CACHE_STEP, ERROR_STEP,
        ]
        assert [e.condition for e in chain] == [
            FallbackCondition.PRIMARY,
            FallbackCondition.FALLBACK,
            FallbackCondition.CACHE,
            FallbackCondition.ERROR,
        ]
        assert chain[2].retry_policy == NO_RETRY

    def test_tier_filter_and_primary_first(self, manager, qtypes) -> None:
        chain = manager.build_chain("openai-gpt35-vision", qtypes["DESCRIBE_SCENE"], Tier.PRO)

        assert [e.service_id for e in chain] == [
            "openai-gpt35-vision", "google-vision-objects", CACHE_STEP, ERROR_STEP,
        ]

    def test_primary_outside_template_goes_first(self, manager, qtypes) -> None:
        chain = manager.build_chain("enhanced-ocr", qtypes["DESCRIBE_SCENE"], Tier.PRO)

        assert [e.service_id for e in chain] == [
            "enhanced-ocr", "openai-gpt35-vision", "google-vision-objects",
            CACHE_STEP, ERROR_STEP,
        ]
        assert chain[0].condition is FallbackCondition.PRIMARY
        assert chain[1].condition is FallbackCondition.FALLBACK

    def test_cache_step_kept_when_no_template_service_accessible(self, manager, qtypes) -> None:
        chain = manager.build_chain("enhanced-ocr", qtypes["DETECT_LOGOS"], Tier.FREE)

        assert [e.service_id for e in chain] == ["enhanced-ocr", CACHE_STEP, ERROR_STEP]

    def test_build_failure_uses_emergency_chain(self, manager, qtypes) -> None:
        with patch.object(
            manager._tier_access, "can_access_service", side_effect=RuntimeError("boom")
        ):
            chain = manager.build_chain("enhanced-ocr", qtypes["PURE_TEXT"], Tier.FREE)

        assert [e.service_id for e in chain] == ["enhanced-ocr", ERROR_STEP]
        assert chain[0].condition is FallbackCondition.EMERGENCY

    def test_describe_chain(self, manager, qtypes) -> None:
        described = manager.describe_chain("enhanced-ocr", qtypes["PURE_TEXT"], "free")

        assert described["total_options"] == 4
        assert described["accessible_services"] == 2
        assert described["user_tier"] == "free"
        assert 0 < described["estimated_reliability"] <= 1

    def test_retry_policy_defaults(self, manager) -> None:
        assert manager.retry_policy(CACHE_STEP) == NO_RETRY
        assert manager.retry_policy("unknown-service") == DEFAULT_RETRY_POLICY
        assert manager.retry_policy("enhanced-ocr").max_retries == 3


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    """dispatch() retry behaviour."""

    @pytest.mark.asyncio
    async def test_retryable_failure_then_success(self, manager, registry, make_service, qtypes) -> None:
        service = make_service(
            "enhanced-ocr",
            [UpstreamFailure("busy", kind=FailureKind.RATE_LIMIT), {"text": "hello"}],
        )
        registry.register(service)

        result = await manager.dispatch("enhanced-ocr", _request(qtypes["PURE_TEXT"]))

        assert result == {"text": "hello"}
        assert service.call_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_failure_not_retried(self, manager, registry, make_service, qtypes) -> None:
        service = make_service(
            "enhanced-ocr", [UpstreamFailure("bad key", kind=FailureKind.AUTH_ERROR)]
        )
        registry.register(service)

        with pytest.raises(UpstreamFailure):
            await manager.dispatch("enhanced-ocr", _request(qtypes["PURE_TEXT"]))

        assert service.call_count == 1

    @pytest.mark.asyncio
    async def test_retries_stop_at_policy_limit(self, manager, registry, make_service, qtypes) -> None:
        service = make_service("enhanced-ocr", [TimeoutError()])
        registry.register(service)

        with pytest.raises(TimeoutError):
            await manager.dispatch("enhanced-ocr", _request(qtypes["PURE_TEXT"]))

        assert service.call_count == 4

    @pytest.mark.asyncio
    async def test_unregistered_service(self, manager, qtypes) -> None:
        with pytest.raises(UpstreamFailure) as exc_info:
            await manager.dispatch("google-vision-text", _request(qtypes["PURE_TEXT"]))

        assert exc_info.value.kind is FailureKind.SERVICE_DOWN


# ---------------------------------------------------------------------------
# Chain execution
# ---------------------------------------------------------------------------


class TestExecuteFallback:
    """execute_fallback() walking the chain."""

    @pytest.mark.asyncio
    async def test_next_service_answers(self, manager, registry, make_service, qtypes) -> None:
        registry.register(make_service("google-vision-text", [{"text": "from google"}]))
        chain = manager.build_chain("enhanced-ocr", qtypes["PURE_TEXT"], Tier.FREE)

        result = await manager.execute_fallback(
            chain, _request(qtypes["PURE_TEXT"]), TimeoutError("primary timed out")
        )

        assert result.success is True
        assert result.result == {"text": "from google"}
        assert result.service_used == "google-vision-text"
        assert result.original_service == "enhanced-ocr"
        assert result.original_error == "primary timed out"
        assert result.fallback_attempts == []
        assert manager.stats()["successes"] == 1

    @pytest.mark.asyncio
    async def test_first_template_service_tried_after_downgraded_primary(
        self, manager, registry, make_service, qtypes
    ) -> None:
        gpt35 = make_service("openai-gpt35-vision", [{"text": "a busy street"}])
        registry.register(gpt35)
        chain = manager.build_chain("enhanced-ocr", qtypes["DESCRIBE_SCENE"], Tier.PRO)

        result = await manager.execute_fallback(
            chain,
            _request(qtypes["DESCRIBE_SCENE"], tier=Tier.PRO),
            UpstreamFailure("bad creds", kind=FailureKind.AUTH_ERROR),
        )

        assert result.success is True
        assert result.service_used == "openai-gpt35-vision"
        assert result.original_service == "enhanced-ocr"
        assert result.fallback_attempts == []
        assert gpt35.call_count == 1

    @pytest.mark.asyncio
    async def test_cache_step_searches_injected_chain(
        self, registry, cache_store, settings, make_image, qtypes
    ) -> None:
        manager = FallbackManager(
            registry,
            cache=cache_store,
            settings=settings,
            chains={
                "DETECT_LOGOS": (
                    "google-vision-logos", "google-vision-objects", CACHE_STEP, ERROR_STEP,
                ),
            },
        )
        image = make_image()
        key, strategy = await cache_store.key_strategy.build_key(
            "GOOGLE_VISION_OBJECTS", image, KeyParams()
        )
        await cache_store.set(key, {"objects": ["sign"]}, strategy)
        chain = manager.build_chain("google-vision-logos", qtypes["DETECT_LOGOS"], Tier.FREE)

        result = await manager.execute_fallback(
            chain, _request(qtypes["DETECT_LOGOS"], image=image), RuntimeError("503")
        )

        assert [e.service_id for e in chain] == ["google-vision-logos", CACHE_STEP, ERROR_STEP]
        assert result.success is True
        assert result.service_used == CACHE_STEP
        assert result.result == {"objects": ["sign"], "from_similar_cache": True}

    @pytest.mark.asyncio
    async def test_similar_cached_answer(self, manager, cache_store, make_image, qtypes) -> None:
        keys = cache_store.key_strategy
        key, strategy = await keys.build_key(
            "OCR_RESULTS", make_image("ltr", speck=True), KeyParams(language="en")
        )
        await cache_store.set(key, {"text": "cached words"}, strategy)
        chain = manager.build_chain("enhanced-ocr", qtypes["PURE_TEXT"], Tier.FREE)

        result = await manager.execute_fallback(
            chain,
            _request(qtypes["PURE_TEXT"], image=make_image("ltr")),
            RuntimeError("503 Service Unavailable"),
        )

        assert result.success is True
        assert result.from_cache is True
        assert result.service_used == CACHE_STEP
        assert result.similarity >= 85
        assert result.result == {"text": "cached words", "from_similar_cache": True}
        assert [a.service_id for a in result.fallback_attempts] == ["google-vision-text"]

    @pytest.mark.asyncio
    async def test_exhaustion_returns_degraded_response(self, registry, settings, qtypes) -> None:
        manager = FallbackManager(registry, cache=None, settings=settings)
        chain = manager.build_chain("enhanced-ocr", qtypes["PURE_TEXT"], Tier.FREE)

        result = await manager.execute_fallback(
            chain, _request(qtypes["PURE_TEXT"]), RuntimeError("primary broke")
        )

        assert result.success is False
        assert result.service_used == ERROR_STEP
        assert [a.service_id for a in result.fallback_attempts] == [
            "google-vision-text", CACHE_STEP,
        ]
        degraded = result.degraded_response
        assert degraded["category"] == "fallback_exhausted"
        assert degraded["error_type"] == "service_down"
        assert degraded["message"] == "All fallback options exhausted"
        assert degraded["question_type"] == "PURE_TEXT"
        assert "We tried 2 alternatives" in degraded["user_message"]
        assert result.suggested_action["can_retry_later"] is True

        stats = manager.stats()
        assert stats["exhausted"] == 1
        assert stats["success_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_outcomes_recorded_in_metrics(self, manager, registry, make_service, metrics, qtypes) -> None:
        registry.register(make_service("google-vision-text"))
        chain = manager.build_chain("enhanced-ocr", qtypes["PURE_TEXT"], Tier.FREE)

        await manager.execute_fallback(chain, _request(qtypes["PURE_TEXT"]), TimeoutError())

        fallback = metrics.snapshot()["fallback"]
        assert fallback["invocations"] == 1
        assert fallback["successes"] == 1
        assert fallback["success_rate"] == 1.0
