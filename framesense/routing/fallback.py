"""Fallback chains for failed upstream calls.

Chain walk after the primary service fails:

    primary -> fallback_1 -> ... -> cache-similar -> error-with-suggestion

- Service steps dispatch to the registered AnalysisService under that
  service's retry policy (tenacity, fixed backoff, retryable failures only).
- The cache step looks for a cached answer to a perceptually similar image.
- The error step always completes: it builds a degraded response with the
  failure classification, a user-facing message and suggested actions.

Reaching the error step means the chain is exhausted. execute_fallback()
then returns a FallbackResult with success=False, every attempt with its
error and duration, and a suggested action. It never raises.
"""

from __future__ import annotations

import time
from collections import Counter
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from framesense.cache.key_strategy import strategy_for_service
from framesense.cache.manager import TieredCacheStore
from framesense.classification.question_types import QuestionType
from framesense.config import Settings, get_settings
from framesense.errors import FailureKind, FallbackExhausted, UpstreamFailure
from framesense.routing.tier_access import SERVICE_TIERS, TierAccessControl
from framesense.services.base import AnalysisParams
from framesense.services.registry import ServiceRegistry
from framesense.telemetry.metrics import RoutingMetrics
from framesense.types import Tier

log = structlog.get_logger(__name__)

CACHE_STEP = "cache-similar"
ERROR_STEP = "error-with-suggestion"
DEFAULT_RELIABILITY = 0.8


class FallbackCondition(StrEnum):
    PRIMARY = "primary"
    FALLBACK = "fallback"
    CACHE = "cache"
    ERROR = "error"
    EMERGENCY = "emergency"


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int
    backoff_ms: int


@dataclass(frozen=True)
class FallbackChainEntry:
    """One step of a built chain."""
    service_id: str
    priority: int
    reliability: float
    retry_policy: RetryPolicy
    condition: FallbackCondition
    tier: Tier | None = None

    @property
    def is_service(self) -> bool:
        return self.condition not in (FallbackCondition.CACHE, FallbackCondition.ERROR)


SERVICE_RELIABILITY: Mapping[str, float] = MappingProxyType({
    "enhanced-ocr": 0.99,
    "google-vision-text": 0.97,
    "google-vision-objects": 0.96,
    "google-vision-logos": 0.96,
    "google-vision-web": 0.95,
    "openai-gpt4-vision": 0.92,
    "openai-gpt35-vision": 0.94,
    "open-source-api": 0.85,
    CACHE_STEP: 0.5,
    ERROR_STEP: 1.0,
})

RETRY_POLICIES: Mapping[str, RetryPolicy] = MappingProxyType({
    "enhanced-ocr": RetryPolicy(3, 500),
    "google-vision-text": RetryPolicy(2, 1000),
    "google-vision-objects": RetryPolicy(2, 1000),
    "google-vision-logos": RetryPolicy(2, 1000),
    "google-vision-web": RetryPolicy(1, 2000),
    "openai-gpt35-vision": RetryPolicy(2, 2000),
    "openai-gpt4-vision": RetryPolicy(1, 3000),
    "open-source-api": RetryPolicy(3, 1000),
})
DEFAULT_RETRY_POLICY = RetryPolicy(1, 1000)
NO_RETRY = RetryPolicy(0, 0)

FALLBACK_CHAINS: Mapping[str, tuple[str, ...]] = MappingProxyType({
    "PURE_TEXT": ("enhanced-ocr", "google-vision-text", CACHE_STEP, ERROR_STEP),
    "COUNT_OBJECTS": (
        "google-vision-objects", "openai-gpt35-vision", "google-vision-text",
        CACHE_STEP, ERROR_STEP,
    ),
    "DETECT_OBJECTS": (
        "google-vision-objects", "openai-gpt35-vision", "openai-gpt4-vision",
        CACHE_STEP, ERROR_STEP,
    ),
    "DESCRIBE_SCENE": (
        "openai-gpt4-vision", "openai-gpt35-vision", "google-vision-objects",
        CACHE_STEP, ERROR_STEP,
    ),
    "IDENTIFY_CELEBRITY": ("google-vision-web", "openai-gpt4-vision", CACHE_STEP, ERROR_STEP),
    "DETECT_LOGOS": ("google-vision-logos", "openai-gpt4-vision", CACHE_STEP, ERROR_STEP),
    "ANALYZE_DOCUMENT": (
        "google-vision-text", "enhanced-ocr", "openai-gpt4-vision",
        CACHE_STEP, ERROR_STEP,
    ),
    "CUSTOM_ANALYSIS": (
        "open-source-api", "openai-gpt4-vision", "openai-gpt35-vision",
        CACHE_STEP, ERROR_STEP,
    ),
})
DEFAULT_CHAIN_ID = "DESCRIBE_SCENE"


# ----------------------------------------------------------------------
# Error classification
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class ErrorInfo:
    kind: FailureKind
    retryable: bool
    user_friendly: str


_ERROR_INFO: Mapping[FailureKind, ErrorInfo] = MappingProxyType({
    FailureKind.TIMEOUT: ErrorInfo(FailureKind.TIMEOUT, True, "Request timed out"),
    FailureKind.RATE_LIMIT: ErrorInfo(FailureKind.RATE_LIMIT, True, "Service is busy"),
    FailureKind.AUTH_ERROR: ErrorInfo(FailureKind.AUTH_ERROR, False, "Authentication issue"),
    FailureKind.QUOTA_EXCEEDED: ErrorInfo(
        FailureKind.QUOTA_EXCEEDED, False, "Service quota exceeded"
    ),
    FailureKind.SERVICE_DOWN: ErrorInfo(
        FailureKind.SERVICE_DOWN, True, "Service temporarily unavailable"
    ),
    FailureKind.UNKNOWN: ErrorInfo(FailureKind.UNKNOWN, True, "Unexpected error occurred"),
})

# Checked in order; first match wins
_ERROR_PATTERNS: tuple[tuple[tuple[str, ...], FailureKind], ...] = (
    (("timeout", "timed out"), FailureKind.TIMEOUT),
    (("rate limit", "too many requests"), FailureKind.RATE_LIMIT),
    (("auth", "unauthorized"), FailureKind.AUTH_ERROR),
    (("quota", "limit exceeded"), FailureKind.QUOTA_EXCEEDED),
    (("service unavailable", "503"), FailureKind.SERVICE_DOWN),
)


def classify_error(error: BaseException | str | None) -> ErrorInfo:
    """Map an upstream error to a FailureKind with retryability and message.

    An UpstreamFailure with an explicit kind is trusted; everything else is
    classified from its message.
    """
    if isinstance(error, UpstreamFailure) and error.kind is not FailureKind.UNKNOWN:
        return _ERROR_INFO[error.kind]
    if isinstance(error, TimeoutError):
        return _ERROR_INFO[FailureKind.TIMEOUT]
    message = str(error or "").lower()
    for needles, kind in _ERROR_PATTERNS:
        if any(needle in message for needle in needles):
            return _ERROR_INFO[kind]
    return _ERROR_INFO[FailureKind.UNKNOWN]


def _is_retryable(exc: BaseException) -> bool:
    # cancellation must never be retried
    return isinstance(exc, Exception) and classify_error(exc).retryable


def user_message(info: ErrorInfo, attempt_count: int) -> str:
    if attempt_count > 0:
        plural = "s" if attempt_count > 1 else ""
        return (
            f"{info.user_friendly}. We tried {attempt_count} alternative{plural} "
            "but couldn't complete your request."
        )
    return f"{info.user_friendly}. Please try again later."


def suggested_actions(info: ErrorInfo) -> list[str]:
    actions = []
    if info.retryable:
        actions.append("Try again in a few minutes")
    if info.kind is FailureKind.RATE_LIMIT:
        actions += ["Wait a moment and retry", "Consider upgrading for higher limits"]
    elif info.kind is FailureKind.AUTH_ERROR:
        actions += ["Check your account status", "Contact support if the issue persists"]
    elif info.kind is FailureKind.QUOTA_EXCEEDED:
        actions += ["Upgrade your plan for higher limits", "Wait until next billing cycle"]
    actions.append("Contact support if problems continue")
    return actions


# ----------------------------------------------------------------------
# Requests and results
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class FallbackRequest:
    """What a chain step needs to re-run the original request."""
    question_type: QuestionType
    image: bytes
    params: AnalysisParams
    user_tier: Tier
    image_hash: str | None = None


@dataclass
class FallbackAttempt:
    service_id: str
    error: str
    error_kind: FailureKind
    duration_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service_id,
            "error": self.error,
            "error_kind": str(self.error_kind),
            "duration_ms": self.duration_ms,
        }


@dataclass
class FallbackResult:
    """Outcome of execute_fallback()."""
    success: bool
    result: dict[str, Any] | None = None
    service_used: str | None = None
    from_cache: bool = False
    similarity: float | None = None
    original_service: str | None = None
    original_error: str = ""
    fallback_attempts: list[FallbackAttempt] = field(default_factory=list)
    total_time_ms: float = 0.0
    suggested_action: dict[str, Any] | None = None
    degraded_response: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "result": self.result,
            "service_used": self.service_used,
            "from_cache": self.from_cache,
            "similarity": self.similarity,
            "original_service": self.original_service,
            "original_error": self.original_error,
            "fallback_attempts": [a.to_dict() for a in self.fallback_attempts],
            "total_time_ms": self.total_time_ms,
            "suggested_action": self.suggested_action,
            "degraded_response": self.degraded_response,
        }


class _StepFailed(Exception):
    """A non-service chain step found nothing."""


# ----------------------------------------------------------------------
# Manager
# ----------------------------------------------------------------------


class FallbackManager:
    """Builds and walks fallback chains."""

    def __init__(
        self,
        services: ServiceRegistry,
        *,
        cache: TieredCacheStore | None = None,
        tier_access: TierAccessControl | None = None,
        settings: Settings | None = None,
        metrics: RoutingMetrics | None = None,
        chains: Mapping[str, tuple[str, ...]] | None = None,
    ) -> None:
        self._services = services
        self._cache = cache
        self._tier_access = tier_access or TierAccessControl()
        self._settings = settings or get_settings()
        self._metrics = metrics or (cache.metrics if cache is not None else RoutingMetrics())
        self._chains = dict(chains or FALLBACK_CHAINS)
        self._stats: Counter[str] = Counter()
        self._failure_kinds: Counter[str] = Counter()

    # ------------------------------------------------------------------
    # Chain building
    # ------------------------------------------------------------------

    def retry_policy(self, service_id: str) -> RetryPolicy:
        if service_id in (CACHE_STEP, ERROR_STEP):
            return NO_RETRY
        return RETRY_POLICIES.get(service_id, DEFAULT_RETRY_POLICY)

    def build_chain(
        self,
        primary_service: str,
        question_type: QuestionType,
        user_tier: Tier | str,
    ) -> list[FallbackChainEntry]:
        """Template for the question type, filtered by tier, primary first.

        Falls back to the emergency chain if building fails.
        """
        try:
            template = self._chains.get(question_type.id) or self._chains[DEFAULT_CHAIN_ID]
            steps = [
                step
                for step in template
                if step in (CACHE_STEP, ERROR_STEP)
                or self._tier_access.can_access_service(step, user_tier)
            ]
            # chain[0] is the attempted service; execute_fallback() skips it
            if primary_service in steps:
                steps.remove(primary_service)
            if primary_service not in (CACHE_STEP, ERROR_STEP):
                steps.insert(0, primary_service)
            return [self._entry(step, index) for index, step in enumerate(steps)]
        except Exception as exc:
            log.error(
                "fallback.chain_build_failed",
                question_type=question_type.id,
                error=str(exc),
            )
            return self.emergency_chain()

    def _entry(self, step: str, index: int) -> FallbackChainEntry:
        if step == CACHE_STEP:
            condition = FallbackCondition.CACHE
        elif step == ERROR_STEP:
            condition = FallbackCondition.ERROR
        elif index == 0:
            condition = FallbackCondition.PRIMARY
        else:
            condition = FallbackCondition.FALLBACK
        return FallbackChainEntry(
            service_id=step,
            priority=index,
            reliability=SERVICE_RELIABILITY.get(step, DEFAULT_RELIABILITY),
            retry_policy=self.retry_policy(step),
            condition=condition,
            tier=SERVICE_TIERS.get(step),
        )

    def emergency_chain(self) -> list[FallbackChainEntry]:
        return [
            FallbackChainEntry(
                service_id="enhanced-ocr",
                priority=0,
                reliability=SERVICE_RELIABILITY["enhanced-ocr"],
                retry_policy=self.retry_policy("enhanced-ocr"),
                condition=FallbackCondition.EMERGENCY,
                tier=Tier.FREE,
            ),
            FallbackChainEntry(
                service_id=ERROR_STEP,
                priority=1,
                reliability=1.0,
                retry_policy=NO_RETRY,
                condition=FallbackCondition.ERROR,
                tier=Tier.FREE,
            ),
        ]

    def describe_chain(
        self,
        primary_service: str,
        question_type: QuestionType,
        user_tier: Tier | str,
    ) -> dict[str, Any]:
        """Dry run: the chain that would be used and its estimated reliability."""
        chain = self.build_chain(primary_service, question_type, user_tier)
        return {
            "primary_service": primary_service,
            "question_type": question_type.id,
            "user_tier": str(Tier(user_tier)),
            "chain": [entry.service_id for entry in chain],
            "total_options": len(chain),
            "estimated_reliability": round(
                sum(entry.reliability for entry in chain) / len(chain), 4
            ) if chain else 0.0,
            "accessible_services": sum(1 for entry in chain if entry.is_service),
        }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        service_id: str,
        request: FallbackRequest,
        policy: RetryPolicy | None = None,
    ) -> dict[str, Any]:
        """Call one service under its retry policy.

        Only retryable failures are retried; the last error is re-raised.

        Raises:
            UpstreamFailure: service_id is not registered
            Exception: whatever the service raised on its last attempt
        """
        service = self._services.get(service_id)
        if service is None:
            raise UpstreamFailure(
                f"Service {service_id} is not registered",
                kind=FailureKind.SERVICE_DOWN,
                service_id=service_id,
            )
        policy = policy or self.retry_policy(service_id)
        wait = policy.backoff_ms / 1000 * self._settings.fallback_backoff_scale

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(policy.max_retries + 1),
                wait=wait_fixed(wait),
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    number = attempt.retry_state.attempt_number
                    if number > 1:
                        log.info("fallback.dispatch_retry", service_id=service_id, attempt=number)
                    result = await service.analyze(
                        request.question_type.id,
                        request.image,
                        request.params,
                        request.user_tier,
                    )
        except Exception:
            self._metrics.record_dispatch(service_id, ok=False)
            raise

        self._metrics.record_dispatch(service_id, ok=True)
        return result

    # ------------------------------------------------------------------
    # Chain execution
    # ------------------------------------------------------------------

    async def execute_fallback(
        self,
        chain: list[FallbackChainEntry],
        request: FallbackRequest,
        primary_error: BaseException,
    ) -> FallbackResult:
        """Walk chain[1:] after the primary failed. Never raises."""
        start = time.perf_counter()
        attempts: list[FallbackAttempt] = []
        last_error: BaseException = primary_error
        original = chain[0].service_id if chain else None
        self._stats["invocations"] += 1
        self._failure_kinds[str(classify_error(primary_error).kind)] += 1

        log.info(
            "fallback.started",
            original_service=original,
            error=str(primary_error),
            steps=[entry.service_id for entry in chain[1:]],
        )

        for entry in chain[1:]:
            step_start = time.perf_counter()

            if entry.condition is FallbackCondition.ERROR:
                return self._exhausted(
                    request, original, primary_error, last_error, attempts, start
                )

            try:
                if entry.condition is FallbackCondition.CACHE:
                    match = await self._cache_step(request)
                    result = FallbackResult(
                        success=True,
                        result=match["value"],
                        service_used=entry.service_id,
                        from_cache=True,
                        similarity=match["similarity"],
                    )
                else:
                    value = await self.dispatch(entry.service_id, request, entry.retry_policy)
                    result = FallbackResult(
                        success=True,
                        result=value,
                        service_used=entry.service_id,
                    )
            except Exception as exc:
                if entry.is_service:
                    last_error = exc
                info = classify_error(exc)
                self._failure_kinds[str(info.kind)] += 1
                attempts.append(
                    FallbackAttempt(
                        service_id=entry.service_id,
                        error=str(exc) or type(exc).__name__,
                        error_kind=info.kind,
                        duration_ms=round((time.perf_counter() - step_start) * 1000, 2),
                    )
                )
                log.info(
                    "fallback.step_failed",
                    step=entry.service_id,
                    error_kind=str(info.kind),
                    error=str(exc),
                )
                continue

            result.original_service = original
            result.original_error = str(primary_error)
            result.fallback_attempts = attempts
            result.total_time_ms = round((time.perf_counter() - start) * 1000, 2)
            self._stats["successes"] += 1
            self._metrics.record_fallback("success", entry.service_id)
            log.info(
                "fallback.succeeded",
                step=entry.service_id,
                attempts=len(attempts) + 1,
                total_time_ms=result.total_time_ms,
            )
            return result

        return self._exhausted(request, original, primary_error, last_error, attempts, start)

    async def _cache_step(self, request: FallbackRequest) -> dict[str, Any]:
        if self._cache is None:
            raise _StepFailed("Cache fallback failed: cache not available")

        keys = self._cache.key_strategy
        image_hash = request.image_hash or await keys.image_hash(request.image)
        question = keys.question_hash(request.params.question)
        services = self._chains.get(request.question_type.id, ())
        strategy_ids = []
        for service_id in (request.question_type.default_service_id, *services):
            strategy_id = strategy_for_service(service_id)
            if strategy_id and strategy_id not in strategy_ids:
                strategy_ids.append(strategy_id)

        for strategy_id in strategy_ids:
            strategy = keys.get_strategy(strategy_id)
            match: dict[str, str] = {}
            if "questionHash" in strategy.placeholders:
                match["questionHash"] = question
            if "lang" in strategy.placeholders:
                match["lang"] = request.params.language
            found = await self._cache.find_similar(strategy_id, image_hash, match=match)
            if found is not None:
                return {
                    "value": {**found.value, "from_similar_cache": True}
                    if isinstance(found.value, dict)
                    else found.value,
                    "similarity": found.similarity,
                }
        raise _StepFailed("Cache fallback failed: no suitable cached results found")

    def _exhausted(
        self,
        request: FallbackRequest,
        original: str | None,
        primary_error: BaseException,
        last_error: BaseException,
        attempts: list[FallbackAttempt],
        start: float,
    ) -> FallbackResult:
        info = classify_error(last_error)
        actions = suggested_actions(info)
        exhausted = FallbackExhausted([a.to_dict() for a in attempts])
        total = round((time.perf_counter() - start) * 1000, 2)

        self._stats["exhausted"] += 1
        self._metrics.record_fallback("degraded", ERROR_STEP)
        log.warning(
            "fallback.exhausted",
            original_service=original,
            attempts=len(attempts),
            error_kind=str(info.kind),
            total_time_ms=total,
        )

        return FallbackResult(
            success=False,
            service_used=ERROR_STEP,
            original_service=original,
            original_error=str(primary_error),
            fallback_attempts=attempts,
            total_time_ms=total,
            suggested_action={
                "message": (
                    f"We couldn't process your image due to {info.user_friendly.lower()}"
                ),
                "actions": actions,
                "can_retry_later": info.retryable,
                "support_ticket": info.kind is FailureKind.UNKNOWN,
            },
            degraded_response={
                "category": "fallback_exhausted",
                "text": "",
                "confidence": 0.0,
                "error": True,
                "error_type": str(info.kind),
                "message": str(exhausted),
                "user_message": user_message(info, len(attempts)),
                "suggested_actions": actions,
                "fallback_attempts": len(attempts),
                "can_retry_later": info.retryable,
                "question_type": request.question_type.id,
            },
        )

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        invocations = self._stats["invocations"]
        return {
            "invocations": invocations,
            "successes": self._stats["successes"],
            "exhausted": self._stats["exhausted"],
            "success_rate": (
                round(self._stats["successes"] / invocations, 4) if invocations else 0.0
            ),
            "failures_by_kind": dict(self._failure_kinds),
        }
