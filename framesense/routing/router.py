"""End-to-end request routing.

Pipeline per request, strictly in sequence:

    classify -> access check -> select model -> optimize cost
        -> cache lookup -> dispatch (or fallback chain) -> cache write

Only access denials and "no eligible model" are rejected up front, before
any upstream cost. Everything after that ends in a result, a cached or
fallback result, or a structured degraded response. The whole pipeline runs
under asyncio.timeout(request_timeout_seconds); a request cancelled or
timed out mid-dispatch never writes to the cache.

Concurrent identical requests each dispatch upstream unless
Settings.coalesce_requests is on, in which case later callers for the same
cache key await the first caller's dispatch.
"""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from framesense.cache.backend import get_fast_tier
from framesense.cache.durable import SqlDurableStore
from framesense.cache.key_strategy import KeyParams, ServiceStrategy, strategy_for_service
from framesense.cache.manager import TieredCacheStore
from framesense.cache.perceptual import BoundingBox
from framesense.classification.classifier import Classification, QuestionClassifier
from framesense.config import Settings, get_settings
from framesense.database import close_db, get_session_factory, init_db
from framesense.errors import NoEligibleModel
from framesense.health import ComponentHealth, ComponentStatus, SystemHealth, build_system_health
from framesense.routing.cost_optimizer import CostOptimizer
from framesense.routing.fallback import FallbackManager, FallbackRequest, FallbackResult
from framesense.routing.model_selector import ModelSelector
from framesense.routing.tier_access import TierAccessControl
from framesense.services.base import AnalysisParams
from framesense.services.registry import ServiceRegistry
from framesense.services.usage import UsageTracker
from framesense.telemetry.logging import (
    bind_request_context,
    clear_context,
    configure_logging,
    new_request_id,
)
from framesense.telemetry.metrics import RoutingMetrics
from framesense.types import (
    Budget,
    Prioritize,
    RouteCandidate,
    SelectionOptions,
    Tier,
    UserTierProfile,
)

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RouteRequest:
    """One inbound question about one image."""
    user_id: str
    question: str
    image: bytes
    language: str = "en"
    preference: str | None = None
    prioritize: Prioritize = Prioritize.BALANCED
    budget: Budget | None = None
    profile: UserTierProfile | None = None
    face_box: BoundingBox | None = None
    request_id: str | None = None


@dataclass
class RouteOutcome:
    """What the caller gets back. status is one of:

    success, cached, fallback, degraded, rejected, timeout
    """
    request_id: str
    status: str
    result: Any = None
    question_type_id: str | None = None
    confidence: float | None = None
    service_id: str | None = None
    model_id: str | None = None
    estimated_cost: float = 0.0
    cache_source: str | None = None
    cache_key: str | None = None
    error: dict[str, Any] | None = None
    fallback: FallbackResult | None = None
    optimization: dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in ("success", "cached", "fallback")

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status,
            "result": self.result,
            "question_type": self.question_type_id,
            "confidence": self.confidence,
            "service": self.service_id,
            "model": self.model_id,
            "estimated_cost": self.estimated_cost,
            "cache_source": self.cache_source,
            "error": self.error,
            "fallback": self.fallback.to_dict() if self.fallback else None,
            "optimization": self.optimization,
            "duration_ms": self.duration_ms,
        }


@dataclass
class _Dispatched:
    """Result of the dispatch stage, shared with coalesced callers."""
    status: str
    result: Any
    service_id: str
    fallback: FallbackResult | None = None


class Router:
    """Routes (question, image) requests to the cheapest capable service."""

    def __init__(
        self,
        *,
        services: ServiceRegistry,
        cache: TieredCacheStore,
        classifier: QuestionClassifier | None = None,
        selector: ModelSelector | None = None,
        tier_access: TierAccessControl | None = None,
        optimizer: CostOptimizer | None = None,
        fallback: FallbackManager | None = None,
        usage: UsageTracker | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._services = services
        self._cache = cache
        self._metrics = cache.metrics
        self._usage = usage
        self._classifier = classifier or QuestionClassifier()
        self._selector = selector or ModelSelector()
        self._tier_access = tier_access or TierAccessControl(usage)
        self._optimizer = optimizer or CostOptimizer(usage)
        self._fallback = fallback or FallbackManager(
            services,
            cache=cache,
            tier_access=self._tier_access,
            settings=self._settings,
            metrics=self._metrics,
        )
        self._active: Counter[str] = Counter()
        self._inflight: dict[str, asyncio.Future[_Dispatched | None]] = {}
        self._owns_database = False

    @classmethod
    def from_settings(
        cls,
        services: ServiceRegistry,
        *,
        usage: UsageTracker | None = None,
        settings: Settings | None = None,
    ) -> Router:
        """Build a router with the configured logging, fast tier and durable tier."""
        cfg = settings or get_settings()
        configure_logging(json_logs=cfg.json_logs, log_level=cfg.log_level)
        durable = None
        if cfg.durable_tier_enabled:
            init_db(cfg)
            durable = SqlDurableStore(get_session_factory())
        cache = TieredCacheStore(get_fast_tier(cfg), durable, settings=cfg)
        router = cls(services=services, cache=cache, usage=usage, settings=cfg)
        router._owns_database = durable is not None
        return router

    @property
    def cache(self) -> TieredCacheStore:
        return self._cache

    @property
    def classifier(self) -> QuestionClassifier:
        return self._classifier

    @property
    def selector(self) -> ModelSelector:
        return self._selector

    @property
    def tier_access(self) -> TierAccessControl:
        return self._tier_access

    @property
    def fallback(self) -> FallbackManager:
        return self._fallback

    @property
    def metrics(self) -> RoutingMetrics:
        return self._metrics

    def active_requests(self, user_id: str) -> int:
        return self._active[user_id]

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def route(self, request: RouteRequest) -> RouteOutcome:
        """Route one request. Only cancellation of the caller propagates."""
        request_id = request.request_id or new_request_id()
        bind_request_context(request_id, request.user_id)
        start = time.perf_counter()
        log.info("router.request.started", question_length=len(request.question))

        try:
            async with asyncio.timeout(self._settings.request_timeout_seconds):
                outcome = await self._route(request, request_id)
        except TimeoutError:
            log.warning(
                "router.request.timeout",
                timeout_seconds=self._settings.request_timeout_seconds,
            )
            outcome = RouteOutcome(
                request_id=request_id,
                status="timeout",
                error={
                    "category": "timeout",
                    "message": "The request took too long to complete",
                    "suggested_actions": [
                        "Try again in a few minutes",
                        "Contact support if problems continue",
                    ],
                },
            )
        finally:
            clear_context()

        outcome.duration_ms = round((time.perf_counter() - start) * 1000, 2)
        self._metrics.record_route(outcome.status, outcome.duration_ms / 1000)
        log.info(
            "router.request.completed",
            request_id=request_id,
            status=outcome.status,
            service_id=outcome.service_id,
            duration_ms=outcome.duration_ms,
        )
        return outcome

    async def _route(self, request: RouteRequest, request_id: str) -> RouteOutcome:
        classification = self._classifier.classify(request.question)
        question_type = classification.question_type
        profile = request.profile or await self._profile(request.user_id)

        decision = self._tier_access.validate_access(
            question_type,
            profile,
            image_size=len(request.image),
            active_requests=self._active[request.user_id],
        )
        if not decision.allowed:
            return self._rejected(request_id, classification, decision.to_error().to_payload())

        self._active[request.user_id] += 1
        try:
            return await self._admitted(request, request_id, classification, profile)
        finally:
            self._active[request.user_id] -= 1
            if self._active[request.user_id] <= 0:
                del self._active[request.user_id]

    async def _admitted(
        self,
        request: RouteRequest,
        request_id: str,
        classification: Classification,
        profile: UserTierProfile,
    ) -> RouteOutcome:
        question_type = classification.question_type
        tier = profile.tier

        try:
            candidate = self._selector.select_model(
                question_type,
                tier,
                request.preference,
                SelectionOptions(prioritize=request.prioritize),
            )
        except NoEligibleModel as exc:
            return self._rejected(request_id, classification, exc.to_payload())

        budget = request.budget or await self._budget(request.user_id)
        allowed = [
            sid for sid in self._tier_access.available_services(tier) if sid in self._services
        ]
        candidate = await self._optimizer.optimize_route(
            candidate, budget, allowed_services=allowed
        )

        outcome = RouteOutcome(
            request_id=request_id,
            status="success",
            question_type_id=question_type.id,
            confidence=classification.confidence,
            service_id=candidate.service_id,
            model_id=candidate.model_id,
            estimated_cost=candidate.estimated_cost,
            optimization=candidate.optimization,
        )

        key, strategy = await self._cache_key(candidate, request)
        outcome.cache_key = key
        if key is not None:
            lookup = await self._cache.get(key, strategy)
            outcome.cache_source = lookup.source
            if lookup.hit:
                outcome.status = "cached"
                outcome.result = lookup.value
                outcome.estimated_cost = 0.0
                self._tier_access.track_access(
                    request.user_id, question_type.id, candidate.service_id, 0.0
                )
                return outcome

        fallback_request = FallbackRequest(
            question_type=question_type,
            image=request.image,
            params=AnalysisParams(
                question=request.question,
                language=request.language,
                model_id=candidate.model_id,
            ),
            user_tier=tier,
        )
        dispatched, owner = await self._coalesced(
            key,
            lambda: self._dispatch(candidate, fallback_request),
        )

        outcome.status = dispatched.status
        outcome.result = dispatched.result
        outcome.service_id = dispatched.service_id
        outcome.fallback = dispatched.fallback
        if dispatched.status == "degraded":
            outcome.error = dispatched.fallback.degraded_response if dispatched.fallback else None
            outcome.estimated_cost = 0.0
            return outcome
        if not owner:
            outcome.cache_source = "coalesced"
            outcome.estimated_cost = 0.0

        if owner:
            await self._store(dispatched, candidate, request, key, strategy)
        self._tier_access.track_access(
            request.user_id, question_type.id, dispatched.service_id, outcome.estimated_cost
        )
        return outcome

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _dispatch(
        self,
        candidate: RouteCandidate,
        request: FallbackRequest,
    ) -> _Dispatched:
        try:
            result = await self._fallback.dispatch(candidate.service_id, request)
        except Exception as exc:
            log.warning(
                "router.dispatch_failed",
                service_id=candidate.service_id,
                error=str(exc),
            )
            chain = self._fallback.build_chain(
                candidate.service_id, request.question_type, request.user_tier
            )
            fallback = await self._fallback.execute_fallback(chain, request, exc)
            if not fallback.success:
                return _Dispatched("degraded", None, fallback.service_used or "", fallback)
            return _Dispatched(
                "fallback", fallback.result, fallback.service_used or "", fallback
            )
        return _Dispatched("success", result, candidate.service_id)

    async def _coalesced(
        self,
        key: str | None,
        factory: Callable[[], Awaitable[_Dispatched]],
    ) -> tuple[_Dispatched, bool]:
        """Run factory, or join an identical in-flight dispatch.

        Returns (result, owner). Only the owner writes the cache.
        """
        if not self._settings.coalesce_requests or key is None:
            return await factory(), True

        pending = self._inflight.get(key)
        if pending is not None:
            log.debug("router.coalesced", cache_key=key)
            shared = await asyncio.shield(pending)
            if shared is not None:
                return shared, False
            # the owner was cancelled; dispatch independently
            return await factory(), True

        future: asyncio.Future[_Dispatched | None] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            dispatched = await factory()
        except BaseException:
            future.set_result(None)
            raise
        else:
            future.set_result(dispatched)
            return dispatched, True
        finally:
            self._inflight.pop(key, None)

    async def _cache_key(
        self,
        candidate: RouteCandidate,
        request: RouteRequest,
    ) -> tuple[str | None, ServiceStrategy | None]:
        strategy_id = strategy_for_service(candidate.service_id)
        if strategy_id is None:
            return None, None
        return await self._cache.key_strategy.build_key(
            strategy_id,
            request.image,
            KeyParams(
                language=request.language,
                model=candidate.model_id,
                question=request.question,
                face_box=request.face_box,
            ),
        )

    async def _store(
        self,
        dispatched: _Dispatched,
        candidate: RouteCandidate,
        request: RouteRequest,
        key: str | None,
        strategy: ServiceStrategy | None,
    ) -> None:
        """Cache a fresh upstream result under the key of the service that produced it."""
        if dispatched.fallback is not None and dispatched.fallback.from_cache:
            return
        if dispatched.service_id != candidate.service_id:
            producer = RouteCandidate(
                service_id=dispatched.service_id,
                model_id=candidate.model_id,
                estimated_cost=candidate.estimated_cost,
            )
            key, strategy = await self._cache_key(producer, request)
        if key is None or strategy is None:
            return
        await self._cache.set(key, dispatched.result, strategy)

    def _rejected(
        self,
        request_id: str,
        classification: Classification,
        payload: dict[str, Any],
    ) -> RouteOutcome:
        log.info(
            "router.request.rejected",
            question_type=classification.type_id,
            category=payload.get("category"),
            reason=payload.get("reason"),
        )
        return RouteOutcome(
            request_id=request_id,
            status="rejected",
            question_type_id=classification.type_id,
            confidence=classification.confidence,
            error=payload,
        )

    # ------------------------------------------------------------------
    # Collaborator lookups (best-effort)
    # ------------------------------------------------------------------

    async def _profile(self, user_id: str) -> UserTierProfile:
        if self._usage is not None:
            try:
                return await self._usage.get_user_tier_profile(user_id)
            except Exception as exc:
                log.warning("router.profile_lookup_failed", user_id=user_id, error=str(exc))
        return UserTierProfile(user_id=user_id, tier=Tier.FREE)

    async def _budget(self, user_id: str) -> Budget | None:
        if self._usage is None:
            return None
        try:
            return await self._usage.get_budget(user_id)
        except Exception as exc:
            log.warning("router.budget_lookup_failed", user_id=user_id, error=str(exc))
            return None

    # ------------------------------------------------------------------
    # Health / lifecycle
    # ------------------------------------------------------------------

    async def health_check(self) -> SystemHealth:
        """Cache tiers plus every registered service."""
        cache_health = await self._cache.health_check()
        components = dict(cache_health.components)
        for service_id, health in (await self._services.health_all()).items():
            components[f"service:{service_id}"] = health
        if not len(self._services):
            components["services"] = ComponentHealth(
                status=ComponentStatus.UNHEALTHY,
                error="no analysis services registered",
            )
        return build_system_health(components)

    def stats(self) -> dict[str, Any]:
        return {
            "cache": self._cache.stats(),
            "fallback": self._fallback.stats(),
            "active_users": len(self._active),
            "inflight_keys": len(self._inflight),
        }

    async def aclose(self) -> None:
        """Wait for background tracking, stop cache maintenance, close tiers."""
        await self._tier_access.drain()
        await self._cache.close()
        if self._owns_database:
            await close_db()
        log.info("router.closed")
