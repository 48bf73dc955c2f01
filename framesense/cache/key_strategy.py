"""Content-addressed cache keys with per-service storage policy.

Each upstream result type has a ServiceStrategy: a key pattern with named
placeholders plus TTL, compression, storage tier and cost class. KeyStrategy
fills the placeholders:

    imageHash     perceptual hash of the image (memoised by a SHA-256 prefix)
    faceHash      perceptual hash of a cropped region, else imageHash
    questionHash  SHA-256 prefix of the normalised question text
    lang, model, method, provider   passed through with defaults

Identical bytes are hashed once per process; the memo maps are bounded LRU
maps and can be dropped with clear_caches(). They are touched only from the
event loop thread (hashing itself runs in a worker thread).

Usage:
    strategy = KeyStrategy()
    key, policy = await strategy.build_key("OCR_RESULTS", image, KeyParams(language="en"))
    # key == "ocr:<16 hex>:en", policy.ttl_seconds == 3600
"""

from __future__ import annotations

import asyncio
import hashlib
import re
import string
from collections import OrderedDict
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Any

import structlog

from framesense.cache.perceptual import (
    HASHING_ERRORS,
    BoundingBox,
    PerceptualHasher,
    dhash,
)
from framesense.errors import UnknownServiceType

log = structlog.get_logger(__name__)

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_EMPTY_QUESTION = "noq"


class StorageTier(StrEnum):
    FAST = "fast"
    DURABLE = "durable"


class CostClass(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Estimated USD avoided by a single cache hit, by cost class
COST_CLASS_SAVINGS: Mapping[CostClass, float] = MappingProxyType({
    CostClass.HIGH: 0.03,
    CostClass.MEDIUM: 0.01,
    CostClass.LOW: 0.001,
})


@dataclass(frozen=True)
class ServiceStrategy:
    """Static cache policy for one upstream result type."""
    service_id: str
    key_pattern: str
    ttl_seconds: int
    compress: bool
    storage_tier: StorageTier
    cost_class: CostClass
    description: str = ""

    @property
    def placeholders(self) -> tuple[str, ...]:
        return tuple(
            field for _, field, _, _ in string.Formatter().parse(self.key_pattern)
            if field
        )

    @property
    def prefix(self) -> str:
        """Literal text before the first placeholder (e.g. "gv:web:")."""
        return self.key_pattern.split("{", 1)[0]

    @property
    def estimated_saving(self) -> float:
        return COST_CLASS_SAVINGS[self.cost_class]


def _strategy(
    service_id: str,
    key_pattern: str,
    ttl_seconds: int,
    compress: bool,
    storage_tier: StorageTier,
    cost_class: CostClass,
    description: str,
) -> tuple[str, ServiceStrategy]:
    return service_id, ServiceStrategy(
        service_id=service_id,
        key_pattern=key_pattern,
        ttl_seconds=ttl_seconds,
        compress=compress,
        storage_tier=storage_tier,
        cost_class=cost_class,
        description=description,
    )


SERVICE_STRATEGIES: Mapping[str, ServiceStrategy] = MappingProxyType(dict([
    _strategy("OCR_RESULTS", "ocr:{imageHash}:{lang}", 3600, True,
              StorageTier.FAST, CostClass.LOW, "Local OCR text"),
    _strategy("GOOGLE_VISION_OBJECTS", "gv:objects:{imageHash}", 21600, True,
              StorageTier.FAST, CostClass.MEDIUM, "Cloud vision object localisation"),
    _strategy("GOOGLE_VISION_TEXT", "gv:text:{imageHash}:{lang}", 7200, True,
              StorageTier.FAST, CostClass.LOW, "Cloud vision text detection"),
    _strategy("GOOGLE_VISION_WEB", "gv:web:{imageHash}", 604800, False,
              StorageTier.DURABLE, CostClass.MEDIUM, "Cloud vision web entities"),
    _strategy("GOOGLE_VISION_LOGO", "gv:logo:{imageHash}", 86400, True,
              StorageTier.FAST, CostClass.LOW, "Cloud vision logo detection"),
    _strategy("OPENAI_RESPONSES", "openai:{questionHash}:{imageHash}:{model}", 3600, True,
              StorageTier.FAST, CostClass.HIGH, "Vision language model answers"),
    _strategy("CELEBRITY_IDS", "celeb:{faceHash}", 2592000, False,
              StorageTier.DURABLE, CostClass.HIGH, "Celebrity identification by face"),
    _strategy("ENHANCED_OCR", "eocr:{imageHash}:{method}:{lang}", 7200, True,
              StorageTier.FAST, CostClass.MEDIUM, "Preprocessed multi-pass OCR"),
    _strategy("OPEN_SOURCE_API", "oss:{provider}:{model}:{imageHash}:{questionHash}", 1800, True,
              StorageTier.FAST, CostClass.LOW, "Open source model plugins"),
]))

# Upstream service id -> strategy id used to cache its raw output
SERVICE_CACHE_STRATEGIES: Mapping[str, str] = MappingProxyType({
    "enhanced-ocr": "OCR_RESULTS",
    "google-vision-text": "GOOGLE_VISION_TEXT",
    "google-vision-objects": "GOOGLE_VISION_OBJECTS",
    "google-vision-logos": "GOOGLE_VISION_LOGO",
    "google-vision-web": "GOOGLE_VISION_WEB",
    "openai-gpt4-vision": "OPENAI_RESPONSES",
    "openai-gpt35-vision": "OPENAI_RESPONSES",
    "open-source-api": "OPEN_SOURCE_API",
})

# TTL bounds (seconds) per cost class and multipliers per content category
_TTL_RANGES: Mapping[CostClass, tuple[int, int]] = MappingProxyType({
    CostClass.HIGH: (3600, 86400),
    CostClass.MEDIUM: (1800, 21600),
    CostClass.LOW: (600, 7200),
})
_TTL_CATEGORY_MULTIPLIERS: Mapping[str, int] = MappingProxyType({
    "celebrity-identification": 10,
    "web-detection": 5,
    "text-extraction": 2,
    "ai-analysis": 1,
    "object-detection": 3,
})


def strategy_for_service(service_id: str) -> str | None:
    """Return the strategy id caching results of an upstream service, if any."""
    return SERVICE_CACHE_STRATEGIES.get(service_id)


def ttl_recommendation(cost_class: CostClass | str, category: str | None = None) -> int:
    """Suggest a TTL from cost class and content category.

    Costlier and more stable results are kept longer, never beyond the
    class maximum.
    """
    try:
        low, high = _TTL_RANGES[CostClass(cost_class)]
    except ValueError:
        low, high = _TTL_RANGES[CostClass.MEDIUM]
    multiplier = _TTL_CATEGORY_MULTIPLIERS.get(category or "", 1)
    return min(high, low * multiplier)


def question_hash(question: str | None) -> str:
    """Digest of the question after case folding and punctuation/space normalisation."""
    normalised = _WHITESPACE.sub(" ", _PUNCTUATION.sub("", (question or "").lower().strip()))
    normalised = normalised.strip()
    if not normalised:
        return _EMPTY_QUESTION
    return hashlib.sha256(normalised.encode("utf-8")).hexdigest()[:12]


def content_hash(image: bytes) -> str:
    """Fast exact-bytes digest (first 16 hex chars of SHA-256)."""
    return hashlib.sha256(image).hexdigest()[:16]


@dataclass(frozen=True)
class KeyParams:
    """Per-call key inputs; defaults are the documented placeholder defaults."""
    language: str = "en"
    model: str = "default"
    method: str = "auto"
    provider: str = "unknown"
    question: str | None = None
    face_box: BoundingBox | None = None


class _BoundedMemo:
    """Small LRU map used for hash memoisation."""

    def __init__(self, max_size: int) -> None:
        self._max_size = max_size
        self._data: OrderedDict[Any, str] = OrderedDict()

    def get(self, key: Any) -> str | None:
        value = self._data.get(key)
        if value is not None:
            self._data.move_to_end(key)
        return value

    def put(self, key: Any, value: str) -> None:
        self._data[key] = value
        self._data.move_to_end(key)
        while len(self._data) > self._max_size:
            self._data.popitem(last=False)

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class KeyStrategy:
    """Builds deterministic cache keys and returns the matching policy.

    Explicitly constructed and injected; several instances can coexist, each
    with its own memo maps and (optionally) its own strategy table or hasher.
    """

    def __init__(
        self,
        strategies: Mapping[str, ServiceStrategy] | None = None,
        *,
        hasher: PerceptualHasher = dhash,
        memo_size: int = 10_000,
    ) -> None:
        self._strategies = dict(strategies or SERVICE_STRATEGIES)
        self._hasher = hasher
        self._image_hashes = _BoundedMemo(memo_size)
        self._question_hashes = _BoundedMemo(memo_size)
        self._hash_computations = 0
        self._hash_memo_hits = 0
        self._hash_fallbacks = 0

    # ------------------------------------------------------------------
    # Strategy lookup
    # ------------------------------------------------------------------

    @property
    def strategies(self) -> Mapping[str, ServiceStrategy]:
        return MappingProxyType(self._strategies)

    def get_strategy(self, service_type: str) -> ServiceStrategy:
        """Return the strategy for service_type.

        Raises:
            UnknownServiceType: no strategy registered under that id
        """
        try:
            return self._strategies[service_type]
        except KeyError:
            raise UnknownServiceType(service_type) from None

    def service_type_for_key(self, key: str) -> str | None:
        """Map a key back to the strategy that produced it (longest prefix wins)."""
        best: ServiceStrategy | None = None
        for strategy in self._strategies.values():
            if key.startswith(strategy.prefix) and (
                best is None or len(strategy.prefix) > len(best.prefix)
            ):
                best = strategy
        return best.service_id if best else None

    def parse_key(self, service_type: str, key: str) -> dict[str, str] | None:
        """Recover placeholder values from a key, or None if it does not match."""
        strategy = self.get_strategy(service_type)
        pattern = "".join(
            re.escape(literal) + (f"(?P<{field}>[^:]*)" if field else "")
            for literal, field, _, _ in string.Formatter().parse(strategy.key_pattern)
        )
        match = re.fullmatch(pattern, key)
        return match.groupdict() if match else None

    # ------------------------------------------------------------------
    # Hash components
    # ------------------------------------------------------------------

    async def image_hash(self, image: bytes, box: BoundingBox | None = None) -> str:
        """Perceptual hash of image (or of a crop), memoised by exact content.

        Falls back to the content digest when the image cannot be decoded.
        """
        quick = content_hash(image)
        memo_key = (quick, box)
        self._hash_computations += 1
        cached = self._image_hashes.get(memo_key)
        if cached is not None:
            self._hash_memo_hits += 1
            return cached

        try:
            value = await asyncio.to_thread(self._hasher, image, box)
        except HASHING_ERRORS as exc:
            self._hash_fallbacks += 1
            log.warning(
                "key_strategy.perceptual_hash_failed",
                content_hash=quick,
                cropped=box is not None,
                error=str(exc),
            )
            value = quick

        self._image_hashes.put(memo_key, value)
        return value

    async def face_hash(self, image: bytes, box: BoundingBox | None) -> str:
        """Hash of the face region, or the whole image when no box is given."""
        return await self.image_hash(image, box)

    def question_hash(self, question: str | None) -> str:
        raw = question or ""
        cached = self._question_hashes.get(raw)
        if cached is not None:
            return cached
        value = question_hash(raw)
        self._question_hashes.put(raw, value)
        return value

    # ------------------------------------------------------------------
    # Key building
    # ------------------------------------------------------------------

    async def build_key(
        self,
        service_type: str,
        image: bytes,
        params: KeyParams | None = None,
    ) -> tuple[str, ServiceStrategy]:
        """Build the cache key for (service_type, image, params).

        Returns:
            (key, strategy) so callers know TTL/compression/tier without a
            second lookup.

        Raises:
            UnknownServiceType: service_type has no strategy
        """
        strategy = self.get_strategy(service_type)
        params = params or KeyParams()
        fields = strategy.placeholders

        values: dict[str, str] = {}
        if "imageHash" in fields:
            values["imageHash"] = await self.image_hash(image)
        if "faceHash" in fields:
            values["faceHash"] = await self.face_hash(image, params.face_box)
        if "questionHash" in fields:
            values["questionHash"] = self.question_hash(params.question)
        if "lang" in fields:
            values["lang"] = params.language or "en"
        if "model" in fields:
            values["model"] = params.model or "default"
        if "method" in fields:
            values["method"] = params.method or "auto"
        if "provider" in fields:
            values["provider"] = params.provider or "unknown"

        key = strategy.key_pattern.format_map(values)
        log.debug("key_strategy.key_built", service_type=service_type, key=key)
        return key, strategy

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def clear_caches(self) -> None:
        """Drop both memo maps."""
        self._image_hashes.clear()
        self._question_hashes.clear()
        log.info("key_strategy.caches_cleared")

    def stats(self) -> dict[str, Any]:
        return {
            "image_memo_size": len(self._image_hashes),
            "question_memo_size": len(self._question_hashes),
            "hash_computations": self._hash_computations,
            "hash_memo_hits": self._hash_memo_hits,
            "hash_fallbacks": self._hash_fallbacks,
            "memo_hit_rate": (
                round(self._hash_memo_hits / self._hash_computations * 100, 2)
                if self._hash_computations
                else 0.0
            ),
        }
