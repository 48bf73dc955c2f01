"""Content-addressed two-tier cache.

Public API:
- KeyStrategy / KeyParams / ServiceStrategy: deterministic keys and per-service policy
- SERVICE_STRATEGIES: the static strategy table
- TieredCacheStore: fast + durable store with compression, promotion, warming
- FastTier, RedisFastTier, InMemoryFastTier, get_fast_tier: fast tier backends
- DurableStore, SqlDurableStore, InMemoryDurableStore: durable tier backends
- dhash / hash_similarity: default perceptual hash and its similarity metric
"""

from framesense.cache.backend import (
    FastTier,
    InMemoryFastTier,
    RedisFastTier,
    get_fast_tier,
)
from framesense.cache.durable import (
    DurableRow,
    DurableStore,
    InMemoryDurableStore,
    SqlDurableStore,
    WarmingCandidate,
)
from framesense.cache.key_strategy import (
    SERVICE_STRATEGIES,
    CostClass,
    KeyParams,
    KeyStrategy,
    ServiceStrategy,
    StorageTier,
    question_hash,
    strategy_for_service,
    ttl_recommendation,
)
from framesense.cache.manager import CacheLookup, SimilarMatch, TieredCacheStore
from framesense.cache.perceptual import dhash, hash_similarity

__all__ = [
    "SERVICE_STRATEGIES",
    "CacheLookup",
    "CostClass",
    "DurableRow",
    "DurableStore",
    "FastTier",
    "InMemoryDurableStore",
    "InMemoryFastTier",
    "KeyParams",
    "KeyStrategy",
    "RedisFastTier",
    "ServiceStrategy",
    "SimilarMatch",
    "SqlDurableStore",
    "StorageTier",
    "TieredCacheStore",
    "WarmingCandidate",
    "dhash",
    "get_fast_tier",
    "hash_similarity",
    "question_hash",
    "strategy_for_service",
    "ttl_recommendation",
]
