"""External collaborators seen from the routing core.

Public API:
- AnalysisService / AnalysisParams: upstream service interface
- ServiceRegistry: services keyed by id
- UsageTracker / InMemoryUsageTracker: user and billing collaborator
"""

from __future__ import annotations

from framesense.services.base import AnalysisParams, AnalysisService
from framesense.services.registry import ServiceRegistry
from framesense.services.usage import InMemoryUsageTracker, UsageTracker, UserUsage

__all__ = [
    "AnalysisParams",
    "AnalysisService",
    "InMemoryUsageTracker",
    "ServiceRegistry",
    "UsageTracker",
    "UserUsage",
]
