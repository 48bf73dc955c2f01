"""Upstream analysis service interface.

Concrete backends (OCR engine, cloud vision API, vision language models)
live outside this package. Anything implementing AnalysisService can be
registered and dispatched to; services are chosen by table lookup on
service_id, never by subclass.

analyze() returns a JSON-serialisable dict on success and raises on
failure. UpstreamFailure carries an explicit FailureKind; any other
exception is classified from its message.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from framesense.types import Tier


@dataclass(frozen=True)
class AnalysisParams:
    """Per-request inputs forwarded to an upstream service."""
    question: str
    language: str = "en"
    model_id: str | None = None
    options: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@runtime_checkable
class AnalysisService(Protocol):
    """A dispatchable upstream service."""

    service_id: str

    async def analyze(
        self,
        question_type: str,
        image: bytes,
        params: AnalysisParams,
        user_tier: Tier,
    ) -> dict[str, Any]:
        ...

    def capabilities(self) -> frozenset[str]:
        ...

    def cost(self) -> float:
        ...

    async def health(self) -> bool:
        ...
