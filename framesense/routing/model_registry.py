"""Model descriptors, the built-in model registry and per-tier model permissions.

A model is the thing a user may prefer ("gpt-4-vision"); a service is the
upstream endpoint that runs it ("openai-gpt4-vision"). One model can back
several services (google-vision serves objects, text and logos).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from framesense.types import Tier


@dataclass
class ModelDescriptor:
    """Static description of one model. Only `enabled` changes at runtime."""
    id: str
    provider: str
    tier: Tier
    capabilities: frozenset[str]
    cost_per_request: float
    avg_response_time_sec: float
    quality_score: int
    services: tuple[str, ...]
    enabled: bool = True
    name: str = ""
    use_case: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("ModelDescriptor.id must not be empty")
        if not self.services:
            raise ValueError(f"Model {self.id} must be served by at least one service")
        if not 0 <= self.quality_score <= 100:
            raise ValueError(f"quality_score must be 0-100, got {self.quality_score}")
        self.tier = Tier(self.tier)
        self.capabilities = frozenset(self.capabilities)
        self.services = tuple(self.services)

    def service_for(self, preferred: str | None = None) -> str:
        """The service to dispatch to, honouring preferred when this model serves it."""
        if preferred and preferred in self.services:
            return preferred
        return self.services[0]

    def balanced_ratio(self) -> float:
        return self.quality_score / (self.cost_per_request * 100 + 1)


@dataclass(frozen=True)
class TierModelPermissions:
    """Which models a tier may use: hierarchy level, cost ceiling, providers."""
    level: int
    max_cost_per_request: float
    allowed_providers: frozenset[str]
    description: str = ""

    def allows_provider(self, provider: str) -> bool:
        return "all" in self.allowed_providers or provider in self.allowed_providers


TIER_MODEL_PERMISSIONS: Mapping[Tier, TierModelPermissions] = MappingProxyType({
    Tier.FREE: TierModelPermissions(
        level=0,
        max_cost_per_request=0.005,
        allowed_providers=frozenset({"tesseract", "hybrid", "ollama"}),
        description="Basic AI analysis",
    ),
    Tier.PRO: TierModelPermissions(
        level=1,
        max_cost_per_request=0.03,
        allowed_providers=frozenset(
            {"tesseract", "hybrid", "google", "openai", "huggingface", "ollama"}
        ),
        description="Advanced AI analysis",
    ),
    Tier.PREMIUM: TierModelPermissions(
        level=2,
        max_cost_per_request=0.1,
        allowed_providers=frozenset({"all"}),
        description="Premium AI analysis with all features",
    ),
})


def builtin_models() -> list[ModelDescriptor]:
    """Fresh copies of the built-in descriptors (enabled is mutable)."""
    return [
        ModelDescriptor(
            id="gpt-4-vision",
            name="GPT-4 Vision",
            provider="openai",
            tier=Tier.PREMIUM,
            capabilities=frozenset({
                "text-extraction", "object-detection", "counting", "scene-understanding",
                "document-analysis", "logo-detection", "reasoning",
            }),
            cost_per_request=0.03,
            avg_response_time_sec=12,
            quality_score=95,
            services=("openai-gpt4-vision",),
            use_case="Complex scene analysis and reasoning",
        ),
        ModelDescriptor(
            id="gpt-3.5-vision",
            name="GPT-3.5 Vision",
            provider="openai",
            tier=Tier.PRO,
            capabilities=frozenset({"text-extraction", "object-detection", "scene-understanding"}),
            cost_per_request=0.015,
            avg_response_time_sec=8,
            quality_score=80,
            services=("openai-gpt35-vision",),
            use_case="General image understanding",
        ),
        ModelDescriptor(
            id="google-vision",
            name="Google Cloud Vision",
            provider="google",
            tier=Tier.PRO,
            capabilities=frozenset({
                "text-extraction", "object-detection", "counting", "face-recognition",
                "logo-detection", "document-analysis",
            }),
            cost_per_request=0.02,
            avg_response_time_sec=6,
            quality_score=85,
            services=("google-vision-objects", "google-vision-text", "google-vision-logos"),
            use_case="Structured detection and OCR",
        ),
        ModelDescriptor(
            id="google-vision-web",
            name="Google Vision Web Detection",
            provider="google",
            tier=Tier.PREMIUM,
            capabilities=frozenset({"celebrity-id", "web-search", "face-recognition"}),
            cost_per_request=0.05,
            avg_response_time_sec=10,
            quality_score=90,
            services=("google-vision-web",),
            use_case="Celebrity and web entity identification",
        ),
        ModelDescriptor(
            id="enhanced-ocr",
            name="Enhanced OCR",
            provider="hybrid",
            tier=Tier.FREE,
            capabilities=frozenset({"text-extraction", "multilingual"}),
            cost_per_request=0.001,
            avg_response_time_sec=3,
            quality_score=75,
            services=("enhanced-ocr",),
            use_case="Preprocessed multi-pass OCR",
        ),
        ModelDescriptor(
            id="tesseract",
            name="Tesseract OCR",
            provider="tesseract",
            tier=Tier.FREE,
            capabilities=frozenset({"text-extraction"}),
            cost_per_request=0.0,
            avg_response_time_sec=2,
            quality_score=65,
            services=("enhanced-ocr",),
            use_case="Local text extraction",
        ),
        ModelDescriptor(
            id="huggingface-blip2",
            name="BLIP-2",
            provider="huggingface",
            tier=Tier.PRO,
            capabilities=frozenset({"scene-understanding"}),
            cost_per_request=0.005,
            avg_response_time_sec=5,
            quality_score=70,
            services=("open-source-api",),
            enabled=False,
        ),
        ModelDescriptor(
            id="huggingface-clip",
            name="CLIP",
            provider="huggingface",
            tier=Tier.PRO,
            capabilities=frozenset({"object-detection"}),
            cost_per_request=0.003,
            avg_response_time_sec=4,
            quality_score=65,
            services=("open-source-api",),
            enabled=False,
        ),
        ModelDescriptor(
            id="ollama-llava",
            name="LLaVA (local)",
            provider="ollama",
            tier=Tier.FREE,
            capabilities=frozenset({"scene-understanding", "text-extraction"}),
            cost_per_request=0.0,
            avg_response_time_sec=15,
            quality_score=60,
            services=("open-source-api",),
            enabled=False,
        ),
        ModelDescriptor(
            id="ollama-moondream",
            name="Moondream (local)",
            provider="ollama",
            tier=Tier.FREE,
            capabilities=frozenset({"scene-understanding"}),
            cost_per_request=0.0,
            avg_response_time_sec=6,
            quality_score=50,
            services=("open-source-api",),
            enabled=False,
        ),
        ModelDescriptor(
            id="replicate-custom",
            name="Replicate custom models",
            provider="replicate",
            tier=Tier.PREMIUM,
            capabilities=frozenset({"custom-models"}),
            cost_per_request=0.02,
            avg_response_time_sec=8,
            quality_score=80,
            services=("open-source-api",),
            enabled=False,
        ),
    ]
