"""Question type descriptors and the built-in registry.

A QuestionType says what a question needs (capability tags), who may ask it
(minimum tier), roughly what it costs, and which upstream services answer it
by default and as first fallback. Patterns drive the classifier.

Capability vocabulary shared with the model registry:
text-extraction, document-analysis, object-detection, counting,
scene-understanding, logo-detection, face-recognition, celebrity-id,
web-search, custom-models.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from framesense.types import Tier


@dataclass(frozen=True)
class QuestionType:
    """Static description of a class of questions."""
    id: str
    patterns: tuple[re.Pattern[str], ...]
    capability_tags: frozenset[str]
    minimum_tier: Tier
    estimated_cost: float
    default_service_id: str
    default_model_id: str
    fallback_service_id: str | None = None
    description: str = ""
    response_time: str = ""
    metadata: dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("QuestionType.id must not be empty")
        if self.estimated_cost < 0:
            raise ValueError(f"estimated_cost must be >= 0, got {self.estimated_cost}")
        object.__setattr__(self, "minimum_tier", Tier(self.minimum_tier))
        object.__setattr__(self, "capability_tags", frozenset(self.capability_tags))


def _patterns(*sources: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(src, re.IGNORECASE) for src in sources)


DEFAULT_TYPE_ID = "DESCRIBE_SCENE"

BUILTIN_QUESTION_TYPES: tuple[QuestionType, ...] = (
    QuestionType(
        id="PURE_TEXT",
        patterns=_patterns(
            r"what does (this|it) say",
            r"read (the )?text",
            r"transcribe",
            r"extract text",
            r"what is written",
            r"what text",
            r"can you read",
        ),
        capability_tags=frozenset({"text-extraction"}),
        minimum_tier=Tier.FREE,
        estimated_cost=0.001,
        default_service_id="enhanced-ocr",
        default_model_id="tesseract",
        fallback_service_id="google-vision-text",
        description="Text extraction and reading",
        response_time="1-3s",
    ),
    QuestionType(
        id="COUNT_OBJECTS",
        patterns=_patterns(
            r"how many",
            r"count",
            r"number of",
            r"quantity",
            r"total.*(?:cars|people|objects|items)",
            r"count.*(?:cars|people|objects|items)",
        ),
        capability_tags=frozenset({"object-detection", "counting"}),
        minimum_tier=Tier.PRO,
        estimated_cost=0.02,
        default_service_id="google-vision-objects",
        default_model_id="google-vision",
        fallback_service_id="openai-gpt35-vision",
        description="Object counting and quantification",
        response_time="3-8s",
    ),
    QuestionType(
        id="IDENTIFY_CELEBRITY",
        patterns=_patterns(
            r"who is (this|that)",
            r"identify (person|actor|celebrity)",
            r"name of (this )?person",
            r"recognize (person|face)",
            r"famous person",
            r"celebrity",
            r"actor",
            r"actress",
        ),
        capability_tags=frozenset({"celebrity-id", "web-search"}),
        minimum_tier=Tier.PREMIUM,
        estimated_cost=0.05,
        default_service_id="google-vision-web",
        default_model_id="google-vision-web",
        fallback_service_id="openai-gpt4-vision",
        description="Celebrity and public figure identification",
        response_time="5-10s",
    ),
    QuestionType(
        id="DESCRIBE_SCENE",
        patterns=_patterns(
            r"what is happening",
            r"describe (this )?image",
            r"explain (what|this)",
            r"what do you see",
            r"analyze (this )?image",
            r"tell me about",
            r"what's in",
            r"scene",
        ),
        capability_tags=frozenset({"scene-understanding"}),
        minimum_tier=Tier.PRO,
        estimated_cost=0.03,
        default_service_id="openai-gpt4-vision",
        default_model_id="gpt-4-vision",
        fallback_service_id="openai-gpt35-vision",
        description="Comprehensive scene analysis and description",
        response_time="8-15s",
    ),
    QuestionType(
        id="DETECT_OBJECTS",
        patterns=_patterns(
            r"what objects",
            r"find",
            r"detect",
            r"locate",
            r"identify objects",
            r"what items",
            r"objects in",
            r"spot",
        ),
        capability_tags=frozenset({"object-detection"}),
        minimum_tier=Tier.PRO,
        estimated_cost=0.02,
        default_service_id="google-vision-objects",
        default_model_id="google-vision",
        fallback_service_id="openai-gpt35-vision",
        description="Object detection and identification",
        response_time="3-8s",
    ),
    QuestionType(
        id="DETECT_LOGOS",
        patterns=_patterns(
            r"logo",
            r"brand",
            r"company",
            r"trademark",
            r"what brand",
            r"identify brand",
        ),
        capability_tags=frozenset({"logo-detection"}),
        minimum_tier=Tier.PRO,
        estimated_cost=0.025,
        default_service_id="google-vision-logos",
        default_model_id="google-vision",
        fallback_service_id="openai-gpt4-vision",
        description="Brand and logo identification",
        response_time="4-8s",
    ),
    QuestionType(
        id="ANALYZE_DOCUMENT",
        patterns=_patterns(
            r"document",
            r"form",
            r"invoice",
            r"receipt",
            r"paper",
            r"analyze.*document",
            r"extract.*information",
        ),
        capability_tags=frozenset({"text-extraction", "document-analysis"}),
        minimum_tier=Tier.PRO,
        estimated_cost=0.015,
        default_service_id="google-vision-text",
        default_model_id="google-vision",
        fallback_service_id="enhanced-ocr",
        description="Document analysis and information extraction",
        response_time="3-6s",
    ),
    QuestionType(
        id="CUSTOM_ANALYSIS",
        patterns=_patterns(r"custom|special|advanced"),
        capability_tags=frozenset({"custom-models"}),
        minimum_tier=Tier.PREMIUM,
        estimated_cost=0.01,
        default_service_id="open-source-api",
        default_model_id="replicate-custom",
        fallback_service_id="openai-gpt4-vision",
        description="Custom analysis using specialized models",
        response_time="5-12s",
    ),
)
