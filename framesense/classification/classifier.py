"""Pattern-based question classification.

Each QuestionType carries regex patterns. A type's score is the sum over its
matching patterns of (1 + specificity bonus), divided by the number of
patterns it has:

    bonus(pattern) = min(len(pattern.source) / 20, 0.5)

Longer patterns are more specific and earn a larger bonus. The best-scoring
type wins; below CONFIDENCE_THRESHOLD the classifier falls back to
DESCRIBE_SCENE with a fixed confidence of 0.3.

Classification is pure: no I/O, no mutation. Registration of new types is
the only mutating operation.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

import structlog

from framesense.classification.question_types import (
    BUILTIN_QUESTION_TYPES,
    DEFAULT_TYPE_ID,
    QuestionType,
)
from framesense.errors import DuplicateTypeId
from framesense.types import Tier

log = structlog.get_logger(__name__)

CONFIDENCE_THRESHOLD = 0.5
FALLBACK_CONFIDENCE = 0.3

# Relative cost of running a question type through a given model
MODEL_COST_MULTIPLIERS: Mapping[str, float] = MappingProxyType({
    "gpt-4-vision": 2.0,
    "gpt-3.5-vision": 1.0,
    "google-vision": 1.2,
    "tesseract": 0.1,
})


@dataclass(frozen=True)
class Classification:
    """Outcome of classify()."""
    question_type: QuestionType
    confidence: float
    reasoning: str
    scores: dict[str, float] = field(default_factory=dict, compare=False)

    @property
    def type_id(self) -> str:
        return self.question_type.id


class QuestionClassifier:
    """Maps question text to a QuestionType.

    The registry starts with the built-in types; register() adds more at
    runtime. Instances are independent of each other.
    """

    def __init__(self, question_types: Iterable[QuestionType] | None = None) -> None:
        self._types: dict[str, QuestionType] = {}
        for qt in BUILTIN_QUESTION_TYPES if question_types is None else question_types:
            self.register(qt)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, question_type: QuestionType) -> None:
        """Add a question type.

        Raises:
            DuplicateTypeId: a type with the same id is already registered
        """
        if question_type.id in self._types:
            raise DuplicateTypeId(f"Question type {question_type.id} already registered")
        self._types[question_type.id] = question_type
        log.debug("classifier.type_registered", type_id=question_type.id)

    def get(self, type_id: str) -> QuestionType | None:
        return self._types.get(type_id)

    @property
    def question_types(self) -> Mapping[str, QuestionType]:
        return MappingProxyType(self._types)

    def available_question_types(self, tier: Tier | str) -> list[QuestionType]:
        """Types a user of the given tier is allowed to ask."""
        user_tier = Tier(tier)
        return [qt for qt in self._types.values() if user_tier.can_access(qt.minimum_tier)]

    def all_capabilities(self) -> set[str]:
        caps: set[str] = set()
        for qt in self._types.values():
            caps |= qt.capability_tags
        return caps

    def find_by_capabilities(self, capabilities: Iterable[str]) -> list[QuestionType]:
        """Types whose capability tags include every requested capability."""
        wanted = set(capabilities)
        return [qt for qt in self._types.values() if wanted <= qt.capability_tags]

    def cost_estimate(self, question_type: QuestionType | str, model_id: str | None = None) -> float:
        """Estimated USD cost of answering question_type with model_id.

        Unknown type ids cost 0.0; unknown models use a multiplier of 1.0.
        """
        qt = question_type if isinstance(question_type, QuestionType) else self._types.get(question_type)
        if qt is None:
            return 0.0
        multiplier = MODEL_COST_MULTIPLIERS.get(model_id or "", 1.0)
        return round(qt.estimated_cost * multiplier, 3)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    @staticmethod
    def _score(question_type: QuestionType, text: str) -> tuple[float, int]:
        if not question_type.patterns:
            return 0.0, 0
        total = 0.0
        matched = 0
        for pattern in question_type.patterns:
            if pattern.search(text):
                matched += 1
                total += 1 + min(len(pattern.pattern) / 20, 0.5)
        return total / len(question_type.patterns), matched

    def classify(self, question: str) -> Classification:
        """Classify question text.

        Never raises; empty or unmatched text yields the default type.
        """
        text = (question or "").lower().strip()
        scores: dict[str, float] = {}
        best_id: str | None = None
        best_score = 0.0
        best_matched = 0

        for type_id, qt in self._types.items():
            score, matched = self._score(qt, text)
            scores[type_id] = round(score, 4)
            if score > best_score:
                best_id, best_score, best_matched = type_id, score, matched

        if best_id is None or best_score < CONFIDENCE_THRESHOLD:
            default = self._types.get(DEFAULT_TYPE_ID) or next(iter(self._types.values()))
            log.debug("classifier.no_clear_match", best=best_id, score=round(best_score, 3))
            return Classification(
                question_type=default,
                confidence=FALLBACK_CONFIDENCE,
                reasoning=f"No clear pattern match; defaulting to {default.id}",
                scores=scores,
            )

        confidence = min(best_score, 1.0)
        chosen = self._types[best_id]
        log.debug("classifier.classified", type_id=best_id, confidence=round(confidence, 3))
        return Classification(
            question_type=chosen,
            confidence=confidence,
            reasoning=(
                f"Matched {best_matched} of {len(chosen.patterns)} patterns for {best_id}"
            ),
            scores=scores,
        )
