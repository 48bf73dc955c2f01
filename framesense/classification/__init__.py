"""Question classification.

Public API:
- QuestionType: static descriptor (capabilities, minimum tier, cost, services)
- BUILTIN_QUESTION_TYPES: the default registry contents
- QuestionClassifier: classify(), register(), lookup and cost helpers
- Classification: classify() result with confidence and reasoning
"""

from __future__ import annotations

from framesense.classification.classifier import (
    MODEL_COST_MULTIPLIERS,
    Classification,
    QuestionClassifier,
)
from framesense.classification.question_types import (
    BUILTIN_QUESTION_TYPES,
    DEFAULT_TYPE_ID,
    QuestionType,
)

__all__ = [
    "BUILTIN_QUESTION_TYPES",
    "DEFAULT_TYPE_ID",
    "MODEL_COST_MULTIPLIERS",
    "Classification",
    "QuestionClassifier",
    "QuestionType",
]
