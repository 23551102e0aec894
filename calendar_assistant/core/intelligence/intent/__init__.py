"""Intent classification module."""

from .types import IntentType, IntentResult
from .classifier import (
    IntentClassifier,
    get_intent_classifier,
    classify_intent,
)

__all__ = [
    # Types
    "IntentType",
    "IntentResult",
    # Classifier
    "IntentClassifier",
    "get_intent_classifier",
    "classify_intent",
]
