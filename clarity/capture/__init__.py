"""Capture pipeline: utterance -> normalizer -> resolver -> synthesizer."""

from clarity.capture.normalizer import UtteranceNormalizer, split_utterance
from clarity.capture.resolver import SYNONYMS, CategoryResolver, LearnedPatterns
from clarity.capture.synthesizer import ExpenseSynthesizer, InsufficientDataError

__all__ = [
    "SYNONYMS",
    "CategoryResolver",
    "ExpenseSynthesizer",
    "InsufficientDataError",
    "LearnedPatterns",
    "UtteranceNormalizer",
    "split_utterance",
]
