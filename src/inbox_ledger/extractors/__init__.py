"""
Transaction extractors for bank notification emails.
"""

from .base import BaseExtractor, ExtractionResult
from .llm_extractor import LLMExtractor
from .router import TransactionExtractor
from .rule_extractor import RuleBasedExtractor, find_dates

__all__ = [
    "BaseExtractor",
    "ExtractionResult",
    "LLMExtractor",
    "RuleBasedExtractor",
    "TransactionExtractor",
    "find_dates",
]
