"""
Base extractor interface and common types.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from ..mailbox_client.client import EmailMessage
from ..schemas.candidate import Confidence, TransactionType


@dataclass
class ExtractionResult:
    """Result from an extraction attempt, before date and sign normalization."""

    date: Optional[str] = None  # Proposed YYYY-MM-DD
    payee: Optional[str] = None
    amount: Optional[Decimal] = None
    transaction_type: TransactionType = TransactionType.UNKNOWN
    confidence: Confidence = Confidence.LOW
    notes: Optional[str] = None
    # False when the extractor only saw a magnitude; the sign then comes from the type
    amount_signed: bool = True

    # Metadata
    extraction_strategy: str = ""
    raw_matches: dict[str, Any] = field(default_factory=dict)  # Debug info

    @property
    def is_usable(self) -> bool:
        """Payee and amount are the minimum for a transaction."""
        return bool(self.payee) and self.amount is not None


class BaseExtractor(ABC):
    """
    Base class for all extractors.

    Each extractor implements a specific strategy:
    - LLM structured extraction
    - Regex heuristics over common alert phrasing
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Extractor name for logging and provenance."""
        pass

    @property
    @abstractmethod
    def priority(self) -> int:
        """
        Priority for extractor selection.
        Higher = tried first.
        """
        pass

    @abstractmethod
    def can_extract(self, email: EmailMessage) -> bool:
        """Check if this extractor should be attempted for the email."""
        pass

    @abstractmethod
    def extract(self, email: EmailMessage, today: Optional[date] = None) -> Optional[ExtractionResult]:
        """
        Extract a transaction from the email.

        Returns:
            ExtractionResult, or None when nothing valid was found
        """
        pass
