"""
LLM extractor: validates the model's JSON against the extraction contract.
"""

import logging
from datetime import date
from typing import Optional

from ..extraction_ai.service import ExtractionService
from ..mailbox_client.client import EmailMessage
from ..schemas.candidate import Confidence, TransactionType, coerce_amount, parse_iso_date
from .base import BaseExtractor, ExtractionResult

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("date", "payee", "amount")


class LLMExtractor(BaseExtractor):
    """Structured extraction through the configured model(s)."""

    def __init__(self, service: ExtractionService):
        self.service = service

    @property
    def name(self) -> str:
        return "llm"

    @property
    def priority(self) -> int:
        return 100

    def can_extract(self, email: EmailMessage) -> bool:
        return self.service.is_enabled and bool(email.body_text)

    def extract(self, email: EmailMessage, today: Optional[date] = None) -> Optional[ExtractionResult]:
        response = self.service.extract_transaction(
            subject=email.subject,
            body=email.body_text,
            received_at=email.received_at,
            today=today,
        )
        if response is None:
            return None
        return self.validate(response.data, strategy=f"{self.name}:{response.model}")

    def validate(self, data: dict, strategy: str = "llm") -> Optional[ExtractionResult]:
        """
        Check the model output contract.

        date, payee and amount are required and amount must be numeric
        (strings such as "$1,234.50" are coerced). Anything else yields None.
        """
        missing = [f for f in REQUIRED_FIELDS if data.get(f) in (None, "")]
        if missing:
            logger.info("Model answer missing required field(s): %s", ", ".join(missing))
            return None

        amount = coerce_amount(data["amount"])
        if amount is None:
            logger.info("Model answer has a non-numeric amount")
            return None

        payee = str(data["payee"]).strip()
        if not payee:
            return None

        proposed = parse_iso_date(data["date"])
        notes = data.get("notes")
        return ExtractionResult(
            date=proposed.isoformat() if proposed else None,
            payee=payee,
            amount=amount,
            transaction_type=TransactionType.parse(data.get("transactionType")),
            confidence=Confidence.parse(data.get("confidence")),
            notes=str(notes).strip() if notes else None,
            extraction_strategy=strategy,
            raw_matches={"model_date": data["date"]},
        )
