"""
Extractor router - chooses and applies extraction strategies.
"""

import logging
from datetime import date
from typing import Optional

from ..errors import ParseFailure
from ..extraction_ai.service import ExtractionService
from ..mailbox_client.client import EmailMessage
from ..schemas.candidate import (
    ParsedTransactionCandidate,
    normalize_sign,
    resolve_transaction_date,
)
from .base import BaseExtractor, ExtractionResult
from .llm_extractor import LLMExtractor
from .rule_extractor import RuleBasedExtractor, find_dates, reference_date

logger = logging.getLogger(__name__)


class TransactionExtractor:
    """
    Turns an email into a ParsedTransactionCandidate.

    Tries extractors in priority order:
    1. LLM (when a service is configured and enabled)
    2. Regex heuristics

    The first usable result wins. The router then fixes the date by
    precedence (confirmed date, body date, received date, today) and
    enforces the sign convention for the transaction type.
    """

    VERSION = "0.1.0"

    def __init__(
        self,
        llm_service: Optional[ExtractionService] = None,
        extractors: Optional[list[BaseExtractor]] = None,
    ):
        if extractors is None:
            extractors = [RuleBasedExtractor()]
            if llm_service is not None:
                extractors.append(LLMExtractor(llm_service))
        self.extractors = sorted(extractors, key=lambda e: -e.priority)

    def parse(self, email: EmailMessage, today: Optional[date] = None) -> Optional[ParsedTransactionCandidate]:
        """
        Extract a transaction candidate from an email.

        Returns:
            The candidate, or None when no extractor produced payee and amount
        """
        result: Optional[ExtractionResult] = None
        for extractor in self.extractors:
            if not extractor.can_extract(email):
                continue
            result = extractor.extract(email, today)
            if result is not None and result.is_usable:
                break
            logger.debug(f"Extractor {extractor.name} gave no result for {email.message_id}")
            result = None

        if result is None:
            return None
        return self._to_candidate(email, result, today)

    def parse_or_raise(self, email: EmailMessage, today: Optional[date] = None) -> ParsedTransactionCandidate:
        """Like parse(), but a message with no transaction raises ParseFailure."""
        candidate = self.parse(email, today)
        if candidate is None:
            raise ParseFailure(f"No transaction found in message {email.message_id}")
        return candidate

    def _to_candidate(
        self,
        email: EmailMessage,
        result: ExtractionResult,
        today: Optional[date],
    ) -> ParsedTransactionCandidate:
        body_dates = find_dates(email.body_text, reference_date(email, today))
        transaction_date = resolve_transaction_date(
            result.date, body_dates, email.received_at, today=today
        )
        if result.date and result.date != transaction_date:
            logger.debug(
                f"Proposed date {result.date} not confirmed by body, using {transaction_date}"
            )

        amount, flipped = normalize_sign(result.amount, result.transaction_type)
        notes = result.notes
        if flipped and result.amount_signed:
            sign_note = f"Amount sign corrected for {result.transaction_type.value}"
            notes = f"{notes}; {sign_note}" if notes else sign_note
            logger.info(f"Corrected amount sign for {email.message_id} ({result.transaction_type.value})")

        return ParsedTransactionCandidate(
            date=transaction_date,
            payee=result.payee,
            amount=amount,
            transaction_type=result.transaction_type,
            confidence=result.confidence,
            notes=notes,
            extraction_strategy=result.extraction_strategy,
        )
