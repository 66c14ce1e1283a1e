"""
Regex heuristics extractor for bank alert emails.

Recognizes the common alert phrasing, e.g.
"A purchase for $45.67 at STARBUCKS on 2024-03-15", "Deposit of USD 1,200.00",
"ATM withdrawal of J$5,000.00", "A fee of $2.50 was charged".

Supported formats:
- Dates: Y-m-d, m/d/Y, m/d/y, Month d, Y, d Month Y, d-Mon-Y, and year-less
  Month d and d Month (year taken from the received date)
- Amounts: $1,234.56, US$ / J$ / USD / JMD / EUR / € / £ prefixes, USD/JMD suffix
"""

import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from ..mailbox_client.client import EmailMessage
from ..schemas.candidate import Confidence, TransactionType
from .base import BaseExtractor, ExtractionResult

logger = logging.getLogger(__name__)

MONTHS = {
    "january": 1, "jan": 1,
    "february": 2, "feb": 2,
    "march": 3, "mar": 3,
    "april": 4, "apr": 4,
    "may": 5,
    "june": 6, "jun": 6,
    "july": 7, "jul": 7,
    "august": 8, "aug": 8,
    "september": 9, "sept": 9, "sep": 9,
    "october": 10, "oct": 10,
    "november": 11, "nov": 11,
    "december": 12, "dec": 12,
}
_MONTH_ALT = "|".join(sorted(MONTHS, key=len, reverse=True))

# (pattern, strptime format or None for month names, pattern type)
DATE_PATTERNS = [
    (r"\b(\d{4})-(\d{2})-(\d{2})\b", "%Y-%m-%d", "iso"),
    (r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b", "%m/%d/%Y", "us_slash"),
    (r"\b(\d{1,2})/(\d{1,2})/(\d{2})\b", "%m/%d/%y", "us_slash_short"),
    (
        rf"\b({_MONTH_ALT})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(\d{{4}})\b",
        None,
        "month_day_year",
    ),
    (
        rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+({_MONTH_ALT})\.?,?\s+(\d{{4}})\b",
        None,
        "day_month_year",
    ),
    (rf"\b(\d{{1,2}})-({_MONTH_ALT})-(\d{{2,4}})\b", None, "day_mon_year"),
    # Year-less forms take the year from the reference date
    (
        rf"\b({_MONTH_ALT})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?\b(?!,?\s+\d{{4}}\b)",
        None,
        "month_day",
    ),
    (
        rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+({_MONTH_ALT})\b(?!\.?,?\s+\d{{4}}\b)",
        None,
        "day_month",
    ),
]

_NUMBER = r"\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?"
_CURRENCY_PREFIX = r"(?:US\$|J\$|JMD\s*\$?|USD\s*\$?|EUR\s*|GBP\s*|\$|€|£)"

# Amount patterns, most specific first
AMOUNT_PATTERNS = [
    (rf"(?P<neg>-)?\s*{_CURRENCY_PREFIX}\s*(?P<value>{_NUMBER})", "currency_prefix"),
    (rf"(?P<value>{_NUMBER})\s*(?:USD|JMD|EUR|GBP)\b", "currency_suffix"),
    (rf"\b(?:amount|total)\s*:?\s*(?P<value>{_NUMBER})", "amount_label"),
]

# Amounts preceded by these words are balances, not the transaction
BALANCE_CONTEXT = re.compile(r"(balance|limit|available)\W*(?:\w+\W+){0,3}$", re.IGNORECASE)

_PAYEE_STOP = r"(?=\s+on\s|\s+for\s|\s+using\s|\s+with\s|\s+was\s|\s*[,;]|\.\s|\.?$)"

# (pattern, applicable types or None for any)
PAYEE_PATTERNS = [
    (r"\b(?:merchant|payee|merchant name|location)\s*[:\-]\s*(?P<payee>[^\n|]{2,60})", None),
    (rf"\bat\s+(?P<payee>[A-Za-z0-9*#&'][^\n]{{0,60}}?){_PAYEE_STOP}", None),
    (rf"\bfrom\s+(?P<payee>[A-Za-z0-9*#&'][^\n]{{0,60}}?){_PAYEE_STOP}", {TransactionType.DEPOSIT}),
    (rf"\bto\s+(?P<payee>[A-Za-z0-9*#&'][^\n]{{0,60}}?){_PAYEE_STOP}", {TransactionType.TRANSFER}),
]

# Ordered: the first keyword family found decides the type
TYPE_KEYWORDS = [
    (TransactionType.DEPOSIT, r"\b(?:refund(?:ed)?|deposit(?:ed)?|credited|credit alert|received a payment)\b"),
    (TransactionType.WITHDRAWAL, r"\b(?:withdrawal|withdrawn|atm)\b"),
    (TransactionType.TRANSFER, r"\b(?:transfer(?:red)?)\b"),
    (TransactionType.FEE, r"\b(?:fee|service charge)\b"),
    (TransactionType.PURCHASE, r"\b(?:purchase[ds]?|transaction|spent|charged|debit(?:ed)?|card was used)\b"),
]

_TIME_LIKE = re.compile(r"^\d{1,2}(?::\d{2})+")


def _without_year(month: int, day: int, reference: date) -> date:
    """The latest month/day on or before the reference date."""
    candidate = date(reference.year, month, day)
    if candidate > reference:
        candidate = date(reference.year - 1, month, day)
    return candidate


def parse_date_match(
    match: re.Match,
    date_format: Optional[str],
    pattern_type: str,
    reference: Optional[date] = None,
) -> Optional[date]:
    """Parse a date regex match."""
    reference = reference or date.today()
    try:
        if pattern_type == "month_day":
            return _without_year(MONTHS[match.group(1).lower()], int(match.group(2)), reference)
        if pattern_type == "day_month":
            return _without_year(MONTHS[match.group(2).lower()], int(match.group(1)), reference)
        if pattern_type == "month_day_year":
            return date(int(match.group(3)), MONTHS[match.group(1).lower()], int(match.group(2)))
        if pattern_type == "day_month_year":
            return date(int(match.group(3)), MONTHS[match.group(2).lower()], int(match.group(1)))
        if pattern_type == "day_mon_year":
            year = int(match.group(3))
            year = year + 2000 if year < 100 else year
            return date(year, MONTHS[match.group(2).lower()], int(match.group(1)))
        if date_format:
            return datetime.strptime(match.group(0), date_format).date()
    except (ValueError, KeyError):
        pass
    return None


def find_dates(text: str, reference: Optional[date] = None) -> list[date]:
    """
    All dates written in the text, in order of appearance, without repeats.

    Dates written without a year ("Mar 3", "3 March") get the year that puts
    them on or before ``reference`` (default today).
    """
    found: list[tuple[int, date]] = []
    for pattern, date_format, pattern_type in DATE_PATTERNS:
        for match in re.finditer(pattern, text, re.IGNORECASE):
            parsed = parse_date_match(match, date_format, pattern_type, reference)
            if parsed:
                found.append((match.start(), parsed))

    found.sort(key=lambda item: item[0])
    dates: list[date] = []
    for _, parsed in found:
        if parsed not in dates:
            dates.append(parsed)
    return dates


def reference_date(email: EmailMessage, today: Optional[date] = None) -> date:
    """The date year-less body dates are resolved against."""
    if email.received_at:
        return email.received_at.date()
    return today or date.today()


def parse_amount(value: str) -> Decimal:
    """Parse 1,234.56 style amounts."""
    return Decimal(value.replace(",", ""))


def clean_payee(raw: str) -> str:
    payee = re.sub(r"\s+", " ", raw).strip(" \t-:*#.,;'\"")
    return payee[:60].strip()


class RuleBasedExtractor(BaseExtractor):
    """
    Extract a transaction from alert text with pattern matching.

    Used when the LLM is disabled or gives no usable answer. Amounts come
    out unsigned; the router applies the sign for the detected type.
    """

    @property
    def name(self) -> str:
        return "rules"

    @property
    def priority(self) -> int:
        return 10

    def can_extract(self, email: EmailMessage) -> bool:
        return bool(email.body_text or email.subject)

    def extract(self, email: EmailMessage, today: Optional[date] = None) -> Optional[ExtractionResult]:
        text = f"{email.subject}\n{email.body_text}".strip()
        result = ExtractionResult(extraction_strategy=self.name)

        result.transaction_type = self._extract_type(text)
        result.raw_matches["type"] = result.transaction_type.value

        amount_result = self._extract_amount(text)
        if amount_result:
            result.amount = amount_result["amount"]
            result.amount_signed = amount_result["signed"]
            result.raw_matches["amount"] = amount_result

        payee_result = self._extract_payee(text, result.transaction_type)
        if payee_result:
            result.payee = payee_result["payee"]
            result.raw_matches["payee"] = payee_result

        dates = find_dates(email.body_text, reference_date(email, today))
        if dates:
            result.date = dates[0].isoformat()
            result.raw_matches["dates"] = [d.isoformat() for d in dates]

        complete = (
            result.amount is not None
            and result.payee
            and result.date
            and result.transaction_type != TransactionType.UNKNOWN
        )
        result.confidence = Confidence.MEDIUM if complete else Confidence.LOW

        if not result.is_usable:
            logger.debug("Rule extractor found no transaction in %s: %s", email.message_id, result.raw_matches)
            return None
        return result

    def _extract_type(self, text: str) -> TransactionType:
        for transaction_type, pattern in TYPE_KEYWORDS:
            if re.search(pattern, text, re.IGNORECASE):
                return transaction_type
        return TransactionType.UNKNOWN

    def _extract_amount(self, text: str) -> Optional[dict[str, Any]]:
        """First amount that is not a balance figure."""
        for pattern, pattern_type in AMOUNT_PATTERNS:
            for match in re.finditer(pattern, text, re.IGNORECASE):
                if BALANCE_CONTEXT.search(text[max(0, match.start() - 40) : match.start()]):
                    continue
                try:
                    amount = parse_amount(match.group("value"))
                except InvalidOperation:
                    continue
                signed = bool(match.groupdict().get("neg"))
                if signed:
                    amount = -amount
                return {
                    "amount": amount,
                    "signed": signed,
                    "match": match.group(0).strip(),
                    "position": match.start(),
                    "pattern_type": pattern_type,
                }
        return None

    def _extract_payee(self, text: str, transaction_type: TransactionType) -> Optional[dict[str, Any]]:
        for pattern, applicable in PAYEE_PATTERNS:
            if applicable is not None and transaction_type not in applicable:
                continue
            for match in re.finditer(pattern, text, re.IGNORECASE | re.MULTILINE):
                payee = clean_payee(match.group("payee"))
                if len(payee) < 2 or _TIME_LIKE.match(payee) or find_dates(payee):
                    continue
                return {"payee": payee, "match": match.group(0).strip()}
        return None
