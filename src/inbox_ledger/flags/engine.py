"""
Review flag rules.

Each rule looks at the source email, the parsed candidate and the
category assignment independently, and contributes at most one flag.
Rules are stateless; thresholds come from ImporterConfig.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from ..mailbox_client.client import EmailMessage
from ..schemas.budget import Flag, FlagReason
from ..schemas.candidate import Confidence, ParsedTransactionCandidate

logger = logging.getLogger(__name__)

# Disclaimers banks add when the amount may be in another currency
CURRENCY_DISCLAIMERS = (
    "please note, the dollar amount reported is in the currency of the account",
    "dollar amount reported is in the currency",
    "amount reported is in the currency of the account",
)


@dataclass
class FlagContext:
    """Inputs shared by every rule."""

    email: EmailMessage
    candidate: ParsedTransactionCandidate
    category_id: Optional[int]
    unusual_amount_max: Decimal
    unusual_amount_min: Decimal


@dataclass
class FlagRule:
    reason: FlagReason
    name: str
    check: Callable[[FlagContext], bool]
    message: Callable[[FlagContext], str]


def _has_currency_disclaimer(ctx: FlagContext) -> bool:
    content = ctx.email.body.lower()
    return any(phrase in content for phrase in CURRENCY_DISCLAIMERS)


def _is_unusual_amount(ctx: FlagContext) -> bool:
    amount = abs(ctx.candidate.amount)
    return amount > ctx.unusual_amount_max or amount < ctx.unusual_amount_min


def _unusual_amount_message(ctx: FlagContext) -> str:
    amount = abs(ctx.candidate.amount)
    if amount > ctx.unusual_amount_max:
        return f"Large transaction amount: ${amount:,.2f}. Please verify."
    return "Very small transaction amount. Please verify."


FLAG_RULES: list[FlagRule] = [
    FlagRule(
        reason=FlagReason.CURRENCY_MISMATCH,
        name="Currency Mismatch",
        check=_has_currency_disclaimer,
        message=lambda ctx: "Transaction amount may be in USD instead of JMD. Please verify the currency.",
    ),
    FlagRule(
        reason=FlagReason.LOW_CONFIDENCE,
        name="Low Confidence Parse",
        check=lambda ctx: ctx.candidate.confidence == Confidence.LOW,
        message=lambda ctx: "Transaction was parsed with low confidence. Please review the details.",
    ),
    FlagRule(
        reason=FlagReason.MISSING_CATEGORY,
        name="Missing Category",
        check=lambda ctx: ctx.category_id is None,
        message=lambda ctx: "Transaction was not automatically categorized. Please assign a category.",
    ),
    FlagRule(
        reason=FlagReason.UNUSUAL_AMOUNT,
        name="Unusual Amount",
        check=_is_unusual_amount,
        message=_unusual_amount_message,
    ),
]


class FlagEngine:
    """Runs every flag rule against a candidate."""

    def __init__(
        self,
        unusual_amount_max: Decimal | float | str = Decimal("10000"),
        unusual_amount_min: Decimal | float | str = Decimal("0.01"),
        rules: Optional[list[FlagRule]] = None,
    ):
        self.unusual_amount_max = Decimal(str(unusual_amount_max))
        self.unusual_amount_min = Decimal(str(unusual_amount_min))
        self.rules = rules if rules is not None else FLAG_RULES

    def evaluate(
        self,
        email: EmailMessage,
        candidate: ParsedTransactionCandidate,
        category_id: Optional[int] = None,
    ) -> list[Flag]:
        """Flags raised for this candidate, in rule order."""
        ctx = FlagContext(
            email=email,
            candidate=candidate,
            category_id=category_id,
            unusual_amount_max=self.unusual_amount_max,
            unusual_amount_min=self.unusual_amount_min,
        )
        created_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

        flags = [
            Flag(reason=rule.reason, message=rule.message(ctx), created_at=created_at)
            for rule in self.rules
            if rule.check(ctx)
        ]
        if flags:
            logger.debug(
                "Message %s flagged: %s", email.message_id, ", ".join(f.reason.value for f in flags)
            )
        return flags


def has_unresolved_flags(flags: Iterable[Flag]) -> bool:
    return any(not f.resolved for f in flags)
