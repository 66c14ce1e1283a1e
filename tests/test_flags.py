"""Tests for review flag rules."""

from decimal import Decimal

import pytest

from conftest import CURRENCY_DISCLAIMER_ALERT
from inbox_ledger.flags import FlagEngine, has_unresolved_flags
from inbox_ledger.schemas.budget import Flag, FlagReason
from inbox_ledger.schemas.candidate import (
    Confidence,
    ParsedTransactionCandidate,
    TransactionType,
)


def _candidate(amount: str = "-50.00", confidence: Confidence = Confidence.HIGH):
    return ParsedTransactionCandidate(
        date="2024-03-15",
        payee="STARBUCKS",
        amount=Decimal(amount),
        transaction_type=TransactionType.PURCHASE,
        confidence=confidence,
    )


def _reasons(flags: list[Flag]) -> list[FlagReason]:
    return [f.reason for f in flags]


@pytest.fixture
def engine() -> FlagEngine:
    return FlagEngine()


class TestFlagEngine:
    def test_clean_candidate_has_no_flags(self, engine, make_email):
        assert engine.evaluate(make_email(), _candidate(), category_id=3) == []

    def test_missing_category(self, engine, make_email):
        flags = engine.evaluate(make_email(), _candidate(), category_id=None)
        assert _reasons(flags) == [FlagReason.MISSING_CATEGORY]
        assert flags[0].resolved is False
        assert flags[0].created_at.endswith("Z")

    def test_low_confidence(self, engine, make_email):
        flags = engine.evaluate(make_email(), _candidate(confidence=Confidence.LOW), category_id=3)
        assert _reasons(flags) == [FlagReason.LOW_CONFIDENCE]

    def test_medium_confidence_not_flagged(self, engine, make_email):
        flags = engine.evaluate(make_email(), _candidate(confidence=Confidence.MEDIUM), category_id=3)
        assert flags == []

    def test_large_amount(self, engine, make_email):
        flags = engine.evaluate(make_email(), _candidate("-15000.00"), category_id=3)
        assert _reasons(flags) == [FlagReason.UNUSUAL_AMOUNT]
        assert flags[0].message == "Large transaction amount: $15,000.00. Please verify."

    def test_tiny_amount(self, engine, make_email):
        flags = engine.evaluate(make_email(), _candidate("-0.005"), category_id=3)
        assert _reasons(flags) == [FlagReason.UNUSUAL_AMOUNT]
        assert flags[0].message == "Very small transaction amount. Please verify."

    def test_zero_amount_is_unusual(self, engine, make_email):
        flags = engine.evaluate(make_email(), _candidate("0"), category_id=3)
        assert _reasons(flags) == [FlagReason.UNUSUAL_AMOUNT]

    @pytest.mark.parametrize("amount", ["-10000.00", "-0.01", "25000.00"])
    def test_threshold_edges(self, make_email, amount):
        engine = FlagEngine(unusual_amount_max="30000")
        flags = engine.evaluate(make_email(), _candidate(amount), category_id=3)
        assert FlagReason.UNUSUAL_AMOUNT not in _reasons(flags)

    def test_currency_disclaimer(self, engine, make_email):
        email = make_email(body=CURRENCY_DISCLAIMER_ALERT)
        flags = engine.evaluate(email, _candidate("-120.00"), category_id=3)
        assert _reasons(flags) == [FlagReason.CURRENCY_MISMATCH]
        assert "USD instead of JMD" in flags[0].message

    def test_rules_are_independent(self, engine, make_email):
        email = make_email(body=CURRENCY_DISCLAIMER_ALERT)
        flags = engine.evaluate(email, _candidate("-15000.00", Confidence.LOW), category_id=None)
        assert _reasons(flags) == [
            FlagReason.CURRENCY_MISMATCH,
            FlagReason.LOW_CONFIDENCE,
            FlagReason.MISSING_CATEGORY,
            FlagReason.UNUSUAL_AMOUNT,
        ]


class TestHasUnresolvedFlags:
    def test_unresolved(self):
        flags = [
            Flag(reason=FlagReason.LOW_CONFIDENCE, message="m", created_at="t", resolved=True),
            Flag(reason=FlagReason.MISSING_CATEGORY, message="m", created_at="t"),
        ]
        assert has_unresolved_flags(flags) is True

    def test_all_resolved(self):
        flags = [Flag(reason=FlagReason.LOW_CONFIDENCE, message="m", created_at="t", resolved=True)]
        assert has_unresolved_flags(flags) is False
        assert has_unresolved_flags([]) is False
