"""Tests for transaction extractors and the extraction router."""

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from conftest import (
    ATM_ALERT,
    CURRENCY_DISCLAIMER_ALERT,
    DEPOSIT_ALERT,
    NEWSLETTER_BODY,
    STARBUCKS_ALERT,
    STARBUCKS_ALERT_HTML,
)
from inbox_ledger.errors import ParseFailure
from inbox_ledger.extraction_ai import ModelAnswer
from inbox_ledger.extractors import LLMExtractor, RuleBasedExtractor, TransactionExtractor
from inbox_ledger.extractors.rule_extractor import clean_payee, find_dates, parse_amount
from inbox_ledger.schemas.candidate import Confidence, TransactionType


def _llm_service(data: dict | None, model: str = "qwen-test") -> MagicMock:
    service = MagicMock()
    service.is_enabled = True
    service.extract_transaction.return_value = (
        ModelAnswer(data=data, model=model) if data is not None else None
    )
    return service


class TestRuleHelpers:
    def test_find_dates_in_order(self):
        text = "Posted 2024-03-16 for a purchase on March 14, 2024 (ref 03/15/2024)"
        assert find_dates(text) == [date(2024, 3, 16), date(2024, 3, 14), date(2024, 3, 15)]

    def test_find_dates_rejects_impossible(self):
        assert find_dates("on 14/03/2024") == []

    def test_find_dates_day_month(self):
        assert find_dates("on 5 Mar 2024 and 07-Feb-24") == [date(2024, 3, 5), date(2024, 2, 7)]

    def test_find_dates_without_year_use_reference(self):
        reference = date(2024, 3, 15)
        assert find_dates("Your card was used on Mar 3 for $12.00", reference) == [date(2024, 3, 3)]
        assert find_dates("on 3rd March at SHELL", reference) == [date(2024, 3, 3)]

    def test_find_dates_without_year_roll_back(self):
        """A month/day later than the reference belongs to last year."""
        assert find_dates("on Dec 30 at SHELL", date(2024, 1, 2)) == [date(2023, 12, 30)]

    def test_full_dates_not_read_twice(self):
        reference = date(2025, 1, 10)
        text = "on March 14, 2024, 14 March 2024 and 03/15/2024"
        assert find_dates(text, reference) == [date(2024, 3, 14), date(2024, 3, 15)]

    def test_parse_amount(self):
        assert parse_amount("1,234.50") == Decimal("1234.50")

    def test_clean_payee(self):
        assert clean_payee("  STARBUCKS   #123 ,") == "STARBUCKS #123"


class TestRuleBasedExtractor:
    @pytest.fixture
    def extractor(self) -> RuleBasedExtractor:
        return RuleBasedExtractor()

    def test_purchase_alert(self, extractor, make_email):
        result = extractor.extract(make_email(body=STARBUCKS_ALERT))

        assert result.payee == "STARBUCKS"
        assert result.amount == Decimal("45.67")
        assert result.amount_signed is False
        assert result.transaction_type == TransactionType.PURCHASE
        assert result.date == "2024-03-15"
        assert result.confidence == Confidence.MEDIUM

    def test_balance_is_not_the_amount(self, extractor, make_email):
        body = "Available balance: $1,204.33. A purchase of $12.00 was made at KFC on 2024-03-15."
        result = extractor.extract(make_email(body=body))
        assert result.amount == Decimal("12.00")

    def test_html_alert(self, extractor, make_email):
        result = extractor.extract(make_email(body=STARBUCKS_ALERT_HTML, html=True))
        assert result.payee == "STARBUCKS"
        assert result.amount == Decimal("45.67")

    def test_deposit_alert(self, extractor, make_email):
        result = extractor.extract(make_email(subject="Credit Alert", body=DEPOSIT_ALERT))

        assert result.transaction_type == TransactionType.DEPOSIT
        assert result.payee == "ACME PAYROLL"
        assert result.amount == Decimal("25000.00")
        assert result.date == "2024-03-14"

    def test_atm_alert_without_parsable_date(self, extractor, make_email):
        result = extractor.extract(make_email(subject="ATM Alert", body=ATM_ALERT))

        assert result.transaction_type == TransactionType.WITHDRAWAL
        assert result.payee == "HALF WAY TREE BRANCH"
        assert result.amount == Decimal("5000.00")
        assert result.date is None
        assert result.confidence == Confidence.LOW

    def test_newsletter_gives_nothing(self, extractor, make_email):
        assert extractor.extract(make_email(subject="Holiday notice", body=NEWSLETTER_BODY)) is None

    def test_explicit_minus_sign_kept(self, extractor, make_email):
        body = "Card transaction -$8.50 at NETFLIX.COM on 2024-03-01"
        result = extractor.extract(make_email(body=body))
        assert result.amount == Decimal("-8.50")
        assert result.amount_signed is True


class TestLLMExtractor:
    def test_valid_answer(self, make_email):
        service = _llm_service(
            {
                "date": "2024-03-15",
                "payee": "STARBUCKS",
                "amount": -45.67,
                "transactionType": "purchase",
                "confidence": "high",
                "notes": "",
            }
        )
        result = LLMExtractor(service).extract(make_email())

        assert result.amount == Decimal("-45.67")
        assert result.confidence == Confidence.HIGH
        assert result.notes is None
        assert result.extraction_strategy == "llm:qwen-test"

    @pytest.mark.parametrize(
        "data",
        [
            {"payee": "X", "amount": 1},
            {"date": "2024-03-15", "amount": 1},
            {"date": "2024-03-15", "payee": "X"},
            {"date": "2024-03-15", "payee": "X", "amount": "lots"},
            {"date": "2024-03-15", "payee": "   ", "amount": 1},
        ],
    )
    def test_contract_violations_rejected(self, data):
        assert LLMExtractor(_llm_service(None)).validate(data) is None

    def test_string_amount_coerced(self):
        result = LLMExtractor(_llm_service(None)).validate(
            {"date": "2024-03-15", "payee": "X", "amount": "$1,234.50", "confidence": "sure"}
        )
        assert result.amount == Decimal("1234.50")
        assert result.confidence == Confidence.LOW

    def test_disabled_service(self, make_email):
        service = _llm_service(None)
        service.is_enabled = False
        assert LLMExtractor(service).can_extract(make_email()) is False


class TestTransactionExtractor:
    def test_rules_only_starbucks(self, make_email):
        candidate = TransactionExtractor().parse(make_email())

        assert candidate.amount == Decimal("-45.67")
        assert candidate.payee == "STARBUCKS"
        assert candidate.date == "2024-03-15"
        assert candidate.transaction_type == TransactionType.PURCHASE
        assert candidate.notes is None
        assert candidate.extraction_strategy == "rules"

    def test_llm_preferred_over_rules(self, make_email):
        service = _llm_service(
            {"date": "2024-03-15", "payee": "Starbucks Coffee", "amount": -45.67,
             "transactionType": "purchase", "confidence": "high"}
        )
        candidate = TransactionExtractor(llm_service=service).parse(make_email())
        assert candidate.payee == "Starbucks Coffee"
        assert candidate.confidence == Confidence.HIGH

    def test_falls_back_to_rules_when_llm_fails(self, make_email):
        candidate = TransactionExtractor(llm_service=_llm_service(None)).parse(make_email())
        assert candidate.payee == "STARBUCKS"
        assert candidate.extraction_strategy == "rules"

    def test_model_sign_corrected_with_note(self, make_email):
        service = _llm_service(
            {"date": "2024-03-15", "payee": "STARBUCKS", "amount": 45.67,
             "transactionType": "purchase", "confidence": "high"}
        )
        candidate = TransactionExtractor(llm_service=service).parse(make_email())
        assert candidate.amount == Decimal("-45.67")
        assert candidate.notes == "Amount sign corrected for purchase"

    def test_model_date_not_in_body_replaced(self, make_email):
        service = _llm_service(
            {"date": "2024-03-20", "payee": "STARBUCKS", "amount": -45.67,
             "transactionType": "purchase", "confidence": "high"}
        )
        candidate = TransactionExtractor(llm_service=service).parse(make_email())
        assert candidate.date == "2024-03-15"

    def test_received_date_used_when_body_has_none(self, make_email):
        email = make_email(
            body=ATM_ALERT,
            received_at=datetime(2024, 3, 14, 15, 0, tzinfo=timezone.utc),
        )
        candidate = TransactionExtractor().parse(email, today=date(2024, 4, 1))
        assert candidate.date == "2024-03-14"
        assert candidate.amount == Decimal("-5000.00")

    def test_model_date_confirmed_by_year_less_body_date(self, make_email):
        email = make_email(body="Your card was used on Mar 3 for $12.00 at SHELL.")
        service = _llm_service(
            {"date": "2024-03-03", "payee": "SHELL", "amount": -12.00,
             "transactionType": "purchase", "confidence": "high"}
        )
        candidate = TransactionExtractor(llm_service=service).parse(email)
        assert candidate.date == "2024-03-03"

    def test_model_date_kept_for_numeric_year_less_date(self, make_email):
        """A numeric "03/03" could be either order, so the body scan leaves it to the model."""
        email = make_email(body="Your card was used on 03/03 for $12.00 at SHELL.")
        service = _llm_service(
            {"date": "2024-03-03", "payee": "SHELL", "amount": -12.00,
             "transactionType": "purchase", "confidence": "high"}
        )
        candidate = TransactionExtractor(llm_service=service).parse(email)
        assert candidate.date == "2024-03-03"

    def test_rules_read_year_less_body_date(self, make_email):
        email = make_email(body="Your card was used on Mar 3 for $12.00 at SHELL.")
        candidate = TransactionExtractor().parse(email)
        assert candidate.date == "2024-03-03"
        assert candidate.payee == "SHELL"

    def test_model_date_kept_when_body_has_no_date(self, make_email):
        service = _llm_service(
            {"date": "2024-03-14", "payee": "HALF WAY TREE BRANCH", "amount": -5000.00,
             "transactionType": "withdrawal", "confidence": "high"}
        )
        candidate = TransactionExtractor(llm_service=service).parse(make_email(body=ATM_ALERT))
        assert candidate.date == "2024-03-14"

    def test_model_date_after_received_not_trusted(self, make_email):
        service = _llm_service(
            {"date": "2024-04-14", "payee": "HALF WAY TREE BRANCH", "amount": -5000.00,
             "transactionType": "withdrawal", "confidence": "high"}
        )
        candidate = TransactionExtractor(llm_service=service).parse(make_email(body=ATM_ALERT))
        assert candidate.date == "2024-03-15"

    def test_currency_disclaimer_alert_parses(self, make_email):
        candidate = TransactionExtractor().parse(make_email(body=CURRENCY_DISCLAIMER_ALERT))
        assert candidate.payee == "AMAZON MKTPLACE"
        assert candidate.amount == Decimal("-120.00")

    def test_nothing_found(self, make_email):
        extractor = TransactionExtractor()
        email = make_email(subject="Holiday notice", body=NEWSLETTER_BODY)
        assert extractor.parse(email) is None
        with pytest.raises(ParseFailure):
            extractor.parse_or_raise(email)

    def test_priority_order(self):
        extractor = TransactionExtractor(llm_service=_llm_service(None))
        assert [e.name for e in extractor.extractors] == ["llm", "rules"]
