"""Prompt templates for LLM transaction extraction.

Prompts are versioned so extraction notes can record which wording
produced a candidate.
"""

from __future__ import annotations

from dataclasses import dataclass

# v1.1: ask for the transaction date from the body, not the send date
PROMPT_VERSION = "v1.1"


@dataclass
class ExtractionPrompt:
    """Prompt template for bank alert extraction.

    Attributes:
        version: Prompt version.
        system_prompt: System message fixing the output contract.
        user_template: Template for the user message with placeholders.
    """

    version: str = PROMPT_VERSION

    system_prompt: str = """You are a financial transaction parser. You read one bank notification email and extract the single transaction it reports.

Respond ONLY with one raw JSON object (no markdown, no code blocks, no commentary):
{
    "date": "YYYY-MM-DD",
    "payee": "merchant or counterparty name",
    "amount": -45.67,
    "transactionType": "purchase" | "deposit" | "withdrawal" | "transfer" | "fee" | "unknown",
    "notes": "optional extra details, e.g. original amount if currency conversion occurred",
    "confidence": "high" | "medium" | "low"
}

Rules:
- amount is a number: NEGATIVE for purchases, debits, expenses, withdrawals and fees
- amount is POSITIVE for deposits, credits, income and refunds
- Use the merchant as payee (e.g. "TOTAL-LIGUANEA-COSTAL", not the bank's name)
- Keep payee names concise; drop card numbers, prefixes and suffixes
- date is the transaction date written in the email body; if the body has no date use the received date
- confidence is high if every field is stated, medium if some were inferred, low if uncertain"""

    user_template: str = """Email Subject: {subject}
Received Date: {received_date}
Current Date: {current_date}

Email Content:
{body}

Extract the transaction as JSON."""

    def format_user_message(
        self,
        subject: str | None,
        body: str,
        received_date: str | None,
        current_date: str,
    ) -> str:
        """Format the user message with the email details."""
        return self.user_template.format(
            subject=subject or "N/A",
            received_date=received_date or "unknown",
            current_date=current_date,
            body=body,
        )
