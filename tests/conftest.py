"""Test fixtures and utilities."""

import base64
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import pytest

from inbox_ledger.mailbox_client import EmailMessage
from inbox_ledger.state_store import StateStore

# Sample bank alert bodies
STARBUCKS_ALERT = (
    "Dear Customer,\n"
    "A purchase of $45.67 was made at STARBUCKS on 2024-03-15 using your card ending 1234.\n"
    "Available balance: $1,204.33\n"
    "Thank you for banking with us."
)

STARBUCKS_ALERT_HTML = """
<html><head><style>p { color: red; }</style></head>
<body>
<p>Dear Customer,</p>
<p>A purchase of <b>$45.67</b> was made at STARBUCKS on 2024-03-15 using your card ending 1234.</p>
<p>Available balance: $1,204.33</p>
</body></html>
"""

DEPOSIT_ALERT = (
    "Credit Alert\n"
    "A deposit of JMD 25,000.00 from ACME PAYROLL was credited to your account on March 14, 2024."
)

ATM_ALERT = "ATM withdrawal of J$5,000.00 at HALF WAY TREE BRANCH on 14/03/2024 10:32."

CURRENCY_DISCLAIMER_ALERT = (
    "Transaction Alert: a purchase for USD 120.00 at AMAZON MKTPLACE on 2024-03-10.\n"
    "Please note, the dollar amount reported is in the currency of the account."
)

NEWSLETTER_BODY = "Our branches will be closed on Monday for the public holiday."

# 2024-03-15 14:30:00 UTC
RECEIVED_MS = "1710513000000"


def b64url(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def build_gmail_message(
    message_id: str,
    sender: str,
    subject: str,
    body: str,
    html: bool = False,
    internal_date: str = RECEIVED_MS,
    multipart: bool = False,
) -> dict:
    """Gmail `format=full` message resource."""
    headers = [
        {"name": "From", "value": sender},
        {"name": "Subject", "value": subject},
        {"name": "To", "value": "me@gmail.com"},
    ]
    mime_type = "text/html" if html else "text/plain"
    if multipart:
        payload = {
            "mimeType": "multipart/alternative",
            "headers": headers,
            "parts": [
                {"mimeType": "text/plain", "body": {"data": b64url(body)}},
                {"mimeType": "text/html", "body": {"data": b64url(f"<p>{body}</p>")}},
            ],
        }
    else:
        payload = {"mimeType": mime_type, "headers": headers, "body": {"data": b64url(body)}}

    return {
        "id": message_id,
        "threadId": f"thread-{message_id}",
        "labelIds": ["UNREAD", "INBOX"],
        "snippet": body[:80],
        "internalDate": internal_date,
        "payload": payload,
    }


@pytest.fixture
def gmail_message() -> Callable[..., dict]:
    """Factory for Gmail message payloads."""
    return build_gmail_message


@pytest.fixture
def make_email() -> Callable[..., EmailMessage]:
    """Factory for decoded EmailMessage objects."""

    def _make(
        message_id: str = "msg-1",
        sender: str = "Bank Alerts <alerts@example.com>",
        subject: str = "Transaction Alert",
        body: str = STARBUCKS_ALERT,
        received_at: Optional[datetime] = None,
        html: bool = False,
    ) -> EmailMessage:
        return EmailMessage(
            message_id=message_id,
            thread_id=f"thread-{message_id}",
            sender=sender,
            subject=subject,
            html_content=body if html else None,
            text_content=None if html else body,
            received_at=received_at or datetime(2024, 3, 15, 14, 30, tzinfo=timezone.utc),
        )

    return _make


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store."""
    return StateStore(temp_db)


@pytest.fixture
def authorized_user(store) -> str:
    """A user with a refresh token and an access token valid for an hour."""
    store.save_tokens("user-1", "refresh-1", "access-1", time.time() + 3600)
    return "user-1"
