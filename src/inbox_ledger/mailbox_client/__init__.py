"""
Gmail REST API client.
"""

from ..errors import (
    FetchError,
    MailboxAPIError,
    MailboxConnectionError,
    MailboxError,
    MarkReadError,
)
from .client import EmailMessage, MailboxClient, SenderDomain, decode_base64url, strip_html

__all__ = [
    "EmailMessage",
    "FetchError",
    "MailboxAPIError",
    "MailboxClient",
    "MailboxConnectionError",
    "MailboxError",
    "MarkReadError",
    "SenderDomain",
    "decode_base64url",
    "strip_html",
]
