"""
Gmail REST API client implementation.
"""

import base64
import html
import logging
import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..errors import (
    FetchError,
    MailboxAPIError,
    MailboxConnectionError,
    MailboxError,
    MarkReadError,
)
from ..matching.accounts import extract_domain

logger = logging.getLogger(__name__)

# Gmail caps maxResults per list page at 500
MAX_PAGE_SIZE = 500


def decode_base64url(data: str) -> str:
    """
    Decode a base64url MIME body straight to UTF-8 text.

    Missing padding is restored; undecodable bytes are replaced rather than
    failing the whole message.
    """
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    return raw.decode("utf-8", errors="replace")


_STYLE_SCRIPT = re.compile(r"<(style|script)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_BLOCK_TAGS = re.compile(r"<\s*(br|/p|/div|/tr|/li|/h[1-6])\b[^>]*>", re.IGNORECASE)
_TAGS = re.compile(r"<[^>]+>")


def strip_html(content: str) -> str:
    """Reduce an HTML body to readable text for the extractors."""
    if not content:
        return ""
    text = _STYLE_SCRIPT.sub(" ", content)
    text = _BLOCK_TAGS.sub("\n", text)
    text = _TAGS.sub(" ", text)
    text = html.unescape(text).replace("\xa0", " ")
    lines = (re.sub(r"[ \t\r\f\v]+", " ", line).strip() for line in text.split("\n"))
    return "\n".join(line for line in lines if line)


def _header(headers: list[dict], name: str) -> str:
    """Case-insensitive header lookup."""
    name = name.lower()
    for h in headers:
        if h.get("name", "").lower() == name:
            return h.get("value", "")
    return ""


def _walk_parts(part: dict, found: dict[str, str], top_level: bool = True) -> None:
    """Collect the first text/html and text/plain bodies, depth first."""
    mime_type = part.get("mimeType", "")
    children = part.get("parts") or []

    if children:
        for child in children:
            _walk_parts(child, found, top_level=False)
        return

    if part.get("filename"):
        return  # attachment
    data = (part.get("body") or {}).get("data")
    if not data:
        return
    if mime_type == "text/html":
        found.setdefault("html", decode_base64url(data))
    elif mime_type == "text/plain" or top_level:
        # A single-part message that is not HTML is treated as plain text
        found.setdefault("text", decode_base64url(data))


@dataclass
class EmailMessage:
    """Decoded mailbox message."""

    message_id: str
    thread_id: Optional[str]
    sender: str
    subject: str
    html_content: Optional[str] = None
    text_content: Optional[str] = None
    received_at: Optional[datetime] = None  # UTC
    snippet: str = ""

    @classmethod
    def from_api_response(cls, data: dict) -> "EmailMessage":
        """Create from a Gmail `format=full` message resource."""
        payload = data.get("payload") or {}
        headers = payload.get("headers") or []

        found: dict[str, str] = {}
        _walk_parts(payload, found)

        received_at = None
        internal_date = data.get("internalDate")
        if internal_date:
            received_at = datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)

        return cls(
            message_id=data["id"],
            thread_id=data.get("threadId"),
            sender=_header(headers, "From"),
            subject=_header(headers, "Subject"),
            html_content=found.get("html"),
            text_content=found.get("text"),
            received_at=received_at,
            snippet=html.unescape(data.get("snippet", "")),
        )

    @property
    def body(self) -> str:
        """Raw body, HTML preferred."""
        return self.html_content or self.text_content or ""

    @property
    def body_text(self) -> str:
        """Readable body text (HTML stripped)."""
        if self.html_content:
            return strip_html(self.html_content)
        return (self.text_content or "").strip()


@dataclass
class SenderDomain:
    """A sender domain seen in the mailbox."""

    domain: str
    count: int
    sample_sender: str


class MailboxClient:
    """
    Client for the Gmail REST API (users/me).

    Features:
    - List unread message ids, optionally per sender domain
    - Fetch and decode full messages
    - Clear the unread label
    - Discover sender domains for account linking

    Access tokens are passed per call; the client holds no user state and
    can be shared between users and threads.
    """

    DEFAULT_TIMEOUT = 30

    def __init__(
        self,
        base_url: str = "https://gmail.googleapis.com/gmail/v1",
        timeout: int = DEFAULT_TIMEOUT,
        extra_query: Optional[str] = None,
        max_retries: int = 0,
        backoff_factor: float = 0.5,
    ):
        """
        Initialize mailbox client.

        Args:
            base_url: Gmail API root
            timeout: Request timeout in seconds
            extra_query: Extra search predicates appended to every listing
            max_retries: Transport retries for idempotent reads (0 = none)
            backoff_factor: Backoff factor for retries
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.extra_query = extra_query

        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _request(
        self,
        method: str,
        endpoint: str,
        access_token: str,
        params: Optional[dict] = None,
        json_data: Optional[dict] = None,
    ) -> requests.Response:
        """Make an API request with error handling."""
        url = f"{self.base_url}/users/me{endpoint}"

        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            raise MailboxConnectionError(f"Failed to connect to mailbox API at {self.base_url}: {e}") from e
        except requests.exceptions.Timeout as e:
            raise MailboxConnectionError(f"Request to mailbox API timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise MailboxError(f"Request failed: {e}") from e

        if not response.ok:
            message = response.reason
            try:
                message = response.json().get("error", {}).get("message") or message
            except ValueError:
                pass
            raise MailboxAPIError(
                status_code=response.status_code,
                message=message,
                response_body=response.text,
            )

        return response

    def build_query(self, domain_filter: Optional[str] = None, unread_only: bool = True) -> str:
        """Compose a Gmail search query."""
        terms = []
        if domain_filter:
            terms.append(f"from:@{domain_filter}")
        if unread_only:
            terms.append("is:unread")
        if self.extra_query:
            terms.append(self.extra_query)
        return " ".join(terms)

    def _list_ids(self, access_token: str, query: str, max_results: int) -> list[str]:
        ids: list[str] = []
        page_token = None

        while len(ids) < max_results:
            params: dict[str, Any] = {"maxResults": min(max_results - len(ids), MAX_PAGE_SIZE)}
            if query:
                params["q"] = query
            if page_token:
                params["pageToken"] = page_token

            response = self._request("GET", "/messages", access_token, params=params)
            try:
                data = response.json()
                ids.extend(m["id"] for m in data.get("messages", []))
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                raise MailboxAPIError(
                    status_code=response.status_code,
                    message=f"Malformed message listing: {e}",
                    response_body=response.text[:200],
                ) from e

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        return ids[:max_results]

    def list_unread(
        self,
        access_token: str,
        domain_filter: Optional[str] = None,
        max_results: int = 50,
    ) -> list[str]:
        """
        List unread message ids, newest first.

        Args:
            access_token: OAuth access token
            domain_filter: Restrict to senders at this domain
            max_results: Maximum ids to return

        Returns:
            Message ids only (no content)
        """
        query = self.build_query(domain_filter)
        ids = self._list_ids(access_token, query, max_results)
        logger.debug(f"Listed {len(ids)} unread message(s) for query {query!r}")
        return ids

    def fetch_message(self, access_token: str, message_id: str) -> EmailMessage:
        """
        Fetch and decode one message.

        Raises:
            FetchError: Any network, API or decoding failure
        """
        try:
            response = self._request(
                "GET", f"/messages/{message_id}", access_token, params={"format": "full"}
            )
            message = EmailMessage.from_api_response(response.json())
        except MailboxError as e:
            raise FetchError(message_id, str(e)) from e
        except (ValueError, KeyError) as e:
            raise FetchError(message_id, f"malformed message: {e}") from e

        logger.debug(
            f"Fetched message {message_id} (html={len(message.html_content or '')} chars, "
            f"text={len(message.text_content or '')} chars)"
        )
        return message

    def mark_read(self, access_token: str, message_id: str) -> None:
        """
        Remove the UNREAD label. Idempotent.

        Raises:
            MarkReadError: The label change failed
        """
        try:
            self._request(
                "POST",
                f"/messages/{message_id}/modify",
                access_token,
                json_data={"removeLabelIds": ["UNREAD"]},
            )
        except MailboxError as e:
            raise MarkReadError(message_id, str(e)) from e

    def list_sender_domains(self, access_token: str, max_results: int = 100) -> list[SenderDomain]:
        """
        Discover which domains send mail to this mailbox.

        Scans recent messages (read or unread) using the cheap metadata
        format. Returns domains sorted by message count, most frequent first.
        """
        ids = self._list_ids(access_token, self.build_query(unread_only=False), max_results)
        counts: Counter[str] = Counter()
        samples: dict[str, str] = {}

        for message_id in ids:
            try:
                data = self._request(
                    "GET",
                    f"/messages/{message_id}",
                    access_token,
                    params={"format": "metadata", "metadataHeaders": "From"},
                ).json()
            except (MailboxError, ValueError) as e:
                logger.warning(f"Skipping message {message_id} during domain scan: {e}")
                continue

            sender = _header((data.get("payload") or {}).get("headers") or [], "From")
            domain = extract_domain(sender)
            if domain:
                counts[domain] += 1
                samples.setdefault(domain, sender)

        domains = [SenderDomain(d, c, samples[d]) for d, c in counts.items()]
        domains.sort(key=lambda s: (-s.count, s.domain))
        logger.info(f"Found {len(domains)} sender domain(s) in {len(ids)} message(s)")
        return domains

    def test_connection(self, access_token: str) -> bool:
        """Test connection to the mailbox API."""
        try:
            profile = self._request("GET", "/profile", access_token).json()
            logger.info(f"Connected to mailbox {profile.get('emailAddress', '<unknown>')}")
            return True
        except (MailboxError, ValueError) as e:
            logger.warning(f"Mailbox connection test failed: {e}")
            return False
