"""
Tests for the Gmail API client.

These tests use responses library to mock HTTP requests,
validating client behavior without making real API calls.
"""

import json
from datetime import datetime, timezone

import pytest
import responses

from conftest import STARBUCKS_ALERT, STARBUCKS_ALERT_HTML
from inbox_ledger.mailbox_client import (
    EmailMessage,
    FetchError,
    MailboxAPIError,
    MailboxClient,
    MarkReadError,
    decode_base64url,
    strip_html,
)

BASE_URL = "https://gmail.test/gmail/v1"
API = f"{BASE_URL}/users/me"
TOKEN = "access-token"


@pytest.fixture
def client() -> MailboxClient:
    return MailboxClient(base_url=BASE_URL)


class TestDecoding:
    def test_decode_restores_padding(self):
        assert decode_base64url("SGk") == "Hi"

    def test_decode_url_safe_alphabet(self):
        # "??>" encodes to "Pz8-" in the url-safe alphabet
        assert decode_base64url("Pz8-") == "??>"

    def test_decode_bad_utf8_replaced(self):
        assert decode_base64url("_w") == "\ufffd"

    def test_strip_html(self):
        text = strip_html(STARBUCKS_ALERT_HTML)
        assert "color: red" not in text
        assert "A purchase of $45.67 was made at STARBUCKS on 2024-03-15" in text
        assert "<" not in text

    def test_strip_html_entities(self):
        assert strip_html("<p>Tom&amp;Jerry&nbsp;Cafe</p>") == "Tom&Jerry Cafe"


class TestEmailMessage:
    def test_plain_single_part(self, gmail_message):
        message = EmailMessage.from_api_response(
            gmail_message("m1", "Bank <alerts@example.com>", "Alert", STARBUCKS_ALERT)
        )
        assert message.message_id == "m1"
        assert message.sender == "Bank <alerts@example.com>"
        assert message.text_content == STARBUCKS_ALERT
        assert message.html_content is None
        assert message.received_at == datetime(2024, 3, 15, 14, 30, tzinfo=timezone.utc)

    def test_html_preferred_for_body(self, gmail_message):
        message = EmailMessage.from_api_response(
            gmail_message("m1", "alerts@example.com", "Alert", "Hello", multipart=True)
        )
        assert message.text_content == "Hello"
        assert message.body == "<p>Hello</p>"
        assert message.body_text == "Hello"

    def test_attachments_ignored(self, gmail_message):
        data = gmail_message("m1", "alerts@example.com", "Alert", "Hello", multipart=True)
        data["payload"]["parts"].append(
            {"mimeType": "text/plain", "filename": "statement.txt", "body": {"data": "QUJD"}}
        )
        message = EmailMessage.from_api_response(data)
        assert message.text_content == "Hello"

    def test_header_lookup_case_insensitive(self, gmail_message):
        data = gmail_message("m1", "x@example.com", "Alert", "Hello")
        data["payload"]["headers"] = [{"name": "from", "value": "y@example.com"}]
        assert EmailMessage.from_api_response(data).sender == "y@example.com"


class TestMailboxClient:
    @responses.activate
    def test_list_unread_with_domain_filter(self, client):
        responses.add(
            responses.GET,
            f"{API}/messages",
            json={"messages": [{"id": "a", "threadId": "t"}, {"id": "b", "threadId": "t"}]},
        )

        ids = client.list_unread(TOKEN, "example.com", max_results=10)

        assert ids == ["a", "b"]
        request = responses.calls[0].request
        assert request.headers["Authorization"] == f"Bearer {TOKEN}"
        assert "from%3A%40example.com+is%3Aunread" in request.url

    @responses.activate
    def test_list_follows_pages(self, client):
        responses.add(
            responses.GET,
            f"{API}/messages",
            json={"messages": [{"id": "a"}], "nextPageToken": "p2"},
        )
        responses.add(responses.GET, f"{API}/messages", json={"messages": [{"id": "b"}]})

        assert client.list_unread(TOKEN, max_results=10) == ["a", "b"]
        assert "pageToken=p2" in responses.calls[1].request.url

    @responses.activate
    def test_list_empty_mailbox(self, client):
        responses.add(responses.GET, f"{API}/messages", json={"resultSizeEstimate": 0})
        assert client.list_unread(TOKEN) == []

    @responses.activate
    def test_list_non_json_body(self, client):
        responses.add(
            responses.GET,
            f"{API}/messages",
            body="<html>Service temporarily unavailable</html>",
            status=200,
            content_type="text/html",
        )
        with pytest.raises(MailboxAPIError) as exc_info:
            client.list_unread(TOKEN)
        assert exc_info.value.status_code == 200
        assert exc_info.value.message.startswith("Malformed message listing")
        assert "Service temporarily unavailable" in exc_info.value.response_body

    @responses.activate
    def test_list_entry_without_id(self, client):
        responses.add(responses.GET, f"{API}/messages", json={"messages": [{"threadId": "t"}]})
        with pytest.raises(MailboxAPIError, match="Malformed message listing"):
            client.list_unread(TOKEN)

    def test_build_query(self):
        client = MailboxClient(base_url=BASE_URL, extra_query="newer_than:7d")
        assert client.build_query("bank.com") == "from:@bank.com is:unread newer_than:7d"
        assert client.build_query(unread_only=False) == "newer_than:7d"

    @responses.activate
    def test_api_error(self, client):
        responses.add(
            responses.GET,
            f"{API}/messages",
            json={"error": {"code": 401, "message": "Invalid Credentials"}},
            status=401,
        )
        with pytest.raises(MailboxAPIError) as exc_info:
            client.list_unread(TOKEN)
        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Invalid Credentials"

    @responses.activate
    def test_fetch_message(self, client, gmail_message):
        responses.add(
            responses.GET,
            f"{API}/messages/m1",
            json=gmail_message("m1", "alerts@example.com", "Alert", STARBUCKS_ALERT),
        )

        message = client.fetch_message(TOKEN, "m1")

        assert message.subject == "Alert"
        assert "format=full" in responses.calls[0].request.url

    @responses.activate
    def test_fetch_not_found(self, client):
        responses.add(
            responses.GET, f"{API}/messages/gone", json={"error": {"message": "Not Found"}}, status=404
        )
        with pytest.raises(FetchError) as exc_info:
            client.fetch_message(TOKEN, "gone")
        assert exc_info.value.message_id == "gone"

    @responses.activate
    def test_fetch_malformed(self, client):
        responses.add(responses.GET, f"{API}/messages/bad", json={"no": "id"})
        with pytest.raises(FetchError):
            client.fetch_message(TOKEN, "bad")

    @responses.activate
    def test_mark_read(self, client):
        responses.add(responses.POST, f"{API}/messages/m1/modify", json={"id": "m1"})

        client.mark_read(TOKEN, "m1")

        assert json.loads(responses.calls[0].request.body) == {"removeLabelIds": ["UNREAD"]}

    @responses.activate
    def test_mark_read_failure(self, client):
        responses.add(responses.POST, f"{API}/messages/m1/modify", status=503)
        with pytest.raises(MarkReadError):
            client.mark_read(TOKEN, "m1")

    @responses.activate
    def test_list_sender_domains(self, client):
        responses.add(
            responses.GET,
            f"{API}/messages",
            json={"messages": [{"id": "1"}, {"id": "2"}, {"id": "3"}]},
        )
        senders = {
            "1": "Bank <alerts@example.com>",
            "2": "news@shop.org",
            "3": "Bank <otp@example.com>",
        }
        for message_id, sender in senders.items():
            responses.add(
                responses.GET,
                f"{API}/messages/{message_id}",
                json={"id": message_id, "payload": {"headers": [{"name": "From", "value": sender}]}},
            )

        domains = client.list_sender_domains(TOKEN)

        assert [(d.domain, d.count) for d in domains] == [("example.com", 2), ("shop.org", 1)]
        assert domains[0].sample_sender == "Bank <alerts@example.com>"
        assert "is%3Aunread" not in responses.calls[0].request.url

    @responses.activate
    def test_connection(self, client):
        responses.add(responses.GET, f"{API}/profile", json={"emailAddress": "me@gmail.com"})
        assert client.test_connection(TOKEN) is True

    @responses.activate
    def test_connection_failure(self, client):
        responses.add(responses.GET, f"{API}/profile", status=500)
        assert client.test_connection(TOKEN) is False
