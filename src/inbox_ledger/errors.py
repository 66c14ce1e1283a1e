"""
Error taxonomy shared across the import pipeline.

Per-message and per-user errors are caught by the importer and folded into
skip counters; only start-up failures propagate to the caller.
"""


class InboxLedgerError(Exception):
    """Base exception for all pipeline errors."""

    pass


class AuthRequired(InboxLedgerError):
    """No usable refresh token, or the token endpoint rejected it.

    Headless runs cannot prompt for consent, so this is fatal for the user
    it concerns and recoverable only by interactive re-authorization.
    """

    def __init__(self, user_id: str, reason: str):
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Re-authorization required for user {user_id}: {reason}")


class UnmatchedDomain(InboxLedgerError):
    """Sender domain is not linked to any account (a routing miss)."""

    def __init__(self, domain: str):
        self.domain = domain
        super().__init__(f"No account linked to email domain: {domain or '<none>'}")


class ParseFailure(InboxLedgerError):
    """Extraction produced no valid transaction candidate."""

    pass


class DuplicateTransaction(InboxLedgerError):
    """A transaction for this source message already exists."""

    def __init__(self, original_email_id: str, existing_id: int | None = None):
        self.original_email_id = original_email_id
        self.existing_id = existing_id
        super().__init__(
            f"Transaction for email '{original_email_id}' already exists"
        )


class PersistenceError(InboxLedgerError):
    """The state store failed to commit a unit of work."""

    pass


class NotFoundError(PersistenceError):
    """A referenced entity does not exist for this user."""

    pass


class AmbiguousDomainError(InboxLedgerError):
    """More than one account of a user is linked to the same email domain."""

    def __init__(self, domain: str, account_ids: list[int]):
        self.domain = domain
        self.account_ids = account_ids
        super().__init__(
            f"Email domain {domain} is linked to several accounts: {account_ids}"
        )


class DuplicateDomainError(InboxLedgerError):
    """Refused to link a domain that another account already uses."""

    def __init__(self, domain: str, account_ids: list[int]):
        self.domain = domain
        self.account_ids = account_ids
        super().__init__(f"Email domain {domain} is already linked to account(s) {account_ids}")


class MailboxError(InboxLedgerError):
    """Base exception for mailbox API errors."""

    pass


class MailboxConnectionError(MailboxError):
    """Failed to reach the mailbox API."""

    pass


class MailboxAPIError(MailboxError):
    """Mailbox API returned an error response."""

    def __init__(self, status_code: int, message: str, response_body: str | None = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Mailbox API error {status_code}: {message}")


class FetchError(MailboxError):
    """A single message could not be retrieved or decoded."""

    def __init__(self, message_id: str, reason: str):
        self.message_id = message_id
        self.reason = reason
        super().__init__(f"Failed to fetch message {message_id}: {reason}")


class MarkReadError(MailboxError):
    """Clearing the unread label failed. Callers treat this as a warning."""

    def __init__(self, message_id: str, reason: str):
        self.message_id = message_id
        self.reason = reason
        super().__init__(f"Failed to mark message {message_id} read: {reason}")
