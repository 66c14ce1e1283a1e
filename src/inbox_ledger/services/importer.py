"""Bank alert import orchestration.

One run discovers every user holding a refresh token and, per user:
- obtains a valid access token
- lists unread messages from the linked sender domains
- fetches them in parallel (read only)
- commits them one by one, oldest first:
  match -> parse -> flag -> dedup -> persist (+ recalculation) -> mark read

Every per-message failure becomes a skip with a reason; a per-user failure
never affects other users. Only failures that prevent the run from starting
propagate to the caller.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional

from ..errors import (
    AmbiguousDomainError,
    AuthRequired,
    DuplicateTransaction,
    FetchError,
    MailboxError,
    MarkReadError,
    ParseFailure,
    PersistenceError,
    UnmatchedDomain,
)
from ..matching.accounts import AccountMatcher, linked_domains
from ..schemas.budget import Account, TransactionStatus

if TYPE_CHECKING:
    from ..config import Config
    from ..extraction_ai.service import ExtractionService
    from ..extractors.router import TransactionExtractor
    from ..flags.engine import FlagEngine
    from ..mailbox_client.client import EmailMessage, MailboxClient
    from ..oauth.token_manager import TokenManager
    from ..state_store import StateStore

logger = logging.getLogger(__name__)


class RunStage(str, Enum):
    """Where a user's run currently is."""

    IDLE = "idle"
    LISTING = "listing"
    FETCHING = "fetching"
    MATCHING = "matching"
    PARSING = "parsing"
    FLAGGING = "flagging"
    DEDUPING = "deduping"
    PERSISTING = "persisting"
    MARKING_READ = "marking_read"
    SUMMARIZING = "summarizing"
    DONE = "done"


class SkipReason(str, Enum):
    """Why a message did not become a transaction."""

    AUTH_REQUIRED = "auth_required"
    FETCH_ERROR = "fetch_error"
    UNMATCHED_DOMAIN = "unmatched_domain"
    AMBIGUOUS_DOMAIN = "ambiguous_domain"
    PARSE_FAILURE = "parse_failure"
    DUPLICATE = "duplicate"
    PERSISTENCE_ERROR = "persistence_error"
    TIME_BUDGET_EXHAUSTED = "time_budget_exhausted"


class UserRunStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"  # stopped by the time budget, resumable
    FAILED = "failed"


@dataclass
class MessageOutcome:
    """Result of committing one message."""

    message_id: str
    transaction_id: Optional[int] = None
    reason: Optional[SkipReason] = None
    detail: str = ""

    @property
    def imported(self) -> bool:
        return self.transaction_id is not None

    @property
    def skipped(self) -> bool:
        return self.reason is not None


@dataclass
class UserSyncResult:
    """Per-user run result."""

    user_id: str
    status: UserRunStatus = UserRunStatus.COMPLETED
    outcomes: list[MessageOutcome] = field(default_factory=list)
    error: Optional[str] = None
    started_at: str = ""

    @property
    def imported(self) -> int:
        return sum(1 for o in self.outcomes if o.imported)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.skipped)

    def skip_counts(self) -> dict[str, int]:
        return dict(Counter(o.reason.value for o in self.outcomes if o.reason))

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "status": self.status.value,
            "imported": self.imported,
            "skipped": self.skipped,
            "skip_reasons": self.skip_counts(),
            "error": self.error,
        }


@dataclass
class SyncSummary:
    """Result of one run over all users."""

    users: list[UserSyncResult] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def imported(self) -> int:
        return sum(u.imported for u in self.users)

    @property
    def skipped(self) -> int:
        return sum(u.skipped for u in self.users)

    @property
    def failed_users(self) -> list[str]:
        return [u.user_id for u in self.users if u.status == UserRunStatus.FAILED]

    def to_dict(self) -> dict:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "failed_users": self.failed_users,
            "duration_ms": self.duration_ms,
            "users": [u.to_dict() for u in self.users],
        }


@dataclass
class UserSyncContext:
    """Everything one user's run needs; nothing is shared across users."""

    user_id: str
    access_token: str
    accounts: list[Account]
    deadline: Optional[float] = None  # time.monotonic() value
    today: date = field(default_factory=date.today)
    stage: RunStage = RunStage.IDLE

    def advance(self, stage: RunStage, message_id: Optional[str] = None) -> None:
        self.stage = stage
        logger.debug(f"[{self.user_id}] {stage.value}{f' {message_id}' if message_id else ''}")

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ImportCoordinator:
    """Orchestrates the import pipeline for every authorized user.

    Safe to run repeatedly: a message already imported (same source id) is
    always a duplicate skip, so "run again" is the universal retry.

    Usage:
        coordinator = ImportCoordinator.from_config(config, store)
        summary = coordinator.run_sync()
    """

    def __init__(
        self,
        store: StateStore,
        token_manager: TokenManager,
        mailbox: MailboxClient,
        extractor: TransactionExtractor,
        flag_engine: FlagEngine,
        matcher: Optional[AccountMatcher] = None,
        fetch_workers: int = 4,
        max_user_workers: int = 2,
        max_results: int = 50,
        run_time_budget_seconds: int = 0,
        scan_all_unread: bool = False,
        llm_service: Optional[ExtractionService] = None,
    ) -> None:
        self.store = store
        self.token_manager = token_manager
        self.mailbox = mailbox
        self.extractor = extractor
        self.flag_engine = flag_engine
        self.matcher = matcher or AccountMatcher()
        self.fetch_workers = max(1, fetch_workers)
        self.max_user_workers = max(1, max_user_workers)
        self.max_results = max_results
        self.run_time_budget_seconds = run_time_budget_seconds
        self.scan_all_unread = scan_all_unread
        self._llm_service = llm_service

    @classmethod
    def from_config(cls, config: Config, store: StateStore) -> ImportCoordinator:
        """Wire every pipeline component from configuration.

        Raises:
            ConfigValidationError: OAuth client credentials are missing
        """
        from ..config import ConfigValidationError
        from ..extraction_ai.service import ExtractionService
        from ..extractors.router import TransactionExtractor
        from ..flags.engine import FlagEngine
        from ..mailbox_client.client import MailboxClient
        from ..oauth.token_manager import OAuthClient, TokenManager

        if not (config.oauth.client_id and config.oauth.client_secret):
            raise ConfigValidationError("oauth.client_id and oauth.client_secret are required")

        oauth_client = OAuthClient(
            client_id=config.oauth.client_id,
            client_secret=config.oauth.client_secret,
            token_url=config.oauth.token_url,
            max_retries=config.oauth.max_retries,
            backoff_factor=config.oauth.backoff_factor,
        )
        token_manager = TokenManager(
            store, oauth_client, refresh_buffer_seconds=config.oauth.refresh_buffer_seconds
        )
        mailbox = MailboxClient(
            base_url=config.gmail.base_url,
            timeout=config.gmail.timeout_seconds,
            extra_query=config.gmail.extra_query,
        )
        llm_service = ExtractionService(config.llm) if config.llm.enabled else None

        return cls(
            store=store,
            token_manager=token_manager,
            mailbox=mailbox,
            extractor=TransactionExtractor(llm_service=llm_service),
            flag_engine=FlagEngine(
                unusual_amount_max=config.importer.unusual_amount_max,
                unusual_amount_min=config.importer.unusual_amount_min,
            ),
            fetch_workers=config.importer.fetch_workers,
            max_user_workers=config.importer.max_user_workers,
            max_results=config.gmail.max_results,
            run_time_budget_seconds=config.importer.run_time_budget_seconds,
            scan_all_unread=config.gmail.scan_all_unread,
            llm_service=llm_service,
        )

    def close(self) -> None:
        if self._llm_service is not None:
            self._llm_service.close()

    def run_sync(self) -> SyncSummary:
        """Run the import for every user holding a refresh token.

        Raises:
            PersistenceError: The state store is unreachable (run cannot start)
        """
        start_time = time.time()
        self.store.ping()

        deadline = None
        if self.run_time_budget_seconds > 0:
            deadline = time.monotonic() + self.run_time_budget_seconds

        user_ids = self.store.list_users_with_refresh_token()
        logger.info(f"Starting sync for {len(user_ids)} user(s)")

        summary = SyncSummary()
        with ThreadPoolExecutor(max_workers=self.max_user_workers) as pool:
            futures = {pool.submit(self.sync_user, uid, deadline): uid for uid in user_ids}
            for future in as_completed(futures):
                user_id = futures[future]
                try:
                    summary.users.append(future.result())
                except Exception as e:
                    logger.exception(f"Sync failed for user {user_id}")
                    summary.users.append(
                        UserSyncResult(user_id=user_id, status=UserRunStatus.FAILED, error=str(e))
                    )

        summary.users.sort(key=lambda u: u.user_id)
        summary.duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Sync finished: {summary.imported} imported, {summary.skipped} skipped, "
            f"{len(summary.failed_users)} user(s) failed ({summary.duration_ms} ms)"
        )
        return summary

    def sync_user(self, user_id: str, deadline: Optional[float] = None) -> UserSyncResult:
        """Run the pipeline for one user. Never raises for per-user failures."""
        result = UserSyncResult(user_id=user_id, started_at=_now())

        try:
            access_token = self.token_manager.get_valid_access_token(user_id)
        except AuthRequired as e:
            logger.warning(f"Skipping user {user_id}: {e.reason}")
            result.status = UserRunStatus.FAILED
            result.error = f"{SkipReason.AUTH_REQUIRED.value}: {e.reason}"
            self._finish(result, None)
            return result

        ctx = UserSyncContext(
            user_id=user_id,
            access_token=access_token,
            accounts=self.store.get_accounts(user_id),
            deadline=deadline,
        )

        try:
            message_ids = self._list_messages(ctx)
            emails = self._fetch_all(ctx, message_ids, result)
            self._commit_all(ctx, emails, result)
        except MailboxError as e:
            logger.warning(f"Mailbox unavailable for user {user_id}: {e}")
            result.status = UserRunStatus.FAILED
            result.error = str(e)
        except Exception as e:
            logger.exception(f"Unexpected error syncing user {user_id}")
            result.status = UserRunStatus.FAILED
            result.error = str(e)

        self._finish(result, ctx)
        return result

    def _list_messages(self, ctx: UserSyncContext) -> list[str]:
        ctx.advance(RunStage.LISTING)

        if self.scan_all_unread:
            return self.mailbox.list_unread(ctx.access_token, None, self.max_results)

        domains = linked_domains(ctx.accounts)
        if not domains:
            logger.info(f"User {ctx.user_id} has no accounts linked to an email domain")
            return []

        ids: list[str] = []
        failures: list[str] = []
        for domain in domains:
            try:
                found = self.mailbox.list_unread(ctx.access_token, domain, self.max_results)
            except MailboxError as e:
                logger.warning(f"Listing failed for {domain} (user {ctx.user_id}): {e}")
                failures.append(domain)
                continue
            ids.extend(i for i in found if i not in ids)

        if len(failures) == len(domains):
            raise MailboxError(f"Listing failed for every linked domain: {', '.join(failures)}")

        logger.info(f"User {ctx.user_id}: {len(ids)} unread message(s) across {len(domains)} domain(s)")
        return ids

    def _fetch_all(
        self,
        ctx: UserSyncContext,
        message_ids: list[str],
        result: UserSyncResult,
    ) -> list[EmailMessage]:
        """Fetch in parallel; returns decoded messages sorted oldest first."""
        if not message_ids:
            return []
        ctx.advance(RunStage.FETCHING)

        if ctx.expired:
            self._skip_remaining(ctx, message_ids, result)
            return []

        emails: list[EmailMessage] = []
        with ThreadPoolExecutor(max_workers=self.fetch_workers) as pool:
            futures = {
                pool.submit(self.mailbox.fetch_message, ctx.access_token, mid): mid
                for mid in message_ids
            }
            for future in as_completed(futures):
                message_id = futures[future]
                try:
                    emails.append(future.result())
                except FetchError as e:
                    self._skip(result, message_id, SkipReason.FETCH_ERROR, e.reason)
                except Exception as e:
                    logger.exception(f"Unexpected error fetching {message_id}")
                    self._skip(result, message_id, SkipReason.FETCH_ERROR, str(e))

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        emails.sort(key=lambda m: (m.received_at or epoch, m.message_id))
        return emails

    def _commit_all(self, ctx: UserSyncContext, emails: list[EmailMessage], result: UserSyncResult) -> None:
        """Sequential commit stage."""
        for index, email in enumerate(emails):
            if ctx.expired:
                self._skip_remaining(ctx, [e.message_id for e in emails[index:]], result)
                return
            try:
                outcome = self.process_message(ctx, email)
            except Exception as e:
                logger.exception(f"Unexpected error processing {email.message_id}")
                outcome = MessageOutcome(email.message_id, reason=SkipReason.PERSISTENCE_ERROR, detail=str(e))
            result.outcomes.append(outcome)

    def _skip_remaining(self, ctx: UserSyncContext, message_ids: list[str], result: UserSyncResult) -> None:
        logger.warning(
            f"Time budget exhausted for user {ctx.user_id}, "
            f"{len(message_ids)} message(s) left for the next run"
        )
        for message_id in message_ids:
            result.outcomes.append(
                MessageOutcome(message_id, reason=SkipReason.TIME_BUDGET_EXHAUSTED)
            )
        result.status = UserRunStatus.PARTIAL

    def _skip(self, result: UserSyncResult, message_id: str, reason: SkipReason, detail: str = "") -> MessageOutcome:
        outcome = MessageOutcome(message_id, reason=reason, detail=detail)
        result.outcomes.append(outcome)
        logger.info(f"Skipped {message_id}: {reason.value}{f' ({detail})' if detail else ''}")
        return outcome

    def process_message(self, ctx: UserSyncContext, email: EmailMessage) -> MessageOutcome:
        """Match, parse, flag, dedup and persist one message, then mark it read."""

        def skip(reason: SkipReason, detail: str = "") -> MessageOutcome:
            logger.info(f"Skipped {email.message_id}: {reason.value}{f' ({detail})' if detail else ''}")
            return MessageOutcome(email.message_id, reason=reason, detail=detail)

        ctx.advance(RunStage.MATCHING, email.message_id)
        try:
            account = self.matcher.require(ctx.accounts, email.sender)
        except AmbiguousDomainError as e:
            return skip(SkipReason.AMBIGUOUS_DOMAIN, str(e))
        except UnmatchedDomain as e:
            return skip(SkipReason.UNMATCHED_DOMAIN, e.domain or email.sender)

        ctx.advance(RunStage.PARSING, email.message_id)
        try:
            candidate = self.extractor.parse_or_raise(email, today=ctx.today)
        except ParseFailure:
            return skip(SkipReason.PARSE_FAILURE, "no transaction found")
        except Exception as e:
            logger.exception(f"Extractor crashed on {email.message_id}")
            return skip(SkipReason.PARSE_FAILURE, str(e))

        try:
            candidate.category_id = self.store.match_payee_category(ctx.user_id, candidate.payee)
        except (PersistenceError, sqlite3.Error) as e:
            logger.error(f"Payee lookup failed for {email.message_id}: {e}")
            return skip(SkipReason.PERSISTENCE_ERROR, str(e))

        ctx.advance(RunStage.FLAGGING, email.message_id)
        flags = self.flag_engine.evaluate(email, candidate, candidate.category_id)

        ctx.advance(RunStage.DEDUPING, email.message_id)
        try:
            existing = self.store.find_transaction_by_email_id(ctx.user_id, email.message_id)
        except (PersistenceError, sqlite3.Error) as e:
            logger.error(f"Duplicate check failed for {email.message_id}: {e}")
            return skip(SkipReason.PERSISTENCE_ERROR, str(e))
        if existing is not None:
            return skip(SkipReason.DUPLICATE, f"transaction {existing.id}")

        ctx.advance(RunStage.PERSISTING, email.message_id)
        try:
            transaction = self.store.create_transaction(
                user_id=ctx.user_id,
                date=candidate.date,
                payee=candidate.payee,
                amount=candidate.amount,
                account_id=account.id,
                category_id=candidate.category_id,
                status=TransactionStatus.UNCLEARED,
                original_email_id=email.message_id,
                notes=candidate.notes or f"Auto-imported from {email.sender}",
                flags=flags,
            )
        except DuplicateTransaction as e:
            return skip(SkipReason.DUPLICATE, str(e))
        except (PersistenceError, sqlite3.Error) as e:
            logger.error(f"Failed to persist {email.message_id}: {e}")
            return skip(SkipReason.PERSISTENCE_ERROR, str(e))

        logger.info(
            f"Imported {email.message_id} -> transaction {transaction.id}: {transaction.payee} "
            f"{transaction.amount} on {transaction.date} ({account.name}, {len(flags)} flag(s))"
        )

        ctx.advance(RunStage.MARKING_READ, email.message_id)
        try:
            self.mailbox.mark_read(ctx.access_token, email.message_id)
        except MarkReadError as e:
            logger.warning(f"Could not mark {email.message_id} read, it will be a duplicate next run: {e.reason}")

        return MessageOutcome(email.message_id, transaction_id=transaction.id)

    def _finish(self, result: UserSyncResult, ctx: Optional[UserSyncContext]) -> None:
        """Write the watermark and run history for a user."""
        if ctx is not None:
            ctx.advance(RunStage.SUMMARIZING)

        committed = [o for o in result.outcomes if o.imported or o.reason == SkipReason.DUPLICATE]
        pending = sum(1 for o in result.outcomes if o.reason == SkipReason.TIME_BUDGET_EXHAUSTED)
        last_message_id = committed[-1].message_id if committed else None

        try:
            self.store.update_sync_state(
                result.user_id,
                status=result.status.value,
                last_processed_at=_now() if committed else None,
                last_message_id=last_message_id,
                pending_count=pending,
            )
            self.store.record_sync_run(
                result.user_id,
                started_at=result.started_at,
                imported=result.imported,
                skipped=result.skipped,
                status=result.status.value,
                error_message=result.error,
            )
        except (PersistenceError, sqlite3.Error) as e:
            logger.error(f"Could not record sync state for user {result.user_id}: {e}")

        logger.info(
            f"User {result.user_id}: {result.status.value}, {result.imported} imported, "
            f"{result.skipped} skipped {result.skip_counts() or ''}"
        )
        if ctx is not None:
            ctx.advance(RunStage.DONE)
