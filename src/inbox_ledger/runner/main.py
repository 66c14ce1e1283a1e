"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from ..config import Config, create_default_config, load_config
from ..errors import AuthRequired, DuplicateDomainError, InboxLedgerError, MailboxError
from ..matching import linked_domains
from ..mailbox_client import MailboxClient
from ..oauth import OAuthClient, TokenManager
from ..services import ImportCoordinator, SyncSummary
from ..state_store import StateStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="inbox-ledger",
        description="Import bank notification emails into an envelope budget",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Import unread bank alerts for every user now")
    sync_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the run summary as JSON",
    )

    # watch command
    watch_parser = subparsers.add_parser("watch", help="Run sync periodically")
    watch_parser.add_argument(
        "--interval",
        type=int,
        default=600,
        help="Seconds between runs (default: 600)",
    )

    # status command
    status_parser = subparsers.add_parser("status", help="Show store statistics and recent runs")
    status_parser.add_argument(
        "--user",
        type=str,
        help="Also check ledger invariants for this user",
    )

    # init-config command
    init_parser = subparsers.add_parser("init-config", help="Write a default config file")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )

    # authorize command
    auth_parser = subparsers.add_parser(
        "authorize", help="Store tokens obtained from an interactive consent"
    )
    auth_parser.add_argument("--user", required=True, help="User id")
    auth_parser.add_argument("--refresh-token", required=True, help="OAuth refresh token")
    auth_parser.add_argument("--access-token", help="Current access token (optional)")
    auth_parser.add_argument(
        "--expires-in",
        type=int,
        help="Access token lifetime in seconds (default: 3600)",
    )

    # revoke command
    revoke_parser = subparsers.add_parser("revoke", help="Clear stored tokens for a user")
    revoke_parser.add_argument("--user", required=True, help="User id")

    # accounts command
    accounts_parser = subparsers.add_parser("accounts", help="List a user's accounts")
    accounts_parser.add_argument("--user", required=True, help="User id")

    # add-account command
    add_account_parser = subparsers.add_parser(
        "add-account", help="Create an account, optionally linked to a sender domain"
    )
    add_account_parser.add_argument("--user", required=True, help="User id")
    add_account_parser.add_argument("--name", required=True, help="Account name")
    add_account_parser.add_argument(
        "--type",
        dest="account_type",
        choices=["checking", "savings", "credit"],
        default="checking",
        help="Account type (default: checking)",
    )
    add_account_parser.add_argument("--domain", help="Bank sender domain, e.g. alerts.mybank.com")

    # domains command
    domains_parser = subparsers.add_parser(
        "domains", help="Discover sender domains in a user's mailbox"
    )
    domains_parser.add_argument("--user", required=True, help="User id")
    domains_parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Recent messages to scan (default: 100)",
    )

    # flags command
    flags_parser = subparsers.add_parser("flags", help="List transactions needing review")
    flags_parser.add_argument("--user", required=True, help="User id")

    # resolve-flag command
    resolve_parser = subparsers.add_parser("resolve-flag", help="Mark a review flag resolved")
    resolve_parser.add_argument("--user", required=True, help="User id")
    resolve_parser.add_argument("--flag-id", type=int, required=True, help="Flag id")

    return parser


def build_token_manager(config: Config, store: StateStore) -> TokenManager:
    oauth_client = OAuthClient(
        client_id=config.oauth.client_id,
        client_secret=config.oauth.client_secret,
        token_url=config.oauth.token_url,
        max_retries=config.oauth.max_retries,
        backoff_factor=config.oauth.backoff_factor,
    )
    return TokenManager(
        store, oauth_client, refresh_buffer_seconds=config.oauth.refresh_buffer_seconds
    )


def print_summary(summary: SyncSummary) -> None:
    print()
    print("📊 Sync Results")
    print("=" * 40)
    print(f"  Imported:  {summary.imported}")
    print(f"  Skipped:   {summary.skipped}")
    print(f"  Duration:  {summary.duration_ms}ms")
    for user in summary.users:
        reasons = ", ".join(f"{k}={v}" for k, v in sorted(user.skip_counts().items()))
        line = f"  - {user.user_id}: {user.status.value}, {user.imported} imported"
        if reasons:
            line += f" ({reasons})"
        if user.error:
            line += f" [{user.error}]"
        print(line)
    print()


def run_once(config: Config) -> SyncSummary:
    """One sync run. Start-up failures propagate."""
    store = StateStore(config.state_db_path)
    coordinator = ImportCoordinator.from_config(config, store)
    try:
        return coordinator.run_sync()
    finally:
        coordinator.close()


def cmd_sync(config: Config, as_json: bool = False) -> int:
    """Run one import over all authorized users."""
    try:
        summary = run_once(config)
    except InboxLedgerError as e:
        print(f"❌ Sync could not start: {e}")
        return 1

    if as_json:
        print(json.dumps(summary.to_dict(), indent=2))
    else:
        print_summary(summary)

    if summary.failed_users:
        print(f"⚠️  Failed users: {', '.join(summary.failed_users)}")
        return 1
    return 0


def cmd_watch(config: Config, interval: int) -> int:
    """Run sync every `interval` seconds until interrupted."""
    print(f"👀 Watching mailboxes every {interval}s (Ctrl+C to stop)")
    try:
        while True:
            try:
                summary = run_once(config)
                logger.info(f"Run complete: {summary.imported} imported, {summary.skipped} skipped")
            except InboxLedgerError as e:
                logger.error(f"Sync could not start: {e}")
            time.sleep(interval)
    except KeyboardInterrupt:
        print("\nStopped.")
        return 0


def cmd_status(config: Config, user_id: str | None = None) -> int:
    """Show store status."""
    store = StateStore(config.state_db_path)
    stats = store.get_stats()

    print("\n📊 Ledger Status")
    print("=" * 40)
    print(f"  Users authorized:       {stats['users_authorized']}")
    print(f"  Accounts:               {stats['accounts']}")
    print(f"  Linked accounts:        {stats['linked_accounts']}")
    print(f"  Categories:             {stats['categories']}")
    print(f"  Transactions:           {stats['transactions']}")
    print(f"  Imported from email:    {stats['imported_transactions']}")
    print(f"  Unresolved flags:       {stats['unresolved_flags']}")

    runs = store.get_recent_sync_runs(user_id, limit=5)
    if runs:
        print("\n  Recent runs:")
        for run in runs:
            print(
                f"    {run['started_at']}  {run['user_id']:<20} {run['status']:<10} "
                f"imported={run['imported']} skipped={run['skipped']}"
            )

    if user_id:
        state = store.get_sync_state(user_id)
        if state and state["pending_count"]:
            print(f"\n  ⏳ {state['pending_count']} message(s) pending from a partial run")
        violations = store.verify_invariants(user_id)
        if violations:
            print("\n  ❌ Ledger invariant violations:")
            for violation in violations:
                print(f"    - {violation}")
            print()
            return 1
        print("\n  ✓ Ledger invariants hold")
    print()

    return 0


def cmd_init_config(config_path: Path, force: bool = False) -> int:
    if config_path.exists() and not force:
        print(f"❌ {config_path} already exists (use --force to overwrite)")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def cmd_authorize(
    config: Config,
    user_id: str,
    refresh_token: str,
    access_token: str | None = None,
    expires_in: int | None = None,
) -> int:
    """Store tokens from an interactive consent flow."""
    store = StateStore(config.state_db_path)
    build_token_manager(config, store).store_tokens(
        user_id, refresh_token, access_token=access_token, expires_in=expires_in
    )
    print(f"✓ Stored tokens for {user_id}")
    return 0


def cmd_revoke(config: Config, user_id: str) -> int:
    store = StateStore(config.state_db_path)
    if not build_token_manager(config, store).revoke(user_id):
        print(f"⚠️  No tokens stored for {user_id}")
        return 1
    print(f"✓ Revoked tokens for {user_id}")
    return 0


def cmd_accounts(config: Config, user_id: str) -> int:
    store = StateStore(config.state_db_path)
    accounts = store.get_accounts(user_id)
    if not accounts:
        print(f"No accounts for {user_id}")
        return 0
    for account in accounts:
        print(
            f"  [{account.id}] {account.name:<24} {account.type.value:<9} "
            f"{account.cleared_balance:>12}  {account.email_domain or '-'}"
        )
    return 0


def cmd_add_account(
    config: Config,
    user_id: str,
    name: str,
    account_type: str,
    domain: str | None = None,
) -> int:
    store = StateStore(config.state_db_path)
    try:
        account = store.add_account(user_id, name, account_type, email_domain=domain)
    except DuplicateDomainError as e:
        print(f"❌ {e}")
        return 1
    print(f"✓ Created account {account.id} ({account.name})")
    return 0


def cmd_domains(config: Config, user_id: str, limit: int) -> int:
    """List sender domains so the user can link them to accounts."""
    store = StateStore(config.state_db_path)
    try:
        access_token = build_token_manager(config, store).get_valid_access_token(user_id)
    except AuthRequired as e:
        print(f"❌ {e}")
        return 1

    mailbox = MailboxClient(
        base_url=config.gmail.base_url,
        timeout=config.gmail.timeout_seconds,
    )
    try:
        domains = mailbox.list_sender_domains(access_token, max_results=limit)
    except MailboxError as e:
        print(f"❌ Domain scan failed: {e}")
        return 1

    linked = set(linked_domains(store.get_accounts(user_id)))
    print(f"\n📬 Sender domains ({len(domains)})")
    for entry in domains:
        marker = "✓" if entry.domain in linked else " "
        print(f"  {marker} {entry.domain:<40} {entry.count:>4}  {entry.sample_sender}")
    print()
    return 0


def cmd_flags(config: Config, user_id: str) -> int:
    store = StateStore(config.state_db_path)
    transactions = store.get_flagged_transactions(user_id)
    if not transactions:
        print("✓ Nothing to review")
        return 0

    for tx in transactions:
        print(f"  [{tx.id}] {tx.date} {tx.payee:<30} {tx.amount:>12}")
        for flag in tx.flags:
            if not flag.resolved:
                print(f"      flag {flag.id} {flag.reason.value}: {flag.message}")
    return 0


def cmd_resolve_flag(config: Config, user_id: str, flag_id: int) -> int:
    store = StateStore(config.state_db_path)
    if not store.resolve_flag(user_id, flag_id):
        print(f"⚠️  Flag {flag_id} not found or already resolved")
        return 1
    print(f"✓ Resolved flag {flag_id}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config, parsed.force)

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "sync":
        return cmd_sync(config, parsed.json)
    elif parsed.command == "watch":
        return cmd_watch(config, parsed.interval)
    elif parsed.command == "status":
        return cmd_status(config, parsed.user)
    elif parsed.command == "authorize":
        return cmd_authorize(
            config,
            parsed.user,
            parsed.refresh_token,
            access_token=parsed.access_token,
            expires_in=parsed.expires_in,
        )
    elif parsed.command == "revoke":
        return cmd_revoke(config, parsed.user)
    elif parsed.command == "accounts":
        return cmd_accounts(config, parsed.user)
    elif parsed.command == "add-account":
        return cmd_add_account(
            config, parsed.user, parsed.name, parsed.account_type, parsed.domain
        )
    elif parsed.command == "domains":
        return cmd_domains(config, parsed.user, parsed.limit)
    elif parsed.command == "flags":
        return cmd_flags(config, parsed.user)
    elif parsed.command == "resolve-flag":
        return cmd_resolve_flag(config, parsed.user, parsed.flag_id)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
