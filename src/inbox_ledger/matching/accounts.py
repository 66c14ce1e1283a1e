"""
Sender domain to account matching.

A bank alert is routed to the account whose linked email domain equals the
sender's domain exactly. Subdomains and lookalike domains never match:
"notexample.com" is not "example.com", and neither is "mail.example.com".
"""

import logging
import re
from collections import defaultdict
from collections.abc import Iterable
from typing import Optional

from ..errors import AmbiguousDomainError, DuplicateDomainError, UnmatchedDomain
from ..schemas.budget import Account

logger = logging.getLogger(__name__)

# Domain after "@": labels of [a-z0-9.-] ending in an alphabetic TLD
DOMAIN_PATTERN = re.compile(r"@([a-z0-9.-]+\.[a-z]{2,})")


def extract_domain(address: str | None) -> str:
    """
    Extract the lower-cased domain of an address or From header.

    >>> extract_domain("Alerts <alerts@Example.COM>")
    'example.com'

    Returns "" when no domain can be found.
    """
    if not address:
        return ""
    match = DOMAIN_PATTERN.search(address.lower())
    return match.group(1) if match else ""


def normalize_domain(domain: str | None) -> Optional[str]:
    """Canonical form for a stored email_domain (None when blank)."""
    if domain is None:
        return None
    cleaned = domain.strip().lower().lstrip("@")
    return cleaned or None


def find_duplicate_domains(accounts: Iterable[Account]) -> dict[str, list[int]]:
    """Domains linked to more than one account, with the offending account ids."""
    by_domain: dict[str, list[int]] = defaultdict(list)
    for account in accounts:
        domain = normalize_domain(account.email_domain)
        if domain:
            by_domain[domain].append(account.id)
    return {d: ids for d, ids in by_domain.items() if len(ids) > 1}


def linked_domains(accounts: Iterable[Account]) -> list[str]:
    """Distinct linked domains, sorted."""
    return sorted({d for d in (normalize_domain(a.email_domain) for a in accounts) if d})


class AccountMatcher:
    """Resolves a sender address to the account linked to its domain."""

    def match(self, accounts: Iterable[Account], sender: str) -> Optional[Account]:
        """
        Find the account linked to the sender's domain.

        Returns:
            The matching account, or None if no account is linked

        Raises:
            AmbiguousDomainError: Two or more accounts share the domain
        """
        domain = extract_domain(sender)
        if not domain:
            logger.debug("No domain in sender %r", sender)
            return None

        matches = [a for a in accounts if normalize_domain(a.email_domain) == domain]
        if not matches:
            return None
        if len(matches) > 1:
            raise AmbiguousDomainError(domain, [a.id for a in matches])
        return matches[0]

    def require(self, accounts: Iterable[Account], sender: str) -> Account:
        """Like match(), but an unlinked sender raises UnmatchedDomain."""
        account = self.match(accounts, sender)
        if account is None:
            raise UnmatchedDomain(extract_domain(sender))
        return account


__all__ = [
    "AccountMatcher",
    "AmbiguousDomainError",
    "DuplicateDomainError",
    "extract_domain",
    "find_duplicate_domains",
    "linked_domains",
    "normalize_domain",
    "UnmatchedDomain",
]
