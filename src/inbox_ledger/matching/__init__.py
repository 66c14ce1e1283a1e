"""Sender-domain to account matching."""

from .accounts import (
    AccountMatcher,
    AmbiguousDomainError,
    DuplicateDomainError,
    extract_domain,
    find_duplicate_domains,
    linked_domains,
    normalize_domain,
)

__all__ = [
    "AccountMatcher",
    "AmbiguousDomainError",
    "DuplicateDomainError",
    "extract_domain",
    "find_duplicate_domains",
    "linked_domains",
    "normalize_domain",
]
