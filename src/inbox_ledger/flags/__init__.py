"""Stateless review flag rules."""

from .engine import FLAG_RULES, FlagContext, FlagEngine, FlagRule, has_unresolved_flags

__all__ = ["FLAG_RULES", "FlagContext", "FlagEngine", "FlagRule", "has_unresolved_flags"]
