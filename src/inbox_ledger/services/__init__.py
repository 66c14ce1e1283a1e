"""Import orchestration services."""

from inbox_ledger.services.importer import (
    ImportCoordinator,
    MessageOutcome,
    RunStage,
    SkipReason,
    SyncSummary,
    UserRunStatus,
    UserSyncContext,
    UserSyncResult,
)

__all__ = [
    "ImportCoordinator",
    "MessageOutcome",
    "RunStage",
    "SkipReason",
    "SyncSummary",
    "UserRunStatus",
    "UserSyncContext",
    "UserSyncResult",
]
