from .sync import (
    ApiModel,
    SyncResult,
    SyncContext,
    SyncRecord,
    EntitySyncSummary,
    SyncStats,
    DeadLetterEntry,
    RetryResult,
    BulkRetryResult,
    ResolveResult,
)
from .account import (
    OwnedOrgInfo,
    MemberOrgInfo,
    DeletionCheck,
)
from .webhooks import (
    WorkOSEvent,
    ProcessResult,
    PollResult,
)

__all__ = [
    "ApiModel", "SyncResult", "SyncContext", "SyncRecord", "EntitySyncSummary",
    "SyncStats", "DeadLetterEntry", "RetryResult", "BulkRetryResult", "ResolveResult",
    "OwnedOrgInfo", "MemberOrgInfo", "DeletionCheck",
    "WorkOSEvent", "ProcessResult", "PollResult",
]
