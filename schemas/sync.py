"""Sync workflow, sync record, and dead-letter queue schemas."""
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Snake-case attributes, camelCase on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class SyncResult(BaseModel):
    success: bool
    error: Optional[str] = None


class SyncContext(BaseModel):
    """Carried from kickoff to the completion handler."""

    entity_type: Literal["user", "organization"]
    entity_id: str
    started_at: datetime
    webhook_event: str
    source_id: Optional[str] = None


class SyncRecord(ApiModel):
    id: UUID
    entity_type: str
    entity_id: str
    target_system: str
    status: Literal["pending", "success", "failed"]
    webhook_event: str
    workflow_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    workflow_status: Optional[str] = None


class EntitySyncSummary(ApiModel):
    entity_type: str
    entity_id: str
    total_syncs: int
    latest_sync: SyncRecord
    success_count: int
    failed_count: int
    pending_count: int


class SyncStats(ApiModel):
    total: int
    pending: int
    success: int
    failed: int
    unique_entities: int
    avg_duration_ms: int
    dead_letter_count: int


class DeadLetterEntry(ApiModel):
    id: UUID
    workflow_id: str
    entity_type: str
    entity_id: str
    error: str
    context: Optional[dict[str, Any]] = None
    created_at: datetime
    retryable: bool
    retry_count: int
    last_retry_at: Optional[datetime] = None
    last_retry_workflow_id: Optional[str] = None
    resolved_at: Optional[datetime] = None


class RetryResult(ApiModel):
    success: bool
    new_workflow_id: Optional[str] = None
    error: Optional[str] = None


class BulkRetryResult(ApiModel):
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)


class ResolveResult(ApiModel):
    success: bool
    error: Optional[str] = None
