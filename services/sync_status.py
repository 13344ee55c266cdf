"""Read-side views over sync records for the admin surfaces."""
import logging

from sqlalchemy.ext.asyncio import AsyncSession

import db.repositories.dead_letter as dlq_repo
import db.repositories.sync_status as sync_repo
from db.models import SyncStatus
from schemas.sync import EntitySyncSummary, SyncRecord, SyncStats
from services.workflows import get_runner

logger = logging.getLogger(__name__)


def _with_workflow_status(row: SyncStatus) -> SyncRecord:
    record = SyncRecord.model_validate(row)
    record.workflow_status = get_runner().status(row.workflow_id)
    return record


async def get_sync_status(session: AsyncSession, limit: int = 100) -> list[SyncRecord]:
    rows = await sync_repo.list_recent(session, limit=limit)
    return [SyncRecord.model_validate(r) for r in rows]


async def get_failed_syncs(session: AsyncSession, limit: int = 100) -> list[SyncRecord]:
    rows = await sync_repo.list_recent(session, limit=limit, status="failed")
    return [SyncRecord.model_validate(r) for r in rows]


async def get_pending_syncs(session: AsyncSession, limit: int = 100) -> list[SyncRecord]:
    rows = await sync_repo.list_recent(session, limit=limit, status="pending")
    return [SyncRecord.model_validate(r) for r in rows]


async def get_entity_history(
    session: AsyncSession, entity_type: str, entity_id: str, limit: int = 50
) -> list[SyncRecord]:
    """Newest first, each with the runner's live view of its workflow."""
    rows = await sync_repo.list_for_entity(session, entity_type, entity_id, limit=limit)
    return [_with_workflow_status(r) for r in rows]


def group_by_entity(rows: list[SyncStatus]) -> list[EntitySyncSummary]:
    """Summarise newest-first rows per entity, most recently synced entity first."""
    grouped: dict[tuple[str, str], list[SyncStatus]] = {}
    for row in rows:
        grouped.setdefault((row.entity_type, row.entity_id), []).append(row)

    summaries = []
    for (entity_type, entity_id), entity_rows in grouped.items():
        latest = entity_rows[0]
        summaries.append(
            EntitySyncSummary(
                entity_type=entity_type,
                entity_id=entity_id,
                total_syncs=len(entity_rows),
                latest_sync=_with_workflow_status(latest),
                success_count=sum(1 for r in entity_rows if r.status == "success"),
                failed_count=sum(1 for r in entity_rows if r.status == "failed"),
                pending_count=sum(1 for r in entity_rows if r.status == "pending"),
            )
        )
    summaries.sort(key=lambda s: s.latest_sync.started_at, reverse=True)
    return summaries


async def get_syncs_grouped_by_entity(
    session: AsyncSession, limit: int = 100
) -> list[EntitySyncSummary]:
    """Group the newest `limit` records by entity."""
    rows = await sync_repo.list_recent(session, limit=limit)
    return group_by_entity(rows)


async def get_sync_stats(session: AsyncSession) -> SyncStats:
    counts = await sync_repo.get_counts(session)
    dead_letter_count = await dlq_repo.count_open(session)
    return SyncStats(**counts, dead_letter_count=dead_letter_count)
