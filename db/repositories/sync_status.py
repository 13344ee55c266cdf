"""Sync status repository — one history row per sync workflow."""
import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import SyncStatus

logger = logging.getLogger(__name__)

TARGET_SYSTEM = "warehouse"


def round_half_up(value) -> int:
    return int(Decimal(str(value)).quantize(Decimal(1), ROUND_HALF_UP))


async def create(
    session: AsyncSession,
    entity_type: str,
    entity_id: str,
    webhook_event: str,
    workflow_id: str,
    started_at: datetime,
) -> SyncStatus:
    """Insert a pending record. Always a new row, so history is kept."""
    record = SyncStatus(
        entity_type=entity_type,
        entity_id=entity_id,
        target_system=TARGET_SYSTEM,
        status="pending",
        webhook_event=webhook_event,
        workflow_id=workflow_id,
        started_at=started_at,
    )
    session.add(record)
    await session.flush()
    return record


async def get_by_workflow_id(session: AsyncSession, workflow_id: str) -> Optional[SyncStatus]:
    result = await session.execute(
        select(SyncStatus).where(SyncStatus.workflow_id == workflow_id)
    )
    return result.scalar_one_or_none()


async def mark_complete(
    session: AsyncSession,
    workflow_id: str,
    success: bool,
    completed_at: datetime,
    duration_ms: int,
    error: Optional[str] = None,
) -> Optional[SyncStatus]:
    """Record the outcome of a workflow.

    Only a pending record is updated, so an outcome is written once. Returns
    None when no pending record matches.
    """
    result = await session.execute(
        update(SyncStatus)
        .where(SyncStatus.workflow_id == workflow_id, SyncStatus.status == "pending")
        .values(
            status="success" if success else "failed",
            completed_at=completed_at,
            duration_ms=duration_ms,
            error=error,
        )
        .returning(SyncStatus)
    )
    await session.flush()
    return result.scalar_one_or_none()


async def list_recent(
    session: AsyncSession, limit: int = 100, status: Optional[str] = None
) -> list[SyncStatus]:
    """Return the newest records, optionally only those in one status."""
    stmt = select(SyncStatus)
    if status is not None:
        stmt = stmt.where(SyncStatus.status == status)
    result = await session.execute(
        stmt.order_by(SyncStatus.created_at.desc(), SyncStatus.started_at.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def list_for_entity(
    session: AsyncSession, entity_type: str, entity_id: str, limit: int = 50
) -> list[SyncStatus]:
    result = await session.execute(
        select(SyncStatus)
        .where(
            and_(SyncStatus.entity_type == entity_type, SyncStatus.entity_id == entity_id)
        )
        .order_by(SyncStatus.created_at.desc(), SyncStatus.started_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_counts(session: AsyncSession) -> dict:
    """Return aggregate counters over every record.

    Keys: total, pending, success, failed, unique_entities, avg_duration_ms
    (rounded mean over records that have a duration, 0 when none do).
    """
    status_rows = await session.execute(
        select(SyncStatus.status, func.count()).group_by(SyncStatus.status)
    )
    by_status = {status: count for status, count in status_rows.all()}

    entities = await session.execute(
        select(func.count()).select_from(
            select(SyncStatus.entity_type, SyncStatus.entity_id).distinct().subquery()
        )
    )
    avg_duration = await session.execute(
        select(func.avg(SyncStatus.duration_ms)).where(SyncStatus.duration_ms.is_not(None))
    )
    avg = avg_duration.scalar()

    return {
        "total": sum(by_status.values()),
        "pending": by_status.get("pending", 0),
        "success": by_status.get("success", 0),
        "failed": by_status.get("failed", 0),
        "unique_entities": entities.scalar() or 0,
        "avg_duration_ms": round_half_up(avg) if avg is not None else 0,
    }
