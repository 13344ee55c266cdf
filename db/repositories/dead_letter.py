"""Dead-letter queue repository — terminally failed syncs awaiting an operator."""
import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import DeadLetterItem

logger = logging.getLogger(__name__)

_OPEN = and_(DeadLetterItem.retryable.is_(True), DeadLetterItem.resolved_at.is_(None))


async def create(
    session: AsyncSession,
    workflow_id: str,
    entity_type: str,
    entity_id: str,
    error: str,
    context: Optional[dict[str, Any]] = None,
) -> DeadLetterItem:
    item = DeadLetterItem(
        workflow_id=workflow_id,
        entity_type=entity_type,
        entity_id=entity_id,
        error=error,
        context=context,
        retryable=True,
        retry_count=0,
    )
    session.add(item)
    await session.flush()
    return item


async def get_by_id(
    session: AsyncSession, item_id: UUID, for_update: bool = False
) -> Optional[DeadLetterItem]:
    """Return an item, optionally locking its row until the transaction ends."""
    stmt = select(DeadLetterItem).where(DeadLetterItem.id == item_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_unresolved_by_retry_workflow(
    session: AsyncSession, workflow_id: str
) -> list[DeadLetterItem]:
    """Return unresolved items whose latest retry spawned this workflow."""
    result = await session.execute(
        select(DeadLetterItem).where(
            and_(
                DeadLetterItem.last_retry_workflow_id == workflow_id,
                DeadLetterItem.resolved_at.is_(None),
            )
        )
    )
    return list(result.scalars().all())


async def list_items(
    session: AsyncSession, limit: int = 50, include_resolved: bool = False
) -> list[DeadLetterItem]:
    """Newest first. Without include_resolved only open, retryable items."""
    stmt = select(DeadLetterItem)
    if not include_resolved:
        stmt = stmt.where(_OPEN)
    result = await session.execute(stmt.order_by(DeadLetterItem.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def list_retryable(session: AsyncSession) -> list[DeadLetterItem]:
    """Every open, retryable item, oldest first."""
    result = await session.execute(
        select(DeadLetterItem).where(_OPEN).order_by(DeadLetterItem.created_at)
    )
    return list(result.scalars().all())


async def count_open(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(DeadLetterItem).where(_OPEN))
    return result.scalar() or 0


async def mark_retried(
    session: AsyncSession, item: DeadLetterItem, new_workflow_id: str
) -> DeadLetterItem:
    """Count a retry. The item stays unresolved until the new workflow succeeds."""
    item.retry_count = item.retry_count + 1
    item.last_retry_at = datetime.now(timezone.utc)
    item.last_retry_workflow_id = new_workflow_id
    await session.flush()
    return item


async def record_retry_failure(
    session: AsyncSession, item: DeadLetterItem, error: str
) -> DeadLetterItem:
    item.error = error
    await session.flush()
    return item


async def resolve(session: AsyncSession, item: DeadLetterItem) -> DeadLetterItem:
    """Terminal: no further retries are accepted."""
    item.resolved_at = datetime.now(timezone.utc)
    item.retryable = False
    await session.flush()
    return item
