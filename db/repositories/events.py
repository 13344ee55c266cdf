"""Identity event bookkeeping — processed-event idempotency and the polling cursor."""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import EventsCursor, ProcessedEvent

logger = logging.getLogger(__name__)

CURSOR_KEY = "main"


async def mark_processed(session: AsyncSession, event_id: str, event_type: str) -> bool:
    """Claim an event id. Returns False if it was already claimed.

    A concurrent claim of the same id blocks on the unique index until the
    first transaction ends.
    """
    result = await session.execute(
        pg_insert(ProcessedEvent)
        .values(event_id=event_id, event_type=event_type)
        .on_conflict_do_nothing(index_elements=["event_id"])
        .returning(ProcessedEvent.id)
    )
    await session.flush()
    return result.first() is not None


async def delete_processed_before(
    session: AsyncSession, cutoff: datetime, batch_size: int = 500
) -> int:
    """Delete up to batch_size processed-event rows older than cutoff.

    Returns the number deleted; callers loop until it is below batch_size.
    """
    ids = (
        select(ProcessedEvent.id)
        .where(ProcessedEvent.processed_at < cutoff)
        .order_by(ProcessedEvent.processed_at)
        .limit(batch_size)
        .scalar_subquery()
    )
    result = await session.execute(delete(ProcessedEvent).where(ProcessedEvent.id.in_(ids)))
    await session.flush()
    return result.rowcount


async def get_cursor(session: AsyncSession) -> Optional[EventsCursor]:
    result = await session.execute(select(EventsCursor).where(EventsCursor.key == CURSOR_KEY))
    return result.scalar_one_or_none()


async def set_cursor(session: AsyncSession, cursor: Optional[str]) -> EventsCursor:
    """Store the polling position and stamp the poll time."""
    stmt = (
        pg_insert(EventsCursor)
        .values(key=CURSOR_KEY, cursor=cursor)
        .on_conflict_do_update(
            index_elements=["key"],
            set_={"cursor": cursor, "last_polled_at": func.now(), "updated_at": func.now()},
        )
        .returning(EventsCursor)
    )
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    await session.flush()
    return result.scalar_one()
