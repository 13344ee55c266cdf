"""Secondary store writes — identity-provider id to primary-store id mappings.

These run inside sync workflows against get_warehouse_db() sessions.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import WarehouseOrganization, WarehouseUser

logger = logging.getLogger(__name__)


async def _upsert(
    session: AsyncSession,
    model,
    workos_id: str,
    source_id: str,
    updated_at: datetime,
    created_at: Optional[datetime] = None,
):
    values = {"workos_id": workos_id, "source_id": source_id, "updated_at": updated_at}
    if created_at is not None:
        values["created_at"] = created_at
    stmt = (
        pg_insert(model)
        .values(**values)
        .on_conflict_do_update(
            index_elements=["workos_id"],
            set_={"source_id": source_id, "updated_at": updated_at},
        )
        .returning(model)
    )
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    await session.flush()
    return result.scalar_one()


async def upsert_user(
    session: AsyncSession,
    workos_id: str,
    source_id: str,
    updated_at: datetime,
    created_at: Optional[datetime] = None,
) -> WarehouseUser:
    """Insert or update a user mapping by workos_id."""
    return await _upsert(session, WarehouseUser, workos_id, source_id, updated_at, created_at)


async def upsert_organization(
    session: AsyncSession,
    workos_id: str,
    source_id: str,
    updated_at: datetime,
    created_at: Optional[datetime] = None,
) -> WarehouseOrganization:
    """Insert or update an organization mapping by workos_id."""
    return await _upsert(
        session, WarehouseOrganization, workos_id, source_id, updated_at, created_at
    )


async def delete_user(session: AsyncSession, workos_id: str) -> bool:
    result = await session.execute(delete(WarehouseUser).where(WarehouseUser.workos_id == workos_id))
    await session.flush()
    return result.rowcount > 0


async def delete_organization(session: AsyncSession, workos_id: str) -> bool:
    result = await session.execute(
        delete(WarehouseOrganization).where(WarehouseOrganization.workos_id == workos_id)
    )
    await session.flush()
    return result.rowcount > 0
