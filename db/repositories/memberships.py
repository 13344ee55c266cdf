"""Organization membership repository — keyed by (organization, user) provider ids."""
import logging
from typing import Optional

from sqlalchemy import and_, delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import OrganizationMembership

logger = logging.getLogger(__name__)

OWNER_ROLE = "owner"
ADMIN_ROLE = "admin"


async def upsert(
    session: AsyncSession,
    organization_external_id: str,
    user_external_id: str,
    role: Optional[str] = None,
    status: str = "active",
) -> OrganizationMembership:
    """Insert or update a membership. Idempotent across redeliveries."""
    stmt = (
        pg_insert(OrganizationMembership)
        .values(
            organization_external_id=organization_external_id,
            user_external_id=user_external_id,
            role=role,
            status=status,
        )
        .on_conflict_do_update(
            index_elements=["organization_external_id", "user_external_id"],
            set_={"role": role, "status": status, "updated_at": func.now()},
        )
        .returning(OrganizationMembership)
    )
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    await session.flush()
    return result.scalar_one()


async def delete_membership(
    session: AsyncSession, organization_external_id: str, user_external_id: str
) -> bool:
    result = await session.execute(
        delete(OrganizationMembership).where(
            and_(
                OrganizationMembership.organization_external_id == organization_external_id,
                OrganizationMembership.user_external_id == user_external_id,
            )
        )
    )
    await session.flush()
    return result.rowcount > 0


async def list_for_user(
    session: AsyncSession, user_external_id: str
) -> list[OrganizationMembership]:
    """Return every membership the user holds, oldest first."""
    result = await session.execute(
        select(OrganizationMembership)
        .where(OrganizationMembership.user_external_id == user_external_id)
        .order_by(OrganizationMembership.created_at)
    )
    return list(result.scalars().all())


async def list_for_organization(
    session: AsyncSession, organization_external_id: str
) -> list[OrganizationMembership]:
    """Return every membership of an organization, oldest first."""
    result = await session.execute(
        select(OrganizationMembership)
        .where(OrganizationMembership.organization_external_id == organization_external_id)
        .order_by(OrganizationMembership.created_at)
    )
    return list(result.scalars().all())
