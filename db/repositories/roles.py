"""Role cache repository — environment roles keyed by slug."""
import logging

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Role

logger = logging.getLogger(__name__)


async def upsert(
    session: AsyncSession, slug: str, permissions: list[str], source: str = "environment"
) -> Role:
    """Insert or replace the cached permissions of a role."""
    stmt = (
        pg_insert(Role)
        .values(slug=slug, permissions=permissions, source=source)
        .on_conflict_do_update(
            index_elements=["slug"],
            set_={"permissions": permissions, "source": source, "updated_at": func.now()},
        )
        .returning(Role)
    )
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    await session.flush()
    return result.scalar_one()


async def delete_by_slug(session: AsyncSession, slug: str) -> bool:
    result = await session.execute(delete(Role).where(Role.slug == slug))
    await session.flush()
    return result.rowcount > 0


async def list_roles(session: AsyncSession) -> list[Role]:
    result = await session.execute(select(Role).order_by(Role.slug))
    return list(result.scalars().all())
