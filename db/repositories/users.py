"""User repository — identity mirror upserts that preserve local-only fields."""
import logging
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import OrganizationMembership, User

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "user"
NEW_USER_METADATA = {"onboardingComplete": "false"}


async def get_by_external_id(session: AsyncSession, external_id: str) -> Optional[User]:
    """Return the User with this identity-provider id, or None."""
    result = await session.execute(select(User).where(User.external_id == external_id))
    return result.scalar_one_or_none()


def merge_metadata(
    existing: Optional[dict[str, str]], incoming: Optional[dict[str, str]]
) -> dict[str, str]:
    """Merge provider metadata over what we hold; incoming keys win.

    A user we have never seen starts with onboardingComplete=false.
    """
    base = dict(existing) if existing is not None else dict(NEW_USER_METADATA)
    base.update(incoming or {})
    return base


async def upsert(session: AsyncSession, data: dict) -> User:
    """Insert or update a user by external_id (dedup key).

    data dict keys: external_id, email, email_verified, first_name, last_name,
    profile_picture_url, metadata

    role is never taken from the provider: existing users keep theirs, new
    users get 'user'.
    """
    external_id = data["external_id"]
    existing = await get_by_external_id(session, external_id)
    metadata = merge_metadata(
        existing.user_metadata if existing is not None else None,
        data.get("metadata"),
    )

    values = {k: v for k, v in data.items() if k not in ("metadata", "role")}
    values["user_metadata"] = metadata
    stmt = (
        pg_insert(User)
        .values(**values, role=existing.role if existing is not None else DEFAULT_ROLE)
        .on_conflict_do_update(
            index_elements=["external_id"],
            set_={
                **{k: v for k, v in values.items() if k != "external_id"},
                "updated_at": func.now(),
            },
        )
        .returning(User)
    )
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    await session.flush()
    return result.scalar_one()


async def delete_by_external_id(session: AsyncSession, external_id: str) -> bool:
    """Delete a user and their memberships. Returns False if nothing was deleted."""
    await session.execute(
        delete(OrganizationMembership).where(
            OrganizationMembership.user_external_id == external_id
        )
    )
    result = await session.execute(delete(User).where(User.external_id == external_id))
    await session.flush()
    deleted = result.rowcount > 0
    if not deleted:
        logger.info("User %s not found in primary store, nothing to delete", external_id)
    return deleted
