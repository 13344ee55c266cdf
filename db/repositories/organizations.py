"""Organization repository — identity mirror plus domain reconciliation."""
import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Organization, OrganizationDomain, OrganizationMembership

logger = logging.getLogger(__name__)


class DomainNotFoundError(LookupError):
    """Raised when a domain event references a domain we have never mirrored."""

    def __init__(self, domain_external_id: str):
        super().__init__(f"Domain {domain_external_id} not found")
        self.domain_external_id = domain_external_id


async def get_by_external_id(
    session: AsyncSession, external_id: str
) -> Optional[Organization]:
    """Return the Organization with this identity-provider id, or None."""
    result = await session.execute(
        select(Organization).where(Organization.external_id == external_id)
    )
    return result.scalar_one_or_none()


async def get_many_by_external_id(
    session: AsyncSession, external_ids: list[str]
) -> dict[str, Organization]:
    """Return {external_id: Organization} for the ids that exist."""
    if not external_ids:
        return {}
    result = await session.execute(
        select(Organization).where(Organization.external_id.in_(external_ids))
    )
    return {org.external_id: org for org in result.scalars().all()}


async def upsert(session: AsyncSession, data: dict) -> Organization:
    """Insert or update an organization by external_id (dedup key).

    data dict keys: external_id, name, org_metadata
    """
    stmt = (
        pg_insert(Organization)
        .values(**data)
        .on_conflict_do_update(
            index_elements=["external_id"],
            set_={
                **{k: v for k, v in data.items() if k != "external_id"},
                "updated_at": func.now(),
            },
        )
        .returning(Organization)
    )
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    await session.flush()
    return result.scalar_one()


async def get_domains(session: AsyncSession, org_id: UUID) -> list[OrganizationDomain]:
    result = await session.execute(
        select(OrganizationDomain)
        .where(OrganizationDomain.organization_id == org_id)
        .order_by(OrganizationDomain.domain)
        # Rows written by core upserts must overwrite instances already in the session
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def reconcile_domains(
    session: AsyncSession, org_id: UUID, domains: list[dict]
) -> list[OrganizationDomain]:
    """Make the organization's domains match the provider's list.

    domains: [{external_id, domain, status}]. Domains no longer listed are
    deleted, listed ones are updated in place, unknown ones are inserted.
    """
    incoming = {d["external_id"]: d for d in domains}
    existing = await get_domains(session, org_id)

    removed = 0
    for row in existing:
        if row.external_id not in incoming:
            await session.delete(row)
            removed += 1

    for external_id, d in incoming.items():
        stmt = (
            pg_insert(OrganizationDomain)
            .values(
                organization_id=org_id,
                external_id=external_id,
                domain=d["domain"],
                status=d["status"],
            )
            .on_conflict_do_update(
                index_elements=["external_id"],
                set_={
                    "organization_id": org_id,
                    "domain": d["domain"],
                    "status": d["status"],
                    "updated_at": func.now(),
                },
            )
        )
        await session.execute(stmt)

    await session.flush()
    if removed:
        logger.info("Removed %d stale domain(s) from organization %s", removed, org_id)
    return await get_domains(session, org_id)


async def set_domain_status(
    session: AsyncSession, domain_external_id: str, status: str
) -> OrganizationDomain:
    """Set a domain's verification status. Raises DomainNotFoundError."""
    result = await session.execute(
        update(OrganizationDomain)
        .where(OrganizationDomain.external_id == domain_external_id)
        .values(status=status, updated_at=func.now())
        .returning(OrganizationDomain)
    )
    await session.flush()
    domain = result.scalar_one_or_none()
    if domain is None:
        raise DomainNotFoundError(domain_external_id)
    return domain


async def delete_by_external_id(session: AsyncSession, external_id: str) -> bool:
    """Delete an organization with its domains and memberships."""
    await session.execute(
        delete(OrganizationMembership).where(
            OrganizationMembership.organization_external_id == external_id
        )
    )
    # Domains go with the organization through ON DELETE CASCADE
    result = await session.execute(
        delete(Organization).where(Organization.external_id == external_id)
    )
    await session.flush()
    deleted = result.rowcount > 0
    if not deleted:
        logger.info(
            "Organization %s not found in primary store, nothing to delete", external_id
        )
    return deleted
