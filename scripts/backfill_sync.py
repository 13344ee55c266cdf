"""Re-sync every user and organization in the primary store to the warehouse.

Use after creating a fresh warehouse or recovering from an outage:

    python scripts/backfill_sync.py
    python scripts/backfill_sync.py --only users

Each entity gets its own sync workflow and sync_status record, so failures
land in the dead-letter queue like any webhook-driven sync.
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Resolve project root so imports work when run from any cwd
_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_ROOT))

from sqlalchemy import select

from db.connection import dispose_engine, get_db
from db.models import Organization, User
from services.workflows import get_runner, kickoff_organization_sync, kickoff_user_sync

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
logger = logging.getLogger(__name__)

BACKFILL_EVENT = {"users": "user.updated", "organizations": "organization.updated"}


async def _backfill_users() -> int:
    async with get_db() as session:
        users = list((await session.execute(select(User).order_by(User.created_at))).scalars().all())
        for user in users:
            await kickoff_user_sync(
                session,
                user.external_id,
                str(user.id),
                BACKFILL_EVENT["users"],
                updated_at=user.updated_at,
                created_at=user.created_at,
            )
    return len(users)


async def _backfill_organizations() -> int:
    async with get_db() as session:
        orgs = list(
            (await session.execute(select(Organization).order_by(Organization.created_at))).scalars().all()
        )
        for org in orgs:
            await kickoff_organization_sync(
                session,
                org.external_id,
                str(org.id),
                BACKFILL_EVENT["organizations"],
                updated_at=org.updated_at,
                created_at=org.created_at,
            )
    return len(orgs)


async def main(only: str = "all") -> None:
    try:
        users = orgs = 0
        if only in ("all", "users"):
            users = await _backfill_users()
        if only in ("all", "organizations"):
            orgs = await _backfill_organizations()
        logger.info("Scheduled %d user and %d organization sync(s); waiting", users, orgs)
        await get_runner().drain()
        logger.info("Backfill complete. Check `python admin.py sync-stats` for failures.")
    finally:
        await dispose_engine()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Backfill warehouse identity mappings")
    parser.add_argument("--only", choices=["all", "users", "organizations"], default="all")
    asyncio.run(main(parser.parse_args().only))
