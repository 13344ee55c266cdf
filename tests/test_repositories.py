"""Integration tests for core repository methods."""
import os
import uuid
from datetime import datetime, timedelta, timezone

import pytest

# DATABASE_URL must point at a migrated database (alembic upgrade head).
# Example: export DATABASE_URL="postgresql+asyncpg://sync:<password>@localhost:5432/identity_sync"
# See .env.example for configuration details.

pytestmark = pytest.mark.skipif(
    not os.environ.get("DATABASE_URL"), reason="DATABASE_URL not set"
)

from db import get_db
from db.repositories import dead_letter as dlq_repo
from db.repositories import events as events_repo
from db.repositories import memberships as membership_repo
from db.repositories import organizations as orgs_repo
from db.repositories import roles as roles_repo
from db.repositories import sync_status as sync_repo
from db.repositories import users as users_repo


def _ext(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_user_upsert_preserves_role_and_merges_metadata():
    """A second upsert keeps the stored role and merges metadata keys."""
    external_id = _ext("user")
    async with get_db() as session:
        first = await users_repo.upsert(session, {
            "external_id": external_id,
            "email": "first@example.com",
            "metadata": {"plan": "pro"},
        })
        assert first.role == "user"
        assert first.user_metadata == {"onboardingComplete": "false", "plan": "pro"}
        first.role = "admin"

    async with get_db() as session:
        second = await users_repo.upsert(session, {
            "external_id": external_id,
            "email": "second@example.com",
            "metadata": {"onboardingComplete": "true"},
        })
    assert second.id == first.id, "Upsert on same external id must return same user"
    assert second.email == "second@example.com"
    assert second.role == "admin"
    assert second.user_metadata == {"onboardingComplete": "true", "plan": "pro"}


@pytest.mark.asyncio
async def test_reconcile_domains_replaces_set():
    """Domains absent from the payload are removed, present ones upserted."""
    async with get_db() as session:
        org = await orgs_repo.upsert(session, {"external_id": _ext("org"), "name": "Acme"})
        keep, drop = _ext("dom"), _ext("dom")
        await orgs_repo.reconcile_domains(session, org.id, [
            {"external_id": keep, "domain": "acme.com", "status": "pending"},
            {"external_id": drop, "domain": "acme.io", "status": "pending"},
        ])
        await orgs_repo.reconcile_domains(session, org.id, [
            {"external_id": keep, "domain": "acme.com", "status": "verified"},
        ])
        domains = await orgs_repo.get_domains(session, org.id)
    assert [(d.external_id, d.status) for d in domains] == [(keep, "verified")]


@pytest.mark.asyncio
async def test_set_domain_status_unknown_domain():
    async with get_db() as session:
        with pytest.raises(orgs_repo.DomainNotFoundError):
            await orgs_repo.set_domain_status(session, _ext("dom"), "verified")


@pytest.mark.asyncio
async def test_membership_upsert_and_delete():
    org_id, user_id = _ext("org"), _ext("user")
    async with get_db() as session:
        await membership_repo.upsert(session, org_id, user_id, role="member")
        updated = await membership_repo.upsert(session, org_id, user_id, role="owner")
        assert updated.role == "owner"
        assert len(await membership_repo.list_for_user(session, user_id)) == 1
        assert await membership_repo.delete_membership(session, org_id, user_id) is True
        assert await membership_repo.list_for_organization(session, org_id) == []


@pytest.mark.asyncio
async def test_mark_processed_claims_once():
    event_id = _ext("evt")
    async with get_db() as session:
        assert await events_repo.mark_processed(session, event_id, "user.created") is True
    async with get_db() as session:
        assert await events_repo.mark_processed(session, event_id, "user.created") is False


@pytest.mark.asyncio
async def test_sync_record_lifecycle_and_dead_letter():
    """A failed sync lands in the queue; a retry marks it and resolve closes it."""
    entity_id = _ext("user")
    workflow_id = f"wf_{uuid.uuid4().hex}"
    started = datetime.now(timezone.utc)

    async with get_db() as session:
        record = await sync_repo.create(session, "user", entity_id, "user.updated", workflow_id, started)
        assert record.status == "pending"
        done = await sync_repo.mark_complete(
            session, workflow_id, success=False, completed_at=started + timedelta(seconds=1),
            duration_ms=1000, error="timeout",
        )
        assert done.status == "failed"
        item = await dlq_repo.create(
            session, workflow_id=workflow_id, entity_type="user", entity_id=entity_id, error="timeout",
        )

    async with get_db() as session:
        item = await dlq_repo.get_by_id(session, item.id, for_update=True)
        await dlq_repo.mark_retried(session, item, "wf_retry_" + uuid.uuid4().hex)
        assert item.retry_count == 1
        assert item.resolved_at is None
        retried = await dlq_repo.get_unresolved_by_retry_workflow(session, item.last_retry_workflow_id)
        assert [r.id for r in retried] == [item.id]
        await dlq_repo.resolve(session, item)

    async with get_db() as session:
        history = await sync_repo.list_for_entity(session, "user", entity_id)
        open_items = await dlq_repo.list_items(session, limit=1000)
    assert [h.workflow_id for h in history] == [workflow_id]
    assert item.id not in {i.id for i in open_items}


@pytest.mark.asyncio
async def test_sync_outcome_is_written_once():
    """A late completion cannot overwrite a record that is no longer pending."""
    workflow_id = f"wf_{uuid.uuid4().hex}"
    started = datetime.now(timezone.utc)

    async with get_db() as session:
        await sync_repo.create(session, "user", _ext("user"), "user.updated", workflow_id, started)
        lost = await sync_repo.mark_complete(
            session, workflow_id, success=False, completed_at=started + timedelta(minutes=20),
            duration_ms=1_200_000, error="Workflow lost before completion",
        )
        assert lost.status == "failed"

    async with get_db() as session:
        late = await sync_repo.mark_complete(
            session, workflow_id, success=False, completed_at=started + timedelta(minutes=21),
            duration_ms=1_260_000, error="timeout",
        )
        assert late is None
        record = await sync_repo.get_by_workflow_id(session, workflow_id)
    assert record.error == "Workflow lost before completion"


@pytest.mark.asyncio
async def test_role_cache_upsert_and_delete():
    slug = _ext("role")
    async with get_db() as session:
        await roles_repo.upsert(session, slug, ["widgets:read"])
        role = await roles_repo.upsert(session, slug, ["widgets:read", "widgets:write"])
        assert role.permissions == ["widgets:read", "widgets:write"]
        assert role.source == "environment"

    async with get_db() as session:
        assert await roles_repo.delete_by_slug(session, slug) is True
        assert await roles_repo.delete_by_slug(session, slug) is False
