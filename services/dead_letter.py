"""Dead-letter queue operations — manual retry, bulk retry, resolve.

An item is open while resolved_at is unset. Retrying spawns a fresh sync
workflow and leaves the item open; handle_sync_complete() resolves it once
that workflow succeeds. Resolving is terminal.
"""
import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

import db.repositories.dead_letter as dlq_repo
import db.repositories.organizations as org_repo
import db.repositories.sync_status as sync_repo
import db.repositories.users as user_repo
from db.connection import savepoint
from db.models import DeadLetterItem
from schemas.sync import BulkRetryResult, DeadLetterEntry, ResolveResult, RetryResult
from services.workflows import (
    get_runner,
    kickoff_organization_deletion,
    kickoff_organization_sync,
    kickoff_user_deletion,
    kickoff_user_sync,
)
from sync_config import sync_lost_after_seconds

logger = logging.getLogger(__name__)

LOST_WORKFLOW_ERROR = "Workflow lost before completion"


class RetryRejected(Exception):
    """An item cannot be retried in its current state. Nothing was changed."""


async def _check_retryable(session: AsyncSession, item: DeadLetterItem) -> None:
    if item.resolved_at is not None:
        raise RetryRejected("Item is already resolved")
    if not item.retryable:
        raise RetryRejected("Item is not retryable")
    if item.last_retry_workflow_id:
        previous = await sync_repo.get_by_workflow_id(session, item.last_retry_workflow_id)
        if previous is None or previous.status != "pending":
            return
        # Any runner status, finished included, means the completion has not committed yet
        now = datetime.now(timezone.utc)
        known = get_runner().status(previous.workflow_id) is not None
        if known or now - previous.started_at < timedelta(seconds=sync_lost_after_seconds()):
            raise RetryRejected(
                f"A retry is already in progress (workflow {item.last_retry_workflow_id})"
            )
        lost = await sync_repo.mark_complete(
            session,
            previous.workflow_id,
            success=False,
            completed_at=now,
            duration_ms=int((now - previous.started_at).total_seconds() * 1000),
            error=LOST_WORKFLOW_ERROR,
        )
        if lost is None:
            raise RetryRejected(
                f"Workflow {previous.workflow_id} completed while the retry was checked"
            )
        logger.warning(
            "Workflow %s of dead-letter item %s was lost before completing",
            previous.workflow_id,
            item.id,
        )


def _is_deletion(item: DeadLetterItem) -> bool:
    event = (item.context or {}).get("webhook_event") or ""
    return event.endswith(".deleted")


async def _respawn(session: AsyncSession, item: DeadLetterItem) -> str:
    """Start a new sync workflow for the item's entity.

    A failed deletion is retried as a deletion. Anything else is re-synced
    from primary-store state.
    """
    now = datetime.now(timezone.utc)
    if _is_deletion(item):
        if item.entity_type == "user":
            return await kickoff_user_deletion(session, item.entity_id)
        if item.entity_type == "organization":
            return await kickoff_organization_deletion(session, item.entity_id)
    if item.entity_type == "user":
        user = await user_repo.get_by_external_id(session, item.entity_id)
        if user is None:
            raise RetryRejected(f"User {item.entity_id} not found in primary store")
        return await kickoff_user_sync(
            session, item.entity_id, str(user.id), "user.updated", now, user.created_at
        )
    if item.entity_type == "organization":
        org = await org_repo.get_by_external_id(session, item.entity_id)
        if org is None:
            raise RetryRejected(f"Organization {item.entity_id} not found in primary store")
        return await kickoff_organization_sync(
            session, item.entity_id, str(org.id), "organization.updated", now, org.created_at
        )
    raise RetryRejected(f"Unsupported entity type: {item.entity_type}")


async def retry_dead_letter_item(session: AsyncSession, item_id: UUID) -> RetryResult:
    """Re-run the sync of one item.

    Rejections (missing, resolved, not retryable, retry in flight, entity gone,
    unsupported type) return success=False and leave retry_count untouched.
    The item row is locked for the duration of the caller's transaction.
    """
    try:
        async with savepoint(session):
            item = await dlq_repo.get_by_id(session, item_id, for_update=True)
            if item is None:
                raise RetryRejected("Item not found")
            await _check_retryable(session, item)
            new_workflow_id = await _respawn(session, item)
            await dlq_repo.mark_retried(session, item, new_workflow_id)
    except RetryRejected as exc:
        logger.info("Dead-letter retry of %s rejected: %s", item_id, exc)
        return RetryResult(success=False, error=str(exc))
    except Exception as exc:
        logger.error("Dead-letter retry of %s failed: %s", item_id, exc, exc_info=True)
        return RetryResult(success=False, error=str(exc) or type(exc).__name__)

    logger.info(
        "Retried %s %s from dead-letter item %s. New workflow: %s. Attempts so far: %d",
        item.entity_type,
        item.entity_id,
        item.id,
        new_workflow_id,
        item.retry_count,
    )
    return RetryResult(success=True, new_workflow_id=new_workflow_id)


async def retry_all_dead_letter_items(session: AsyncSession) -> BulkRetryResult:
    """Retry every open, retryable item in creation order.

    Each item runs in its own savepoint, so one failure neither aborts the
    batch nor raises.
    """
    items = await dlq_repo.list_retryable(session)
    result = BulkRetryResult(total=len(items))
    for item in items:
        label = f"{item.entity_type} {item.entity_id}"
        outcome = await retry_dead_letter_item(session, item.id)
        if outcome.success:
            result.succeeded += 1
        else:
            result.failed += 1
            result.errors.append(f"{label}: {outcome.error}")

    logger.info(
        "Dead-letter bulk retry complete. Total: %d, Succeeded: %d, Failed: %d",
        result.total,
        result.succeeded,
        result.failed,
    )
    return result


async def resolve_dead_letter_item(session: AsyncSession, item_id: UUID) -> ResolveResult:
    """Close an item without retrying. Resolving twice is a no-op."""
    item = await dlq_repo.get_by_id(session, item_id, for_update=True)
    if item is None:
        return ResolveResult(success=False, error="Item not found")
    if item.resolved_at is None:
        await dlq_repo.resolve(session, item)
        logger.info("Dead-letter item %s resolved manually", item_id)
    return ResolveResult(success=True)


async def get_dead_letter_queue(
    session: AsyncSession, limit: int = 50, include_resolved: bool = False
) -> list[DeadLetterEntry]:
    items = await dlq_repo.list_items(session, limit=limit, include_resolved=include_resolved)
    return [DeadLetterEntry.model_validate(item) for item in items]
