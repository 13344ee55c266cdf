"""Sync workflows — push identity changes into the secondary store.

Each kickoff inserts a pending sync.sync_status row and schedules a workflow
that starts once the caller's transaction commits. The workflow retries its
secondary-store write with exponential backoff, then hands the outcome to
handle_sync_complete(), which finalises the record and feeds the dead-letter
queue.

The runner lives in-process: workflows are asyncio tasks, and status() only
knows ids started by this process.
"""
import asyncio
import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from functools import partial
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

import db.repositories.dead_letter as dlq_repo
import db.repositories.organizations as org_repo
import db.repositories.sync_status as sync_repo
import db.repositories.users as user_repo
import db.repositories.warehouse as warehouse_repo
from db.connection import after_commit, get_db, get_warehouse_db
from db.models import SyncStatus
from schemas.sync import SyncContext, SyncResult
from sync_config import RetryConfig, sync_max_parallelism, sync_retry_config

logger = logging.getLogger(__name__)

Step = Callable[[], Awaitable[None]]
CompletionHandler = Callable[[str, SyncResult, SyncContext], Awaitable[None]]


def new_workflow_id() -> str:
    return f"wf_{uuid.uuid4().hex}"


RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"


class WorkflowRunner:
    """Runs workflow steps as asyncio tasks with step-level retry."""

    def __init__(
        self,
        retry: Optional[RetryConfig] = None,
        max_history: int = 10_000,
        max_parallelism: Optional[int] = None,
    ):
        self.retry = retry or sync_retry_config()
        self.max_parallelism = max_parallelism or sync_max_parallelism()
        self._max_history = max_history
        self._slots: Optional[asyncio.Semaphore] = None
        self._tasks: dict[str, asyncio.Task] = {}
        self._status: OrderedDict[str, str] = OrderedDict()

    def start(
        self,
        session: AsyncSession,
        step: Step,
        on_complete: CompletionHandler,
        context: SyncContext,
        workflow_id: Optional[str] = None,
    ) -> str:
        """Schedule the run for after `session` commits. Returns the workflow id."""
        workflow_id = workflow_id or new_workflow_id()
        after_commit(session, partial(self._launch, workflow_id, step, on_complete, context))
        return workflow_id

    def status(self, workflow_id: str) -> Optional[str]:
        """'running', 'completed', 'failed', or None for ids this runner never ran."""
        return self._status.get(workflow_id)

    async def drain(self) -> None:
        """Wait until every launched workflow, including ones launched meanwhile, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    def _launch(
        self,
        workflow_id: str,
        step: Step,
        on_complete: CompletionHandler,
        context: SyncContext,
    ) -> None:
        self._set_status(workflow_id, RUNNING)
        task = asyncio.get_running_loop().create_task(
            self._run(workflow_id, step, on_complete, context), name=workflow_id
        )
        self._tasks[workflow_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(workflow_id, None))

    async def _run(
        self,
        workflow_id: str,
        step: Step,
        on_complete: CompletionHandler,
        context: SyncContext,
    ) -> None:
        # Queued workflows report 'running' while they wait for a slot
        if self._slots is None:
            self._slots = asyncio.Semaphore(self.max_parallelism)
        async with self._slots:
            result = await self._run_step(workflow_id, step, context)
            self._set_status(workflow_id, COMPLETED if result.success else FAILED)
            try:
                await on_complete(workflow_id, result, context)
            except Exception:
                logger.exception("Completion handler failed for workflow %s", workflow_id)

    async def _run_step(self, workflow_id: str, step: Step, context: SyncContext) -> SyncResult:
        attempt = 1
        while True:
            try:
                await step()
                return SyncResult(success=True)
            except Exception as exc:
                if attempt >= self.retry.max_attempts:
                    logger.error(
                        "Workflow %s (%s %s) failed after %d attempt(s): %s",
                        workflow_id,
                        context.entity_type,
                        context.entity_id,
                        attempt,
                        exc,
                    )
                    return SyncResult(success=False, error=str(exc) or type(exc).__name__)
                delay = self.retry.backoff_seconds(attempt)
                logger.warning(
                    "Workflow %s attempt %d/%d failed, retrying in %.2fs: %s",
                    workflow_id,
                    attempt,
                    self.retry.max_attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                attempt += 1

    def _set_status(self, workflow_id: str, status: str) -> None:
        self._status[workflow_id] = status
        self._status.move_to_end(workflow_id)
        while len(self._status) > self._max_history:
            self._status.popitem(last=False)


_runner: Optional[WorkflowRunner] = None


def get_runner() -> WorkflowRunner:
    global _runner
    if _runner is None:
        _runner = WorkflowRunner()
    return _runner


# ---------------------------------------------------------------------------
# Workflow steps
# ---------------------------------------------------------------------------


async def _upsert_user_step(
    workos_id: str, source_id: str, updated_at: datetime, created_at: Optional[datetime]
) -> None:
    async with get_warehouse_db() as session:
        await warehouse_repo.upsert_user(session, workos_id, source_id, updated_at, created_at)


async def _upsert_organization_step(
    workos_id: str, source_id: str, updated_at: datetime, created_at: Optional[datetime]
) -> None:
    async with get_warehouse_db() as session:
        await warehouse_repo.upsert_organization(
            session, workos_id, source_id, updated_at, created_at
        )


async def _delete_user_step(workos_id: str) -> None:
    async with get_warehouse_db() as session:
        await warehouse_repo.delete_user(session, workos_id)
    async with get_db() as session:
        await user_repo.delete_by_external_id(session, workos_id)


async def _delete_organization_step(workos_id: str) -> None:
    async with get_warehouse_db() as session:
        await warehouse_repo.delete_organization(session, workos_id)
    async with get_db() as session:
        await org_repo.delete_by_external_id(session, workos_id)


# ---------------------------------------------------------------------------
# Kickoff
# ---------------------------------------------------------------------------


async def _kickoff(
    session: AsyncSession,
    entity_type: str,
    entity_id: str,
    webhook_event: str,
    step: Step,
    source_id: Optional[str] = None,
) -> str:
    started_at = datetime.now(timezone.utc)
    context = SyncContext(
        entity_type=entity_type,
        entity_id=entity_id,
        started_at=started_at,
        webhook_event=webhook_event,
        source_id=source_id,
    )
    workflow_id = new_workflow_id()
    await sync_repo.create(session, entity_type, entity_id, webhook_event, workflow_id, started_at)
    get_runner().start(session, step, _on_workflow_complete, context, workflow_id)
    logger.info(
        "Scheduled %s sync for %s %s (workflow %s)",
        webhook_event,
        entity_type,
        entity_id,
        workflow_id,
    )
    return workflow_id


async def kickoff_user_sync(
    session: AsyncSession,
    external_id: str,
    source_id: str,
    webhook_event: str,
    updated_at: datetime,
    created_at: Optional[datetime] = None,
) -> str:
    """Schedule a secondary-store upsert for a user. Returns the workflow id."""
    step = partial(_upsert_user_step, external_id, source_id, updated_at, created_at)
    return await _kickoff(session, "user", external_id, webhook_event, step, source_id)


async def kickoff_organization_sync(
    session: AsyncSession,
    external_id: str,
    source_id: str,
    webhook_event: str,
    updated_at: datetime,
    created_at: Optional[datetime] = None,
) -> str:
    """Schedule a secondary-store upsert for an organization. Returns the workflow id."""
    step = partial(_upsert_organization_step, external_id, source_id, updated_at, created_at)
    return await _kickoff(session, "organization", external_id, webhook_event, step, source_id)


async def kickoff_user_deletion(session: AsyncSession, external_id: str) -> str:
    """Remove a user from the secondary store, then from the primary store."""
    step = partial(_delete_user_step, external_id)
    return await _kickoff(session, "user", external_id, "user.deleted", step)


async def kickoff_organization_deletion(session: AsyncSession, external_id: str) -> str:
    """Remove an organization from the secondary store, then from the primary store."""
    step = partial(_delete_organization_step, external_id)
    return await _kickoff(session, "organization", external_id, "organization.deleted", step)


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


async def handle_sync_complete(
    session: AsyncSession,
    workflow_id: str,
    result: SyncResult,
    context: SyncContext,
) -> Optional[SyncStatus]:
    """Finalise the sync record of a finished workflow.

    A failure parks the entity in the dead-letter queue, unless the workflow
    was itself a dead-letter retry, in which case that item just records the
    new error. A success resolves any item whose retry spawned this workflow.
    """
    completed_at = datetime.now(timezone.utc)
    duration_ms = int((completed_at - context.started_at).total_seconds() * 1000)
    record = await sync_repo.mark_complete(
        session,
        workflow_id,
        success=result.success,
        completed_at=completed_at,
        duration_ms=duration_ms,
        error=result.error,
    )
    if record is None:
        logger.warning(
            "No pending sync record for workflow %s, ignoring completion", workflow_id
        )
        return None

    retried_items = await dlq_repo.get_unresolved_by_retry_workflow(session, workflow_id)
    if result.success:
        for item in retried_items:
            await dlq_repo.resolve(session, item)
            logger.info("Dead-letter item %s resolved by workflow %s", item.id, workflow_id)
        return record

    error = result.error or "Unknown error"
    if retried_items:
        for item in retried_items:
            await dlq_repo.record_retry_failure(session, item, error)
    else:
        await dlq_repo.create(
            session,
            workflow_id=workflow_id,
            entity_type=context.entity_type,
            entity_id=context.entity_id,
            error=error,
            context=context.model_dump(mode="json"),
        )
        logger.warning(
            "%s %s moved to dead-letter queue (workflow %s): %s",
            context.entity_type,
            context.entity_id,
            workflow_id,
            error,
        )
    return record


async def _on_workflow_complete(
    workflow_id: str, result: SyncResult, context: SyncContext
) -> None:
    async with get_db() as session:
        await handle_sync_complete(session, workflow_id, result, context)
