"""Identity-provider event processing.

Webhook deliveries and Events API polling share one processor and one
processed_events table, so each event id is applied at most once whichever
path sees it first.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

import db.repositories.events as events_repo
import db.repositories.memberships as membership_repo
import db.repositories.organizations as org_repo
import db.repositories.roles as role_repo
import db.repositories.users as user_repo
from db.connection import get_db
from db.models import DOMAIN_STATUSES, MEMBERSHIP_STATUSES
from schemas.webhooks import EventSource, PollResult, ProcessResult, WorkOSEvent
from services.workflows import (
    kickoff_organization_deletion,
    kickoff_organization_sync,
    kickoff_user_deletion,
    kickoff_user_sync,
)
from sync_config import (
    EVENTS_PAGE_SIZE,
    PROCESSED_EVENTS_BATCH_SIZE,
    WORKOS_EVENT_TYPES,
    event_cleanup_interval_seconds,
    event_poll_interval_seconds,
    processed_event_retention_days,
)
from tools import workos_tools

logger = logging.getLogger(__name__)


def get_field(data: dict, camel: str, snake: str, default: Any = None) -> Any:
    """Read a payload field that may arrive in camelCase or snake_case."""
    value = data.get(camel)
    if value is None:
        value = data.get(snake)
    return default if value is None else value


def _domain_status(state: Optional[str]) -> str:
    if state in DOMAIN_STATUSES:
        return state
    if state == "legacy_verified":
        return "verified"
    return "pending"


# ---------------------------------------------------------------------------
# Handlers, one per event family
# ---------------------------------------------------------------------------


async def _handle_user_upsert(session: AsyncSession, event: WorkOSEvent) -> None:
    data = event.data
    now = datetime.now(timezone.utc)
    user = await user_repo.upsert(
        session,
        {
            "external_id": data["id"],
            "email": data["email"],
            "email_verified": bool(get_field(data, "emailVerified", "email_verified", False)),
            "first_name": get_field(data, "firstName", "first_name"),
            "last_name": get_field(data, "lastName", "last_name"),
            "profile_picture_url": get_field(data, "profilePictureUrl", "profile_picture_url"),
            "metadata": data.get("metadata") or None,
        },
    )
    await kickoff_user_sync(
        session,
        data["id"],
        str(user.id),
        event.event,
        updated_at=now,
        created_at=now if event.event == "user.created" else None,
    )


async def _handle_user_deleted(session: AsyncSession, event: WorkOSEvent) -> None:
    await kickoff_user_deletion(session, event.data["id"])


async def _handle_organization_upsert(session: AsyncSession, event: WorkOSEvent) -> None:
    data = event.data
    now = datetime.now(timezone.utc)
    org = await org_repo.upsert(
        session,
        {
            "external_id": data["id"],
            "name": data["name"],
            "org_metadata": data.get("metadata") or None,
        },
    )
    await org_repo.reconcile_domains(
        session,
        org.id,
        [
            {
                "external_id": d["id"],
                "domain": d["domain"],
                "status": _domain_status(d.get("state")),
            }
            for d in data.get("domains") or []
        ],
    )
    await kickoff_organization_sync(
        session,
        data["id"],
        str(org.id),
        event.event,
        updated_at=now,
        created_at=now if event.event == "organization.created" else None,
    )


async def _handle_organization_deleted(session: AsyncSession, event: WorkOSEvent) -> None:
    await kickoff_organization_deletion(session, event.data["id"])


async def _handle_membership_upsert(session: AsyncSession, event: WorkOSEvent) -> None:
    data = event.data
    role = (data.get("role") or {}).get("slug")
    status = data.get("status")
    await membership_repo.upsert(
        session,
        organization_external_id=get_field(data, "organizationId", "organization_id", ""),
        user_external_id=get_field(data, "userId", "user_id", ""),
        role=role,
        status=status if status in MEMBERSHIP_STATUSES else "active",
    )


async def _handle_membership_deleted(session: AsyncSession, event: WorkOSEvent) -> None:
    data = event.data
    await membership_repo.delete_membership(
        session,
        get_field(data, "organizationId", "organization_id", ""),
        get_field(data, "userId", "user_id", ""),
    )


async def _handle_domain_verified(session: AsyncSession, event: WorkOSEvent) -> None:
    await org_repo.set_domain_status(session, event.data["id"], "verified")


async def _handle_domain_verification_failed(session: AsyncSession, event: WorkOSEvent) -> None:
    await org_repo.set_domain_status(session, event.data["id"], "failed")


async def _handle_role_upsert(session: AsyncSession, event: WorkOSEvent) -> None:
    data = event.data
    await role_repo.upsert(session, data["slug"], list(data.get("permissions") or []))


async def _handle_role_deleted(session: AsyncSession, event: WorkOSEvent) -> None:
    if not await role_repo.delete_by_slug(session, event.data["slug"]):
        logger.info("Role %s was not cached, nothing to delete", event.data["slug"])


Handler = Callable[[AsyncSession, WorkOSEvent], Awaitable[None]]

HANDLERS: dict[str, Handler] = {
    "user.created": _handle_user_upsert,
    "user.updated": _handle_user_upsert,
    "user.deleted": _handle_user_deleted,
    "organization.created": _handle_organization_upsert,
    "organization.updated": _handle_organization_upsert,
    "organization.deleted": _handle_organization_deleted,
    "organization_membership.created": _handle_membership_upsert,
    "organization_membership.updated": _handle_membership_upsert,
    "organization_membership.deleted": _handle_membership_deleted,
    "organization_domain.verified": _handle_domain_verified,
    "organization_domain.verification_failed": _handle_domain_verification_failed,
    "role.created": _handle_role_upsert,
    "role.updated": _handle_role_upsert,
    "role.deleted": _handle_role_deleted,
}


async def dispatch_event(session: AsyncSession, event: WorkOSEvent) -> None:
    handler = HANDLERS.get(event.event)
    if handler is None:
        logger.warning("Unhandled event type %s (%s)", event.event, event.id)
        return
    await handler(session, event)


# ---------------------------------------------------------------------------
# Processing entry points
# ---------------------------------------------------------------------------


async def apply_event(session: AsyncSession, event: WorkOSEvent) -> bool:
    """Apply an event inside the caller's transaction. Returns False if already applied.

    The claim is rolled back with everything else if the handler fails.
    """
    if not await events_repo.mark_processed(session, event.id, event.event):
        return False
    await dispatch_event(session, event)
    return True


async def process_webhook_event(
    event: Union[WorkOSEvent, dict], source: EventSource = "webhook"
) -> ProcessResult:
    """Apply one event in its own transaction.

    Errors are logged and returned; the event stays unmarked so a redelivery
    or the next poll picks it up again.
    """
    if not isinstance(event, WorkOSEvent):
        event = WorkOSEvent.model_validate(event)
    try:
        async with get_db() as session:
            applied = await apply_event(session, event)
    except Exception as exc:
        logger.error(
            "[%s] Error processing event %s (%s): %s",
            source,
            event.id,
            event.event,
            exc,
            exc_info=True,
        )
        return ProcessResult(success=False, error=str(exc) or type(exc).__name__)

    if not applied:
        logger.info("[%s] Skipping already processed event: %s (%s)", source, event.id, event.event)
        return ProcessResult(success=True, skipped=True)
    logger.info("[%s] Processed event: %s (%s)", source, event.id, event.event)
    return ProcessResult(success=True)


async def poll_events() -> PollResult:
    """Fetch the next page of events after the stored cursor and apply them.

    The cursor advances past every fetched event, including ones that failed,
    so one bad event cannot stall the poller.
    """
    async with get_db() as session:
        cursor_row = await events_repo.get_cursor(session)
    current = cursor_row.cursor if cursor_row is not None else None
    logger.info("[events_api] Starting poll with cursor: %s", current or "none")

    result = PollResult()
    response = await asyncio.to_thread(
        workos_tools.list_events, WORKOS_EVENT_TYPES, after=current, limit=EVENTS_PAGE_SIZE
    )
    if "error" in response:
        logger.error("[events_api] Fatal error polling events: %s", response["error"])
        result.errors.append(f"Fatal: {response['error']}")
        return result

    for raw in response["data"]:
        event_id, event_type = raw.get("id"), raw.get("event")
        try:
            outcome = await process_webhook_event(raw, source="events_api")
            if outcome.skipped:
                result.skipped += 1
            elif outcome.success:
                result.processed += 1
            else:
                result.errors.append(f"Event {event_id} ({event_type}): {outcome.error}")
        except Exception as exc:
            logger.error("[events_api] Error processing event %s: %s", event_id, exc, exc_info=True)
            result.errors.append(f"Event {event_id} ({event_type}): {exc}")
        result.new_cursor = event_id

    if result.new_cursor:
        async with get_db() as session:
            await events_repo.set_cursor(session, result.new_cursor)

    logger.info(
        "[events_api] Poll complete. Processed: %d, Skipped: %d, Errors: %d",
        result.processed,
        result.skipped,
        len(result.errors),
    )
    return result


async def initialize_cursor(range_start: Optional[datetime] = None) -> dict:
    """Reset the polling cursor, optionally to the first event after range_start."""
    cursor = None
    if range_start is not None:
        response = await asyncio.to_thread(
            workos_tools.list_events,
            WORKOS_EVENT_TYPES,
            range_start=range_start.isoformat(),
            limit=1,
        )
        if "error" in response:
            return {
                "success": False,
                "cursor": None,
                "message": f"Failed to initialize cursor: {response['error']}",
            }
        if response["data"]:
            cursor = response["data"][0]["id"]

    async with get_db() as session:
        await events_repo.set_cursor(session, cursor)

    if cursor:
        return {"success": True, "cursor": cursor, "message": f"Cursor initialized from range start: {cursor}"}
    return {
        "success": True,
        "cursor": None,
        "message": "Cursor initialized. Will fetch all available events.",
    }


async def cleanup_old_processed_events(now: Optional[datetime] = None) -> int:
    """Delete processed-event rows past the retention window. Returns the count."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=processed_event_retention_days())
    total = 0
    while True:
        async with get_db() as session:
            deleted = await events_repo.delete_processed_before(
                session, cutoff, batch_size=PROCESSED_EVENTS_BATCH_SIZE
            )
        total += deleted
        if deleted < PROCESSED_EVENTS_BATCH_SIZE:
            break
    logger.info("Deleted %d processed event(s) older than %s", total, cutoff.isoformat())
    return total


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------


async def run_periodically(name: str, interval: float, job: Callable[[], Awaitable[Any]]) -> None:
    """Run `job` every `interval` seconds until cancelled.

    A failing run is logged and the schedule continues.
    """
    logger.info("Scheduled job %s every %.0fs", name, interval)
    while True:
        await asyncio.sleep(interval)
        try:
            await job()
        except Exception:
            logger.exception("Scheduled job %s failed", name)


def start_scheduled_jobs() -> list[asyncio.Task]:
    """Start the Events API poller and processed-event cleanup.

    The poller is the backstop for webhooks the provider failed to deliver.
    A job whose interval is 0 is not started.
    """
    jobs = [
        ("poll_events", event_poll_interval_seconds(), poll_events),
        ("cleanup_processed_events", event_cleanup_interval_seconds(), cleanup_old_processed_events),
    ]
    loop = asyncio.get_running_loop()
    return [
        loop.create_task(run_periodically(name, interval, job), name=name)
        for name, interval, job in jobs
        if interval > 0
    ]


async def stop_scheduled_jobs(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
