"""HTTP surface: provider webhooks, admin sync/dead-letter routes, billing.

Run with:
    uvicorn server:app --port 8000
or:
    python admin.py serve
"""
import hmac
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from db.connection import dispose_engine, get_db
from schemas.account import DeletionCheck
from schemas.sync import (
    BulkRetryResult,
    DeadLetterEntry,
    EntitySyncSummary,
    ResolveResult,
    RetryResult,
    SyncRecord,
    SyncStats,
)
from schemas.webhooks import PollResult, WorkOSEvent
from services import account_deletion, billing, dead_letter, event_processing, sync_status
from services.workflows import get_runner
from sync_config import admin_api_token
from tools.stripe_tools import verify_stripe_webhook
from tools.workos_tools import WebhookVerificationError, verify_webhook

logger = logging.getLogger(__name__)


async def db_session() -> AsyncIterator[AsyncSession]:
    async with get_db() as session:
        yield session


def require_admin(authorization: Optional[str] = Header(default=None)) -> None:
    token = admin_api_token()
    if token is None:
        raise HTTPException(status_code=503, detail="Admin API disabled: ADMIN_API_TOKEN is not set")
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {token}"):
        raise HTTPException(status_code=401, detail="Invalid admin token")


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

webhooks = APIRouter(prefix="/webhooks", tags=["webhooks"])


@webhooks.post("/workos")
async def workos_webhook(
    request: Request, workos_signature: Optional[str] = Header(default=None)
):
    body = await request.body()
    try:
        payload = verify_webhook(body, workos_signature)
        event = WorkOSEvent.model_validate(payload)
    except WebhookVerificationError as exc:
        logger.warning("Rejected WorkOS webhook: %s", exc)
        raise HTTPException(status_code=401, detail="Invalid signature")
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Malformed event: {exc.error_count()} error(s)")

    result = await event_processing.process_webhook_event(event, source="webhook")
    # Non-2xx makes the provider redeliver; the event is still unclaimed
    status_code = 200 if result.success else 500
    return JSONResponse(status_code=status_code, content=result.model_dump(by_alias=True))


@webhooks.post("/stripe")
async def stripe_webhook(
    request: Request, stripe_signature: Optional[str] = Header(default=None)
):
    body = await request.body()
    try:
        event = verify_stripe_webhook(body, stripe_signature)
    except WebhookVerificationError as exc:
        logger.warning("Rejected Stripe webhook: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid signature")
    try:
        return await billing.handle_stripe_event(event)
    except billing.BillingError as exc:
        logger.error("Stripe event %s not applied: %s", event.get("id"), exc)
        raise HTTPException(status_code=500, detail="Subscription sync failed")


# ---------------------------------------------------------------------------
# Admin: sync status and dead-letter queue
# ---------------------------------------------------------------------------

admin = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@admin.get("/sync/status", response_model=list[SyncRecord])
async def sync_status_list(
    limit: int = Query(default=100, ge=1, le=1000), session: AsyncSession = Depends(db_session)
):
    return await sync_status.get_sync_status(session, limit)


@admin.get("/sync/failed", response_model=list[SyncRecord])
async def sync_failed_list(
    limit: int = Query(default=100, ge=1, le=1000), session: AsyncSession = Depends(db_session)
):
    return await sync_status.get_failed_syncs(session, limit)


@admin.get("/sync/pending", response_model=list[SyncRecord])
async def sync_pending_list(
    limit: int = Query(default=100, ge=1, le=1000), session: AsyncSession = Depends(db_session)
):
    return await sync_status.get_pending_syncs(session, limit)


@admin.get("/sync/grouped", response_model=list[EntitySyncSummary])
async def sync_grouped(
    limit: int = Query(default=100, ge=1, le=1000), session: AsyncSession = Depends(db_session)
):
    return await sync_status.get_syncs_grouped_by_entity(session, limit)


@admin.get("/sync/stats", response_model=SyncStats)
async def sync_stats(session: AsyncSession = Depends(db_session)):
    return await sync_status.get_sync_stats(session)


@admin.get("/sync/history/{entity_type}/{entity_id}", response_model=list[SyncRecord])
async def sync_history(
    entity_type: str,
    entity_id: str,
    limit: int = Query(default=50, ge=1, le=1000),
    session: AsyncSession = Depends(db_session),
):
    if entity_type not in ("user", "organization"):
        raise HTTPException(status_code=400, detail="entity_type must be 'user' or 'organization'")
    return await sync_status.get_entity_history(session, entity_type, entity_id, limit)


@admin.get("/dead-letter", response_model=list[DeadLetterEntry])
async def dead_letter_list(
    limit: int = Query(default=50, ge=1, le=1000),
    include_resolved: bool = False,
    session: AsyncSession = Depends(db_session),
):
    return await dead_letter.get_dead_letter_queue(session, limit, include_resolved)


@admin.post("/dead-letter/retry-all", response_model=BulkRetryResult)
async def dead_letter_retry_all(session: AsyncSession = Depends(db_session)):
    return await dead_letter.retry_all_dead_letter_items(session)


@admin.post("/dead-letter/{item_id}/retry", response_model=RetryResult)
async def dead_letter_retry(item_id: UUID, session: AsyncSession = Depends(db_session)):
    return await dead_letter.retry_dead_letter_item(session, item_id)


@admin.post("/dead-letter/{item_id}/resolve", response_model=ResolveResult)
async def dead_letter_resolve(item_id: UUID, session: AsyncSession = Depends(db_session)):
    return await dead_letter.resolve_dead_letter_item(session, item_id)


@admin.post("/events/poll", response_model=PollResult)
async def events_poll():
    return await event_processing.poll_events()


@admin.post("/events/cleanup")
async def events_cleanup():
    deleted = await event_processing.cleanup_old_processed_events()
    return {"deleted": deleted}


# ---------------------------------------------------------------------------
# Accounts and billing (operator-facing, same bearer token)
# ---------------------------------------------------------------------------

accounts = APIRouter(prefix="/accounts", tags=["accounts"], dependencies=[Depends(require_admin)])


@accounts.get("/{user_external_id}/deletion-check", response_model=DeletionCheck)
async def deletion_check(user_external_id: str, session: AsyncSession = Depends(db_session)):
    return await account_deletion.can_delete_account_check(session, user_external_id)


@accounts.delete("/{user_external_id}")
async def delete_account(user_external_id: str, session: AsyncSession = Depends(db_session)):
    try:
        return await account_deletion.delete_account(session, user_external_id)
    except account_deletion.AccountDeletionBlocked as exc:
        raise HTTPException(status_code=409, detail=exc.reason)
    except account_deletion.AccountDeletionFailed as exc:
        raise HTTPException(status_code=502, detail=str(exc))


class CheckoutRequest(BaseModel):
    price_id: str
    success_url: str
    cancel_url: str
    email: Optional[str] = None


class PortalRequest(BaseModel):
    return_url: str


billing_routes = APIRouter(prefix="/billing", tags=["billing"], dependencies=[Depends(require_admin)])


@billing_routes.post("/{organization_external_id}/checkout")
async def billing_checkout(
    organization_external_id: str,
    payload: CheckoutRequest,
    session: AsyncSession = Depends(db_session),
):
    try:
        org, _ = await billing.get_organization_billing(session, organization_external_id)
        return await billing.create_checkout_session(
            session, org, payload.price_id, payload.success_url, payload.cancel_url, payload.email
        )
    except billing.BillingError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@billing_routes.post("/{organization_external_id}/portal")
async def billing_portal(
    organization_external_id: str,
    payload: PortalRequest,
    session: AsyncSession = Depends(db_session),
):
    try:
        org, _ = await billing.get_organization_billing(session, organization_external_id)
        return await billing.create_billing_portal_session(session, org, payload.return_url)
    except billing.BillingError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@billing_routes.post("/{organization_external_id}/sync")
async def billing_sync(organization_external_id: str, session: AsyncSession = Depends(db_session)):
    try:
        org, subscription = await billing.get_organization_billing(session, organization_external_id)
        if subscription is None:
            raise billing.BillingError(f"Organization {organization_external_id} has no billing record")
        row = await billing.sync_stripe_data_for_customer(session, subscription.stripe_customer_id)
    except billing.BillingError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"status": row.status if row is not None else "none", "tier": row.tier if row is not None else None}


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduled = event_processing.start_scheduled_jobs()
    yield
    await event_processing.stop_scheduled_jobs(scheduled)
    await get_runner().drain()
    await dispose_engine()


def create_app() -> FastAPI:
    app = FastAPI(title="Identity Sync Backend", lifespan=lifespan)
    app.include_router(webhooks)
    app.include_router(admin)
    app.include_router(accounts)
    app.include_router(billing_routes)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
