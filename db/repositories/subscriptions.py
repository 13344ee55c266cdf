"""Billing repository — Stripe customers, subscription state, webhook idempotency."""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import (
    TIER_SEAT_LIMITS,
    OrganizationSubscription,
    StripeCustomer,
    StripeWebhookEvent,
)

logger = logging.getLogger(__name__)

ACTIVE_STATUS = "active"


async def get_for_organization(
    session: AsyncSession, organization_id: UUID
) -> Optional[OrganizationSubscription]:
    result = await session.execute(
        select(OrganizationSubscription).where(
            OrganizationSubscription.organization_id == organization_id
        )
    )
    return result.scalar_one_or_none()


async def get_stripe_customer(
    session: AsyncSession, organization_id: UUID
) -> Optional[StripeCustomer]:
    result = await session.execute(
        select(StripeCustomer).where(StripeCustomer.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def get_stripe_customer_by_customer_id(
    session: AsyncSession, stripe_customer_id: str
) -> Optional[StripeCustomer]:
    result = await session.execute(
        select(StripeCustomer).where(StripeCustomer.stripe_customer_id == stripe_customer_id)
    )
    return result.scalar_one_or_none()


async def add_stripe_customer(
    session: AsyncSession, organization_id: UUID, stripe_customer_id: str
) -> StripeCustomer:
    """Link an organization to a Stripe customer. Idempotent on organization."""
    stmt = (
        pg_insert(StripeCustomer)
        .values(organization_id=organization_id, stripe_customer_id=stripe_customer_id)
        .on_conflict_do_nothing(index_elements=["organization_id"])
        .returning(StripeCustomer)
    )
    result = await session.execute(stmt)
    await session.flush()
    row = result.scalar_one_or_none()
    if row is None:
        # Another request linked it first
        row = await get_stripe_customer(session, organization_id)
    return row


async def upsert(
    session: AsyncSession, organization_id: UUID, data: dict
) -> OrganizationSubscription:
    """Insert or update the subscription row of an organization.

    data dict keys: stripe_customer_id, stripe_subscription_id, stripe_price_id,
    tier, status, billing_interval, current_period_start, current_period_end,
    cancel_at_period_end, cancel_at, trial_start, trial_end,
    payment_method_brand, payment_method_last4

    seat_limit is derived from tier.
    """
    tier = data.get("tier", "personal")
    values = {**data, "seat_limit": TIER_SEAT_LIMITS[tier]}
    stmt = (
        pg_insert(OrganizationSubscription)
        .values(organization_id=organization_id, **values)
        .on_conflict_do_update(
            index_elements=["organization_id"],
            set_={**values, "updated_at": func.now()},
        )
        .returning(OrganizationSubscription)
    )
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    await session.flush()
    return result.scalar_one()


async def set_pending_checkout(
    session: AsyncSession,
    organization_id: UUID,
    stripe_customer_id: str,
    checkout_session_id: str,
    price_id: str,
) -> OrganizationSubscription:
    """Remember the checkout a customer was sent to, creating the row if needed."""
    stmt = (
        pg_insert(OrganizationSubscription)
        .values(
            organization_id=organization_id,
            stripe_customer_id=stripe_customer_id,
            pending_checkout_session_id=checkout_session_id,
            pending_price_id=price_id,
        )
        .on_conflict_do_update(
            index_elements=["organization_id"],
            set_={
                "pending_checkout_session_id": checkout_session_id,
                "pending_price_id": price_id,
                "updated_at": func.now(),
            },
        )
        .returning(OrganizationSubscription)
    )
    result = await session.execute(stmt, execution_options={"populate_existing": True})
    await session.flush()
    return result.scalar_one()


async def clear_pending_checkout(session: AsyncSession, organization_id: UUID) -> None:
    await session.execute(
        update(OrganizationSubscription)
        .where(OrganizationSubscription.organization_id == organization_id)
        .values(pending_checkout_session_id=None, pending_price_id=None, updated_at=func.now())
    )
    await session.flush()


# ---------------------------------------------------------------------------
# Webhook idempotency
# ---------------------------------------------------------------------------


async def is_webhook_event_processed(session: AsyncSession, event_id: str) -> bool:
    result = await session.execute(
        select(StripeWebhookEvent.id).where(StripeWebhookEvent.event_id == event_id)
    )
    return result.first() is not None


async def record_webhook_event(
    session: AsyncSession,
    event_id: str,
    event_type: str,
    customer_id: Optional[str] = None,
    processed_at: Optional[datetime] = None,
) -> None:
    """Mark a Stripe event as handled. Safe to call twice."""
    values = {"event_id": event_id, "event_type": event_type, "customer_id": customer_id}
    if processed_at is not None:
        values["processed_at"] = processed_at
    await session.execute(
        pg_insert(StripeWebhookEvent)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["event_id"])
    )
    await session.flush()
