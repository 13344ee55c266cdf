"""Billing glue — checkout, customer portal, subscription sync from Stripe.

Subscription state is never patched from webhook payloads. Every tracked
event triggers a fresh pull of the customer's latest subscription, so the
organization_subscriptions row always mirrors what Stripe reports now.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

import db.repositories.organizations as org_repo
import db.repositories.subscriptions as subscription_repo
from db.connection import get_db
from db.models import BILLING_INTERVALS, Organization, OrganizationSubscription
from sync_config import STRIPE_EVENT_TYPES, stripe_prices
from tools import stripe_tools

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """A Stripe call failed or the organization has no billing record."""


def _ts(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def subscription_values(customer_id: str, subscription: Optional[dict]) -> dict:
    """Translate a Stripe subscription into organization_subscriptions columns."""
    if subscription is None:
        return {
            "stripe_customer_id": customer_id,
            "stripe_subscription_id": None,
            "stripe_price_id": None,
            "tier": "personal",
            "status": "none",
            "billing_interval": None,
            "current_period_start": None,
            "current_period_end": None,
            "cancel_at_period_end": False,
            "cancel_at": None,
            "trial_start": None,
            "trial_end": None,
            "payment_method_brand": None,
            "payment_method_last4": None,
        }

    item = subscription["items"]["data"][0]
    price = item.get("price") or {}
    price_id = price.get("id")
    tier, interval = stripe_prices().get(
        price_id, ("personal", (price.get("recurring") or {}).get("interval"))
    )

    brand = last4 = None
    payment_method = subscription.get("default_payment_method")
    if isinstance(payment_method, dict):
        card = payment_method.get("card") or {}
        brand, last4 = card.get("brand"), card.get("last4")

    # Scheduled cancellation shows up as either flag depending on how it was set
    cancel_at = subscription.get("cancel_at")
    return {
        "stripe_customer_id": customer_id,
        "stripe_subscription_id": subscription["id"],
        "stripe_price_id": price_id,
        "tier": tier,
        "status": subscription["status"],
        "billing_interval": interval if interval in BILLING_INTERVALS else None,
        "current_period_start": _ts(
            item.get("current_period_start") or subscription.get("current_period_start")
        ),
        "current_period_end": _ts(
            item.get("current_period_end") or subscription.get("current_period_end")
        ),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end") or cancel_at),
        "cancel_at": _ts(cancel_at),
        "trial_start": _ts(subscription.get("trial_start")),
        "trial_end": _ts(subscription.get("trial_end")),
        "payment_method_brand": brand,
        "payment_method_last4": last4,
    }


async def _ensure_customer(
    session: AsyncSession, organization: Organization, email: Optional[str]
) -> str:
    existing = await subscription_repo.get_stripe_customer(session, organization.id)
    if existing is not None:
        return existing.stripe_customer_id

    created = await asyncio.to_thread(
        stripe_tools.create_customer,
        email,
        organization.name,
        {"organizationId": str(organization.id), "workosOrganizationId": organization.external_id},
    )
    if "error" in created:
        raise BillingError(f"Could not create Stripe customer: {created['error']}")
    customer = await subscription_repo.add_stripe_customer(
        session, organization.id, created["customer_id"]
    )
    logger.info(
        "Created Stripe customer %s for organization %s",
        customer.stripe_customer_id,
        organization.external_id,
    )
    return customer.stripe_customer_id


async def create_checkout_session(
    session: AsyncSession,
    organization: Organization,
    price_id: str,
    success_url: str,
    cancel_url: str,
    email: Optional[str] = None,
) -> dict:
    """Start a hosted subscription checkout. Returns {'session_id', 'url'}."""
    customer_id = await _ensure_customer(session, organization, email)
    checkout = await asyncio.to_thread(
        stripe_tools.create_checkout_session,
        customer_id,
        price_id,
        success_url,
        cancel_url,
        {"organizationId": str(organization.id), "workosOrganizationId": organization.external_id},
    )
    if "error" in checkout:
        raise BillingError(f"Could not create checkout session: {checkout['error']}")
    await subscription_repo.set_pending_checkout(
        session, organization.id, customer_id, checkout["session_id"], price_id
    )
    return {"session_id": checkout["session_id"], "url": checkout["url"]}


async def create_billing_portal_session(
    session: AsyncSession, organization: Organization, return_url: str
) -> dict:
    customer = await subscription_repo.get_stripe_customer(session, organization.id)
    if customer is None:
        raise BillingError(f"Organization {organization.external_id} has no Stripe customer")
    portal = await asyncio.to_thread(
        stripe_tools.create_billing_portal_session, customer.stripe_customer_id, return_url
    )
    if "error" in portal:
        raise BillingError(f"Could not create billing portal session: {portal['error']}")
    return {"url": portal["url"]}


async def sync_stripe_data_for_customer(
    session: AsyncSession, customer_id: str
) -> Optional[OrganizationSubscription]:
    """Pull the customer's latest subscription from Stripe and store it.

    Returns None when the customer belongs to no known organization.
    """
    customer = await subscription_repo.get_stripe_customer_by_customer_id(session, customer_id)
    if customer is None:
        logger.warning("Stripe customer %s is not linked to an organization", customer_id)
        return None

    fetched = await asyncio.to_thread(stripe_tools.get_latest_subscription, customer_id)
    if "error" in fetched:
        raise BillingError(f"Could not fetch subscriptions for {customer_id}: {fetched['error']}")

    values = subscription_values(customer_id, fetched["subscription"])
    row = await subscription_repo.upsert(session, customer.organization_id, values)
    if fetched["subscription"] is not None:
        await subscription_repo.clear_pending_checkout(session, customer.organization_id)
    logger.info(
        "Synced Stripe customer %s: status=%s tier=%s", customer_id, row.status, row.tier
    )
    return row


def _customer_id(obj: dict) -> Optional[str]:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer


async def handle_stripe_event(event: dict[str, Any]) -> dict:
    """Apply a verified Stripe event.

    A sync failure propagates and the event is left unrecorded, so Stripe
    redelivers it.
    """
    event_id, event_type = event.get("id"), event.get("type")
    if event_type not in STRIPE_EVENT_TYPES:
        logger.info("Ignoring untracked Stripe event %s (%s)", event_id, event_type)
        return {"received": True, "processed": False}

    customer_id = _customer_id((event.get("data") or {}).get("object") or {})
    if not customer_id:
        logger.warning("Stripe event %s (%s) has no customer id", event_id, event_type)
        return {"received": True, "processed": False}

    async with get_db() as session:
        if await subscription_repo.is_webhook_event_processed(session, event_id):
            logger.info("Skipping already processed Stripe event %s", event_id)
            return {"received": True, "processed": False}
        await sync_stripe_data_for_customer(session, customer_id)
        await subscription_repo.record_webhook_event(session, event_id, event_type, customer_id)
    return {"received": True, "processed": True}


async def get_organization_billing(
    session: AsyncSession, organization_external_id: str
) -> tuple[Organization, Optional[OrganizationSubscription]]:
    """Return an organization and its subscription row. Raises BillingError if unknown."""
    org = await org_repo.get_by_external_id(session, organization_external_id)
    if org is None:
        raise BillingError(f"Organization {organization_external_id} not found")
    return org, await subscription_repo.get_for_organization(session, org.id)
