"""Stripe billing tools.

Thin wrappers over the stripe SDK. Like the WorkOS tools they return dicts
with an 'error' key instead of raising; verify_stripe_webhook raises
WebhookVerificationError.
"""
import logging
import time
from typing import Any, Dict, Optional

import stripe

import sync_config
from tools.workos_tools import WebhookVerificationError

logger = logging.getLogger(__name__)


def _configure() -> None:
    stripe.api_key = sync_config.stripe_secret_key()


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def create_customer(email: Optional[str], name: str, metadata: Dict[str, str]) -> Dict[str, Any]:
    """Create a Stripe customer.

    Returns:
        Dict with 'customer_id', or 'error'.
    """
    try:
        _configure()
        customer = stripe.Customer.create(email=email, name=name, metadata=metadata)
        return {"customer_id": customer.id}
    except Exception as exc:
        return {"customer_id": None, "error": str(exc)}


def create_checkout_session(
    customer_id: str,
    price_id: str,
    success_url: str,
    cancel_url: str,
    metadata: Dict[str, str],
    expires_in: int = sync_config.CHECKOUT_EXPIRY_SECONDS,
) -> Dict[str, Any]:
    """Create a hosted subscription checkout for an existing customer.

    Returns:
        Dict with 'session_id' and 'url', or 'error'.
    """
    try:
        _configure()
        session = stripe.checkout.Session.create(
            customer=customer_id,
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data={"metadata": metadata},
            expires_at=int(time.time()) + expires_in,
        )
        return {"session_id": session.id, "url": session.url}
    except Exception as exc:
        return {"session_id": None, "url": None, "error": str(exc)}


def create_billing_portal_session(customer_id: str, return_url: str) -> Dict[str, Any]:
    """Create a customer portal session.

    Returns:
        Dict with 'url', or 'error'.
    """
    try:
        _configure()
        session = stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)
        return {"url": session.url}
    except Exception as exc:
        return {"url": None, "error": str(exc)}


def get_latest_subscription(customer_id: str) -> Dict[str, Any]:
    """Fetch the customer's most recent subscription with its payment method.

    Returns:
        Dict with 'subscription' (a plain dict, or None when the customer has
        none), or 'error'.
    """
    try:
        _configure()
        subscriptions = stripe.Subscription.list(
            customer=customer_id,
            status="all",
            limit=1,
            expand=["data.default_payment_method"],
        )
        data = subscriptions.data
        return {"subscription": _as_dict(data[0]) if data else None}
    except Exception as exc:
        return {"subscription": None, "error": str(exc)}


def verify_stripe_webhook(
    body: bytes, signature_header: Optional[str], secret: Optional[str] = None
) -> Dict[str, Any]:
    """Verify a Stripe-Signature header and return the event as a dict."""
    if secret is None:
        secret = sync_config.stripe_webhook_secret()
    if not signature_header:
        raise WebhookVerificationError("Missing signature header")
    try:
        event = stripe.Webhook.construct_event(body, signature_header, secret)
    except ValueError:
        raise WebhookVerificationError("Body is not valid JSON")
    except stripe.SignatureVerificationError as exc:
        raise WebhookVerificationError(str(exc))
    return _as_dict(event)
