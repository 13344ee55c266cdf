from .workos_tools import (
    WebhookVerificationError,
    list_events, list_user_sessions, revoke_user_sessions, delete_user,
    verify_webhook,
)
from .stripe_tools import (
    create_customer, create_checkout_session, create_billing_portal_session,
    get_latest_subscription, verify_stripe_webhook,
)

__all__ = [
    "WebhookVerificationError",
    "list_events", "list_user_sessions", "revoke_user_sessions", "delete_user",
    "verify_webhook",
    "create_customer", "create_checkout_session", "create_billing_portal_session",
    "get_latest_subscription", "verify_stripe_webhook",
]
