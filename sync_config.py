"""Runtime knobs for sync workflows, event processing, and billing.

Every value is read from the environment (a .env file is loaded on import)
with the defaults below.

Usage:
    from sync_config import sync_retry_config
    retry = sync_retry_config()
"""
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

# Identity-provider event types applied by the processor and requested by the poller
WORKOS_EVENT_TYPES = [
    "user.created",
    "user.updated",
    "user.deleted",
    "organization.created",
    "organization.updated",
    "organization.deleted",
    "organization_membership.created",
    "organization_membership.updated",
    "organization_membership.deleted",
    "organization_domain.verified",
    "organization_domain.verification_failed",
    "role.created",
    "role.updated",
    "role.deleted",
]

# Stripe events that trigger a subscription sync
STRIPE_EVENT_TYPES = [
    "checkout.session.completed",
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "customer.subscription.paused",
    "customer.subscription.resumed",
    "customer.subscription.pending_update_applied",
    "customer.subscription.pending_update_expired",
    "customer.subscription.trial_will_end",
    "invoice.paid",
    "invoice.payment_failed",
    "invoice.payment_action_required",
    "invoice.upcoming",
    "invoice.marked_uncollectible",
    "invoice.payment_succeeded",
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
]

EVENTS_PAGE_SIZE = 100
PROCESSED_EVENTS_BATCH_SIZE = 500
CHECKOUT_EXPIRY_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int
    initial_backoff_ms: int
    base: float

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before retrying after the given 1-based failed attempt."""
        return self.initial_backoff_ms * (self.base ** (attempt - 1)) / 1000.0


def sync_retry_config() -> RetryConfig:
    """Step retry policy for secondary-store writes."""
    return RetryConfig(
        max_attempts=int(os.environ.get("SYNC_MAX_ATTEMPTS", "5")),
        initial_backoff_ms=int(os.environ.get("SYNC_INITIAL_BACKOFF_MS", "100")),
        base=float(os.environ.get("SYNC_BACKOFF_BASE", "2")),
    )


def sync_max_parallelism() -> int:
    """Workflows allowed to run at once; the rest queue. Keep below the DB pool size."""
    return int(os.environ.get("SYNC_MAX_PARALLELISM", "4"))


def sync_lost_after_seconds() -> float:
    """Age after which a pending retry unknown to this process counts as lost.

    Must exceed the longest a workflow can run, queueing included, in any
    process sharing the database.
    """
    return float(os.environ.get("SYNC_LOST_AFTER_SECONDS", "900"))


def event_poll_interval_seconds() -> float:
    """Seconds between Events API polls. 0 disables the background poller."""
    return float(os.environ.get("EVENT_POLL_INTERVAL_SECONDS", "60"))


def event_cleanup_interval_seconds() -> float:
    """Seconds between processed-event cleanups. 0 disables the background job."""
    return float(os.environ.get("EVENT_CLEANUP_INTERVAL_SECONDS", str(24 * 60 * 60)))


def processed_event_retention_days() -> int:
    return int(os.environ.get("PROCESSED_EVENT_RETENTION_DAYS", "30"))


def admin_api_token() -> Optional[str]:
    """Bearer token for /admin routes. None disables the admin API."""
    return os.environ.get("ADMIN_API_TOKEN") or None


def _required(var: str) -> str:
    value = os.environ.get(var)
    if not value:
        raise RuntimeError(
            f"{var} environment variable is not set. "
            "Copy .env.example to .env and fill it in."
        )
    return value


def workos_api_key() -> str:
    return _required("WORKOS_API_KEY")


def workos_webhook_secret() -> str:
    return _required("WORKOS_WEBHOOK_SECRET")


def stripe_secret_key() -> str:
    return _required("STRIPE_SECRET_KEY")


def stripe_webhook_secret() -> str:
    return _required("STRIPE_WEBHOOK_SECRET")


def stripe_prices() -> dict[str, tuple[str, str]]:
    """Map configured Stripe price ids to (tier, billing interval)."""
    prices = {}
    for tier in ("personal", "pro", "enterprise"):
        for interval, suffix in (("month", "MONTHLY"), ("year", "YEARLY")):
            price_id = os.environ.get(f"STRIPE_PRICE_{tier.upper()}_{suffix}")
            if price_id:
                prices[price_id] = (tier, interval)
    return prices
