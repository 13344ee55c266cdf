"""Unit tests for Stripe tools and the billing service."""
import hashlib
import hmac
import json
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from services import billing
from tools.workos_tools import WebhookVerificationError

STRIPE_MODULE = "tools.stripe_tools"
BILLING_MODULE = "services.billing"


@asynccontextmanager
async def _fake_db():
    yield "session"


def _subscription(**overrides):
    subscription = {
        "id": "sub_1",
        "status": "active",
        "cancel_at_period_end": False,
        "cancel_at": None,
        "trial_start": None,
        "trial_end": None,
        "default_payment_method": {"card": {"brand": "visa", "last4": "4242"}},
        "items": {
            "data": [
                {
                    "price": {"id": "price_pro_monthly", "recurring": {"interval": "month"}},
                    "current_period_start": 1767225600,
                    "current_period_end": 1769904000,
                }
            ]
        },
    }
    subscription.update(overrides)
    return subscription


class TestStripeTools:
    @patch(f"{STRIPE_MODULE}.stripe.checkout.Session.create")
    @patch(f"{STRIPE_MODULE}._configure")
    def test_create_checkout_session(self, mock_configure, mock_create):
        mock_create.return_value = SimpleNamespace(id="cs_1", url="https://checkout.stripe.com/c/cs_1")

        from tools.stripe_tools import create_checkout_session
        result = create_checkout_session(
            "cus_1", "price_pro_monthly", "https://app/ok", "https://app/cancel", {"organizationId": "o1"}
        )

        assert result == {"session_id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"}
        kwargs = mock_create.call_args.kwargs
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"] == [{"price": "price_pro_monthly", "quantity": 1}]
        assert kwargs["expires_at"] > time.time()

    @patch(f"{STRIPE_MODULE}.stripe.Subscription.list")
    @patch(f"{STRIPE_MODULE}._configure")
    def test_latest_subscription_none(self, mock_configure, mock_list):
        mock_list.return_value = SimpleNamespace(data=[])

        from tools.stripe_tools import get_latest_subscription
        assert get_latest_subscription("cus_1") == {"subscription": None}

    @patch(f"{STRIPE_MODULE}.stripe.Subscription.list")
    @patch(f"{STRIPE_MODULE}._configure")
    def test_latest_subscription_error(self, mock_configure, mock_list):
        mock_list.side_effect = RuntimeError("rate limited")

        from tools.stripe_tools import get_latest_subscription
        result = get_latest_subscription("cus_1")

        assert result["subscription"] is None
        assert result["error"] == "rate limited"

    @patch(f"{STRIPE_MODULE}.stripe.Customer.create")
    @patch(f"{STRIPE_MODULE}._configure")
    def test_create_customer(self, mock_configure, mock_create):
        mock_create.return_value = MagicMock(id="cus_new")

        from tools.stripe_tools import create_customer
        assert create_customer("a@b.c", "Acme", {"organizationId": "o1"}) == {"customer_id": "cus_new"}


class TestVerifyStripeWebhook:
    SECRET = "whsec_stripe_test"

    def _header(self, payload: bytes, secret: str) -> str:
        timestamp = int(time.time())
        digest = hmac.new(
            secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256
        ).hexdigest()
        return f"t={timestamp},v1={digest}"

    def test_valid_signature(self):
        from tools.stripe_tools import verify_stripe_webhook

        payload = json.dumps(
            {"id": "evt_1", "object": "event", "type": "invoice.paid", "data": {"object": {"customer": "cus_1"}}}
        ).encode()
        event = verify_stripe_webhook(payload, self._header(payload, self.SECRET), secret=self.SECRET)

        assert event["id"] == "evt_1"
        assert event["type"] == "invoice.paid"

    def test_bad_signature(self):
        from tools.stripe_tools import verify_stripe_webhook

        payload = b'{"id": "evt_1", "object": "event"}'
        with pytest.raises(WebhookVerificationError):
            verify_stripe_webhook(payload, self._header(payload, "whsec_other"), secret=self.SECRET)

    def test_missing_header(self):
        from tools.stripe_tools import verify_stripe_webhook

        with pytest.raises(WebhookVerificationError, match="Missing"):
            verify_stripe_webhook(b"{}", None, secret=self.SECRET)


class TestSubscriptionValues:
    def test_no_subscription(self):
        values = billing.subscription_values("cus_1", None)

        assert values["status"] == "none"
        assert values["tier"] == "personal"
        assert values["stripe_subscription_id"] is None

    @patch(f"{BILLING_MODULE}.stripe_prices", return_value={"price_pro_monthly": ("pro", "month")})
    def test_active_subscription(self, mock_prices):
        values = billing.subscription_values("cus_1", _subscription())

        assert values["tier"] == "pro"
        assert values["billing_interval"] == "month"
        assert values["status"] == "active"
        assert values["current_period_end"] == datetime.fromtimestamp(1769904000, tz=timezone.utc)
        assert values["payment_method_brand"] == "visa"
        assert values["payment_method_last4"] == "4242"
        assert values["cancel_at_period_end"] is False

    @patch(f"{BILLING_MODULE}.stripe_prices", return_value={})
    def test_scheduled_cancellation_and_unknown_price(self, mock_prices):
        values = billing.subscription_values(
            "cus_1", _subscription(cancel_at=1769904000, default_payment_method="pm_123")
        )

        assert values["tier"] == "personal"
        assert values["billing_interval"] == "month"
        assert values["cancel_at_period_end"] is True
        assert values["cancel_at"] is not None
        assert values["payment_method_brand"] is None


class TestSyncStripeData:
    @pytest.mark.asyncio
    @patch(f"{BILLING_MODULE}.subscription_repo.get_stripe_customer_by_customer_id", new_callable=AsyncMock)
    async def test_unknown_customer(self, mock_customer):
        mock_customer.return_value = None
        assert await billing.sync_stripe_data_for_customer("session", "cus_x") is None

    @pytest.mark.asyncio
    @patch(f"{BILLING_MODULE}.stripe_tools.get_latest_subscription", return_value={"subscription": None, "error": "boom"})
    @patch(f"{BILLING_MODULE}.subscription_repo.get_stripe_customer_by_customer_id", new_callable=AsyncMock)
    async def test_fetch_error_raises(self, mock_customer, mock_latest):
        mock_customer.return_value = SimpleNamespace(organization_id=uuid.uuid4())

        with pytest.raises(billing.BillingError):
            await billing.sync_stripe_data_for_customer("session", "cus_1")

    @pytest.mark.asyncio
    @patch(f"{BILLING_MODULE}.stripe_prices", return_value={"price_pro_monthly": ("pro", "month")})
    @patch(f"{BILLING_MODULE}.subscription_repo.clear_pending_checkout", new_callable=AsyncMock)
    @patch(f"{BILLING_MODULE}.subscription_repo.upsert", new_callable=AsyncMock)
    @patch(f"{BILLING_MODULE}.stripe_tools.get_latest_subscription")
    @patch(f"{BILLING_MODULE}.subscription_repo.get_stripe_customer_by_customer_id", new_callable=AsyncMock)
    async def test_stores_latest_subscription(
        self, mock_customer, mock_latest, mock_upsert, mock_clear, mock_prices
    ):
        org_id = uuid.uuid4()
        mock_customer.return_value = SimpleNamespace(organization_id=org_id)
        mock_latest.return_value = {"subscription": _subscription()}
        mock_upsert.return_value = SimpleNamespace(status="active", tier="pro")

        row = await billing.sync_stripe_data_for_customer("session", "cus_1")

        assert row.tier == "pro"
        session, organization_id, values = mock_upsert.await_args.args
        assert organization_id == org_id
        assert values["stripe_subscription_id"] == "sub_1"
        mock_clear.assert_awaited_once_with("session", org_id)


class TestHandleStripeEvent:
    def _event(self, event_type="invoice.paid", customer="cus_1"):
        return {"id": "evt_1", "type": event_type, "data": {"object": {"customer": customer}}}

    @pytest.mark.asyncio
    async def test_untracked_event(self):
        result = await billing.handle_stripe_event(self._event("charge.refunded"))
        assert result == {"received": True, "processed": False}

    @pytest.mark.asyncio
    async def test_event_without_customer(self):
        result = await billing.handle_stripe_event(self._event(customer=None))
        assert result == {"received": True, "processed": False}

    @pytest.mark.asyncio
    @patch(f"{BILLING_MODULE}.sync_stripe_data_for_customer", new_callable=AsyncMock)
    @patch(f"{BILLING_MODULE}.subscription_repo.is_webhook_event_processed", new_callable=AsyncMock, return_value=True)
    @patch(f"{BILLING_MODULE}.get_db", _fake_db)
    async def test_duplicate_event_skipped(self, mock_processed, mock_sync):
        result = await billing.handle_stripe_event(self._event())

        assert result["processed"] is False
        mock_sync.assert_not_called()

    @pytest.mark.asyncio
    @patch(f"{BILLING_MODULE}.subscription_repo.record_webhook_event", new_callable=AsyncMock)
    @patch(f"{BILLING_MODULE}.sync_stripe_data_for_customer", new_callable=AsyncMock)
    @patch(f"{BILLING_MODULE}.subscription_repo.is_webhook_event_processed", new_callable=AsyncMock, return_value=False)
    @patch(f"{BILLING_MODULE}.get_db", _fake_db)
    async def test_syncs_then_records(self, mock_processed, mock_sync, mock_record):
        event = self._event("customer.subscription.updated", customer={"id": "cus_9"})

        result = await billing.handle_stripe_event(event)

        assert result == {"received": True, "processed": True}
        mock_sync.assert_awaited_once_with("session", "cus_9")
        mock_record.assert_awaited_once_with("session", "evt_1", "customer.subscription.updated", "cus_9")

    @pytest.mark.asyncio
    @patch(f"{BILLING_MODULE}.subscription_repo.record_webhook_event", new_callable=AsyncMock)
    @patch(f"{BILLING_MODULE}.sync_stripe_data_for_customer", new_callable=AsyncMock)
    @patch(f"{BILLING_MODULE}.subscription_repo.is_webhook_event_processed", new_callable=AsyncMock, return_value=False)
    @patch(f"{BILLING_MODULE}.get_db", _fake_db)
    async def test_sync_failure_leaves_event_unrecorded(self, mock_processed, mock_sync, mock_record):
        mock_sync.side_effect = billing.BillingError("stripe down")

        with pytest.raises(billing.BillingError):
            await billing.handle_stripe_event(self._event())

        mock_record.assert_not_called()
