"""
Tests for Stripe Billing
========================

Checkout sessions, webhook verification and event routing.
"""

import time
from unittest.mock import MagicMock, patch

import pytest
import stripe

from vps_control.billing import VPSBilling
from vps_control.catalog import PlanCatalog
from vps_control.config import StripeConfig
from vps_control.errors import (
    NotFoundError,
    PaymentProviderError,
    ValidationError,
    WebhookSignatureError,
)
from vps_control.jobs import QueueName
from vps_control.models import OrderStatus, SubscriptionStatus

from conftest import make_order, sign_payload, stripe_event


def signed(payload: str, **kwargs):
    return payload.encode("utf-8"), sign_payload(payload, **kwargs)


class TestWebhookVerification:
    """Signature checks happen before any state change."""

    def test_valid_signature(self, plane):
        body, header = signed(stripe_event("invoice.created", {"id": "in_1"}))

        event = plane.billing.verify_webhook(body, header)

        assert event["type"] == "invoice.created"

    def test_wrong_secret(self, plane):
        body, header = signed(stripe_event("invoice.created", {}), secret="whsec_other")

        with pytest.raises(WebhookSignatureError):
            plane.billing.verify_webhook(body, header)

    def test_missing_header(self, plane):
        with pytest.raises(WebhookSignatureError):
            plane.billing.verify_webhook(b"{}", None)

    def test_stale_timestamp(self, plane):
        body, header = signed(stripe_event("invoice.created", {}), timestamp=int(time.time()) - 3600)

        with pytest.raises(WebhookSignatureError):
            plane.billing.verify_webhook(body, header)

    def test_tampered_body(self, plane):
        body, header = signed(stripe_event("invoice.created", {"amount": 100}))

        with pytest.raises(WebhookSignatureError):
            plane.billing.verify_webhook(body.replace(b"100", b"999"), header)

    def test_secret_not_configured(self, store):
        billing = VPSBilling(StripeConfig(), store, MagicMock(), MagicMock(), MagicMock(), MagicMock())
        body, header = signed(stripe_event("invoice.created", {}))

        with pytest.raises(WebhookSignatureError):
            billing.verify_webhook(body, header)

    def test_not_an_event(self, plane):
        body, header = signed('{"id": "evt_1"}')

        with pytest.raises(ValidationError):
            plane.billing.verify_webhook(body, header)

    @pytest.mark.asyncio
    async def test_unhandled_event_acknowledged(self, plane, store):
        body, header = signed(stripe_event("customer.created", {"id": "cus_1"}, event_id="evt_9"))

        result = await plane.billing.process_webhook(body, header)

        assert result == {"event_id": "evt_9", "event_type": "customer.created", "handled": False}
        assert await store.list_orders() == []


class TestCheckoutCompleted:
    """checkout.session.completed marks the order paid and queues provisioning."""

    @pytest.mark.asyncio
    async def test_queues_provision_job(self, plane, store, stripe_checkout_session):
        order = await make_order(store, plan_id="vps-standard")
        body, header = signed(stripe_event("checkout.session.completed", stripe_checkout_session(order.id)))

        result = await plane.billing.process_webhook(body, header)

        assert result["order_id"] == order.id
        assert result["handled"] is True
        job = plane.dispatcher.get_job(result["job_id"])
        assert job.queue == QueueName.PROVISION
        assert job.payload.order_id == order.id
        assert (job.payload.cpu, job.payload.ram_mb, job.payload.disk_gb) == (2, 4096, 80)

        saved = await store.get_order(order.id)
        assert saved.stripe_session_id == "cs_test_123"
        assert saved.stripe_payment_intent == "pi_test_123"

        subscription = await store.get_subscription("cust-1")
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.stripe_customer_id == "cus_test_123"
        assert subscription.stripe_subscription_id == "sub_test_123"

    @pytest.mark.asyncio
    async def test_replay_before_provisioning_same_job(self, plane, store, stripe_checkout_session):
        order = await make_order(store)
        body, header = signed(stripe_event("checkout.session.completed", stripe_checkout_session(order.id)))

        first = await plane.billing.process_webhook(body, header)
        second = await plane.billing.process_webhook(body, header)

        assert first["job_id"] == second["job_id"]
        assert plane.dispatcher.stats()["provision"]["pending"] == 1

    @pytest.mark.asyncio
    async def test_replay_after_provisioning_ignored(self, running_plane, store, hypervisor, stripe_checkout_session):
        order = await make_order(store)
        body, header = signed(stripe_event("checkout.session.completed", stripe_checkout_session(order.id)))

        await running_plane.billing.process_webhook(body, header)
        await running_plane.dispatcher.drain()
        replay = await running_plane.billing.process_webhook(body, header)
        await running_plane.dispatcher.drain()

        assert replay["duplicate"] is True
        assert hypervisor.count("clone") == 1
        assert len(await store.list_instances()) == 1
        assert (await store.get_order(order.id)).status == OrderStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_order_created_from_metadata(self, plane, store, stripe_checkout_session):
        body, header = signed(stripe_event("checkout.session.completed", stripe_checkout_session()))

        result = await plane.billing.process_webhook(body, header)

        orders = await store.list_orders("cust-1")
        assert len(orders) == 1
        assert orders[0].id == result["order_id"]
        assert orders[0].amount_usd == 12.0

    @pytest.mark.asyncio
    async def test_missing_metadata_ignored(self, plane, store):
        body, header = signed(stripe_event("checkout.session.completed", {"id": "cs_x", "metadata": {}}))

        result = await plane.billing.process_webhook(body, header)

        assert result["handled"] is False
        assert await store.list_orders() == []


class TestSubscriptionEvents:
    """Invoice and subscription events reach the lifecycle manager."""

    async def _checkout(self, plane, store, stripe_checkout_session):
        order = await make_order(store)
        body, header = signed(stripe_event("checkout.session.completed", stripe_checkout_session(order.id)))
        await plane.billing.process_webhook(body, header)

    @pytest.mark.asyncio
    async def test_payment_failed_by_stripe_customer(self, plane, store, clock, stripe_checkout_session):
        await self._checkout(plane, store, stripe_checkout_session)
        body, header = signed(stripe_event("invoice.payment_failed", {"id": "in_1", "customer": "cus_test_123"}))

        result = await plane.billing.process_webhook(body, header)

        assert result["customer_id"] == "cust-1"
        assert result["status"] == "past_due"
        subscription = await store.get_subscription("cust-1")
        assert subscription.status == SubscriptionStatus.PAST_DUE
        assert subscription.suspend_after is not None

    @pytest.mark.asyncio
    async def test_payment_failed_by_subscription_metadata(self, plane, store):
        invoice = {
            "id": "in_2",
            "customer": "cus_unknown",
            "subscription_details": {"metadata": {"customer_id": "cust-7"}},
        }
        body, header = signed(stripe_event("invoice.payment_failed", invoice))

        result = await plane.billing.process_webhook(body, header)

        assert result["customer_id"] == "cust-7"

    @pytest.mark.asyncio
    async def test_payment_failed_unknown_customer(self, plane):
        body, header = signed(stripe_event("invoice.payment_failed", {"id": "in_3", "customer": "cus_nobody"}))

        result = await plane.billing.process_webhook(body, header)

        assert result["handled"] is False

    @pytest.mark.asyncio
    async def test_subscription_updated_syncs_period(self, plane, store, stripe_checkout_session):
        await self._checkout(plane, store, stripe_checkout_session)
        update = {
            "id": "sub_test_123",
            "customer": "cus_test_123",
            "status": "active",
            "current_period_start": 1767225600,
            "current_period_end": 1769904000,
            "cancel_at_period_end": True,
        }
        body, header = signed(stripe_event("customer.subscription.updated", update))

        await plane.billing.process_webhook(body, header)

        subscription = await store.get_subscription("cust-1")
        assert subscription.current_period_end.year == 2026
        assert subscription.cancel_at_period_end is True

    @pytest.mark.asyncio
    async def test_subscription_deleted_cancels(self, plane, store, stripe_checkout_session):
        await self._checkout(plane, store, stripe_checkout_session)
        body, header = signed(stripe_event(
            "customer.subscription.deleted", {"id": "sub_test_123", "customer": "cus_test_123"}
        ))

        result = await plane.billing.process_webhook(body, header)

        assert result["customer_id"] == "cust-1"
        assert (await store.get_subscription("cust-1")).status == SubscriptionStatus.CANCELED


class TestCreateCheckout:
    """Checkout session creation."""

    @pytest.mark.asyncio
    async def test_creates_session_and_order(self, plane, store):
        session = MagicMock(id="cs_live_1", url="https://checkout.stripe.com/c/pay/cs_live_1")

        with patch("stripe.checkout.Session.create", return_value=session) as mock_create:
            result = await plane.billing.create_checkout_session("cust-1", "vps-standard", "dev@example.com")

        assert result["session_id"] == "cs_live_1"
        assert result["checkout_url"].startswith("https://checkout.stripe.com")
        assert result["price_monthly"] == 12.0

        params = mock_create.call_args.kwargs
        assert params["mode"] == "subscription"
        assert params["line_items"] == [{"price": "price_vps_standard_monthly", "quantity": 1}]
        assert params["metadata"]["order_id"] == result["order_id"]
        assert params["customer_email"] == "dev@example.com"
        assert "{CHECKOUT_SESSION_ID}" in params["success_url"]

        order = await store.get_order(result["order_id"])
        assert order.status == OrderStatus.PENDING
        assert order.stripe_session_id == "cs_live_1"

    @pytest.mark.asyncio
    async def test_stripe_error(self, plane, store):
        with patch("stripe.checkout.Session.create", side_effect=stripe.InvalidRequestError("No such price", "price")):
            with pytest.raises(PaymentProviderError):
                await plane.billing.create_checkout_session("cust-1", "vps-standard")

        assert await store.list_orders() == []

    @pytest.mark.asyncio
    async def test_unknown_plan(self, plane):
        with pytest.raises(NotFoundError):
            await plane.billing.create_checkout_session("cust-1", "vps-mega")

    @pytest.mark.asyncio
    async def test_not_configured(self, store):
        billing = VPSBilling(StripeConfig(), store, PlanCatalog(), MagicMock(), MagicMock(), MagicMock())

        with pytest.raises(ValidationError):
            await billing.create_checkout_session("cust-1", "vps-standard")
