"""
VPS Stripe Billing Integration
==============================

Stripe checkout sessions and webhook processing.

Webhook events handled:
- checkout.session.completed       -> order paid, provision job queued
- invoice.payment_failed           -> grace period starts
- invoice.payment_succeeded        -> subscription active, suspended instances restarted
- customer.subscription.updated    -> status and period synced
- customer.subscription.deleted    -> subscription canceled, instances suspended

Any other event type is acknowledged and ignored. Handlers only update
local state and enqueue jobs; they never wait on the hypervisor.

Docs:
- Stripe Checkout: https://docs.stripe.com/payments/checkout
- Stripe Webhooks: https://docs.stripe.com/webhooks
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import stripe

from .catalog import PlanCatalog
from .config import StripeConfig
from .errors import PaymentProviderError, ValidationError, WebhookSignatureError
from .lifecycle import BillingLifecycleManager
from .models import Order, OrderStatus, SubscriptionStatus
from .provisioning import ProvisioningPipeline
from .store import StateStore

logger = logging.getLogger(__name__)


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


class VPSBilling:
    """
    Stripe billing for VPS orders.

    Handles:
    - Creating checkout sessions (one order per session)
    - Verifying and routing webhooks
    """

    def __init__(
        self,
        config: StripeConfig,
        store: StateStore,
        catalog: PlanCatalog,
        lifecycle: BillingLifecycleManager,
        pipeline: ProvisioningPipeline,
        dispatcher,
    ):
        self.config = config
        self.store = store
        self.catalog = catalog
        self.lifecycle = lifecycle
        self.pipeline = pipeline
        self.dispatcher = dispatcher

        if config.secret_key:
            stripe.api_key = config.secret_key

        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            "checkout.session.completed": self.handle_checkout_completed,
            "invoice.payment_failed": self.handle_payment_failed,
            "invoice.payment_succeeded": self.handle_payment_succeeded,
            "customer.subscription.updated": self.handle_subscription_updated,
            "customer.subscription.deleted": self.handle_subscription_deleted,
        }

    # =========================================
    # CHECKOUT
    # =========================================

    async def create_checkout_session(
        self,
        customer_id: str,
        plan_id: str,
        email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a pending order and a Stripe Checkout Session for it.

        Returns:
            Dict with order_id, session_id and checkout_url
        """
        plan = self.catalog.get(plan_id)
        if not self.config.secret_key:
            raise ValidationError("Billing is not configured")

        order = Order(customer_id=customer_id, plan_id=plan.id, amount_usd=plan.price_monthly_usd)
        metadata = {
            "order_id": order.id,
            "plan_id": plan.id,
            "customer_id": customer_id,
        }

        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": plan.stripe_price_id, "quantity": 1}],
            "success_url": f"{self.config.success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": self.config.cancel_url,
            "client_reference_id": order.id,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if email:
            params["customer_email"] = email

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout creation failed: {e}", extra={"customer_id": customer_id})
            raise PaymentProviderError(f"Could not create checkout session: {e.user_message or e}")

        order.stripe_session_id = session.id
        await self.store.save_order(order)

        logger.info(
            f"Checkout session {session.id} created for plan {plan.id}",
            extra={"order_id": order.id, "customer_id": customer_id},
        )
        return {
            "order_id": order.id,
            "session_id": session.id,
            "checkout_url": session.url,
            "plan_id": plan.id,
            "price_monthly": plan.price_monthly_usd,
        }

    # =========================================
    # WEBHOOKS
    # =========================================

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header and decode the event.

        Raises:
            WebhookSignatureError: missing secret, missing header or bad signature
        """
        if not self.config.webhook_secret:
            raise WebhookSignatureError("Webhook secret not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise WebhookSignatureError("Webhook payload is not valid UTF-8")

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                self.config.webhook_secret,
                self.config.signature_tolerance,
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid webhook signature: {e}")

        try:
            event = json.loads(body)
        except ValueError:
            raise ValidationError("Webhook payload is not valid JSON")
        if not isinstance(event, dict) or "type" not in event:
            raise ValidationError("Webhook payload is not a Stripe event")
        return event

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        event = self.verify_webhook(payload, signature)
        event_type = event["type"]
        obj = (event.get("data") or {}).get("object") or {}

        logger.info(f"Stripe webhook received: {event_type}")

        handler = self._handlers.get(event_type)
        if handler is None:
            return {"event_id": event.get("id"), "event_type": event_type, "handled": False}

        result = await handler(obj)
        result["event_id"] = event.get("id")
        result["event_type"] = event_type
        result.setdefault("handled", True)
        return result

    async def _resolve_customer(self, obj: Dict[str, Any]) -> Optional[str]:
        """Map a Stripe object back to our customer id."""
        stripe_customer = obj.get("customer")
        if stripe_customer:
            subscription = await self.store.get_subscription_by_stripe_customer(stripe_customer)
            if subscription is not None:
                return subscription.customer_id

        metadata = obj.get("metadata") or {}
        if metadata.get("customer_id"):
            return metadata["customer_id"]

        details = obj.get("subscription_details") or {}
        return (details.get("metadata") or {}).get("customer_id")

    async def handle_checkout_completed(self, session: Dict[str, Any]) -> Dict[str, Any]:
        metadata = session.get("metadata") or {}

        order = None
        if metadata.get("order_id"):
            order = await self.store.get_order(metadata["order_id"])
        if order is None and session.get("id"):
            order = await self.store.get_order_by_session(session["id"])

        if order is None:
            plan = self.catalog.find(metadata.get("plan_id", ""))
            customer_id = metadata.get("customer_id")
            if plan is None or not customer_id:
                logger.warning(f"Checkout {session.get('id')} has no usable order metadata, ignoring")
                return {"handled": False, "reason": "missing_metadata"}
            amount = session.get("amount_total")
            order = Order(
                customer_id=customer_id,
                plan_id=plan.id,
                amount_usd=amount / 100 if amount else plan.price_monthly_usd,
                currency=session.get("currency") or "usd",
            )

        log_extra = {"order_id": order.id, "customer_id": order.customer_id}
        if order.status != OrderStatus.PENDING:
            logger.info(f"Checkout replay for {order.status.value} order {order.id}, ignoring", extra=log_extra)
            return {"order_id": order.id, "duplicate": True}

        order.stripe_session_id = session.get("id") or order.stripe_session_id
        order.stripe_payment_intent = session.get("payment_intent") or order.stripe_payment_intent
        await self.store.save_order(order)

        await self.lifecycle.activate(
            order.customer_id,
            stripe_customer_id=session.get("customer"),
            stripe_subscription_id=session.get("subscription"),
        )

        job = await self.dispatcher.enqueue(self.pipeline.payload_for(order), idempotency_key=order.id)
        logger.info(f"Order {order.id} paid, provision job {job.id} queued", extra=log_extra)
        return {"order_id": order.id, "job_id": job.id}

    async def handle_payment_failed(self, invoice: Dict[str, Any]) -> Dict[str, Any]:
        customer_id = await self._resolve_customer(invoice)
        if customer_id is None:
            logger.warning(f"Payment failure for unknown Stripe customer {invoice.get('customer')}")
            return {"handled": False, "reason": "unknown_customer"}

        subscription = await self.lifecycle.handle_payment_failed(customer_id)
        return {
            "customer_id": customer_id,
            "status": subscription.status.value,
            "suspend_after": subscription.suspend_after.isoformat() if subscription.suspend_after else None,
        }

    async def handle_payment_succeeded(self, invoice: Dict[str, Any]) -> Dict[str, Any]:
        customer_id = await self._resolve_customer(invoice)
        if customer_id is None:
            logger.warning(f"Payment for unknown Stripe customer {invoice.get('customer')}")
            return {"handled": False, "reason": "unknown_customer"}

        result = await self.lifecycle.handle_payment_succeeded(customer_id)
        return {"customer_id": customer_id, **result}

    async def handle_subscription_updated(self, subscription: Dict[str, Any]) -> Dict[str, Any]:
        customer_id = await self._resolve_customer(subscription)
        if customer_id is None:
            return {"handled": False, "reason": "unknown_customer"}

        synced = await self.lifecycle.sync_subscription(
            customer_id,
            SubscriptionStatus.from_stripe(subscription.get("status", "")),
            current_period_start=_timestamp(subscription.get("current_period_start")),
            current_period_end=_timestamp(subscription.get("current_period_end")),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
            stripe_customer_id=subscription.get("customer"),
            stripe_subscription_id=subscription.get("id"),
        )
        return {"customer_id": customer_id, "status": synced.status.value}

    async def handle_subscription_deleted(self, subscription: Dict[str, Any]) -> Dict[str, Any]:
        customer_id = await self._resolve_customer(subscription)
        if customer_id is None:
            return {"handled": False, "reason": "unknown_customer"}

        result = await self.lifecycle.handle_subscription_deleted(customer_id)
        return {"customer_id": customer_id, **result}
