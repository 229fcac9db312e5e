# trademarket/gateway.py
"""Stripe adapter.

Charges are Checkout Sessions in ``payment`` mode with a Connect
destination and an application fee. Settlement arrives later as webhook
events which ``parse_event`` verifies and normalises into ``GatewayEvent``.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

from .config import Settings
from .errors import GatewayError
from .logging_config import get_logger
from .models import GatewayEvent

logger = get_logger("trademarket.gateway")

SUCCESS_EVENTS = {"payment_intent.succeeded"}
FAILURE_EVENTS = {
    "payment_intent.payment_failed": "payment_failed",
    "checkout.session.expired": "checkout_expired",
}


class WebhookSignatureError(Exception):
    pass


@dataclass(frozen=True)
class GatewayCheckout:
    session_id: str
    url: str


class PaymentGateway:
    """What the orchestrator needs from a payment provider."""

    def create_checkout(
        self,
        *,
        amount_cents: int,
        fee_cents: int,
        reference: str,
        destination_account: str,
        description: str,
        idempotency_key: str,
        customer_email: Optional[str] = None,
    ) -> GatewayCheckout:
        raise NotImplementedError

    def payouts_enabled(self, account_id: str) -> bool:
        raise NotImplementedError

    def refund(self, gateway_reference: str, idempotency_key: str) -> str:
        raise NotImplementedError

    def parse_event(self, payload: bytes, signature: Optional[str]) -> Optional[GatewayEvent]:
        raise NotImplementedError


def normalize_event(event: Dict[str, Any]) -> Optional[GatewayEvent]:
    """Map a raw Stripe event to a settlement outcome, or None if irrelevant."""
    etype = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    reference = (obj.get("metadata") or {}).get("reference")

    if etype in SUCCESS_EVENTS:
        return GatewayEvent(
            event_id=event["id"],
            reference=reference,
            outcome="succeeded",
            gateway_reference=obj.get("id"),
        )
    if etype in FAILURE_EVENTS:
        return GatewayEvent(
            event_id=event["id"],
            reference=reference,
            outcome="failed",
            gateway_reference=obj.get("id"),
            failure_code=FAILURE_EVENTS[etype],
        )
    if etype == "checkout.session.completed":
        # One-off payments settle on payment_intent.succeeded
        logger.info("checkout.session.completed for %s, waiting for payment_intent", obj.get("id"))
    else:
        logger.info("Unhandled Stripe event type: %s", etype)
    return None


class StripeGateway(PaymentGateway):
    def __init__(self, settings: Settings):
        if not settings.stripe_secret_key:
            raise RuntimeError("STRIPE_SECRET_KEY is not set")
        stripe.api_key = settings.stripe_secret_key
        self._settings = settings

    def create_checkout(
        self,
        *,
        amount_cents: int,
        fee_cents: int,
        reference: str,
        destination_account: str,
        description: str,
        idempotency_key: str,
        customer_email: Optional[str] = None,
    ) -> GatewayCheckout:
        currency = self._settings.stripe_currency
        metadata = {"reference": reference}
        try:
            sess = stripe.checkout.Session.create(
                mode="payment",
                line_items=[{
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": description},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }],
                payment_intent_data={
                    "capture_method": "automatic",
                    "transfer_data": {"destination": destination_account},
                    "application_fee_amount": fee_cents,
                    "metadata": metadata,
                },
                metadata=metadata,
                customer_email=customer_email,
                success_url=self._settings.success_url,
                cancel_url=self._settings.cancel_url,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error("Stripe Checkout create failed for %s: %s", reference, e)
            raise GatewayError("Payment provider unavailable, please try again")
        return GatewayCheckout(session_id=sess.id, url=sess.url)

    def payouts_enabled(self, account_id: str) -> bool:
        try:
            account = stripe.Account.retrieve(account_id)
        except stripe.StripeError as e:
            logger.error("Stripe account lookup failed for %s: %s", account_id, e)
            raise GatewayError("Payment provider unavailable, please try again")
        return bool(account.charges_enabled)

    def refund(self, gateway_reference: str, idempotency_key: str) -> str:
        try:
            refund = stripe.Refund.create(
                payment_intent=gateway_reference,
                reverse_transfer=True,
                refund_application_fee=True,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error("Stripe refund failed for %s: %s", gateway_reference, e)
            raise GatewayError("Refund failed at the payment provider, please try again")
        return refund.id

    def parse_event(self, payload: bytes, signature: Optional[str]) -> Optional[GatewayEvent]:
        secret = self._settings.stripe_webhook_secret
        if not secret:
            raise RuntimeError("STRIPE_WEBHOOK_SECRET is not set")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise WebhookSignatureError(str(e))
        return normalize_event(json.loads(payload))
