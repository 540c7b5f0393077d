"""Stripe payment gateway adapter.

Translates PaymentIntents, refunds and webhook events into the gateway records
the payment core consumes. Stripe API failures become ``failed`` responses so
the attempt still lands in the payment's transaction trail.
"""

import logging
from decimal import Decimal
from typing import Any
from uuid import UUID

import stripe
from pydantic import BaseModel, ConfigDict

from src.core.config import Settings, get_settings
from src.core.errors import ValidationError
from src.core.stripe import get_stripe
from src.models.common import ZERO_DECIMAL_CURRENCIES, quantize_money
from src.models.payment import GatewayResponse, Payment, RefundTransaction

logger = logging.getLogger(__name__)

# PaymentIntent.status -> gateway status understood by PaymentStatus.from_gateway
INTENT_STATUS_MAP: dict[str, str] = {
    "requires_payment_method": "pending",
    "requires_confirmation": "pending",
    "requires_action": "pending",
    "processing": "processing",
    "requires_capture": "authorized",
    "succeeded": "succeeded",
    "canceled": "canceled",
}

PAYMENT_EVENT_STATUS: dict[str, str] = {
    "payment_intent.processing": "processing",
    "payment_intent.amount_capturable_updated": "authorized",
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "canceled",
}

REFUND_EVENTS = frozenset({"refund.created", "refund.updated", "refund.failed", "charge.refund.updated"})


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Stripe amounts are integers in the currency's smallest unit."""
    amount = quantize_money(amount, currency)
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount)
    return int(amount * 100)


def from_minor_units(amount: int, currency: str) -> Decimal:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return Decimal(amount) / 100


class RefundOutcome(BaseModel):
    """Gateway view of one refund."""

    model_config = ConfigDict(frozen=True)

    refund_id: UUID | None = None
    gateway_refund_id: str | None = None
    status: str

    @property
    def is_settled(self) -> bool:
        return self.status in ("succeeded", "failed", "canceled")

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class StripeGatewayService:
    """Service for talking to Stripe on behalf of the payment core."""

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize gateway with the configured Stripe module."""
        self.stripe = get_stripe()
        self.settings = settings or get_settings()

    def _require_configured(self) -> None:
        if not self.settings.stripe_secret_key:
            raise ValueError("Stripe is not configured. Please set STRIPE_SECRET_KEY environment variable.")

    async def create_payment_intent(
        self,
        payment: Payment,
        customer_email: str | None = None,
    ) -> GatewayResponse:
        """Create a PaymentIntent for a payment.

        Args:
            payment: The PENDING payment to collect.
            customer_email: Optional receipt address.

        Returns:
            GatewayResponse: The intent's status, or ``failed`` if Stripe rejected the call.
        """
        self._require_configured()
        params: dict[str, Any] = {
            "amount": to_minor_units(payment.amount, payment.currency),
            "currency": payment.currency.lower(),
            "metadata": {"payment_id": str(payment.id), "order_id": str(payment.order_id)},
            "idempotency_key": f"payment-{payment.id}",
        }
        if customer_email:
            params["receipt_email"] = customer_email

        try:
            intent = self.stripe.PaymentIntent.create(**params)
        except stripe.error.StripeError as e:
            logger.error("Stripe error creating payment intent for payment %s: %s", payment.id, str(e))
            return self._failed_response(e)

        logger.info("Created payment intent %s for payment %s", intent["id"], payment.id)
        return self.from_payment_intent(intent, payment.currency)

    async def create_refund(
        self,
        refund: RefundTransaction,
        gateway_transaction_id: str,
        currency: str,
    ) -> RefundOutcome:
        """Ask Stripe to refund part or all of a captured PaymentIntent."""
        self._require_configured()
        try:
            result = self.stripe.Refund.create(
                payment_intent=gateway_transaction_id,
                amount=to_minor_units(refund.amount, currency),
                metadata={"refund_id": str(refund.id), "payment_id": str(refund.payment_id)},
                idempotency_key=f"refund-{refund.id}",
            )
        except stripe.error.StripeError as e:
            logger.error("Stripe error creating refund %s: %s", refund.id, str(e))
            return RefundOutcome(refund_id=refund.id, status="failed")

        logger.info("Created Stripe refund %s for refund %s (%s)", result["id"], refund.id, result["status"])
        return RefundOutcome(refund_id=refund.id, gateway_refund_id=result["id"], status=result["status"])

    def from_payment_intent(self, intent: Any, currency: str | None = None) -> GatewayResponse:
        """Translate a PaymentIntent object or dict into a gateway response."""
        raw_status = intent["status"]
        currency = currency or intent.get("currency", self.settings.default_currency)
        amount_minor = intent.get("amount_received") or intent.get("amount")
        last_error = intent.get("last_payment_error") or {}
        return GatewayResponse(
            status=INTENT_STATUS_MAP.get(raw_status, raw_status),
            gateway_transaction_id=intent["id"],
            response_code=last_error.get("code") or raw_status,
            amount=from_minor_units(amount_minor, currency) if amount_minor is not None else None,
            raw_payload={"id": intent["id"], "status": raw_status, "amount": intent.get("amount")},
        )

    def from_webhook_event(self, event: dict[str, Any]) -> tuple[UUID, GatewayResponse] | None:
        """Map a ``payment_intent.*`` event to the payment it concerns.

        Returns:
            tuple | None: Payment id and gateway response, or None for events
            that carry no payment status.
        """
        status = PAYMENT_EVENT_STATUS.get(event.get("type", ""))
        if status is None:
            return None

        intent = event["data"]["object"]
        payment_id = (intent.get("metadata") or {}).get("payment_id")
        if not payment_id:
            logger.warning("Webhook missing payment_id in metadata: %s", intent.get("id"))
            return None

        response = self.from_payment_intent(intent)
        return UUID(payment_id), response.model_copy(update={"status": status, "response_code": event["type"]})

    def refund_outcome_from_event(self, event: dict[str, Any]) -> RefundOutcome | None:
        """Map a refund webhook event to the refund it concerns."""
        if event.get("type") not in REFUND_EVENTS:
            return None
        refund = event["data"]["object"]
        refund_id = (refund.get("metadata") or {}).get("refund_id")
        if not refund_id:
            logger.warning("Refund webhook missing refund_id in metadata: %s", refund.get("id"))
            return None
        return RefundOutcome(refund_id=UUID(refund_id), gateway_refund_id=refund.get("id"), status=refund["status"])

    def verify_webhook_signature(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify Stripe webhook signature and return event.

        Args:
            payload: Raw webhook payload bytes.
            sig_header: Stripe-Signature header value.

        Returns:
            dict: Verified Stripe event.

        Raises:
            ValueError: If Stripe webhooks are not configured.
            ValidationError: If the signature is invalid.
        """
        if not self.settings.stripe_webhook_secret:
            raise ValueError("Stripe webhook secret is not configured. Please set STRIPE_WEBHOOK_SECRET environment variable.")

        try:
            return self.stripe.Webhook.construct_event(payload, sig_header, self.settings.stripe_webhook_secret)
        except stripe.error.SignatureVerificationError as e:
            logger.warning("Invalid webhook signature: %s", str(e))
            raise ValidationError("Invalid webhook signature") from e

    @staticmethod
    def _failed_response(error: stripe.error.StripeError) -> GatewayResponse:
        return GatewayResponse(
            status="failed",
            response_code=getattr(error, "code", None) or type(error).__name__,
            raw_payload={"error": str(error)},
        )
