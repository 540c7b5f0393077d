"""Checkout orchestration across the order, coupon and payment aggregates."""

import logging
from decimal import Decimal
from typing import Any
from uuid import UUID

from src.core.errors import InvalidTransitionError, PaymentNotCapturedError, ValidationError
from src.models.order import Order, OrderItem, OrderStatus, items_subtotal
from src.models.payment import GatewayResponse, Payment, PaymentStatus, RefundStatus, RefundTransaction
from src.schemas.order import CreateOrderRequest, OrderItemRequest
from src.services.catalog_service import ProductCatalog
from src.services.coupon_service import CouponService
from src.services.order_service import OrderService
from src.services.payment_service import PaymentService
from src.services.stripe_gateway import StripeGatewayService

logger = logging.getLogger(__name__)


class CheckoutService:
    """Service for placing, paying, cancelling and refunding orders.

    No distributed transaction spans the aggregates: each step is persisted on
    its own and later steps compensate earlier ones. An order whose payment
    never settles stays PENDING, where it can be paid again or cancelled.
    """

    def __init__(
        self,
        orders: OrderService,
        payments: PaymentService,
        coupons: CouponService,
        catalog: ProductCatalog,
        gateway: StripeGatewayService | None = None,
    ) -> None:
        self.orders = orders
        self.payments = payments
        self.coupons = coupons
        self.catalog = catalog
        self.gateway = gateway

    async def price_items(self, requested: list[OrderItemRequest]) -> list[OrderItem]:
        """Snapshot current catalog prices into order items.

        Raises:
            ValidationError: A product is unknown or no longer sold.
        """
        items = []
        for index, line in enumerate(requested):
            product = await self.catalog.get_snapshot(line.product_id, line.variant_id)
            if product is None or not product.is_active:
                raise ValidationError(
                    f"Product {line.product_id} is not available",
                    details=[{"loc": ["items", index, "product_id"], "msg": "product not available", "type": "not_found"}],
                )
            items.append(
                OrderItem(
                    product_id=product.product_id,
                    variant_id=product.variant_id,
                    sku=product.sku,
                    product_name=product.product_name,
                    variant_name=product.variant_name,
                    quantity=line.quantity,
                    unit_price=product.unit_price,
                )
            )
        return items

    async def place_order(self, user_id: str, request: CreateOrderRequest) -> Order:
        """Price the cart, redeem the coupon and persist a PENDING order.

        The coupon use is given back if the order cannot be stored.

        Raises:
            ValidationError: Unknown products, shipping method or short stock.
            InvalidCouponError: The coupon cannot be used for this cart.
            NotFoundError: Unknown coupon code.
        """
        items = await self.price_items(request.items)
        subtotal = sum((item.line_total for item in items), Decimal("0"))
        currency = self.orders.settings.default_currency

        discount = Decimal("0")
        if request.coupon_code:
            _, discount = await self.coupons.redeem(request.coupon_code, subtotal, currency)

        try:
            return await self.orders.create(
                user_id=user_id,
                items=items,
                shipping_address=request.shipping_address.to_address(),
                payment_method=request.payment_method,
                shipping_method=request.shipping_method,
                discount=discount,
                coupon_code=request.coupon_code,
                note=request.note,
                customer_email=request.customer_email,
                currency=currency,
            )
        except Exception:
            if request.coupon_code:
                logger.warning("Order creation failed; returning coupon %s usage", request.coupon_code)
                await self.coupons.revert_usage(request.coupon_code)
            raise

    async def update_order_items(
        self,
        order_id: UUID,
        requested: list[OrderItemRequest],
        actor_id: str | None = None,
    ) -> Order:
        """Replace the cart of an unpaid PENDING order at current catalog prices.

        The order's coupon discount is worked out again for the new subtotal. A
        coupon that no longer applies is dropped and its use given back.

        Raises:
            ValidationError: No items, unknown products or short stock.
            OrderLockedError: The order is past PENDING.
            PaymentConflictError: A payment for the order is under way or done.
        """
        if not requested:
            raise ValidationError("An order must keep at least one item")
        items = await self.price_items(requested)
        subtotal = items_subtotal(items)

        async with self.payments.no_active_payment(order_id):
            order = await self.orders.get_order(order_id)
            discount = Decimal("0")
            coupon_code = None
            if order.coupon_code:
                new_discount = await self.coupons.rediscount(order.coupon_code, subtotal, order.currency)
                if new_discount is not None:
                    discount, coupon_code = new_discount, order.coupon_code
            updated = await self.orders.update_items(
                order_id, items, discount=discount, coupon_code=coupon_code, actor_id=actor_id
            )

        if order.coupon_code and updated.coupon_code is None:
            logger.info("Coupon %s dropped from order %s after its items changed", order.coupon_code, order.order_number)
            await self._give_back_coupon(order.coupon_code, order)
        return updated

    async def start_payment(self, order_id: UUID) -> Payment:
        """Open a payment for an order and, for online methods, a Stripe intent."""
        order = await self.orders.get_order(order_id)
        payment = await self.payments.create_payment(order, reload=self.orders.get_order)
        order = await self.orders.record_payment_status(order.id, payment.status)

        if self.gateway and order.payment_method.is_online:
            response = await self.gateway.create_payment_intent(payment, order.customer_email)
            payment = await self.handle_gateway_response(payment.id, response)
        return payment

    async def handle_gateway_response(self, payment_id: UUID, response: GatewayResponse) -> Payment:
        """Record a gateway round-trip and move the order along with it.

        A captured payment confirms a PENDING order. Money captured for an order
        that was cancelled in the meantime is refunded straight away.
        """
        payment = await self.payments.record_gateway_response(payment_id, response)
        order = await self.orders.record_payment_status(payment.order_id, payment.status)

        if payment.status == PaymentStatus.CAPTURED:
            if order.status == OrderStatus.PENDING:
                await self.orders.transition(order.id, OrderStatus.CONFIRMED)
            elif order.status == OrderStatus.CANCELLED:
                logger.warning("Payment %s captured for cancelled order %s; refunding", payment.id, order.order_number)
                await self._refund_captured(order, "order cancelled before capture")
        elif payment.status == PaymentStatus.FAILED:
            logger.info("Payment %s failed; order %s stays %s", payment.id, order.order_number, order.status.value)
        return payment

    async def cancel_order(self, order_id: UUID, reason: str | None = None, actor_id: str | None = None) -> Order:
        """Cancel an order, give back its coupon use and refund captured money."""
        order = await self.orders.cancel(order_id, reason=reason, actor_id=actor_id)

        if order.coupon_code:
            await self._give_back_coupon(order.coupon_code, order)

        await self._refund_captured(order, reason or "order cancelled")
        return await self.orders.get_order(order.id)

    async def refund_order(self, order_id: UUID, reason: str | None = None, actor_id: str | None = None) -> list[RefundTransaction]:
        """Refund a shipped or delivered order in full and mark it REFUNDED.

        Raises:
            InvalidTransitionError: The order cannot be refunded from its status.
            PaymentNotCapturedError: No money was captured for the order.
        """
        order = await self.orders.get_order(order_id)
        if not order.status.can_transition_to(OrderStatus.REFUNDED):
            raise InvalidTransitionError("Order", order.status, OrderStatus.REFUNDED)

        refunds = await self._refund_captured(order, reason or "order refunded")
        if not refunds:
            raise PaymentNotCapturedError(f"Order {order.order_number} has no captured payment to refund")

        await self.orders.transition(order.id, OrderStatus.REFUNDED, reason=reason, actor_id=actor_id)
        return refunds

    async def confirm_refund(self, refund_id: UUID, success: bool, gateway_refund_id: str | None = None) -> Payment:
        _, payment = await self.payments.confirm_refund(refund_id, success, gateway_refund_id)
        await self.orders.record_payment_status(payment.order_id, payment.status)
        return payment

    async def handle_stripe_webhook(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify a Stripe webhook and apply the payment or refund update it carries.

        Returns:
            dict: What was done, for the webhook response body.
        """
        if self.gateway is None:
            raise ValueError("Stripe gateway is not configured")
        event = self.gateway.verify_webhook_signature(payload, sig_header)

        mapped = self.gateway.from_webhook_event(event)
        if mapped is not None:
            payment_id, response = mapped
            payment = await self.handle_gateway_response(payment_id, response)
            return {"handled": True, "payment_id": str(payment.id), "status": payment.status.value}

        outcome = self.gateway.refund_outcome_from_event(event)
        if outcome is not None and outcome.refund_id and outcome.is_settled:
            refund = await self.payments.get_refund(outcome.refund_id)
            if refund.status == RefundStatus.PENDING:
                payment = await self.confirm_refund(refund.id, outcome.succeeded, outcome.gateway_refund_id)
                return {"handled": True, "refund_id": str(refund.id), "status": payment.status.value}

        logger.debug("Ignoring Stripe event %s", event.get("type"))
        return {"handled": False}

    async def _refund_captured(self, order: Order, reason: str) -> list[RefundTransaction]:
        """Request refunds for everything still refundable on the order's payments."""
        refunds = []
        for payment in await self.payments.list_payments_for_order(order.id):
            if not payment.status.has_captured_funds:
                continue
            for transaction in payment.captured_transactions:
                amount = await self.payments.refundable_amount(transaction)
                if amount <= 0:
                    continue
                refund = await self.payments.request_refund(payment.id, transaction.id, amount, reason)
                refunds.append(refund)
                if self.gateway and transaction.gateway_transaction_id:
                    outcome = await self.gateway.create_refund(refund, transaction.gateway_transaction_id, payment.currency)
                    if outcome.is_settled:
                        await self.confirm_refund(refund.id, outcome.succeeded, outcome.gateway_refund_id)
        return refunds

    async def _give_back_coupon(self, code: str, order: Order) -> None:
        try:
            await self.coupons.revert_usage(code)
        except Exception:
            logger.exception("Failed to revert coupon %s for order %s", code, order.order_number)
