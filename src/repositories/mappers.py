"""Row mappers between aggregates and JSON-safe database rows."""

from typing import Any

from src.models.coupon import Coupon
from src.models.order import Order
from src.models.payment import Payment, RefundTransaction


def order_to_row(order: Order) -> dict[str, Any]:
    """Serialize an order; items and the address snapshot become JSON columns."""
    return order.model_dump(mode="json")


def order_from_row(row: dict[str, Any]) -> Order:
    return Order.model_validate(row)


def payment_to_row(payment: Payment) -> dict[str, Any]:
    """Serialize a payment with its transaction trail embedded."""
    return payment.model_dump(mode="json")


def payment_from_row(row: dict[str, Any]) -> Payment:
    data = dict(row)
    data["transactions"] = data.get("transactions") or []
    return Payment.model_validate(data)


def refund_to_row(refund: RefundTransaction) -> dict[str, Any]:
    return refund.model_dump(mode="json")


def refund_from_row(row: dict[str, Any]) -> RefundTransaction:
    return RefundTransaction.model_validate(row)


def coupon_to_row(coupon: Coupon) -> dict[str, Any]:
    return coupon.model_dump(mode="json")


def coupon_from_row(row: dict[str, Any]) -> Coupon:
    return Coupon.model_validate(row)
