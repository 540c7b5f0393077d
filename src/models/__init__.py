"""Domain model type definitions."""

from src.models.coupon import Coupon, DiscountType
from src.models.order import Address, Order, OrderItem, OrderStatus
from src.models.payment import (
    GatewayResponse,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentTransaction,
    RefundStatus,
    RefundTransaction,
)

__all__ = [
    "Address",
    "Coupon",
    "DiscountType",
    "GatewayResponse",
    "Order",
    "OrderItem",
    "OrderStatus",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentTransaction",
    "RefundStatus",
    "RefundTransaction",
]
