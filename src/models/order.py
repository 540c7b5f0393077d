"""Order aggregate: line items, shipping snapshot, totals and status machine."""

import secrets
import time
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from src.core.errors import InvalidTransitionError, OrderLockedError, ValidationError
from src.models.common import quantize_money, utc_now
from src.models.payment import PaymentMethod, PaymentStatus


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORDER_STATUSES

    def can_transition_to(self, target: "OrderStatus") -> bool:
        return target in ORDER_TRANSITIONS[self]


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED})

# DELIVERED is terminal for fulfilment; its only outgoing edge is the refund.
ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


def generate_order_number(prefix: str = "ORD") -> str:
    """Human-readable order number: ``{prefix}-{epoch millis}-{6 hex chars}``."""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


class Address(BaseModel):
    """Shipping address snapshot taken at order time."""

    model_config = ConfigDict(frozen=True)

    recipient_name: str = Field(min_length=1, max_length=100)
    phone: str = Field(min_length=1, max_length=20)
    street_address: str = Field(min_length=1, max_length=255)
    ward: str = Field(min_length=1)
    district: str = Field(min_length=1)
    city: str = Field(min_length=1)
    country: str = "Vietnam"
    postal_code: str | None = None

    @property
    def full_address(self) -> str:
        parts = [self.street_address, self.ward, self.district, self.city, self.country]
        return ", ".join(part for part in parts if part)


class OrderItem(BaseModel):
    """Line item with the product data and price captured at order time."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    product_id: str = Field(min_length=1)
    variant_id: str | None = None
    sku: str | None = None
    product_name: str | None = None
    variant_name: str | None = None
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


def items_subtotal(items: tuple[OrderItem, ...] | list[OrderItem]) -> Decimal:
    return sum((item.line_total for item in items), Decimal("0"))


class Order(BaseModel):
    """Order aggregate root.

    Instances are immutable. ``total`` is derived, so it always equals
    ``subtotal - discount + shipping_fee + tax``; every mutation returns a copy
    with its amounts recomputed together.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    order_number: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    items: tuple[OrderItem, ...] = Field(min_length=1)
    shipping_address: Address
    subtotal: Decimal = Field(ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    shipping_fee: Decimal = Field(default=Decimal("0"), ge=0)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=1)
    currency: str = Field(min_length=3, max_length=3)
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus | None = None
    payment_method: PaymentMethod
    shipping_method: str = Field(min_length=1)
    coupon_code: str | None = None
    tracking_number: str | None = None
    note: str | None = Field(default=None, max_length=500)
    cancellation_reason: str | None = None
    customer_email: str | None = None
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="before")
    @classmethod
    def check_stored_total(cls, data: Any) -> Any:
        """Accept a stored ``total`` only if it matches the amounts it derives from."""
        if isinstance(data, dict) and "total" in data:
            data = dict(data)
            stored = data.pop("total")
            if stored is not None:
                expected = (
                    Decimal(str(data.get("subtotal", 0)))
                    - Decimal(str(data.get("discount", 0)))
                    + Decimal(str(data.get("shipping_fee", 0)))
                    + Decimal(str(data.get("tax", 0)))
                )
                if Decimal(str(stored)) != expected:
                    raise ValueError(f"total {stored} does not match computed total {expected}")
        return data

    @model_validator(mode="after")
    def check_amounts(self) -> "Order":
        if self.subtotal != items_subtotal(self.items):
            raise ValueError("subtotal must equal the sum of line totals")
        if self.discount > self.subtotal:
            raise ValueError("discount cannot exceed subtotal")
        return self

    @computed_field
    @property
    def total(self) -> Decimal:
        return self.subtotal - self.discount + self.shipping_fee + self.tax

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def create(
        cls,
        *,
        user_id: str,
        items: list[OrderItem],
        shipping_address: Address,
        payment_method: PaymentMethod,
        shipping_method: str,
        currency: str,
        shipping_fee: Decimal = Decimal("0"),
        tax_rate: Decimal = Decimal("0"),
        discount: Decimal = Decimal("0"),
        coupon_code: str | None = None,
        note: str | None = None,
        customer_email: str | None = None,
        order_number_prefix: str = "ORD",
        now: datetime | None = None,
    ) -> "Order":
        """Build a PENDING order, computing subtotal and tax from the items."""
        now = now or utc_now()
        subtotal = items_subtotal(items)
        discount = quantize_money(min(discount, subtotal), currency)
        tax = quantize_money((subtotal - discount) * tax_rate, currency)
        return cls(
            order_number=generate_order_number(order_number_prefix),
            user_id=user_id,
            items=tuple(items),
            shipping_address=shipping_address,
            subtotal=subtotal,
            discount=discount,
            shipping_fee=shipping_fee,
            tax=tax,
            tax_rate=tax_rate,
            currency=currency.upper(),
            payment_method=payment_method,
            shipping_method=shipping_method,
            coupon_code=coupon_code,
            note=note,
            customer_email=customer_email,
            created_at=now,
            updated_at=now,
        )

    def transition(
        self,
        target: OrderStatus,
        now: datetime | None = None,
        tracking_number: str | None = None,
        reason: str | None = None,
    ) -> "Order":
        """Move to ``target`` if the status graph allows it.

        Raises:
            InvalidTransitionError: ``target`` is not reachable from the current status.
        """
        if not self.status.can_transition_to(target):
            raise InvalidTransitionError("Order", self.status, target)
        update: dict[str, Any] = {"status": target, "updated_at": now or utc_now()}
        if tracking_number is not None:
            update["tracking_number"] = tracking_number
        if target == OrderStatus.CANCELLED:
            update["cancellation_reason"] = reason
        return self.model_copy(update=update)

    def cancel(self, reason: str | None = None, now: datetime | None = None) -> "Order":
        return self.transition(OrderStatus.CANCELLED, now=now, reason=reason)

    def _ensure_mutable(self, what: str) -> None:
        if self.is_terminal:
            raise OrderLockedError(f"Cannot change {what} of order {self.order_number} in status {self.status.value}")

    def with_items(
        self,
        items: list[OrderItem],
        *,
        discount: Decimal,
        coupon_code: str | None,
        shipping_fee: Decimal,
        now: datetime | None = None,
    ) -> "Order":
        """Replace the line items of a PENDING order and reprice it.

        The caller supplies the discount and shipping fee worked out for the new
        items; subtotal and tax are recomputed here.

        Raises:
            OrderLockedError: The order is past PENDING.
            ValidationError: ``items`` is empty.
        """
        self._ensure_mutable("items")
        if self.status != OrderStatus.PENDING:
            raise OrderLockedError(
                f"Items of order {self.order_number} can only change while pending (status: {self.status.value})"
            )
        if not items:
            raise ValidationError("An order must keep at least one item")
        subtotal = items_subtotal(items)
        discount = quantize_money(min(discount, subtotal), self.currency)
        tax = quantize_money((subtotal - discount) * self.tax_rate, self.currency)
        return self.model_copy(
            update={
                "items": tuple(items),
                "subtotal": subtotal,
                "discount": discount,
                "coupon_code": coupon_code,
                "shipping_fee": shipping_fee,
                "tax": tax,
                "updated_at": now or utc_now(),
            }
        )

    def with_shipping_address(self, address: Address, now: datetime | None = None) -> "Order":
        self._ensure_mutable("shipping address")
        return self.model_copy(update={"shipping_address": address, "updated_at": now or utc_now()})

    def with_payment_status(self, payment_status: PaymentStatus, now: datetime | None = None) -> "Order":
        return self.model_copy(update={"payment_status": payment_status, "updated_at": now or utc_now()})
