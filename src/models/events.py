"""Domain events raised by the order, payment and coupon aggregates."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field


class DomainEvent(BaseModel):
    """Base record for something that happened to an aggregate."""

    model_config = ConfigDict(frozen=True)

    EVENT_TYPE: ClassVar[str] = "DOMAIN_EVENT"

    event_id: UUID = Field(default_factory=uuid4)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @computed_field
    @property
    def event_type(self) -> str:
        return self.EVENT_TYPE


class OrderCreated(DomainEvent):
    EVENT_TYPE: ClassVar[str] = "ORDER_CREATED"

    order_id: UUID
    order_number: str
    user_id: str
    total: Decimal
    customer_email: str | None = None


class OrderStatusChanged(DomainEvent):
    EVENT_TYPE: ClassVar[str] = "ORDER_STATUS_CHANGED"

    order_id: UUID
    order_number: str
    user_id: str
    from_status: str
    to_status: str
    customer_email: str | None = None


class OrderCancelled(DomainEvent):
    EVENT_TYPE: ClassVar[str] = "ORDER_CANCELLED"

    order_id: UUID
    order_number: str
    user_id: str
    reason: str | None = None
    customer_email: str | None = None


class PaymentStatusChanged(DomainEvent):
    EVENT_TYPE: ClassVar[str] = "PAYMENT_STATUS_CHANGED"

    payment_id: UUID
    order_id: UUID
    from_status: str
    to_status: str


class RefundRequested(DomainEvent):
    EVENT_TYPE: ClassVar[str] = "REFUND_REQUESTED"

    refund_id: UUID
    payment_id: UUID
    payment_transaction_id: UUID
    amount: Decimal


class RefundConfirmed(DomainEvent):
    EVENT_TYPE: ClassVar[str] = "REFUND_CONFIRMED"

    refund_id: UUID
    payment_id: UUID
    succeeded: bool
    payment_status: str


class CouponRedeemed(DomainEvent):
    EVENT_TYPE: ClassVar[str] = "COUPON_REDEEMED"

    code: str
    usage_count: int
    discount: Decimal
