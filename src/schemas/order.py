"""Order Pydantic schemas for request/response models."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.models.order import Address, Order, OrderItem, OrderStatus
from src.models.payment import PaymentMethod, PaymentStatus


class OrderItemRequest(BaseModel):
    """Schema for a single requested line item."""

    model_config = ConfigDict(from_attributes=True)

    product_id: str = Field(min_length=1, description="Product identifier")
    variant_id: str | None = Field(default=None, description="Product variant identifier")
    quantity: int = Field(ge=1, description="Quantity ordered")


class ShippingAddressRequest(BaseModel):
    """Schema for the shipping address captured with an order."""

    model_config = ConfigDict(from_attributes=True)

    recipient_name: str = Field(min_length=1, max_length=100, description="Recipient full name")
    phone: str = Field(min_length=1, max_length=20, description="Recipient phone number")
    street_address: str = Field(min_length=1, max_length=255, description="Street address")
    ward: str = Field(min_length=1, description="Ward")
    district: str = Field(min_length=1, description="District")
    city: str = Field(min_length=1, description="City or province")

    def to_address(self) -> Address:
        return Address(**self.model_dump())


class CreateOrderRequest(BaseModel):
    """Schema for placing an order."""

    model_config = ConfigDict(from_attributes=True)

    items: list[OrderItemRequest] = Field(min_length=1, description="Requested line items")
    shipping_address: ShippingAddressRequest = Field(description="Shipping address")
    payment_method: PaymentMethod = Field(description="Payment method")
    shipping_method: str = Field(min_length=1, description="Shipping method (standard/express)")
    coupon_code: str | None = Field(default=None, max_length=50, description="Optional coupon code")
    note: str | None = Field(default=None, max_length=500, description="Customer note")
    customer_email: str | None = Field(default=None, description="Email for order notifications")

    @field_validator("coupon_code")
    @classmethod
    def blank_coupon_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip().upper()

    @field_validator("shipping_method")
    @classmethod
    def normalize_shipping_method(cls, value: str) -> str:
        return value.strip().lower()


class OrderItemResponse(BaseModel):
    """Schema for a line item in order responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: str
    variant_id: str | None = None
    sku: str | None = None
    product_name: str | None = None
    variant_name: str | None = None
    quantity: int
    unit_price: Decimal
    line_total: Decimal

    @classmethod
    def from_item(cls, item: OrderItem) -> "OrderItemResponse":
        return cls(**item.model_dump(), line_total=item.line_total)


class AddressResponse(BaseModel):
    """Schema for the shipping address in order responses."""

    model_config = ConfigDict(from_attributes=True)

    recipient_name: str
    phone: str
    street_address: str
    ward: str
    district: str
    city: str
    country: str
    full_address: str


class OrderResponse(BaseModel):
    """Schema for order responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(description="Order unique identifier")
    order_number: str = Field(description="Human-readable order number")
    user_id: str = Field(description="Ordering user")
    status: OrderStatus = Field(description="Order status")
    payment_status: PaymentStatus | None = Field(default=None, description="Latest payment status")
    payment_method: PaymentMethod = Field(description="Payment method")
    shipping_method: str = Field(description="Shipping method")
    items: list[OrderItemResponse] = Field(description="Order line items")
    shipping_address: AddressResponse = Field(description="Shipping address snapshot")
    subtotal: Decimal
    discount: Decimal
    shipping_fee: Decimal
    tax: Decimal
    total: Decimal
    currency: str
    coupon_code: str | None = None
    tracking_number: str | None = None
    note: str | None = None
    created_at: datetime = Field(description="Creation timestamp")
    updated_at: datetime = Field(description="Last update timestamp")

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        address = order.shipping_address
        return cls(
            id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            status=order.status,
            payment_status=order.payment_status,
            payment_method=order.payment_method,
            shipping_method=order.shipping_method,
            items=[OrderItemResponse.from_item(item) for item in order.items],
            shipping_address=AddressResponse(**address.model_dump(), full_address=address.full_address),
            subtotal=order.subtotal,
            discount=order.discount,
            shipping_fee=order.shipping_fee,
            tax=order.tax,
            total=order.total,
            currency=order.currency,
            coupon_code=order.coupon_code,
            tracking_number=order.tracking_number,
            note=order.note,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
