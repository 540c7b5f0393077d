"""Coupon Pydantic schemas for request/response models."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from src.models.coupon import Coupon, DiscountType


class CouponCreate(BaseModel):
    """Schema for creating a coupon."""

    code: str = Field(min_length=1, max_length=50, description="Coupon code, stored upper-case")
    description: str | None = Field(default=None, max_length=255, description="Coupon description")
    discount_type: DiscountType = Field(description="percentage or fixed_amount")
    discount_value: Decimal = Field(gt=0, description="Percent (0-100] or fixed amount")
    max_discount_amount: Decimal | None = Field(default=None, ge=0, description="Cap for percentage coupons")
    min_order_value: Decimal = Field(default=Decimal("0"), ge=0, description="Minimum subtotal to qualify")
    max_usage_limit: int | None = Field(default=None, ge=0, description="Total redemptions allowed")
    start_date: datetime | None = Field(default=None, description="Start of the validity window")
    end_date: datetime | None = Field(default=None, description="End of the validity window")
    is_active: bool = Field(default=True, description="Whether the coupon can be redeemed")

    def to_coupon(self) -> Coupon:
        return Coupon(**self.model_dump())


class CouponResponse(BaseModel):
    """Schema for coupon responses."""

    model_config = ConfigDict(from_attributes=True)

    code: str
    description: str | None = None
    discount_type: DiscountType
    discount_value: Decimal
    max_discount_amount: Decimal | None = None
    min_order_value: Decimal
    max_usage_limit: int | None = None
    usage_count: int
    remaining_usage: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_coupon(cls, coupon: Coupon) -> "CouponResponse":
        return cls(**coupon.model_dump(exclude={"version"}), remaining_usage=coupon.remaining_usage)


class CouponCheckResponse(BaseModel):
    """Schema for a dry-run coupon check against a subtotal."""

    code: str
    valid: bool
    discount: Decimal = Field(default=Decimal("0"))
    error: str | None = Field(default=None, description="Error type when the coupon is not usable")
    message: str | None = None
