"""Coupon aggregate: discount rules, validity window and usage tracking."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.core.errors import (
    CouponExpiredError,
    CouponInactiveError,
    CouponMinOrderNotMetError,
    CouponNotStartedError,
    CouponUsageExceededError,
    ValidationError,
)
from src.models.common import utc_now

HUNDRED = Decimal("100")


class DiscountType(str, Enum):
    """How a coupon's discount value is interpreted."""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class Coupon(BaseModel):
    """A discount code, keyed by its upper-cased code.

    Instances are immutable; every operation returns an updated copy.
    """

    model_config = ConfigDict(frozen=True)

    code: str = Field(min_length=1, max_length=50)
    description: str | None = None
    discount_type: DiscountType
    discount_value: Decimal = Field(gt=0)
    max_discount_amount: Decimal | None = Field(default=None, ge=0, description="Cap for percentage discounts")
    min_order_value: Decimal = Field(default=Decimal("0"), ge=0)
    max_usage_limit: int | None = Field(default=None, ge=0)
    usage_count: int = Field(default=0, ge=0)
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_active: bool = True
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def check_rules(self) -> "Coupon":
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > HUNDRED:
            raise ValueError("Percentage discount cannot exceed 100%")
        if self.max_usage_limit is not None and self.usage_count > self.max_usage_limit:
            raise ValueError("usage_count cannot exceed max_usage_limit")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self

    @property
    def remaining_usage(self) -> int | None:
        """Uses left before the limit, or None when unlimited."""
        if self.max_usage_limit is None:
            return None
        return max(0, self.max_usage_limit - self.usage_count)

    def is_within_window(self, now: datetime) -> bool:
        if self.start_date is not None and now < self.start_date:
            return False
        if self.end_date is not None and now > self.end_date:
            return False
        return True

    def is_valid(self, now: datetime | None = None) -> bool:
        """Active, inside the validity window and below the usage limit."""
        now = now or utc_now()
        if not self.is_active or not self.is_within_window(now):
            return False
        return self.remaining_usage != 0

    def check_applicable(self, order_subtotal: Decimal, now: datetime | None = None) -> None:
        """Raise the first reason this coupon cannot be used for ``order_subtotal``.

        Raises:
            CouponInactiveError: Coupon is switched off.
            CouponNotStartedError: ``now`` is before the start date.
            CouponExpiredError: ``now`` is after the end date.
            CouponUsageExceededError: Usage limit reached.
            CouponMinOrderNotMetError: Subtotal below the minimum order value.
        """
        now = now or utc_now()
        if not self.is_active:
            raise CouponInactiveError(self.code)
        if self.start_date is not None and now < self.start_date:
            raise CouponNotStartedError(self.code)
        if self.end_date is not None and now > self.end_date:
            raise CouponExpiredError(self.code)
        if self.remaining_usage == 0:
            raise CouponUsageExceededError(self.code)
        if order_subtotal < self.min_order_value:
            raise CouponMinOrderNotMetError(self.code, self.min_order_value)

    def compute_discount(self, order_subtotal: Decimal) -> Decimal:
        """Discount for ``order_subtotal``; never more than the subtotal itself."""
        if order_subtotal <= 0:
            return Decimal("0")
        if self.discount_type == DiscountType.PERCENTAGE:
            discount = order_subtotal * self.discount_value / HUNDRED
            if self.max_discount_amount is not None and discount > self.max_discount_amount:
                discount = self.max_discount_amount
        else:
            discount = self.discount_value
        return min(discount, order_subtotal)

    def apply(self, now: datetime | None = None) -> "Coupon":
        """Consume one use of the coupon.

        Raises:
            CouponUsageExceededError: The limit is already reached.
        """
        if self.remaining_usage == 0:
            raise CouponUsageExceededError(self.code)
        return self.model_copy(update={"usage_count": self.usage_count + 1, "updated_at": now or utc_now()})

    def revert_usage(self, now: datetime | None = None) -> "Coupon":
        if self.usage_count == 0:
            return self
        return self.model_copy(update={"usage_count": self.usage_count - 1, "updated_at": now or utc_now()})

    def activate(self, now: datetime | None = None) -> "Coupon":
        return self.model_copy(update={"is_active": True, "updated_at": now or utc_now()})

    def deactivate(self, now: datetime | None = None) -> "Coupon":
        return self.model_copy(update={"is_active": False, "updated_at": now or utc_now()})

    def with_validity_period(
        self,
        start_date: datetime | None,
        end_date: datetime | None,
        now: datetime | None = None,
    ) -> "Coupon":
        if start_date and end_date and start_date > end_date:
            raise ValidationError("start_date must not be after end_date")
        return self.model_copy(
            update={"start_date": start_date, "end_date": end_date, "updated_at": now or utc_now()}
        )

    def with_usage_limit(self, limit: int | None, now: datetime | None = None) -> "Coupon":
        if limit is not None and (limit < 0 or limit < self.usage_count):
            raise ValidationError("Usage limit cannot be below the current usage count")
        return self.model_copy(update={"max_usage_limit": limit, "updated_at": now or utc_now()})
