"""Coupon engine: validation, discount computation and race-free redemption."""

import logging
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal

from src.core.errors import InvalidCouponError, NotFoundError, ValidationError
from src.core.events import EventDispatcher
from src.core.locks import KeyedLockRegistry
from src.core.retry import retry_on_conflict
from src.models.common import quantize_money, utc_now
from src.models.coupon import Coupon
from src.models.events import CouponRedeemed
from src.repositories.interfaces import CouponRepository
from src.schemas.common import PageResponse
from src.schemas.coupon import CouponCheckResponse, CouponCreate

logger = logging.getLogger(__name__)


def _lock_key(code: str) -> str:
    return f"coupon:{code.strip().upper()}"


class CouponService:
    """Service for validating, redeeming and managing coupons.

    Usage counts only move through the repository's compare-and-swap, under the
    per-code lock, so concurrent redemptions can never pass the usage limit.
    """

    def __init__(
        self,
        coupons: CouponRepository,
        locks: KeyedLockRegistry,
        events: EventDispatcher | None = None,
    ) -> None:
        self.coupons = coupons
        self.locks = locks
        self.events = events

    def validate(self, coupon: Coupon, order_subtotal: Decimal, now: datetime | None = None) -> None:
        """Raise the InvalidCouponError subclass describing why ``coupon`` is unusable."""
        coupon.check_applicable(order_subtotal, now)

    def compute_discount(self, coupon: Coupon, order_subtotal: Decimal, currency: str | None = None) -> Decimal:
        discount = coupon.compute_discount(order_subtotal)
        if currency:
            discount = min(quantize_money(discount, currency), order_subtotal)
        return discount

    def apply(self, coupon: Coupon, now: datetime | None = None) -> Coupon:
        """Consume one use in memory; persisting goes through ``redeem``."""
        return coupon.apply(now)

    async def get_coupon(self, code: str) -> Coupon:
        coupon = await self.coupons.find_by_code(code)
        if coupon is None:
            raise NotFoundError("Coupon", code.strip().upper(), field="code")
        return coupon

    async def check(self, code: str, order_subtotal: Decimal, currency: str | None = None) -> CouponCheckResponse:
        """Dry-run: report whether a coupon applies and what it would take off."""
        coupon = await self.get_coupon(code)
        try:
            self.validate(coupon, order_subtotal)
        except InvalidCouponError as e:
            return CouponCheckResponse(code=coupon.code, valid=False, error=e.error_type, message=e.message)
        return CouponCheckResponse(
            code=coupon.code,
            valid=True,
            discount=self.compute_discount(coupon, order_subtotal, currency),
        )

    async def redeem(
        self,
        code: str,
        order_subtotal: Decimal,
        currency: str | None = None,
        now: datetime | None = None,
    ) -> tuple[Coupon, Decimal]:
        """Validate a coupon and consume one use of it.

        Args:
            code: Coupon code (any case).
            order_subtotal: Subtotal the discount applies to.
            currency: Rounds the discount to this currency's unit when given.
            now: Validation time.

        Returns:
            tuple: The updated coupon and the discount amount.

        Raises:
            NotFoundError: Unknown code.
            InvalidCouponError: The coupon cannot be used for this subtotal.
            ConcurrentModificationError: Usage kept moving after all retries.
        """
        async with self.locks.hold(_lock_key(code)):
            coupon, discount = await self._redeem_once(code, order_subtotal, currency, now)

        logger.info("Redeemed coupon %s (usage %d) for discount %s", coupon.code, coupon.usage_count, discount)
        if self.events:
            await self.events.publish(
                CouponRedeemed(code=coupon.code, usage_count=coupon.usage_count, discount=discount)
            )
        return coupon, discount

    @retry_on_conflict
    async def _redeem_once(
        self,
        code: str,
        order_subtotal: Decimal,
        currency: str | None,
        now: datetime | None,
    ) -> tuple[Coupon, Decimal]:
        coupon = await self.get_coupon(code)
        self.validate(coupon, order_subtotal, now)
        discount = self.compute_discount(coupon, order_subtotal, currency)
        updated = await self.coupons.increment_usage(coupon.code, coupon.usage_count)
        return updated, discount

    async def rediscount(self, code: str, order_subtotal: Decimal, currency: str | None = None) -> Decimal | None:
        """Discount a coupon already redeemed by an order gives on a new subtotal.

        The use was taken when the order was placed, so only the minimum order
        value is checked again.

        Returns:
            Decimal | None: The new discount, or None if the coupon no longer applies.
        """
        coupon = await self.coupons.find_by_code(code)
        if coupon is None:
            logger.warning("Coupon %s no longer exists; dropping it from the order", code)
            return None
        if order_subtotal < coupon.min_order_value:
            logger.info("Coupon %s no longer meets its minimum order value at %s", coupon.code, order_subtotal)
            return None
        return self.compute_discount(coupon, order_subtotal, currency)

    async def revert_usage(self, code: str) -> Coupon:
        """Give back one use, e.g. when the order that redeemed it is cancelled."""
        async with self.locks.hold(_lock_key(code)):
            coupon = await self._decrement(code)
        logger.info("Reverted usage of coupon %s (usage %d)", coupon.code, coupon.usage_count)
        return coupon

    @retry_on_conflict
    async def _decrement(self, code: str) -> Coupon:
        return await self.coupons.decrement_usage(code)

    async def create_coupon(self, data: CouponCreate) -> Coupon:
        """Create a coupon.

        Raises:
            ValidationError: A coupon with this code already exists or the rules are inconsistent.
        """
        if await self.coupons.exists_by_code(data.code):
            raise ValidationError(f"Coupon code {data.code.strip().upper()} already exists")
        try:
            coupon = data.to_coupon()
        except ValueError as e:
            raise ValidationError(str(e)) from e
        saved = await self.coupons.save(coupon)
        logger.info("Created coupon %s", saved.code)
        return saved

    async def activate(self, code: str) -> Coupon:
        return await self._update(code, lambda c: c.activate())

    async def deactivate(self, code: str) -> Coupon:
        return await self._update(code, lambda c: c.deactivate())

    async def update_validity_period(
        self,
        code: str,
        start_date: datetime | None,
        end_date: datetime | None,
    ) -> Coupon:
        return await self._update(code, lambda c: c.with_validity_period(start_date, end_date))

    async def update_usage_limit(self, code: str, limit: int | None) -> Coupon:
        return await self._update(code, lambda c: c.with_usage_limit(limit))

    async def _update(self, code: str, change: Callable[[Coupon], Coupon]) -> Coupon:
        async with self.locks.hold(_lock_key(code)):
            return await self._update_once(code, change)

    @retry_on_conflict
    async def _update_once(self, code: str, change: Callable[[Coupon], Coupon]) -> Coupon:
        coupon = await self.get_coupon(code)
        saved = await self.coupons.save(change(coupon))
        logger.info("Updated coupon %s", saved.code)
        return saved

    async def list_valid_coupons(self, now: datetime | None = None) -> list[Coupon]:
        return await self.coupons.find_all_valid(now or utc_now())

    async def list_coupons(self, page: int = 0, size: int = 20) -> PageResponse[Coupon]:
        return PageResponse[Coupon](items=await self.coupons.find_all(page, size), page=page, size=size)

    async def delete_coupon(self, code: str) -> None:
        """Delete a coupon.

        Raises:
            NotFoundError: Unknown code.
        """
        if not await self.coupons.delete_by_code(code):
            raise NotFoundError("Coupon", code.strip().upper(), field="code")
        logger.info("Deleted coupon %s", code.strip().upper())
