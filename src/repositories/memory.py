"""In-memory repositories.

Each repository guards its dict with one ``asyncio.Lock`` so a versioned save
or a usage-count compare-and-swap is a single atomic step. Stored aggregates
are immutable, so they are handed out without copying.
"""

import asyncio
import logging
from datetime import datetime
from uuid import UUID

from src.core.errors import ConcurrentModificationError, CouponUsageExceededError, NotFoundError, ValidationError
from src.models.coupon import Coupon
from src.models.order import Order, OrderStatus
from src.models.payment import Payment, PaymentStatus, RefundStatus, RefundTransaction

logger = logging.getLogger(__name__)


def _check_version(resource: str, identifier: object, stored_version: int | None, version: int) -> None:
    if (stored_version if stored_version is not None else 0) != version:
        raise ConcurrentModificationError(resource, identifier)


def _page(items: list, page: int, size: int) -> list:
    if page < 0 or size < 1:
        raise ValidationError("page must be >= 0 and size >= 1")
    start = page * size
    return items[start : start + size]


class InMemoryOrderRepository:
    """Orders keyed by id, with a unique order-number index."""

    def __init__(self) -> None:
        self._orders: dict[UUID, Order] = {}
        self._by_number: dict[str, UUID] = {}
        self._lock = asyncio.Lock()

    async def save(self, order: Order) -> Order:
        async with self._lock:
            stored = self._orders.get(order.id)
            _check_version("Order", order.id, stored.version if stored else None, order.version)
            owner = self._by_number.get(order.order_number)
            if owner is not None and owner != order.id:
                raise ValidationError(f"Order number {order.order_number} already exists")
            saved = order.model_copy(update={"version": order.version + 1})
            self._orders[order.id] = saved
            self._by_number[order.order_number] = order.id
            return saved

    async def find_by_id(self, order_id: UUID) -> Order | None:
        return self._orders.get(order_id)

    async def find_by_order_number(self, order_number: str) -> Order | None:
        order_id = self._by_number.get(order_number)
        return self._orders.get(order_id) if order_id else None

    async def find_by_user_id(self, user_id: str, page: int = 0, size: int = 20) -> list[Order]:
        orders = [o for o in self._orders.values() if o.user_id == user_id]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return _page(orders, page, size)

    async def find_by_user_id_and_status(self, user_id: str, status: OrderStatus) -> list[Order]:
        orders = [o for o in self._orders.values() if o.user_id == user_id and o.status == status]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def delete(self, order_id: UUID) -> bool:
        async with self._lock:
            order = self._orders.pop(order_id, None)
            if order is None:
                return False
            self._by_number.pop(order.order_number, None)
            return True


class InMemoryPaymentRepository:
    def __init__(self) -> None:
        self._payments: dict[UUID, Payment] = {}
        self._lock = asyncio.Lock()

    async def save(self, payment: Payment) -> Payment:
        async with self._lock:
            stored = self._payments.get(payment.id)
            _check_version("Payment", payment.id, stored.version if stored else None, payment.version)
            saved = payment.model_copy(update={"version": payment.version + 1})
            self._payments[payment.id] = saved
            return saved

    async def find_by_id(self, payment_id: UUID) -> Payment | None:
        return self._payments.get(payment_id)

    async def find_by_order_id(self, order_id: UUID) -> Payment | None:
        payments = await self.find_all_by_order_id(order_id)
        return payments[0] if payments else None

    async def find_all_by_order_id(self, order_id: UUID) -> list[Payment]:
        payments = [p for p in self._payments.values() if p.order_id == order_id]
        return sorted(payments, key=lambda p: p.created_at, reverse=True)

    async def find_by_status(self, status: PaymentStatus) -> list[Payment]:
        payments = [p for p in self._payments.values() if p.status == status]
        return sorted(payments, key=lambda p: p.created_at)

    async def find_pending_payments(self) -> list[Payment]:
        return await self.find_by_status(PaymentStatus.PENDING)


class InMemoryRefundRepository:
    def __init__(self) -> None:
        self._refunds: dict[UUID, RefundTransaction] = {}
        self._lock = asyncio.Lock()

    async def save(self, refund: RefundTransaction) -> RefundTransaction:
        async with self._lock:
            stored = self._refunds.get(refund.id)
            _check_version("Refund", refund.id, stored.version if stored else None, refund.version)
            saved = refund.model_copy(update={"version": refund.version + 1})
            self._refunds[refund.id] = saved
            return saved

    async def find_by_id(self, refund_id: UUID) -> RefundTransaction | None:
        return self._refunds.get(refund_id)

    async def find_by_payment_transaction_id(self, transaction_id: UUID) -> list[RefundTransaction]:
        return sorted(
            (r for r in self._refunds.values() if r.payment_transaction_id == transaction_id),
            key=lambda r: r.created_at,
        )

    async def find_by_payment_id(self, payment_id: UUID) -> list[RefundTransaction]:
        return sorted(
            (r for r in self._refunds.values() if r.payment_id == payment_id),
            key=lambda r: r.created_at,
        )

    async def find_by_status(self, status: RefundStatus) -> list[RefundTransaction]:
        return sorted((r for r in self._refunds.values() if r.status == status), key=lambda r: r.created_at)

    async def find_pending_refunds(self) -> list[RefundTransaction]:
        return await self.find_by_status(RefundStatus.PENDING)


class InMemoryCouponRepository:
    """Coupons keyed by upper-cased code."""

    def __init__(self) -> None:
        self._coupons: dict[str, Coupon] = {}
        self._lock = asyncio.Lock()

    async def save(self, coupon: Coupon) -> Coupon:
        async with self._lock:
            stored = self._coupons.get(coupon.code)
            _check_version("Coupon", coupon.code, stored.version if stored else None, coupon.version)
            saved = coupon.model_copy(update={"version": coupon.version + 1})
            self._coupons[coupon.code] = saved
            return saved

    async def find_by_code(self, code: str) -> Coupon | None:
        return self._coupons.get(code.strip().upper())

    async def find_all_active(self) -> list[Coupon]:
        return [c for c in self._coupons.values() if c.is_active]

    async def find_all_valid(self, now: datetime) -> list[Coupon]:
        return [c for c in self._coupons.values() if c.is_valid(now)]

    async def find_all(self, page: int = 0, size: int = 20) -> list[Coupon]:
        coupons = sorted(self._coupons.values(), key=lambda c: c.created_at, reverse=True)
        return _page(coupons, page, size)

    async def delete_by_code(self, code: str) -> bool:
        async with self._lock:
            return self._coupons.pop(code.strip().upper(), None) is not None

    async def exists_by_code(self, code: str) -> bool:
        return code.strip().upper() in self._coupons

    async def increment_usage(self, code: str, expected_usage_count: int) -> Coupon:
        key = code.strip().upper()
        async with self._lock:
            stored = self._coupons.get(key)
            if stored is None:
                raise NotFoundError("Coupon", key, field="code")
            if stored.usage_count != expected_usage_count:
                logger.debug(
                    "Coupon %s usage moved from %d to %d", key, expected_usage_count, stored.usage_count
                )
                raise ConcurrentModificationError("Coupon", key)
            if stored.remaining_usage == 0:
                raise CouponUsageExceededError(key)
            updated = stored.apply()
            saved = updated.model_copy(update={"version": stored.version + 1})
            self._coupons[key] = saved
            return saved

    async def decrement_usage(self, code: str) -> Coupon:
        key = code.strip().upper()
        async with self._lock:
            stored = self._coupons.get(key)
            if stored is None:
                raise NotFoundError("Coupon", key, field="code")
            if stored.usage_count == 0:
                return stored
            saved = stored.revert_usage().model_copy(update={"version": stored.version + 1})
            self._coupons[key] = saved
            return saved
