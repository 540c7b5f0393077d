"""Storage contracts for the order, payment, refund and coupon aggregates.

Every ``save`` is a versioned upsert: it succeeds only when the stored version
equals the model's ``version`` (0 for a new record) and returns the stored
model with ``version + 1``. A mismatch raises ``ConcurrentModificationError``.
"""

from datetime import datetime
from typing import Protocol
from uuid import UUID

from src.models.coupon import Coupon
from src.models.order import Order, OrderStatus
from src.models.payment import Payment, PaymentStatus, RefundStatus, RefundTransaction


class OrderRepository(Protocol):
    async def save(self, order: Order) -> Order: ...

    async def find_by_id(self, order_id: UUID) -> Order | None: ...

    async def find_by_order_number(self, order_number: str) -> Order | None: ...

    async def find_by_user_id(self, user_id: str, page: int = 0, size: int = 20) -> list[Order]:
        """Orders of one user, newest first."""
        ...

    async def find_by_user_id_and_status(self, user_id: str, status: OrderStatus) -> list[Order]: ...

    async def delete(self, order_id: UUID) -> bool: ...


class PaymentRepository(Protocol):
    async def save(self, payment: Payment) -> Payment: ...

    async def find_by_id(self, payment_id: UUID) -> Payment | None: ...

    async def find_by_order_id(self, order_id: UUID) -> Payment | None:
        """Latest payment attempt for an order."""
        ...

    async def find_all_by_order_id(self, order_id: UUID) -> list[Payment]: ...

    async def find_by_status(self, status: PaymentStatus) -> list[Payment]: ...

    async def find_pending_payments(self) -> list[Payment]: ...


class RefundRepository(Protocol):
    async def save(self, refund: RefundTransaction) -> RefundTransaction: ...

    async def find_by_id(self, refund_id: UUID) -> RefundTransaction | None: ...

    async def find_by_payment_transaction_id(self, transaction_id: UUID) -> list[RefundTransaction]: ...

    async def find_by_payment_id(self, payment_id: UUID) -> list[RefundTransaction]: ...

    async def find_by_status(self, status: RefundStatus) -> list[RefundTransaction]: ...

    async def find_pending_refunds(self) -> list[RefundTransaction]: ...


class CouponRepository(Protocol):
    async def save(self, coupon: Coupon) -> Coupon: ...

    async def find_by_code(self, code: str) -> Coupon | None:
        """Case-insensitive lookup."""
        ...

    async def find_all_active(self) -> list[Coupon]: ...

    async def find_all_valid(self, now: datetime) -> list[Coupon]: ...

    async def find_all(self, page: int = 0, size: int = 20) -> list[Coupon]: ...

    async def delete_by_code(self, code: str) -> bool: ...

    async def exists_by_code(self, code: str) -> bool: ...

    async def increment_usage(self, code: str, expected_usage_count: int) -> Coupon:
        """Atomically bump ``usage_count`` from ``expected_usage_count``.

        Raises:
            NotFoundError: No coupon with this code.
            ConcurrentModificationError: The stored count moved on.
            CouponUsageExceededError: The limit is already reached.
        """
        ...

    async def decrement_usage(self, code: str) -> Coupon: ...
