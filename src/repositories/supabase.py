"""Supabase-backed repositories.

The supabase-py client is synchronous, so every query runs in a worker thread
and is bounded by ``repository_timeout_seconds``. Versioned updates filter on
the stored ``version``; an update that matches no row means another writer got
there first.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import UUID

from postgrest.exceptions import APIError as PostgrestAPIError
from supabase import Client

from src.core.config import get_settings
from src.core.errors import (
    ConcurrentModificationError,
    CouponUsageExceededError,
    NotFoundError,
    RepositoryTimeoutError,
    ValidationError,
)
from src.models.coupon import Coupon
from src.models.order import Order, OrderStatus
from src.models.payment import Payment, PaymentStatus, RefundStatus, RefundTransaction
from src.repositories.mappers import (
    coupon_from_row,
    coupon_to_row,
    order_from_row,
    order_to_row,
    payment_from_row,
    payment_to_row,
    refund_from_row,
    refund_to_row,
)

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


class SupabaseRepository:
    """Shared query execution for one table."""

    table_name: str = ""
    resource: str = ""
    key_column: str = "id"

    def __init__(self, client: Client, timeout_seconds: float | None = None) -> None:
        """Initialize the repository.

        Args:
            client: Supabase client.
            timeout_seconds: Per-call timeout; defaults to ``repository_timeout_seconds``.
        """
        self.client = client
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else get_settings().repository_timeout_seconds
        )

    def _table(self) -> Any:
        return self.client.table(self.table_name)

    async def _execute(self, query: Callable[[], Any]) -> Any:
        """Run a blocking query in a worker thread under the configured timeout.

        Raises:
            RepositoryTimeoutError: The call did not finish in time.
        """
        try:
            return await asyncio.wait_for(asyncio.to_thread(query), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.warning("Supabase call on %s timed out after %.1fs", self.table_name, self.timeout_seconds)
            raise RepositoryTimeoutError(f"{self.resource} storage call timed out") from e

    async def _fetch_one(self, column: str, value: Any) -> dict[str, Any] | None:
        response = await self._execute(
            self._table().select("*").eq(column, value).maybe_single().execute
        )
        return response.data if response and response.data else None

    async def _fetch_many(self, query: Any) -> list[dict[str, Any]]:
        response = await self._execute(query.execute)
        return response.data or []

    async def _save_row(self, key: Any, version: int, row: dict[str, Any]) -> dict[str, Any]:
        """Insert a new row (``version == 0``) or update the row at ``version``.

        Raises:
            ConcurrentModificationError: The stored version differs.
        """
        row = {**row, "version": version + 1}
        if version == 0:
            try:
                response = await self._execute(self._table().insert(row).execute)
            except PostgrestAPIError as e:
                if e.code == UNIQUE_VIOLATION:
                    raise ConcurrentModificationError(self.resource, key) from e
                raise
        else:
            response = await self._execute(
                self._table().update(row).eq(self.key_column, str(key)).eq("version", version).execute
            )
        if not response.data:
            raise ConcurrentModificationError(self.resource, key)
        return response.data[0]

    @staticmethod
    def _range(page: int, size: int) -> tuple[int, int]:
        if page < 0 or size < 1:
            raise ValidationError("page must be >= 0 and size >= 1")
        start = page * size
        return start, start + size - 1


class SupabaseOrderRepository(SupabaseRepository):
    table_name = "orders"
    resource = "Order"

    async def save(self, order: Order) -> Order:
        row = await self._save_row(order.id, order.version, order_to_row(order))
        return order_from_row(row)

    async def find_by_id(self, order_id: UUID) -> Order | None:
        row = await self._fetch_one("id", str(order_id))
        return order_from_row(row) if row else None

    async def find_by_order_number(self, order_number: str) -> Order | None:
        row = await self._fetch_one("order_number", order_number)
        return order_from_row(row) if row else None

    async def find_by_user_id(self, user_id: str, page: int = 0, size: int = 20) -> list[Order]:
        start, end = self._range(page, size)
        rows = await self._fetch_many(
            self._table().select("*").eq("user_id", user_id).order("created_at", desc=True).range(start, end)
        )
        return [order_from_row(row) for row in rows]

    async def find_by_user_id_and_status(self, user_id: str, status: OrderStatus) -> list[Order]:
        rows = await self._fetch_many(
            self._table()
            .select("*")
            .eq("user_id", user_id)
            .eq("status", status.value)
            .order("created_at", desc=True)
        )
        return [order_from_row(row) for row in rows]

    async def delete(self, order_id: UUID) -> bool:
        response = await self._execute(self._table().delete().eq("id", str(order_id)).execute)
        return bool(response.data)


class SupabasePaymentRepository(SupabaseRepository):
    """Payments with their transaction trail stored as a JSONB column."""

    table_name = "payments"
    resource = "Payment"

    async def save(self, payment: Payment) -> Payment:
        row = await self._save_row(payment.id, payment.version, payment_to_row(payment))
        return payment_from_row(row)

    async def find_by_id(self, payment_id: UUID) -> Payment | None:
        row = await self._fetch_one("id", str(payment_id))
        return payment_from_row(row) if row else None

    async def find_by_order_id(self, order_id: UUID) -> Payment | None:
        rows = await self._fetch_many(
            self._table().select("*").eq("order_id", str(order_id)).order("created_at", desc=True).limit(1)
        )
        return payment_from_row(rows[0]) if rows else None

    async def find_all_by_order_id(self, order_id: UUID) -> list[Payment]:
        rows = await self._fetch_many(
            self._table().select("*").eq("order_id", str(order_id)).order("created_at", desc=True)
        )
        return [payment_from_row(row) for row in rows]

    async def find_by_status(self, status: PaymentStatus) -> list[Payment]:
        rows = await self._fetch_many(
            self._table().select("*").eq("status", status.value).order("created_at")
        )
        return [payment_from_row(row) for row in rows]

    async def find_pending_payments(self) -> list[Payment]:
        return await self.find_by_status(PaymentStatus.PENDING)


class SupabaseRefundRepository(SupabaseRepository):
    table_name = "refund_transactions"
    resource = "Refund"

    async def save(self, refund: RefundTransaction) -> RefundTransaction:
        row = await self._save_row(refund.id, refund.version, refund_to_row(refund))
        return refund_from_row(row)

    async def find_by_id(self, refund_id: UUID) -> RefundTransaction | None:
        row = await self._fetch_one("id", str(refund_id))
        return refund_from_row(row) if row else None

    async def find_by_payment_transaction_id(self, transaction_id: UUID) -> list[RefundTransaction]:
        rows = await self._fetch_many(
            self._table().select("*").eq("payment_transaction_id", str(transaction_id)).order("created_at")
        )
        return [refund_from_row(row) for row in rows]

    async def find_by_payment_id(self, payment_id: UUID) -> list[RefundTransaction]:
        rows = await self._fetch_many(
            self._table().select("*").eq("payment_id", str(payment_id)).order("created_at")
        )
        return [refund_from_row(row) for row in rows]

    async def find_by_status(self, status: RefundStatus) -> list[RefundTransaction]:
        rows = await self._fetch_many(
            self._table().select("*").eq("status", status.value).order("created_at")
        )
        return [refund_from_row(row) for row in rows]

    async def find_pending_refunds(self) -> list[RefundTransaction]:
        return await self.find_by_status(RefundStatus.PENDING)


class SupabaseCouponRepository(SupabaseRepository):
    """Coupons keyed by upper-cased code."""

    table_name = "coupons"
    resource = "Coupon"
    key_column = "code"

    async def save(self, coupon: Coupon) -> Coupon:
        row = await self._save_row(coupon.code, coupon.version, coupon_to_row(coupon))
        return coupon_from_row(row)

    async def find_by_code(self, code: str) -> Coupon | None:
        row = await self._fetch_one("code", code.strip().upper())
        return coupon_from_row(row) if row else None

    async def find_all_active(self) -> list[Coupon]:
        rows = await self._fetch_many(self._table().select("*").eq("is_active", True))
        return [coupon_from_row(row) for row in rows]

    async def find_all_valid(self, now: datetime) -> list[Coupon]:
        return [coupon for coupon in await self.find_all_active() if coupon.is_valid(now)]

    async def find_all(self, page: int = 0, size: int = 20) -> list[Coupon]:
        start, end = self._range(page, size)
        rows = await self._fetch_many(
            self._table().select("*").order("created_at", desc=True).range(start, end)
        )
        return [coupon_from_row(row) for row in rows]

    async def delete_by_code(self, code: str) -> bool:
        response = await self._execute(self._table().delete().eq("code", code.strip().upper()).execute)
        return bool(response.data)

    async def exists_by_code(self, code: str) -> bool:
        rows = await self._fetch_many(self._table().select("code").eq("code", code.strip().upper()).limit(1))
        return len(rows) > 0

    async def increment_usage(self, code: str, expected_usage_count: int) -> Coupon:
        key = code.strip().upper()
        stored = await self.find_by_code(key)
        if stored is None:
            raise NotFoundError("Coupon", key, field="code")
        if stored.usage_count != expected_usage_count:
            raise ConcurrentModificationError("Coupon", key)
        if stored.remaining_usage == 0:
            raise CouponUsageExceededError(key)
        updated = stored.apply()
        response = await self._execute(
            self._table()
            .update(
                {
                    "usage_count": updated.usage_count,
                    "updated_at": updated.updated_at.isoformat(),
                    "version": stored.version + 1,
                }
            )
            .eq("code", key)
            .eq("usage_count", expected_usage_count)
            .eq("version", stored.version)
            .execute
        )
        if not response.data:
            raise ConcurrentModificationError("Coupon", key)
        return coupon_from_row(response.data[0])

    async def decrement_usage(self, code: str) -> Coupon:
        key = code.strip().upper()
        stored = await self.find_by_code(key)
        if stored is None:
            raise NotFoundError("Coupon", key, field="code")
        if stored.usage_count == 0:
            return stored
        updated = stored.revert_usage()
        response = await self._execute(
            self._table()
            .update(
                {
                    "usage_count": updated.usage_count,
                    "updated_at": updated.updated_at.isoformat(),
                    "version": stored.version + 1,
                }
            )
            .eq("code", key)
            .eq("version", stored.version)
            .execute
        )
        if not response.data:
            raise ConcurrentModificationError("Coupon", key)
        return coupon_from_row(response.data[0])
