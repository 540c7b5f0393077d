"""Order lifecycle service."""

import logging
from collections.abc import Callable
from decimal import Decimal
from uuid import UUID

from src.core.config import Settings, get_settings
from src.core.errors import NotFoundError, ValidationError
from src.core.events import EventDispatcher
from src.core.locks import KeyedLockRegistry
from src.core.retry import retry_on_conflict
from src.models.audit import AuditAction, AuditEntry
from src.models.events import OrderCancelled, OrderCreated, OrderStatusChanged
from src.models.order import Address, Order, OrderItem, OrderStatus, items_subtotal
from src.models.payment import PaymentMethod, PaymentStatus
from src.repositories.interfaces import OrderRepository
from src.schemas.common import PageResponse
from src.services.audit_service import AuditLogService
from src.services.inventory_service import InventoryService

logger = logging.getLogger(__name__)

ORDERS_TABLE = "orders"


def _lock_key(order_id: UUID) -> str:
    return f"order:{order_id}"


class OrderService:
    """Service for creating orders and moving them through their lifecycle.

    Every mutation of an existing order runs under the order's lock and is
    retried on version conflicts. Audit, inventory release and event delivery
    happen after the change is persisted; their failures are logged, not raised.
    """

    def __init__(
        self,
        orders: OrderRepository,
        locks: KeyedLockRegistry,
        inventory: InventoryService,
        audit: AuditLogService,
        events: EventDispatcher | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.orders = orders
        self.locks = locks
        self.inventory = inventory
        self.audit = audit
        self.events = events
        self.settings = settings or get_settings()

    def quote_shipping_fee(self, shipping_method: str, discounted_subtotal: Decimal) -> Decimal:
        """Shipping fee for a method, with free standard shipping above the threshold.

        Raises:
            ValidationError: Unknown shipping method.
        """
        method = shipping_method.strip().lower()
        fees = self.settings.shipping_fees
        if method not in fees:
            raise ValidationError(
                f"Unknown shipping method: {shipping_method}",
                details=[{"loc": ["shipping_method"], "msg": f"must be one of {sorted(fees)}", "type": "value_error"}],
            )
        threshold = self.settings.free_shipping_threshold
        if method == "standard" and threshold is not None and discounted_subtotal >= threshold:
            return Decimal("0")
        return fees[method]

    async def create(
        self,
        *,
        user_id: str,
        items: list[OrderItem],
        shipping_address: Address,
        payment_method: PaymentMethod,
        shipping_method: str,
        discount: Decimal = Decimal("0"),
        coupon_code: str | None = None,
        note: str | None = None,
        customer_email: str | None = None,
        currency: str | None = None,
    ) -> Order:
        """Create and persist a PENDING order and reserve its stock.

        Args:
            user_id: Ordering user.
            items: Priced line items.
            shipping_address: Address snapshot.
            payment_method: Payment method.
            shipping_method: Shipping method key.
            discount: Discount already granted by a redeemed coupon.
            coupon_code: The redeemed coupon, if any.
            note: Customer note.
            customer_email: Address for order notifications.
            currency: Defaults to ``default_currency``.

        Returns:
            Order: The stored order.

        Raises:
            ValidationError: No items, unknown shipping method or insufficient stock.
        """
        if not items:
            raise ValidationError("An order needs at least one item")
        currency = (currency or self.settings.default_currency).upper()
        subtotal = sum((item.line_total for item in items), Decimal("0"))
        shipping_fee = self.quote_shipping_fee(shipping_method, subtotal - min(discount, subtotal))

        order = Order.create(
            user_id=user_id,
            items=items,
            shipping_address=shipping_address,
            payment_method=payment_method,
            shipping_method=shipping_method.strip().lower(),
            currency=currency,
            shipping_fee=shipping_fee,
            tax_rate=self.settings.tax_rate,
            discount=discount,
            coupon_code=coupon_code,
            note=note,
            customer_email=customer_email,
            order_number_prefix=self.settings.order_number_prefix,
        )

        await self.inventory.reserve(order.id, order.items)
        try:
            saved = await self.orders.save(order)
        except Exception:
            await self.inventory.release(order.id)
            raise

        logger.info("Created order %s for user %s, total %s %s", saved.order_number, user_id, saved.total, currency)
        await self._audit(saved, AuditAction.CREATE, None, {"status": saved.status.value, "total": str(saved.total)})
        if self.events:
            await self.events.publish(
                OrderCreated(
                    order_id=saved.id,
                    order_number=saved.order_number,
                    user_id=saved.user_id,
                    total=saved.total,
                    customer_email=saved.customer_email,
                )
            )
        return saved

    async def get_order(self, order_id: UUID) -> Order:
        order = await self.orders.find_by_id(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def get_order_by_number(self, order_number: str) -> Order:
        order = await self.orders.find_by_order_number(order_number)
        if order is None:
            raise NotFoundError("Order", order_number, field="order_number")
        return order

    async def list_orders_for_user(
        self,
        user_id: str,
        page: int = 0,
        size: int = 20,
        status: OrderStatus | None = None,
    ) -> PageResponse[Order]:
        """One page of a user's orders, newest first, optionally filtered by status."""
        if status is not None:
            orders = await self.orders.find_by_user_id_and_status(user_id, status)
            items = orders[page * size : (page + 1) * size]
        else:
            items = await self.orders.find_by_user_id(user_id, page, size)
        return PageResponse[Order](items=items, page=page, size=size)

    async def transition(
        self,
        order_id: UUID,
        target: OrderStatus,
        tracking_number: str | None = None,
        reason: str | None = None,
        actor_id: str | None = None,
    ) -> Order:
        """Move an order to ``target``.

        Raises:
            NotFoundError: Unknown order.
            InvalidTransitionError: ``target`` is not reachable from the current status.
        """
        before, after = await self._mutate(
            order_id, lambda o: o.transition(target, tracking_number=tracking_number, reason=reason)
        )
        logger.info("Order %s: %s -> %s", after.order_number, before.status.value, after.status.value)
        await self._audit(
            after,
            AuditAction.UPDATE,
            {"status": before.status.value},
            {"status": after.status.value, "reason": reason, "tracking_number": after.tracking_number},
            actor_id,
        )

        if after.status == OrderStatus.CANCELLED:
            await self._release_stock(after)

        if self.events:
            await self.events.publish(
                OrderStatusChanged(
                    order_id=after.id,
                    order_number=after.order_number,
                    user_id=after.user_id,
                    from_status=before.status.value,
                    to_status=after.status.value,
                    customer_email=after.customer_email,
                )
            )
            if after.status == OrderStatus.CANCELLED:
                await self.events.publish(
                    OrderCancelled(
                        order_id=after.id,
                        order_number=after.order_number,
                        user_id=after.user_id,
                        reason=reason,
                        customer_email=after.customer_email,
                    )
                )
        return after

    async def cancel(self, order_id: UUID, reason: str | None = None, actor_id: str | None = None) -> Order:
        """Cancel a non-terminal order and release its stock."""
        return await self.transition(order_id, OrderStatus.CANCELLED, reason=reason, actor_id=actor_id)

    async def update_shipping_address(self, order_id: UUID, address: Address, actor_id: str | None = None) -> Order:
        """Replace the address snapshot.

        Raises:
            OrderLockedError: The order is in a terminal state.
        """
        before, after = await self._mutate(order_id, lambda o: o.with_shipping_address(address))
        await self._audit(
            after,
            AuditAction.UPDATE,
            {"shipping_address": before.shipping_address.model_dump(mode="json")},
            {"shipping_address": after.shipping_address.model_dump(mode="json")},
            actor_id,
        )
        return after

    async def update_items(
        self,
        order_id: UUID,
        items: list[OrderItem],
        *,
        discount: Decimal = Decimal("0"),
        coupon_code: str | None = None,
        actor_id: str | None = None,
    ) -> Order:
        """Replace the line items of a PENDING order and reprice it.

        The stock held for the old items is swapped for the new ones under the
        order's lock; if the new items cannot be reserved, or the order cannot
        be saved, the old reservation is put back.

        Args:
            order_id: Order to change.
            items: Priced line items.
            discount: Discount the order's coupon gives on the new subtotal.
            coupon_code: The coupon that still applies, if any.
            actor_id: Who made the change.

        Raises:
            OrderLockedError: The order is past PENDING.
            ValidationError: ``items`` is empty or stock is short.
        """
        def reprice(order: Order) -> Order:
            return self._with_items(order, items, discount, coupon_code)

        async with self.locks.hold(_lock_key(order_id)):
            previous = await self.get_order(order_id)
            repriced = reprice(previous)
            await self.inventory.release(order_id)
            try:
                await self.inventory.reserve(order_id, repriced.items)
            except Exception:
                await self._restore_reservation(previous)
                raise
            try:
                before, after = await self._mutate_once(order_id, reprice)
            except Exception:
                await self.inventory.release(order_id)
                await self._restore_reservation(previous)
                raise

        logger.info("Order %s items updated, total %s -> %s", after.order_number, before.total, after.total)
        await self._audit(
            after,
            AuditAction.UPDATE,
            {"total": str(before.total), "items": len(before.items), "coupon_code": before.coupon_code},
            {"total": str(after.total), "items": len(after.items), "coupon_code": after.coupon_code},
            actor_id,
        )
        return after

    def _with_items(self, order: Order, items: list[OrderItem], discount: Decimal, coupon_code: str | None) -> Order:
        discounted = items_subtotal(items) - discount
        shipping_fee = self.quote_shipping_fee(order.shipping_method, max(discounted, Decimal("0")))
        return order.with_items(items, discount=discount, coupon_code=coupon_code, shipping_fee=shipping_fee)

    async def _restore_reservation(self, order: Order) -> None:
        try:
            await self.inventory.reserve(order.id, order.items)
        except Exception:
            logger.exception("Failed to restore stock reservation for order %s", order.order_number)

    async def record_payment_status(self, order_id: UUID, payment_status: PaymentStatus) -> Order:
        _, after = await self._mutate(order_id, lambda o: o.with_payment_status(payment_status))
        return after

    async def _mutate(self, order_id: UUID, change: Callable[[Order], Order]) -> tuple[Order, Order]:
        async with self.locks.hold(_lock_key(order_id)):
            return await self._mutate_once(order_id, change)

    @retry_on_conflict
    async def _mutate_once(self, order_id: UUID, change: Callable[[Order], Order]) -> tuple[Order, Order]:
        before = await self.get_order(order_id)
        after = await self.orders.save(change(before))
        return before, after

    async def _release_stock(self, order: Order) -> None:
        try:
            await self.inventory.release(order.id)
        except Exception:
            logger.exception("Failed to release stock for cancelled order %s", order.order_number)

    async def _audit(
        self,
        order: Order,
        action: AuditAction,
        old_data: dict | None,
        new_data: dict | None,
        actor_id: str | None = None,
    ) -> None:
        entry = AuditEntry(
            table_name=ORDERS_TABLE,
            record_id=str(order.id),
            action=action,
            actor_id=actor_id or order.user_id,
            old_data=old_data,
            new_data=new_data,
        )
        try:
            await self.audit.record(entry)
        except Exception:
            logger.exception("Failed to write audit entry for order %s", order.order_number)
