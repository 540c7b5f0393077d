"""Unit tests for OrderService."""

from collections.abc import Callable
from decimal import Decimal
from typing import Any
from uuid import uuid4

import pytest

from src.core.errors import InvalidTransitionError, NotFoundError, OrderLockedError, ValidationError
from src.core.events import EventDispatcher
from src.core.locks import KeyedLockRegistry
from src.models.audit import AuditAction
from src.models.events import DomainEvent, OrderCancelled, OrderCreated, OrderStatusChanged
from src.models.order import Address, OrderItem, OrderStatus
from src.models.payment import PaymentMethod, PaymentStatus
from src.repositories.memory import InMemoryOrderRepository
from src.services.audit_service import InMemoryAuditLogService
from src.services.inventory_service import InMemoryInventoryService
from src.services.order_service import OrderService


class BrokenAuditLog:
    async def record(self, entry) -> None:
        raise RuntimeError("audit table unavailable")


@pytest.fixture
def inventory() -> InMemoryInventoryService:
    return InMemoryInventoryService({("prod-1", None): 5})


@pytest.fixture
def audit() -> InMemoryAuditLogService:
    return InMemoryAuditLogService()


@pytest.fixture
def published() -> list[DomainEvent]:
    return []


@pytest.fixture
def order_service(
    test_settings: Any,
    inventory: InMemoryInventoryService,
    audit: InMemoryAuditLogService,
    published: list[DomainEvent],
) -> OrderService:
    events = EventDispatcher()

    async def record(event: DomainEvent) -> None:
        published.append(event)

    events.subscribe_all(record)
    return OrderService(
        InMemoryOrderRepository(),
        KeyedLockRegistry(timeout_seconds=1.0),
        inventory,
        audit,
        events,
        settings=test_settings,
    )


@pytest.fixture
def place(order_service: OrderService, sample_address: Address, make_item: Callable[..., OrderItem]):
    async def _place(**overrides: Any):
        params: dict[str, Any] = {
            "user_id": "user-1",
            "items": [make_item()],
            "shipping_address": sample_address,
            "payment_method": PaymentMethod.COD,
            "shipping_method": "standard",
            "customer_email": "buyer@example.com",
        }
        params.update(overrides)
        return await order_service.create(**params)

    return _place


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_create_persists_pending_order(
        self,
        place,
        inventory: InMemoryInventoryService,
        audit: InMemoryAuditLogService,
        published: list[DomainEvent],
    ) -> None:
        order = await place(discount=Decimal("100000"), coupon_code="SUMMER10")

        assert order.version == 1
        assert order.status == OrderStatus.PENDING
        assert order.currency == "VND"
        assert order.order_number.startswith("ORD-")
        assert order.total == Decimal("1000000") - Decimal("100000") + Decimal("30000")
        assert inventory.available("prod-1") == 3
        assert inventory.is_reserved(order.id)
        assert audit.entries_for(str(order.id))[0].action == AuditAction.CREATE
        assert isinstance(published[0], OrderCreated)
        assert published[0].customer_email == "buyer@example.com"

    @pytest.mark.asyncio
    async def test_short_stock_rejected(self, place, make_item, inventory: InMemoryInventoryService) -> None:
        with pytest.raises(ValidationError):
            await place(items=[make_item(quantity=6)])

        assert inventory.available("prod-1") == 5

    @pytest.mark.asyncio
    async def test_unknown_shipping_method(self, place, inventory: InMemoryInventoryService) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await place(shipping_method="drone")

        assert exc_info.value.details[0]["loc"] == ["shipping_method"]
        assert inventory.available("prod-1") == 5

    @pytest.mark.asyncio
    async def test_express_shipping_fee(self, place) -> None:
        order = await place(shipping_method="Express")

        assert order.shipping_method == "express"
        assert order.shipping_fee == Decimal("60000")

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_create(
        self, test_settings: Any, sample_address: Address, make_item
    ) -> None:
        service = OrderService(
            InMemoryOrderRepository(),
            KeyedLockRegistry(timeout_seconds=1.0),
            InMemoryInventoryService(),
            BrokenAuditLog(),
            settings=test_settings,
        )

        order = await service.create(
            user_id="user-1",
            items=[make_item()],
            shipping_address=sample_address,
            payment_method=PaymentMethod.COD,
            shipping_method="standard",
        )

        assert (await service.get_order(order.id)).id == order.id


class TestShippingQuote:
    def test_free_standard_shipping_above_threshold(self, test_settings: Any) -> None:
        settings = test_settings.model_copy(update={"free_shipping_threshold": Decimal("500000")})
        service = OrderService(
            InMemoryOrderRepository(),
            KeyedLockRegistry(),
            InMemoryInventoryService(),
            InMemoryAuditLogService(),
            settings=settings,
        )

        assert service.quote_shipping_fee("standard", Decimal("500000")) == Decimal("0")
        assert service.quote_shipping_fee("standard", Decimal("499999")) == Decimal("30000")
        assert service.quote_shipping_fee("express", Decimal("900000")) == Decimal("60000")


class TestTransitions:
    @pytest.mark.asyncio
    async def test_forward_transitions(
        self, place, order_service: OrderService, audit: InMemoryAuditLogService, published: list[DomainEvent]
    ) -> None:
        order = await place()

        await order_service.transition(order.id, OrderStatus.CONFIRMED)
        await order_service.transition(order.id, OrderStatus.PROCESSING)
        shipped = await order_service.transition(
            order.id, OrderStatus.SHIPPED, tracking_number="VN123", actor_id="admin-1"
        )

        assert shipped.status == OrderStatus.SHIPPED
        assert shipped.tracking_number == "VN123"
        assert shipped.version == 4
        last_entry = audit.entries_for(str(order.id))[-1]
        assert last_entry.actor_id == "admin-1"
        assert last_entry.old_data == {"status": "processing"}
        changes = [e for e in published if isinstance(e, OrderStatusChanged)]
        assert [(e.from_status, e.to_status) for e in changes] == [
            ("pending", "confirmed"),
            ("confirmed", "processing"),
            ("processing", "shipped"),
        ]

    @pytest.mark.asyncio
    async def test_skipping_a_step_is_rejected(self, place, order_service: OrderService) -> None:
        order = await place()

        with pytest.raises(InvalidTransitionError):
            await order_service.transition(order.id, OrderStatus.SHIPPED)

        assert (await order_service.get_order(order.id)).status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel_releases_stock(
        self,
        place,
        order_service: OrderService,
        inventory: InMemoryInventoryService,
        published: list[DomainEvent],
    ) -> None:
        order = await place()

        cancelled = await order_service.cancel(order.id, reason="changed my mind")

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.cancellation_reason == "changed my mind"
        assert inventory.available("prod-1") == 5
        assert not inventory.is_reserved(order.id)
        assert isinstance(published[-1], OrderCancelled)

    @pytest.mark.asyncio
    async def test_delivered_order_cannot_be_cancelled(self, place, order_service: OrderService) -> None:
        order = await place()
        for status in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            await order_service.transition(order.id, status)

        with pytest.raises(InvalidTransitionError):
            await order_service.cancel(order.id)

    @pytest.mark.asyncio
    async def test_unknown_order(self, order_service: OrderService) -> None:
        with pytest.raises(NotFoundError):
            await order_service.transition(uuid4(), OrderStatus.CONFIRMED)


class TestMutations:
    @pytest.mark.asyncio
    async def test_update_items_recomputes_totals(self, place, order_service: OrderService, make_item) -> None:
        order = await place(discount=Decimal("100000"), coupon_code="SALE")

        updated = await order_service.update_items(
            order.id, [make_item(unit_price="40000", quantity=1)], discount=Decimal("4000"), coupon_code="SALE"
        )

        assert updated.subtotal == Decimal("40000")
        assert updated.discount == Decimal("4000")
        assert updated.coupon_code == "SALE"
        assert updated.total == updated.subtotal - updated.discount + updated.shipping_fee + updated.tax

    @pytest.mark.asyncio
    async def test_update_items_moves_stock(
        self, place, order_service: OrderService, inventory: InMemoryInventoryService, make_item
    ) -> None:
        order = await place()
        assert inventory.available("prod-1") == 3

        await order_service.update_items(order.id, [make_item(quantity=5)])
        assert inventory.available("prod-1") == 0

        await order_service.cancel(order.id)
        assert inventory.available("prod-1") == 5

    @pytest.mark.asyncio
    async def test_update_items_short_stock_keeps_order(
        self, place, order_service: OrderService, inventory: InMemoryInventoryService, make_item
    ) -> None:
        order = await place()

        with pytest.raises(ValidationError):
            await order_service.update_items(order.id, [make_item(quantity=50)])

        assert inventory.available("prod-1") == 3
        assert inventory.is_reserved(order.id)
        stored = await order_service.get_order(order.id)
        assert stored.items == order.items
        assert stored.version == order.version

    @pytest.mark.asyncio
    async def test_update_items_requotes_shipping(
        self, place, order_service: OrderService, test_settings: Any, make_item
    ) -> None:
        order_service.settings = test_settings.model_copy(update={"free_shipping_threshold": Decimal("800000")})
        order = await place()
        assert order.shipping_fee == Decimal("0")

        updated = await order_service.update_items(order.id, [make_item(quantity=1)])

        assert updated.shipping_fee == Decimal("30000")
        assert updated.total == Decimal("530000")

    @pytest.mark.asyncio
    async def test_items_fixed_once_confirmed(
        self, place, order_service: OrderService, inventory: InMemoryInventoryService, make_item
    ) -> None:
        order = await place()
        await order_service.transition(order.id, OrderStatus.CONFIRMED)

        with pytest.raises(OrderLockedError):
            await order_service.update_items(order.id, [make_item(quantity=50)])

        assert inventory.available("prod-1") == 3
        assert (await order_service.get_order(order.id)).total == order.total

    @pytest.mark.asyncio
    async def test_update_items_audited(
        self, place, order_service: OrderService, audit: InMemoryAuditLogService, make_item
    ) -> None:
        order = await place()

        await order_service.update_items(order.id, [make_item(quantity=1)], actor_id="admin-1")

        entry = audit.entries_for(str(order.id))[-1]
        assert entry.actor_id == "admin-1"
        assert entry.old_data["items"] == 1
        assert entry.new_data["total"] == "530000"

    @pytest.mark.asyncio
    async def test_terminal_order_is_locked(
        self, place, order_service: OrderService, make_item, sample_address: Address
    ) -> None:
        order = await place()
        await order_service.cancel(order.id)

        with pytest.raises(OrderLockedError):
            await order_service.update_items(order.id, [make_item()])
        with pytest.raises(OrderLockedError):
            await order_service.update_shipping_address(order.id, sample_address)

    @pytest.mark.asyncio
    async def test_update_shipping_address(self, place, order_service: OrderService, sample_address: Address) -> None:
        order = await place()
        moved = sample_address.model_copy(update={"street_address": "99 Nguyen Hue"})

        updated = await order_service.update_shipping_address(order.id, moved)

        assert updated.shipping_address.street_address == "99 Nguyen Hue"

    @pytest.mark.asyncio
    async def test_record_payment_status(self, place, order_service: OrderService) -> None:
        order = await place()

        updated = await order_service.record_payment_status(order.id, PaymentStatus.CAPTURED)

        assert updated.payment_status == PaymentStatus.CAPTURED
        assert updated.status == OrderStatus.PENDING


class TestQueries:
    @pytest.mark.asyncio
    async def test_lookups_and_listing(self, place, order_service: OrderService) -> None:
        first = await place()
        second = await place()
        await order_service.cancel(second.id)
        await place(user_id="user-2")

        assert (await order_service.get_order_by_number(first.order_number)).id == first.id
        page = await order_service.list_orders_for_user("user-1")
        assert len(page.items) == 2
        assert page.has_more is False
        cancelled = await order_service.list_orders_for_user("user-1", status=OrderStatus.CANCELLED)
        assert [o.id for o in cancelled.items] == [second.id]
        assert len((await order_service.list_orders_for_user("user-1", page=1, size=1)).items) == 1

    @pytest.mark.asyncio
    async def test_missing_order_number(self, order_service: OrderService) -> None:
        with pytest.raises(NotFoundError):
            await order_service.get_order_by_number("ORD-0-0000")
