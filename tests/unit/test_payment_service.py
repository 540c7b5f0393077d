"""Unit tests for PaymentService."""

from collections.abc import Callable
from decimal import Decimal
from uuid import uuid4

import pytest

from src.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    PaymentConflictError,
    PaymentNotCapturedError,
    RefundExceedsCapturedError,
    UnknownGatewayStatusError,
    ValidationError,
)
from src.core.events import EventDispatcher
from src.core.locks import KeyedLockRegistry
from src.models.audit import AuditAction
from src.models.events import DomainEvent, PaymentStatusChanged, RefundConfirmed, RefundRequested
from src.models.order import Order
from src.models.payment import GatewayResponse, Payment, PaymentStatus, RefundStatus
from src.repositories.memory import InMemoryPaymentRepository, InMemoryRefundRepository
from src.services.audit_service import InMemoryAuditLogService
from src.services.payment_service import PaymentService


@pytest.fixture
def published() -> list[DomainEvent]:
    return []


@pytest.fixture
def audit() -> InMemoryAuditLogService:
    return InMemoryAuditLogService()


@pytest.fixture
def payment_service(published: list[DomainEvent], audit: InMemoryAuditLogService) -> PaymentService:
    events = EventDispatcher()

    async def record(event: DomainEvent) -> None:
        published.append(event)

    events.subscribe_all(record)
    return PaymentService(
        InMemoryPaymentRepository(),
        InMemoryRefundRepository(),
        KeyedLockRegistry(timeout_seconds=1.0),
        audit,
        events,
    )


@pytest.fixture
def order(make_order: Callable[..., Order]) -> Order:
    return make_order()


async def captured_payment(service: PaymentService, order: Order) -> Payment:
    payment = await service.create_payment(order)
    return await service.record_gateway_response(
        payment.id, GatewayResponse(status="succeeded", gateway_transaction_id="pi_1")
    )


class TestCreatePayment:
    @pytest.mark.asyncio
    async def test_amount_matches_order_total(self, payment_service: PaymentService, order: Order) -> None:
        payment = await payment_service.create_payment(order)

        assert payment.amount == order.total
        assert payment.currency == order.currency
        assert payment.status == PaymentStatus.PENDING
        assert payment.version == 1

    @pytest.mark.asyncio
    async def test_second_active_payment_conflicts(self, payment_service: PaymentService, order: Order) -> None:
        await payment_service.create_payment(order)

        with pytest.raises(PaymentConflictError):
            await payment_service.create_payment(order)

    @pytest.mark.asyncio
    async def test_retry_after_failed_attempt(self, payment_service: PaymentService, order: Order) -> None:
        first = await payment_service.create_payment(order)
        await payment_service.record_gateway_response(first.id, GatewayResponse(status="failed"))

        second = await payment_service.create_payment(order)

        assert second.id != first.id
        assert (await payment_service.get_payment_for_order(order.id)).id == second.id
        assert len(await payment_service.list_payments_for_order(order.id)) == 2

    @pytest.mark.asyncio
    async def test_cancelled_order_cannot_be_paid(self, payment_service: PaymentService, order: Order) -> None:
        with pytest.raises(ValidationError):
            await payment_service.create_payment(order.cancel())


class TestGatewayResponses:
    @pytest.mark.asyncio
    async def test_capture_publishes_status_change(
        self, payment_service: PaymentService, order: Order, published: list[DomainEvent]
    ) -> None:
        payment = await captured_payment(payment_service, order)

        assert payment.status == PaymentStatus.CAPTURED
        assert payment.captured_total == order.total
        event = published[-1]
        assert isinstance(event, PaymentStatusChanged)
        assert (event.from_status, event.to_status) == ("pending", "captured")

    @pytest.mark.asyncio
    async def test_repeated_response_is_ignored(self, payment_service: PaymentService, order: Order) -> None:
        payment = await captured_payment(payment_service, order)

        again = await payment_service.record_gateway_response(
            payment.id, GatewayResponse(status="succeeded", gateway_transaction_id="pi_1")
        )

        assert len(again.transactions) == 1
        assert again.version == payment.version

    @pytest.mark.asyncio
    async def test_unknown_status_is_recorded_then_raised(
        self, payment_service: PaymentService, order: Order
    ) -> None:
        payment = await payment_service.create_payment(order)

        with pytest.raises(UnknownGatewayStatusError) as exc_info:
            await payment_service.record_gateway_response(
                payment.id, GatewayResponse(status="on_hold", gateway_transaction_id="pi_2")
            )

        assert exc_info.value.raw_status == "on_hold"
        stored = await payment_service.get_payment(payment.id)
        assert stored.status == PaymentStatus.PENDING
        assert stored.latest_transaction.raw_status == "on_hold"
        assert stored.latest_transaction.status is None

    @pytest.mark.asyncio
    async def test_failed_payment_cannot_capture(self, payment_service: PaymentService, order: Order) -> None:
        payment = await payment_service.create_payment(order)
        await payment_service.record_gateway_response(payment.id, GatewayResponse(status="failed"))

        with pytest.raises(InvalidTransitionError):
            await payment_service.record_gateway_response(payment.id, GatewayResponse(status="captured"))

    @pytest.mark.asyncio
    async def test_capture_under_new_gateway_id_rejected(self, payment_service: PaymentService, order: Order) -> None:
        payment = await captured_payment(payment_service, order)

        with pytest.raises(ValidationError):
            await payment_service.record_gateway_response(
                payment.id, GatewayResponse(status="succeeded", gateway_transaction_id="ch_2")
            )

        stored = await payment_service.get_payment(payment.id)
        assert stored.captured_total == payment.amount
        assert len(stored.captured_transactions) == 1
        with pytest.raises(RefundExceedsCapturedError):
            await payment_service.request_refund(payment.id, amount=payment.amount + 1)

    @pytest.mark.asyncio
    async def test_unknown_payment(self, payment_service: PaymentService) -> None:
        with pytest.raises(NotFoundError):
            await payment_service.record_gateway_response(uuid4(), GatewayResponse(status="captured"))

    @pytest.mark.asyncio
    async def test_pending_payments_listed(self, payment_service: PaymentService, order: Order) -> None:
        payment = await payment_service.create_payment(order)

        assert [p.id for p in await payment_service.list_pending_payments()] == [payment.id]


class TestRefunds:
    @pytest.mark.asyncio
    async def test_full_refund(
        self, payment_service: PaymentService, order: Order, published: list[DomainEvent]
    ) -> None:
        payment = await captured_payment(payment_service, order)

        refund = await payment_service.request_refund(payment.id, reason="customer request")
        assert refund.amount == order.total
        assert refund.status == RefundStatus.PENDING
        assert isinstance(published[-1], RefundRequested)

        settled_refund, settled = await payment_service.confirm_refund(refund.id, True, "re_1")

        assert settled_refund.status == RefundStatus.SUCCESS
        assert settled_refund.gateway_refund_id == "re_1"
        assert settled.status == PaymentStatus.REFUNDED
        assert any(isinstance(e, RefundConfirmed) and e.succeeded for e in published)
        assert isinstance(published[-1], PaymentStatusChanged)

    @pytest.mark.asyncio
    async def test_partial_refunds(self, payment_service: PaymentService, order: Order) -> None:
        payment = await captured_payment(payment_service, order)

        first = await payment_service.request_refund(payment.id, amount=Decimal("30000"))
        _, partially = await payment_service.confirm_refund(first.id, True)
        assert partially.status == PaymentStatus.PARTIALLY_REFUNDED

        transaction = partially.captured_transactions[0]
        assert await payment_service.refundable_amount(transaction) == order.total - Decimal("30000")

        rest = await payment_service.request_refund(payment.id)
        _, refunded = await payment_service.confirm_refund(rest.id, True)
        assert refunded.status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_pending_refund_reserves_funds(self, payment_service: PaymentService, order: Order) -> None:
        payment = await captured_payment(payment_service, order)
        await payment_service.request_refund(payment.id, amount=order.total - Decimal("1000"))

        with pytest.raises(RefundExceedsCapturedError):
            await payment_service.request_refund(payment.id, amount=Decimal("2000"))

        assert len(await payment_service.list_pending_refunds()) == 1

    @pytest.mark.asyncio
    async def test_failed_refund_releases_funds(self, payment_service: PaymentService, order: Order) -> None:
        payment = await captured_payment(payment_service, order)
        refund = await payment_service.request_refund(payment.id)

        failed, unchanged = await payment_service.confirm_refund(refund.id, False)

        assert failed.status == RefundStatus.FAILED
        assert unchanged.status == PaymentStatus.CAPTURED
        retry = await payment_service.request_refund(payment.id)
        assert retry.amount == order.total

    @pytest.mark.asyncio
    async def test_refund_settles_once(self, payment_service: PaymentService, order: Order) -> None:
        payment = await captured_payment(payment_service, order)
        refund = await payment_service.request_refund(payment.id)
        await payment_service.confirm_refund(refund.id, True)

        with pytest.raises(InvalidTransitionError):
            await payment_service.confirm_refund(refund.id, True)

    @pytest.mark.asyncio
    async def test_refund_requires_capture(self, payment_service: PaymentService, order: Order) -> None:
        payment = await payment_service.create_payment(order)

        with pytest.raises(PaymentNotCapturedError):
            await payment_service.request_refund(payment.id)

    @pytest.mark.asyncio
    async def test_list_refunds(self, payment_service: PaymentService, order: Order) -> None:
        payment = await captured_payment(payment_service, order)
        refund = await payment_service.request_refund(payment.id, amount=Decimal("5000"))

        assert [r.id for r in await payment_service.list_refunds(payment.id)] == [refund.id]
        assert (await payment_service.get_refund(refund.id)).amount == Decimal("5000")


class TestOrderPaymentGuard:
    @pytest.mark.asyncio
    async def test_reload_prices_latest_order(self, payment_service: PaymentService, order: Order, make_item) -> None:
        repriced = order.with_items(
            [make_item(unit_price="100000", quantity=1)],
            discount=Decimal("0"),
            coupon_code=None,
            shipping_fee=order.shipping_fee,
        )

        async def reload(order_id):
            return repriced

        payment = await payment_service.create_payment(order, reload=reload)

        assert payment.amount == repriced.total == Decimal("130000")

    @pytest.mark.asyncio
    async def test_no_active_payment(self, payment_service: PaymentService, order: Order) -> None:
        async with payment_service.no_active_payment(order.id):
            pass

        await payment_service.create_payment(order)

        with pytest.raises(PaymentConflictError):
            async with payment_service.no_active_payment(order.id):
                pass


class TestAuditTrail:
    @pytest.mark.asyncio
    async def test_payment_transitions_audited(
        self, payment_service: PaymentService, order: Order, audit: InMemoryAuditLogService
    ) -> None:
        payment = await captured_payment(payment_service, order)
        refund = await payment_service.request_refund(payment.id)
        await payment_service.confirm_refund(refund.id, True, "re_1")

        entries = audit.entries_for(str(payment.id))
        assert [e.action for e in entries] == [AuditAction.CREATE, AuditAction.UPDATE, AuditAction.UPDATE]
        assert {e.table_name for e in entries} == {"payments"}
        assert [(e.old_data or {}).get("status") for e in entries] == [None, "pending", "captured"]
        assert [e.new_data["status"] for e in entries] == ["pending", "captured", "refunded"]
        assert entries[1].new_data["gateway_transaction_id"] == "pi_1"

        refund_entries = audit.entries_for(str(refund.id))
        assert [e.table_name for e in refund_entries] == ["refund_transactions", "refund_transactions"]
        assert [e.new_data["status"] for e in refund_entries] == ["pending", "success"]

    @pytest.mark.asyncio
    async def test_failed_refund_audits_refund_only(
        self, payment_service: PaymentService, order: Order, audit: InMemoryAuditLogService
    ) -> None:
        payment = await captured_payment(payment_service, order)
        refund = await payment_service.request_refund(payment.id)
        await payment_service.confirm_refund(refund.id, False)

        assert len(audit.entries_for(str(payment.id))) == 2
        assert audit.entries_for(str(refund.id))[-1].new_data["status"] == "failed"

    @pytest.mark.asyncio
    async def test_ignored_repeat_not_audited(
        self, payment_service: PaymentService, order: Order, audit: InMemoryAuditLogService
    ) -> None:
        payment = await captured_payment(payment_service, order)
        await payment_service.record_gateway_response(
            payment.id, GatewayResponse(status="succeeded", gateway_transaction_id="pi_1")
        )

        assert len(audit.entries_for(str(payment.id))) == 2
