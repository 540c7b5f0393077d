"""Payment settlement and refund service."""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from decimal import Decimal
from uuid import UUID

from src.core.errors import (
    NotFoundError,
    PaymentConflictError,
    PaymentNotCapturedError,
    UnknownGatewayStatusError,
    ValidationError,
)
from src.core.events import EventDispatcher
from src.core.locks import KeyedLockRegistry
from src.core.retry import retry_on_conflict
from src.models.audit import AuditAction, AuditEntry
from src.models.events import PaymentStatusChanged, RefundConfirmed, RefundRequested
from src.models.order import Order
from src.models.payment import GatewayResponse, Payment, PaymentStatus, PaymentTransaction, RefundStatus, RefundTransaction
from src.repositories.interfaces import PaymentRepository, RefundRepository
from src.services.audit_service import AuditLogService

logger = logging.getLogger(__name__)

PAYMENTS_TABLE = "payments"
REFUNDS_TABLE = "refund_transactions"


def _payment_lock(payment_id: UUID) -> str:
    return f"payment:{payment_id}"


def _order_payment_lock(order_id: UUID) -> str:
    return f"order-payment:{order_id}"


def _unreserved(transaction: PaymentTransaction, refunds: list[RefundTransaction]) -> Decimal:
    reserved = sum((r.amount for r in refunds if r.reserves_funds), Decimal("0"))
    return transaction.amount - reserved


class PaymentService:
    """Service for payment attempts, gateway round-trips and refunds.

    The core never calls the gateway; it records what the gateway reported.
    Every payment and refund status change is written to the audit log.
    """

    def __init__(
        self,
        payments: PaymentRepository,
        refunds: RefundRepository,
        locks: KeyedLockRegistry,
        audit: AuditLogService,
        events: EventDispatcher | None = None,
    ) -> None:
        self.payments = payments
        self.refunds = refunds
        self.locks = locks
        self.audit = audit
        self.events = events

    async def create_payment(
        self,
        order: Order,
        reload: Callable[[UUID], Awaitable[Order]] | None = None,
    ) -> Payment:
        """Open a PENDING payment for the order's current total.

        Args:
            order: Order to pay.
            reload: Fetches the order again once its payment lock is held, so
                the amount reflects item changes made while waiting.

        Raises:
            PaymentConflictError: The order already has an active payment.
            ValidationError: The order is terminal or has nothing to pay.
        """
        async with self.locks.hold(_order_payment_lock(order.id)):
            if reload is not None:
                order = await reload(order.id)
            if order.is_terminal:
                raise ValidationError(f"Order {order.order_number} is {order.status.value} and cannot be paid")
            if order.total <= 0:
                raise ValidationError(f"Order {order.order_number} has nothing to pay")
            await self._ensure_no_active_payment(order.id)
            payment = await self.payments.save(
                Payment(
                    order_id=order.id,
                    amount=order.total,
                    currency=order.currency,
                    payment_method=order.payment_method,
                )
            )

        logger.info("Created payment %s for order %s, amount %s %s", payment.id, order.order_number, payment.amount, payment.currency)
        await self._audit(
            PAYMENTS_TABLE,
            payment.id,
            AuditAction.CREATE,
            None,
            {"status": payment.status.value, "amount": str(payment.amount), "order_id": str(order.id)},
        )
        return payment

    @asynccontextmanager
    async def no_active_payment(self, order_id: UUID) -> AsyncIterator[None]:
        """Hold the order's payment lock for a block that needs the order unpaid.

        No payment can be opened for the order while the block runs.

        Raises:
            PaymentConflictError: The order already has an active payment.
        """
        async with self.locks.hold(_order_payment_lock(order_id)):
            await self._ensure_no_active_payment(order_id)
            yield

    async def _ensure_no_active_payment(self, order_id: UUID) -> None:
        for existing in await self.payments.find_all_by_order_id(order_id):
            if existing.status.is_active:
                raise PaymentConflictError(
                    f"Order {order_id} already has an active payment {existing.id} ({existing.status.value})"
                )

    async def get_payment(self, payment_id: UUID) -> Payment:
        payment = await self.payments.find_by_id(payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return payment

    async def get_payment_for_order(self, order_id: UUID) -> Payment:
        """Latest payment attempt for an order."""
        payment = await self.payments.find_by_order_id(order_id)
        if payment is None:
            raise NotFoundError("Payment", order_id, field="order_id")
        return payment

    async def list_payments_for_order(self, order_id: UUID) -> list[Payment]:
        return await self.payments.find_all_by_order_id(order_id)

    async def list_pending_payments(self) -> list[Payment]:
        return await self.payments.find_pending_payments()

    async def get_refund(self, refund_id: UUID) -> RefundTransaction:
        refund = await self.refunds.find_by_id(refund_id)
        if refund is None:
            raise NotFoundError("Refund", refund_id)
        return refund

    async def list_refunds(self, payment_id: UUID) -> list[RefundTransaction]:
        return await self.refunds.find_by_payment_id(payment_id)

    async def list_pending_refunds(self) -> list[RefundTransaction]:
        return await self.refunds.find_pending_refunds()

    async def record_gateway_response(self, payment_id: UUID, response: GatewayResponse) -> Payment:
        """Append a gateway round-trip to the payment and apply its status.

        A status the core does not recognize is still recorded; the payment
        status stays as it was and the error is raised for reconciliation.

        Raises:
            NotFoundError: Unknown payment.
            InvalidTransitionError: The reported status is not reachable.
            UnknownGatewayStatusError: The reported status maps to no payment state.
        """
        async with self.locks.hold(_payment_lock(payment_id)):
            before, after = await self._record_once(payment_id, response)

        if after is not before:
            await self._audit(
                PAYMENTS_TABLE,
                payment_id,
                AuditAction.UPDATE,
                {"status": before.status.value},
                {
                    "status": after.status.value,
                    "gateway_status": response.status,
                    "gateway_transaction_id": response.gateway_transaction_id,
                },
            )

        if PaymentStatus.from_gateway(response.status) is None:
            logger.warning(
                "Unknown gateway status %r for payment %s (gateway txn %s); left in %s for reconciliation",
                response.status,
                payment_id,
                response.gateway_transaction_id,
                after.status.value,
            )
            raise UnknownGatewayStatusError(payment_id, response.status)

        if before.status != after.status:
            logger.info("Payment %s: %s -> %s", payment_id, before.status.value, after.status.value)
            await self._publish_status_change(after, before.status)
        return after

    @retry_on_conflict
    async def _record_once(self, payment_id: UUID, response: GatewayResponse) -> tuple[Payment, Payment]:
        before = await self.get_payment(payment_id)
        updated = before.record_gateway_response(response)
        if updated is before:
            logger.info(
                "Ignoring repeated gateway transaction %s for payment %s", response.gateway_transaction_id, payment_id
            )
            return before, before
        return before, await self.payments.save(updated)

    async def refundable_amount(self, transaction: PaymentTransaction) -> Decimal:
        """Captured amount of ``transaction`` not yet reserved by pending or successful refunds."""
        prior = await self.refunds.find_by_payment_transaction_id(transaction.id)
        return _unreserved(transaction, prior)

    async def request_refund(
        self,
        payment_id: UUID,
        transaction_id: UUID | None = None,
        amount: Decimal | None = None,
        reason: str | None = None,
    ) -> RefundTransaction:
        """Open a PENDING refund against a captured transaction.

        Args:
            payment_id: Payment to refund.
            transaction_id: Captured transaction; defaults to the latest capture.
            amount: Amount; defaults to everything still refundable on that transaction.
            reason: Optional reason.

        Raises:
            PaymentNotCapturedError: Nothing was captured.
            RefundExceedsCapturedError: Amount is above the refundable remainder.
        """
        async with self.locks.hold(_payment_lock(payment_id)):
            payment = await self.get_payment(payment_id)
            if transaction_id is None:
                captures = payment.captured_transactions
                if not captures:
                    raise PaymentNotCapturedError(f"Payment {payment_id} has no captured transaction")
                transaction_id = captures[-1].id
            transaction = payment.get_transaction(transaction_id)
            prior = await self.refunds.find_by_payment_transaction_id(transaction_id)
            if amount is None:
                amount = _unreserved(transaction, prior)
            refund = payment.request_refund(transaction_id, amount, prior, reason=reason)
            refund = await self.refunds.save(refund)

        logger.info("Requested refund %s of %s on payment %s", refund.id, refund.amount, payment_id)
        await self._audit(
            REFUNDS_TABLE,
            refund.id,
            AuditAction.CREATE,
            None,
            {"status": refund.status.value, "amount": str(refund.amount), "payment_id": str(payment_id)},
        )
        if self.events:
            await self.events.publish(
                RefundRequested(
                    refund_id=refund.id,
                    payment_id=payment_id,
                    payment_transaction_id=transaction_id,
                    amount=refund.amount,
                )
            )
        return refund

    async def confirm_refund(
        self,
        refund_id: UUID,
        success: bool,
        gateway_refund_id: str | None = None,
    ) -> tuple[RefundTransaction, Payment]:
        """Settle a refund with the gateway's verdict.

        On success the payment becomes PARTIALLY_REFUNDED or REFUNDED depending
        on what remains captured; on failure the payment is left unchanged.

        Raises:
            NotFoundError: Unknown refund.
            InvalidTransitionError: The refund was already settled.
        """
        refund = await self.get_refund(refund_id)
        async with self.locks.hold(_payment_lock(refund.payment_id)):
            refund = await self._confirm_once(refund_id, success, gateway_refund_id)
            before, payment = await self._settle_once(refund.payment_id, success)

        if success:
            logger.info("Refund %s succeeded; payment %s is %s", refund_id, payment.id, payment.status.value)
        else:
            logger.warning("Refund %s failed at the gateway; payment %s unchanged", refund_id, payment.id)

        await self._audit(
            REFUNDS_TABLE,
            refund.id,
            AuditAction.UPDATE,
            {"status": RefundStatus.PENDING.value},
            {"status": refund.status.value, "gateway_refund_id": refund.gateway_refund_id},
        )
        if before.status != payment.status:
            await self._audit(
                PAYMENTS_TABLE,
                payment.id,
                AuditAction.UPDATE,
                {"status": before.status.value},
                {"status": payment.status.value, "refund_id": str(refund.id)},
            )

        if self.events:
            await self.events.publish(
                RefundConfirmed(
                    refund_id=refund.id,
                    payment_id=payment.id,
                    succeeded=success,
                    payment_status=payment.status.value,
                )
            )
        if before.status != payment.status:
            await self._publish_status_change(payment, before.status)
        return refund, payment

    @retry_on_conflict
    async def _confirm_once(self, refund_id: UUID, success: bool, gateway_refund_id: str | None) -> RefundTransaction:
        refund = await self.get_refund(refund_id)
        return await self.refunds.save(refund.confirm(success, gateway_refund_id))

    @retry_on_conflict
    async def _settle_once(self, payment_id: UUID, success: bool) -> tuple[Payment, Payment]:
        payment = await self.get_payment(payment_id)
        if not success:
            return payment, payment
        refunds = await self.refunds.find_by_payment_id(payment_id)
        refunded_total = sum((r.amount for r in refunds if r.status == RefundStatus.SUCCESS), Decimal("0"))
        settled = payment.settle_refunds(refunded_total)
        if settled is payment:
            return payment, payment
        return payment, await self.payments.save(settled)

    async def _publish_status_change(self, payment: Payment, from_status: PaymentStatus) -> None:
        if self.events:
            await self.events.publish(
                PaymentStatusChanged(
                    payment_id=payment.id,
                    order_id=payment.order_id,
                    from_status=from_status.value,
                    to_status=payment.status.value,
                )
            )

    async def _audit(
        self,
        table_name: str,
        record_id: UUID,
        action: AuditAction,
        old_data: dict | None,
        new_data: dict | None,
    ) -> None:
        entry = AuditEntry(
            table_name=table_name,
            record_id=str(record_id),
            action=action,
            old_data=old_data,
            new_data=new_data,
        )
        try:
            await self.audit.record(entry)
        except Exception:
            logger.exception("Failed to write audit entry for %s %s", table_name, record_id)
