"""Payment aggregate, its gateway transaction trail and refund transactions."""

from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from src.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    PaymentNotCapturedError,
    RefundExceedsCapturedError,
    ValidationError,
)
from src.models.common import utc_now


class PaymentMethod(str, Enum):
    """Payment method values."""

    COD = "cod"
    BANK_TRANSFER = "bank_transfer"
    MOMO = "momo"
    VNPAY = "vnpay"
    ZALOPAY = "zalopay"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"

    @property
    def is_online(self) -> bool:
        return self != PaymentMethod.COD


class PaymentStatus(str, Enum):
    """Payment lifecycle states."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.FAILED, PaymentStatus.REFUNDED)

    @property
    def is_active(self) -> bool:
        """Whether a payment in this state blocks a new attempt for the same order."""
        return self not in (PaymentStatus.FAILED, PaymentStatus.REFUNDED)

    @property
    def has_captured_funds(self) -> bool:
        return self in (PaymentStatus.CAPTURED, PaymentStatus.PARTIALLY_REFUNDED)

    def can_transition_to(self, target: "PaymentStatus") -> bool:
        return target in PAYMENT_TRANSITIONS[self]

    @classmethod
    def from_gateway(cls, raw_status: str | None) -> "PaymentStatus | None":
        """Map a gateway-reported status code to a payment status.

        Returns:
            PaymentStatus | None: None when the code is not recognized.
        """
        if not raw_status:
            return None
        code = raw_status.strip().lower()
        if code in GATEWAY_STATUS_ALIASES:
            return GATEWAY_STATUS_ALIASES[code]
        try:
            return cls(code)
        except ValueError:
            return None


PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED, PaymentStatus.FAILED}),
    PaymentStatus.AUTHORIZED: frozenset({PaymentStatus.CAPTURED, PaymentStatus.FAILED}),
    PaymentStatus.CAPTURED: frozenset({PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset({PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# Statuses a gateway round-trip may move a payment into; refund states are
# reached only through refund confirmation.
GATEWAY_REPORTABLE_STATUSES = frozenset(
    {PaymentStatus.PENDING, PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED, PaymentStatus.FAILED}
)

GATEWAY_STATUS_ALIASES: dict[str, PaymentStatus] = {
    "processing": PaymentStatus.PENDING,
    "completed": PaymentStatus.CAPTURED,
    "succeeded": PaymentStatus.CAPTURED,
    "success": PaymentStatus.CAPTURED,
    "cancelled": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
}


class RefundStatus(str, Enum):
    """Refund lifecycle states."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self != RefundStatus.PENDING


class GatewayResponse(BaseModel):
    """What the payment gateway reported for one round-trip."""

    model_config = ConfigDict(frozen=True)

    status: str = Field(description="Gateway status code, mapped through PaymentStatus.from_gateway")
    gateway_transaction_id: str | None = None
    response_code: str | None = None
    amount: Decimal | None = Field(default=None, ge=0, description="Amount this round-trip covered")
    raw_payload: dict[str, Any] | None = None


class PaymentTransaction(BaseModel):
    """One gateway round-trip, appended to the owning payment's audit trail."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    payment_id: UUID
    gateway_transaction_id: str | None = None
    response_code: str | None = None
    raw_payload: dict[str, Any] | None = None
    raw_status: str
    status: PaymentStatus | None = Field(default=None, description="None when the gateway status was not recognized")
    amount: Decimal = Field(ge=0)
    performed_at: datetime = Field(default_factory=utc_now)

    @property
    def is_capture(self) -> bool:
        return self.status == PaymentStatus.CAPTURED


class RefundTransaction(BaseModel):
    """A refund against one captured payment transaction."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    payment_id: UUID
    payment_transaction_id: UUID
    amount: Decimal = Field(gt=0)
    status: RefundStatus = RefundStatus.PENDING
    gateway_refund_id: str | None = None
    reason: str | None = None
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def reserves_funds(self) -> bool:
        """Pending and successful refunds both count against the refundable amount."""
        return self.status in (RefundStatus.PENDING, RefundStatus.SUCCESS)

    def confirm(
        self,
        success: bool,
        gateway_refund_id: str | None = None,
        now: datetime | None = None,
    ) -> "RefundTransaction":
        """Settle the refund with the gateway's verdict.

        Raises:
            InvalidTransitionError: The refund is already settled.
        """
        target = RefundStatus.SUCCESS if success else RefundStatus.FAILED
        if self.status.is_terminal:
            raise InvalidTransitionError("Refund", self.status, target, "refund already settled")
        return self.model_copy(
            update={
                "status": target,
                "gateway_refund_id": gateway_refund_id or self.gateway_refund_id,
                "updated_at": now or utc_now(),
            }
        )


class Payment(BaseModel):
    """A payment attempt for an order, with its gateway transaction history."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    order_id: UUID
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    payment_method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    transactions: tuple[PaymentTransaction, ...] = ()
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def captured_transactions(self) -> list[PaymentTransaction]:
        return [txn for txn in self.transactions if txn.is_capture]

    @property
    def captured_total(self) -> Decimal:
        return sum((txn.amount for txn in self.captured_transactions), Decimal("0"))

    @property
    def latest_transaction(self) -> PaymentTransaction | None:
        return self.transactions[-1] if self.transactions else None

    def get_transaction(self, transaction_id: UUID) -> PaymentTransaction:
        for txn in self.transactions:
            if txn.id == transaction_id:
                return txn
        raise NotFoundError("PaymentTransaction", transaction_id)

    def _is_duplicate(self, response: GatewayResponse, status: PaymentStatus | None) -> bool:
        if not response.gateway_transaction_id:
            return False
        return any(
            txn.gateway_transaction_id == response.gateway_transaction_id and txn.status == status
            for txn in self.transactions
        )

    def record_gateway_response(self, response: GatewayResponse, now: datetime | None = None) -> "Payment":
        """Append a gateway transaction and move to the status it reports.

        An unrecognized status is still appended, with ``status=None``, and the
        payment status is left unchanged for manual reconciliation. A repeat of an
        already-recorded gateway transaction/status pair is ignored.

        Raises:
            InvalidTransitionError: The reported status is not reachable.
            ValidationError: The reported amount exceeds the payment amount, or a
                capture would take the captured total above it.
        """
        now = now or utc_now()
        status = PaymentStatus.from_gateway(response.status)
        if self._is_duplicate(response, status):
            return self

        amount = response.amount if response.amount is not None else self.amount
        if amount > self.amount:
            raise ValidationError(f"Gateway amount {amount} exceeds payment amount {self.amount}")
        if status == PaymentStatus.CAPTURED and self.captured_total + amount > self.amount:
            raise ValidationError(
                f"Capture of {amount} on payment {self.id} would exceed the payment amount {self.amount} "
                f"(already captured {self.captured_total})"
            )

        if status is not None and status != self.status:
            if status not in GATEWAY_REPORTABLE_STATUSES:
                raise InvalidTransitionError(
                    "Payment", self.status, status, "refund states are settled through refund confirmation"
                )
            if not self.status.can_transition_to(status):
                raise InvalidTransitionError("Payment", self.status, status)

        txn = PaymentTransaction(
            payment_id=self.id,
            gateway_transaction_id=response.gateway_transaction_id,
            response_code=response.response_code,
            raw_payload=response.raw_payload,
            raw_status=response.status,
            status=status,
            amount=amount,
            performed_at=now,
        )
        return self.model_copy(
            update={
                "transactions": (*self.transactions, txn),
                "status": status if status is not None else self.status,
                "updated_at": now,
            }
        )

    def request_refund(
        self,
        transaction_id: UUID,
        amount: Decimal,
        prior_refunds: Iterable[RefundTransaction] = (),
        reason: str | None = None,
        now: datetime | None = None,
    ) -> RefundTransaction:
        """Create a pending refund against one captured transaction.

        Args:
            transaction_id: The captured PaymentTransaction to refund.
            amount: Amount to refund.
            prior_refunds: Refunds already recorded against that transaction.
            reason: Optional refund reason.
            now: Creation time.

        Raises:
            PaymentNotCapturedError: No funds were captured.
            NotFoundError: The transaction does not belong to this payment.
            RefundExceedsCapturedError: Amount is above what remains refundable.
        """
        if not self.status.has_captured_funds:
            raise PaymentNotCapturedError(f"Payment {self.id} has not been captured (status: {self.status.value})")
        txn = self.get_transaction(transaction_id)
        if not txn.is_capture:
            raise PaymentNotCapturedError(f"Transaction {transaction_id} did not capture funds")
        if amount <= 0:
            raise ValidationError("Refund amount must be positive")

        refundable = txn.amount - sum(
            (r.amount for r in prior_refunds if r.payment_transaction_id == txn.id and r.reserves_funds),
            Decimal("0"),
        )
        if amount > refundable:
            raise RefundExceedsCapturedError(amount, refundable)

        now = now or utc_now()
        return RefundTransaction(
            payment_id=self.id,
            payment_transaction_id=txn.id,
            amount=amount,
            reason=reason,
            created_at=now,
            updated_at=now,
        )

    def settle_refunds(self, refunded_total: Decimal, now: datetime | None = None) -> "Payment":
        """Recompute the status from the total of successful refunds."""
        if not self.status.has_captured_funds:
            raise PaymentNotCapturedError(f"Payment {self.id} has not been captured (status: {self.status.value})")
        target = PaymentStatus.REFUNDED if refunded_total >= self.captured_total else PaymentStatus.PARTIALLY_REFUNDED
        if refunded_total <= 0:
            return self
        return self.model_copy(update={"status": target, "updated_at": now or utc_now()})
