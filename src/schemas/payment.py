"""Payment and refund Pydantic schemas for request/response models."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from src.models.payment import Payment, PaymentMethod, PaymentStatus, PaymentTransaction, RefundStatus, RefundTransaction


class PaymentTransactionResponse(BaseModel):
    """Schema for one gateway round-trip."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    gateway_transaction_id: str | None = None
    response_code: str | None = None
    raw_status: str
    status: PaymentStatus | None = Field(default=None, description="None when the gateway status was not recognized")
    amount: Decimal
    performed_at: datetime

    @classmethod
    def from_transaction(cls, txn: PaymentTransaction) -> "PaymentTransactionResponse":
        return cls.model_validate(txn)


class PaymentResponse(BaseModel):
    """Schema for payment responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(description="Payment unique identifier")
    order_id: UUID = Field(description="Order being paid")
    amount: Decimal
    currency: str
    payment_method: PaymentMethod
    status: PaymentStatus
    captured_total: Decimal
    transactions: list[PaymentTransactionResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentResponse":
        return cls(
            id=payment.id,
            order_id=payment.order_id,
            amount=payment.amount,
            currency=payment.currency,
            payment_method=payment.payment_method,
            status=payment.status,
            captured_total=payment.captured_total,
            transactions=[PaymentTransactionResponse.from_transaction(t) for t in payment.transactions],
            created_at=payment.created_at,
            updated_at=payment.updated_at,
        )


class RefundRequest(BaseModel):
    """Schema for requesting a refund."""

    transaction_id: UUID | None = Field(default=None, description="Captured transaction; defaults to the latest capture")
    amount: Decimal | None = Field(default=None, gt=0, description="Defaults to the full refundable remainder")
    reason: str | None = Field(default=None, max_length=255)


class RefundResponse(BaseModel):
    """Schema for refund responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payment_id: UUID
    payment_transaction_id: UUID
    amount: Decimal
    status: RefundStatus
    gateway_refund_id: str | None = None
    reason: str | None = None
    created_at: datetime

    @classmethod
    def from_refund(cls, refund: RefundTransaction) -> "RefundResponse":
        return cls.model_validate(refund)
