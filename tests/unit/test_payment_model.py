"""Unit tests for the Payment and RefundTransaction aggregates."""

from decimal import Decimal
from uuid import uuid4

import pytest

from src.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    PaymentNotCapturedError,
    RefundExceedsCapturedError,
    ValidationError,
)
from src.models.payment import (
    GatewayResponse,
    Payment,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
)


@pytest.fixture
def payment() -> Payment:
    return Payment(
        order_id=uuid4(),
        amount=Decimal("1030000"),
        currency="VND",
        payment_method=PaymentMethod.CREDIT_CARD,
    )


@pytest.fixture
def captured(payment: Payment) -> Payment:
    return payment.record_gateway_response(GatewayResponse(status="succeeded", gateway_transaction_id="pi_1"))


class TestGatewayStatusMapping:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("captured", PaymentStatus.CAPTURED),
            ("SUCCEEDED", PaymentStatus.CAPTURED),
            ("processing", PaymentStatus.PENDING),
            ("canceled", PaymentStatus.FAILED),
            ("authorized", PaymentStatus.AUTHORIZED),
            ("on_hold", None),
            ("", None),
            (None, None),
        ],
    )
    def test_from_gateway(self, raw, expected) -> None:
        assert PaymentStatus.from_gateway(raw) == expected

    def test_terminal_states(self) -> None:
        assert PaymentStatus.FAILED.is_terminal
        assert PaymentStatus.REFUNDED.is_terminal
        assert not PaymentStatus.CAPTURED.is_terminal


class TestRecordGatewayResponse:
    def test_capture(self, captured: Payment) -> None:
        assert captured.status == PaymentStatus.CAPTURED
        assert len(captured.transactions) == 1
        assert captured.transactions[0].raw_status == "succeeded"
        assert captured.captured_total == Decimal("1030000")

    def test_authorize_then_capture(self, payment: Payment) -> None:
        authorized = payment.record_gateway_response(GatewayResponse(status="authorized", gateway_transaction_id="pi_1"))
        captured = authorized.record_gateway_response(GatewayResponse(status="captured", gateway_transaction_id="pi_1"))

        assert [t.status for t in captured.transactions] == [PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED]
        assert captured.status == PaymentStatus.CAPTURED

    def test_repeat_is_ignored(self, captured: Payment) -> None:
        again = captured.record_gateway_response(GatewayResponse(status="succeeded", gateway_transaction_id="pi_1"))

        assert again is captured

    def test_unknown_status_recorded_without_transition(self, payment: Payment) -> None:
        updated = payment.record_gateway_response(GatewayResponse(status="on_hold", gateway_transaction_id="pi_1"))

        assert updated.status == PaymentStatus.PENDING
        assert updated.transactions[-1].status is None
        assert updated.transactions[-1].raw_status == "on_hold"

    def test_failed_is_terminal(self, payment: Payment) -> None:
        failed = payment.record_gateway_response(GatewayResponse(status="failed", response_code="card_declined"))

        assert failed.status == PaymentStatus.FAILED
        with pytest.raises(InvalidTransitionError):
            failed.record_gateway_response(GatewayResponse(status="captured"))

    def test_captured_cannot_go_back(self, captured: Payment) -> None:
        with pytest.raises(InvalidTransitionError):
            captured.record_gateway_response(GatewayResponse(status="authorized", gateway_transaction_id="pi_2"))

    def test_refund_states_not_reportable(self, captured: Payment) -> None:
        with pytest.raises(InvalidTransitionError):
            captured.record_gateway_response(GatewayResponse(status="refunded", gateway_transaction_id="pi_1"))

    def test_amount_above_payment_rejected(self, payment: Payment) -> None:
        with pytest.raises(ValidationError):
            payment.record_gateway_response(GatewayResponse(status="captured", amount=Decimal("2000000")))

    def test_second_full_capture_rejected(self, captured: Payment) -> None:
        """A capture under another gateway id cannot count the payment twice."""
        with pytest.raises(ValidationError):
            captured.record_gateway_response(GatewayResponse(status="succeeded", gateway_transaction_id="ch_2"))
        assert captured.captured_total == captured.amount

    def test_partial_captures_up_to_amount(self, payment: Payment) -> None:
        first = payment.record_gateway_response(
            GatewayResponse(status="captured", gateway_transaction_id="pi_1", amount=Decimal("1000000"))
        )
        second = first.record_gateway_response(
            GatewayResponse(status="captured", gateway_transaction_id="pi_2", amount=Decimal("30000"))
        )

        assert second.captured_total == Decimal("1030000")
        with pytest.raises(ValidationError):
            second.record_gateway_response(
                GatewayResponse(status="captured", gateway_transaction_id="pi_3", amount=Decimal("1"))
            )

    def test_get_transaction_unknown(self, payment: Payment) -> None:
        with pytest.raises(NotFoundError):
            payment.get_transaction(uuid4())


class TestRefunds:
    def test_requires_capture(self, payment: Payment) -> None:
        authorized = payment.record_gateway_response(GatewayResponse(status="authorized", gateway_transaction_id="pi_1"))

        with pytest.raises(PaymentNotCapturedError):
            authorized.request_refund(authorized.transactions[0].id, Decimal("1000"))

    def test_amount_above_captured(self, captured: Payment) -> None:
        txn = captured.transactions[0]

        with pytest.raises(RefundExceedsCapturedError) as exc_info:
            captured.request_refund(txn.id, Decimal("1030001"))

        assert exc_info.value.refundable == Decimal("1030000")

    def test_exact_amount_then_refunded(self, captured: Payment) -> None:
        txn = captured.transactions[0]

        refund = captured.request_refund(txn.id, Decimal("1030000"), reason="damaged")
        settled = captured.settle_refunds(refund.confirm(True).amount)

        assert refund.status == RefundStatus.PENDING
        assert refund.payment_transaction_id == txn.id
        assert settled.status == PaymentStatus.REFUNDED

    def test_partial_refund(self, captured: Payment) -> None:
        assert captured.settle_refunds(Decimal("30000")).status == PaymentStatus.PARTIALLY_REFUNDED

    def test_pending_refunds_reserve_funds(self, captured: Payment) -> None:
        txn = captured.transactions[0]
        first = captured.request_refund(txn.id, Decimal("1000000"))

        with pytest.raises(RefundExceedsCapturedError):
            captured.request_refund(txn.id, Decimal("40000"), prior_refunds=[first])
        assert captured.request_refund(txn.id, Decimal("30000"), prior_refunds=[first]).amount == Decimal("30000")

    def test_failed_refunds_release_funds(self, captured: Payment) -> None:
        txn = captured.transactions[0]
        failed = captured.request_refund(txn.id, Decimal("1030000")).confirm(False)

        assert failed.status == RefundStatus.FAILED
        assert captured.request_refund(txn.id, Decimal("1030000"), prior_refunds=[failed]).amount == Decimal("1030000")

    def test_non_positive_amount(self, captured: Payment) -> None:
        with pytest.raises(ValidationError):
            captured.request_refund(captured.transactions[0].id, Decimal("0"))

    def test_confirm_twice_rejected(self, captured: Payment) -> None:
        refund = captured.request_refund(captured.transactions[0].id, Decimal("1000")).confirm(True, "re_1")

        assert refund.gateway_refund_id == "re_1"
        with pytest.raises(InvalidTransitionError):
            refund.confirm(False)

    def test_settle_without_capture(self, payment: Payment) -> None:
        with pytest.raises(PaymentNotCapturedError):
            payment.settle_refunds(Decimal("1"))
