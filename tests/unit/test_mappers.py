"""Unit tests for row mappers."""

import json
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from src.models.coupon import Coupon, DiscountType
from src.models.payment import GatewayResponse, Payment, PaymentMethod
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


class TestRowMappers:
    def test_order_round_trip(self, make_order) -> None:
        order = make_order(discount=Decimal("50000"), tax_rate=Decimal("0.1"), coupon_code="SUMMER10", note="Leave at door")

        row = order_to_row(order)

        assert json.loads(json.dumps(row)) == row
        assert row["total"] == "1075000"
        assert order_from_row(row) == order

    def test_payment_round_trip_keeps_transactions(self) -> None:
        payment = Payment(
            order_id=uuid4(),
            amount=Decimal("12.50"),
            currency="USD",
            payment_method=PaymentMethod.CREDIT_CARD,
        )
        payment = payment.record_gateway_response(
            GatewayResponse(status="succeeded", gateway_transaction_id="pi_1", raw_payload={"id": "pi_1"})
        )

        row = payment_to_row(payment)
        restored = payment_from_row(row)

        assert restored == payment
        assert restored.transactions[0].raw_payload == {"id": "pi_1"}

    def test_payment_without_transactions_column(self) -> None:
        payment = Payment(order_id=uuid4(), amount=Decimal("1"), currency="VND", payment_method=PaymentMethod.COD)
        row = payment_to_row(payment)
        row["transactions"] = None

        assert payment_from_row(row).transactions == ()

    def test_refund_round_trip(self) -> None:
        payment = Payment(
            order_id=uuid4(), amount=Decimal("100"), currency="VND", payment_method=PaymentMethod.VNPAY
        ).record_gateway_response(GatewayResponse(status="captured"))
        refund = payment.request_refund(payment.transactions[0].id, Decimal("40"), reason="late")

        assert refund_from_row(refund_to_row(refund)) == refund

    def test_coupon_round_trip(self) -> None:
        coupon = Coupon(
            code="SUMMER10",
            description="Summer sale",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("10"),
            max_discount_amount=Decimal("50000"),
            max_usage_limit=100,
            usage_count=7,
            start_date=datetime(2024, 6, 1, tzinfo=timezone.utc),
            end_date=datetime(2024, 8, 31, tzinfo=timezone.utc),
        )

        assert coupon_from_row(coupon_to_row(coupon)) == coupon
