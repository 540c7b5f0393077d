"""Typed failures raised by the ordering, payment and promotion core.

Every error carries a stable ``error_type`` so a transport layer can map it to a
response without inspecting messages. Errors flagged ``retryable`` are safe to
retry with ``src.core.retry.retry_on_conflict``.
"""

from typing import Any


class CommerceError(Exception):
    """Base exception for domain and persistence failures."""

    error_type = "commerce_error"
    retryable = False

    def __init__(
        self,
        message: str,
        error_type: str | None = None,
        details: list[dict[str, Any]] | None = None,
    ) -> None:
        """Initialize the error.

        Args:
            message: Human-readable error message.
            error_type: Overrides the class-level error category.
            details: Optional additional error details.
        """
        self.message = message
        if error_type is not None:
            self.error_type = error_type
        self.details = details
        super().__init__(message)


class ValidationError(CommerceError):
    """Malformed input rejected before an aggregate is built."""

    error_type = "validation_error"

    def __init__(self, message: str = "Validation error", details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message, details=details)


class NotFoundError(CommerceError):
    """Entity lookup miss."""

    error_type = "not_found"

    def __init__(self, resource: str, identifier: Any, field: str = "id") -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            f"{resource} not found with {field}: {identifier}",
            details=[{"loc": [field], "msg": str(identifier), "type": "not_found"}],
        )


class InvalidTransitionError(CommerceError):
    """Illegal state-machine edge."""

    error_type = "invalid_transition"

    def __init__(self, entity: str, current: Any, target: Any, reason: str | None = None) -> None:
        self.entity = entity
        self.current = current
        self.target = target
        message = f"{entity} cannot move from {_label(current)} to {_label(target)}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class InvalidCouponError(CommerceError):
    """A coupon cannot be used for this order."""

    error_type = "invalid_coupon"

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        super().__init__(message)


class CouponExpiredError(InvalidCouponError):
    error_type = "coupon_expired"

    def __init__(self, code: str) -> None:
        super().__init__(code, f"Coupon {code} has expired")


class CouponNotStartedError(CouponExpiredError):
    """Outside the validity window on the early side."""

    error_type = "coupon_not_started"

    def __init__(self, code: str) -> None:
        InvalidCouponError.__init__(self, code, f"Coupon {code} is not yet valid")


class CouponInactiveError(InvalidCouponError):
    error_type = "coupon_inactive"

    def __init__(self, code: str) -> None:
        super().__init__(code, f"Coupon {code} is not active")


class CouponUsageExceededError(InvalidCouponError):
    error_type = "coupon_usage_exceeded"

    def __init__(self, code: str) -> None:
        super().__init__(code, f"Coupon {code} usage limit exceeded")


class CouponMinOrderNotMetError(InvalidCouponError):
    error_type = "coupon_min_order_not_met"

    def __init__(self, code: str, min_order_value: Any) -> None:
        self.min_order_value = min_order_value
        super().__init__(code, f"Minimum order value of {min_order_value} required for coupon {code}")


class RefundExceedsCapturedError(CommerceError):
    """Refund amount is larger than what remains refundable."""

    error_type = "refund_exceeds_captured"

    def __init__(self, requested: Any, refundable: Any) -> None:
        self.requested = requested
        self.refundable = refundable
        super().__init__(f"Refund amount {requested} exceeds refundable amount {refundable}")


class PaymentNotCapturedError(CommerceError):
    """Refund requested for money that was never captured."""

    error_type = "payment_not_captured"


class UnknownGatewayStatusError(CommerceError):
    """Gateway reported a status that maps to no payment state.

    The transaction is still recorded on the payment; the payment status is
    left untouched and needs manual reconciliation.
    """

    error_type = "unknown_gateway_status"

    def __init__(self, payment_id: Any, raw_status: str) -> None:
        self.payment_id = payment_id
        self.raw_status = raw_status
        super().__init__(f"Unknown gateway status '{raw_status}' for payment {payment_id}")


class PaymentConflictError(CommerceError):
    """An order already has an active payment attempt."""

    error_type = "payment_conflict"


class ConcurrentModificationError(CommerceError):
    """Optimistic-lock conflict; the caller should reload and retry."""

    error_type = "concurrent_modification"
    retryable = True

    def __init__(self, resource: str, identifier: Any) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} was modified concurrently")


class RepositoryTimeoutError(CommerceError):
    """A storage call or lock acquisition did not finish in time."""

    error_type = "repository_timeout"
    retryable = True


class OrderLockedError(CommerceError):
    """Items changed on an order past PENDING, or its address after a terminal state."""

    error_type = "order_locked"


def _label(value: Any) -> str:
    return getattr(value, "value", str(value))
