"""Common schemas used across the application."""

from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from src.core.errors import CommerceError

T = TypeVar("T")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ErrorDetail(BaseModel):
    """Detailed error information for a single error.

    Can be used for field-level validation errors or general error details.
    """

    model_config = ConfigDict(from_attributes=True)

    loc: list[str] | None = Field(default=None, description="Location of error (e.g., field path)")
    msg: str = Field(description="Human-readable error message")
    type: str = Field(description="Error type identifier")


class ErrorResponse(BaseModel):
    """Standard error response schema.

    All errors surfaced to callers should be rendered in this format for consistency.
    """

    model_config = ConfigDict(from_attributes=True)

    error: str = Field(description="Error type or category")
    message: str = Field(description="Human-readable error description")
    retryable: bool = Field(default=False, description="Whether the caller may retry the request")
    details: list[ErrorDetail] | None = Field(default=None, description="Additional error details")
    request_id: str | None = Field(default=None, description="Request ID for tracing")
    timestamp: datetime = Field(default_factory=_utc_now, description="Error timestamp")

    @classmethod
    def from_exception(
        cls,
        error_type: str,
        message: str,
        details: list[dict[str, Any]] | None = None,
        request_id: str | None = None,
        retryable: bool = False,
    ) -> "ErrorResponse":
        """Create an ErrorResponse from exception details.

        Args:
            error_type: Category or type of error.
            message: Human-readable error description.
            details: Optional list of error detail dictionaries.
            request_id: Optional request ID for tracing.
            retryable: Whether the failure is safe to retry.

        Returns:
            ErrorResponse: Formatted error response.
        """
        error_details = None
        if details:
            error_details = [
                ErrorDetail(
                    loc=[str(part) for part in d["loc"]] if d.get("loc") else None,
                    msg=d.get("msg", str(d)),
                    type=d.get("type", "error"),
                )
                for d in details
            ]

        return cls(
            error=error_type,
            message=message,
            retryable=retryable,
            details=error_details,
            request_id=request_id,
        )

    @classmethod
    def from_error(cls, error: CommerceError, request_id: str | None = None) -> "ErrorResponse":
        """Render a CommerceError."""
        return cls.from_exception(
            error_type=error.error_type,
            message=error.message,
            details=error.details,
            request_id=request_id,
            retryable=error.retryable,
        )


class PageResponse(BaseModel, Generic[T]):
    """One page of a listing."""

    items: list[T] = Field(default_factory=list, description="Items on this page")
    page: int = Field(ge=0, description="Zero-based page index")
    size: int = Field(ge=1, description="Requested page size")

    @property
    def has_more(self) -> bool:
        return len(self.items) == self.size
