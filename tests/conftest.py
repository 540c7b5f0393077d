"""Pytest configuration and fixtures."""

import os
from collections.abc import Callable, Generator
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOCK_TIMEOUT_SECONDS", "5")
os.environ.setdefault("CONFLICT_MAX_RETRIES", "3")

from src.models.order import Address, Order, OrderItem  # noqa: E402
from src.models.payment import PaymentMethod  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Reload settings for every test so patched environments do not leak."""
    from src.core.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def test_settings() -> Any:
    """Provide settings for the in-memory backend with no external services."""
    from src.core.config import Settings

    return Settings(
        storage_backend="memory",
        default_currency="VND",
        tax_rate=Decimal("0"),
        shipping_fee_standard=Decimal("30000"),
        shipping_fee_express=Decimal("60000"),
        free_shipping_threshold=None,
        stripe_secret_key="",
        stripe_webhook_secret="",
        resend_api_key="",
        lock_timeout_seconds=5.0,
        conflict_max_retries=3,
    )


@pytest.fixture
def mock_supabase_client() -> Generator[MagicMock, None, None]:
    """Provide a mocked Supabase client.

    Yields:
        MagicMock: Mocked Supabase client for testing.
    """
    mock_client = MagicMock()

    mock_response = MagicMock()
    mock_response.data = []
    mock_client.table.return_value.select.return_value.limit.return_value.execute.return_value = (
        mock_response
    )

    with patch("src.core.supabase.get_supabase_client", return_value=mock_client):
        yield mock_client


@pytest.fixture
def sample_address() -> Address:
    return Address(
        recipient_name="Nguyen Van A",
        phone="0901234567",
        street_address="12 Le Loi",
        ward="Ben Nghe",
        district="District 1",
        city="Ho Chi Minh City",
    )


@pytest.fixture
def make_item() -> Callable[..., OrderItem]:
    """Factory for priced order items."""

    def _make(
        unit_price: str | Decimal = "500000",
        quantity: int = 2,
        product_id: str = "prod-1",
        variant_id: str | None = None,
    ) -> OrderItem:
        return OrderItem(
            product_id=product_id,
            variant_id=variant_id,
            product_name=f"Product {product_id}",
            quantity=quantity,
            unit_price=Decimal(unit_price),
        )

    return _make


@pytest.fixture
def make_order(sample_address: Address, make_item: Callable[..., OrderItem]) -> Callable[..., Order]:
    """Factory for PENDING orders; the default subtotal is 1,000,000 VND."""

    def _make(**overrides: Any) -> Order:
        params: dict[str, Any] = {
            "user_id": "user-1",
            "items": [make_item()],
            "shipping_address": sample_address,
            "payment_method": PaymentMethod.CREDIT_CARD,
            "shipping_method": "standard",
            "currency": "VND",
            "shipping_fee": Decimal("30000"),
        }
        params.update(overrides)
        return Order.create(**params)

    return _make
