"""Inventory reservation collaborator."""

import asyncio
import logging
from collections import Counter
from typing import Protocol
from uuid import UUID

from src.core.errors import ValidationError
from src.models.order import OrderItem

logger = logging.getLogger(__name__)


class InventoryService(Protocol):
    async def reserve(self, order_id: UUID, items: tuple[OrderItem, ...]) -> None:
        """Hold stock for an order's items; raises if stock is short."""
        ...

    async def release(self, order_id: UUID) -> None:
        """Return whatever ``reserve`` held for the order. Releasing twice is a no-op."""
        ...


class InMemoryInventoryService:
    """Stock counts per (product, variant); untracked products are unlimited."""

    def __init__(self, stock: dict[tuple[str, str | None], int] | None = None) -> None:
        self._stock: dict[tuple[str, str | None], int] = dict(stock or {})
        self._reservations: dict[UUID, list[tuple[tuple[str, str | None], int]]] = {}
        self._lock = asyncio.Lock()

    def set_stock(self, product_id: str, quantity: int, variant_id: str | None = None) -> None:
        self._stock[(product_id, variant_id)] = quantity

    def available(self, product_id: str, variant_id: str | None = None) -> int | None:
        return self._stock.get((product_id, variant_id))

    def is_reserved(self, order_id: UUID) -> bool:
        return order_id in self._reservations

    async def reserve(self, order_id: UUID, items: tuple[OrderItem, ...]) -> None:
        async with self._lock:
            wanted: Counter[tuple[str, str | None]] = Counter()
            for item in items:
                wanted[(item.product_id, item.variant_id)] += item.quantity
            held = list(wanted.items())
            for key, quantity in held:
                if key in self._stock and self._stock[key] < quantity:
                    raise ValidationError(
                        f"Insufficient stock for product {key[0]}",
                        details=[{"loc": ["items", key[0]], "msg": "insufficient stock", "type": "out_of_stock"}],
                    )
            for key, quantity in held:
                if key in self._stock:
                    self._stock[key] -= quantity
            self._reservations[order_id] = held
            logger.debug("Reserved stock for order %s", order_id)

    async def release(self, order_id: UUID) -> None:
        async with self._lock:
            held = self._reservations.pop(order_id, None)
            if held is None:
                return
            for key, quantity in held:
                if key in self._stock:
                    self._stock[key] += quantity
            logger.debug("Released stock for order %s", order_id)
