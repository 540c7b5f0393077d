"""Product catalog collaborator used to price order lines."""

from decimal import Decimal
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field


class ProductSnapshot(BaseModel):
    """Product data and unit price as of the moment an order is priced."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    variant_id: str | None = None
    sku: str | None = None
    product_name: str
    variant_name: str | None = None
    unit_price: Decimal = Field(ge=0)
    is_active: bool = True


class ProductCatalog(Protocol):
    async def get_snapshot(self, product_id: str, variant_id: str | None = None) -> ProductSnapshot | None:
        """Current price snapshot, or None when the product/variant does not exist."""
        ...


class InMemoryProductCatalog:
    def __init__(self, products: list[ProductSnapshot] | None = None) -> None:
        self._products: dict[tuple[str, str | None], ProductSnapshot] = {}
        for product in products or []:
            self.add(product)

    def add(self, product: ProductSnapshot) -> None:
        self._products[(product.product_id, product.variant_id)] = product

    async def get_snapshot(self, product_id: str, variant_id: str | None = None) -> ProductSnapshot | None:
        return self._products.get((product_id, variant_id))
