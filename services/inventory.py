"""Inventory ledger: per-product / per-variant stock with atomic reserve and release.

Every stock write is a single conditional UPDATE ("decrement only if
stock >= qty"), so concurrent checkouts can never oversell or drive a
counter negative. Nothing here commits; callers own the transaction, which
is what makes multi-line reservations all-or-nothing.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from exceptions import InsufficientStockError, ResourceNotFoundError, ValidationError
from models import Product, ProductVariant
from observability import stock_reservation_failures_total

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockLine:
    product_id: int
    variant_id: Optional[int]
    quantity: int

    @property
    def key(self):
        return (self.product_id, self.variant_id or 0)


class InventoryLedger:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _has_variants(self, product_id: int) -> bool:
        result = await self.session.exec(
            select(Product.has_variants).where(Product.id == product_id)
        )
        has_variants = result.first()
        if has_variants is None:
            raise ResourceNotFoundError("Product not found", detail={"product_id": product_id})
        return has_variants

    async def _validate_key(self, product_id: int, variant_id: Optional[int]) -> None:
        has_variants = await self._has_variants(product_id)
        if has_variants and variant_id is None:
            raise ValidationError(
                "A variant must be selected for this product",
                detail={"product_id": product_id},
            )
        if not has_variants and variant_id is not None:
            raise ValidationError(
                "This product has no variants",
                detail={"product_id": product_id, "variant_id": variant_id},
            )

    async def check_available(self, product_id: int, variant_id: Optional[int] = None) -> int:
        """Current stock for a product (variant-less) or one of its variants."""
        await self._validate_key(product_id, variant_id)

        if variant_id is None:
            stmt = select(Product.stock).where(Product.id == product_id)
        else:
            stmt = select(ProductVariant.stock).where(
                ProductVariant.id == variant_id,
                ProductVariant.product_id == product_id,
            )
        result = await self.session.exec(stmt)
        stock = result.first()
        if stock is None:
            raise ResourceNotFoundError(
                "Variant not found",
                detail={"product_id": product_id, "variant_id": variant_id},
            )
        return stock

    async def reserve(self, product_id: int, variant_id: Optional[int], qty: int) -> None:
        """Atomically take `qty` units out of stock or raise InsufficientStockError."""
        if qty <= 0:
            raise ValidationError("Quantity must be positive", detail={"quantity": qty})
        await self._validate_key(product_id, variant_id)

        if variant_id is None:
            stmt = (
                update(Product)
                .where(Product.id == product_id, Product.stock >= qty)
                .values(stock=Product.stock - qty, purchase_count=Product.purchase_count + qty)
            )
        else:
            stmt = (
                update(ProductVariant)
                .where(
                    ProductVariant.id == variant_id,
                    ProductVariant.product_id == product_id,
                    ProductVariant.stock >= qty,
                )
                .values(stock=ProductVariant.stock - qty)
            )

        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            # Either the variant doesn't exist (raises NotFound) or stock was short
            available = await self.check_available(product_id, variant_id)
            stock_reservation_failures_total.inc()
            logger.info(
                "[Inventory] Reservation rejected for product %s variant %s: available=%s requested=%s",
                product_id, variant_id, available, qty,
            )
            raise InsufficientStockError(
                f"Insufficient stock. Available: {available}, Required: {qty}",
                product_id=product_id,
                variant_id=variant_id,
                available=available,
                requested=qty,
            )

        if variant_id is not None:
            await self.session.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(purchase_count=Product.purchase_count + qty)
            )

    async def release(self, product_id: int, variant_id: Optional[int], qty: int) -> None:
        """Atomically return `qty` previously reserved units to stock."""
        if qty <= 0:
            raise ValidationError("Quantity must be positive", detail={"quantity": qty})

        if variant_id is None:
            stmt = (
                update(Product)
                .where(Product.id == product_id)
                .values(stock=Product.stock + qty, purchase_count=Product.purchase_count - qty)
            )
        else:
            stmt = (
                update(ProductVariant)
                .where(ProductVariant.id == variant_id, ProductVariant.product_id == product_id)
                .values(stock=ProductVariant.stock + qty)
            )

        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            raise ResourceNotFoundError(
                "Cannot release stock for unknown product or variant",
                detail={"product_id": product_id, "variant_id": variant_id},
            )

        if variant_id is not None:
            await self.session.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(purchase_count=Product.purchase_count - qty)
            )

    async def reserve_many(self, lines: Iterable[StockLine]) -> List[StockLine]:
        """
        Reserve every line or raise on the first shortfall.

        Lines on the same key are merged and reserved in key order, so two
        checkouts touching the same rows lock them in the same sequence. On
        failure the caller must roll back its transaction, which undoes the
        lines already reserved.
        """
        merged = {}
        for line in lines:
            if line.quantity <= 0:
                raise ValidationError("Quantity must be positive", detail={"quantity": line.quantity})
            if line.key in merged:
                prev = merged[line.key]
                merged[line.key] = StockLine(prev.product_id, prev.variant_id, prev.quantity + line.quantity)
            else:
                merged[line.key] = line

        ordered = [merged[key] for key in sorted(merged)]
        for line in ordered:
            await self.reserve(line.product_id, line.variant_id, line.quantity)
        return ordered

    async def release_many(self, lines: Iterable[StockLine]) -> None:
        for line in sorted(lines, key=lambda l: l.key):
            await self.release(line.product_id, line.variant_id, line.quantity)
