"""Catalog models: products and their stock-bearing variants."""

from typing import Optional
from datetime import datetime
from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel


class Product(SQLModel, table=True):
    """
    A sellable product.

    Variant-less products keep stock on `stock`. Products with
    `has_variants=True` keep stock (and price) per ProductVariant only; the
    product-level counter is ignored for them.
    """
    __tablename__ = "product"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_product_stock_non_negative"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    description: Optional[str] = None
    category: Optional[str] = Field(default=None, index=True)
    price: float
    stock: int = Field(default=0)
    has_variants: bool = Field(default=False)
    purchase_count: int = Field(default=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ProductVariant(SQLModel, table=True):
    """Named variant (e.g. "1 kg", "5 kg") with independent price and stock."""
    __tablename__ = "product_variant"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_variant_stock_non_negative"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    product_id: int = Field(foreign_key="product.id", index=True)
    name: str
    price: float
    stock: int = Field(default=0)
    is_default: bool = Field(default=False)
