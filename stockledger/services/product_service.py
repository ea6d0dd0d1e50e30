"""
Product catalogue service: creation, lookup and location labels.

Stock never changes here directly. A product is created at zero and any
opening quantity is booked as an ENTRY through the mutation engine, so the
ledger for every product replays from zero.
"""

import logging
from typing import Optional

from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from stockledger.core.enums import StockLogType
from stockledger.core.exceptions import ProductNotFoundError, ValidationError
from stockledger.models.product import Product
from stockledger.models.product_mapping import ProductMapping
from stockledger.services.stock_engine import StockMutationEngine

logger = logging.getLogger(__name__)


class ProductService:
    def __init__(self, session_factory: async_sessionmaker, engine: StockMutationEngine):
        self.session_factory = session_factory
        self.engine = engine

    async def sku_exists(self, sku: str) -> bool:
        """Check if a SKU already exists."""
        async with self.session_factory() as session:
            return bool(await session.scalar(select(exists().where(Product.sku == sku))))

    async def create_product(
        self,
        sku: str,
        title: Optional[str] = None,
        location: Optional[str] = None,
        initial_stock: int = 0,
        actor: Optional[str] = None,
    ) -> Product:
        if initial_stock < 0:
            raise ValidationError("Initial stock cannot be negative")

        async with self.session_factory() as session:
            product = Product(sku=sku, title=title, location=location, stock_quantity=0)
            session.add(product)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ValidationError(f"Product with SKU '{sku}' already exists") from e
            product_id = product.id

        logger.info(f"Created product {product_id} ({sku})")

        if initial_stock > 0:
            await self.engine.apply_delta(
                product_id,
                initial_stock,
                reason="Initial stock",
                change_type=StockLogType.ENTRY,
                actor=actor,
            )

        return await self.get_product(product_id)

    async def get_product(self, product_id: int) -> Product:
        async with self.session_factory() as session:
            product = await session.get(Product, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    async def get_by_sku(self, sku: str) -> Optional[Product]:
        async with self.session_factory() as session:
            return await session.scalar(select(Product).where(Product.sku == sku))

    async def set_location(self, product_id: int, location: Optional[str]) -> Product:
        """Location is a shelf label, not stock, so it is written directly."""
        async with self.session_factory() as session:
            product = await session.get(Product, product_id)
            if product is None:
                raise ProductNotFoundError(product_id)
            product.location = location
            await session.commit()
            return product


class ProductMappingResolver:
    """Resolves a marketplace SKU to the internal product whose stock it draws on."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def resolve(self, marketplace: str, sku: str) -> Optional[int]:
        """
        Returns None for unmapped SKUs and for mappings that do not sync stock.
        Callers treat None as reportable, not fatal.
        """
        async with self.session_factory() as session:
            mapping = await session.scalar(
                select(ProductMapping).where(
                    ProductMapping.marketplace == marketplace,
                    ProductMapping.remote_sku == sku,
                )
            )
        if mapping is None or not mapping.sync_stock:
            return None
        return mapping.product_id

    async def add_mapping(self, marketplace: str, remote_sku: str, product_id: int, sync_stock: bool = True) -> ProductMapping:
        async with self.session_factory() as session:
            mapping = ProductMapping(
                marketplace=marketplace,
                remote_sku=remote_sku,
                product_id=product_id,
                sync_stock=sync_stock,
            )
            session.add(mapping)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ValidationError(f"SKU '{remote_sku}' is already mapped on {marketplace}") from e
            return mapping
