"""
Product price oracle.

Reads authoritative prices and availability for the products in a cart
from the catalog collection, in a single query per checkout. Size and
modifier lookups are exposed as mappings keyed by normalized name so the
reconciliation step never compares free text directly.
"""
import logging
from decimal import Decimal
from typing import Dict, Iterable

from bson import ObjectId
from pydantic import BaseModel
from pymongo.errors import PyMongoError

from app.errors import UpstreamFailure
from app.models import ProductDB, ProductSizeDB, ModifierDB

logger = logging.getLogger(__name__)


def normalize_name(name: str) -> str:
    return name.strip().lower()


class PricedProduct(BaseModel):
    id: str
    name: str
    product_type: str
    base_price: Decimal
    is_active: bool
    in_stock: bool
    # normalized size name -> size, in display order
    sizes: Dict[str, ProductSizeDB]
    # normalized modifier name -> modifier, available modifiers only
    modifiers: Dict[str, ModifierDB]

    class Config:
        frozen = True

    @property
    def is_orderable(self) -> bool:
        return self.is_active and self.in_stock


def build_priced_product(product: ProductDB) -> PricedProduct:
    sizes: Dict[str, ProductSizeDB] = {}
    for size in sorted(product.sizes, key=lambda s: s.display_order):
        # First declared size wins on a duplicate name
        sizes.setdefault(normalize_name(size.name), size)

    modifiers: Dict[str, ModifierDB] = {}
    for group in product.modifier_groups:
        for modifier in sorted(group.modifiers, key=lambda m: m.display_order):
            if modifier.is_available:
                modifiers.setdefault(normalize_name(modifier.name), modifier)

    return PricedProduct(
        id=product.id,
        name=product.name,
        product_type=product.product_type,
        base_price=product.base_price,
        is_active=product.is_active,
        in_stock=product.in_stock,
        sizes=sizes,
        modifiers=modifiers,
    )


class CatalogReader:
    def __init__(self, db):
        self.collection = db.products

    async def fetch_products(self, product_ids: Iterable[str]) -> Dict[str, PricedProduct]:
        """
        Batch-load the given products keyed by id. Ids missing from the
        catalog are simply absent from the result.
        """
        ids = list(dict.fromkeys(product_ids))
        # Products created through Mongo directly carry ObjectId keys
        query_ids = ids + [ObjectId(i) for i in ids if ObjectId.is_valid(i)]

        products: Dict[str, PricedProduct] = {}
        try:
            async for doc in self.collection.find({"_id": {"$in": query_ids}}):
                product = ProductDB(**doc)
                products[product.id] = build_priced_product(product)
        except PyMongoError:
            logger.error("Catalog lookup failed", exc_info=True)
            raise UpstreamFailure()

        return products
