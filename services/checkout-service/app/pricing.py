"""
Price reconciliation.

Recomputes every cart line from the catalog and refuses carts whose
client-declared unit prices drift from the server price by more than the
configured tolerance. The output is the only thing billing and order
persistence ever trust.
"""
import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from shared.utils import settings
from app.catalog import CatalogReader, PricedProduct, normalize_name
from app.errors import ProductNotFound, ProductUnavailable, ModifierUnavailable, PriceMismatch
from app.models import ModifierSnapshot
from app.schemas import CartItemIn, ModifierIn

logger = logging.getLogger(__name__)

# Tried in order when the requested size is not on the product
SIZE_FALLBACKS = ("standard", "regular")


class VerifiedItem(BaseModel):
    product_id: str
    product_name: str
    product_type: str
    size_name: Optional[str] = None
    unit_price: Decimal
    quantity: int
    modifiers: List[ModifierSnapshot] = []

    class Config:
        frozen = True

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class ReconciledCart(BaseModel):
    subtotal: Decimal
    platform_fee: Decimal
    items: List[VerifiedItem]

    class Config:
        frozen = True


def fee_rate_for(product_type: str, rates: Optional[Dict[str, float]] = None, default: Optional[float] = None) -> Decimal:
    rates = settings.PLATFORM_FEE_RATES if rates is None else rates
    default = settings.DEFAULT_PLATFORM_FEE_RATE if default is None else default
    return Decimal(str(rates.get(product_type, default)))


def resolve_size(product: PricedProduct, requested: Optional[str]) -> Tuple[Optional[str], Decimal]:
    """Requested size, then "standard", then "regular", then the base price."""
    candidates = ([normalize_name(requested)] if requested else []) + list(SIZE_FALLBACKS)
    for key in candidates:
        size = product.sizes.get(key)
        if size is not None:
            return size.name, size.price
    return None, product.base_price


def resolve_modifiers(product: PricedProduct, requested: Iterable[ModifierIn]) -> List[ModifierSnapshot]:
    resolved = []
    for modifier in requested:
        match = product.modifiers.get(normalize_name(modifier.name))
        if match is None:
            raise ModifierUnavailable(product.name, modifier.name)
        resolved.append(ModifierSnapshot(name=match.name, price=match.price))
    return resolved


def reconcile_cart(
    items: List[CartItemIn],
    products: Dict[str, PricedProduct],
    tolerance: Optional[Decimal] = None,
    fee_rates: Optional[Dict[str, float]] = None,
    default_fee_rate: Optional[float] = None,
) -> ReconciledCart:
    if tolerance is None:
        tolerance = Decimal(str(settings.PRICE_TOLERANCE))

    subtotal = Decimal(0)
    platform_fee = Decimal(0)
    verified: List[VerifiedItem] = []

    for item in items:
        product = products.get(item.product.id)
        if product is None:
            raise ProductNotFound(item.product.id)
        if not product.is_orderable:
            raise ProductUnavailable(product.name)

        size_name, size_price = resolve_size(product, item.size.name if item.size else None)
        modifiers = resolve_modifiers(product, item.modifiers)

        server_unit_price = size_price + sum((m.price for m in modifiers), Decimal(0))
        if abs(server_unit_price - item.unit_price) > tolerance:
            logger.warning(
                "Price mismatch for %s: server %s, client %s",
                product.id, server_unit_price, item.unit_price,
            )
            raise PriceMismatch(product.name)

        line_total = server_unit_price * item.quantity
        if item.total_price is not None and abs(item.unit_price * item.quantity - item.total_price) > Decimal("0.01"):
            logger.warning("Client line total inconsistent for %s: %s", product.id, item.total_price)

        subtotal += line_total
        platform_fee += line_total * fee_rate_for(product.product_type, fee_rates, default_fee_rate)

        verified.append(VerifiedItem(
            product_id=product.id,
            product_name=product.name,
            product_type=product.product_type,
            size_name=size_name,
            unit_price=server_unit_price,
            quantity=item.quantity,
            modifiers=modifiers,
        ))

    return ReconciledCart(subtotal=subtotal, platform_fee=platform_fee, items=verified)


async def reconcile_checkout(catalog: CatalogReader, items: List[CartItemIn]) -> ReconciledCart:
    products = await catalog.fetch_products(item.product.id for item in items)
    return reconcile_cart(items, products)
