from decimal import Decimal

import pytest

from app.catalog import CatalogReader, build_priced_product
from app.errors import ProductNotFound, ProductUnavailable, ModifierUnavailable, PriceMismatch
from app.models import ProductDB
from app.pricing import reconcile_cart, reconcile_checkout, resolve_size, fee_rate_for
from app.schemas import CartItemIn
from tests.conftest import CATALOG, LATTE, COMIC


def priced(*docs):
    products = [build_priced_product(ProductDB(**doc)) for doc in docs]
    return {p.id: p for p in products}


def line(product_id="prod-latte", size="Regular", modifiers=("Oat Milk",), quantity=2, unit_price=5.25):
    return CartItemIn.model_validate({
        "product": {"id": product_id},
        "size": {"name": size} if size is not None else None,
        "modifiers": [{"name": name} for name in modifiers],
        "quantity": quantity,
        "unitPrice": unit_price,
    })


@pytest.fixture
def products():
    return priced(*CATALOG)


def test_reconciles_cart(products):
    cart = reconcile_cart([line()], products)

    assert cart.subtotal == Decimal("10.50")
    item = cart.items[0]
    assert item.product_name == "Latte"
    assert item.size_name == "Regular"
    assert item.unit_price == Decimal("5.25")
    assert item.line_total == Decimal("10.50")
    assert [(m.name, m.price) for m in item.modifiers] == [("Oat Milk", Decimal("0.75"))]


def test_price_mismatch(products):
    with pytest.raises(PriceMismatch) as exc_info:
        reconcile_cart([line(unit_price=3.00)], products)
    assert "Latte" in exc_info.value.detail
    assert exc_info.value.status_code == 400


def test_price_tolerance(products):
    # Two cents of drift is accepted and the server price wins
    cart = reconcile_cart([line(unit_price=5.27)], products)
    assert cart.items[0].unit_price == Decimal("5.25")

    with pytest.raises(PriceMismatch):
        reconcile_cart([line(unit_price=5.28)], products)


def test_out_of_stock_product(products):
    with pytest.raises(ProductUnavailable) as exc_info:
        reconcile_cart([line(product_id="prod-croissant", size=None, modifiers=(), unit_price=3.25)], products)
    assert "Croissant" in exc_info.value.detail


def test_inactive_product(products):
    with pytest.raises(ProductUnavailable):
        reconcile_cart([line(product_id="prod-pumpkin", size=None, modifiers=(), unit_price=5.50)], products)


def test_unknown_product(products):
    with pytest.raises(ProductNotFound) as exc_info:
        reconcile_cart([line(product_id="prod-missing")], products)
    assert exc_info.value.product_id == "prod-missing"


def test_unavailable_modifier(products):
    with pytest.raises(ModifierUnavailable) as exc_info:
        reconcile_cart([line(modifiers=("Almond Milk",))], products)
    assert "Almond Milk" in exc_info.value.detail

    with pytest.raises(ModifierUnavailable):
        reconcile_cart([line(modifiers=("Unicorn Dust",))], products)


def test_names_match_case_insensitively(products):
    cart = reconcile_cart([line(size="  large ", modifiers=("OAT MILK", "extra shot"), unit_price=7.00)], products)
    item = cart.items[0]
    assert item.size_name == "Large"
    assert [m.name for m in item.modifiers] == ["Oat Milk", "Extra Shot"]
    assert item.unit_price == Decimal("7.00")


class TestSizeResolution:
    def test_regular_fallback_for_unknown_size(self, products):
        assert resolve_size(products["prod-latte"], "Venti") == ("Regular", Decimal("4.5"))

    def test_standard_preferred_over_regular(self):
        product = build_priced_product(ProductDB(**{
            **LATTE,
            "sizes": [
                {"name": "Regular", "price": 4.50, "display_order": 0},
                {"name": "Standard", "price": 4.25, "display_order": 1},
            ],
        }))
        assert resolve_size(product, None) == ("Standard", Decimal("4.25"))

    def test_base_price_when_no_size_matches(self, products):
        assert resolve_size(products["prod-saga-1"], "Regular") == (None, Decimal("3.99"))

    def test_sizeless_line_uses_base_price(self, products):
        cart = reconcile_cart([line(product_id="prod-saga-1", size=None, modifiers=(), quantity=3, unit_price=3.99)], products)
        assert cart.items[0].size_name is None
        assert cart.subtotal == Decimal("11.97")


class TestPlatformFee:
    def test_rates_by_product_type(self):
        assert fee_rate_for("drink") == Decimal("0.05")
        assert fee_rate_for("comic") == Decimal("0.02")
        assert fee_rate_for("merchandise") == Decimal("0.03")
        assert fee_rate_for("gift-card") == Decimal("0.025")

    def test_fee_accumulates_per_line(self, products):
        cart = reconcile_cart(
            [line(), line(product_id="prod-saga-1", size=None, modifiers=(), quantity=1, unit_price=3.99)],
            products,
        )
        # 10.50 * 5% + 3.99 * 2%
        assert cart.platform_fee == Decimal("0.6048")
        assert cart.subtotal == Decimal("14.49")

    def test_custom_rates(self, products):
        cart = reconcile_cart([line()], products, fee_rates={"drink": 0.10})
        assert cart.platform_fee == Decimal("1.05")


def test_subtotal_ignores_client_line_totals(products):
    item = line()
    item = item.model_copy(update={"total_price": Decimal("1.00")})
    cart = reconcile_cart([item], products)
    assert cart.subtotal == Decimal("10.50")


def test_same_product_on_several_lines(products):
    cart = reconcile_cart([line(), line(size="Large", modifiers=(), quantity=1, unit_price=5.25)], products)
    assert len(cart.items) == 2
    assert cart.subtotal == Decimal("15.75")


async def test_reconcile_checkout_reads_catalog_once(db):
    calls = []

    class CountingReader(CatalogReader):
        async def fetch_products(self, product_ids):
            ids = list(product_ids)
            calls.append(ids)
            return await super().fetch_products(ids)

    cart = await reconcile_checkout(CountingReader(db), [line(), line(quantity=1, unit_price=5.25)])
    assert cart.subtotal == Decimal("15.75")
    assert calls == [["prod-latte", "prod-latte"]]


async def test_catalog_reader_skips_missing_ids(db):
    products = await CatalogReader(db).fetch_products(["prod-latte", "prod-nope", "prod-saga-1"])
    assert set(products) == {"prod-latte", "prod-saga-1"}
    assert products["prod-latte"].sizes["large"].price == Decimal("5.25")
    assert "almond milk" not in products["prod-latte"].modifiers
    assert products["prod-saga-1"].product_type == COMIC["product_type"]
