"""Unit tests for the product catalog collaborator."""

from __future__ import annotations

from decimal import Decimal

import pytest

from batch_ledger.catalog import ProductCatalog, compute_mrp, infer_category_and_shelf_life
from batch_ledger.constants import ProductCategory
from batch_ledger.exceptions import UnknownProduct
from batch_ledger.models import Product


@pytest.mark.parametrize(
    ("item_code", "expected"),
    [
        ("OG1001", (ProductCategory.CAKES, 3)),
        ("dg5", (ProductCategory.CAKES, 3)),
        ("OP22", (ProductCategory.PASTRIES, 3)),
        ("OF9", (ProductCategory.SAVOURIES, 3)),
        ("OB1", (ProductCategory.BREADS, 3)),
        ("OZ1", (ProductCategory.COOKIES, 90)),
        ("OY1", (ProductCategory.ASSORTED_CAKES, 90)),
        ("IO1", (ProductCategory.OTHERS, 90)),
        ("ID1", (ProductCategory.PACKING_MATERIAL, 0)),
        ("XX1", (None, None)),
        ("O", (None, None)),
        (None, (None, None)),
    ],
)
def test_infer_category_and_shelf_life(item_code, expected):
    assert infer_category_and_shelf_life(item_code) == expected


@pytest.mark.parametrize(
    ("rate", "expected"),
    [("91", "125"), ("100", "135"), ("15", "20"), ("0", "0")],
)
def test_compute_mrp_rounds_up_to_step_of_five(rate, expected):
    assert compute_mrp(Decimal(rate)) == Decimal(expected)


def test_add_product_fills_inferred_fields(catalog):
    cake = catalog.get_product("P-CAKE")

    assert cake.category is ProductCategory.CAKES
    assert cake.shelf_life_days == 3


def test_explicit_product_fields_win_over_inference():
    product = Product(
        product_id="P-X",
        name="Long Life Cake",
        invoice_price=Decimal("10"),
        item_code="OG9",
        shelf_life_days=7,
        loss_fraction=Decimal("0.02"),
    )
    catalog = ProductCatalog([product])

    stored = catalog.get_product("P-X")
    assert catalog.default_shelf_life_days(stored) == 7
    assert catalog.default_loss_fraction(stored) == Decimal("0.02")


def test_default_loss_fraction_by_category(catalog):
    assert catalog.default_loss_fraction(catalog.get_product("P-PUFF")) == Decimal("0.05")
    assert catalog.default_loss_fraction(catalog.get_product("P-BOX")) == Decimal("0")
    assert catalog.default_loss_fraction(catalog.get_product("P-CANDLE")) == Decimal("0")


def test_resolve_product_by_code_id_and_name(catalog):
    """Lookups try item code, then id, then a case-insensitive name."""

    assert catalog.resolve_product("OG1001").product_id == "P-CAKE"
    assert catalog.resolve_product("P-PUFF").product_id == "P-PUFF"
    assert catalog.resolve_product("  birthday candle ").product_id == "P-CANDLE"


def test_resolve_product_ignores_inactive(catalog):
    catalog.add_product(
        Product(product_id="P-OLD", name="Old Bun", invoice_price=Decimal("5"), is_active=False)
    )

    with pytest.raises(UnknownProduct):
        catalog.resolve_product("Old Bun")
    assert catalog.get_product("P-OLD").is_active is False
    assert "P-OLD" not in {product.product_id for product in catalog.list_products()}
    assert "P-OLD" in {product.product_id for product in catalog.list_products(include_inactive=True)}


def test_unknown_product_is_a_lookup_error(catalog):
    with pytest.raises(LookupError):
        catalog.get_product("missing")


def test_mrp_for_prefers_catalog_value(catalog):
    assert catalog.mrp_for(catalog.get_product("P-BOX"), Decimal("50")) == Decimal("10")
    assert catalog.mrp_for(catalog.get_product("P-CAKE"), Decimal("91")) == Decimal("125")
    assert catalog.mrp_for(catalog.get_product("P-CAKE")) == Decimal("125")


def test_custom_markup_is_used():
    catalog = ProductCatalog(
        [Product(product_id="P1", name="Bun", invoice_price=Decimal("10"))],
        mrp_markup=Decimal("2"),
    )

    assert catalog.mrp_for(catalog.get_product("P1")) == Decimal("20")


def test_update_price_replaces_only_given_fields(catalog):
    updated = catalog.update_price("P-BOX", mrp=Decimal("12"))

    assert updated.mrp == Decimal("12")
    assert updated.invoice_price == Decimal("8.00")
    assert catalog.get_product("P-BOX") == updated


def test_update_price_rejects_negative_values(catalog):
    with pytest.raises(ValueError):
        catalog.update_price("P-BOX", invoice_price=Decimal("-1"))
    assert catalog.get_product("P-BOX").invoice_price == Decimal("8.00")


def test_update_price_unknown_product(catalog):
    with pytest.raises(UnknownProduct):
        catalog.update_price("missing", mrp=Decimal("1"))
