"""Product catalog collaborator.

Resolves invoice lines to products and supplies the per-product defaults the
reconciler needs: shelf life, weight-loss fraction, and MRP.
"""

from __future__ import annotations

import math
import threading
from dataclasses import replace
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from . import log
from .constants import (
    DEFAULT_LOSS_FRACTIONS,
    DEFAULT_MRP_MARKUP,
    ITEM_CODE_PREFIXES,
    MRP_ROUNDING_STEP,
    ProductCategory,
)
from .exceptions import UnknownProduct
from .models import Product


def infer_category_and_shelf_life(item_code: Optional[str]) -> tuple[Optional[ProductCategory], Optional[int]]:
    """Derive category and shelf life from the two-letter item-code prefix.

    Unknown or too-short codes yield ``(None, None)``.
    """

    if not item_code or len(item_code) < 2:
        return None, None
    match = ITEM_CODE_PREFIXES.get(item_code[:2].upper())
    if match is None:
        return None, None
    return match


def compute_mrp(rate: Decimal, markup: Decimal = DEFAULT_MRP_MARKUP) -> Decimal:
    """Apply the markup, round up to a whole unit, then up to the next step of 5.

    ``compute_mrp(Decimal("91"))`` gives ``Decimal("125")`` (91 x 1.33 = 121.03
    -> 122 -> 125).
    """

    whole = math.ceil(rate * markup)
    remainder = whole % MRP_ROUNDING_STEP
    if remainder:
        whole += MRP_ROUNDING_STEP - remainder
    return Decimal(whole)


class ProductCatalog:
    """In-memory product catalog keyed by id, item code, and name."""

    def __init__(self, products: Iterable[Product] = (), *, mrp_markup: Decimal = DEFAULT_MRP_MARKUP) -> None:
        self._lock = threading.Lock()
        self._products: Dict[str, Product] = {}
        self.mrp_markup = mrp_markup
        for product in products:
            self.add_product(product)

    def add_product(self, product: Product) -> Product:
        """Register ``product``, filling category and shelf life from its item code."""

        category, shelf_life = infer_category_and_shelf_life(product.item_code)
        if product.category is None and category is not None:
            product = replace(product, category=category)
        if product.shelf_life_days is None and shelf_life is not None:
            product = replace(product, shelf_life_days=shelf_life)
        with self._lock:
            self._products[product.product_id] = product
        return product

    def list_products(self, *, include_inactive: bool = False) -> List[Product]:
        with self._lock:
            products = list(self._products.values())
        if include_inactive:
            return products
        return [product for product in products if product.is_active]

    def get_product(self, product_id: str) -> Product:
        try:
            return self._products[product_id]
        except KeyError as exc:
            log.warning("Product lookup failed for id '%s'", product_id)
            raise UnknownProduct(product_id) from exc

    def resolve_product(self, name_or_code: str) -> Product:
        """Find an active product by item code, then id, then name.

        Name matching ignores case and surrounding whitespace.
        """

        key = (name_or_code or "").strip()
        with self._lock:
            candidates = [product for product in self._products.values() if product.is_active]
        for product in candidates:
            if product.item_code and product.item_code == key:
                return product
        for product in candidates:
            if product.product_id == key:
                return product
        folded = key.casefold()
        for product in candidates:
            if product.name.strip().casefold() == folded:
                return product
        log.warning("Catalog could not resolve '%s'", name_or_code)
        raise UnknownProduct(name_or_code)

    def default_shelf_life_days(self, product: Product) -> int:
        if product.shelf_life_days is not None:
            return product.shelf_life_days
        _, inferred = infer_category_and_shelf_life(product.item_code)
        return inferred or 0

    def default_loss_fraction(self, product: Product) -> Decimal:
        if product.loss_fraction is not None:
            return product.loss_fraction
        if product.category is None:
            return Decimal("0")
        return DEFAULT_LOSS_FRACTIONS.get(product.category, Decimal("0"))

    def mrp_for(self, product: Product, rate: Optional[Decimal] = None) -> Decimal:
        """Catalog MRP, or the marked-up ``rate`` when the catalog has none."""

        if product.mrp is not None:
            return product.mrp
        return compute_mrp(rate if rate is not None else product.invoice_price, self.mrp_markup)

    def update_price(
        self,
        product_id: str,
        *,
        invoice_price: Optional[Decimal] = None,
        mrp: Optional[Decimal] = None,
    ) -> Product:
        """Replace the price fields of a product and return the new version."""

        for label, value in (("invoice price", invoice_price), ("MRP", mrp)):
            if value is not None and value < Decimal("0"):
                log.error("Rejected negative %s for product '%s': %s", label, product_id, value)
                raise ValueError(f"{label} must be zero or positive")
        with self._lock:
            try:
                current = self._products[product_id]
            except KeyError as exc:
                raise UnknownProduct(product_id) from exc
            updated = replace(
                current,
                invoice_price=invoice_price if invoice_price is not None else current.invoice_price,
                mrp=mrp if mrp is not None else current.mrp,
            )
            self._products[product_id] = updated
        log.info(
            "Updated prices for product '%s' (invoice_price=%s, mrp=%s)",
            product_id,
            updated.invoice_price,
            updated.mrp,
        )
        return updated


__all__ = ["ProductCatalog", "compute_mrp", "infer_category_and_shelf_life"]
