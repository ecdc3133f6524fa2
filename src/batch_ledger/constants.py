"""Enumerations and tunables shared across the batch ledger modules.

Keeps identifiers used by the persistence layer, the ledger core, and the CLI
in one place so workbook columns and business rules cannot drift apart.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Pricing rules applied when the catalog carries no MRP for a product.
DEFAULT_MRP_MARKUP = Decimal("1.33")
MRP_ROUNDING_STEP = 5

# Invoice arithmetic is compared after rounding to this many decimal places.
MONEY_PLACES = Decimal("0.01")

# Source reference stamped on batches synthesized by returns.
ADJUSTMENT_REFERENCE = "ADJUSTMENT"


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CASH = "Cash"
    CARD = "Card"
    UPI = "UPI"
    ON_CREDIT = "On Credit"


class GrossDepletion(str, Enum):
    """How many gross units a sale of sellable units removes from a batch.

    ``PROPORTIONAL`` charges ``ceil(sold / (1 - loss))``, capped at the
    quantity on hand. ``EXACT_REMAINING`` keeps the smallest gross quantity
    whose sellable count equals what was sellable before minus ``sold``.
    """

    PROPORTIONAL = "proportional"
    EXACT_REMAINING = "exact_remaining"


class ProductCategory(str, Enum):
    """Product families recognised by the item-code prefix rules."""

    CAKES = "cakes"
    PASTRIES = "pastries"
    SAVOURIES = "savouries"
    BREADS = "breads"
    COOKIES = "cookies"
    ASSORTED_CAKES = "assorted_cakes"
    OTHERS = "others"
    PACKING_MATERIAL = "packing_material"
    DECORATIONS = "decorations"


# Two-letter item-code prefix -> (category, shelf life in days).
# A shelf life of zero marks the product as non-perishable.
ITEM_CODE_PREFIXES: dict[str, tuple[ProductCategory, int]] = {
    "OG": (ProductCategory.CAKES, 3),
    "DG": (ProductCategory.CAKES, 3),
    "OO": (ProductCategory.CAKES, 3),
    "OP": (ProductCategory.PASTRIES, 3),
    "OS": (ProductCategory.SAVOURIES, 3),
    "OF": (ProductCategory.SAVOURIES, 3),
    "OB": (ProductCategory.BREADS, 3),
    "OZ": (ProductCategory.COOKIES, 90),
    "OY": (ProductCategory.ASSORTED_CAKES, 90),
    "IO": (ProductCategory.OTHERS, 90),
    "ID": (ProductCategory.PACKING_MATERIAL, 0),
}

# Fraction of received quantity lost to drying and handling, per category.
DEFAULT_LOSS_FRACTIONS: dict[ProductCategory, Decimal] = {
    ProductCategory.CAKES: Decimal("0.05"),
    ProductCategory.PASTRIES: Decimal("0.05"),
    ProductCategory.SAVOURIES: Decimal("0.05"),
    ProductCategory.BREADS: Decimal("0.05"),
}


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    PRODUCTS = "Products"
    STOCK_BATCHES = "StockBatches"
    INVOICES = "Invoices"
    INVOICE_ITEMS = "InvoiceItems"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    RETURNS = "Returns"
    DAMAGES = "Damages"
    DECORATION_STOCK = "DecorationStock"
    DECORATION_USES = "DecorationUses"


__all__ = [
    "ADJUSTMENT_REFERENCE",
    "DEFAULT_LOSS_FRACTIONS",
    "DEFAULT_MRP_MARKUP",
    "EXPECTED_SCHEMA_VERSION",
    "GrossDepletion",
    "ITEM_CODE_PREFIXES",
    "MONEY_PLACES",
    "MRP_ROUNDING_STEP",
    "PaymentMethod",
    "ProductCategory",
    "SheetName",
]
