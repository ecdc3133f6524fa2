"""Immutable records shared by the batch ledger core.

Stock batches, invoices, and sales are represented as frozen dataclasses.
Mutations never edit a record in place: the batch store swaps in a new
version via :func:`dataclasses.replace`, and history records (invoices, sales,
returns, damages) are append-only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Union

from .constants import PaymentMethod, ProductCategory


def to_decimal(value: Any, *, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Coerce numbers and numeric strings into :class:`Decimal` via ``str``."""

    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def to_quantity(value: Any) -> Union[int, Decimal]:
    """Parse an ingested quantity without rounding it.

    Whole numbers come back as ``int``. Fractional values are returned as
    :class:`Decimal` so invoice validation can reject them.

    Raises:
        ValueError: If ``value`` is not a finite number.
    """

    try:
        amount = to_decimal(value, default=Decimal("0"))
    except InvalidOperation as exc:
        raise ValueError(f"Quantity {value!r} is not a number") from exc
    if not amount.is_finite():
        raise ValueError(f"Quantity {value!r} is not a number")
    if amount == amount.to_integral_value():
        return int(amount)
    return amount


def to_date(value: Any) -> Optional[date]:
    """Accept ``date``/``datetime`` objects or ISO ``YYYY-MM-DD`` strings."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


@dataclass(frozen=True)
class Product:
    """Catalog entry; prices only change through an explicit price update."""

    product_id: str
    name: str
    invoice_price: Decimal
    mrp: Optional[Decimal] = None
    item_code: Optional[str] = None
    hsn_code: Optional[str] = None
    category: Optional[ProductCategory] = None
    shelf_life_days: Optional[int] = None
    loss_fraction: Optional[Decimal] = None
    is_decoration: bool = False
    is_active: bool = True


@dataclass(frozen=True)
class StockBatch:
    """A discrete intake of stock for one product."""

    batch_id: int
    product_id: str
    batch_number: str
    quantity: int
    received_quantity: int
    invoice_price: Decimal
    mrp: Decimal
    expiry_date: Optional[date]
    grm_loss: Decimal
    intake_date: date
    source_invoice_ref: Optional[str] = None

    @property
    def is_perishable(self) -> bool:
        return self.expiry_date is not None


@dataclass(frozen=True)
class InvoiceItem:
    """One line of a supplier invoice as delivered by document ingestion."""

    item_code: str
    item_name: str
    qty: Union[int, Decimal]
    rate: Decimal
    total: Optional[Decimal] = None
    hsn_code: Optional[str] = None
    sl_no: Optional[int] = None
    uom: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return Decimal(self.qty) * self.rate

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "InvoiceItem":
        """Build an item from the camelCase mapping produced by the invoice parser."""

        sl_no = payload.get("slNo")
        return cls(
            item_code=str(payload.get("itemCode") or "").strip(),
            item_name=str(payload.get("itemName") or "").strip(),
            qty=to_quantity(payload.get("qty")),
            rate=to_decimal(payload.get("rate"), default=Decimal("0")),
            total=to_decimal(payload.get("total")),
            hsn_code=payload.get("hsnCode"),
            sl_no=int(sl_no) if sl_no is not None else None,
            uom=payload.get("uom"),
        )


@dataclass(frozen=True)
class InvoiceData:
    """Structured invoice handed over by the document-ingestion collaborator."""

    invoice_number: str
    invoice_date: Optional[date]
    store_id: str
    items: tuple[InvoiceItem, ...]
    total_qty: Union[int, Decimal]
    total_amount: Decimal
    page_count: int = 1

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "InvoiceData":
        """Build invoice data from a parser payload such as a JSON document."""

        items = tuple(InvoiceItem.from_mapping(item) for item in payload.get("items") or ())
        total_qty = payload.get("totalQty")
        return cls(
            invoice_number=str(payload.get("invoiceNo") or "").strip(),
            invoice_date=to_date(payload.get("invoiceDate")),
            store_id=str(payload.get("store") or ""),
            items=items,
            total_qty=to_quantity(total_qty) if total_qty is not None else sum(item.qty for item in items),
            total_amount=to_decimal(payload.get("totalAmount"), default=Decimal("0")),
            page_count=int(payload.get("pageCount") or 1),
        )


@dataclass(frozen=True)
class InvoiceValidation:
    """Outcome of every invoice check, recorded independently."""

    is_today: bool
    is_correct_store: bool
    is_arithmetic_valid: bool
    is_structurally_valid: bool
    failures: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return (
            self.is_today
            and self.is_correct_store
            and self.is_arithmetic_valid
            and self.is_structurally_valid
        )


@dataclass(frozen=True)
class OperationalContext:
    """Store identity and business date injected into every ledger call."""

    store_id: str
    today: date
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class Invoice:
    """A committed invoice together with the batches it created."""

    invoice_id: str
    data: InvoiceData
    validation: InvoiceValidation
    batch_ids: tuple[int, ...]
    recorded_at: datetime

    @property
    def invoice_number(self) -> str:
        return self.data.invoice_number


@dataclass(frozen=True)
class SaleItem:
    product_id: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return Decimal(self.quantity) * self.unit_price


@dataclass(frozen=True)
class BatchAllocation:
    """Units taken from one batch: sellable units and the gross depletion."""

    batch_id: int
    quantity: int
    gross_quantity: int


@dataclass(frozen=True)
class LineAllocation:
    """How one requested line was satisfied.

    Perishable lines carry their batch allocations; decoration lines are flat
    counter decrements and carry none.
    """

    product_id: str
    quantity: int
    batches: tuple[BatchAllocation, ...] = ()
    is_flat: bool = False


@dataclass(frozen=True)
class SaleTransaction:
    sale_id: str
    timestamp: datetime
    staff_id: str
    items: tuple[SaleItem, ...]
    allocations: tuple[LineAllocation, ...]
    total_amount: Decimal
    payment_method: PaymentMethod


@dataclass(frozen=True)
class ReturnRecord:
    """Stock returned to sellable inventory."""

    return_id: str
    product_id: str
    quantity: int
    reason: str
    batch_id: Optional[int]
    recorded_at: datetime
    is_adjustment: bool = False
    staff_id: Optional[str] = None


@dataclass(frozen=True)
class DamageRecord:
    """Stock removed from inventory without a sale."""

    damage_id: str
    product_id: str
    quantity: int
    reason: str
    allocation: LineAllocation
    loss_amount: Decimal
    recorded_at: datetime
    staff_id: Optional[str] = None


@dataclass(frozen=True)
class DecorationUse:
    use_id: str
    product_id: str
    quantity: int
    reason: str
    remaining: int
    recorded_at: datetime


@dataclass(frozen=True)
class StockSummary:
    """Per-product stock position used by reports."""

    product_id: str
    name: str
    on_hand: int
    sellable: int
    next_expiry: Optional[date] = None
    batch_count: int = 0
    is_decoration: bool = False


@dataclass(frozen=True)
class LossSummary:
    day: date
    damage_count: int = 0
    total_quantity: int = 0
    total_loss: Decimal = field(default_factory=lambda: Decimal("0.00"))
