"""Data access layer for the batch ledger.

This module provides the helpers that read from and write to the ledger
workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: :class:`WorkbookRepository` loads stock state from the
   sheets and writes every repository mutation through to them.
"""


from __future__ import annotations

import configparser
import threading
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_MRP_MARKUP, GrossDepletion, ProductCategory, SheetName
from .models import (
    DamageRecord,
    DecorationUse,
    Invoice,
    LineAllocation,
    Product,
    ReturnRecord,
    SaleTransaction,
    StockBatch,
    to_date,
    to_decimal,
)
from .repository import InMemoryRepository


CONFIG_FILE_NAME = "config.ini"

SHEET_COLUMNS: dict[str, tuple[str, ...]] = {
    SheetName.PRODUCTS.value: (
        "ProductID",
        "ProductName",
        "ItemCode",
        "HsnCode",
        "InvoicePrice",
        "MRP",
        "Category",
        "ShelfLifeDays",
        "LossFraction",
        "IsDecoration",
        "IsActive",
    ),
    SheetName.STOCK_BATCHES.value: (
        "BatchID",
        "ProductID",
        "BatchNumber",
        "Quantity",
        "ReceivedQuantity",
        "InvoicePrice",
        "MRP",
        "ExpiryDate",
        "GrmLoss",
        "IntakeDate",
        "SourceInvoiceRef",
    ),
    SheetName.INVOICES.value: (
        "InvoiceID",
        "InvoiceNumber",
        "InvoiceDate",
        "StoreID",
        "TotalQty",
        "TotalAmount",
        "PageCount",
        "BatchIDs",
        "RecordedAt",
    ),
    SheetName.INVOICE_ITEMS.value: (
        "InvoiceID",
        "SlNo",
        "ItemCode",
        "ItemName",
        "HsnCode",
        "Qty",
        "Uom",
        "Rate",
        "Total",
    ),
    SheetName.SALES.value: (
        "SaleID",
        "Timestamp",
        "StaffID",
        "PaymentMethod",
        "TotalAmount",
    ),
    SheetName.SALE_ITEMS.value: (
        "SaleID",
        "ProductID",
        "Quantity",
        "UnitPrice",
        "BatchID",
        "BatchQuantity",
        "GrossQuantity",
    ),
    SheetName.RETURNS.value: (
        "ReturnID",
        "Timestamp",
        "ProductID",
        "Quantity",
        "Reason",
        "BatchID",
        "IsAdjustment",
        "StaffID",
    ),
    SheetName.DAMAGES.value: (
        "DamageID",
        "Timestamp",
        "ProductID",
        "Quantity",
        "Reason",
        "BatchIDs",
        "LossAmount",
        "StaffID",
    ),
    SheetName.DECORATION_STOCK.value: (
        "ProductID",
        "Quantity",
    ),
    SheetName.DECORATION_USES.value: (
        "UseID",
        "Timestamp",
        "ProductID",
        "Quantity",
        "Reason",
        "Remaining",
    ),
}

# Record id prefix per history sheet, used to resume id sequences on load.
_SEQUENCE_SHEETS: dict[str, str] = {
    "INV": SheetName.INVOICES.value,
    "S": SheetName.SALES.value,
    "R": SheetName.RETURNS.value,
    "D": SheetName.DAMAGES.value,
    "U": SheetName.DECORATION_USES.value,
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_id: str
    schema_version: str
    default_staff_id: str
    mrp_markup: Decimal = DEFAULT_MRP_MARKUP
    gross_depletion: GrossDepletion = GrossDepletion.PROPORTIONAL


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls the ledger.

    An explicit path is returned as-is. Otherwise the search walks up from the
    current working directory and returns the first ``config.ini`` found.

    Raises:
        FileNotFoundError: If no directory up to the filesystem root holds a
            ``config.ini``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are anchored at ``base_path`` (the current
    working directory when omitted). ``MrpMarkup`` and ``GrossDepletion`` are
    optional.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If ``GrossDepletion`` names an unknown policy.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_id = parser.get("System", "StoreId")
        schema_version = parser.get("System", "SchemaVersion")
        default_staff = parser.get("Defaults", "DefaultStaff")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    markup_raw = parser.get("Defaults", "MrpMarkup", fallback=None)
    depletion_raw = parser.get("Defaults", "GrossDepletion", fallback=None)
    depletion = GrossDepletion(depletion_raw.strip().lower()) if depletion_raw else GrossDepletion.PROPORTIONAL

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_id=store_id,
        schema_version=schema_version,
        default_staff_id=default_staff,
        mrp_markup=Decimal(markup_raw) if markup_raw else DEFAULT_MRP_MARKUP,
        gross_depletion=depletion,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def iter_sheet_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple[Any, ...]]:
    """Yield the data rows of ``sheet_name``, skipping the header and blank rows."""

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield raw


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: Any) -> Optional[int]:
    """Find the 1-based row index whose ``key_column`` equals ``key_value``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx
    return None


def write_row(workbook: Workbook, sheet_name: str, row_index: int, values: Sequence[object]) -> None:
    sheet = workbook[sheet_name]
    for column, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=column, value=value)


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _text(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


# Serialization --------------------------------------------------------------


def serialize_product(record: Product) -> list[object]:
    return [
        record.product_id,
        record.name,
        record.item_code,
        record.hsn_code,
        record.invoice_price,
        record.mrp,
        record.category.value if record.category is not None else None,
        record.shelf_life_days,
        record.loss_fraction,
        record.is_decoration,
        record.is_active,
    ]


def deserialize_product(raw_row: Sequence[object]) -> Product:
    """Convert a ``Products`` row, coercing ids to text and prices to Decimal."""

    (
        product_id,
        name,
        item_code,
        hsn_code,
        invoice_price,
        mrp,
        category,
        shelf_life_days,
        loss_fraction,
        is_decoration,
        is_active,
    ) = raw_row[:11]
    return Product(
        product_id=str(product_id),
        name=str(name),
        invoice_price=to_decimal(invoice_price, default=Decimal("0.00")),
        mrp=to_decimal(mrp),
        item_code=_text(item_code),
        hsn_code=_text(hsn_code),
        category=ProductCategory(category) if category else None,
        shelf_life_days=int(shelf_life_days) if shelf_life_days is not None else None,
        loss_fraction=to_decimal(loss_fraction),
        is_decoration=bool(is_decoration),
        is_active=True if is_active is None else bool(is_active),
    )


def serialize_batch(record: StockBatch) -> list[object]:
    return [
        record.batch_id,
        record.product_id,
        record.batch_number,
        record.quantity,
        record.received_quantity,
        record.invoice_price,
        record.mrp,
        _iso(record.expiry_date),
        record.grm_loss,
        _iso(record.intake_date),
        record.source_invoice_ref,
    ]


def deserialize_batch(raw_row: Sequence[object]) -> StockBatch:
    (
        batch_id,
        product_id,
        batch_number,
        quantity,
        received_quantity,
        invoice_price,
        mrp,
        expiry_date,
        grm_loss,
        intake_date,
        source_invoice_ref,
    ) = raw_row[:11]
    return StockBatch(
        batch_id=int(batch_id),
        product_id=str(product_id),
        batch_number=str(batch_number),
        quantity=int(quantity or 0),
        received_quantity=int(received_quantity or 0),
        invoice_price=to_decimal(invoice_price, default=Decimal("0.00")),
        mrp=to_decimal(mrp, default=Decimal("0.00")),
        expiry_date=to_date(expiry_date),
        grm_loss=to_decimal(grm_loss, default=Decimal("0")),
        intake_date=to_date(intake_date),
        source_invoice_ref=_text(source_invoice_ref),
    )


def serialize_invoice(record: Invoice) -> list[object]:
    data = record.data
    return [
        record.invoice_id,
        data.invoice_number,
        _iso(data.invoice_date),
        data.store_id,
        data.total_qty,
        data.total_amount,
        data.page_count,
        ",".join(str(batch_id) for batch_id in record.batch_ids),
        record.recorded_at.isoformat(),
    ]


def serialize_invoice_items(record: Invoice) -> list[list[object]]:
    return [
        [
            record.invoice_id,
            item.sl_no,
            item.item_code,
            item.item_name,
            item.hsn_code,
            item.qty,
            item.uom,
            item.rate,
            item.total,
        ]
        for item in record.data.items
    ]


def serialize_sale(record: SaleTransaction) -> list[object]:
    return [
        record.sale_id,
        record.timestamp.isoformat(),
        record.staff_id,
        record.payment_method.value,
        record.total_amount,
    ]


def serialize_sale_items(record: SaleTransaction) -> list[list[object]]:
    """One row per batch touched; decoration lines get a single row without batch."""

    rows: list[list[object]] = []
    for item, allocation in zip(record.items, record.allocations):
        if allocation.is_flat or not allocation.batches:
            rows.append([record.sale_id, item.product_id, item.quantity, item.unit_price, None, item.quantity, None])
            continue
        for step in allocation.batches:
            rows.append(
                [
                    record.sale_id,
                    item.product_id,
                    item.quantity,
                    item.unit_price,
                    step.batch_id,
                    step.quantity,
                    step.gross_quantity,
                ]
            )
    return rows


def serialize_return(record: ReturnRecord) -> list[object]:
    return [
        record.return_id,
        record.recorded_at.isoformat(),
        record.product_id,
        record.quantity,
        record.reason,
        record.batch_id,
        record.is_adjustment,
        record.staff_id,
    ]


def deserialize_return(raw_row: Sequence[object]) -> ReturnRecord:
    return_id, timestamp, product_id, quantity, reason, batch_id, is_adjustment, staff_id = raw_row[:8]
    return ReturnRecord(
        return_id=str(return_id),
        product_id=str(product_id),
        quantity=int(quantity),
        reason=str(reason or ""),
        batch_id=int(batch_id) if batch_id is not None else None,
        recorded_at=datetime.fromisoformat(str(timestamp)),
        is_adjustment=bool(is_adjustment),
        staff_id=_text(staff_id),
    )


def serialize_damage(record: DamageRecord) -> list[object]:
    return [
        record.damage_id,
        record.recorded_at.isoformat(),
        record.product_id,
        record.quantity,
        record.reason,
        ",".join(str(step.batch_id) for step in record.allocation.batches),
        record.loss_amount,
        record.staff_id,
    ]


def deserialize_damage(raw_row: Sequence[object]) -> DamageRecord:
    """Rebuild a damage record; per-batch split is not kept, only the batch ids."""

    damage_id, timestamp, product_id, quantity, reason, _batch_ids, loss_amount, staff_id = raw_row[:8]
    return DamageRecord(
        damage_id=str(damage_id),
        product_id=str(product_id),
        quantity=int(quantity),
        reason=str(reason or ""),
        allocation=LineAllocation(product_id=str(product_id), quantity=int(quantity)),
        loss_amount=to_decimal(loss_amount, default=Decimal("0.00")),
        recorded_at=datetime.fromisoformat(str(timestamp)),
        staff_id=_text(staff_id),
    )


def serialize_decoration_use(record: DecorationUse) -> list[object]:
    return [
        record.use_id,
        record.recorded_at.isoformat(),
        record.product_id,
        record.quantity,
        record.reason,
        record.remaining,
    ]


def deserialize_decoration_use(raw_row: Sequence[object]) -> DecorationUse:
    use_id, timestamp, product_id, quantity, reason, remaining = raw_row[:6]
    return DecorationUse(
        use_id=str(use_id),
        product_id=str(product_id),
        quantity=int(quantity),
        reason=str(reason or ""),
        remaining=int(remaining or 0),
        recorded_at=datetime.fromisoformat(str(timestamp)),
    )


def _sequence_of(record_id: object) -> int:
    try:
        return int(str(record_id).rsplit("-", 1)[1])
    except (IndexError, ValueError):
        return 0


class WorkbookRepository(InMemoryRepository):
    """Repository that mirrors every mutation into an ``openpyxl`` workbook.

    Products, batches, decoration counters, returns, damages and decoration
    uses are loaded back on construction. Invoices and sales are append-only
    sheets; only their numbers and id sequences are reloaded, and
    :meth:`list_invoices` / :meth:`list_sales` report what was recorded since
    the workbook was opened.

    Changes stay in memory until :func:`save_workbook` is called.
    """

    def __init__(self, workbook: Workbook) -> None:
        super().__init__()
        self.workbook = workbook
        self._write_lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        for raw in iter_sheet_rows(self.workbook, SheetName.PRODUCTS.value):
            InMemoryRepository.save_product(self, deserialize_product(raw))
        for raw in iter_sheet_rows(self.workbook, SheetName.STOCK_BATCHES.value):
            InMemoryRepository.insert_batch(self, deserialize_batch(raw))
        for raw in iter_sheet_rows(self.workbook, SheetName.DECORATION_STOCK.value):
            InMemoryRepository.set_decoration_stock(self, str(raw[0]), int(raw[1] or 0))
        for raw in iter_sheet_rows(self.workbook, SheetName.RETURNS.value):
            InMemoryRepository.append_return(self, deserialize_return(raw))
        for raw in iter_sheet_rows(self.workbook, SheetName.DAMAGES.value):
            InMemoryRepository.append_damage(self, deserialize_damage(raw))
        for raw in iter_sheet_rows(self.workbook, SheetName.DECORATION_USES.value):
            InMemoryRepository.append_decoration_use(self, deserialize_decoration_use(raw))
        for raw in iter_sheet_rows(self.workbook, SheetName.INVOICES.value):
            self._invoice_numbers.add(str(raw[1]))
        for prefix, sheet_name in _SEQUENCE_SHEETS.items():
            for raw in iter_sheet_rows(self.workbook, sheet_name):
                self.seed_sequence(prefix, _sequence_of(raw[0]))
        log.info(
            "Loaded workbook state: %d product(s), %d batch(es)",
            len(self.list_products()),
            len(self.list_batches()),
        )

    def _append(self, sheet_name: str, values: Sequence[object]) -> None:
        with self._write_lock:
            self.workbook[sheet_name].append(list(values))

    def _upsert(self, sheet_name: str, key_column: str, key_value: Any, values: Sequence[object]) -> None:
        with self._write_lock:
            row_index = locate_row(self.workbook, sheet_name, key_column, key_value)
            if row_index is None:
                self.workbook[sheet_name].append(list(values))
            else:
                write_row(self.workbook, sheet_name, row_index, values)

    def save_product(self, product: Product) -> None:
        super().save_product(product)
        self._upsert(SheetName.PRODUCTS.value, "ProductID", product.product_id, serialize_product(product))

    def insert_batch(self, batch: StockBatch) -> None:
        super().insert_batch(batch)
        self._append(SheetName.STOCK_BATCHES.value, serialize_batch(batch))

    def update_batch(self, batch: StockBatch) -> None:
        super().update_batch(batch)
        self._upsert(SheetName.STOCK_BATCHES.value, "BatchID", batch.batch_id, serialize_batch(batch))

    def delete_batch(self, batch_id: int) -> None:
        super().delete_batch(batch_id)
        with self._write_lock:
            row_index = locate_row(self.workbook, SheetName.STOCK_BATCHES.value, "BatchID", batch_id)
            if row_index is not None:
                self.workbook[SheetName.STOCK_BATCHES.value].delete_rows(row_index)

    def append_invoice(self, invoice: Invoice) -> None:
        super().append_invoice(invoice)
        self._append(SheetName.INVOICES.value, serialize_invoice(invoice))
        for row in serialize_invoice_items(invoice):
            self._append(SheetName.INVOICE_ITEMS.value, row)

    def append_sale(self, sale: SaleTransaction) -> None:
        super().append_sale(sale)
        self._append(SheetName.SALES.value, serialize_sale(sale))
        for row in serialize_sale_items(sale):
            self._append(SheetName.SALE_ITEMS.value, row)

    def append_return(self, record: ReturnRecord) -> None:
        super().append_return(record)
        self._append(SheetName.RETURNS.value, serialize_return(record))

    def append_damage(self, record: DamageRecord) -> None:
        super().append_damage(record)
        self._append(SheetName.DAMAGES.value, serialize_damage(record))

    def set_decoration_stock(self, product_id: str, quantity: int) -> None:
        super().set_decoration_stock(product_id, quantity)
        self._upsert(SheetName.DECORATION_STOCK.value, "ProductID", product_id, [product_id, quantity])

    def append_decoration_use(self, record: DecorationUse) -> None:
        super().append_decoration_use(record)
        self._append(SheetName.DECORATION_USES.value, serialize_decoration_use(record))


__all__ = [
    "CONFIG_FILE_NAME",
    "ConfigSettings",
    "SHEET_COLUMNS",
    "WorkbookRepository",
    "find_config_file",
    "iter_sheet_rows",
    "locate_row",
    "open_workbook",
    "parse_settings",
    "read_config",
    "save_workbook",
]
