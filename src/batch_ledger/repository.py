"""Persistence collaborator used by the batch store and the ledger service.

:class:`InMemoryRepository` is the reference implementation: a keyed store of
stock batches, append-only logs for invoices, sales, returns, damages and
decoration usage, plus the flat decoration counters. Durable back-ends such
as :class:`~batch_ledger.data_manager.WorkbookRepository` extend it and write
through on every mutation.

The repository performs no business validation; callers hold the per-product
locks that serialize batch mutations.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Dict, List, Optional

from . import log
from .models import (
    DamageRecord,
    DecorationUse,
    Invoice,
    Product,
    ReturnRecord,
    SaleTransaction,
    StockBatch,
)


class InMemoryRepository:
    """Dictionary-backed ledger storage."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._products: Dict[str, Product] = {}
        self._batches: Dict[int, StockBatch] = {}
        self._batches_by_product: Dict[str, List[int]] = defaultdict(list)
        self._last_batch_id = 0
        self._sequences: Dict[str, int] = defaultdict(int)
        self._invoices: List[Invoice] = []
        self._invoice_numbers: set[str] = set()
        self._sales: List[SaleTransaction] = []
        self._returns: List[ReturnRecord] = []
        self._damages: List[DamageRecord] = []
        self._decoration_stock: Dict[str, int] = {}
        self._decoration_uses: List[DecorationUse] = []

    # Products -----------------------------------------------------------

    def list_products(self) -> List[Product]:
        return list(self._products.values())

    def save_product(self, product: Product) -> None:
        self._products[product.product_id] = product

    # Stock batches ------------------------------------------------------

    def next_batch_id(self) -> int:
        with self._lock:
            self._last_batch_id += 1
            return self._last_batch_id

    def insert_batch(self, batch: StockBatch) -> None:
        with self._lock:
            if batch.batch_id in self._batches:
                raise KeyError(f"Batch already exists: {batch.batch_id}")
            self._batches[batch.batch_id] = batch
            self._batches_by_product[batch.product_id].append(batch.batch_id)
            self._last_batch_id = max(self._last_batch_id, batch.batch_id)

    def update_batch(self, batch: StockBatch) -> None:
        with self._lock:
            if batch.batch_id not in self._batches:
                raise KeyError(f"Batch not found: {batch.batch_id}")
            self._batches[batch.batch_id] = batch

    def delete_batch(self, batch_id: int) -> None:
        with self._lock:
            batch = self._batches.pop(batch_id)
            self._batches_by_product[batch.product_id].remove(batch_id)
        log.debug("Deleted batch %s for product '%s'", batch_id, batch.product_id)

    def get_batch(self, batch_id: int) -> Optional[StockBatch]:
        return self._batches.get(batch_id)

    def batches_for_product(self, product_id: str) -> List[StockBatch]:
        """Return every batch of ``product_id`` in intake order."""

        with self._lock:
            ids = list(self._batches_by_product.get(product_id, ()))
            return [self._batches[batch_id] for batch_id in ids]

    def list_batches(self) -> List[StockBatch]:
        with self._lock:
            return [self._batches[batch_id] for batch_id in sorted(self._batches)]

    # Append-only history ------------------------------------------------

    def next_sequence(self, prefix: str) -> int:
        with self._lock:
            self._sequences[prefix] += 1
            return self._sequences[prefix]

    def seed_sequence(self, prefix: str, value: int) -> None:
        """Make the next sequence for ``prefix`` start after ``value``."""

        with self._lock:
            self._sequences[prefix] = max(self._sequences[prefix], value)

    def has_invoice_number(self, invoice_number: str) -> bool:
        return invoice_number in self._invoice_numbers

    def append_invoice(self, invoice: Invoice) -> None:
        with self._lock:
            self._invoices.append(invoice)
            self._invoice_numbers.add(invoice.invoice_number)

    def list_invoices(self) -> List[Invoice]:
        return list(self._invoices)

    def append_sale(self, sale: SaleTransaction) -> None:
        with self._lock:
            self._sales.append(sale)

    def list_sales(self) -> List[SaleTransaction]:
        return list(self._sales)

    def append_return(self, record: ReturnRecord) -> None:
        with self._lock:
            self._returns.append(record)

    def list_returns(self) -> List[ReturnRecord]:
        return list(self._returns)

    def append_damage(self, record: DamageRecord) -> None:
        with self._lock:
            self._damages.append(record)

    def list_damages(self) -> List[DamageRecord]:
        return list(self._damages)

    # Decorations --------------------------------------------------------

    def get_decoration_stock(self, product_id: str) -> int:
        return self._decoration_stock.get(product_id, 0)

    def set_decoration_stock(self, product_id: str, quantity: int) -> None:
        self._decoration_stock[product_id] = quantity

    def append_decoration_use(self, record: DecorationUse) -> None:
        with self._lock:
            self._decoration_uses.append(record)

    def list_decoration_uses(self) -> List[DecorationUse]:
        return list(self._decoration_uses)


__all__ = ["InMemoryRepository"]
