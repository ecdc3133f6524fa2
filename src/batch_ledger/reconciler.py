"""Invoice reconciliation: turning a validated invoice into stock.

Each invoice line becomes one new stock batch (decoration lines top up their
flat counter instead). Every line is resolved against the catalog before any
stock is created, so an unknown product rejects the invoice without touching
the store. The locks of all products on the invoice are then held together
until the last line is committed. If a line still fails, the lines already
committed are undone under those same locks before the error propagates, so
an invoice is ingested completely or not at all.
"""

from __future__ import annotations

from contextlib import nullcontext
from datetime import timedelta
from typing import Callable, ContextManager, Iterable, List, Optional, Tuple

from . import log
from .allocator import DecorationStock
from .batch_store import BatchStore
from .catalog import ProductCatalog
from .exceptions import InvoiceRejected
from .models import InvoiceData, InvoiceItem, InvoiceValidation, Product

ProductLocks = Callable[[Iterable[str]], ContextManager[object]]


def _no_locks(_product_ids: Iterable[str]) -> ContextManager[object]:
    return nullcontext()


class InvoiceReconciler:
    """Create batches for every line of a validated invoice, all or nothing."""

    def __init__(
        self,
        batch_store: BatchStore,
        catalog: ProductCatalog,
        decorations: Optional[DecorationStock] = None,
        *,
        product_locks: ProductLocks = _no_locks,
    ) -> None:
        self._batch_store = batch_store
        self._catalog = catalog
        self._decorations = decorations
        self._product_locks = product_locks

    def resolve(self, item: InvoiceItem) -> Product:
        """Resolve an invoice line by item code, falling back to its name."""

        if item.item_code:
            try:
                return self._catalog.resolve_product(item.item_code)
            except LookupError:
                if not item.item_name:
                    raise
        return self._catalog.resolve_product(item.item_name)

    def reconcile(self, data: InvoiceData, validation: InvoiceValidation) -> Tuple[int, ...]:
        """Commit the invoice lines and return the ids of the created batches.

        Raises:
            InvoiceRejected: If ``validation`` is not valid.
            UnknownProduct: If a line cannot be resolved in the catalog. No
                stock has been created at that point.
        """

        if not validation.is_valid:
            raise InvoiceRejected(validation)

        lines = [(item, self.resolve(item)) for item in data.items]
        created: List[Tuple[str, int]] = []
        topped_up: List[Tuple[str, int]] = []
        with self._product_locks(product.product_id for _, product in lines):
            try:
                for item, product in lines:
                    if product.is_decoration and self._decorations is not None:
                        self._decorations.add(product.product_id, item.qty)
                        topped_up.append((product.product_id, item.qty))
                        continue
                    batch_id = self._create_line_batch(data, item, product)
                    created.append((product.product_id, batch_id))
            except Exception:
                log.warning(
                    "Rolling back invoice '%s': removing %d batch(es)",
                    data.invoice_number,
                    len(created),
                )
                self._compensate(created, topped_up)
                raise

        log.info(
            "Reconciled invoice '%s' into %d batch(es)",
            data.invoice_number,
            len(created),
        )
        return tuple(batch_id for _, batch_id in created)

    def _create_line_batch(self, data: InvoiceData, item: InvoiceItem, product: Product) -> int:
        shelf_life = self._catalog.default_shelf_life_days(product)
        expiry = data.invoice_date + timedelta(days=shelf_life) if shelf_life > 0 else None
        return self._batch_store.create_batch(
            product,
            item.qty,
            item.rate,
            self._catalog.mrp_for(product, item.rate),
            expiry,
            self._catalog.default_loss_fraction(product),
            data.invoice_number,
            intake_date=data.invoice_date,
        )

    def _compensate(self, created: List[Tuple[str, int]], topped_up: List[Tuple[str, int]]) -> None:
        # Runs while the invoice's product locks are still held.
        for _, batch_id in reversed(created):
            self._batch_store.remove_batch(batch_id)
        for product_id, quantity in reversed(topped_up):
            self._decorations.take(product_id, quantity)


__all__ = ["InvoiceReconciler"]
