"""Sale allocation across stock batches.

Perishable products are depleted first-expiry-first-out: the walk starts at
the batch that expires soonest and only spills into later batches once the
earlier ones are exhausted. Decoration products do not expire and are kept as
a flat counter (:class:`DecorationStock`) instead of batches.

Allocation of a line is all or nothing. When the sellable stock cannot cover
the request, every batch touched during the walk is restored before
:class:`~batch_ledger.exceptions.InsufficientStock` is raised.
"""

from __future__ import annotations

from datetime import date
from typing import List, Optional

from . import log
from .batch_store import (
    BatchStore,
    effective_quantity,
    gross_for_effective,
    require_positive_quantity,
)
from .constants import GrossDepletion
from .exceptions import InsufficientStock
from .models import BatchAllocation, LineAllocation, Product
from .repository import InMemoryRepository


class DecorationStock:
    """Flat on-hand counters for decoration products."""

    def __init__(self, repository: InMemoryRepository) -> None:
        self._repository = repository

    def level(self, product_id: str) -> int:
        return self._repository.get_decoration_stock(product_id)

    def add(self, product_id: str, quantity: int) -> int:
        require_positive_quantity(quantity)
        updated = self.level(product_id) + quantity
        self._repository.set_decoration_stock(product_id, updated)
        log.debug("Decoration '%s' increased by %s (now %s)", product_id, quantity, updated)
        return updated

    def take(self, product_id: str, quantity: int) -> int:
        require_positive_quantity(quantity)
        current = self.level(product_id)
        if current < quantity:
            log.warning(
                "Decoration '%s' short: requested %s, on hand %s",
                product_id,
                quantity,
                current,
            )
            raise InsufficientStock(product_id, quantity, current)
        updated = current - quantity
        self._repository.set_decoration_stock(product_id, updated)
        log.debug("Decoration '%s' decreased by %s (now %s)", product_id, quantity, updated)
        return updated


class SaleAllocator:
    """Select and deplete batches for a requested quantity of one product."""

    def __init__(
        self,
        batch_store: BatchStore,
        decorations: DecorationStock,
        *,
        depletion: GrossDepletion = GrossDepletion.PROPORTIONAL,
    ) -> None:
        self._batch_store = batch_store
        self._decorations = decorations
        self.depletion = GrossDepletion(depletion)

    def available(self, product: Product, *, as_of: Optional[date] = None, apply_loss: bool = True) -> int:
        """Units that :meth:`allocate` could hand out right now."""

        if product.is_decoration:
            return self._decorations.level(product.product_id)
        batches = self._batch_store.list_sellable(product.product_id, as_of=as_of)
        if apply_loss:
            return sum(effective_quantity(batch) for batch in batches)
        return sum(batch.quantity for batch in batches)

    def allocate(
        self,
        product: Product,
        quantity: int,
        *,
        as_of: Optional[date] = None,
        apply_loss: bool = True,
    ) -> LineAllocation:
        """Deplete stock for ``quantity`` units of ``product``.

        Args:
            product (Product): Product being sold or written off.
            quantity (int): Units requested.
            as_of (date | None): Business date; batches expiring on or before
                it are skipped. ``None`` disables the expiry filter.
            apply_loss (bool): When ``True`` the request is in sellable units
                and each batch is charged the matching gross quantity. When
                ``False`` the request is in physical units, as for damages.

        Returns:
            LineAllocation: Batches used, in depletion order.

        Raises:
            InsufficientStock: If the eligible batches cannot cover the request;
                nothing stays depleted in that case.
        """

        require_positive_quantity(quantity)
        if product.is_decoration:
            self._decorations.take(product.product_id, quantity)
            return LineAllocation(product_id=product.product_id, quantity=quantity, is_flat=True)

        remaining = quantity
        taken: List[BatchAllocation] = []
        try:
            for batch in self._batch_store.list_sellable(product.product_id, as_of=as_of):
                if remaining == 0:
                    break
                sellable = effective_quantity(batch) if apply_loss else batch.quantity
                if sellable <= 0:
                    continue
                take = min(remaining, sellable)
                gross = gross_for_effective(batch, take, self.depletion) if apply_loss else take
                self._batch_store.deplete(batch.batch_id, gross)
                taken.append(BatchAllocation(batch_id=batch.batch_id, quantity=take, gross_quantity=gross))
                remaining -= take
                log.debug(
                    "Allocated %s (gross %s) of product '%s' from batch %s",
                    take,
                    gross,
                    product.product_id,
                    batch.batch_id,
                )
        except Exception:
            self._restore(taken)
            raise

        if remaining > 0:
            self._restore(taken)
            log.warning(
                "Insufficient stock for product '%s': requested %s, short by %s",
                product.product_id,
                quantity,
                remaining,
            )
            raise InsufficientStock(product.product_id, quantity, quantity - remaining)

        return LineAllocation(product_id=product.product_id, quantity=quantity, batches=tuple(taken))

    def release(self, allocation: LineAllocation) -> None:
        """Put the stock of a previous allocation back where it came from."""

        if allocation.is_flat:
            self._decorations.add(allocation.product_id, allocation.quantity)
            return
        self._restore(list(allocation.batches))

    def _restore(self, taken: List[BatchAllocation]) -> None:
        for step in reversed(taken):
            self._batch_store.restore(step.batch_id, step.gross_quantity)


__all__ = ["DecorationStock", "SaleAllocator"]
