"""Stock batch ledger.

The :class:`BatchStore` is the only component that mutates
:class:`~batch_ledger.models.StockBatch` records. Quantities are whole units
and never go negative; emptied batches stay in the store for audit.

Weight loss is applied when stock is read for selling, not when it is stored:
``quantity`` always holds gross units so the received amount can be audited,
and :func:`effective_quantity` derives the sellable count from it.

The store does not lock. Callers (the ledger service) serialize mutations per
product before reaching it.
"""

from __future__ import annotations

import math
from dataclasses import replace
from datetime import date
from decimal import ROUND_FLOOR, Decimal
from typing import List, Optional

from . import log
from .constants import GrossDepletion
from .exceptions import (
    BusinessRuleViolation,
    InsufficientStock,
    InvalidLossFraction,
    InvalidQuantity,
    UnknownBatch,
)
from .models import Product, StockBatch, to_decimal
from .repository import InMemoryRepository


def require_positive_quantity(quantity: int) -> None:
    """Validate that ``quantity`` is a whole number greater than zero.

    Raises:
        InvalidQuantity: If ``quantity`` is not an ``int`` (``bool`` excluded)
            or is zero or negative.
    """

    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %r", quantity)
        raise InvalidQuantity(f"Quantity must be a whole number greater than zero, got {quantity!r}")


def require_loss_fraction(grm_loss: Decimal) -> None:
    """Validate that a weight-loss fraction lies in ``[0, 1)``."""

    if grm_loss < Decimal("0") or grm_loss >= Decimal("1"):
        log.error("Loss fraction validation failed: %s", grm_loss)
        raise InvalidLossFraction(f"Loss fraction must be in [0, 1), got {grm_loss}")


def effective_quantity(batch: StockBatch) -> int:
    """Sellable units of ``batch``: ``floor(quantity * (1 - grm_loss))``."""

    sellable = Decimal(batch.quantity) * (Decimal("1") - batch.grm_loss)
    return int(sellable.to_integral_value(rounding=ROUND_FLOOR))


def gross_for_effective(
    batch: StockBatch,
    effective: int,
    policy: GrossDepletion = GrossDepletion.PROPORTIONAL,
) -> int:
    """Gross units to remove from ``batch`` when ``effective`` sellable units leave it.

    The default charges ``ceil(effective / (1 - grm_loss))``, capped at the
    quantity on hand. With :attr:`GrossDepletion.EXACT_REMAINING` the batch
    keeps the smallest gross quantity whose effective quantity still covers
    what remains sellable, so selling a batch in several small sales yields
    the same total as selling it at once.
    """

    keep_ratio = Decimal("1") - batch.grm_loss
    if GrossDepletion(policy) is GrossDepletion.EXACT_REMAINING:
        left = max(effective_quantity(batch) - effective, 0)
        keep = math.ceil(Decimal(left) / keep_ratio)
        return batch.quantity - min(keep, batch.quantity)
    return min(math.ceil(Decimal(effective) / keep_ratio), batch.quantity)


def expiry_sort_key(batch: StockBatch) -> tuple[bool, date, int]:
    """Soonest expiry first, non-perishables last, intake order on ties."""

    return (batch.expiry_date is None, batch.expiry_date or date.max, batch.batch_id)


class BatchStore:
    """Create, deplete, restore and list stock batches."""

    def __init__(self, repository: InMemoryRepository) -> None:
        self._repository = repository

    def create_batch(
        self,
        product: Product,
        quantity: int,
        invoice_price: Decimal,
        mrp: Decimal,
        expiry: Optional[date],
        grm_loss: Decimal,
        source_invoice_ref: Optional[str],
        *,
        intake_date: date,
        batch_number: Optional[str] = None,
    ) -> int:
        """Register a new batch for ``product`` and return its id.

        Raises:
            InvalidQuantity: If ``quantity`` is not a positive whole number.
            InvalidLossFraction: If ``grm_loss`` is outside ``[0, 1)``.
        """

        require_positive_quantity(quantity)
        grm_loss = to_decimal(grm_loss, default=Decimal("0"))
        require_loss_fraction(grm_loss)
        if invoice_price < Decimal("0") or mrp < Decimal("0"):
            log.error("Batch price validation failed: invoice=%s mrp=%s", invoice_price, mrp)
            raise ValueError("Batch prices must be zero or positive")

        batch_id = self._repository.next_batch_id()
        code = product.item_code or product.product_id
        batch = StockBatch(
            batch_id=batch_id,
            product_id=product.product_id,
            batch_number=batch_number or f"{code}-{intake_date:%Y%m%d}-{batch_id:04d}",
            quantity=quantity,
            received_quantity=quantity,
            invoice_price=invoice_price,
            mrp=mrp,
            expiry_date=expiry,
            grm_loss=grm_loss,
            intake_date=intake_date,
            source_invoice_ref=source_invoice_ref,
        )
        self._repository.insert_batch(batch)
        log.info(
            "Created batch %s (%s) for product '%s': quantity=%s expiry=%s loss=%s",
            batch_id,
            batch.batch_number,
            product.product_id,
            quantity,
            expiry,
            grm_loss,
        )
        return batch_id

    def get_batch(self, batch_id: int) -> StockBatch:
        batch = self._repository.get_batch(batch_id)
        if batch is None:
            raise UnknownBatch(batch_id)
        return batch

    def deplete(self, batch_id: int, quantity: int) -> int:
        """Remove ``quantity`` gross units and return the quantity left on hand.

        Raises:
            InsufficientStock: If the batch holds fewer than ``quantity`` units.
        """

        require_positive_quantity(quantity)
        batch = self.get_batch(batch_id)
        if batch.quantity < quantity:
            log.warning(
                "Deplete of %s from batch %s refused: only %s on hand",
                quantity,
                batch_id,
                batch.quantity,
            )
            raise InsufficientStock(batch.product_id, quantity, batch.quantity)
        updated = replace(batch, quantity=batch.quantity - quantity)
        self._repository.update_batch(updated)
        log.debug("Depleted batch %s by %s (remaining %s)", batch_id, quantity, updated.quantity)
        return updated.quantity

    def restore(self, batch_id: int, quantity: int) -> int:
        """Add ``quantity`` gross units back and return the new quantity on hand.

        No ceiling is enforced against the received quantity.
        """

        require_positive_quantity(quantity)
        batch = self.get_batch(batch_id)
        updated = replace(batch, quantity=batch.quantity + quantity)
        self._repository.update_batch(updated)
        if updated.quantity > batch.received_quantity:
            log.warning(
                "Batch %s now holds %s units, above the %s received",
                batch_id,
                updated.quantity,
                batch.received_quantity,
            )
        log.debug("Restored batch %s by %s (now %s)", batch_id, quantity, updated.quantity)
        return updated.quantity

    def remove_batch(self, batch_id: int) -> None:
        """Delete an untouched batch; used to undo a partially ingested invoice.

        Raises:
            BusinessRuleViolation: If stock has already moved out of the batch.
        """

        batch = self.get_batch(batch_id)
        if batch.quantity != batch.received_quantity:
            raise BusinessRuleViolation(
                f"Batch {batch_id} has stock movements and cannot be removed"
            )
        self._repository.delete_batch(batch_id)
        log.info("Removed batch %s for product '%s'", batch_id, batch.product_id)

    def list_batches(self, product_id: str) -> List[StockBatch]:
        """Every batch of ``product_id``, empty ones included, in intake order."""

        return self._repository.batches_for_product(product_id)

    def list_sellable(self, product_id: str, *, as_of: Optional[date] = None) -> List[StockBatch]:
        """Batches with stock on hand, ordered by expiry ascending.

        Batches without an expiry sort last and equal expiries keep intake
        order. When ``as_of`` is given, batches expiring on or before that date
        are left out.
        """

        batches = [
            batch
            for batch in self._repository.batches_for_product(product_id)
            if batch.quantity > 0
            and (as_of is None or batch.expiry_date is None or batch.expiry_date > as_of)
        ]
        return sorted(batches, key=expiry_sort_key)


__all__ = [
    "BatchStore",
    "effective_quantity",
    "expiry_sort_key",
    "gross_for_effective",
    "require_loss_fraction",
    "require_positive_quantity",
]
