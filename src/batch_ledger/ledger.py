"""Ledger façade coordinating invoices, sales, returns and damages.

:class:`LedgerService` is the transaction boundary of the package. Every
stock mutation runs while holding the lock of the product it touches, so two
terminals selling the last units of a product cannot both succeed. Locks of
different products are independent. A sale spanning several products takes
all of their locks, in sorted order, and keeps them until the sale record is
written.

Failures are raised as :class:`~batch_ledger.exceptions.BusinessRuleViolation`
subclasses after any partial depletion or batch creation has been undone.
"""

from __future__ import annotations

import threading
from contextlib import ExitStack, contextmanager
from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Union

from . import log
from .allocator import DecorationStock, SaleAllocator
from .batch_store import BatchStore, effective_quantity, require_positive_quantity
from .catalog import ProductCatalog
from .constants import ADJUSTMENT_REFERENCE, MONEY_PLACES, GrossDepletion, PaymentMethod
from .exceptions import (
    BusinessRuleViolation,
    DuplicateInvoice,
    InvoiceRejected,
    UnknownBatch,
)
from .models import (
    BatchAllocation,
    DamageRecord,
    DecorationUse,
    Invoice,
    InvoiceData,
    InvoiceValidation,
    LineAllocation,
    LossSummary,
    OperationalContext,
    Product,
    ReturnRecord,
    SaleItem,
    SaleTransaction,
    StockSummary,
)
from .reconciler import InvoiceReconciler
from .repository import InMemoryRepository
from .validator import validate_invoice


def _resolve_timestamp(context: Optional[OperationalContext]) -> datetime:
    """Use the context timestamp when supplied, otherwise the current UTC time."""

    if context is not None and context.timestamp is not None:
        return context.timestamp
    return datetime.now(UTC)


def generate_record_id(prefix: str, when: datetime, sequence: int) -> str:
    """Build a sortable record id such as ``S20240105-000042``."""

    return f"{prefix}{when.strftime('%Y%m%d')}-{sequence:06d}"


def _money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


class LedgerService:
    """Atomic entry points for every stock-affecting operation."""

    def __init__(
        self,
        repository: Optional[InMemoryRepository] = None,
        catalog: Optional[ProductCatalog] = None,
        *,
        depletion: GrossDepletion = GrossDepletion.PROPORTIONAL,
    ) -> None:
        self.repository = repository if repository is not None else InMemoryRepository()
        self.catalog = catalog if catalog is not None else ProductCatalog(self.repository.list_products())
        self.batch_store = BatchStore(self.repository)
        self.decorations = DecorationStock(self.repository)
        self.allocator = SaleAllocator(self.batch_store, self.decorations, depletion=depletion)
        self.reconciler = InvoiceReconciler(
            self.batch_store,
            self.catalog,
            self.decorations,
            product_locks=self._product_locks,
        )
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._invoice_guard = threading.Lock()

    # Locking ------------------------------------------------------------

    def _lock_for(self, product_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(product_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[product_id] = lock
            return lock

    @contextmanager
    def product_lock(self, product_id: str) -> Iterator[None]:
        """Hold the exclusive lock of ``product_id`` for the enclosed block."""

        lock = self._lock_for(product_id)
        with lock:
            yield

    @contextmanager
    def _product_locks(self, product_ids: Iterable[str]) -> Iterator[None]:
        # Sorted acquisition keeps multi-product sales deadlock free.
        with ExitStack() as stack:
            for product_id in sorted(set(product_ids)):
                stack.enter_context(self.product_lock(product_id))
            yield

    # Invoices -----------------------------------------------------------

    def preview_invoice(self, data: InvoiceData, context: OperationalContext) -> InvoiceValidation:
        """Validate an invoice without committing anything."""

        return validate_invoice(data, context)

    def record_invoice(self, data: InvoiceData, context: OperationalContext) -> Invoice:
        """Validate and commit an invoice, creating one batch per line.

        Raises:
            InvoiceRejected: If any validation check fails; no batch is created.
            DuplicateInvoice: If the invoice number was already committed.
            UnknownProduct: If a line does not resolve in the catalog; no batch
                is created.
        """

        validation = validate_invoice(data, context)
        if not validation.is_valid:
            log.warning("Rejected invoice '%s'", data.invoice_number)
            raise InvoiceRejected(validation)

        with self._invoice_guard:
            if self.repository.has_invoice_number(data.invoice_number):
                log.warning("Duplicate invoice number '%s'", data.invoice_number)
                raise DuplicateInvoice(data.invoice_number)
            batch_ids = self.reconciler.reconcile(data, validation)
            recorded_at = _resolve_timestamp(context)
            invoice = Invoice(
                invoice_id=generate_record_id("INV", recorded_at, self.repository.next_sequence("INV")),
                data=data,
                validation=validation,
                batch_ids=batch_ids,
                recorded_at=recorded_at,
            )
            self.repository.append_invoice(invoice)

        log.info(
            "Recorded invoice '%s' (%s) with %d batch(es), total %s",
            data.invoice_number,
            invoice.invoice_id,
            len(batch_ids),
            data.total_amount,
        )
        return invoice

    # Sales --------------------------------------------------------------

    def record_sale(
        self,
        items: Sequence[SaleItem],
        staff_id: str,
        payment_method: Union[PaymentMethod, str],
        *,
        context: Optional[OperationalContext] = None,
    ) -> SaleTransaction:
        """Allocate every line and record the sale, or record nothing.

        When ``context`` is given, batches expiring on or before
        ``context.today`` are not sold.

        Raises:
            InsufficientStock: If any line cannot be covered. Lines allocated
                before the failing one are released.
            UnknownProduct: If a line references a product not in the catalog.
        """

        if not items:
            raise BusinessRuleViolation("A sale requires at least one item")
        method = PaymentMethod(payment_method)
        products = [self.catalog.get_product(item.product_id) for item in items]
        for item in items:
            require_positive_quantity(item.quantity)
            if item.unit_price < Decimal("0"):
                log.error("Negative unit price for product '%s': %s", item.product_id, item.unit_price)
                raise ValueError("Unit price must be zero or positive")

        as_of = context.today if context is not None else None
        with self._product_locks(product.product_id for product in products):
            allocations: List[LineAllocation] = []
            try:
                for product, item in zip(products, items):
                    allocations.append(self.allocator.allocate(product, item.quantity, as_of=as_of))
                timestamp = _resolve_timestamp(context)
                sale = SaleTransaction(
                    sale_id=generate_record_id("S", timestamp, self.repository.next_sequence("S")),
                    timestamp=timestamp,
                    staff_id=staff_id,
                    items=tuple(items),
                    allocations=tuple(allocations),
                    total_amount=_money(sum((item.line_total for item in items), Decimal("0"))),
                    payment_method=method,
                )
                self.repository.append_sale(sale)
            except Exception:
                for allocation in reversed(allocations):
                    self.allocator.release(allocation)
                raise

        log.info(
            "Recorded sale '%s' by '%s': %d line(s), total %s (%s)",
            sale.sale_id,
            staff_id,
            len(items),
            sale.total_amount,
            method.value,
        )
        return sale

    # Returns, damages, decorations -------------------------------------

    def record_return(
        self,
        product_id: str,
        quantity: int,
        reason: str,
        batch_ref: Optional[int] = None,
        *,
        staff_id: Optional[str] = None,
        context: Optional[OperationalContext] = None,
    ) -> ReturnRecord:
        """Put returned units back into sellable stock.

        The units go back into ``batch_ref`` when it names a batch of this
        product; otherwise an adjustment batch is created for them.
        """

        require_positive_quantity(quantity)
        product = self.catalog.get_product(product_id)
        recorded_at = _resolve_timestamp(context)

        with self.product_lock(product_id):
            batch_id: Optional[int] = None
            is_adjustment = False
            if product.is_decoration:
                self.decorations.add(product_id, quantity)
            else:
                batch = self.repository.get_batch(batch_ref) if batch_ref is not None else None
                if batch is not None and batch.product_id == product_id:
                    self.batch_store.restore(batch.batch_id, quantity)
                    batch_id = batch.batch_id
                else:
                    batch_id = self._create_adjustment_batch(product, quantity, context, recorded_at)
                    is_adjustment = True

            record = ReturnRecord(
                return_id=generate_record_id("R", recorded_at, self.repository.next_sequence("R")),
                product_id=product_id,
                quantity=quantity,
                reason=reason,
                batch_id=batch_id,
                recorded_at=recorded_at,
                is_adjustment=is_adjustment,
                staff_id=staff_id,
            )
            self.repository.append_return(record)

        log.info(
            "Recorded return '%s' of %s x '%s' into %s",
            record.return_id,
            quantity,
            product_id,
            "adjustment batch %s" % batch_id if is_adjustment else "batch %s" % batch_id,
        )
        return record

    def _create_adjustment_batch(
        self,
        product: Product,
        quantity: int,
        context: Optional[OperationalContext],
        recorded_at: datetime,
    ) -> int:
        intake = context.today if context is not None else recorded_at.date()
        shelf_life = self.catalog.default_shelf_life_days(product)
        expiry = intake + timedelta(days=shelf_life) if shelf_life > 0 else None
        return self.batch_store.create_batch(
            product,
            quantity,
            product.invoice_price,
            self.catalog.mrp_for(product),
            expiry,
            Decimal("0"),
            ADJUSTMENT_REFERENCE,
            intake_date=intake,
        )

    def record_damage(
        self,
        product_id: str,
        quantity: int,
        reason: str,
        batch_ref: Optional[int] = None,
        *,
        staff_id: Optional[str] = None,
        context: Optional[OperationalContext] = None,
    ) -> DamageRecord:
        """Remove damaged units from stock without a sale.

        Damaged quantities are physical units: they are taken from
        ``batch_ref`` when given, otherwise from the soonest-expiring batches,
        expired ones included.
        """

        require_positive_quantity(quantity)
        product = self.catalog.get_product(product_id)
        recorded_at = _resolve_timestamp(context)

        with self.product_lock(product_id):
            if batch_ref is not None and not product.is_decoration:
                batch = self.batch_store.get_batch(batch_ref)
                if batch.product_id != product_id:
                    raise UnknownBatch(batch_ref)
                self.batch_store.deplete(batch_ref, quantity)
                allocation = LineAllocation(
                    product_id=product_id,
                    quantity=quantity,
                    batches=(BatchAllocation(batch_id=batch_ref, quantity=quantity, gross_quantity=quantity),),
                )
            else:
                allocation = self.allocator.allocate(product, quantity, apply_loss=False)

            try:
                record = DamageRecord(
                    damage_id=generate_record_id("D", recorded_at, self.repository.next_sequence("D")),
                    product_id=product_id,
                    quantity=quantity,
                    reason=reason,
                    allocation=allocation,
                    loss_amount=self._loss_value(product, allocation),
                    recorded_at=recorded_at,
                    staff_id=staff_id,
                )
                self.repository.append_damage(record)
            except Exception:
                self.allocator.release(allocation)
                raise

        log.info(
            "Recorded damage '%s' of %s x '%s' (loss %s): %s",
            record.damage_id,
            quantity,
            product_id,
            record.loss_amount,
            reason,
        )
        return record

    def _loss_value(self, product: Product, allocation: LineAllocation) -> Decimal:
        if allocation.is_flat:
            return _money(Decimal(allocation.quantity) * product.invoice_price)
        total = Decimal("0")
        for step in allocation.batches:
            batch = self.batch_store.get_batch(step.batch_id)
            total += Decimal(step.gross_quantity) * batch.invoice_price
        return _money(total)

    def record_decoration_use(
        self,
        product_id: str,
        quantity: int,
        reason: str = "",
        *,
        context: Optional[OperationalContext] = None,
    ) -> DecorationUse:
        """Consume decoration units, for example when dressing a cake."""

        require_positive_quantity(quantity)
        product = self.catalog.get_product(product_id)
        if not product.is_decoration:
            raise BusinessRuleViolation(f"Product '{product_id}' is not a decoration")
        recorded_at = _resolve_timestamp(context)

        with self.product_lock(product_id):
            remaining = self.decorations.take(product_id, quantity)
            record = DecorationUse(
                use_id=generate_record_id("U", recorded_at, self.repository.next_sequence("U")),
                product_id=product_id,
                quantity=quantity,
                reason=reason,
                remaining=remaining,
                recorded_at=recorded_at,
            )
            try:
                self.repository.append_decoration_use(record)
            except Exception:
                self.decorations.add(product_id, quantity)
                raise

        log.info("Used %s x decoration '%s' (%s left)", quantity, product_id, remaining)
        return record

    def restock_decoration(self, product_id: str, quantity: int) -> int:
        """Top up a decoration counter and return the new level."""

        require_positive_quantity(quantity)
        product = self.catalog.get_product(product_id)
        if not product.is_decoration:
            raise BusinessRuleViolation(f"Product '{product_id}' is not a decoration")
        with self.product_lock(product_id):
            level = self.decorations.add(product_id, quantity)
        log.info("Restocked decoration '%s' by %s (now %s)", product_id, quantity, level)
        return level

    # Catalog maintenance and reports -----------------------------------

    def register_product(self, product: Product) -> Product:
        """Add ``product`` to the catalog and persist it.

        Raises:
            BusinessRuleViolation: If the product id or item code is taken.
        """

        with self.product_lock(product.product_id):
            for existing in self.catalog.list_products(include_inactive=True):
                if existing.product_id == product.product_id or (
                    product.item_code and existing.item_code == product.item_code
                ):
                    log.warning("Product '%s' clashes with '%s'", product.product_id, existing.product_id)
                    raise BusinessRuleViolation(
                        f"Product '{product.product_id}' duplicates existing product '{existing.product_id}'"
                    )
            product = self.catalog.add_product(product)
            self.repository.save_product(product)
        log.info("Registered product '%s' (%s)", product.product_id, product.name)
        return product

    def update_product_price(
        self,
        product_id: str,
        *,
        invoice_price: Optional[Decimal] = None,
        mrp: Optional[Decimal] = None,
    ) -> Product:
        """The only operation that changes product prices."""

        with self.product_lock(product_id):
            product = self.catalog.update_price(product_id, invoice_price=invoice_price, mrp=mrp)
            self.repository.save_product(product)
        return product

    def stock_summary(self, *, as_of: Optional[date] = None) -> List[StockSummary]:
        """Gross, sellable and next-expiry figures for every active product."""

        summaries: List[StockSummary] = []
        for product in sorted(self.catalog.list_products(), key=lambda p: p.name):
            with self.product_lock(product.product_id):
                if product.is_decoration:
                    level = self.decorations.level(product.product_id)
                    summaries.append(
                        StockSummary(
                            product_id=product.product_id,
                            name=product.name,
                            on_hand=level,
                            sellable=level,
                            is_decoration=True,
                        )
                    )
                    continue
                batches = self.batch_store.list_sellable(product.product_id, as_of=as_of)
            summaries.append(
                StockSummary(
                    product_id=product.product_id,
                    name=product.name,
                    on_hand=sum(batch.quantity for batch in batches),
                    sellable=sum(effective_quantity(batch) for batch in batches),
                    next_expiry=batches[0].expiry_date if batches else None,
                    batch_count=len(batches),
                )
            )
        return summaries

    def daily_loss_summary(self, day: date) -> LossSummary:
        """Count, quantity and value of the damages recorded on ``day``."""

        damages = [record for record in self.repository.list_damages() if record.recorded_at.date() == day]
        return LossSummary(
            day=day,
            damage_count=len(damages),
            total_quantity=sum(record.quantity for record in damages),
            total_loss=_money(sum((record.loss_amount for record in damages), Decimal("0"))),
        )


__all__ = ["LedgerService", "generate_record_id"]
