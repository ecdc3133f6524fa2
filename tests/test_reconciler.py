"""Unit tests for invoice reconciliation into stock batches."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from batch_ledger import validator
from batch_ledger.allocator import DecorationStock
from batch_ledger.batch_store import BatchStore
from batch_ledger.exceptions import InvoiceRejected, UnknownProduct
from batch_ledger.models import InvoiceValidation
from batch_ledger.reconciler import InvoiceReconciler

from conftest import TODAY, make_invoice


@pytest.fixture
def store(repository):
    return BatchStore(repository)


@pytest.fixture
def decorations(repository):
    return DecorationStock(repository)


@pytest.fixture
def reconciler(store, catalog, decorations):
    return InvoiceReconciler(store, catalog, decorations)


def _validate(data, op_context):
    return validator.validate_invoice(data, op_context)


def test_each_line_becomes_a_batch(reconciler, store, op_context):
    data = make_invoice(
        ("OG1001", "Black Forest Cake", 2, "91.00"),
        ("OS2001", "Veg Puff", 6, "12.00"),
    )

    batch_ids = reconciler.reconcile(data, _validate(data, op_context))

    cake_batch, puff_batch = (store.get_batch(batch_id) for batch_id in batch_ids)
    assert cake_batch.product_id == "P-CAKE"
    assert cake_batch.quantity == 2
    assert cake_batch.expiry_date == TODAY + timedelta(days=3)
    assert cake_batch.grm_loss == Decimal("0.05")
    assert cake_batch.mrp == Decimal("125")
    assert cake_batch.source_invoice_ref == "INV-1001"
    assert puff_batch.product_id == "P-PUFF"
    assert puff_batch.invoice_price == Decimal("12.00")


def test_non_perishable_line_has_no_expiry(reconciler, store, op_context):
    data = make_invoice(("ID3001", "Cake Box", 20, "8.00"))

    (batch_id,) = reconciler.reconcile(data, _validate(data, op_context))

    batch = store.get_batch(batch_id)
    assert batch.expiry_date is None
    assert batch.mrp == Decimal("10")
    assert batch.grm_loss == Decimal("0")


def test_lines_fall_back_to_item_name(reconciler, store, op_context):
    data = make_invoice(("ZZ-UNKNOWN", "veg puff", 3, "12.00"))

    (batch_id,) = reconciler.reconcile(data, _validate(data, op_context))

    assert store.get_batch(batch_id).product_id == "P-PUFF"


def test_decoration_lines_top_up_counter(reconciler, decorations, store, op_context):
    data = make_invoice(("", "Birthday Candle", 50, "2.00"))

    batch_ids = reconciler.reconcile(data, _validate(data, op_context))

    assert batch_ids == ()
    assert decorations.level("P-CANDLE") == 50
    assert store.list_batches("P-CANDLE") == []


def test_invalid_validation_is_rejected_without_batches(reconciler, repository):
    data = make_invoice(("OG1001", "Black Forest Cake", 2, "91.00"))
    validation = InvoiceValidation(
        is_today=False,
        is_correct_store=True,
        is_arithmetic_valid=True,
        is_structurally_valid=True,
        failures=("invoice date is stale",),
    )

    with pytest.raises(InvoiceRejected) as excinfo:
        reconciler.reconcile(data, validation)

    assert excinfo.value.validation is validation
    assert repository.list_batches() == []


def test_unknown_line_rolls_back_earlier_batches(reconciler, repository, decorations, op_context):
    """A failing third line leaves no batch and no counter change behind."""

    data = make_invoice(
        ("OG1001", "Black Forest Cake", 2, "91.00"),
        ("", "Birthday Candle", 5, "2.00"),
        ("QQ9999", "Mystery Loaf", 1, "40.00"),
    )

    with pytest.raises(UnknownProduct):
        reconciler.reconcile(data, _validate(data, op_context))

    assert repository.list_batches() == []
    assert decorations.level("P-CANDLE") == 0


def test_invoice_products_are_locked_together(store, catalog, decorations, op_context):
    lock = MagicMock()
    reconciler = InvoiceReconciler(store, catalog, decorations, product_locks=lock)
    data = make_invoice(
        ("OS2001", "Veg Puff", 6, "12.00"),
        ("OG1001", "Black Forest Cake", 2, "91.00"),
    )

    reconciler.reconcile(data, _validate(data, op_context))

    lock.assert_called_once()
    assert sorted(lock.call_args.args[0]) == ["P-CAKE", "P-PUFF"]


def test_unknown_line_is_found_before_any_stock_is_created(store, catalog, decorations, op_context):
    create_batch = MagicMock(wraps=store.create_batch)
    store.create_batch = create_batch
    reconciler = InvoiceReconciler(store, catalog, decorations)
    data = make_invoice(
        ("OG1001", "Black Forest Cake", 2, "91.00"),
        ("QQ9999", "Mystery Loaf", 1, "40.00"),
    )

    with pytest.raises(UnknownProduct):
        reconciler.reconcile(data, _validate(data, op_context))

    create_batch.assert_not_called()


def test_failed_batch_write_removes_earlier_lines(store, catalog, decorations, repository, op_context):
    """A storage failure on a later line undoes the lines before it."""

    original = store.create_batch
    calls = {"count": 0}

    def create_batch(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 2:
            raise RuntimeError("disk full")
        return original(*args, **kwargs)

    store.create_batch = create_batch
    reconciler = InvoiceReconciler(store, catalog, decorations)
    data = make_invoice(
        ("", "Birthday Candle", 5, "2.00"),
        ("OG1001", "Black Forest Cake", 2, "91.00"),
        ("OS2001", "Veg Puff", 6, "12.00"),
    )

    with pytest.raises(RuntimeError):
        reconciler.reconcile(data, _validate(data, op_context))

    assert repository.list_batches() == []
    assert decorations.level("P-CANDLE") == 0
