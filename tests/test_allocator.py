"""Unit tests for FIFO-by-expiry allocation and decoration counters."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import Mock

import pytest

from batch_ledger.allocator import DecorationStock, SaleAllocator
from batch_ledger.batch_store import BatchStore
from batch_ledger.constants import GrossDepletion
from batch_ledger.exceptions import InsufficientStock, InvalidQuantity

INTAKE = date(2024, 1, 5)


@pytest.fixture
def store(repository):
    return BatchStore(repository)


@pytest.fixture
def decorations(repository):
    return DecorationStock(repository)


@pytest.fixture
def allocator(store, decorations):
    return SaleAllocator(store, decorations)


def _batch(store, product, quantity, *, days=None, loss="0"):
    expiry = INTAKE + timedelta(days=days) if days is not None else None
    return store.create_batch(
        product,
        quantity,
        Decimal("10"),
        Decimal("15"),
        expiry,
        Decimal(loss),
        "INV-1",
        intake_date=INTAKE,
    )


def test_allocation_takes_soonest_expiry_first(store, allocator, catalog):
    """Units come from the batch expiring first, regardless of intake order."""

    puff = catalog.get_product("P-PUFF")
    later = _batch(store, puff, 5, days=3)
    sooner = _batch(store, puff, 5, days=1)

    allocation = allocator.allocate(puff, 3)

    assert [step.batch_id for step in allocation.batches] == [sooner]
    assert store.get_batch(sooner).quantity == 2
    assert store.get_batch(later).quantity == 5


def test_allocation_spills_into_next_batch(store, allocator, catalog):
    puff = catalog.get_product("P-PUFF")
    first = _batch(store, puff, 4, days=1)
    second = _batch(store, puff, 4, days=2)

    allocation = allocator.allocate(puff, 6)

    assert [(step.batch_id, step.quantity) for step in allocation.batches] == [(first, 4), (second, 2)]
    assert store.get_batch(first).quantity == 0
    assert store.get_batch(second).quantity == 2


def test_non_perishable_batches_are_used_last(store, allocator, catalog):
    box = catalog.get_product("P-BOX")
    forever = _batch(store, box, 5)
    dated = _batch(store, box, 5, days=30)

    allocation = allocator.allocate(box, 5)

    assert allocation.batches[0].batch_id == dated
    assert store.get_batch(forever).quantity == 5


def test_loss_fraction_round_trip(store, allocator, catalog):
    """100 units at 5% loss sell as 95, after which nothing is sellable."""

    cake = catalog.get_product("P-CAKE")
    batch_id = _batch(store, cake, 100, days=3, loss="0.05")

    assert allocator.available(cake) == 95
    allocation = allocator.allocate(cake, 95)

    assert allocation.batches[0].gross_quantity == 100
    assert store.get_batch(batch_id).quantity == 0
    assert allocator.available(cake) == 0


def test_partial_sale_charges_proportional_gross(store, allocator, catalog):
    cake = catalog.get_product("P-CAKE")
    batch_id = _batch(store, cake, 20, days=3, loss="0.05")

    allocation = allocator.allocate(cake, 4)

    assert allocation.batches[0].gross_quantity == 5
    assert store.get_batch(batch_id).quantity == 15
    assert allocator.available(cake) == 14


def test_exact_remaining_policy_preserves_sellable_count(store, decorations, catalog):
    allocator = SaleAllocator(store, decorations, depletion=GrossDepletion.EXACT_REMAINING)
    cake = catalog.get_product("P-CAKE")
    batch_id = _batch(store, cake, 20, days=3, loss="0.05")

    allocation = allocator.allocate(cake, 4)

    assert allocation.batches[0].gross_quantity == 4
    assert store.get_batch(batch_id).quantity == 16
    assert allocator.available(cake) == 15


def test_shortfall_restores_every_touched_batch(store, allocator, catalog):
    """A failed allocation must leave every batch exactly as before."""

    puff = catalog.get_product("P-PUFF")
    first = _batch(store, puff, 3, days=1)
    second = _batch(store, puff, 2, days=2)

    with pytest.raises(InsufficientStock) as excinfo:
        allocator.allocate(puff, 6)

    assert excinfo.value.available == 5
    assert store.get_batch(first).quantity == 3
    assert store.get_batch(second).quantity == 2


def test_expired_batches_are_not_sold(store, allocator, catalog):
    puff = catalog.get_product("P-PUFF")
    _batch(store, puff, 5, days=0)
    fresh = _batch(store, puff, 2, days=2)

    assert allocator.available(puff, as_of=INTAKE) == 2
    with pytest.raises(InsufficientStock):
        allocator.allocate(puff, 3, as_of=INTAKE)
    allocation = allocator.allocate(puff, 2, as_of=INTAKE)
    assert [step.batch_id for step in allocation.batches] == [fresh]


def test_physical_allocation_ignores_loss(store, allocator, catalog):
    cake = catalog.get_product("P-CAKE")
    _batch(store, cake, 10, days=3, loss="0.05")

    assert allocator.available(cake, apply_loss=False) == 10
    allocation = allocator.allocate(cake, 10, apply_loss=False)

    assert allocation.batches[0].gross_quantity == 10


def test_error_mid_walk_restores_and_propagates(store, decorations, catalog):
    """An unexpected store failure rolls back what was already taken."""

    puff = catalog.get_product("P-PUFF")
    first = _batch(store, puff, 2, days=1)
    _batch(store, puff, 2, days=2)

    flaky = Mock(wraps=store)
    calls = {"count": 0}

    def deplete(batch_id, quantity):
        calls["count"] += 1
        if calls["count"] == 2:
            raise RuntimeError("disk full")
        return store.deplete(batch_id, quantity)

    flaky.deplete.side_effect = deplete
    allocator = SaleAllocator(flaky, decorations)

    with pytest.raises(RuntimeError):
        allocator.allocate(puff, 3)

    assert store.get_batch(first).quantity == 2


def test_release_returns_stock(store, allocator, catalog):
    puff = catalog.get_product("P-PUFF")
    batch_id = _batch(store, puff, 5, days=1)
    allocation = allocator.allocate(puff, 4)

    allocator.release(allocation)

    assert store.get_batch(batch_id).quantity == 5


def test_allocate_rejects_non_positive_quantity(allocator, catalog):
    with pytest.raises(InvalidQuantity):
        allocator.allocate(catalog.get_product("P-PUFF"), 0)


# ---------------------------------------------------------------------------
# Decorations
# ---------------------------------------------------------------------------


def test_decoration_allocation_uses_flat_counter(allocator, decorations, catalog):
    candle = catalog.get_product("P-CANDLE")
    decorations.add("P-CANDLE", 10)

    allocation = allocator.allocate(candle, 4)

    assert allocation.is_flat
    assert allocation.batches == ()
    assert decorations.level("P-CANDLE") == 6


def test_decoration_shortfall_leaves_counter(decorations):
    decorations.add("P-CANDLE", 2)

    with pytest.raises(InsufficientStock):
        decorations.take("P-CANDLE", 3)

    assert decorations.level("P-CANDLE") == 2


def test_decoration_release_tops_up_counter(allocator, decorations, catalog):
    candle = catalog.get_product("P-CANDLE")
    decorations.add("P-CANDLE", 3)
    allocation = allocator.allocate(candle, 3)

    allocator.release(allocation)

    assert decorations.level("P-CANDLE") == 3
