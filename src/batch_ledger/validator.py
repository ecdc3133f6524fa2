"""Invoice validation.

Validation is a pure function of the invoice data and the operational
context. Every check runs even after an earlier one fails, so the resulting
:class:`~batch_ledger.models.InvoiceValidation` lists all problems at once.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import List

from . import log
from .constants import MONEY_PLACES
from .models import InvoiceData, InvoiceValidation, OperationalContext


def _money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def _is_whole(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def check_date(data: InvoiceData, context: OperationalContext) -> List[str]:
    if data.invoice_date is None:
        return ["invoice date is missing"]
    if data.invoice_date != context.today:
        return [f"invoice date {data.invoice_date.isoformat()} is not {context.today.isoformat()}"]
    return []


def check_store(data: InvoiceData, context: OperationalContext) -> List[str]:
    if data.store_id != context.store_id:
        return [f"store '{data.store_id}' does not match '{context.store_id}'"]
    return []


def check_arithmetic(data: InvoiceData) -> List[str]:
    """Compare line arithmetic against the declared totals at cent precision."""

    failures: List[str] = []
    for position, item in enumerate(data.items, start=1):
        if item.total is not None and _money(item.total) != _money(item.line_total):
            failures.append(
                f"line {position} total {_money(item.total)} does not equal "
                f"{item.qty} x {item.rate} = {_money(item.line_total)}"
            )

    computed_amount = _money(sum((item.line_total for item in data.items), Decimal("0")))
    if computed_amount != _money(data.total_amount):
        failures.append(
            f"line totals sum to {computed_amount} but invoice declares {_money(data.total_amount)}"
        )

    computed_qty = sum(item.qty for item in data.items)
    if computed_qty != data.total_qty:
        failures.append(f"line quantities sum to {computed_qty} but invoice declares {data.total_qty}")
    return failures


def check_structure(data: InvoiceData) -> List[str]:
    failures: List[str] = []
    if not data.invoice_number:
        failures.append("invoice number is missing")
    if not data.items:
        failures.append("invoice has no items")
    if not _is_whole(data.total_qty):
        failures.append(f"declared total quantity {data.total_qty} is not a whole number")
    for position, item in enumerate(data.items, start=1):
        if not _is_whole(item.qty):
            failures.append(f"line {position} quantity {item.qty} is not a whole number")
        elif item.qty <= 0:
            failures.append(f"line {position} quantity must be positive")
        if item.rate < Decimal("0"):
            failures.append(f"line {position} rate must not be negative")
        if not item.item_code and not item.item_name:
            failures.append(f"line {position} has neither item code nor name")
    return failures


def validate_invoice(data: InvoiceData, context: OperationalContext) -> InvoiceValidation:
    """Run every invoice check and collect the outcome.

    Args:
        data (InvoiceData): Structured invoice from document ingestion.
        context (OperationalContext): Expected store and business date.

    Returns:
        InvoiceValidation: Per-check flags plus a message for each failure.
            Equal inputs always produce equal validation records.
    """

    date_failures = check_date(data, context)
    store_failures = check_store(data, context)
    arithmetic_failures = check_arithmetic(data)
    structure_failures = check_structure(data)
    validation = InvoiceValidation(
        is_today=not date_failures,
        is_correct_store=not store_failures,
        is_arithmetic_valid=not arithmetic_failures,
        is_structurally_valid=not structure_failures,
        failures=tuple(date_failures + store_failures + arithmetic_failures + structure_failures),
    )
    if validation.is_valid:
        log.debug("Invoice '%s' passed validation", data.invoice_number)
    else:
        log.warning(
            "Invoice '%s' failed validation: %s",
            data.invoice_number,
            "; ".join(validation.failures),
        )
    return validation


__all__ = [
    "check_arithmetic",
    "check_date",
    "check_store",
    "check_structure",
    "validate_invoice",
]
