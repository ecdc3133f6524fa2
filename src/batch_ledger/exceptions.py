"""Typed errors raised by the batch ledger core.

Every failure surfaced at the :class:`~batch_ledger.ledger.LedgerService`
boundary is a :class:`BusinessRuleViolation`, raised only after any partial
batch mutation has been rolled back.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import InvoiceValidation


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class InvalidQuantity(BusinessRuleViolation, ValueError):
    """Raised when a quantity is zero, negative, or not a whole number."""


class InvalidLossFraction(BusinessRuleViolation, ValueError):
    """Raised when a weight-loss fraction falls outside ``[0, 1)``."""


class InsufficientStock(BusinessRuleViolation):
    """Raised when sellable stock cannot cover a requested quantity."""

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for product '{product_id}': "
            f"requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InvoiceRejected(BusinessRuleViolation):
    """Raised when an invoice fails validation; carries every failed check."""

    def __init__(self, validation: "InvoiceValidation") -> None:
        reasons = "; ".join(validation.failures) or "invoice is not valid"
        super().__init__(f"Invoice rejected: {reasons}")
        self.validation = validation


class DuplicateInvoice(BusinessRuleViolation):
    """Raised when an invoice number has already been committed."""

    def __init__(self, invoice_number: str) -> None:
        super().__init__(f"Invoice already recorded with number '{invoice_number}'")
        self.invoice_number = invoice_number


class UnknownProduct(BusinessRuleViolation, LookupError):
    """Raised when the catalog cannot resolve a product name, code, or id."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Unknown product: {key}")
        self.key = key


class UnknownBatch(BusinessRuleViolation, LookupError):
    """Raised when a batch id is not present in the store."""

    def __init__(self, batch_id: int) -> None:
        super().__init__(f"Unknown batch id: {batch_id}")
        self.batch_id = batch_id


__all__ = [
    "BusinessRuleViolation",
    "DuplicateInvoice",
    "InsufficientStock",
    "InvalidLossFraction",
    "InvalidQuantity",
    "InvoiceRejected",
    "UnknownBatch",
    "UnknownProduct",
]
