"""
Typed exception hierarchy for the lettrage kernel.

Every error the engine can surface has its own class, a machine-readable
``code`` class attribute, and structured attributes carrying the data a
caller needs to react.  Callers catch by type and respond with ``e.code``;
they never parse messages.

    LettrageError (base)
    |
    +-- ValidationError
    |   +-- InvalidAmountError          INVALID_AMOUNT
    |   +-- InvalidAllocationError      INVALID_ALLOCATION
    |   +-- InvalidIdempotencyKeyError  INVALID_IDEMPOTENCY_KEY
    |
    +-- LookupFailedError
    |   +-- ContactNotFoundError        NOT_FOUND
    |   +-- InvoiceNotFoundError        NOT_FOUND
    |
    +-- ConcurrencyError
    |   +-- ConflictError               CONFLICT
    |
    +-- PersistenceError
        +-- StorageError                STORAGE_ERROR

Handling categories:
    ValidationError / LookupFailedError -> client error, nothing was touched.
    ConflictError -> re-read the balance, recompute the plan, retry.
    StorageError  -> fatal for the request, nothing was committed.
"""

from typing import Any


class LettrageError(Exception):
    """
    Base exception for all lettrage errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "LETTRAGE_ERROR"


# Input validation


class ValidationError(LettrageError):
    """Base exception for rejected client input."""

    code: str = "VALIDATION_ERROR"


class InvalidAmountError(ValidationError):
    """Payment amount is non-positive or not an integer number of minor units."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: Any, reason: str):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount!r}: {reason}")


class InvalidAllocationError(ValidationError):
    """A requested allocation violates invoice or payment bounds."""

    code: str = "INVALID_ALLOCATION"

    def __init__(self, reason: str, invoice_id: Any = None):
        self.reason = reason
        self.invoice_id = str(invoice_id) if invoice_id is not None else None
        if invoice_id is not None:
            super().__init__(f"Invalid allocation for invoice {invoice_id}: {reason}")
        else:
            super().__init__(f"Invalid allocation: {reason}")


class InvalidIdempotencyKeyError(ValidationError):
    """Idempotency key is missing, blank or too long."""

    code: str = "INVALID_IDEMPOTENCY_KEY"

    def __init__(self, key: Any, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid idempotency key {key!r}: {reason}")


# Lookups


class LookupFailedError(LettrageError):
    """Base exception for unknown contacts or invoices."""

    code: str = "NOT_FOUND"


class ContactNotFoundError(LookupFailedError):
    """Contact with given ID does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, contact_id: Any):
        self.contact_id = str(contact_id)
        super().__init__(f"Contact not found: {contact_id}")


class InvoiceNotFoundError(LookupFailedError):
    """One or more invoices do not exist for the contact."""

    code: str = "NOT_FOUND"

    def __init__(self, invoice_ids: list[Any]):
        self.invoice_ids = [str(i) for i in invoice_ids]
        super().__init__(f"Invoices not found: {', '.join(self.invoice_ids)}")


# Concurrency


class ConcurrencyError(LettrageError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConflictError(ConcurrencyError):
    """An invoice in the plan changed after the plan was computed."""

    code: str = "CONFLICT"

    def __init__(
        self,
        invoice_id: Any,
        expected_version: int | None,
        actual_version: int | None,
        attempts: int | None = None,
    ):
        self.invoice_id = str(invoice_id)
        self.expected_version = expected_version
        self.actual_version = actual_version
        self.attempts = attempts
        message = (
            f"Conflict on invoice {invoice_id}: expected version "
            f"{expected_version}, found {actual_version}"
        )
        if attempts is not None:
            message += f" (gave up after {attempts} attempts)"
        super().__init__(message)


# Persistence


class PersistenceError(LettrageError):
    """Base exception for backing-store failures."""

    code: str = "PERSISTENCE_ERROR"


class StorageError(PersistenceError):
    """The commit could not complete; nothing was retained."""

    code: str = "STORAGE_ERROR"

    def __init__(self, operation: str, cause: str):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Storage failure during {operation}: {cause}")
