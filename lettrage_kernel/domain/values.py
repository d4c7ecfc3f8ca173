"""
Values -- Minor-unit money and invoice status rules.

Responsibility:
    Boundary validation for monetary amounts and the single definition of
    how an invoice's status follows from its paid amount.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Money is an ``int`` count of minor units (cents).  ``bool``, ``float``,
      ``Decimal`` and ``str`` are rejected, so no fractional arithmetic can
      reach allocation math and conservation stays exact.
    - Status is a pure function of ``amount_paid`` vs ``total_amount``;
      CANCELLED is never derived, only set from outside.

Failure modes:
    - InvalidAmountError from ``require_minor_units`` / ``require_positive_amount``.
    - ValueError from ``derive_status`` when amounts are out of bounds.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from lettrage_kernel.exceptions import InvalidAmountError


class InvoiceStatus(str, Enum):
    """Invoice payment status.

    Contract: UNPAID -> PARTIALLY_PAID -> PAID is monotonic.  CANCELLED is
    terminal and excluded from allocation.
    """

    UNPAID = "UNPAID"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    CANCELLED = "CANCELLED"

    @property
    def is_open(self) -> bool:
        """True if the invoice can still receive allocations."""
        return self in OPEN_STATUSES


OPEN_STATUSES: frozenset[InvoiceStatus] = frozenset(
    {InvoiceStatus.UNPAID, InvoiceStatus.PARTIALLY_PAID}
)

_STATUS_RANK = {
    InvoiceStatus.UNPAID: 0,
    InvoiceStatus.PARTIALLY_PAID: 1,
    InvoiceStatus.PAID: 2,
}


class PaymentMethod(str, Enum):
    """How the customer paid (bank transfer, cheque, card, cash)."""

    VIREMENT = "VIREMENT"
    CHEQUE = "CHEQUE"
    CB = "CB"
    ESPECES = "ESPECES"


def is_minor_units(value: Any) -> bool:
    """True if ``value`` is an int that is not a bool."""
    return isinstance(value, int) and not isinstance(value, bool)


def require_minor_units(value: Any, field: str = "amount") -> int:
    """Return ``value`` if it is an int of minor units, else raise.

    Raises:
        InvalidAmountError: value is a bool, float, Decimal, str or other type.
    """
    if not is_minor_units(value):
        raise InvalidAmountError(
            value, f"{field} must be an integer number of minor units"
        )
    return value


def require_positive_amount(value: Any, field: str = "amount") -> int:
    """Return ``value`` if it is a positive int of minor units, else raise.

    Raises:
        InvalidAmountError: not an int, or ``value <= 0``.
    """
    amount = require_minor_units(value, field)
    if amount <= 0:
        raise InvalidAmountError(value, f"{field} must be positive")
    return amount


def derive_status(amount_paid: int, total_amount: int) -> InvoiceStatus:
    """Status implied by the paid amount.

    Raises:
        ValueError: ``amount_paid`` outside ``[0, total_amount]``.
    """
    if amount_paid < 0 or amount_paid > total_amount:
        raise ValueError(
            f"amount_paid {amount_paid} outside [0, {total_amount}]"
        )
    if amount_paid == 0 and total_amount > 0:
        return InvoiceStatus.UNPAID
    if amount_paid < total_amount:
        return InvoiceStatus.PARTIALLY_PAID
    return InvoiceStatus.PAID


def is_forward_transition(previous: InvoiceStatus, new: InvoiceStatus) -> bool:
    """True if ``previous -> new`` never regresses the payment state machine."""
    if previous not in _STATUS_RANK or new not in _STATUS_RANK:
        return False
    return _STATUS_RANK[new] >= _STATUS_RANK[previous]
