"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Immutable structures that flow through the allocation pipeline:

        ContactBalance (selector output)
            -> AllocationPlan (planner output)
            -> BulkPaymentResult (applier output)

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Free of ORM
    dependencies; ``from_model`` converters are invoked only from the
    selector and service layers.

Invariants enforced:
    - AllocationPlan conservation: ``total_applied + remaining_credit == amount``
      (checked in ``__post_init__``).
    - BulkPaymentResult conservation, same rule.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING
from uuid import UUID

from lettrage_kernel.domain.values import InvoiceStatus, PaymentMethod

if TYPE_CHECKING:
    from lettrage_kernel.models.invoice import Invoice as InvoiceModel
    from lettrage_kernel.models.payment import Payment as PaymentModel


# =============================================================================
# Balance
# =============================================================================


@dataclass(frozen=True)
class OutstandingInvoice:
    """One open invoice as seen at read time.

    ``version`` is the optimistic-concurrency counter captured with the
    read; the applier compares it again at commit time.
    """

    invoice_id: UUID
    invoice_number: str
    total_amount: int
    amount_paid: int
    status: InvoiceStatus
    due_date: date
    issued_at: datetime
    version: int
    is_overdue: bool = False

    @property
    def outstanding(self) -> int:
        return self.total_amount - self.amount_paid

    @property
    def sort_key(self) -> tuple[date, datetime, str]:
        """Total order used for allocation and balance listing."""
        return (self.due_date, self.issued_at, str(self.invoice_id))

    @classmethod
    def from_model(cls, model: InvoiceModel, as_of: date | None = None) -> OutstandingInvoice:
        return cls(
            invoice_id=model.id,
            invoice_number=model.invoice_number,
            total_amount=model.total_amount,
            amount_paid=model.amount_paid,
            status=InvoiceStatus(model.status),
            due_date=model.due_date,
            issued_at=model.issued_at,
            version=model.version,
            is_overdue=as_of is not None and model.due_date < as_of,
        )


@dataclass(frozen=True)
class BalanceBreakdown:
    """Outstanding totals split by invoice status."""

    unpaid: int = 0
    partially_paid: int = 0


@dataclass(frozen=True)
class ContactBalance:
    """Derived balance of a contact.  Recomputed on demand, never cached."""

    contact_id: UUID
    contact_name: str
    as_of: date
    invoices: tuple[OutstandingInvoice, ...]
    breakdown: BalanceBreakdown = field(default_factory=BalanceBreakdown)

    @property
    def total_outstanding(self) -> int:
        return sum(inv.outstanding for inv in self.invoices)

    @property
    def invoice_count(self) -> int:
        return len(self.invoices)

    @property
    def oldest_issue_date(self) -> date | None:
        if not self.invoices:
            return None
        return min(inv.issued_at for inv in self.invoices).date()


# =============================================================================
# Plan
# =============================================================================


class AllocationStrategy(str, Enum):
    """How a payment is spread across invoices."""

    AUTO = "AUTO"  # Oldest due date first
    MANUAL = "MANUAL"  # Caller-supplied amounts per invoice


@dataclass(frozen=True)
class PlannedAllocation:
    """Amount the plan applies to one invoice and the state it leads to."""

    invoice_id: UUID
    invoice_number: str
    applied_amount: int
    previous_amount_paid: int
    resulting_amount_paid: int
    previous_status: InvoiceStatus
    resulting_status: InvoiceStatus


@dataclass(frozen=True)
class AllocationPlan:
    """
    Deterministic allocation of one payment.

    Contract:
        Produced by the allocation planner; consumed by the payment applier.
    Guarantees:
        - ``total_applied + remaining_credit == amount``.
        - ``invoice_versions`` holds the read-time version of every invoice
          the plan mutates, and nothing else.
    """

    contact_id: UUID
    amount: int
    strategy: AllocationStrategy
    allocations: tuple[PlannedAllocation, ...]
    remaining_credit: int
    invoice_versions: Mapping[UUID, int]

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "invoice_versions", MappingProxyType(dict(self.invoice_versions))
        )
        if self.total_applied + self.remaining_credit != self.amount:
            raise ValueError(
                f"Allocation conservation violated: {self.total_applied} + "
                f"{self.remaining_credit} != {self.amount}"
            )
        if self.remaining_credit < 0:
            raise ValueError(f"Negative remaining credit: {self.remaining_credit}")

    @property
    def total_applied(self) -> int:
        return sum(a.applied_amount for a in self.allocations)


# =============================================================================
# Application result
# =============================================================================


@dataclass(frozen=True)
class AppliedAllocation:
    """One committed allocation line of a payment."""

    invoice_id: UUID
    invoice_number: str
    applied_amount: int
    previous_amount_paid: int
    resulting_amount_paid: int
    previous_status: InvoiceStatus
    resulting_status: InvoiceStatus


@dataclass(frozen=True)
class BulkPaymentResult:
    """
    Outcome of applying a payment, rebuilt from the stored payment record.

    A replay with the same idempotency key returns an equal instance.
    """

    payment_id: UUID
    contact_id: UUID
    amount: int
    allocations: tuple[AppliedAllocation, ...]
    remaining_credit: int
    created_at: datetime
    idempotency_key: str
    payment_date: date
    payment_reference: str | None = None
    payment_method: PaymentMethod | None = None

    def __post_init__(self) -> None:
        if self.total_applied + self.remaining_credit != self.amount:
            raise ValueError(
                f"Payment conservation violated: {self.total_applied} + "
                f"{self.remaining_credit} != {self.amount}"
            )

    @property
    def total_applied(self) -> int:
        return sum(a.applied_amount for a in self.allocations)

    @classmethod
    def from_model(cls, payment: PaymentModel) -> BulkPaymentResult:
        lines = sorted(payment.allocations, key=lambda a: a.sequence)
        return cls(
            payment_id=payment.id,
            contact_id=payment.contact_id,
            amount=payment.amount,
            allocations=tuple(
                AppliedAllocation(
                    invoice_id=line.invoice_id,
                    invoice_number=line.invoice_number,
                    applied_amount=line.applied_amount,
                    previous_amount_paid=line.previous_amount_paid,
                    resulting_amount_paid=line.resulting_amount_paid,
                    previous_status=InvoiceStatus(line.previous_status),
                    resulting_status=InvoiceStatus(line.resulting_status),
                )
                for line in lines
            ),
            remaining_credit=payment.remaining_credit,
            created_at=payment.created_at,
            idempotency_key=payment.idempotency_key,
            payment_date=payment.payment_date,
            payment_reference=payment.payment_reference,
            payment_method=(
                PaymentMethod(payment.payment_method)
                if payment.payment_method
                else None
            ),
        )
