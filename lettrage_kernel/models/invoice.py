"""
Module: lettrage_kernel.models.invoice
Responsibility: ORM persistence for customer invoices, including the paid
    amount, derived status and the optimistic-concurrency version counter.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/values.py only.

Invariants enforced:
    - 0 <= amount_paid <= total_amount (CHECK constraints ck_invoice_*).
    - version >= 1; the payment applier bumps it on every mutation, and any
      external edit (cancellation, correction) must bump it too.
    - Invoices are created by the billing subsystem and mutated only by the
      payment applier.  They are never deleted while a payment references
      them (payment_allocations.invoice_id FK).

Failure modes:
    - IntegrityError on a duplicate invoice_number or a CHECK violation.
"""

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from lettrage_kernel.db.base import Base
from lettrage_kernel.domain.values import InvoiceStatus


class Invoice(Base):
    """
    Customer invoice as seen by the allocation engine.

    Guarantees:
        - total_amount and amount_paid are integer minor units.
        - status is stored as the InvoiceStatus string value.
    """

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("invoice_number", name="uq_invoice_number"),
        CheckConstraint("total_amount >= 0", name="ck_invoice_total_nonneg"),
        CheckConstraint("amount_paid >= 0", name="ck_invoice_paid_nonneg"),
        CheckConstraint(
            "amount_paid <= total_amount", name="ck_invoice_paid_le_total"
        ),
        CheckConstraint("version >= 1", name="ck_invoice_version_positive"),
        Index("idx_invoice_contact_status", "contact_id", "status"),
    )

    contact_id: Mapped[UUID] = mapped_column(
        ForeignKey("contacts.id"),
        nullable=False,
    )

    invoice_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    # Immutable once issued
    total_amount: Mapped[int] = mapped_column(nullable=False)

    amount_paid: Mapped[int] = mapped_column(nullable=False, default=0)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=InvoiceStatus.UNPAID.value,
    )

    due_date: Mapped[date] = mapped_column(nullable=False)

    issued_at: Mapped[datetime] = mapped_column(nullable=False)

    version: Mapped[int] = mapped_column(nullable=False, default=1)

    def __repr__(self) -> str:
        return (
            f"<Invoice {self.invoice_number}: {self.amount_paid}/"
            f"{self.total_amount} {self.status} v{self.version}>"
        )
