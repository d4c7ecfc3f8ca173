"""
Module: lettrage_kernel.models.payment
Responsibility: ORM persistence for applied payments and their per-invoice
    allocation lines.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - (contact_id, idempotency_key) is unique (uq_payment_idempotency); the
      constraint is what makes a concurrent duplicate application fail.
    - amount > 0, remaining_credit >= 0, applied_amount > 0 (CHECK).
    - Payments are immutable once written; corrections are new payments.

Failure modes:
    - IntegrityError on a duplicate idempotency key or a CHECK violation.
"""

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lettrage_kernel.db.base import Base


class Payment(Base):
    """
    One incoming customer payment and how much of it was left as credit.

    Guarantees:
        - sum(allocations.applied_amount) + remaining_credit == amount
          (written together by the payment applier).
    """

    __tablename__ = "payments"

    __table_args__ = (
        UniqueConstraint(
            "contact_id", "idempotency_key", name="uq_payment_idempotency"
        ),
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        CheckConstraint(
            "remaining_credit >= 0", name="ck_payment_credit_nonneg"
        ),
        Index("idx_payment_contact", "contact_id"),
    )

    contact_id: Mapped[UUID] = mapped_column(
        ForeignKey("contacts.id"),
        nullable=False,
    )

    amount: Mapped[int] = mapped_column(nullable=False)

    remaining_credit: Mapped[int] = mapped_column(nullable=False, default=0)

    strategy: Mapped[str] = mapped_column(String(10), nullable=False)

    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(nullable=False)

    payment_date: Mapped[date] = mapped_column(nullable=False)

    # Bank transfer reference, cheque number...
    payment_reference: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    payment_method: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
    )

    allocations: Mapped[list["PaymentAllocation"]] = relationship(
        back_populates="payment",
        order_by="PaymentAllocation.sequence",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<Payment {self.id}: {self.amount} "
            f"credit={self.remaining_credit} key={self.idempotency_key}>"
        )


class PaymentAllocation(Base):
    """Amount of a payment applied to one invoice, with before/after state."""

    __tablename__ = "payment_allocations"

    __table_args__ = (
        UniqueConstraint("payment_id", "sequence", name="uq_allocation_sequence"),
        UniqueConstraint("payment_id", "invoice_id", name="uq_allocation_invoice"),
        CheckConstraint(
            "applied_amount > 0", name="ck_allocation_amount_positive"
        ),
        Index("idx_allocation_invoice", "invoice_id"),
    )

    payment_id: Mapped[UUID] = mapped_column(
        ForeignKey("payments.id"),
        nullable=False,
    )

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoices.id"),
        nullable=False,
    )

    sequence: Mapped[int] = mapped_column(nullable=False)

    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)

    applied_amount: Mapped[int] = mapped_column(nullable=False)

    previous_amount_paid: Mapped[int] = mapped_column(nullable=False)

    resulting_amount_paid: Mapped[int] = mapped_column(nullable=False)

    previous_status: Mapped[str] = mapped_column(String(20), nullable=False)

    resulting_status: Mapped[str] = mapped_column(String(20), nullable=False)

    payment: Mapped[Payment] = relationship(back_populates="allocations")

    def __repr__(self) -> str:
        return (
            f"<PaymentAllocation #{self.sequence} {self.invoice_number}: "
            f"{self.applied_amount} -> {self.resulting_status}>"
        )
