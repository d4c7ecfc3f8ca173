"""
Module: lettrage_kernel.selectors.balance_selector
Responsibility: Compute a contact's outstanding balance from stored invoices.
Architecture position: Kernel > Selectors.  Read-only.

Invariants enforced:
    - Outstanding per invoice = total_amount - amount_paid, for UNPAID and
      PARTIALLY_PAID invoices only.  PAID and CANCELLED invoices are neither
      listed nor counted.
    - Invoices are listed in allocation order: due_date, then issued_at,
      then id (a total order).
    - Balances are recomputed on every call; queries use
      ``populate_existing`` so a long-lived session never serves stale rows.

Failure modes:
    - ContactNotFoundError if the contact does not exist.
"""

from collections.abc import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from lettrage_kernel.domain.clock import Clock, SystemClock
from lettrage_kernel.domain.dtos import BalanceBreakdown, ContactBalance, OutstandingInvoice
from lettrage_kernel.domain.values import OPEN_STATUSES, InvoiceStatus
from lettrage_kernel.exceptions import ContactNotFoundError
from lettrage_kernel.logging_config import get_logger
from lettrage_kernel.models.contact import Contact
from lettrage_kernel.models.invoice import Invoice
from lettrage_kernel.selectors.base import BaseSelector

logger = get_logger("selectors.balance")


class BalanceSelector(BaseSelector):
    """
    Read-side aggregation of a contact's open invoices.

    Contract:
        Pure read; safe to call concurrently and repeatedly.
    Non-goals:
        - Does not cache anything between calls.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    def get_balance(self, contact_id: UUID) -> ContactBalance:
        """Return the current ContactBalance of ``contact_id``.

        Raises:
            ContactNotFoundError: Unknown contact.
        """
        contact = self._get_contact(contact_id)
        as_of = self._clock.today()

        rows = self.session.execute(
            select(Invoice)
            .where(
                Invoice.contact_id == contact_id,
                Invoice.status.in_([s.value for s in OPEN_STATUSES]),
            )
            .execution_options(populate_existing=True)
        ).scalars().all()

        invoices = sorted(
            (OutstandingInvoice.from_model(row, as_of) for row in rows),
            key=lambda inv: inv.sort_key,
        )

        breakdown = BalanceBreakdown(
            unpaid=sum(
                inv.outstanding for inv in invoices
                if inv.status == InvoiceStatus.UNPAID
            ),
            partially_paid=sum(
                inv.outstanding for inv in invoices
                if inv.status == InvoiceStatus.PARTIALLY_PAID
            ),
        )

        balance = ContactBalance(
            contact_id=contact.id,
            contact_name=contact.display_name,
            as_of=as_of,
            invoices=tuple(invoices),
            breakdown=breakdown,
        )

        logger.debug(
            "balance_computed",
            extra={
                "contact_id": str(contact_id),
                "invoice_count": balance.invoice_count,
                "total_outstanding": balance.total_outstanding,
            },
        )
        return balance

    def get_invoices(
        self,
        contact_id: UUID,
        invoice_ids: Sequence[UUID],
    ) -> dict[UUID, OutstandingInvoice]:
        """Stored invoices of ``contact_id`` among ``invoice_ids``, any status.

        Ids that do not exist, or belong to another contact, are absent from
        the returned mapping.
        """
        if not invoice_ids:
            return {}
        rows = self.session.execute(
            select(Invoice)
            .where(
                Invoice.contact_id == contact_id,
                Invoice.id.in_(list(invoice_ids)),
            )
            .execution_options(populate_existing=True)
        ).scalars().all()
        as_of = self._clock.today()
        return {row.id: OutstandingInvoice.from_model(row, as_of) for row in rows}

    def _get_contact(self, contact_id: UUID) -> Contact:
        contact = self.session.execute(
            select(Contact).where(Contact.id == contact_id)
        ).scalar_one_or_none()
        if contact is None:
            logger.info(
                "balance_contact_not_found",
                extra={"contact_id": str(contact_id)},
            )
            raise ContactNotFoundError(contact_id)
        return contact
