"""
PaymentApplier -- the only component that mutates invoices and payments.

Responsibility:
    Persist an AllocationPlan as one immutable Payment record plus the
    matching invoice updates, exactly once per (contact, idempotency key).

Architecture position:
    Kernel > Services -- imperative shell.  Called by the bulk payment
    service after the balance selector and the allocation planner.
    Unlike flush-only kernel services, the applier owns its transaction
    boundary: it commits on success and rolls back on every failure, so no
    caller can observe invoice updates without their payment or the reverse.

Invariants enforced:
    - Idempotency: an existing (contact_id, idempotency_key) payment is
      returned unchanged; the UNIQUE constraint turns a concurrent duplicate
      into an IntegrityError that is resolved the same way.
    - Optimistic concurrency: every invoice the plan mutates must still
      carry the version captured at read time.  Each update is a
      conditional ``UPDATE ... WHERE version = :expected``; a zero row count
      aborts the whole transaction.
    - All-or-nothing: payment insert and invoice updates share a single
      transaction.
    - Status monotonicity: a plan that would move an invoice backwards
      (PAID -> PARTIALLY_PAID) is rejected before anything is written.

Failure modes:
    - InvalidIdempotencyKeyError: blank or over-long key.
    - InvalidAllocationError: plan built for another contact, missing
      version snapshots, or backwards status transitions.
    - InvoiceNotFoundError: an invoice of the plan no longer exists.
    - ConflictError: version mismatch, invoice cancelled or already paid.
    - StorageError: any other database failure during the commit.

Never retries.  Conflicts surface to the caller, which recomputes the
balance and the plan before trying again.
"""

from __future__ import annotations

from datetime import UTC, date
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from lettrage_kernel.domain.clock import Clock, SystemClock
from lettrage_kernel.domain.dtos import AllocationPlan, BulkPaymentResult
from lettrage_kernel.domain.values import (
    OPEN_STATUSES,
    PaymentMethod,
    is_forward_transition,
)
from lettrage_kernel.exceptions import (
    ConflictError,
    InvalidAllocationError,
    InvalidIdempotencyKeyError,
    InvoiceNotFoundError,
    StorageError,
)
from lettrage_kernel.logging_config import LogContext, get_logger
from lettrage_kernel.models.invoice import Invoice
from lettrage_kernel.models.payment import Payment, PaymentAllocation

logger = get_logger("services.payment_applier")

MAX_IDEMPOTENCY_KEY_LENGTH = 255

_OPEN_STATUS_VALUES = [s.value for s in OPEN_STATUSES]


class PaymentApplier:
    """
    Atomically commit allocation plans.

    Contract:
        ``apply`` either commits one new payment and every invoice update of
        the plan, returns the previously stored result for a known
        idempotency key, or raises with nothing written.
    Non-goals:
        - Does not compute plans (AllocationPlanner).
        - Does not retry conflicts (BulkPaymentService).
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def find_existing(
        self,
        contact_id: UUID,
        idempotency_key: str,
    ) -> BulkPaymentResult | None:
        """Stored result for (contact_id, idempotency_key), if any."""
        payment = self._session.execute(
            select(Payment)
            .where(
                Payment.contact_id == contact_id,
                Payment.idempotency_key == idempotency_key,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if payment is None:
            return None
        return BulkPaymentResult.from_model(payment)

    def apply(
        self,
        contact_id: UUID,
        plan: AllocationPlan,
        idempotency_key: str,
        payment_date: date | None = None,
        payment_reference: str | None = None,
        payment_method: PaymentMethod | None = None,
    ) -> BulkPaymentResult:
        """
        Commit ``plan`` as a new payment of ``contact_id``.

        Preconditions:
            - ``plan`` was built by the planner for ``contact_id`` from a
              balance read in this or an earlier transaction.

        Postconditions:
            - On success the payment and all invoice updates are committed.
            - On failure nothing from this call is visible.

        Returns:
            BulkPaymentResult rebuilt from the stored payment.
        """
        key = validate_idempotency_key(idempotency_key)

        with LogContext.bind(contact_id=str(contact_id), idempotency_key=key):
            existing = self.find_existing(contact_id, key)
            if existing is not None:
                self._log_replay(existing, plan)
                return existing

            self._validate_plan(contact_id, plan)

            try:
                self._check_versions(contact_id, plan)
                payment = self._insert_payment(
                    contact_id, plan, key,
                    payment_date or self._clock.today(),
                    payment_reference,
                    payment_method,
                )
                self._update_invoices(plan)
                self._session.commit()
            except (ConflictError, InvoiceNotFoundError, InvalidAllocationError) as exc:
                self._session.rollback()
                logger.warning(
                    "payment_rejected",
                    extra={"error_code": exc.code, "reason": str(exc)},
                )
                raise
            except IntegrityError as exc:
                self._session.rollback()
                existing = self.find_existing(contact_id, key)
                if existing is not None:
                    logger.info(
                        "payment_concurrent_duplicate",
                        extra={"payment_id": str(existing.payment_id)},
                    )
                    return existing
                logger.error("payment_integrity_error", exc_info=True)
                raise StorageError("apply_payment", str(exc.orig)) from exc
            except SQLAlchemyError as exc:
                self._session.rollback()
                logger.error("payment_storage_error", exc_info=True)
                raise StorageError("apply_payment", str(exc)) from exc
            except Exception:
                self._session.rollback()
                raise

            result = BulkPaymentResult.from_model(payment)
            logger.info(
                "payment_applied",
                extra={
                    "payment_id": str(result.payment_id),
                    "amount": result.amount,
                    "total_applied": result.total_applied,
                    "remaining_credit": result.remaining_credit,
                    "invoices_funded": len(result.allocations),
                    "strategy": plan.strategy.value,
                },
            )
            return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _validate_plan(self, contact_id: UUID, plan: AllocationPlan) -> None:
        if plan.contact_id != contact_id:
            raise InvalidAllocationError(
                f"plan was built for contact {plan.contact_id}"
            )
        planned_ids = {line.invoice_id for line in plan.allocations}
        if len(planned_ids) != len(plan.allocations):
            raise InvalidAllocationError("plan allocates an invoice twice")
        if planned_ids != set(plan.invoice_versions):
            raise InvalidAllocationError(
                "plan versions do not match its allocations"
            )
        for line in plan.allocations:
            if line.applied_amount <= 0:
                raise InvalidAllocationError(
                    f"applied amount {line.applied_amount} must be positive",
                    line.invoice_id,
                )
            if line.resulting_amount_paid != line.previous_amount_paid + line.applied_amount:
                raise InvalidAllocationError(
                    "resulting amount does not add up", line.invoice_id
                )
            if not is_forward_transition(line.previous_status, line.resulting_status):
                raise InvalidAllocationError(
                    f"status cannot move from {line.previous_status.value} "
                    f"to {line.resulting_status.value}",
                    line.invoice_id,
                )

    def _check_versions(self, contact_id: UUID, plan: AllocationPlan) -> None:
        """Fail fast, before any write, if an invoice moved since the read."""
        if not plan.invoice_versions:
            return
        rows = self._session.execute(
            select(Invoice.id, Invoice.contact_id, Invoice.version, Invoice.status)
            .where(Invoice.id.in_(list(plan.invoice_versions)))
        ).all()
        current = {row.id: row for row in rows}

        missing = [i for i in plan.invoice_versions if i not in current]
        if missing:
            raise InvoiceNotFoundError(missing)

        for invoice_id, expected in plan.invoice_versions.items():
            row = current[invoice_id]
            if row.contact_id != contact_id:
                raise InvalidAllocationError(
                    "invoice belongs to another contact", invoice_id
                )
            if row.version != expected or row.status not in _OPEN_STATUS_VALUES:
                logger.info(
                    "payment_version_mismatch",
                    extra={
                        "invoice_id": str(invoice_id),
                        "expected_version": expected,
                        "actual_version": row.version,
                        "status": row.status,
                    },
                )
                raise ConflictError(invoice_id, expected, row.version)

    def _insert_payment(
        self,
        contact_id: UUID,
        plan: AllocationPlan,
        key: str,
        payment_date: date,
        payment_reference: str | None,
        payment_method: PaymentMethod | None,
    ) -> Payment:
        payment = Payment(
            contact_id=contact_id,
            amount=plan.amount,
            remaining_credit=plan.remaining_credit,
            strategy=plan.strategy.value,
            idempotency_key=key,
            created_at=self._clock.now().astimezone(UTC),
            payment_date=payment_date,
            payment_reference=payment_reference,
            payment_method=payment_method.value if payment_method else None,
        )
        for sequence, line in enumerate(plan.allocations, start=1):
            payment.allocations.append(
                PaymentAllocation(
                    invoice_id=line.invoice_id,
                    sequence=sequence,
                    invoice_number=line.invoice_number,
                    applied_amount=line.applied_amount,
                    previous_amount_paid=line.previous_amount_paid,
                    resulting_amount_paid=line.resulting_amount_paid,
                    previous_status=line.previous_status.value,
                    resulting_status=line.resulting_status.value,
                )
            )
        self._session.add(payment)
        # Surfaces a duplicate idempotency key before any invoice is touched
        self._session.flush()
        return payment

    def _update_invoices(self, plan: AllocationPlan) -> None:
        """Compare-and-swap every planned invoice inside the open transaction."""
        for line in plan.allocations:
            expected = plan.invoice_versions[line.invoice_id]
            result = self._session.execute(
                update(Invoice)
                .where(
                    Invoice.id == line.invoice_id,
                    Invoice.version == expected,
                    Invoice.amount_paid == line.previous_amount_paid,
                    Invoice.status.in_(_OPEN_STATUS_VALUES),
                )
                .values(
                    amount_paid=Invoice.amount_paid + line.applied_amount,
                    status=line.resulting_status.value,
                    version=Invoice.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                actual = self._session.execute(
                    select(Invoice.version).where(Invoice.id == line.invoice_id)
                ).scalar_one_or_none()
                raise ConflictError(line.invoice_id, expected, actual)

    def _log_replay(self, existing: BulkPaymentResult, plan: AllocationPlan) -> None:
        logger.info(
            "payment_replayed",
            extra={"payment_id": str(existing.payment_id)},
        )
        if existing.amount != plan.amount:
            logger.warning(
                "payment_replay_amount_mismatch",
                extra={
                    "payment_id": str(existing.payment_id),
                    "stored_amount": existing.amount,
                    "requested_amount": plan.amount,
                },
            )


def validate_idempotency_key(idempotency_key: str) -> str:
    """Return the stripped key or raise InvalidIdempotencyKeyError."""
    if not isinstance(idempotency_key, str) or not idempotency_key.strip():
        raise InvalidIdempotencyKeyError(idempotency_key, "must be a non-empty string")
    key = idempotency_key.strip()
    if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise InvalidIdempotencyKeyError(
            idempotency_key,
            f"longer than {MAX_IDEMPOTENCY_KEY_LENGTH} characters",
        )
    return key
