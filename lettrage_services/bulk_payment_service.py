"""
lettrage_services.bulk_payment_service -- Read, plan, apply, report.

Responsibility:
    Single entry point for callers that settle several invoices of one
    contact with one payment.  Wires the balance selector, the allocation
    planner, the payment applier and the reconciliation reporter, and owns
    the retry loop around optimistic-concurrency conflicts.

Architecture position:
    Services -- stateful orchestration over engines + kernel.  The only
    module that opens sessions; every call uses fresh sessions from the
    injected session factory, so one instance is safe to share between
    threads.

Invariants enforced:
    - Inputs are validated before any read: amount, then idempotency key.
    - A known (contact, idempotency key) short-circuits to the stored result;
      no plan is computed and nothing is written.
    - Each attempt recomputes balance and plan in a new session; a plan is
      never reused after a conflict.
    - Conflict retries are bounded by ``max_conflict_attempts``.

Failure modes:
    - InvalidAmountError, InvalidIdempotencyKeyError, InvalidAllocationError,
      ValidationError (unknown payment method).
    - ContactNotFoundError / InvoiceNotFoundError.
    - ConflictError with ``attempts`` set once retries are exhausted.
    - StorageError from the applier.

Usage:
    service = BulkPaymentService(get_session_factory(), settings=settings)
    report = service.apply_payment(contact_id, 6000, "bank-import-2024-03-01-17")
    report.to_dict()
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from contextlib import contextmanager
from datetime import date
from typing import Any, Generator
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from lettrage_config.schema import LettrageSettings
from lettrage_engines.allocation import AllocationPlanner
from lettrage_kernel.domain.clock import Clock, SystemClock
from lettrage_kernel.domain.dtos import (
    AllocationStrategy,
    BulkPaymentResult,
    ContactBalance,
    OutstandingInvoice,
)
from lettrage_kernel.domain.values import PaymentMethod, require_positive_amount
from lettrage_kernel.exceptions import (
    ConflictError,
    ContactNotFoundError,
    InvalidAllocationError,
    InvoiceNotFoundError,
    ValidationError,
)
from lettrage_kernel.logging_config import LogContext, get_logger
from lettrage_kernel.selectors.balance_selector import BalanceSelector
from lettrage_kernel.services.payment_applier import (
    PaymentApplier,
    validate_idempotency_key,
)
from lettrage_services.reconciliation_reporter import (
    PaymentReport,
    ReconciliationReporter,
    balance_to_dict,
)

logger = get_logger("services.bulk_payment")

DEFAULT_MAX_CONFLICT_ATTEMPTS = 3


class BulkPaymentService:
    """
    Apply one payment across many invoices of a contact.

    Contract:
        ``apply_payment`` returns a PaymentReport for a committed (or
        previously committed) payment, or raises a LettrageError with
        nothing written.
    Non-goals:
        - Does not create contacts or invoices.
        - Does not track credit balances across payments.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        settings: LettrageSettings | None = None,
        planner: AllocationPlanner | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._planner = planner or AllocationPlanner()
        if settings is not None:
            self._max_attempts = settings.max_conflict_attempts
            self._currency = settings.currency
        else:
            self._max_attempts = DEFAULT_MAX_CONFLICT_ATTEMPTS
            self._currency = "EUR"

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_balance(self, contact_id: UUID | str) -> ContactBalance:
        contact_id = _contact_uuid(contact_id)
        with self._session() as session:
            return BalanceSelector(session, self._clock).get_balance(contact_id)

    def balance_report(self, contact_id: UUID | str) -> dict[str, Any]:
        """JSON-safe balance of ``contact_id``."""
        return balance_to_dict(self.get_balance(contact_id), self._currency)

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def apply_payment(
        self,
        contact_id: UUID | str,
        amount: int,
        idempotency_key: str,
        strategy: AllocationStrategy | str = AllocationStrategy.AUTO,
        allocations: Mapping[UUID | str, int] | None = None,
        invoice_ids: Iterable[UUID | str] | None = None,
        payment_date: date | None = None,
        payment_reference: str | None = None,
        payment_method: PaymentMethod | str | None = None,
    ) -> PaymentReport:
        """
        Settle invoices of ``contact_id`` with a payment of ``amount``.

        Args:
            contact_id: Paying contact.
            amount: Payment amount in minor units (> 0).
            idempotency_key: Caller key; a retry with the same key returns
                the stored result.
            strategy: AUTO (oldest due first) or MANUAL.
            allocations: ``{invoice_id: amount}``, MANUAL only.
            invoice_ids: Restrict the candidate invoices to these ids.
            payment_date: Value date; the clock's date when omitted.
            payment_reference: Free-form bank or cheque reference.
            payment_method: VIREMENT, CHEQUE, CB or ESPECES.
        """
        contact_id = _contact_uuid(contact_id)
        require_positive_amount(amount)
        key = validate_idempotency_key(idempotency_key)
        strategy = _strategy(strategy)
        method = _payment_method(payment_method)
        manual = _manual_allocations(allocations)
        restrict_to = _invoice_filter(invoice_ids)

        with LogContext.bind(contact_id=str(contact_id), idempotency_key=key):
            existing = self._find_existing(contact_id, key)
            if existing is not None:
                if existing.amount != amount:
                    logger.warning(
                        "payment_replay_amount_mismatch",
                        extra={
                            "payment_id": str(existing.payment_id),
                            "stored_amount": existing.amount,
                            "requested_amount": amount,
                        },
                    )
                logger.info(
                    "payment_replayed",
                    extra={"payment_id": str(existing.payment_id)},
                )
                return self._present(existing)

            result = self._apply_with_retries(
                contact_id,
                amount,
                key,
                strategy,
                manual,
                restrict_to,
                payment_date,
                payment_reference,
                method,
            )
            with LogContext.bind(payment_id=str(result.payment_id)):
                return self._present(result)

    def _apply_with_retries(
        self,
        contact_id: UUID,
        amount: int,
        key: str,
        strategy: AllocationStrategy,
        manual: dict[UUID, int] | None,
        restrict_to: list[UUID] | None,
        payment_date: date | None,
        payment_reference: str | None,
        payment_method: PaymentMethod | None,
    ) -> BulkPaymentResult:
        last_conflict: ConflictError | None = None

        for attempt in range(1, self._max_attempts + 1):
            with self._session() as session:
                selector = BalanceSelector(session, self._clock)
                balance = selector.get_balance(contact_id)
                candidates = self._candidates(selector, balance, restrict_to)

                plan = self._planner.plan(
                    contact_id=contact_id,
                    amount=amount,
                    invoices=candidates,
                    strategy=strategy,
                    manual_allocations=manual,
                )
                try:
                    return PaymentApplier(session, self._clock).apply(
                        contact_id,
                        plan,
                        key,
                        payment_date=payment_date,
                        payment_reference=payment_reference,
                        payment_method=payment_method,
                    )
                except ConflictError as exc:
                    last_conflict = exc
                    logger.warning(
                        "payment_conflict",
                        extra={
                            "attempt": attempt,
                            "max_attempts": self._max_attempts,
                            "invoice_id": exc.invoice_id,
                            "expected_version": exc.expected_version,
                            "actual_version": exc.actual_version,
                        },
                    )

        assert last_conflict is not None
        logger.error(
            "payment_conflict_retries_exhausted",
            extra={"attempts": self._max_attempts},
        )
        raise ConflictError(
            last_conflict.invoice_id,
            last_conflict.expected_version,
            last_conflict.actual_version,
            attempts=self._max_attempts,
        ) from last_conflict

    def _candidates(
        self,
        selector: BalanceSelector,
        balance: ContactBalance,
        restrict_to: list[UUID] | None,
    ) -> tuple[OutstandingInvoice, ...]:
        """Outstanding invoices, narrowed to ``restrict_to`` when given."""
        if restrict_to is None:
            return balance.invoices

        stored = selector.get_invoices(balance.contact_id, restrict_to)
        missing = [i for i in restrict_to if i not in stored]
        if missing:
            raise InvoiceNotFoundError(missing)
        for invoice_id in restrict_to:
            inv = stored[invoice_id]
            if not inv.status.is_open:
                raise InvalidAllocationError(
                    f"invoice is {inv.status.value}", invoice_id
                )

        wanted = set(restrict_to)
        return tuple(inv for inv in balance.invoices if inv.invoice_id in wanted)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _find_existing(self, contact_id: UUID, key: str) -> BulkPaymentResult | None:
        with self._session() as session:
            return PaymentApplier(session, self._clock).find_existing(contact_id, key)

    def _present(self, result: BulkPaymentResult) -> PaymentReport:
        with self._session() as session:
            reporter = ReconciliationReporter(
                BalanceSelector(session, self._clock), currency=self._currency
            )
            return reporter.present(result)

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()


def _contact_uuid(value: UUID | str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise ContactNotFoundError(value) from None


def _strategy(value: AllocationStrategy | str) -> AllocationStrategy:
    try:
        return AllocationStrategy(value)
    except ValueError:
        raise InvalidAllocationError(f"unknown strategy {value!r}") from None


def _payment_method(value: PaymentMethod | str | None) -> PaymentMethod | None:
    if value is None:
        return None
    try:
        return PaymentMethod(value)
    except ValueError:
        allowed = ", ".join(m.value for m in PaymentMethod)
        raise ValidationError(
            f"Unknown payment method {value!r}; expected one of {allowed}"
        ) from None


def _manual_allocations(
    allocations: Mapping[UUID | str, int] | None,
) -> dict[UUID, int] | None:
    if allocations is None:
        return None
    coerced: dict[UUID, int] = {}
    for raw_id, applied in allocations.items():
        try:
            invoice_id = raw_id if isinstance(raw_id, UUID) else UUID(str(raw_id))
        except ValueError:
            raise InvalidAllocationError("malformed invoice id", raw_id) from None
        if invoice_id in coerced:
            raise InvalidAllocationError("invoice listed more than once", invoice_id)
        coerced[invoice_id] = applied
    return coerced


def _invoice_filter(invoice_ids: Iterable[UUID | str] | None) -> list[UUID] | None:
    if invoice_ids is None:
        return None
    ids: list[UUID] = []
    malformed: list[Any] = []
    for raw in invoice_ids:
        try:
            invoice_id = raw if isinstance(raw, UUID) else UUID(str(raw))
        except ValueError:
            malformed.append(raw)
            continue
        if invoice_id not in ids:
            ids.append(invoice_id)
    if malformed:
        raise InvoiceNotFoundError(malformed)
    if not ids:
        raise InvalidAllocationError("invoice_ids must list at least one invoice")
    return ids
