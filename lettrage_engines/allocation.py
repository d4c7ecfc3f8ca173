"""
Module: lettrage_engines.allocation
Responsibility:
    Decide how one payment is spread across a contact's outstanding
    invoices, either oldest-due-first (AUTO) or exactly as the caller asks
    (MANUAL).

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import lettrage_kernel domain types and logging.

Invariants enforced:
    - Conservation: total applied + remaining credit == payment amount.
    - Bounds: no allocation exceeds the invoice's outstanding amount; every
      allocation is strictly positive.
    - Determinism: AUTO order is (due_date, issued_at, id); MANUAL lines are
      listed in the same order, so identical inputs give identical plans.
    - Integer minor units only; no division, so no rounding step exists.

Failure modes:
    - InvalidAmountError for a non-positive or non-integer payment amount.
    - InvalidAllocationError for MANUAL instructions outside invoice or
      payment bounds, duplicate invoices in the input, or a strategy /
      instruction mismatch.

Usage:
    planner = AllocationPlanner()
    plan = planner.plan(
        contact_id=contact_id,
        amount=6000,
        invoices=balance.invoices,
        strategy=AllocationStrategy.AUTO,
    )
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from uuid import UUID

from lettrage_engines.tracer import traced_engine
from lettrage_kernel.domain.dtos import (
    AllocationPlan,
    AllocationStrategy,
    OutstandingInvoice,
    PlannedAllocation,
)
from lettrage_kernel.domain.values import (
    derive_status,
    is_minor_units,
    require_positive_amount,
)
from lettrage_kernel.exceptions import InvalidAllocationError
from lettrage_kernel.logging_config import get_logger

logger = get_logger("engines.allocation")


class AllocationPlanner:
    """
    Build allocation plans for incoming payments.

    Contract:
        Referentially transparent: the plan depends only on the arguments.
        No I/O, no clock, no database access.
    Non-goals:
        - Does not check that invoices are still current; the payment
          applier compares ``invoice_versions`` at commit time.
        - Does not filter cancelled or paid invoices; callers pass the
          outstanding set from the balance selector.
    """

    @traced_engine(
        "allocation",
        "1.0",
        fingerprint_fields=("amount", "strategy", "invoices", "manual_allocations"),
    )
    def plan(
        self,
        *,
        contact_id: UUID,
        amount: int,
        invoices: Sequence[OutstandingInvoice],
        strategy: AllocationStrategy = AllocationStrategy.AUTO,
        manual_allocations: Mapping[UUID, int] | None = None,
    ) -> AllocationPlan:
        """
        Plan the allocation of ``amount`` across ``invoices``.

        Args:
            contact_id: Contact the payment belongs to.
            amount: Payment amount in minor units (> 0).
            invoices: Outstanding invoices of the contact.
            strategy: AUTO or MANUAL.
            manual_allocations: ``{invoice_id: applied_amount}``, MANUAL only.

        Returns:
            AllocationPlan with ordered allocations and remaining credit.

        Raises:
            InvalidAmountError: ``amount`` is not a positive int.
            InvalidAllocationError: see module docstring.
        """
        require_positive_amount(amount)
        try:
            strategy = AllocationStrategy(strategy)
        except ValueError:
            raise InvalidAllocationError(f"unknown strategy {strategy!r}") from None
        ordered = self._order(invoices)

        logger.info("allocation_started", extra={
            "contact_id": str(contact_id),
            "amount": amount,
            "strategy": strategy.value,
            "invoice_count": len(ordered),
        })

        match strategy:
            case AllocationStrategy.AUTO:
                if manual_allocations:
                    raise InvalidAllocationError(
                        "explicit allocations require the MANUAL strategy"
                    )
                lines = self._allocate_oldest_first(amount, ordered)
            case AllocationStrategy.MANUAL:
                if not manual_allocations:
                    raise InvalidAllocationError(
                        "MANUAL strategy requires at least one allocation"
                    )
                lines = self._allocate_manual(amount, ordered, manual_allocations)

        applied = sum(line.applied_amount for line in lines)
        funded = {line.invoice_id for line in lines}
        plan = AllocationPlan(
            contact_id=contact_id,
            amount=amount,
            strategy=strategy,
            allocations=tuple(lines),
            remaining_credit=amount - applied,
            invoice_versions={
                inv.invoice_id: inv.version for inv in ordered if inv.invoice_id in funded
            },
        )

        logger.info("allocation_planned", extra={
            "contact_id": str(contact_id),
            "strategy": strategy.value,
            "amount": amount,
            "total_applied": plan.total_applied,
            "remaining_credit": plan.remaining_credit,
            "invoices_funded": len(plan.allocations),
        })
        return plan

    def _order(
        self,
        invoices: Sequence[OutstandingInvoice],
    ) -> list[OutstandingInvoice]:
        """Sort by (due_date, issued_at, id) after sanity checks."""
        seen: set[UUID] = set()
        for inv in invoices:
            if inv.invoice_id in seen:
                raise InvalidAllocationError(
                    "invoice listed more than once", inv.invoice_id
                )
            seen.add(inv.invoice_id)
            if inv.outstanding < 0:
                raise InvalidAllocationError(
                    f"negative outstanding balance {inv.outstanding}",
                    inv.invoice_id,
                )
        return sorted(invoices, key=lambda inv: inv.sort_key)

    def _allocate_oldest_first(
        self,
        amount: int,
        ordered: Sequence[OutstandingInvoice],
    ) -> list[PlannedAllocation]:
        """Greedy walk; each invoice takes min(remaining, outstanding)."""
        remaining = amount
        lines: list[PlannedAllocation] = []

        for inv in ordered:
            if remaining == 0:
                break
            if inv.outstanding == 0:
                continue
            applied = min(remaining, inv.outstanding)
            remaining -= applied
            lines.append(self._line(inv, applied))

        return lines

    def _allocate_manual(
        self,
        amount: int,
        ordered: Sequence[OutstandingInvoice],
        requested: Mapping[UUID, int],
    ) -> list[PlannedAllocation]:
        """Validate caller instructions and keep them as-is."""
        by_id = {inv.invoice_id: inv for inv in ordered}

        for invoice_id, applied in requested.items():
            inv = by_id.get(invoice_id)
            if inv is None:
                raise InvalidAllocationError(
                    "invoice is not outstanding for this contact", invoice_id
                )
            if not is_minor_units(applied) or applied <= 0:
                raise InvalidAllocationError(
                    f"applied amount {applied!r} must be a positive integer",
                    invoice_id,
                )
            if applied > inv.outstanding:
                raise InvalidAllocationError(
                    f"applied amount {applied} exceeds outstanding {inv.outstanding}",
                    invoice_id,
                )

        requested_total = sum(requested.values())
        if requested_total > amount:
            raise InvalidAllocationError(
                f"requested total {requested_total} exceeds payment amount {amount}"
            )

        return [
            self._line(inv, requested[inv.invoice_id])
            for inv in ordered
            if inv.invoice_id in requested
        ]

    @staticmethod
    def _line(inv: OutstandingInvoice, applied: int) -> PlannedAllocation:
        resulting_paid = inv.amount_paid + applied
        return PlannedAllocation(
            invoice_id=inv.invoice_id,
            invoice_number=inv.invoice_number,
            applied_amount=applied,
            previous_amount_paid=inv.amount_paid,
            resulting_amount_paid=resulting_paid,
            previous_status=inv.status,
            resulting_status=derive_status(resulting_paid, inv.total_amount),
        )
