"""
Reconciliation reporter -- turn a committed payment into a caller response.

Responsibility:
    Pair a BulkPaymentResult with the contact's balance as it stands after
    the commit, and render both as JSON-safe dicts.

Architecture position:
    Services -- presentation of kernel results.  Reads through the balance
    selector; never writes.

Invariants enforced:
    - The reported balance comes from a fresh ``get_balance`` call, never
      from the plan, so it always reflects committed state.
    - Amounts stay integers of minor units in the rendered dicts; ids,
      dates and enums become strings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from lettrage_kernel.domain.dtos import (
    AppliedAllocation,
    BulkPaymentResult,
    ContactBalance,
)
from lettrage_kernel.logging_config import get_logger
from lettrage_kernel.selectors.balance_selector import BalanceSelector

logger = get_logger("services.reconciliation_reporter")


@dataclass(frozen=True)
class PaymentReport:
    """Committed payment plus the post-commit balance of its contact."""

    result: BulkPaymentResult
    balance: ContactBalance
    currency: str = "EUR"

    @property
    def payment_id(self) -> UUID:
        return self.result.payment_id

    @property
    def allocations(self) -> tuple[AppliedAllocation, ...]:
        return self.result.allocations

    @property
    def remaining_credit(self) -> int:
        return self.result.remaining_credit

    @property
    def total_applied(self) -> int:
        return self.result.total_applied

    def to_dict(self) -> dict[str, Any]:
        result = self.result
        return {
            "payment_id": str(result.payment_id),
            "contact_id": str(result.contact_id),
            "currency": self.currency,
            "amount": result.amount,
            "total_applied": result.total_applied,
            "remaining_credit": result.remaining_credit,
            "idempotency_key": result.idempotency_key,
            "created_at": result.created_at.isoformat(),
            "payment_date": result.payment_date.isoformat(),
            "payment_reference": result.payment_reference,
            "payment_method": (
                result.payment_method.value if result.payment_method else None
            ),
            "allocations": [
                {
                    "invoice_id": str(line.invoice_id),
                    "invoice_number": line.invoice_number,
                    "applied_amount": line.applied_amount,
                    "previous_amount_paid": line.previous_amount_paid,
                    "resulting_amount_paid": line.resulting_amount_paid,
                    "previous_status": line.previous_status.value,
                    "resulting_status": line.resulting_status.value,
                }
                for line in result.allocations
            ],
            "balance": balance_to_dict(self.balance, self.currency),
        }


def balance_to_dict(balance: ContactBalance, currency: str = "EUR") -> dict[str, Any]:
    """JSON-safe rendering of a ContactBalance."""
    oldest = balance.oldest_issue_date
    return {
        "contact_id": str(balance.contact_id),
        "contact_name": balance.contact_name,
        "currency": currency,
        "as_of": balance.as_of.isoformat(),
        "total_outstanding": balance.total_outstanding,
        "invoice_count": balance.invoice_count,
        "oldest_issue_date": oldest.isoformat() if oldest else None,
        "breakdown": {
            "unpaid": balance.breakdown.unpaid,
            "partially_paid": balance.breakdown.partially_paid,
        },
        "invoices": [
            {
                "invoice_id": str(inv.invoice_id),
                "invoice_number": inv.invoice_number,
                "outstanding": inv.outstanding,
                "total_amount": inv.total_amount,
                "amount_paid": inv.amount_paid,
                "status": inv.status.value,
                "due_date": inv.due_date.isoformat(),
                "issued_at": inv.issued_at.isoformat(),
                "is_overdue": inv.is_overdue,
            }
            for inv in balance.invoices
        ],
    }


class ReconciliationReporter:
    """Formats applier results for callers."""

    def __init__(self, balance_selector: BalanceSelector, currency: str = "EUR"):
        self._balances = balance_selector
        self._currency = currency

    def present(self, result: BulkPaymentResult) -> PaymentReport:
        """Attach the freshly recomputed balance of the payment's contact."""
        balance = self._balances.get_balance(result.contact_id)
        logger.debug(
            "payment_report_built",
            extra={
                "payment_id": str(result.payment_id),
                "total_outstanding": balance.total_outstanding,
            },
        )
        return PaymentReport(result=result, balance=balance, currency=self._currency)
