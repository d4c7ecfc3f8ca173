"""Tests for ReconciliationReporter and the JSON renderings."""

import json
from datetime import date

from lettrage_engines.allocation import AllocationPlanner
from lettrage_kernel.selectors.balance_selector import BalanceSelector
from lettrage_kernel.services.payment_applier import PaymentApplier
from lettrage_services.reconciliation_reporter import (
    ReconciliationReporter,
    balance_to_dict,
)


def _apply(session, clock, contact_id, amount, key="k"):
    balance = BalanceSelector(session, clock).get_balance(contact_id)
    plan = AllocationPlanner().plan(
        contact_id=contact_id, amount=amount, invoices=balance.invoices
    )
    return PaymentApplier(session, clock).apply(contact_id, plan, key)


class TestPresent:

    def test_balance_is_read_after_commit(self, session, clock, two_invoices):
        contact_id, _, inv_b = two_invoices
        result = _apply(session, clock, contact_id, 6000)

        report = ReconciliationReporter(BalanceSelector(session, clock)).present(result)

        assert report.payment_id == result.payment_id
        assert report.total_applied == 6000
        assert report.remaining_credit == 0
        assert [inv.invoice_id for inv in report.balance.invoices] == [inv_b]
        assert report.balance.total_outstanding == 2000

    def test_to_dict_is_json_safe(self, session, clock, two_invoices):
        contact_id, inv_a, _ = two_invoices
        result = _apply(session, clock, contact_id, 10000)

        report = ReconciliationReporter(
            BalanceSelector(session, clock), currency="XPF"
        ).present(result)
        data = json.loads(json.dumps(report.to_dict()))

        assert data["payment_id"] == str(result.payment_id)
        assert data["currency"] == "XPF"
        assert data["amount"] == 10000
        assert data["remaining_credit"] == 2000
        assert data["payment_date"] == "2024-03-01"
        assert data["payment_method"] is None
        assert data["allocations"][0] == {
            "invoice_id": str(inv_a),
            "invoice_number": "FAC-A",
            "applied_amount": 5000,
            "previous_amount_paid": 0,
            "resulting_amount_paid": 5000,
            "previous_status": "UNPAID",
            "resulting_status": "PAID",
        }
        assert data["balance"]["total_outstanding"] == 0
        assert data["balance"]["oldest_issue_date"] is None


class TestBalanceToDict:

    def test_breakdown_and_counts(self, session, clock, make_contact, make_invoice):
        contact_id = make_contact("Ambulances Leroy")
        make_invoice(contact_id, 4000, date(2024, 1, 20))
        make_invoice(contact_id, 2500, date(2024, 3, 20), amount_paid=500)

        balance = BalanceSelector(session, clock).get_balance(contact_id)
        data = balance_to_dict(balance)

        assert data["contact_name"] == "Ambulances Leroy"
        assert data["total_outstanding"] == 6000
        assert data["invoice_count"] == 2
        assert data["breakdown"] == {"unpaid": 4000, "partially_paid": 2000}
        assert data["oldest_issue_date"] == "2024-01-19"
        assert [i["is_overdue"] for i in data["invoices"]] == [True, False]
        assert data["as_of"] == "2024-03-01"
