"""
End-to-end tests for BulkPaymentService.

Covers the reference scenarios (A due 2024-01-10 for 5000, B due
2024-02-15 for 3000), input validation order, invoice filters, replay and
the bounded conflict retry loop.
"""

from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

import pytest

from lettrage_config.schema import LettrageSettings
from lettrage_kernel.domain.clock import DeterministicClock
from lettrage_kernel.domain.dtos import AllocationStrategy
from lettrage_kernel.domain.values import InvoiceStatus, PaymentMethod
from lettrage_kernel.exceptions import (
    ConflictError,
    ContactNotFoundError,
    InvalidAllocationError,
    InvalidAmountError,
    InvalidIdempotencyKeyError,
    InvoiceNotFoundError,
    ValidationError,
)
from lettrage_kernel.services.payment_applier import PaymentApplier
from lettrage_services import BulkPaymentService


@pytest.fixture
def service(session_factory, clock):
    return BulkPaymentService(session_factory, clock=clock)


class TestScenarios:

    def test_auto_partial(self, service, two_invoices, read_invoice):
        contact_id, inv_a, inv_b = two_invoices

        report = service.apply_payment(contact_id, 6000, "scenario-1")

        lines = {a.invoice_id: a for a in report.allocations}
        assert lines[inv_a].applied_amount == 5000
        assert lines[inv_a].resulting_status == InvoiceStatus.PAID
        assert lines[inv_b].applied_amount == 1000
        assert lines[inv_b].resulting_status == InvoiceStatus.PARTIALLY_PAID
        assert report.remaining_credit == 0
        assert report.balance.total_outstanding == 2000
        assert read_invoice(inv_b).amount_paid == 1000

    def test_auto_overpayment(self, service, two_invoices):
        contact_id, _, _ = two_invoices

        report = service.apply_payment(contact_id, 10000, "scenario-2")

        assert [a.applied_amount for a in report.allocations] == [5000, 3000]
        assert report.remaining_credit == 2000
        assert report.balance.total_outstanding == 0
        assert report.balance.invoices == ()

    def test_manual_split(self, service, two_invoices):
        contact_id, inv_a, inv_b = two_invoices

        report = service.apply_payment(
            contact_id, 6000, "scenario-3",
            strategy=AllocationStrategy.MANUAL,
            allocations={inv_a: 2000, inv_b: 3000},
        )

        lines = {a.invoice_id: a for a in report.allocations}
        assert lines[inv_a].resulting_status == InvoiceStatus.PARTIALLY_PAID
        assert lines[inv_a].resulting_amount_paid == 2000
        assert lines[inv_b].resulting_status == InvoiceStatus.PAID
        assert report.remaining_credit == 1000
        assert report.balance.total_outstanding == 3000

    def test_manual_over_outstanding(self, service, two_invoices, count_payments):
        contact_id, inv_a, _ = two_invoices

        with pytest.raises(InvalidAllocationError):
            service.apply_payment(
                contact_id, 6000, "scenario-4",
                strategy="MANUAL",
                allocations={str(inv_a): 6000},
            )
        assert count_payments() == 0

    def test_same_key_twice(self, service, two_invoices, read_invoice, count_payments):
        contact_id, inv_a, _ = two_invoices

        first = service.apply_payment(contact_id, 6000, "scenario-5")
        second = service.apply_payment(contact_id, 6000, "scenario-5")

        assert second.result == first.result
        assert count_payments(contact_id) == 1
        assert read_invoice(inv_a).version == 2
        assert read_invoice(inv_a).amount_paid == 5000


class TestValidation:

    @pytest.mark.parametrize("amount", [0, -100, 12.5, "6000"])
    def test_invalid_amount(self, service, two_invoices, amount):
        contact_id, _, _ = two_invoices
        with pytest.raises(InvalidAmountError):
            service.apply_payment(contact_id, amount, "k")

    def test_amount_checked_before_key(self, service, two_invoices):
        contact_id, _, _ = two_invoices
        with pytest.raises(InvalidAmountError):
            service.apply_payment(contact_id, 0, "")

    def test_blank_key(self, service, two_invoices):
        contact_id, _, _ = two_invoices
        with pytest.raises(InvalidIdempotencyKeyError):
            service.apply_payment(contact_id, 100, "  ")

    def test_unknown_contact(self, service, engine):
        with pytest.raises(ContactNotFoundError):
            service.apply_payment(uuid4(), 100, "k")

    def test_malformed_contact_id(self, service, engine):
        with pytest.raises(ContactNotFoundError):
            service.get_balance("not-a-uuid")

    def test_unknown_payment_method(self, service, two_invoices):
        contact_id, _, _ = two_invoices
        with pytest.raises(ValidationError) as exc_info:
            service.apply_payment(contact_id, 100, "k", payment_method="BITCOIN")
        assert exc_info.value.code == "VALIDATION_ERROR"

    def test_malformed_manual_invoice_id(self, service, two_invoices):
        contact_id, _, _ = two_invoices
        with pytest.raises(InvalidAllocationError):
            service.apply_payment(
                contact_id, 100, "k", strategy="MANUAL", allocations={"inv-1": 100}
            )


class TestInvoiceFilter:

    def test_restricts_auto_to_listed_invoices(self, service, two_invoices, read_invoice):
        contact_id, inv_a, inv_b = two_invoices

        report = service.apply_payment(contact_id, 4000, "k", invoice_ids=[str(inv_b)])

        assert [a.invoice_id for a in report.allocations] == [inv_b]
        assert report.remaining_credit == 1000
        assert read_invoice(inv_a).amount_paid == 0

    def test_unknown_invoice(self, service, two_invoices, count_payments):
        contact_id, inv_a, _ = two_invoices
        missing = uuid4()

        with pytest.raises(InvoiceNotFoundError) as exc_info:
            service.apply_payment(contact_id, 100, "k", invoice_ids=[inv_a, missing])

        assert exc_info.value.invoice_ids == [str(missing)]
        assert count_payments() == 0

    def test_invoice_of_other_contact_is_not_found(
        self, service, two_invoices, make_contact, make_invoice,
    ):
        contact_id, _, _ = two_invoices
        foreign = make_invoice(make_contact("Autre"), 100, date(2024, 1, 1))

        with pytest.raises(InvoiceNotFoundError):
            service.apply_payment(contact_id, 100, "k", invoice_ids=[foreign])

    @pytest.mark.parametrize("status", [InvoiceStatus.PAID, InvoiceStatus.CANCELLED])
    def test_closed_invoice_rejected(self, service, make_contact, make_invoice, status):
        contact_id = make_contact()
        paid = 500 if status == InvoiceStatus.PAID else 0
        closed = make_invoice(contact_id, 500, date(2024, 1, 1), amount_paid=paid, status=status)

        with pytest.raises(InvalidAllocationError):
            service.apply_payment(contact_id, 100, "k", invoice_ids=[closed])

    def test_empty_filter_rejected(self, service, two_invoices):
        contact_id, _, _ = two_invoices
        with pytest.raises(InvalidAllocationError):
            service.apply_payment(contact_id, 100, "k", invoice_ids=[])


class TestReplay:

    def test_replay_short_circuits_before_planning(
        self, service, two_invoices, make_invoice, captured_logs,
    ):
        contact_id, _, _ = two_invoices
        first = service.apply_payment(contact_id, 6000, "k")
        # New invoice would change any fresh plan
        make_invoice(contact_id, 999, date(2023, 12, 1))

        second = service.apply_payment(contact_id, 6000, "k")

        assert second.result == first.result
        messages = [r["message"] for r in captured_logs()]
        assert messages.count("allocation_planned") == 1
        assert "payment_replayed" in messages

    def test_replay_reports_current_balance(self, service, two_invoices, make_invoice):
        contact_id, _, _ = two_invoices
        first = service.apply_payment(contact_id, 6000, "k")
        make_invoice(contact_id, 999, date(2023, 12, 1))

        second = service.apply_payment(contact_id, 6000, "k")

        assert first.balance.total_outstanding == 2000
        assert second.balance.total_outstanding == 2999

    def test_replay_identical_with_non_utc_clock(self, session_factory, two_invoices):
        contact_id, _, _ = two_invoices
        paris_summer = timezone(timedelta(hours=2))
        clock = DeterministicClock(datetime(2024, 3, 1, 23, 30, tzinfo=paris_summer))
        service = BulkPaymentService(session_factory, clock=clock)

        first = service.apply_payment(contact_id, 6000, "k1")
        again = service.apply_payment(contact_id, 6000, "k1")

        assert first.to_dict() == again.to_dict()
        assert first.result.created_at.utcoffset() == timedelta(0)
        assert first.to_dict()["created_at"] == "2024-03-01T21:30:00+00:00"


class TestConflictRetry:

    def _interfere_once(self, monkeypatch, session_factory, clock, invoice_id):
        """Commit a competing 1-cent payment right before the first apply."""
        real_apply = PaymentApplier.apply
        state = {"interfered": 0}

        def apply_with_race(applier, contact_id, plan, key, **kwargs):
            if state["interfered"] == 0:
                state["interfered"] += 1
                with session_factory() as other:
                    from lettrage_engines.allocation import AllocationPlanner
                    from lettrage_kernel.selectors.balance_selector import BalanceSelector

                    balance = BalanceSelector(other, clock).get_balance(contact_id)
                    competing = AllocationPlanner().plan(
                        contact_id=contact_id,
                        amount=1,
                        invoices=balance.invoices,
                        strategy=AllocationStrategy.MANUAL,
                        manual_allocations={invoice_id: 1},
                    )
                    real_apply(PaymentApplier(other, clock), contact_id, competing, "competitor")
            return real_apply(applier, contact_id, plan, key, **kwargs)

        monkeypatch.setattr(PaymentApplier, "apply", apply_with_race)
        return state

    def test_conflict_retried_with_fresh_plan(
        self, service, session_factory, clock, two_invoices, read_invoice, monkeypatch,
    ):
        contact_id, inv_a, inv_b = two_invoices
        self._interfere_once(monkeypatch, session_factory, clock, inv_a)

        report = service.apply_payment(contact_id, 6000, "k")

        # Competitor took 1 from A; the retry plans against 4999 outstanding
        assert [a.applied_amount for a in report.allocations] == [4999, 1001]
        assert read_invoice(inv_a).amount_paid == 5000
        assert read_invoice(inv_a).version == 3
        assert read_invoice(inv_b).amount_paid == 1001

    def test_gives_up_after_max_attempts(
        self, session_factory, clock, two_invoices, count_payments, monkeypatch,
    ):
        contact_id, inv_a, _ = two_invoices
        settings = LettrageSettings(database_url="sqlite://", max_conflict_attempts=2)
        service = BulkPaymentService(session_factory, clock=clock, settings=settings)
        calls = []

        def always_conflict(applier, contact_id, plan, key, **kwargs):
            calls.append(key)
            raise ConflictError(inv_a, 1, 2)

        monkeypatch.setattr(PaymentApplier, "apply", always_conflict)

        with pytest.raises(ConflictError) as exc_info:
            service.apply_payment(contact_id, 6000, "k")

        assert exc_info.value.attempts == 2
        assert len(calls) == 2
        assert count_payments() == 0


class TestBalanceReport:

    def test_balance_report_is_json_safe(self, service, two_invoices):
        contact_id, inv_a, _ = two_invoices

        report = service.balance_report(str(contact_id))

        assert report["contact_id"] == str(contact_id)
        assert report["total_outstanding"] == 8000
        assert report["invoice_count"] == 2
        assert report["currency"] == "EUR"
        assert report["invoices"][0]["invoice_id"] == str(inv_a)
        assert report["invoices"][0]["due_date"] == "2024-01-10"
        assert report["invoices"][0]["is_overdue"] is True

    def test_payment_metadata_round_trips(self, service, two_invoices):
        contact_id, _, _ = two_invoices

        report = service.apply_payment(
            contact_id, 100, "k",
            payment_date=date(2024, 2, 29),
            payment_reference="CHQ 0012345",
            payment_method="CHEQUE",
        )

        assert report.result.payment_method == PaymentMethod.CHEQUE
        assert report.result.payment_reference == "CHQ 0012345"
        assert report.result.payment_date == date(2024, 2, 29)
