"""
Pytest fixtures for the lettrage test suite.

Provides:
- A file-based SQLite database per test (shared by every session the test
  opens, so concurrent-session scenarios see each other's commits)
- Contact and invoice factories
- A DeterministicClock pinned to 2024-03-01 09:00 UTC
- Structured log capture

Environment Variables:
- LETTRAGE_TEST_DATABASE_URL: run against this database instead of SQLite
  (PostgreSQL for the ``postgres`` marked tests).  Tables are dropped after
  each test.
"""

import itertools
import json
import logging
import os
from datetime import UTC, date, datetime, timedelta
from io import StringIO
from uuid import UUID

import pytest
from sqlalchemy import select

from lettrage_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from lettrage_kernel.domain.clock import DeterministicClock
from lettrage_kernel.domain.values import InvoiceStatus, derive_status
from lettrage_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from lettrage_kernel.models.contact import Contact
from lettrage_kernel.models.invoice import Invoice
from lettrage_kernel.models.payment import Payment

POSTGRES_URL_ENV = "LETTRAGE_TEST_DATABASE_URL"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture lettrage logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, service):
            service.apply_payment(...)
            logs = captured_logs()
            assert any(r["message"] == "payment_applied" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("lettrage")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def database_url(tmp_path) -> str:
    return os.environ.get(POSTGRES_URL_ENV) or f"sqlite:///{tmp_path / 'lettrage.sqlite'}"


@pytest.fixture
def engine(database_url):
    eng = init_engine_from_url(database_url, pool_size=5, max_overflow=5)
    drop_tables()
    create_tables()
    yield eng
    drop_tables()
    reset_engine()


@pytest.fixture
def session_factory(engine):
    return get_session_factory()


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(datetime(2024, 3, 1, 9, 0, 0, tzinfo=UTC))


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_contact(session_factory):
    """Create and commit a contact, returning its id."""

    def _make(display_name: str = "Garage Dupont SARL") -> UUID:
        with session_scope(session_factory) as s:
            contact = Contact(display_name=display_name)
            s.add(contact)
        return contact.id

    return _make


@pytest.fixture
def make_invoice(session_factory):
    """
    Create and commit an invoice, returning its id.

    ``issued_at`` defaults to one day before ``due_date`` plus a per-test
    counter, so default invoices never tie on issue time.
    """
    counter = itertools.count(1)

    def _make(
        contact_id: UUID,
        total_amount: int,
        due_date: date,
        amount_paid: int = 0,
        status: InvoiceStatus | None = None,
        issued_at: datetime | None = None,
        invoice_number: str | None = None,
    ) -> UUID:
        n = next(counter)
        if issued_at is None:
            issued_at = datetime(
                due_date.year, due_date.month, due_date.day, tzinfo=UTC
            ) - timedelta(days=1) + timedelta(seconds=n)
        if status is None:
            status = derive_status(amount_paid, total_amount)
        with session_scope(session_factory) as s:
            invoice = Invoice(
                contact_id=contact_id,
                invoice_number=invoice_number or f"FAC-2024-{n:04d}-{contact_id.hex[:6]}",
                total_amount=total_amount,
                amount_paid=amount_paid,
                status=status.value,
                due_date=due_date,
                issued_at=issued_at,
                version=1,
            )
            s.add(invoice)
        return invoice.id

    return _make


@pytest.fixture
def read_invoice(session_factory):
    """Load the committed state of an invoice in a fresh session."""

    def _read(invoice_id: UUID) -> Invoice:
        with session_factory() as s:
            return s.execute(
                select(Invoice).where(Invoice.id == invoice_id)
            ).scalar_one()

    return _read


@pytest.fixture
def count_payments(session_factory):
    def _count(contact_id: UUID | None = None) -> int:
        with session_factory() as s:
            stmt = select(Payment)
            if contact_id is not None:
                stmt = stmt.where(Payment.contact_id == contact_id)
            return len(s.execute(stmt).scalars().all())

    return _count


@pytest.fixture
def two_invoices(make_contact, make_invoice):
    """Contact with A (due 2024-01-10, 5000) and B (due 2024-02-15, 3000)."""
    contact_id = make_contact()
    inv_a = make_invoice(contact_id, 5000, date(2024, 1, 10), invoice_number="FAC-A")
    inv_b = make_invoice(contact_id, 3000, date(2024, 2, 15), invoice_number="FAC-B")
    return contact_id, inv_a, inv_b
