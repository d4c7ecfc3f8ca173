"""ORM models for contacts, invoices and payments."""

from lettrage_kernel.models.contact import Contact
from lettrage_kernel.models.invoice import Invoice
from lettrage_kernel.models.payment import Payment, PaymentAllocation

__all__ = [
    "Contact",
    "Invoice",
    "Payment",
    "PaymentAllocation",
]
