"""Kernel services (imperative shell)."""

from lettrage_kernel.services.payment_applier import PaymentApplier

__all__ = ["PaymentApplier"]
