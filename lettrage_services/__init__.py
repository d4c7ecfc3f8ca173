"""
Lettrage services -- orchestration over the kernel and engines.

    BulkPaymentService       balance -> plan -> apply -> report, with retries
    ReconciliationReporter   committed payment + post-commit balance
"""

from lettrage_services.bulk_payment_service import BulkPaymentService
from lettrage_services.reconciliation_reporter import (
    PaymentReport,
    ReconciliationReporter,
    balance_to_dict,
)

__all__ = [
    "BulkPaymentService",
    "PaymentReport",
    "ReconciliationReporter",
    "balance_to_dict",
]
