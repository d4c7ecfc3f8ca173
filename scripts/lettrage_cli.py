#!/usr/bin/env python3
"""
Lettrage command line: show a contact's balance or apply a payment.

Prints one JSON document on stdout.  Structured logs go to stderr.

Usage:
    python3 scripts/lettrage_cli.py balance CONTACT_ID
    python3 scripts/lettrage_cli.py apply CONTACT_ID 6000 --key bank-2024-03-01-17
    python3 scripts/lettrage_cli.py apply CONTACT_ID 5000 --key k2 \\
        --manual INVOICE_ID=3000 --manual OTHER_ID=2000
    python3 scripts/lettrage_cli.py --config prod.yaml apply CONTACT_ID 9000 \\
        --key k3 --invoice INVOICE_ID --method VIREMENT --reference "VIR 0042"

Exit codes:
    0  success
    1  rejected request (the JSON carries ``error.code``)
"""

import argparse
import json
import sys
from datetime import date
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from lettrage_config import get_active_settings  # noqa: E402
from lettrage_config.loader import log_level_number  # noqa: E402
from lettrage_kernel.db.engine import (  # noqa: E402
    create_tables,
    get_session_factory,
    init_engine_from_url,
)
from lettrage_kernel.domain.dtos import AllocationStrategy  # noqa: E402
from lettrage_kernel.domain.values import PaymentMethod  # noqa: E402
from lettrage_kernel.exceptions import InvalidAllocationError, LettrageError  # noqa: E402
from lettrage_kernel.logging_config import configure_logging, get_logger  # noqa: E402
from lettrage_services import BulkPaymentService  # noqa: E402

logger = get_logger("cli")


def _manual_pair(text: str) -> tuple[str, int]:
    invoice_id, sep, amount = text.partition("=")
    if not sep or not invoice_id:
        raise argparse.ArgumentTypeError(f"expected INVOICE_ID=AMOUNT, got {text!r}")
    try:
        return invoice_id, int(amount)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"amount must be an integer of minor units, got {amount!r}"
        ) from None


def _manual_mapping(pairs: list[tuple[str, int]]) -> dict[str, int] | None:
    if not pairs:
        return None
    mapping: dict[str, int] = {}
    for invoice_id, amount in pairs:
        if invoice_id in mapping:
            raise InvalidAllocationError("invoice listed more than once", invoice_id)
        mapping[invoice_id] = amount
    return mapping


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lettrage",
        description="Allocate one payment across a contact's open invoices.",
    )
    parser.add_argument("--config", type=Path, default=None,
                        help="YAML settings file (packaged defaults when omitted)")
    parser.add_argument("--db-url", default=None,
                        help="Override the database_url of the settings file")

    sub = parser.add_subparsers(dest="command", required=True)

    balance = sub.add_parser("balance", help="Show the outstanding balance")
    balance.add_argument("contact_id")

    apply = sub.add_parser("apply", help="Apply a payment")
    apply.add_argument("contact_id")
    apply.add_argument("amount", type=int, help="Amount in minor units")
    apply.add_argument("--key", required=True, help="Idempotency key")
    apply.add_argument("--manual", type=_manual_pair, action="append", default=[],
                       metavar="INVOICE_ID=AMOUNT",
                       help="Explicit allocation; switches to the MANUAL strategy")
    apply.add_argument("--invoice", action="append", default=None,
                       metavar="INVOICE_ID",
                       help="Restrict the payment to this invoice (repeatable)")
    apply.add_argument("--date", type=date.fromisoformat, default=None,
                       help="Payment value date (YYYY-MM-DD)")
    apply.add_argument("--reference", default=None, help="Bank or cheque reference")
    apply.add_argument("--method", choices=[m.value for m in PaymentMethod],
                       default=None)
    return parser


def _emit(document: dict) -> None:
    print(json.dumps(document, indent=2, sort_keys=True))


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    settings = get_active_settings(args.config)
    configure_logging(level=log_level_number(settings))
    database_url = args.db_url or settings.database_url

    init_engine_from_url(database_url, echo=settings.echo_sql)
    create_tables()
    service = BulkPaymentService(get_session_factory(), settings=settings)

    try:
        if args.command == "balance":
            _emit(service.balance_report(args.contact_id))
            return 0

        manual = _manual_mapping(args.manual)
        report = service.apply_payment(
            args.contact_id,
            args.amount,
            args.key,
            strategy=AllocationStrategy.MANUAL if manual else AllocationStrategy.AUTO,
            allocations=manual,
            invoice_ids=args.invoice,
            payment_date=args.date,
            payment_reference=args.reference,
            payment_method=args.method,
        )
        _emit(report.to_dict())
        return 0
    except LettrageError as exc:
        logger.info("cli_request_rejected", extra={"error_code": exc.code})
        _emit({"error": {"code": exc.code, "message": str(exc)}})
        return 1


if __name__ == "__main__":
    sys.exit(main())
