"""
Command-line tooling for operators.

Usage:
  dairy-ledger [--config FILE] [--database-url URL] init-db
  dairy-ledger reconcile-unapplied [--payment-id ID] [--dry-run]
  dairy-ledger outstanding CUSTOMER_ID

``reconcile-unapplied`` is the repair job for the unapplied payment
tracker: with ``--dry-run`` it only lists discrepancies, with
``--payment-id`` it reconciles one payment, otherwise all of them.

Exit codes: 0 on success, 1 on a ledger error (printed as ``CODE: message``),
2 on bad arguments.
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict, replace
from uuid import UUID

from dairy_ledger.config import LedgerSettings, load_settings
from dairy_ledger.db.engine import create_tables, get_session, init_engine_from_url
from dairy_ledger.exceptions import DairyLedgerError
from dairy_ledger.logging_config import configure_logging, get_logger
from dairy_ledger.receivables.service import ReceivablesService

logger = get_logger("cli")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="dairy-ledger",
        description="Payment allocation and outstanding balance tooling",
    )
    p.add_argument("--config", help="YAML settings file")
    p.add_argument("--database-url", help="Database URL (overrides settings)")

    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create all ledger tables")

    reconcile = sub.add_parser(
        "reconcile-unapplied",
        help="Repair unapplied payment tracker rows",
    )
    reconcile.add_argument("--payment-id", type=UUID, help="Reconcile a single payment")
    reconcile.add_argument(
        "--dry-run",
        action="store_true",
        help="List discrepancies without changing anything",
    )

    outstanding = sub.add_parser("outstanding", help="Print a customer's outstanding breakdown")
    outstanding.add_argument("customer_id", type=UUID)

    return p.parse_args(argv)


def _to_json(payload) -> str:
    return json.dumps(payload, default=str, indent=2)


def _reconcile(service: ReceivablesService, args: argparse.Namespace) -> int:
    if args.dry_run:
        discrepancies = service.unapplied_discrepancies()
        for item in discrepancies:
            print(
                f"{item.payment_id}: expected {item.expected_unapplied} "
                f"tracked {item.tracked_unapplied} recorded {item.recorded_unapplied}"
            )
        print(f"{len(discrepancies)} discrepancies found")
        return 0

    if args.payment_id is not None:
        outcome = service.reconcile_unapplied(args.payment_id)
        print(f"{outcome.payment_id}: {outcome.action.value} ({outcome.amount_unapplied})")
        return 0

    changed = service.reconcile_all()
    print(f"{changed} payments repaired")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    settings: LedgerSettings = load_settings(args.config)
    if args.database_url:
        settings = replace(settings, database_url=args.database_url)

    configure_logging(level=settings.log_level)
    init_engine_from_url(
        settings.database_url,
        echo=settings.echo,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
    )

    if args.command == "init-db":
        create_tables()
        print("tables created")
        return 0

    session = get_session()
    try:
        service = ReceivablesService(session, settings=settings)
        if args.command == "reconcile-unapplied":
            return _reconcile(service, args)
        if args.command == "outstanding":
            print(_to_json(asdict(service.customer_outstanding(args.customer_id))))
            return 0
        return 2
    except DairyLedgerError as exc:
        logger.warning("cli_command_failed", extra={"command": args.command, "code": exc.code})
        print(f"{exc.code}: {exc}", file=sys.stderr)
        return 1
    finally:
        session.close()


if __name__ == "__main__":
    sys.exit(main())
