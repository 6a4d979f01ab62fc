"""Operator command line for billing and reporting.

Usage:
    # Invoice totals for the last 30 days
    billbooks summary --period=last30days

    # Open invoices of one customer
    billbooks pending --customer=CUSTOMER_ID

    # Record a payment of 400 against an invoice
    billbooks pay INVOICE_ID 400 --method=cash --user=USER_ID

    # Profit and loss for a date range
    billbooks report profit-loss --start=2024-01-01 --end=2024-03-31
"""

import argparse
import asyncio
import json
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

import structlog

from billbooks.accounts import (
    AccountsRepository,
    ExpensesRepository,
    LedgerRepository,
    PaymentsRepository,
    local_now,
)
from billbooks.clients.datastore import DatastoreClient, to_jsonable
from billbooks.clients.identity import IdentityClient
from billbooks.config import configure_logging
from billbooks.invoices import InvoicesRepository
from billbooks.models import to_decimal
from billbooks.reconciliation import BillingReconciler
from billbooks.reports import ReportsService, month_bounds
from billbooks.users import UserDirectory

logger = structlog.get_logger(__name__)

REPORTS = ("profit-loss", "cash-flow", "balance-sheet", "quick-stats")


@dataclass
class Services:
    """Everything a command needs, wired to one pair of clients."""

    invoices: InvoicesRepository
    reconciler: BillingReconciler
    reports: ReportsService
    users: UserDirectory


@asynccontextmanager
async def open_services() -> AsyncIterator[Services]:
    async with DatastoreClient() as datastore, IdentityClient() as identity:
        invoices = InvoicesRepository(datastore)
        ledger = LedgerRepository(datastore)
        payments = PaymentsRepository(datastore)
        yield Services(
            invoices=invoices,
            reconciler=BillingReconciler(invoices, ledger, payments),
            reports=ReportsService(
                AccountsRepository(datastore),
                ledger,
                payments,
                ExpensesRepository(datastore),
                invoices,
            ),
            users=UserDirectory(datastore, identity),
        )


def _amount(text: str) -> Decimal:
    try:
        value = to_decimal(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"Amount must be a finite number: {text!r}")
    return value


def _count(text: str) -> int:
    value = int(text)
    if value < 0:
        raise argparse.ArgumentTypeError(f"Must not be negative: {text!r}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="billbooks",
        description="Billing and accounting books",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  summary     Invoiced, paid and pending totals
  pending     Open invoices with their pending amounts
  recent-paid Invoices paid in the last days
  statement   A customer's invoices, payments and balance
  pay         Record a payment against an invoice
  mark-paid   Settle an invoice's outstanding balance
  cancel      Cancel an open invoice
  delete      Delete an invoice and its items
  report      Financial reports

Examples:
  %(prog)s summary --period=last30days
  %(prog)s pending --list --limit=20
  %(prog)s pay 42 400 --user=user_123
  %(prog)s report balance-sheet --year=2024
        """,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    summary = commands.add_parser("summary", help="Invoice totals")
    summary.add_argument(
        "--period",
        choices=["last30days", "all"],
        default="all",
        help="Summary window (default: all)",
    )

    pending = commands.add_parser("pending", help="Open invoices and pending amounts")
    selection = pending.add_mutually_exclusive_group()
    selection.add_argument("--customer", help="Open invoices of one customer")
    selection.add_argument("--invoice", help="One open invoice with its items")
    selection.add_argument(
        "--list", action="store_true", help="Open invoices of all customers, newest first"
    )
    pending.add_argument("--limit", type=_count, default=50, help="Page size for --list")
    pending.add_argument("--offset", type=_count, default=0, help="Rows to skip for --list")

    recent = commands.add_parser("recent-paid", help="Recently paid invoices")
    recent.add_argument("--days", type=_count, default=30, help="Window in days (default: 30)")
    recent.add_argument("--limit", type=_count, default=5, help="Maximum rows (default: 5)")

    statement = commands.add_parser("statement", help="Customer account statement")
    statement.add_argument("customer_id", help="Customer id")

    for name, help_text in (
        ("pay", "Record a payment against an invoice"),
        ("mark-paid", "Settle an invoice's outstanding balance"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("invoice_id", help="Invoice id")
        if name == "pay":
            command.add_argument("amount", type=_amount, help="Payment amount")
        command.add_argument("--method", default=None, help="Payment method")
        command.add_argument("--user", required=True, help="Acting user id")

    for name, help_text in (
        ("cancel", "Cancel an open invoice"),
        ("delete", "Delete an invoice and its items"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("invoice_id", help="Invoice id")
        command.add_argument("--user", required=True, help="Acting user id")

    report = commands.add_parser("report", help="Financial reports")
    report.add_argument("name", choices=REPORTS, help="Report to run")
    report.add_argument(
        "--start", type=date.fromisoformat, help="Start date (default: start of month)"
    )
    report.add_argument("--end", type=date.fromisoformat, help="End date (default: end of month)")
    report.add_argument("--year", type=int, help="Balance sheet year (default: current year)")

    return parser


async def run_command(args: argparse.Namespace, services: Services) -> Any:
    """Run a parsed command and return its JSON-ready result."""
    if args.command == "summary":
        summary = await services.reports.get_account_summary(args.period)
        return summary.to_dict()

    if args.command == "pending":
        if args.customer:
            return await services.invoices.list_customer_pending(args.customer)
        if args.invoice:
            return await services.invoices.get_pending_details(args.invoice)
        if args.list:
            return await services.invoices.list_pending(limit=args.limit, offset=args.offset)
        breakdown = await services.reports.pending_amounts_breakdown()
        return {
            **breakdown.to_dict(),
            "counts": await services.reports.pending_invoice_counts(),
        }

    if args.command == "recent-paid":
        return await services.invoices.list_recently_paid(days=args.days, limit=args.limit)

    if args.command == "statement":
        statement = await services.reports.customer_account_statement(args.customer_id)
        return statement.to_dict()

    if args.command in ("pay", "mark-paid"):
        user_id = await services.users.resolve_user(user_id=args.user)
        if args.command == "pay":
            result = await services.reconciler.record_partial_payment(
                args.invoice_id, args.amount, args.method, user_id
            )
        else:
            result = await services.reconciler.mark_invoice_as_paid(
                args.invoice_id, args.method, user_id
            )
        return result.to_dict()

    if args.command in ("cancel", "delete"):
        user_id = await services.users.resolve_user(user_id=args.user)
        logger.info("invoice_change_requested", command=args.command, user_id=user_id)
        if args.command == "cancel":
            return await services.reconciler.cancel_invoice(args.invoice_id)
        await services.invoices.delete_invoice(args.invoice_id)
        return {"invoice_id": args.invoice_id, "deleted": True}

    if args.command == "report":
        if args.name == "balance-sheet":
            return (await services.reports.balance_sheet(args.year)).to_dict()
        if args.name == "quick-stats":
            return (await services.reports.quick_stats()).to_dict()
        first, last = month_bounds(local_now().date())
        start = args.start or first
        end = args.end or last
        if args.name == "profit-loss":
            return (await services.reports.profit_and_loss(start, end)).to_dict()
        return (await services.reports.cash_flow(start, end)).to_dict()

    raise ValueError(f"Unknown command: {args.command}")


async def main(argv: list[str] | None = None) -> None:
    """Main entry point for the command line."""
    configure_logging()
    args = build_parser().parse_args(argv)

    logger.debug("billbooks_command", command=args.command)

    try:
        async with open_services() as services:
            result = await run_command(args, services)
    except KeyboardInterrupt:
        logger.info("command_interrupted")
        sys.exit(130)
    except Exception as e:
        logger.exception("command_failed", command=args.command, error=str(e))
        sys.exit(1)

    print(json.dumps(to_jsonable(result), indent=2))


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
