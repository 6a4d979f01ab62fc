"""Financial summaries and statements.

The module-level functions aggregate rows that have already been fetched
and never touch the network. ``ReportsService`` fetches the rows each report
needs and hands them to those functions.
"""

import calendar
import re
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Literal

import structlog

from billbooks.accounts import (
    AccountsRepository,
    Clock,
    ExpensesRepository,
    LedgerRepository,
    PaymentsRepository,
    local_now,
)
from billbooks.config import Settings, get_settings
from billbooks.invoices import InvoicesRepository
from billbooks.invoicing import outstanding_amount
from billbooks.models import (
    OPEN_STATUSES,
    ZERO,
    AccountType,
    EntryType,
    PaymentRecordStatus,
    PaymentStatus,
    PaymentType,
    to_decimal,
)

logger = structlog.get_logger(__name__)

SummaryPeriod = Literal["last30days", "all"]


# =============================================================================
# REPORT STRUCTURES
# =============================================================================


@dataclass
class InvoiceSummary:
    """Totals over a set of invoices."""

    total_invoiced: Decimal = ZERO
    total_paid: Decimal = ZERO
    total_pending: Decimal = ZERO
    total_received: Decimal = ZERO
    pending_invoices: int = 0
    partial_invoices: int = 0
    paid_invoices: int = 0
    partial_payment_details: list[dict[str, Any]] = field(default_factory=list)

    @property
    def accounts_receivable(self) -> Decimal:
        return self.total_pending

    def to_dict(self, include_breakdown: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "total_invoiced": self.total_invoiced,
            "total_paid": self.total_paid,
            "total_pending": self.total_pending,
            "total_received": self.total_received,
            "accounts_receivable": self.accounts_receivable,
        }
        if include_breakdown:
            data["breakdown"] = {
                "pending_invoices": self.pending_invoices,
                "partial_invoices": self.partial_invoices,
                "paid_invoices": self.paid_invoices,
                "partial_payment_details": self.partial_payment_details,
            }
        return data


@dataclass
class PendingBreakdown:
    pending_invoices: list[dict[str, Any]]
    partial_invoices: list[dict[str, Any]]
    pending_total: Decimal
    partial_total: Decimal

    @property
    def total_pending(self) -> Decimal:
        return self.pending_total + self.partial_total

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending_invoices": self.pending_invoices,
            "partial_invoices": self.partial_invoices,
            "totals": {
                "pending_total": self.pending_total,
                "partial_total": self.partial_total,
                "total_pending": self.total_pending,
            },
        }


@dataclass
class CustomerStatement:
    """A customer's invoices and payments with their open balance."""

    invoices: list[dict[str, Any]]
    payments: list[dict[str, Any]]
    total_invoiced: Decimal
    total_paid: Decimal
    balance: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "invoices": self.invoices,
            "payments": self.payments,
            "summary": {
                "total_invoiced": self.total_invoiced,
                "total_paid": self.total_paid,
                "balance": self.balance,
            },
        }


@dataclass
class ProfitAndLoss:
    income: dict[str, Decimal]
    expenses: dict[str, Decimal]
    period_start: date | str
    period_end: date | str

    @property
    def total_income(self) -> Decimal:
        return sum(self.income.values(), ZERO)

    @property
    def total_expenses(self) -> Decimal:
        return sum(self.expenses.values(), ZERO)

    @property
    def net_income(self) -> Decimal:
        return self.total_income - self.total_expenses

    @property
    def period(self) -> str:
        return f"{self.period_start} to {self.period_end}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "income": self.income,
            "expenses": self.expenses,
            "total_income": self.total_income,
            "total_expenses": self.total_expenses,
            "net_income": self.net_income,
            "period": self.period,
        }


@dataclass
class CashFlow:
    """Operating cash flow; receipts positive, payments negative."""

    cash_receipts: Decimal
    cash_payments: Decimal
    net_income: Decimal
    investing_activities: dict[str, Decimal] = field(default_factory=dict)
    financing_activities: dict[str, Decimal] = field(default_factory=dict)

    @property
    def net_operating_cash(self) -> Decimal:
        return self.cash_receipts + self.cash_payments

    def to_dict(self) -> dict[str, Any]:
        return {
            "operating_activities": {
                "cash_receipts": self.cash_receipts,
                "cash_payments": self.cash_payments,
                "net_income": self.net_income,
            },
            "net_operating_cash": self.net_operating_cash,
            "investing_activities": self.investing_activities,
            "financing_activities": self.financing_activities,
        }


@dataclass
class BalanceSheet:
    current_assets: dict[str, Decimal] = field(default_factory=dict)
    fixed_assets: dict[str, Decimal] = field(default_factory=dict)
    current_liabilities: dict[str, Decimal] = field(default_factory=dict)
    long_term_liabilities: dict[str, Decimal] = field(default_factory=dict)
    owner_equity: Decimal = ZERO
    retained_earnings: Decimal = ZERO

    @property
    def total_assets(self) -> Decimal:
        return sum(self.current_assets.values(), ZERO) + sum(self.fixed_assets.values(), ZERO)

    @property
    def total_liabilities(self) -> Decimal:
        return sum(self.current_liabilities.values(), ZERO) + sum(
            self.long_term_liabilities.values(), ZERO
        )

    @property
    def total_equity(self) -> Decimal:
        return self.owner_equity + self.retained_earnings

    @property
    def difference(self) -> Decimal:
        """Assets minus liabilities and equity; zero when the books balance."""
        return self.total_assets - (self.total_liabilities + self.total_equity)

    @property
    def is_balanced(self) -> bool:
        return self.difference == ZERO

    def to_dict(self) -> dict[str, Any]:
        return {
            "assets": {
                "current_assets": self.current_assets,
                "fixed_assets": self.fixed_assets,
                "total_assets": self.total_assets,
            },
            "liabilities": {
                "current_liabilities": self.current_liabilities,
                "long_term_liabilities": self.long_term_liabilities,
                "total_liabilities": self.total_liabilities,
            },
            "equity": {
                "owner_equity": self.owner_equity,
                "retained_earnings": self.retained_earnings,
                "total_equity": self.total_equity,
            },
            "is_balanced": self.is_balanced,
            "difference": self.difference,
        }


@dataclass
class QuickStats:
    total_cash: Decimal
    total_receivables: Decimal
    total_payables: Decimal
    monthly_revenue: Decimal
    monthly_expenses: Decimal

    @property
    def net_profit(self) -> Decimal:
        return self.monthly_revenue - self.monthly_expenses

    def to_dict(self) -> dict[str, Any]:
        return {**asdict(self), "net_profit": self.net_profit}


@dataclass
class DailyTotals:
    income: Decimal
    expenses: Decimal

    @property
    def net(self) -> Decimal:
        return self.income - self.expenses

    def to_dict(self) -> dict[str, Any]:
        return {"income": self.income, "expenses": self.expenses, "net": self.net}


# =============================================================================
# AGGREGATION
# =============================================================================


def sum_amounts(rows: Iterable[dict[str, Any]], key: str = "amount") -> Decimal:
    return sum((to_decimal(row.get(key)) for row in rows), ZERO)


def _status(row: dict[str, Any]) -> PaymentStatus:
    return PaymentStatus(row.get("payment_status") or PaymentStatus.PENDING)


def _customer_name(row: dict[str, Any]) -> str:
    return (row.get("customers") or {}).get("name") or "Unknown"


def invoice_outstanding(row: dict[str, Any]) -> Decimal:
    return outstanding_amount(
        to_decimal(row.get("total_amount")), to_decimal(row.get("amount_paid")), _status(row)
    )


def summarize_invoices(
    invoices: Iterable[dict[str, Any]], payments: Iterable[dict[str, Any]] = ()
) -> InvoiceSummary:
    """Invoiced, paid and pending totals plus received payments."""
    summary = InvoiceSummary()
    for row in invoices:
        status = _status(row)
        total = to_decimal(row.get("total_amount"))
        paid = to_decimal(row.get("amount_paid"))
        summary.total_invoiced += total
        summary.total_pending += outstanding_amount(total, paid, status)
        if status == PaymentStatus.PAID:
            summary.total_paid += total
            summary.paid_invoices += 1
        elif status == PaymentStatus.PARTIAL:
            summary.total_paid += paid
            summary.partial_invoices += 1
            summary.partial_payment_details.append(
                {
                    "invoice_id": row.get("id"),
                    "total_amount": total,
                    "amount_paid": paid,
                    "remaining_balance": total - paid,
                }
            )
        elif status == PaymentStatus.PENDING:
            summary.pending_invoices += 1

    summary.total_received = sum_amounts(
        p for p in payments if p.get("payment_type") == PaymentType.RECEIVED.value
    )
    return summary


def pending_breakdown(invoices: Iterable[dict[str, Any]]) -> PendingBreakdown:
    """Per-invoice pending amounts for open invoices."""
    pending: list[dict[str, Any]] = []
    partial: list[dict[str, Any]] = []
    for row in invoices:
        status = _status(row)
        total = to_decimal(row.get("total_amount"))
        base = {
            "id": row.get("id"),
            "invoice_number": row.get("invoice_number"),
            "customer_name": _customer_name(row),
            "total_amount": total,
            "invoice_date": row.get("invoice_date"),
        }
        if status == PaymentStatus.PENDING:
            pending.append({**base, "pending_amount": total})
        elif status == PaymentStatus.PARTIAL:
            paid = to_decimal(row.get("amount_paid"))
            partial.append({**base, "amount_paid": paid, "pending_amount": total - paid})

    return PendingBreakdown(
        pending_invoices=pending,
        partial_invoices=partial,
        pending_total=sum_amounts(pending, "pending_amount"),
        partial_total=sum_amounts(partial, "pending_amount"),
    )


def pending_counts(invoices: Iterable[dict[str, Any]]) -> dict[str, int]:
    counts = {"pending": 0, "partial": 0, "total": 0}
    for row in invoices:
        status = _status(row)
        if status in OPEN_STATUSES:
            counts[status.value] += 1
            counts["total"] += 1
    return counts


def customer_statement(
    invoices: list[dict[str, Any]], payments: list[dict[str, Any]]
) -> CustomerStatement:
    """Statement totals; only open invoices count towards what is owed."""
    open_invoices = [row for row in invoices if _status(row) in OPEN_STATUSES]
    return CustomerStatement(
        invoices=invoices,
        payments=payments,
        total_invoiced=sum_amounts(open_invoices, "total_amount"),
        total_paid=sum_amounts(payments),
        balance=sum((invoice_outstanding(row) for row in open_invoices), ZERO),
    )


def aggregate_by_category(rows: Iterable[dict[str, Any]]) -> dict[str, Decimal]:
    totals: dict[str, Decimal] = {}
    for row in rows:
        category = row.get("category") or "uncategorized"
        totals[category] = totals.get(category, ZERO) + to_decimal(row.get("amount"))
    return totals


def profit_and_loss(
    income_entries: Iterable[dict[str, Any]],
    expenses: Iterable[dict[str, Any]],
    start: date | str,
    end: date | str,
) -> ProfitAndLoss:
    """Income from ledger entries and expenses from the expenses table, by category."""
    return ProfitAndLoss(
        income=aggregate_by_category(income_entries),
        expenses=aggregate_by_category(expenses),
        period_start=start,
        period_end=end,
    )


def cash_flow(
    payments: Iterable[dict[str, Any]], ledger_entries: Iterable[dict[str, Any]]
) -> CashFlow:
    """Operating cash flow from completed payments; net income from the ledger."""
    completed = [
        p for p in payments if p.get("payment_status") == PaymentRecordStatus.COMPLETED.value
    ]
    receipts = sum_amounts(
        p for p in completed if p.get("payment_type") == PaymentType.RECEIVED.value
    )
    paid_out = sum_amounts(
        p for p in completed if p.get("payment_type") == PaymentType.SENT.value
    )

    net_income = ZERO
    for entry in ledger_entries:
        amount = to_decimal(entry.get("amount"))
        net_income += amount if entry.get("entry_type") == EntryType.INCOME.value else -amount

    return CashFlow(cash_receipts=receipts, cash_payments=-paid_out, net_income=net_income)


def account_key(name: str) -> str:
    """Snake-cased account name used as a balance sheet line key."""
    return re.sub(r"\s+", "_", name.strip().lower())


def balance_sheet(
    accounts: Iterable[dict[str, Any]], retained_earnings: Decimal = ZERO
) -> BalanceSheet:
    """Classify account balances into assets and liabilities.

    Cash and bank accounts are current assets, investments are fixed assets
    and credit accounts are current liabilities carried at their absolute
    balance. Account types outside those four are left off the sheet.
    """
    sheet = BalanceSheet(retained_earnings=retained_earnings)
    for account in accounts:
        key = account_key(account.get("account_name") or "unnamed")
        balance = to_decimal(account.get("current_balance"))
        account_type = account.get("account_type")
        if account_type in (AccountType.CASH.value, AccountType.BANK.value):
            sheet.current_assets[key] = sheet.current_assets.get(key, ZERO) + balance
        elif account_type == AccountType.INVESTMENT.value:
            sheet.fixed_assets[key] = sheet.fixed_assets.get(key, ZERO) + balance
        elif account_type == AccountType.CREDIT.value:
            sheet.current_liabilities[key] = sheet.current_liabilities.get(key, ZERO) + abs(balance)
    return sheet


def daily_totals(entries: Iterable[dict[str, Any]]) -> DailyTotals:
    income = ZERO
    expenses = ZERO
    for entry in entries:
        amount = to_decimal(entry.get("amount"))
        if entry.get("entry_type") == EntryType.INCOME.value:
            income += amount
        elif entry.get("entry_type") == EntryType.EXPENSE.value:
            expenses += amount
    return DailyTotals(income=income, expenses=expenses)


def month_bounds(day: date) -> tuple[date, date]:
    """First and last day of the month containing ``day``."""
    last = calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=1), day.replace(day=last)


# =============================================================================
# REPORTS SERVICE
# =============================================================================


class ReportsService:
    """Fetches rows from the books and assembles reports."""

    def __init__(
        self,
        accounts: AccountsRepository,
        ledger: LedgerRepository,
        payments: PaymentsRepository,
        expenses: ExpensesRepository,
        invoices: InvoicesRepository,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ):
        self._accounts = accounts
        self._ledger = ledger
        self._payments = payments
        self._expenses = expenses
        self._invoices = invoices
        self._settings = settings or get_settings()
        self._clock = clock or local_now

    def _today(self) -> date:
        return self._clock().date()

    async def billing_account_summary(self, today: date | None = None) -> InvoiceSummary:
        """Invoice and payment totals for the recent summary window."""
        since = (today or self._today()) - timedelta(days=self._settings.summary_window_days)
        invoices = await self._invoices.list_by_status(since=since)
        payments = await self._payments.list_payments(
            start_date=since,
            end_date=today or self._today(),
            columns="amount, payment_date, payment_type",
        )
        return summarize_invoices(invoices, payments)

    async def overall_account_summary(self) -> InvoiceSummary:
        """Invoice and payment totals for all time."""
        invoices = await self._invoices.list_by_status()
        payments = await self._payments.list_payments(columns="amount, payment_date, payment_type")
        return summarize_invoices(invoices, payments)

    async def get_account_summary(self, period: SummaryPeriod = "all") -> InvoiceSummary:
        if period == "last30days":
            return await self.billing_account_summary()
        return await self.overall_account_summary()

    async def pending_amounts_breakdown(self) -> PendingBreakdown:
        invoices = await self._invoices.list_by_status(
            OPEN_STATUSES,
            columns=(
                "id, invoice_number, total_amount, amount_paid, payment_status, "
                "invoice_date, customers (name)"
            ),
        )
        return pending_breakdown(invoices)

    async def pending_invoice_counts(self) -> dict[str, int]:
        invoices = await self._invoices.list_by_status(OPEN_STATUSES, columns="payment_status")
        return pending_counts(invoices)

    async def total_pending_amount(self) -> Decimal:
        invoices = await self._invoices.list_by_status(
            OPEN_STATUSES, columns="total_amount, amount_paid, payment_status"
        )
        return sum((invoice_outstanding(row) for row in invoices), ZERO)

    async def customer_account_statement(self, customer_id: Any) -> CustomerStatement:
        """Statement for one customer.

        Payments carry no customer id, so they are matched on the customer's
        name as it appears on the invoices.
        """
        invoices = await self._invoices.list_for_customer(customer_id)
        payments: list[dict[str, Any]] = []
        if invoices:
            name = (invoices[0].get("customers") or {}).get("name")
            if name:
                payments = await self._payments.list_payments(customer_vendor_name=name)
        return customer_statement(invoices, payments)

    async def profit_and_loss(self, start: date | str, end: date | str) -> ProfitAndLoss:
        income = await self._ledger.list_entries(
            entry_type=EntryType.INCOME, start_date=start, end_date=end, columns="category, amount"
        )
        expenses = await self._expenses.list_expenses(
            start_date=start, end_date=end, columns="category, amount"
        )
        return profit_and_loss(income, expenses, start, end)

    async def cash_flow(self, start: date | str, end: date | str) -> CashFlow:
        payments = await self._payments.list_payments(
            start_date=start, end_date=end, columns="payment_type, amount, payment_status"
        )
        entries = await self._ledger.list_entries(
            start_date=start, end_date=end, columns="entry_type, amount"
        )
        return cash_flow(payments, entries)

    async def balance_sheet(self, year: int | None = None) -> BalanceSheet:
        """Balance sheet with the year's net income as retained earnings."""
        year = year or self._today().year
        accounts = await self._accounts.list_accounts()
        pnl = await self.profit_and_loss(date(year, 1, 1), date(year, 12, 31))
        sheet = balance_sheet(accounts, retained_earnings=pnl.net_income)
        if not sheet.is_balanced:
            logger.warning(
                "balance_sheet_unbalanced",
                year=year,
                total_assets=str(sheet.total_assets),
                total_liabilities=str(sheet.total_liabilities),
                total_equity=str(sheet.total_equity),
                difference=str(sheet.difference),
            )
        return sheet

    async def quick_stats(self, today: date | None = None) -> QuickStats:
        """Dashboard figures for the current month."""
        first, last = month_bounds(today or self._today())
        cash_accounts = await self._accounts.list_accounts(account_type=AccountType.CASH)
        receivables = await self._payments.list_payments(
            payment_type=PaymentType.RECEIVED, status=PaymentRecordStatus.PENDING, columns="amount"
        )
        payables = await self._payments.list_payments(
            payment_type=PaymentType.SENT, status=PaymentRecordStatus.PENDING, columns="amount"
        )
        income = await self._ledger.list_entries(
            entry_type=EntryType.INCOME, start_date=first, end_date=last, columns="amount"
        )
        expenses = await self._expenses.list_expenses(
            start_date=first, end_date=last, columns="amount"
        )
        return QuickStats(
            total_cash=sum_amounts(cash_accounts, "current_balance"),
            total_receivables=sum_amounts(receivables),
            total_payables=sum_amounts(payables),
            monthly_revenue=sum_amounts(income),
            monthly_expenses=sum_amounts(expenses),
        )

    async def daily_totals(self, day: date | str) -> DailyTotals:
        return daily_totals(await self._ledger.list_entries(entry_date=day))
