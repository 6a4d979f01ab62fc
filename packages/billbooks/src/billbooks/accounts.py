"""Data access for the books tables: accounts, ledger, payments, expenses."""

from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import Any

import structlog

from billbooks.clients.datastore import DatastoreClient, Filter, eq, gte, lte
from billbooks.models import ZERO, EntryType, PaymentRecordStatus, PaymentType

logger = structlog.get_logger(__name__)

ACCOUNTS_TABLE = "accounts"
LEDGER_TABLE = "ledger_entries"
PAYMENTS_TABLE = "payments"
EXPENSES_TABLE = "expenses"
CHART_TABLE = "chart_of_accounts"

ACCOUNT_BALANCES_VIEW = "account_balances_summary"
DAILY_LEDGER_VIEW = "daily_ledger_summary"
EXPENSE_ANALYSIS_VIEW = "expense_analysis"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def local_now() -> datetime:
    return datetime.now().astimezone()


def date_range(column: str, start: date | str | None, end: date | str | None) -> list[Filter]:
    """Inclusive date range filters; applied only when both bounds are given."""
    if start is None or end is None:
        return []
    return [gte(column, start), lte(column, end)]


class _Repository:
    table: str

    def __init__(self, datastore: DatastoreClient, clock: Clock | None = None):
        self._db = datastore
        self._clock = clock or utc_now

    def _stamp_update(self, data: dict[str, Any]) -> dict[str, Any]:
        return {**data, "updated_at": self._clock().isoformat()}

    async def _create(self, data: dict[str, Any], user_id: str) -> dict[str, Any]:
        row = await self._db.insert_one(self.table, {**data, "created_by": user_id})
        logger.info("row_created", table=self.table, id=row.get("id"), created_by=user_id)
        return row

    async def _update(self, row_id: Any, data: dict[str, Any]) -> dict[str, Any]:
        row = await self._db.update_one(self.table, self._stamp_update(data), [eq("id", row_id)])
        logger.info("row_updated", table=self.table, id=row_id)
        return row

    async def _delete(self, row_id: Any) -> bool:
        await self._db.delete(self.table, [eq("id", row_id)])
        logger.info("row_deleted", table=self.table, id=row_id)
        return True


class AccountsRepository(_Repository):
    """Cash, bank, credit and investment accounts."""

    table = ACCOUNTS_TABLE

    async def list_accounts(self, account_type: str | None = None) -> list[dict[str, Any]]:
        """List active accounts ordered by name."""
        filters = [eq("is_active", True)]
        if account_type:
            filters.append(eq("account_type", account_type))
        return await self._db.select(self.table, filters=filters, order=[("account_name", False)])

    async def create_account(self, data: dict[str, Any], user_id: str) -> dict[str, Any]:
        return await self._create(data, user_id)

    async def update_account(self, account_id: Any, data: dict[str, Any]) -> dict[str, Any]:
        return await self._update(account_id, data)

    async def deactivate_account(self, account_id: Any) -> bool:
        """Soft-delete an account; its history stays in the books."""
        await self._db.update(
            self.table, self._stamp_update({"is_active": False}), [eq("id", account_id)]
        )
        logger.info("account_deactivated", id=account_id)
        return True

    async def get_account_summary(self) -> list[dict[str, Any]]:
        return await self._db.select(ACCOUNT_BALANCES_VIEW)


class LedgerRepository(_Repository):
    """Dated income and expense entries."""

    table = LEDGER_TABLE

    async def list_entries(
        self,
        entry_date: date | str | None = None,
        entry_type: EntryType | str | None = None,
        category: str | None = None,
        start_date: date | str | None = None,
        end_date: date | str | None = None,
        columns: str = "*",
    ) -> list[dict[str, Any]]:
        """List ledger entries, newest first."""
        filters: list[Filter] = []
        if entry_date:
            filters.append(eq("entry_date", entry_date))
        if entry_type:
            filters.append(eq("entry_type", entry_type))
        if category:
            filters.append(eq("category", category))
        filters.extend(date_range("entry_date", start_date, end_date))
        return await self._db.select(
            self.table,
            columns=columns,
            filters=filters,
            order=[("entry_date", True), ("entry_time", True)],
        )

    async def create_entry(self, data: dict[str, Any], user_id: str) -> dict[str, Any]:
        return await self._create(data, user_id)

    async def update_entry(self, entry_id: Any, data: dict[str, Any]) -> dict[str, Any]:
        return await self._update(entry_id, data)

    async def delete_entry(self, entry_id: Any) -> bool:
        return await self._delete(entry_id)

    async def get_daily_summary(self, day: date | str) -> dict[str, Any]:
        """Totals for one day; a day without entries has zero totals."""
        row = await self._db.select_optional(DAILY_LEDGER_VIEW, filters=[eq("entry_date", day)])
        return row or {
            "total_income": ZERO,
            "total_expenses": ZERO,
            "net_amount": ZERO,
            "transaction_count": 0,
        }


class PaymentsRepository(_Repository):
    """Money received from customers and sent to vendors."""

    table = PAYMENTS_TABLE

    async def list_payments(
        self,
        payment_type: PaymentType | str | None = None,
        status: PaymentRecordStatus | str | None = None,
        start_date: date | str | None = None,
        end_date: date | str | None = None,
        customer_vendor_name: str | None = None,
        columns: str = "*",
    ) -> list[dict[str, Any]]:
        """List payments, newest first."""
        filters: list[Filter] = []
        if payment_type:
            filters.append(eq("payment_type", payment_type))
        if status:
            filters.append(eq("payment_status", status))
        if customer_vendor_name:
            filters.append(eq("customer_vendor_name", customer_vendor_name))
        filters.extend(date_range("payment_date", start_date, end_date))
        return await self._db.select(
            self.table, columns=columns, filters=filters, order=[("payment_date", True)]
        )

    async def create_payment(self, data: dict[str, Any], user_id: str) -> dict[str, Any]:
        return await self._create(data, user_id)

    async def update_payment(self, payment_id: Any, data: dict[str, Any]) -> dict[str, Any]:
        return await self._update(payment_id, data)

    async def delete_payment(self, payment_id: Any) -> bool:
        return await self._delete(payment_id)


class ExpensesRepository(_Repository):
    """Business expenses by category and vendor."""

    table = EXPENSES_TABLE

    async def list_expenses(
        self,
        category: str | None = None,
        start_date: date | str | None = None,
        end_date: date | str | None = None,
        columns: str = "*",
    ) -> list[dict[str, Any]]:
        filters: list[Filter] = []
        if category:
            filters.append(eq("category", category))
        filters.extend(date_range("expense_date", start_date, end_date))
        return await self._db.select(
            self.table, columns=columns, filters=filters, order=[("expense_date", True)]
        )

    async def create_expense(self, data: dict[str, Any], user_id: str) -> dict[str, Any]:
        return await self._create(data, user_id)

    async def update_expense(self, expense_id: Any, data: dict[str, Any]) -> dict[str, Any]:
        return await self._update(expense_id, data)

    async def delete_expense(self, expense_id: Any) -> bool:
        return await self._delete(expense_id)

    async def get_expense_analysis(self) -> list[dict[str, Any]]:
        return await self._db.select(EXPENSE_ANALYSIS_VIEW)


class ChartOfAccountsRepository(_Repository):
    table = CHART_TABLE

    async def list_chart(self) -> list[dict[str, Any]]:
        """Active chart of accounts ordered by account code."""
        return await self._db.select(
            self.table, filters=[eq("is_active", True)], order=[("account_code", False)]
        )

    async def create_chart_account(self, data: dict[str, Any], user_id: str) -> dict[str, Any]:
        return await self._create(data, user_id)
