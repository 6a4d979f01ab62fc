"""Data access for invoices and their line items."""

from collections.abc import Iterable
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

import structlog

from billbooks.accounts import Clock, utc_now
from billbooks.clients.datastore import DatastoreClient, Filter, eq, gte, in_
from billbooks.models import OPEN_STATUSES, InvoiceItem, PaymentStatus

logger = structlog.get_logger(__name__)

INVOICES_TABLE = "invoices"
INVOICE_ITEMS_TABLE = "invoice_items"

WITH_CUSTOMER = "*, customers (id, name, phone, email, address)"
WITH_CUSTOMER_AND_ITEMS = (
    "*, customers (id, name, phone, email, address), "
    "invoice_items (id, product_id, description, quantity, unit_price, "
    "discount_percent, tax_percent)"
)
SUMMARY_COLUMNS = "id, invoice_number, payment_status, total_amount, amount_paid, invoice_date"


class InvoicesRepository:
    """Invoices with their embedded customer."""

    def __init__(self, datastore: DatastoreClient, clock: Clock | None = None):
        self._db = datastore
        self._clock = clock or utc_now

    async def get_invoice(self, invoice_id: Any) -> dict[str, Any]:
        """Get an invoice with its customer; raises NotFoundError."""
        return await self._db.select_one(
            INVOICES_TABLE, columns=WITH_CUSTOMER, filters=[eq("id", invoice_id)]
        )

    async def create_invoice(
        self, data: dict[str, Any], items: Iterable[InvoiceItem]
    ) -> dict[str, Any]:
        """Insert an invoice, then its line items."""
        invoice = await self._db.insert_one(INVOICES_TABLE, data)
        rows = [item.to_row(invoice["id"]) for item in items]
        if rows:
            await self._db.insert(INVOICE_ITEMS_TABLE, rows)
        logger.info(
            "invoice_created",
            invoice_id=invoice["id"],
            invoice_number=invoice.get("invoice_number"),
            items=len(rows),
        )
        return invoice

    async def update_invoice(
        self,
        invoice_id: Any,
        data: dict[str, Any],
        items: Iterable[InvoiceItem] | None = None,
    ) -> dict[str, Any]:
        """Update the invoice header; replace its line items when given."""
        invoice = await self._db.update_one(
            INVOICES_TABLE,
            {**data, "updated_at": self._clock().isoformat()},
            [eq("id", invoice_id)],
        )
        replaced = None
        if items is not None:
            rows = [item.to_row(invoice_id) for item in items]
            await self._db.delete(INVOICE_ITEMS_TABLE, [eq("invoice_id", invoice_id)])
            if rows:
                await self._db.insert(INVOICE_ITEMS_TABLE, rows)
            replaced = len(rows)
        logger.info("invoice_updated", invoice_id=invoice_id, items=replaced)
        return invoice

    async def delete_invoice(self, invoice_id: Any) -> bool:
        """Delete an invoice and its line items; raises NotFoundError if missing."""
        await self._db.select_one(INVOICES_TABLE, columns="id", filters=[eq("id", invoice_id)])
        await self._db.delete(INVOICE_ITEMS_TABLE, [eq("invoice_id", invoice_id)])
        await self._db.delete(INVOICES_TABLE, [eq("id", invoice_id)])
        logger.info("invoice_deleted", invoice_id=invoice_id)
        return True

    async def update_payment_state(
        self,
        invoice_id: Any,
        amount_paid: Decimal,
        payment_status: PaymentStatus,
        payment_method: str | None,
    ) -> dict[str, Any]:
        return await self._db.update_one(
            INVOICES_TABLE,
            {
                "payment_status": payment_status,
                "payment_method": payment_method,
                "amount_paid": amount_paid,
                "updated_at": self._clock().isoformat(),
            },
            [eq("id", invoice_id)],
        )

    async def list_for_customer(self, customer_id: Any) -> list[dict[str, Any]]:
        """All invoices of a customer, newest first."""
        return await self._db.select(
            INVOICES_TABLE,
            columns="*, customers (name, phone, email)",
            filters=[eq("customer_id", customer_id)],
            order=[("invoice_date", True)],
        )

    async def list_by_status(
        self,
        statuses: Iterable[PaymentStatus] | None = None,
        since: date | None = None,
        columns: str = SUMMARY_COLUMNS,
    ) -> list[dict[str, Any]]:
        """Invoice rows for summaries, optionally limited by status and start date."""
        filters: list[Filter] = []
        if statuses is not None:
            filters.append(in_("payment_status", list(statuses)))
        if since is not None:
            filters.append(gte("invoice_date", since))
        return await self._db.select(INVOICES_TABLE, columns=columns, filters=filters)

    async def list_pending(self, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        """Pending and partial invoices across all customers, newest first."""
        return await self._db.select(
            INVOICES_TABLE,
            columns="*, customers (id, name, phone, email)",
            filters=[in_("payment_status", OPEN_STATUSES)],
            order=[("invoice_date", True)],
            limit=limit,
            offset=offset,
        )

    async def list_customer_pending(self, customer_id: Any) -> list[dict[str, Any]]:
        return await self._db.select(
            INVOICES_TABLE,
            columns=WITH_CUSTOMER,
            filters=[in_("payment_status", OPEN_STATUSES), eq("customer_id", customer_id)],
            order=[("invoice_date", True)],
        )

    async def get_pending_details(self, invoice_id: Any) -> dict[str, Any]:
        """An open invoice with customer and items; raises NotFoundError otherwise."""
        return await self._db.select_one(
            INVOICES_TABLE,
            columns=WITH_CUSTOMER_AND_ITEMS,
            filters=[eq("id", invoice_id), in_("payment_status", OPEN_STATUSES)],
        )

    async def list_recently_paid(
        self, days: int = 30, limit: int = 5, now: datetime | None = None
    ) -> list[dict[str, Any]]:
        since = (now or self._clock()) - timedelta(days=days)
        return await self._db.select(
            INVOICES_TABLE,
            columns="*, customers (id, name)",
            filters=[eq("payment_status", PaymentStatus.PAID), gte("updated_at", since)],
            order=[("updated_at", True)],
            limit=limit,
        )
