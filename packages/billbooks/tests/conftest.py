"""Pytest configuration and fixtures."""

import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("DATASTORE_KEY", "test-service-key")
os.environ.setdefault("IDENTITY_SECRET_KEY", "sk_test_identity")

from billbooks.clients.datastore import (  # noqa: E402
    NOT_FOUND_CODE,
    Filter,
    NotFoundError,
    _format_value,
    to_jsonable,
)

FIXED_NOW = datetime(2024, 1, 15, 10, 30, 0, tzinfo=UTC)

# Embedded resources the fake resolves for select: table -> {embed name: (fk column, table)}
EMBEDS = {
    "invoices": {"customers": ("customer_id", "customers")},
}


def _matches(row: dict[str, Any], flt: Filter) -> bool:
    actual = row.get(flt.column)
    if flt.operator == "is":
        return actual is flt.value if flt.value is None else actual == flt.value
    if actual is None:
        return False
    text = _format_value(actual)
    if flt.operator == "in":
        return text in {_format_value(item) for item in flt.value}
    expected = _format_value(flt.value)
    if flt.operator == "eq":
        return text == expected
    if flt.operator == "neq":
        return text != expected
    if flt.operator == "gte":
        return text >= expected
    if flt.operator == "lte":
        return text <= expected
    if flt.operator == "gt":
        return text > expected
    if flt.operator == "lt":
        return text < expected
    raise ValueError(f"Unsupported operator {flt.operator}")


@dataclass
class FakeDatastore:
    """In-memory stand-in for DatastoreClient with the same call surface.

    Rows are stored JSON-encoded the way the REST interface returns them, so
    amounts come back as strings.
    """

    tables: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    fail_on: dict[tuple[str, str], Exception] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)
    _next_id: int = 1

    def seed(self, table: str, *rows: dict[str, Any]) -> None:
        for row in rows:
            stored = to_jsonable(dict(row))
            stored.setdefault("id", self._new_id())
            self.tables.setdefault(table, []).append(stored)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.get(table, [])

    def _new_id(self) -> int:
        row_id = self._next_id
        self._next_id += 1
        return row_id

    def _record(self, operation: str, table: str) -> None:
        self.calls.append((operation, table))
        error = self.fail_on.get((operation, table))
        if error is not None:
            raise error

    def _embed(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        result = dict(row)
        for name, (fk, other) in EMBEDS.get(table, {}).items():
            target = next(
                (r for r in self.rows(other) if r.get("id") == row.get(fk)),
                None,
            )
            result[name] = dict(target) if target else None
        return result

    def _filtered(self, table: str, filters: Any) -> list[dict[str, Any]]:
        return [row for row in self.rows(table) if all(_matches(row, f) for f in filters)]

    async def select(
        self,
        table: str,
        columns: str = "*",  # noqa: ARG002
        filters: Any = (),
        order: Any = (),
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        self._record("select", table)
        rows = [self._embed(table, row) for row in self._filtered(table, filters)]
        for column, desc in reversed(list(order)):
            rows.sort(key=lambda r: str(r.get(column) or ""), reverse=desc)
        if offset:
            rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def select_one(
        self, table: str, columns: str = "*", filters: Any = ()
    ) -> dict[str, Any]:
        rows = await self.select(table, columns=columns, filters=filters)
        if len(rows) != 1:
            raise NotFoundError(
                f"No matching row in {table}", status_code=406, details={"code": NOT_FOUND_CODE}
            )
        return rows[0]

    async def select_optional(
        self, table: str, columns: str = "*", filters: Any = ()
    ) -> dict[str, Any] | None:
        try:
            return await self.select_one(table, columns=columns, filters=filters)
        except NotFoundError:
            return None

    async def insert(self, table: str, rows: Any) -> list[dict[str, Any]]:
        self._record("insert", table)
        batch = rows if isinstance(rows, list) else [rows]
        stored = []
        for row in batch:
            data = to_jsonable(dict(row))
            data.setdefault("id", self._new_id())
            self.tables.setdefault(table, []).append(data)
            stored.append(dict(data))
        return stored

    async def insert_one(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        return (await self.insert(table, row))[0]

    async def update(
        self, table: str, values: dict[str, Any], filters: Any
    ) -> list[dict[str, Any]]:
        self._record("update", table)
        updated = []
        for row in self._filtered(table, filters):
            row.update(to_jsonable(values))
            updated.append(dict(row))
        return updated

    async def update_one(
        self, table: str, values: dict[str, Any], filters: Any
    ) -> dict[str, Any]:
        rows = await self.update(table, values, filters)
        if not rows:
            raise NotFoundError(f"No matching row in {table}", details={"code": NOT_FOUND_CODE})
        return rows[0]

    async def delete(self, table: str, filters: Any) -> None:
        self._record("delete", table)
        doomed = self._filtered(table, filters)
        self.tables[table] = [row for row in self.rows(table) if row not in doomed]


@pytest.fixture
def fixed_clock():
    """Clock pinned to 2024-01-15 10:30 UTC."""
    return lambda: FIXED_NOW


@pytest.fixture
def datastore():
    """Empty in-memory datastore."""
    return FakeDatastore()


@pytest.fixture
def customer_row():
    """Customer row embedded in invoice reads."""
    return {"id": 7, "name": "Asha Traders", "phone": "9876543210", "email": "asha@example.com"}


@pytest.fixture
def invoice_row():
    """Invoice row worth 1000 with nothing paid."""
    return {
        "id": 100,
        "invoice_number": "INV-482913",
        "customer_id": 7,
        "invoice_date": "2024-01-10",
        "total_amount": "1000.00",
        "amount_paid": "0.00",
        "payment_status": "pending",
        "payment_method": None,
    }


@pytest.fixture
def seeded_datastore(datastore, customer_row, invoice_row):
    """Datastore holding one customer, one pending invoice and a known user."""
    datastore.seed("customers", customer_row)
    datastore.seed("invoices", invoice_row)
    datastore.seed("users", {"id": "user_123", "email": "owner@example.com"})
    return datastore


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx AsyncClient."""
    client = AsyncMock()
    client.request = AsyncMock()
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def identity_user_response():
    """Identity provider user payload."""
    return {
        "id": "user_123",
        "first_name": "Priya",
        "last_name": "Sharma",
        "image_url": "https://img.example.com/priya.png",
        "primary_email_address_id": "idn_2",
        "email_addresses": [
            {"id": "idn_1", "email_address": "old@example.com"},
            {"id": "idn_2", "email_address": "priya@example.com"},
        ],
    }
