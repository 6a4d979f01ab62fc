"""Hosted database client speaking the PostgREST query dialect over HTTP."""

import asyncio
from collections.abc import Iterable, Sequence
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, NamedTuple
from uuid import UUID

import httpx
import structlog

from billbooks.config import get_settings

logger = structlog.get_logger(__name__)

# PostgREST error code for "JSON object requested, multiple (or no) rows returned"
NOT_FOUND_CODE = "PGRST116"

SINGLE_OBJECT_MEDIA_TYPE = "application/vnd.pgrst.object+json"

# Safe to resend after any transport error
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "DELETE"})
# Raised before a request reaches the server, so any method may be resent
UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


class DatastoreError(Exception):
    """Base exception for datastore errors."""

    def __init__(self, message: str, status_code: int | None = None, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details

    @property
    def code(self) -> str | None:
        """PostgREST error code, when the response carried one."""
        if isinstance(self.details, dict):
            code = self.details.get("code")
            return str(code) if code is not None else None
        return None


class NotFoundError(DatastoreError):
    """A single row was requested and none matched."""

    pass


class AuthenticationError(DatastoreError):
    """The API key was rejected."""

    pass


class RateLimitError(DatastoreError):
    """Rate limit exceeded."""

    pass


class Filter(NamedTuple):
    """A single column filter rendered as ``column=operator.value``."""

    column: str
    operator: str
    value: Any

    def to_param(self) -> tuple[str, str]:
        return self.column, f"{self.operator}.{_format_value(self.value)}"


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, "neq", value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, "gt", value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def lt(column: str, value: Any) -> Filter:
    return Filter(column, "lt", value)


def lte(column: str, value: Any) -> Filter:
    return Filter(column, "lte", value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


def is_(column: str, value: bool | None) -> Filter:
    return Filter(column, "is", value)


def _format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, set, frozenset)):
        return "(" + ",".join(_format_list_item(item) for item in value) + ")"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def _format_list_item(value: Any) -> str:
    text = _format_value(value)
    if any(ch in text for ch in ',()"'):
        escaped = text.replace('"', '\\"')
        return f'"{escaped}"'
    return text


def to_jsonable(value: Any) -> Any:
    """Convert payload values into types the JSON encoder accepts."""
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value


class DatastoreClient:
    """Async client for the hosted database's REST interface."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        schema: str | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.datastore_url).rstrip("/")
        self._api_key = api_key or settings.datastore_key.get_secret_value()
        self._schema = schema or settings.datastore_schema
        self._timeout = settings.datastore_timeout
        self._max_retries = settings.datastore_max_retries

        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.base_url}/rest/v1",
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "DatastoreClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _get_headers(self, prefer: str | None = None, single: bool = False) -> dict[str, str]:
        """Get request headers with API key and schema profile."""
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Accept-Profile": self._schema,
            "Content-Profile": self._schema,
        }
        if prefer:
            headers["Prefer"] = prefer
        if single:
            headers["Accept"] = SINGLE_OBJECT_MEDIA_TYPE
        return headers

    @staticmethod
    def _build_params(
        columns: str | None = "*",
        filters: Sequence[Filter] = (),
        order: Sequence[tuple[str, bool]] = (),
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = []
        if columns:
            params.append(("select", "".join(columns.split())))
        params.extend(f.to_param() for f in filters)
        if order:
            params.append(
                ("order", ",".join(f"{col}.{'desc' if desc else 'asc'}" for col, desc in order))
            )
        if limit is not None:
            params.append(("limit", str(limit)))
        if offset is not None:
            params.append(("offset", str(offset)))
        return params

    @staticmethod
    def _error_details(response: httpx.Response) -> Any:
        try:
            return response.json() if response.content else {}
        except Exception:
            return {"raw": response.text[:500] if response.text else "empty response"}

    async def _request(
        self,
        method: str,
        table: str,
        params: list[tuple[str, str]] | None = None,
        json: Any = None,
        prefer: str | None = None,
        single: bool = False,
        retry_count: int = 0,
    ) -> Any:
        """Make a request against a table or view.

        Reads and deletes are retried on any transport error. Writes are retried
        only when the request never reached the server.
        """
        client = await self._get_client()

        try:
            response = await client.request(
                method=method,
                url=f"/{table}",
                params=params,
                json=to_jsonable(json) if json is not None else None,
                headers=self._get_headers(prefer=prefer, single=single),
            )

            if response.status_code == 429:
                retry_after = int(response.headers.get("Retry-After", "60"))
                raise RateLimitError(
                    f"Rate limited, retry after {retry_after}s",
                    status_code=429,
                    details={"retry_after": retry_after},
                )

            if response.status_code in (401, 403):
                raise AuthenticationError(
                    "Datastore rejected the API key",
                    status_code=response.status_code,
                    details=self._error_details(response),
                )

            if response.status_code >= 400:
                details = self._error_details(response)
                if isinstance(details, dict) and details.get("code") == NOT_FOUND_CODE:
                    raise NotFoundError(
                        f"No matching row in {table}",
                        status_code=response.status_code,
                        details=details,
                    )
                raise DatastoreError(
                    f"Datastore error: {response.status_code} on {table}",
                    status_code=response.status_code,
                    details=details,
                )

            return response.json() if response.content else None

        except httpx.RequestError as e:
            retryable = method in IDEMPOTENT_METHODS or isinstance(e, UNSENT_ERRORS)
            if retryable and retry_count < self._max_retries:
                logger.warning(
                    "datastore_request_retry",
                    table=table,
                    method=method,
                    attempt=retry_count + 1,
                    error=str(e),
                )
                await asyncio.sleep(2**retry_count)  # Exponential backoff
                return await self._request(
                    method, table, params, json, prefer, single, retry_count + 1
                )
            raise DatastoreError(f"Request failed: {e}") from e

    # === Reads ===

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        order: Sequence[tuple[str, bool]] = (),
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """Select rows from a table or view."""
        params = self._build_params(columns, filters, order, limit, offset)
        result = await self._request("GET", table, params=params)
        return result if isinstance(result, list) else []

    async def select_one(
        self,
        table: str,
        columns: str = "*",
        filters: Sequence[Filter] = (),
    ) -> dict[str, Any]:
        """Select exactly one row, raising NotFoundError when none matches."""
        params = self._build_params(columns, filters)
        result = await self._request("GET", table, params=params, single=True)
        if not isinstance(result, dict) or not result:
            raise NotFoundError(f"No matching row in {table}", details={"code": NOT_FOUND_CODE})
        return result

    async def select_optional(
        self,
        table: str,
        columns: str = "*",
        filters: Sequence[Filter] = (),
    ) -> dict[str, Any] | None:
        """Select one row, returning None when none matches."""
        try:
            return await self.select_one(table, columns=columns, filters=filters)
        except NotFoundError:
            return None

    # === Writes ===

    async def insert(
        self, table: str, rows: dict[str, Any] | list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Insert one or more rows and return them as stored."""
        result = await self._request(
            "POST",
            table,
            params=[("select", "*")],
            json=rows,
            prefer="return=representation",
        )
        return result if isinstance(result, list) else []

    async def insert_one(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Insert a single row and return it."""
        rows = await self.insert(table, row)
        if not rows:
            raise DatastoreError(f"Insert into {table} returned no rows")
        return rows[0]

    async def upsert(
        self,
        table: str,
        rows: dict[str, Any] | list[dict[str, Any]],
        on_conflict: str | None = None,
    ) -> list[dict[str, Any]]:
        """Insert rows, merging into existing rows on conflict."""
        params = [("select", "*")]
        if on_conflict:
            params.append(("on_conflict", on_conflict))
        result = await self._request(
            "POST",
            table,
            params=params,
            json=rows,
            prefer="resolution=merge-duplicates,return=representation",
        )
        return result if isinstance(result, list) else []

    async def update(
        self, table: str, values: dict[str, Any], filters: Sequence[Filter]
    ) -> list[dict[str, Any]]:
        """Update matching rows and return them."""
        if not filters:
            raise ValueError(f"Refusing to update every row in {table}")
        params = self._build_params("*", filters)
        result = await self._request(
            "PATCH",
            table,
            params=params,
            json=values,
            prefer="return=representation",
        )
        return result if isinstance(result, list) else []

    async def update_one(
        self, table: str, values: dict[str, Any], filters: Sequence[Filter]
    ) -> dict[str, Any]:
        """Update a single row, raising NotFoundError when none matched."""
        rows = await self.update(table, values, filters)
        if not rows:
            raise NotFoundError(f"No matching row in {table}", details={"code": NOT_FOUND_CODE})
        return rows[0]

    async def delete(self, table: str, filters: Sequence[Filter]) -> None:
        """Delete matching rows."""
        if not filters:
            raise ValueError(f"Refusing to delete every row in {table}")
        params = self._build_params(None, filters)
        await self._request("DELETE", table, params=params)
