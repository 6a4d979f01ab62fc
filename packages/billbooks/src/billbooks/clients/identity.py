"""Identity provider client for session verification and user lookup."""

from dataclasses import dataclass
from typing import Any, cast

import httpx
import structlog

from billbooks.config import get_settings

logger = structlog.get_logger(__name__)


class IdentityError(Exception):
    """Base exception for identity provider errors."""

    def __init__(self, message: str, status_code: int | None = None, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class SessionError(IdentityError):
    """Session is missing, expired or does not match the token."""

    pass


@dataclass(frozen=True)
class UserProfile:
    """The subset of an identity provider user that the books care about."""

    id: str
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    image_url: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "UserProfile":
        """Build a profile from the provider's user payload."""
        email = ""
        addresses = data.get("email_addresses") or []
        primary_id = data.get("primary_email_address_id")
        for address in addresses:
            if primary_id is None or address.get("id") == primary_id:
                email = address.get("email_address", "")
                break
        if not email and addresses:
            email = addresses[0].get("email_address", "")
        return cls(
            id=str(data["id"]),
            email=email or data.get("email", ""),
            first_name=data.get("first_name") or "",
            last_name=data.get("last_name") or "",
            image_url=data.get("image_url"),
        )


class IdentityClient:
    """Async client for the identity provider's backend API."""

    def __init__(self, base_url: str | None = None, secret_key: str | None = None):
        settings = get_settings()
        self.base_url = (base_url or settings.identity_api_url).rstrip("/")
        self._secret_key = secret_key or settings.identity_secret_key.get_secret_value()
        self._timeout = settings.identity_timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "IdentityClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self, method: str, path: str, json: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.request(
                method=method, url=path, json=json, headers=self._get_headers()
            )
        except httpx.RequestError as e:
            raise IdentityError(f"Request failed: {e}") from e

        if response.status_code in (401, 403):
            raise SessionError(
                "Identity provider rejected the request",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            try:
                details = response.json() if response.content else {}
            except Exception:
                details = {"raw": response.text[:500] if response.text else "empty response"}
            raise IdentityError(
                f"Identity API error: {response.status_code}",
                status_code=response.status_code,
                details=details,
            )

        data = response.json() if response.content else {}
        if not isinstance(data, dict):
            raise IdentityError("Invalid identity response format")
        return cast(dict[str, Any], data)

    async def get_user(self, user_id: str) -> UserProfile:
        """Fetch a user from the identity provider."""
        data = await self._request("GET", f"/v1/users/{user_id}")
        return UserProfile.from_api(data)

    async def verify_session(self, session_id: str, token: str) -> str:
        """Verify a session token and return the id of the user it belongs to."""
        data = await self._request(
            "POST", f"/v1/sessions/{session_id}/verify", json={"token": token}
        )
        if data.get("status") not in (None, "active"):
            raise SessionError(f"Session {session_id} is {data.get('status')}")
        user_id = data.get("user_id")
        if not user_id:
            raise SessionError(f"Session {session_id} has no user")
        logger.debug("session_verified", session_id=session_id, user_id=user_id)
        return str(user_id)
