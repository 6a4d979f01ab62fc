"""Acting-user resolution against the identity provider and the users table."""

from typing import Any

import structlog

from billbooks.accounts import Clock, utc_now
from billbooks.clients.datastore import DatastoreClient, DatastoreError, eq
from billbooks.clients.identity import IdentityClient, IdentityError, UserProfile

logger = structlog.get_logger(__name__)

USERS_TABLE = "users"


class NotAuthenticatedError(Exception):
    """No acting user could be established."""

    def __init__(self, reason: str = ""):
        message = "User not authenticated"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class UserDirectory:
    """Keeps the users table in step with the identity provider."""

    def __init__(
        self,
        datastore: DatastoreClient,
        identity: IdentityClient | None = None,
        clock: Clock | None = None,
    ):
        self._db = datastore
        self._identity = identity
        self._clock = clock or utc_now

    async def ensure_user_exists(self, profile: UserProfile) -> dict[str, Any]:
        """Insert the user if missing, otherwise refresh their details."""
        existing = await self._db.select_optional(USERS_TABLE, filters=[eq("id", profile.id)])

        if existing is None:
            row = await self._db.insert_one(
                USERS_TABLE,
                {
                    "id": profile.id,
                    "email": profile.email,
                    "full_name": profile.full_name,
                    "avatar_url": profile.image_url,
                    "clerk_user_id": profile.id,
                },
            )
            logger.info("user_created", user_id=profile.id)
            return row

        updates = {
            "email": profile.email or existing.get("email"),
            "full_name": profile.full_name or existing.get("full_name"),
            "avatar_url": profile.image_url or existing.get("avatar_url"),
            "updated_at": self._clock().isoformat(),
        }
        try:
            return await self._db.update_one(USERS_TABLE, updates, [eq("id", profile.id)])
        except DatastoreError as e:
            # The user exists; stale profile details are not worth failing over
            logger.warning("user_update_failed", user_id=profile.id, error=str(e))
            return existing

    async def resolve_user(
        self,
        user_id: str | None = None,
        session_id: str | None = None,
        token: str | None = None,
    ) -> str:
        """Return the id of the acting user.

        An explicit user id must already exist in the users table. Otherwise
        the session is verified with the identity provider and the user is
        synchronised into the table.
        """
        if user_id:
            row = await self._db.select_optional(
                USERS_TABLE, columns="id", filters=[eq("id", user_id)]
            )
            if row is None:
                raise NotAuthenticatedError(
                    f"User {user_id} not found in database. Please ensure user is synchronized."
                )
            return user_id

        if session_id and token and self._identity is not None:
            try:
                session_user = await self._identity.verify_session(session_id, token)
                profile = await self._identity.get_user(session_user)
            except IdentityError as e:
                logger.warning("session_rejected", session_id=session_id, error=str(e))
                raise NotAuthenticatedError(str(e)) from e
            await self.ensure_user_exists(profile)
            return profile.id

        raise NotAuthenticatedError()
