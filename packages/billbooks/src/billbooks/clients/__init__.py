"""HTTP clients for the hosted database and identity provider."""

from billbooks.clients.datastore import (
    AuthenticationError,
    DatastoreClient,
    DatastoreError,
    Filter,
    NotFoundError,
    RateLimitError,
)
from billbooks.clients.identity import (
    IdentityClient,
    IdentityError,
    SessionError,
    UserProfile,
)

__all__ = [
    # Datastore
    "DatastoreClient",
    "DatastoreError",
    "NotFoundError",
    "AuthenticationError",
    "RateLimitError",
    "Filter",
    # Identity
    "IdentityClient",
    "IdentityError",
    "SessionError",
    "UserProfile",
]
