"""
Capability interfaces consumed by the use cases.

Concrete adapters live in ``atproto``, ``github``, ``repository`` and ``app.context``.
Every method returns an ``Ok``/``Err`` value; implementations translate their library
exceptions before returning.
"""

from typing import List, Mapping, Optional, Protocol, Tuple

from social.atmd.account.entities import (
    AuthorizationState,
    Connection,
    InstallationInfo,
    Profile,
    TokenPair,
    User,
)
from social.atmd.account.errors import ExternalServiceError, RepositoryError
from social.atmd.account.result import Result


class IdentityProvider(Protocol):
    async def authorize(
        self, handle: str, state: str
    ) -> Result[Tuple[str, AuthorizationState], ExternalServiceError]:
        """Prepare an authorization request and return the redirect URL with its state."""
        ...

    async def callback(
        self, params: Mapping[str, str], authorization_state: AuthorizationState
    ) -> Result[str, ExternalServiceError]:
        """Exchange the callback's code and return the authenticated DID."""
        ...

    async def get_user_profile(self, did: str) -> Result[Profile, ExternalServiceError]: ...

    async def validate_session(self, did: str) -> Result[None, ExternalServiceError]:
        """Confirm the provider still honours the session for ``did``."""
        ...


class SecondaryAppProvider(Protocol):
    async def get_access_token(self, code: str) -> Result[TokenPair, ExternalServiceError]: ...

    async def refresh_access_token(
        self, refresh_token: str
    ) -> Result[TokenPair, ExternalServiceError]: ...

    async def get_installations(
        self, access_token: str
    ) -> Result[List[InstallationInfo], ExternalServiceError]: ...


class UserRepository(Protocol):
    async def create(self, did: str, profile: Profile) -> Result[User, RepositoryError]: ...

    async def find_by_did(self, did: str) -> Result[User, RepositoryError]: ...

    async def find_by_id(self, user_id: str) -> Result[User, RepositoryError]: ...

    async def update(self, user: User) -> Result[User, RepositoryError]: ...

    async def delete(self, user_id: str) -> Result[None, RepositoryError]:
        """Delete a user. Reports NOT_FOUND when no row matched."""
        ...


class ConnectionRepository(Protocol):
    async def create(
        self, user_id: str, tokens: TokenPair
    ) -> Result[Connection, RepositoryError]:
        """Create the user's connection. Reports CONSTRAINT_VIOLATION if one exists."""
        ...

    async def find_by_user_id(self, user_id: str) -> Result[Connection, RepositoryError]: ...

    async def update(self, connection: Connection) -> Result[Connection, RepositoryError]: ...

    async def delete_by_user_id(self, user_id: str) -> Result[None, RepositoryError]:
        """Delete the user's connection. Reports NOT_FOUND when no row matched."""
        ...


class AuthorizationStateStore(Protocol):
    async def save(self, state: AuthorizationState) -> Result[None, RepositoryError]: ...

    async def consume(self, state: str) -> Result[AuthorizationState, RepositoryError]:
        """Atomically read and delete. A second consume of the same state is NOT_FOUND."""
        ...


class RefreshLock(Protocol):
    async def acquire(self, name: str) -> Result[None, RepositoryError]:
        """Wait until no other holder has ``name``, then take it."""
        ...

    async def release(self, name: str) -> None: ...


class SessionContext(Protocol):
    """Cookie-style transport for one request/response pair."""

    def get_cookie(self, name: str) -> Optional[str]: ...

    def set_cookie(self, name: str, value: str, max_age: int) -> None: ...

    def delete_cookie(self, name: str) -> None: ...
