"""
GitHub App connection lifecycle.

A user has at most one connection. ``connect`` never replaces an existing one; the user
has to disconnect first. Access tokens are refreshed lazily: when GitHub rejects the
stored token and a refresh token is available, the pair is rotated, persisted, and the
request retried once. Rotation holds a per-user refresh lock; a request that waited on
the lock picks up the pair the holder stored instead of spending the old refresh token.
"""

import logging
import secrets
from typing import List
from urllib.parse import urlencode

from social.atmd.account.entities import Connection, InstallationInfo
from social.atmd.account.errors import (
    AccountError,
    ExternalServiceErrorCode,
    GitHubConnectionFailed,
    GitHubConnectionNotFound,
    GitHubDisconnectionFailed,
    GitHubInstallationsFailed,
    GitHubRefreshFailed,
    RepositoryErrorCode,
    ValidationError,
)
from social.atmd.account.ports import (
    ConnectionRepository,
    RefreshLock,
    SecondaryAppProvider,
    SessionContext,
)
from social.atmd.account.result import Err, Ok, Result

logger = logging.getLogger(__name__)

GITHUB_STATE_COOKIE_NAME = "github_state"


class ConnectionManager:
    def __init__(
        self,
        app_provider: SecondaryAppProvider,
        connection_repository: ConnectionRepository,
        refresh_lock: RefreshLock,
        client_id: str,
        app_name: str,
        state_ttl: int = 600,
    ) -> None:
        self.app_provider = app_provider
        self.connection_repository = connection_repository
        self.refresh_lock = refresh_lock
        self.client_id = client_id
        self.app_name = app_name
        self.state_ttl = state_ttl

    async def connect(self, user_id: str, code: str) -> Result[Connection, AccountError]:
        """Exchange an OAuth code and store the resulting tokens for the user."""
        token_result = await self.app_provider.get_access_token(code)
        if isinstance(token_result, Err):
            logger.info("%s %s", GitHubConnectionFailed.code, token_result.error)
            return Err(
                GitHubConnectionFailed("unable to exchange code", token_result.error)
            )

        create_result = await self.connection_repository.create(
            user_id, token_result.value
        )
        if isinstance(create_result, Err):
            logger.info("%s %s", GitHubConnectionFailed.code, create_result.error)
            return Err(
                GitHubConnectionFailed("unable to store connection", create_result.error)
            )
        return create_result

    async def disconnect(self, user_id: str) -> Result[None, AccountError]:
        """Remove the user's connection. Disconnecting twice is not an error."""
        delete_result = await self.connection_repository.delete_by_user_id(user_id)
        if isinstance(delete_result, Err):
            if delete_result.error.code == RepositoryErrorCode.NOT_FOUND:
                return Ok(None)
            logger.error("%s %s", GitHubDisconnectionFailed.code, delete_result.error)
            return Err(
                GitHubDisconnectionFailed(
                    "unable to remove connection", delete_result.error
                )
            )
        return delete_result

    async def get_connection(self, user_id: str) -> Result[Connection, AccountError]:
        find_result = await self.connection_repository.find_by_user_id(user_id)
        if isinstance(find_result, Err):
            if find_result.error.code == RepositoryErrorCode.NOT_FOUND:
                return Err(GitHubConnectionNotFound("no connection", find_result.error))
            return Err(
                GitHubConnectionFailed("unable to load connection", find_result.error)
            )
        return find_result

    def _bind_state(self, context: SessionContext) -> str:
        state = secrets.token_urlsafe(32)
        context.set_cookie(GITHUB_STATE_COOKIE_NAME, state, self.state_ttl)
        return state

    def start_installation(self, context: SessionContext) -> Result[str, AccountError]:
        """Return the URL that installs the GitHub App and then authorizes it."""
        state = self._bind_state(context)
        query = urlencode({"state": state})
        return Ok(f"https://github.com/apps/{self.app_name}/installations/new?{query}")

    def start_authorization(self, context: SessionContext) -> Result[str, AccountError]:
        """Return the URL that authorizes an already installed GitHub App."""
        state = self._bind_state(context)
        query = urlencode({"client_id": self.client_id, "state": state})
        return Ok(f"https://github.com/login/oauth/authorize?{query}")

    def verify_state(
        self, context: SessionContext, state: str
    ) -> Result[None, AccountError]:
        """Check a GitHub callback's state against the browser. Each state is used once."""
        bound_state = context.get_cookie(GITHUB_STATE_COOKIE_NAME)
        context.delete_cookie(GITHUB_STATE_COOKIE_NAME)
        if not bound_state or not state or not secrets.compare_digest(bound_state, state):
            return Err(
                GitHubConnectionFailed(
                    "state does not belong to this browser",
                    ValidationError("state", "does not match"),
                )
            )
        return Ok(None)

    async def refresh_connection(self, user_id: str) -> Result[Connection, AccountError]:
        connection_result = await self.get_connection(user_id)
        if isinstance(connection_result, Err):
            return connection_result
        return await self._refresh(connection_result.value)

    async def _refresh(self, connection: Connection) -> Result[Connection, AccountError]:
        lock_name = f"github:{connection.user_id}"
        lock_result = await self.refresh_lock.acquire(lock_name)
        if isinstance(lock_result, Err):
            logger.error("%s %s", GitHubRefreshFailed.code, lock_result.error)
            return Err(GitHubRefreshFailed("unable to lock connection", lock_result.error))
        try:
            current_result = await self.get_connection(connection.user_id)
            if isinstance(current_result, Err):
                return current_result
            current = current_result.value
            # Rotated by another request while this one waited.
            if current.access_token != connection.access_token:
                return Ok(current)
            return await self._rotate(current)
        finally:
            await self.refresh_lock.release(lock_name)

    async def _rotate(self, connection: Connection) -> Result[Connection, AccountError]:
        if not connection.refresh_token:
            return Err(
                GitHubRefreshFailed(
                    "connection cannot be refreshed",
                    ValidationError("refresh_token", "no refresh token stored"),
                )
            )

        token_result = await self.app_provider.refresh_access_token(
            connection.refresh_token
        )
        if isinstance(token_result, Err):
            logger.info("%s %s", GitHubRefreshFailed.code, token_result.error)
            return Err(GitHubRefreshFailed("unable to refresh tokens", token_result.error))
        tokens = token_result.value

        update_result = await self.connection_repository.update(
            connection.model_copy(
                update={
                    "access_token": tokens.access_token,
                    "refresh_token": tokens.refresh_token or connection.refresh_token,
                }
            )
        )
        if isinstance(update_result, Err):
            logger.error("%s %s", GitHubRefreshFailed.code, update_result.error)
            return Err(
                GitHubRefreshFailed("unable to store refreshed tokens", update_result.error)
            )
        return update_result

    async def list_installations(
        self, user_id: str
    ) -> Result[List[InstallationInfo], AccountError]:
        connection_result = await self.get_connection(user_id)
        if isinstance(connection_result, Err):
            return Err(connection_result.error)
        connection = connection_result.value

        installations_result = await self.app_provider.get_installations(
            connection.access_token
        )
        if (
            isinstance(installations_result, Err)
            and installations_result.error.code
            == ExternalServiceErrorCode.AUTHENTICATION_FAILED
            and connection.refresh_token
        ):
            refresh_result = await self._refresh(connection)
            if isinstance(refresh_result, Err):
                return Err(refresh_result.error)
            installations_result = await self.app_provider.get_installations(
                refresh_result.value.access_token
            )

        if isinstance(installations_result, Err):
            logger.info(
                "%s %s", GitHubInstallationsFailed.code, installations_result.error
            )
            return Err(
                GitHubInstallationsFailed(
                    "unable to list installations", installations_result.error
                )
            )
        return installations_result
