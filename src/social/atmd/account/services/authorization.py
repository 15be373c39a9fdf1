import logging
import secrets

from social.atmd.account.errors import AuthorizationFailed, ValidationError
from social.atmd.account.ports import (
    AuthorizationStateStore,
    IdentityProvider,
    SessionContext,
)
from social.atmd.account.result import Err, Ok, Result

logger = logging.getLogger(__name__)

STATE_COOKIE_NAME = "oauth_state"


class AuthorizationInitiator:
    """
    Starts an AT Protocol login.

    The state value handed to the authorization server is recorded twice: the full
    AuthorizationState in the state store, and the bare value in a short-lived cookie on
    the browser that started the login. A callback has to present both.
    """

    def __init__(
        self,
        identity_provider: IdentityProvider,
        state_store: AuthorizationStateStore,
        state_ttl: int = 600,
    ) -> None:
        self.identity_provider = identity_provider
        self.state_store = state_store
        self.state_ttl = state_ttl

    async def start_authorization(
        self, handle: str, context: SessionContext
    ) -> Result[str, AuthorizationFailed]:
        handle = handle.strip().removeprefix("at://").removeprefix("@")
        if not handle:
            return Err(
                AuthorizationFailed(
                    "a handle is required",
                    ValidationError("handle", "must not be empty"),
                )
            )

        state = secrets.token_urlsafe(32)

        authorize_result = await self.identity_provider.authorize(handle, state)
        if isinstance(authorize_result, Err):
            logger.info(
                "%s authorization for %s failed: %s",
                AuthorizationFailed.code,
                handle,
                authorize_result.error,
            )
            return Err(
                AuthorizationFailed(
                    "unable to start authorization", authorize_result.error
                )
            )
        redirect_url, authorization_state = authorize_result.value

        save_result = await self.state_store.save(authorization_state)
        if isinstance(save_result, Err):
            logger.error(
                "%s unable to record authorization state: %s",
                AuthorizationFailed.code,
                save_result.error,
            )
            return Err(
                AuthorizationFailed("unable to record authorization", save_result.error)
            )

        context.set_cookie(STATE_COOKIE_NAME, state, self.state_ttl)
        return Ok(redirect_url)
