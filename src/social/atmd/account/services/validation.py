import logging

from social.atmd.account.entities import SessionData
from social.atmd.account.errors import (
    AccountError,
    SessionNotFound,
    SessionValidationFailed,
)
from social.atmd.account.ports import IdentityProvider, SessionContext
from social.atmd.account.result import Err, Result
from social.atmd.account.session import SessionManager

logger = logging.getLogger(__name__)


class SessionValidator:
    """
    Validates the session attached to a request in two phases.

    The credential is checked locally first (signature and expiry, no network). Only a
    credential that passes is checked with the identity provider, which is the authority
    on whether the user is still signed in. A ``SessionValidationFailed`` result means the
    caller must remove the session.
    """

    def __init__(
        self, session_manager: SessionManager, identity_provider: IdentityProvider
    ) -> None:
        self.session_manager = session_manager
        self.identity_provider = identity_provider

    async def validate(self, context: SessionContext) -> Result[SessionData, AccountError]:
        session_result = await self.session_manager.get(context)
        if isinstance(session_result, Err):
            logger.debug("%s %s", SessionNotFound.code, session_result.error)
            return Err(SessionNotFound("no valid session", session_result.error))

        session_data = session_result.value
        provider_result = await self.identity_provider.validate_session(session_data.did)
        if isinstance(provider_result, Err):
            logger.info(
                "%s session for %s rejected: %s",
                SessionValidationFailed.code,
                session_data.did,
                provider_result.error,
            )
            return Err(
                SessionValidationFailed(
                    "identity provider rejected session", provider_result.error
                )
            )
        return session_result
