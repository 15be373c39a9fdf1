"""
Completion of an AT Protocol login.

A callback moves through these steps, stopping at the first failure:

1. received: ``code`` and ``state`` present, ``state`` matches the browser's state cookie
   and consumes a live AuthorizationState
2. identity resolved: the identity provider exchanged the code for a DID
3. user matched or created: the local user for the DID, created on first login
4. session issued: a session credential for the DID is attached to the response

Creation relies on the unique index on ``users.did`` instead of a prior existence check,
so two callbacks for the same new DID racing each other end with one user, both
sessions pointing at it.
"""

import logging
import secrets
from typing import Mapping

from social.atmd.account.entities import SessionData, User
from social.atmd.account.errors import (
    AccountError,
    CallbackFailed,
    RepositoryErrorCode,
    SessionCreationFailed,
    ValidationError,
)
from social.atmd.account.ports import (
    AuthorizationStateStore,
    IdentityProvider,
    SessionContext,
    UserRepository,
)
from social.atmd.account.result import Err, Ok, Result
from social.atmd.account.services.authorization import STATE_COOKIE_NAME
from social.atmd.account.session import SessionManager

logger = logging.getLogger(__name__)


class CallbackReconciler:
    def __init__(
        self,
        identity_provider: IdentityProvider,
        user_repository: UserRepository,
        state_store: AuthorizationStateStore,
        session_manager: SessionManager,
    ) -> None:
        self.identity_provider = identity_provider
        self.user_repository = user_repository
        self.state_store = state_store
        self.session_manager = session_manager

    async def handle_callback(
        self, params: Mapping[str, str], context: SessionContext
    ) -> Result[SessionData, AccountError]:
        bound_state = context.get_cookie(STATE_COOKIE_NAME)
        context.delete_cookie(STATE_COOKIE_NAME)

        error = params.get("error", None)
        if error:
            denied_state = params.get("state", None)
            if (
                denied_state
                and bound_state is not None
                and secrets.compare_digest(bound_state, denied_state)
            ):
                # Nothing can complete this authorization any more.
                discard_result = await self.state_store.consume(denied_state)
                if isinstance(discard_result, Err):
                    logger.info("%s %s", CallbackFailed.code, discard_result.error)
            return Err(
                CallbackFailed(
                    "authorization was not granted",
                    ValidationError("error", params.get("error_description", None) or error),
                )
            )

        code = params.get("code", None)
        state = params.get("state", None)
        if not code or not state:
            return Err(
                CallbackFailed(
                    "incomplete callback",
                    ValidationError("code" if not code else "state", "is required"),
                )
            )

        if bound_state is None or not secrets.compare_digest(bound_state, state):
            return Err(
                CallbackFailed(
                    "state does not belong to this browser",
                    ValidationError("state", "does not match"),
                )
            )

        consume_result = await self.state_store.consume(state)
        if isinstance(consume_result, Err):
            logger.info("%s %s", CallbackFailed.code, consume_result.error)
            return Err(CallbackFailed("authorization state rejected", consume_result.error))

        callback_result = await self.identity_provider.callback(
            params, consume_result.value
        )
        if isinstance(callback_result, Err):
            logger.info("%s %s", CallbackFailed.code, callback_result.error)
            return Err(
                CallbackFailed("unable to complete authorization", callback_result.error)
            )
        did = callback_result.value

        user_result = await self._find_or_create_user(did)
        if isinstance(user_result, Err):
            return Err(user_result.error)
        user = user_result.value

        session_result = await self.session_manager.set(
            context, SessionData(did=did, user_id=user.id)
        )
        if isinstance(session_result, Err):
            logger.error("%s %s", SessionCreationFailed.code, session_result.error)
            return Err(
                SessionCreationFailed("unable to issue session", session_result.error)
            )
        return Ok(session_result.value)

    async def _find_or_create_user(self, did: str) -> Result[User, AccountError]:
        found = await self.user_repository.find_by_did(did)
        if isinstance(found, Ok):
            return found
        if found.error.code != RepositoryErrorCode.NOT_FOUND:
            logger.error("%s %s", SessionCreationFailed.code, found.error)
            return Err(SessionCreationFailed("unable to look up user", found.error))

        profile_result = await self.identity_provider.get_user_profile(did)
        if isinstance(profile_result, Err):
            logger.info("%s %s", CallbackFailed.code, profile_result.error)
            return Err(CallbackFailed("unable to fetch profile", profile_result.error))

        created = await self.user_repository.create(did, profile_result.value)
        if isinstance(created, Ok):
            logger.info("created user %s for %s", created.value.id, did)
            return created
        if created.error.code != RepositoryErrorCode.CONSTRAINT_VIOLATION:
            logger.error("%s %s", SessionCreationFailed.code, created.error)
            return Err(SessionCreationFailed("unable to create user", created.error))

        # A concurrent callback created the user first.
        refetched = await self.user_repository.find_by_did(did)
        if isinstance(refetched, Err):
            logger.error("%s %s", SessionCreationFailed.code, refetched.error)
            return Err(SessionCreationFailed("unable to look up user", refetched.error))
        return refetched
