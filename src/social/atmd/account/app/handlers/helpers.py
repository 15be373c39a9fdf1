import json
import logging
from typing import Dict, Tuple, Type
from urllib.parse import urlencode

from aiohttp import web

from social.atmd.account.app.config import (
    AccountManagerAppKey,
    SessionManagerAppKey,
    SessionValidatorAppKey,
    SettingsAppKey,
)
from social.atmd.account.app.context import RequestContext
from social.atmd.account.entities import User
from social.atmd.account.errors import (
    AccountError,
    GitHubConnectionNotFound,
    GitHubInstallationsFailed,
    GitHubRefreshFailed,
    RepositoryError,
    RepositoryErrorCode,
    SessionNotFound,
    SessionValidationFailed,
    UserNotFound,
)
from social.atmd.account.result import Err

logger = logging.getLogger(__name__)

ERROR_RESPONSES: Dict[Type[AccountError], Type[web.HTTPException]] = {
    SessionNotFound: web.HTTPUnauthorized,
    SessionValidationFailed: web.HTTPUnauthorized,
    UserNotFound: web.HTTPNotFound,
    GitHubConnectionNotFound: web.HTTPNotFound,
    GitHubRefreshFailed: web.HTTPConflict,
    GitHubInstallationsFailed: web.HTTPBadGateway,
}


def request_context(request: web.Request) -> RequestContext:
    settings = request.app[SettingsAppKey]
    return RequestContext(request, secure=not settings.debug)


def error_response(context: RequestContext, error: AccountError) -> web.HTTPException:
    """JSON error carrying the stable error code, never the underlying cause. Raise it."""
    response_class = ERROR_RESPONSES.get(type(error), web.HTTPInternalServerError)
    if response_class is web.HTTPInternalServerError:
        logger.error("%s %s", error.code, error.cause)
    response = response_class(
        text=json.dumps({"error": error.code, "message": error.message}),
        content_type="application/json",
    )
    context.apply(response)
    return response


def redirect(context: RequestContext, location: str) -> web.HTTPFound:
    """Build a redirect carrying the context's cookie changes, ready to be raised."""
    response = web.HTTPFound(location)
    context.apply(response)
    return response


def login_redirect(context: RequestContext, error: AccountError) -> web.HTTPFound:
    """Send the browser back to the login entry point with a generic error code."""
    settings = context.request.app[SettingsAppKey]
    return redirect(context, f"{settings.login_path}?{urlencode({'error': error.code})}")


async def authenticated_user(request: web.Request) -> Tuple[User, RequestContext]:
    """
    Validate the request's session and load its user.

    Raises an HTTP 401 when there is no usable session. When the identity provider no
    longer honours the session, or its user no longer exists, the session cookie is
    removed in the same response.
    """
    context = request_context(request)
    validation_result = await request.app[SessionValidatorAppKey].validate(context)
    if isinstance(validation_result, Err):
        if isinstance(validation_result.error, SessionValidationFailed):
            await request.app[SessionManagerAppKey].remove(context)
        raise error_response(context, validation_result.error)
    session_data = validation_result.value

    account_manager = request.app[AccountManagerAppKey]
    if session_data.user_id is not None:
        user_result = await account_manager.get_user_by_id(session_data.user_id)
    else:
        user_result = await account_manager.get_user_by_did(session_data.did)
    if isinstance(user_result, Err):
        cause = user_result.error.cause
        if (
            isinstance(cause, RepositoryError)
            and cause.code == RepositoryErrorCode.NOT_FOUND
        ):
            # The account was deleted while this credential was outstanding.
            await request.app[SessionManagerAppKey].remove(context)
            raise error_response(
                context, SessionNotFound("session names a deleted user", cause)
            )
        raise error_response(context, user_result.error)

    user = user_result.value
    if user.did != session_data.did:
        logger.warning("session for %s names user %s", session_data.did, user.id)
        await request.app[SessionManagerAppKey].remove(context)
        raise error_response(
            context, SessionNotFound("session does not match its user")
        )
    return user, context


def user_payload(user: User) -> Dict[str, object]:
    return {
        "id": user.id,
        "did": user.did,
        "profile": user.profile.model_dump(),
        "created_at": user.created_at.isoformat(),
        "updated_at": user.updated_at.isoformat(),
    }
