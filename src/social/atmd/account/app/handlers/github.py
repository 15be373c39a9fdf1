"""
GitHub App connection endpoints.

``GET /auth/github`` sends a signed-in user to install the GitHub App (or, with
``?mode=authorize``, to authorize an App that is already installed). GitHub redirects to
``GET /auth/github/callback`` with a code, which is exchanged and stored as the user's
connection.
"""

import logging

from aiohttp import web

from social.atmd.account.app.config import ConnectionManagerAppKey, SettingsAppKey
from social.atmd.account.app.handlers.helpers import (
    authenticated_user,
    error_response,
    login_redirect,
    redirect,
)
from social.atmd.account.errors import GitHubConnectionFailed, ValidationError
from social.atmd.account.result import Err

logger = logging.getLogger(__name__)


async def handle_github_start(request: web.Request):
    _, context = await authenticated_user(request)
    connection_manager = request.app[ConnectionManagerAppKey]

    if request.query.get("mode", None) == "authorize":
        result = connection_manager.start_authorization(context)
    else:
        result = connection_manager.start_installation(context)
    if isinstance(result, Err):
        raise login_redirect(context, result.error)
    raise redirect(context, result.value)


async def handle_github_callback(request: web.Request):
    user, context = await authenticated_user(request)
    connection_manager = request.app[ConnectionManagerAppKey]

    state_result = connection_manager.verify_state(
        context, request.query.get("state", "")
    )
    if isinstance(state_result, Err):
        raise login_redirect(context, state_result.error)

    code = request.query.get("code", None)
    if not code:
        raise login_redirect(
            context,
            GitHubConnectionFailed(
                "no authorization code", ValidationError("code", "is required")
            ),
        )

    result = await connection_manager.connect(user.id, code)
    if isinstance(result, Err):
        raise login_redirect(context, result.error)

    logger.info("connected GitHub for user %s", user.id)
    raise redirect(context, request.app[SettingsAppKey].destination)


async def handle_github_connection(request: web.Request):
    user, context = await authenticated_user(request)
    result = await request.app[ConnectionManagerAppKey].get_connection(user.id)
    if isinstance(result, Err):
        raise error_response(context, result.error)
    connection = result.value
    return context.apply(
        web.json_response(
            {
                "id": connection.id,
                "refreshable": connection.refresh_token is not None,
                "created_at": connection.created_at.isoformat(),
                "updated_at": connection.updated_at.isoformat(),
            }
        )
    )


async def handle_github_disconnect(request: web.Request):
    user, context = await authenticated_user(request)
    result = await request.app[ConnectionManagerAppKey].disconnect(user.id)
    if isinstance(result, Err):
        raise error_response(context, result.error)
    return context.apply(web.Response(status=204))


async def handle_github_installations(request: web.Request):
    user, context = await authenticated_user(request)
    result = await request.app[ConnectionManagerAppKey].list_installations(user.id)
    if isinstance(result, Err):
        raise error_response(context, result.error)
    return context.apply(
        web.json_response(
            {"installations": [installation.model_dump() for installation in result.value]}
        )
    )
