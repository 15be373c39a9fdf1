import json
import logging

from aiohttp import web
from pydantic import ValidationError as PydanticValidationError

from social.atmd.account.app.config import AccountManagerAppKey
from social.atmd.account.app.handlers.helpers import (
    authenticated_user,
    error_response,
    user_payload,
)
from social.atmd.account.entities import ProfileUpdate
from social.atmd.account.result import Err

logger = logging.getLogger(__name__)


async def handle_me(request: web.Request):
    user, context = await authenticated_user(request)
    return context.apply(web.json_response(user_payload(user)))


async def handle_profile_update(request: web.Request):
    user, context = await authenticated_user(request)

    try:
        changes = ProfileUpdate.model_validate(await request.json())
    except (json.JSONDecodeError, PydanticValidationError) as e:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "invalid profile", "message": str(e)}),
            content_type="application/json",
        )

    result = await request.app[AccountManagerAppKey].update_profile(user.id, changes)
    if isinstance(result, Err):
        raise error_response(context, result.error)
    return context.apply(web.json_response(user_payload(result.value)))


async def handle_profile_sync(request: web.Request):
    user, context = await authenticated_user(request)
    result = await request.app[AccountManagerAppKey].sync_profile(user.id)
    if isinstance(result, Err):
        raise error_response(context, result.error)
    return context.apply(web.json_response(user_payload(result.value)))


async def handle_delete_me(request: web.Request):
    """Delete the signed-in user and end their session."""
    user, context = await authenticated_user(request)
    account_manager = request.app[AccountManagerAppKey]

    result = await account_manager.delete_user(user.id)
    if isinstance(result, Err):
        raise error_response(context, result.error)

    logout_result = await account_manager.logout(context)
    if isinstance(logout_result, Err):
        raise error_response(context, logout_result.error)
    return context.apply(web.Response(status=204))
