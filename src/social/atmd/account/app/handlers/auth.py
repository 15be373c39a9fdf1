"""
AT Protocol login endpoints.

``POST /auth/atproto`` starts a login for the submitted handle and redirects the browser
to the user's authorization server. The server sends the browser back to
``GET /auth/atproto/callback``, which finishes the login and redirects to the configured
destination with a session cookie set. Any failure sends the browser to the login path
with an error code and no detail.

The client metadata and JWKS documents are what authorization servers fetch to identify
and authenticate this service as a confidential OAuth client.
"""

import logging
from typing import Any, Dict, List, Optional

from aiohttp import web
from pydantic import BaseModel

from social.atmd.account.app.config import (
    AccountManagerAppKey,
    AuthorizationInitiatorAppKey,
    CallbackReconcilerAppKey,
    SettingsAppKey,
)
from social.atmd.account.app.handlers.helpers import (
    error_response,
    login_redirect,
    redirect,
    request_context,
)
from social.atmd.account.atproto.oauth import OAUTH_SCOPE, client_id, redirect_uri
from social.atmd.account.result import Err

logger = logging.getLogger(__name__)


class ATProtocolOAuthClientMetadata(BaseModel):
    """OAuth client metadata (RFC 7591) published at the client id URL."""

    client_id: str
    dpop_bound_access_tokens: bool
    application_type: str
    redirect_uris: List[str]
    client_uri: str
    grant_types: List[str]
    response_types: List[str]
    scope: str
    client_name: str
    token_endpoint_auth_method: str
    token_endpoint_auth_signing_alg: str
    jwks_uri: str


async def handle_atproto_login(request: web.Request):
    """Start a login for the ``subject`` (or ``handle``) form field."""
    data = await request.post()
    subject: Optional[str] = data.get("subject", None) or data.get("handle", None)  # type: ignore

    context = request_context(request)
    authorization_initiator = request.app[AuthorizationInitiatorAppKey]
    result = await authorization_initiator.start_authorization(subject or "", context)
    if isinstance(result, Err):
        raise login_redirect(context, result.error)
    raise redirect(context, result.value)


async def handle_atproto_callback(request: web.Request):
    context = request_context(request)
    callback_reconciler = request.app[CallbackReconcilerAppKey]
    result = await callback_reconciler.handle_callback(request.query, context)
    if isinstance(result, Err):
        raise login_redirect(context, result.error)

    logger.info("signed in %s", result.value.did)
    raise redirect(context, request.app[SettingsAppKey].destination)


async def handle_logout(request: web.Request):
    context = request_context(request)
    result = await request.app[AccountManagerAppKey].logout(context)
    if isinstance(result, Err):
        raise error_response(context, result.error)
    return context.apply(web.Response(status=204))


async def handle_jwks(request: web.Request):
    """Public halves of the keys used for the OAuth client assertion."""
    settings = request.app[SettingsAppKey]
    results: List[Dict[str, Any]] = []
    for kid in settings.active_signing_keys:
        key = settings.json_web_keys.get_key(kid)
        if key is None:
            continue
        results.append(key.export_public(as_dict=True))
    return web.json_response({"keys": results})


async def handle_atproto_client_metadata(request: web.Request):
    settings = request.app[SettingsAppKey]
    client_metadata = ATProtocolOAuthClientMetadata(
        application_type="web",
        client_id=client_id(settings),
        client_name=settings.external_hostname,
        client_uri=f"https://{settings.external_hostname}",
        dpop_bound_access_tokens=True,
        grant_types=["authorization_code", "refresh_token"],
        jwks_uri=f"https://{settings.external_hostname}/.well-known/jwks.json",
        redirect_uris=[redirect_uri(settings)],
        response_types=["code"],
        scope=OAUTH_SCOPE,
        token_endpoint_auth_method="private_key_jwt",
        token_endpoint_auth_signing_alg="ES256",
    )
    return web.json_response(client_metadata.model_dump())
