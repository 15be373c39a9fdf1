"""
AT Protocol OAuth Client Implementation

``ATProtoIdentityProvider`` is the identity provider adapter used by the login flow. It
implements the AT Protocol OAuth profile:

- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636)
- OAuth 2.0 DPoP (Demonstrating Proof of Possession) (RFC 9449)
- OAuth 2.0 JWT Client Authentication (RFC 7523)
- OAuth 2.0 Pushed Authorization Requests (PAR) (RFC 9126)

The flow is implemented in three stages:

1. ``authorize``: resolve the handle, discover the authorization server, push the
   authorization request and return the redirect URL with the state needed to finish
2. ``callback``: check the issuer, exchange the code for tokens bound to the login's DPoP
   key and keep them as the DID's provider session
3. ``validate_session``: confirm the provider session is still honoured, refreshing the
   access token when it has expired; a refused refresh means consent was revoked

Refresh tokens are single use, so refreshes of one DID are serialised by
``refresh_lock`` and the rotated pair is only written over the pair that was spent.

Failures inside the adapter are raised as ``ProviderFailure`` and translated into
``ExternalServiceError`` values at each public method.
"""

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from aiohttp import ClientSession
from jwcrypto import jwk
import sentry_sdk
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social.atmd.account.app.config import Settings
from social.atmd.account.atproto.dpop import (
    dpop_request,
    generate_dpop_key,
    generate_pkce_verifier,
)
from social.atmd.account.atproto.pds import discover_authorization_server
from social.atmd.account.entities import AuthorizationState, Profile
from social.atmd.account.errors import (
    ExternalServiceError,
    ExternalServiceErrorCode,
    status_error_code,
    translate_http_error,
)
from social.atmd.account.model.provider_sessions import (
    ProviderSession,
    upsert_provider_session_stmt,
)
from social.atmd.account.ports import RefreshLock
from social.atmd.account.resolve.handle import resolve_subject
from social.atmd.account.result import Err, Ok, Result

logger = logging.getLogger(__name__)

PROVIDER = "atproto"

OAUTH_SCOPE = "atproto transition:generic"


class ProviderFailure(Exception):
    """Raised inside the adapter; never leaves it."""

    def __init__(self, code: ExternalServiceErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def client_id(settings: Settings) -> str:
    return f"https://{settings.external_hostname}/auth/atproto/client-metadata.json"


def redirect_uri(settings: Settings) -> str:
    return f"https://{settings.external_hostname}/auth/atproto/callback"


def token_error_code(status: int, body: Dict[str, Any]) -> ExternalServiceErrorCode:
    """Classify a failed token endpoint response.

    A rejected grant is reported with 400 by most authorization servers, so the OAuth
    error code is consulted before the status.
    """
    if body.get("error", None) in ("invalid_grant", "invalid_token", "access_denied"):
        return ExternalServiceErrorCode.AUTHENTICATION_FAILED
    return status_error_code(status)


class ATProtoIdentityProvider:
    def __init__(
        self,
        settings: Settings,
        http_session: ClientSession,
        database_session_maker: async_sessionmaker[AsyncSession],
        refresh_lock: RefreshLock,
    ) -> None:
        self.settings = settings
        self.http_session = http_session
        self.database_session_maker = database_session_maker
        self.refresh_lock = refresh_lock

    def _failure(self, exc: Exception, message: str) -> ExternalServiceError:
        if isinstance(exc, ProviderFailure):
            return ExternalServiceError(PROVIDER, exc.code, exc.message)
        sentry_sdk.capture_exception(exc)
        return translate_http_error(PROVIDER, exc, message)

    def _signing_key(self, signing_key_id: str) -> jwk.JWK:
        signing_key = self.settings.json_web_keys.get_key(signing_key_id)
        if signing_key is None:
            raise ProviderFailure(
                ExternalServiceErrorCode.UNEXPECTED_ERROR,
                f"signing key {signing_key_id} is not configured",
            )
        return signing_key

    async def _authorization_server(self, pds: str) -> Dict[str, Any]:
        authorization_server = await discover_authorization_server(
            self.http_session, pds
        )
        if not isinstance(authorization_server, dict):
            raise ProviderFailure(
                ExternalServiceErrorCode.RESPONSE_INVALID,
                "no authorization server found",
            )
        return authorization_server

    async def authorize(
        self, handle: str, state: str
    ) -> Result[Tuple[str, AuthorizationState], ExternalServiceError]:
        try:
            return Ok(await self._authorize(handle, state))
        except Exception as e:
            return Err(self._failure(e, "unable to start authorization"))

    async def _authorize(self, handle: str, state: str) -> Tuple[str, AuthorizationState]:
        signing_key_id = next(iter(self.settings.active_signing_keys), None)
        if signing_key_id is None:
            raise ProviderFailure(
                ExternalServiceErrorCode.UNEXPECTED_ERROR,
                "no active signing keys configured",
            )
        signing_key = self._signing_key(signing_key_id)

        resolved_handle = await resolve_subject(
            self.http_session, self.settings.plc_hostname, handle
        )
        if resolved_handle is None:
            raise ProviderFailure(
                ExternalServiceErrorCode.REQUEST_FAILED, "unable to resolve handle"
            )

        authorization_server = await self._authorization_server(resolved_handle.pds)
        issuer = authorization_server.get("issuer", None)
        authorization_endpoint = authorization_server.get("authorization_endpoint", None)
        token_endpoint = authorization_server.get("token_endpoint", None)
        par_url = authorization_server.get("pushed_authorization_request_endpoint", None)
        if None in (issuer, authorization_endpoint, token_endpoint, par_url):
            raise ProviderFailure(
                ExternalServiceErrorCode.RESPONSE_INVALID,
                "incomplete authorization server metadata",
            )

        (pkce_verifier, code_challenge) = generate_pkce_verifier()
        dpop_key = generate_dpop_key()

        status, par_resp = await dpop_request(
            self.http_session,
            par_url,
            dpop_key,
            signing_key,
            signing_key_id,
            client_id(self.settings),
            issuer,
            {
                "response_type": "code",
                "code_challenge": code_challenge,
                "code_challenge_method": "S256",
                "state": state,
                "client_id": client_id(self.settings),
                "redirect_uri": redirect_uri(self.settings),
                "scope": OAUTH_SCOPE,
                "login_hint": resolved_handle.handle,
            },
        )
        if status not in (200, 201):
            raise ProviderFailure(
                token_error_code(status, par_resp),
                f"pushed authorization request rejected with {status}",
            )

        par_request_uri = par_resp.get("request_uri", None)
        if par_request_uri is None:
            raise ProviderFailure(
                ExternalServiceErrorCode.RESPONSE_INVALID, "no PAR request URI found"
            )

        now = datetime.now(timezone.utc)
        authorization_state = AuthorizationState(
            state=state,
            issuer=issuer,
            did=resolved_handle.did,
            handle=resolved_handle.handle,
            pds=resolved_handle.pds,
            token_endpoint=token_endpoint,
            pkce_verifier=pkce_verifier,
            signing_key_id=signing_key_id,
            dpop_jwk=dpop_key.export(private_key=True, as_dict=True),
            created_at=now,
            expires_at=now + timedelta(0, self.settings.authorization_state_ttl),
        )

        parsed_authorization_endpoint = urlparse(authorization_endpoint)
        query = dict(parse_qsl(parsed_authorization_endpoint.query))
        query.update({"client_id": client_id(self.settings), "request_uri": par_request_uri})
        parsed_authorization_endpoint = parsed_authorization_endpoint._replace(
            query=urlencode(query)
        )
        return str(urlunparse(parsed_authorization_endpoint)), authorization_state

    async def callback(
        self, params: Mapping[str, str], authorization_state: AuthorizationState
    ) -> Result[str, ExternalServiceError]:
        try:
            return Ok(await self._callback(params, authorization_state))
        except Exception as e:
            return Err(self._failure(e, "unable to complete authorization"))

    async def _callback(
        self, params: Mapping[str, str], authorization_state: AuthorizationState
    ) -> str:
        if params.get("iss", None) != authorization_state.issuer:
            raise ProviderFailure(
                ExternalServiceErrorCode.AUTHENTICATION_FAILED, "issuer mismatch"
            )

        code = params.get("code", None)
        if not code:
            raise ProviderFailure(
                ExternalServiceErrorCode.REQUEST_FAILED, "no authorization code"
            )

        signing_key = self._signing_key(authorization_state.signing_key_id)
        dpop_key = jwk.JWK(**authorization_state.dpop_jwk)

        status, token_response = await dpop_request(
            self.http_session,
            authorization_state.token_endpoint,
            dpop_key,
            signing_key,
            authorization_state.signing_key_id,
            client_id(self.settings),
            authorization_state.issuer,
            {
                "client_id": client_id(self.settings),
                "redirect_uri": redirect_uri(self.settings),
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": authorization_state.pkce_verifier,
            },
        )
        if status != 200:
            raise ProviderFailure(
                token_error_code(status, token_response),
                f"token exchange rejected with {status}",
            )

        # The token response names the account that actually authorized; it must be the
        # one the request was started for.
        if token_response.get("sub", None) != authorization_state.did:
            raise ProviderFailure(
                ExternalServiceErrorCode.AUTHENTICATION_FAILED, "subject mismatch"
            )

        access_token = token_response.get("access_token", None)
        refresh_token = token_response.get("refresh_token", None)
        if access_token is None or refresh_token is None:
            raise ProviderFailure(
                ExternalServiceErrorCode.RESPONSE_INVALID, "incomplete token response"
            )
        expires_in = token_response.get("expires_in", 1800)

        now = datetime.now(timezone.utc)
        async with self.database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(
                    upsert_provider_session_stmt(
                        did=authorization_state.did,
                        issuer=authorization_state.issuer,
                        pds=authorization_state.pds,
                        access_token=access_token,
                        refresh_token=refresh_token,
                        signing_key_id=authorization_state.signing_key_id,
                        dpop_jwk=authorization_state.dpop_jwk,
                        created_at=now,
                        access_token_expires_at=now + timedelta(0, expires_in),
                        hard_expires_at=now
                        + timedelta(0, self.settings.provider_session_ttl),
                    )
                )

        return authorization_state.did

    async def get_user_profile(self, did: str) -> Result[Profile, ExternalServiceError]:
        url = f"https://{self.settings.appview_hostname}/xrpc/app.bsky.actor.getProfile"
        try:
            async with self.http_session.get(url, params={"actor": did}) as resp:
                if resp.status != 200:
                    return Err(
                        ExternalServiceError(
                            PROVIDER,
                            ExternalServiceErrorCode.PROFILE_RETRIEVAL_FAILED,
                            f"profile lookup returned {resp.status}",
                        )
                    )
                body = await resp.json()
        except Exception as e:
            return Err(self._failure(e, "unable to fetch profile"))

        if not isinstance(body, dict):
            return Err(
                ExternalServiceError(
                    PROVIDER,
                    ExternalServiceErrorCode.RESPONSE_INVALID,
                    "profile response is not an object",
                )
            )
        return Ok(
            Profile(
                display_name=body.get("displayName", None) or "",
                description=body.get("description", None),
                avatar_url=body.get("avatar", None),
                banner_url=body.get("banner", None),
            )
        )

    async def validate_session(self, did: str) -> Result[None, ExternalServiceError]:
        try:
            await self._validate_session(did)
        except Exception as e:
            return Err(self._failure(e, "unable to validate provider session"))
        return Ok(None)

    async def _provider_session(self, did: str) -> ProviderSession:
        async with self.database_session_maker() as database_session:
            provider_session: Optional[ProviderSession] = (
                await database_session.scalars(
                    select(ProviderSession).where(ProviderSession.did == did)
                )
            ).first()

        if provider_session is None:
            raise ProviderFailure(
                ExternalServiceErrorCode.AUTHENTICATION_FAILED, "no provider session"
            )
        if provider_session.hard_expires_at <= datetime.now(timezone.utc):
            raise ProviderFailure(
                ExternalServiceErrorCode.AUTHENTICATION_FAILED,
                "provider session expired",
            )
        return provider_session

    async def _validate_session(self, did: str) -> None:
        provider_session = await self._provider_session(did)
        if provider_session.access_token_expires_at > datetime.now(timezone.utc):
            return

        lock_name = f"atproto:{did}"
        lock_result = await self.refresh_lock.acquire(lock_name)
        if isinstance(lock_result, Err):
            raise ProviderFailure(
                ExternalServiceErrorCode.SERVICE_UNAVAILABLE, lock_result.error.message
            )
        try:
            # Another request may have rotated the tokens while this one waited.
            provider_session = await self._provider_session(did)
            now = datetime.now(timezone.utc)
            if provider_session.access_token_expires_at > now:
                return
            await self._refresh(provider_session, now)
        finally:
            await self.refresh_lock.release(lock_name)

    async def _refresh(self, provider_session: ProviderSession, now: datetime) -> None:
        signing_key = self._signing_key(provider_session.signing_key_id)
        dpop_key = jwk.JWK(**provider_session.dpop_jwk)

        authorization_server = await self._authorization_server(provider_session.pds)
        token_endpoint = authorization_server.get("token_endpoint", None)
        if token_endpoint is None:
            raise ProviderFailure(
                ExternalServiceErrorCode.RESPONSE_INVALID, "no token endpoint found"
            )

        status, token_response = await dpop_request(
            self.http_session,
            token_endpoint,
            dpop_key,
            signing_key,
            provider_session.signing_key_id,
            client_id(self.settings),
            provider_session.issuer,
            {
                "client_id": client_id(self.settings),
                "redirect_uri": redirect_uri(self.settings),
                "grant_type": "refresh_token",
                "refresh_token": provider_session.refresh_token,
            },
        )
        if status in (400, 401):
            logger.info("provider refused refresh for %s", provider_session.did)
            raise ProviderFailure(
                ExternalServiceErrorCode.AUTHENTICATION_FAILED,
                "refresh token rejected",
            )
        if status != 200:
            raise ProviderFailure(status_error_code(status), f"refresh failed with {status}")

        access_token = token_response.get("access_token", None)
        if access_token is None:
            raise ProviderFailure(
                ExternalServiceErrorCode.RESPONSE_INVALID, "no access token"
            )
        refresh_token = token_response.get("refresh_token", provider_session.refresh_token)
        expires_in = token_response.get("expires_in", 1800)

        async with self.database_session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(
                    update(ProviderSession)
                    .where(
                        ProviderSession.did == provider_session.did,
                        ProviderSession.refresh_token == provider_session.refresh_token,
                    )
                    .values(
                        access_token=access_token,
                        refresh_token=refresh_token,
                        access_token_expires_at=now + timedelta(0, expires_in),
                    )
                )
