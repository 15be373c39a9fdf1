"""
Tests for the AT Protocol identity provider.

Network helpers (handle resolution, server discovery and DPoP requests) are patched at
the module under test; the database session maker is a mock whose session records the
statements executed.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlparse

from aiohttp import ClientSession
import pytest

from social.atmd.account.app.config import Settings
from social.atmd.account.atproto.dpop import generate_dpop_key
from social.atmd.account.atproto.oauth import (
    ATProtoIdentityProvider,
    client_id,
    token_error_code,
)
from social.atmd.account.errors import (
    ExternalServiceErrorCode,
    RepositoryError,
    RepositoryErrorCode,
)
from social.atmd.account.model.provider_sessions import ProviderSession
from social.atmd.account.resolve.handle import ResolvedSubject
from social.atmd.account.repository.locks import RedisRefreshLock
from social.atmd.account.result import Err, Ok
from tests.fakes import (
    SIGNING_KEY_ID,
    MemoryRefreshLock,
    authorization_state,
    mock_response,
)

AUTHORIZATION_SERVER = {
    "issuer": "https://bsky.social",
    "authorization_endpoint": "https://bsky.social/oauth/authorize",
    "token_endpoint": "https://bsky.social/oauth/token",
    "pushed_authorization_request_endpoint": "https://bsky.social/oauth/par",
}

ALICE = ResolvedSubject(did="did:plc:alice", handle="alice.test", pds="https://pds.alice.test")


def database_session_maker(provider_session=None):
    database_session = MagicMock()
    scalars_result = MagicMock()
    scalars_result.first.return_value = provider_session
    database_session.scalars = AsyncMock(return_value=scalars_result)
    database_session.execute = AsyncMock()
    session_maker = MagicMock()
    session_maker.return_value.__aenter__.return_value = database_session
    return session_maker, database_session


def provider_session(access_expires_in: int = 600, hard_expires_in: int = 3600):
    now = datetime.now(timezone.utc)
    return ProviderSession(
        did="did:plc:alice",
        issuer="https://bsky.social",
        pds="https://pds.alice.test",
        access_token="access-token",
        refresh_token="refresh-token",
        signing_key_id=SIGNING_KEY_ID,
        dpop_jwk=generate_dpop_key().export(private_key=True, as_dict=True),
        created_at=now,
        access_token_expires_at=now + timedelta(seconds=access_expires_in),
        hard_expires_at=now + timedelta(seconds=hard_expires_in),
    )


@pytest.fixture
def settings(json_web_keys):
    return Settings(
        external_hostname="account.example",
        json_web_keys=json_web_keys,
        active_signing_keys=[SIGNING_KEY_ID],
        service_auth_keys=[SIGNING_KEY_ID],
    )


@pytest.fixture
def http_session():
    return AsyncMock(spec=ClientSession)


def provider_for(settings, http_session, stored_session=None, refresh_lock=None):
    session_maker, database_session = database_session_maker(stored_session)
    provider = ATProtoIdentityProvider(
        settings, http_session, session_maker, refresh_lock or MemoryRefreshLock()
    )
    return provider, database_session


def login_state():
    return authorization_state("state-1").model_copy(
        update={"dpop_jwk": generate_dpop_key().export(private_key=True, as_dict=True)}
    )


class TestTokenErrorCode:
    @pytest.mark.parametrize(
        "status,body,code",
        [
            (400, {"error": "invalid_grant"}, ExternalServiceErrorCode.AUTHENTICATION_FAILED),
            (400, {"error": "invalid_request"}, ExternalServiceErrorCode.REQUEST_FAILED),
            (401, {}, ExternalServiceErrorCode.AUTHENTICATION_FAILED),
            (503, {}, ExternalServiceErrorCode.SERVICE_UNAVAILABLE),
        ],
    )
    def test_token_error_code(self, status, body, code):
        assert token_error_code(status, body) == code


class TestAuthorize:
    @pytest.mark.asyncio
    @patch("social.atmd.account.atproto.oauth.dpop_request")
    @patch("social.atmd.account.atproto.oauth.discover_authorization_server")
    @patch("social.atmd.account.atproto.oauth.resolve_subject")
    async def test_authorize(
        self, mock_resolve, mock_discover, mock_dpop_request, settings, http_session
    ):
        mock_resolve.return_value = ALICE
        mock_discover.return_value = AUTHORIZATION_SERVER
        mock_dpop_request.return_value = (201, {"request_uri": "urn:par:1", "expires_in": 90})
        provider, _ = provider_for(settings, http_session)

        result = await provider.authorize("alice.test", "state-1")

        assert isinstance(result, Ok)
        redirect_url, state = result.value
        url = urlparse(redirect_url)
        assert f"{url.scheme}://{url.netloc}{url.path}" == AUTHORIZATION_SERVER[
            "authorization_endpoint"
        ]
        query = parse_qs(url.query)
        assert query["client_id"] == [client_id(settings)]
        assert query["request_uri"] == ["urn:par:1"]

        assert state.state == "state-1"
        assert state.did == "did:plc:alice"
        assert state.issuer == "https://bsky.social"
        assert state.token_endpoint == "https://bsky.social/oauth/token"
        assert state.signing_key_id == SIGNING_KEY_ID
        assert "d" in state.dpop_jwk
        assert state.expires_at - state.created_at == timedelta(seconds=600)

        form = mock_dpop_request.call_args.args[7]
        assert form["state"] == "state-1"
        assert form["code_challenge_method"] == "S256"
        assert form["login_hint"] == "alice.test"
        assert form["redirect_uri"] == "https://account.example/auth/atproto/callback"

    @pytest.mark.asyncio
    @patch("social.atmd.account.atproto.oauth.resolve_subject")
    async def test_unresolvable_handle(self, mock_resolve, settings, http_session):
        mock_resolve.return_value = None
        provider, _ = provider_for(settings, http_session)

        result = await provider.authorize("nobody.test", "state-1")

        assert isinstance(result, Err)
        assert result.error.code == ExternalServiceErrorCode.REQUEST_FAILED

    @pytest.mark.asyncio
    @patch("social.atmd.account.atproto.oauth.dpop_request")
    @patch("social.atmd.account.atproto.oauth.discover_authorization_server")
    @patch("social.atmd.account.atproto.oauth.resolve_subject")
    async def test_par_rejected(
        self, mock_resolve, mock_discover, mock_dpop_request, settings, http_session
    ):
        mock_resolve.return_value = ALICE
        mock_discover.return_value = AUTHORIZATION_SERVER
        mock_dpop_request.return_value = (400, {"error": "invalid_client"})
        provider, _ = provider_for(settings, http_session)

        result = await provider.authorize("alice.test", "state-1")

        assert isinstance(result, Err)
        assert result.error.code == ExternalServiceErrorCode.REQUEST_FAILED

    @pytest.mark.asyncio
    @patch("social.atmd.account.atproto.oauth.sentry_sdk")
    @patch("social.atmd.account.atproto.oauth.resolve_subject")
    async def test_unexpected_exception(self, mock_resolve, mock_sentry, settings, http_session):
        mock_resolve.side_effect = RuntimeError("boom")
        provider, _ = provider_for(settings, http_session)

        result = await provider.authorize("alice.test", "state-1")

        assert result.error.code == ExternalServiceErrorCode.UNEXPECTED_ERROR
        mock_sentry.capture_exception.assert_called_once()


class TestCallback:
    @pytest.mark.asyncio
    @patch("social.atmd.account.atproto.oauth.dpop_request")
    async def test_callback(self, mock_dpop_request, settings, http_session):
        mock_dpop_request.return_value = (
            200,
            {
                "access_token": "access-token",
                "refresh_token": "refresh-token",
                "sub": "did:plc:alice",
                "expires_in": 1800,
            },
        )
        provider, database_session = provider_for(settings, http_session)
        state = login_state()

        result = await provider.callback(
            {"code": "code-1", "state": "state-1", "iss": "https://bsky.social"}, state
        )

        assert result == Ok("did:plc:alice")
        form = mock_dpop_request.call_args.args[7]
        assert form["code"] == "code-1"
        assert form["code_verifier"] == state.pkce_verifier
        database_session.execute.assert_awaited_once()

    @pytest.mark.asyncio
    @patch("social.atmd.account.atproto.oauth.dpop_request")
    async def test_issuer_mismatch(self, mock_dpop_request, settings, http_session):
        provider, _ = provider_for(settings, http_session)

        result = await provider.callback(
            {"code": "code-1", "state": "state-1", "iss": "https://evil.example"},
            login_state(),
        )

        assert result.error.code == ExternalServiceErrorCode.AUTHENTICATION_FAILED
        mock_dpop_request.assert_not_called()

    @pytest.mark.asyncio
    @patch("social.atmd.account.atproto.oauth.dpop_request")
    async def test_subject_mismatch(self, mock_dpop_request, settings, http_session):
        mock_dpop_request.return_value = (
            200,
            {"access_token": "a", "refresh_token": "r", "sub": "did:plc:mallory"},
        )
        provider, database_session = provider_for(settings, http_session)

        result = await provider.callback(
            {"code": "code-1", "iss": "https://bsky.social"}, login_state()
        )

        assert result.error.code == ExternalServiceErrorCode.AUTHENTICATION_FAILED
        database_session.execute.assert_not_called()

    @pytest.mark.asyncio
    @patch("social.atmd.account.atproto.oauth.dpop_request")
    async def test_code_rejected(self, mock_dpop_request, settings, http_session):
        mock_dpop_request.return_value = (400, {"error": "invalid_grant"})
        provider, _ = provider_for(settings, http_session)

        result = await provider.callback(
            {"code": "code-1", "iss": "https://bsky.social"}, login_state()
        )

        assert result.error.code == ExternalServiceErrorCode.AUTHENTICATION_FAILED


class TestProfile:
    @pytest.mark.asyncio
    async def test_get_user_profile(self, settings, http_session):
        http_session.get.return_value.__aenter__.return_value = mock_response(
            200,
            {
                "did": "did:plc:alice",
                "handle": "alice.test",
                "displayName": "Alice",
                "avatar": "https://cdn.example/avatar.jpg",
            },
        )
        provider, _ = provider_for(settings, http_session)

        result = await provider.get_user_profile("did:plc:alice")

        assert result.value.display_name == "Alice"
        assert result.value.avatar_url == "https://cdn.example/avatar.jpg"
        assert result.value.description is None
        http_session.get.assert_called_once_with(
            "https://public.api.bsky.app/xrpc/app.bsky.actor.getProfile",
            params={"actor": "did:plc:alice"},
        )

    @pytest.mark.asyncio
    async def test_profile_without_display_name(self, settings, http_session):
        http_session.get.return_value.__aenter__.return_value = mock_response(
            200, {"did": "did:plc:alice"}
        )
        provider, _ = provider_for(settings, http_session)

        result = await provider.get_user_profile("did:plc:alice")

        assert result.value.display_name == ""

    @pytest.mark.asyncio
    async def test_profile_not_found(self, settings, http_session):
        http_session.get.return_value.__aenter__.return_value = mock_response(400)
        provider, _ = provider_for(settings, http_session)

        result = await provider.get_user_profile("did:plc:alice")

        assert result.error.code == ExternalServiceErrorCode.PROFILE_RETRIEVAL_FAILED


class TestValidateSession:
    @pytest.mark.asyncio
    async def test_no_provider_session(self, settings, http_session):
        provider, _ = provider_for(settings, http_session)

        result = await provider.validate_session("did:plc:alice")

        assert result.error.code == ExternalServiceErrorCode.AUTHENTICATION_FAILED

    @pytest.mark.asyncio
    async def test_hard_expired(self, settings, http_session):
        provider, _ = provider_for(
            settings, http_session, provider_session(hard_expires_in=-1)
        )

        result = await provider.validate_session("did:plc:alice")

        assert result.error.code == ExternalServiceErrorCode.AUTHENTICATION_FAILED

    @pytest.mark.asyncio
    @patch("social.atmd.account.atproto.oauth.dpop_request")
    async def test_access_token_still_valid(self, mock_dpop_request, settings, http_session):
        provider, _ = provider_for(settings, http_session, provider_session())

        assert await provider.validate_session("did:plc:alice") == Ok(None)
        mock_dpop_request.assert_not_called()

    @pytest.mark.asyncio
    @patch("social.atmd.account.atproto.oauth.dpop_request")
    @patch("social.atmd.account.atproto.oauth.discover_authorization_server")
    async def test_refreshed(self, mock_discover, mock_dpop_request, settings, http_session):
        mock_discover.return_value = AUTHORIZATION_SERVER
        mock_dpop_request.return_value = (
            200,
            {"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 1800},
        )
        provider, database_session = provider_for(
            settings, http_session, provider_session(access_expires_in=-1)
        )

        assert await provider.validate_session("did:plc:alice") == Ok(None)

        assert mock_dpop_request.call_args.args[1] == "https://bsky.social/oauth/token"
        form = mock_dpop_request.call_args.args[7]
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-token"
        database_session.execute.assert_awaited_once()

    @pytest.mark.asyncio
    @patch("social.atmd.account.atproto.oauth.dpop_request")
    @patch("social.atmd.account.atproto.oauth.discover_authorization_server")
    async def test_consent_revoked(
        self, mock_discover, mock_dpop_request, settings, http_session
    ):
        mock_discover.return_value = AUTHORIZATION_SERVER
        mock_dpop_request.return_value = (400, {"error": "invalid_grant"})
        provider, database_session = provider_for(
            settings, http_session, provider_session(access_expires_in=-1)
        )

        result = await provider.validate_session("did:plc:alice")

        assert result.error.code == ExternalServiceErrorCode.AUTHENTICATION_FAILED
        database_session.execute.assert_not_called()

    @pytest.mark.asyncio
    @patch("social.atmd.account.atproto.oauth.dpop_request")
    @patch("social.atmd.account.atproto.oauth.discover_authorization_server")
    async def test_authorization_server_down(
        self, mock_discover, mock_dpop_request, settings, http_session
    ):
        mock_discover.return_value = AUTHORIZATION_SERVER
        mock_dpop_request.return_value = (503, {})
        provider, _ = provider_for(
            settings, http_session, provider_session(access_expires_in=-1)
        )

        result = await provider.validate_session("did:plc:alice")

        assert result.error.code == ExternalServiceErrorCode.SERVICE_UNAVAILABLE

    @pytest.mark.asyncio
    @patch("social.atmd.account.atproto.oauth.dpop_request")
    @patch("social.atmd.account.atproto.oauth.discover_authorization_server")
    async def test_concurrent_refresh_spends_refresh_token_once(
        self, mock_discover, mock_dpop_request, settings, http_session, fake_redis_client
    ):
        mock_discover.return_value = AUTHORIZATION_SERVER
        stored = provider_session(access_expires_in=-1)
        spent = set()

        async def token_endpoint(*args):
            await asyncio.sleep(0)
            refresh_token = args[7]["refresh_token"]
            if refresh_token in spent:
                return 400, {"error": "invalid_grant"}
            spent.add(refresh_token)
            return 200, {
                "access_token": "new-access",
                "refresh_token": "new-refresh",
                "expires_in": 1800,
            }

        def persist(statement):
            stored.access_token = "new-access"
            stored.refresh_token = "new-refresh"
            stored.access_token_expires_at = datetime.now(timezone.utc) + timedelta(
                seconds=1800
            )

        mock_dpop_request.side_effect = token_endpoint
        provider, database_session = provider_for(
            settings, http_session, stored, RedisRefreshLock(fake_redis_client, wait=0.01)
        )
        database_session.execute.side_effect = persist

        results = await asyncio.gather(
            provider.validate_session("did:plc:alice"),
            provider.validate_session("did:plc:alice"),
        )

        assert results == [Ok(None), Ok(None)]
        assert mock_dpop_request.await_count == 1
        assert await fake_redis_client.keys("lock:refresh:*") == []

    @pytest.mark.asyncio
    @patch("social.atmd.account.atproto.oauth.dpop_request")
    async def test_refresh_lock_unavailable(self, mock_dpop_request, settings, http_session):
        refresh_lock = AsyncMock()
        refresh_lock.acquire.return_value = Err(
            RepositoryError(RepositoryErrorCode.CONSTRAINT_VIOLATION, "still held")
        )
        provider, _ = provider_for(
            settings, http_session, provider_session(access_expires_in=-1), refresh_lock
        )

        result = await provider.validate_session("did:plc:alice")

        assert result.error.code == ExternalServiceErrorCode.SERVICE_UNAVAILABLE
        mock_dpop_request.assert_not_called()
        refresh_lock.release.assert_not_awaited()
