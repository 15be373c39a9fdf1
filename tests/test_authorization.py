"""Tests for starting an AT Protocol login."""

from unittest.mock import AsyncMock

import pytest

from social.atmd.account.errors import (
    AuthorizationFailed,
    ExternalServiceError,
    ExternalServiceErrorCode,
    RepositoryError,
    RepositoryErrorCode,
    ValidationError,
)
from social.atmd.account.result import Err, Ok
from social.atmd.account.services.authorization import (
    STATE_COOKIE_NAME,
    AuthorizationInitiator,
)
from tests.fakes import FakeIdentityProvider, MemoryContext, MemoryStateStore


@pytest.fixture
def identity_provider():
    return FakeIdentityProvider()


@pytest.fixture
def state_store():
    return MemoryStateStore()


@pytest.fixture
def initiator(identity_provider, state_store):
    return AuthorizationInitiator(identity_provider, state_store, state_ttl=600)


class TestAuthorizationInitiator:
    @pytest.mark.asyncio
    async def test_start_authorization(self, initiator, state_store):
        context = MemoryContext()

        result = await initiator.start_authorization("alice.test", context)

        assert isinstance(result, Ok)
        state = context.cookies[STATE_COOKIE_NAME]
        assert context.max_ages[STATE_COOKIE_NAME] == 600
        assert result.value.startswith("https://bsky.social/oauth/authorize")
        assert state in state_store.states

    @pytest.mark.asyncio
    async def test_states_are_unique(self, initiator, state_store):
        first, second = MemoryContext(), MemoryContext()
        await initiator.start_authorization("alice.test", first)
        await initiator.start_authorization("alice.test", second)

        assert first.cookies[STATE_COOKIE_NAME] != second.cookies[STATE_COOKIE_NAME]
        assert len(state_store.states) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("handle", ["", "   ", "@"])
    async def test_empty_handle(self, initiator, identity_provider, handle):
        context = MemoryContext()

        result = await initiator.start_authorization(handle, context)

        assert isinstance(result, Err)
        assert isinstance(result.error, AuthorizationFailed)
        assert isinstance(result.error.cause, ValidationError)
        assert identity_provider.calls["authorize"] == 0
        assert STATE_COOKIE_NAME not in context.cookies

    @pytest.mark.asyncio
    async def test_provider_failure(self, initiator, identity_provider, state_store):
        identity_provider.authorize_error = ExternalServiceError(
            "atproto", ExternalServiceErrorCode.REQUEST_FAILED, "unresolvable handle"
        )
        context = MemoryContext()

        result = await initiator.start_authorization("nobody.test", context)

        assert isinstance(result, Err)
        assert isinstance(result.error, AuthorizationFailed)
        assert result.error.cause.code == ExternalServiceErrorCode.REQUEST_FAILED
        assert state_store.states == {}
        assert STATE_COOKIE_NAME not in context.cookies

    @pytest.mark.asyncio
    async def test_state_store_failure(self, initiator, state_store):
        state_store.save = AsyncMock(
            return_value=Err(
                RepositoryError(RepositoryErrorCode.CONNECTION_ERROR, "redis unavailable")
            )
        )
        context = MemoryContext()

        result = await initiator.start_authorization("alice.test", context)

        assert isinstance(result, Err)
        assert isinstance(result.error, AuthorizationFailed)
        assert result.error.cause.code == RepositoryErrorCode.CONNECTION_ERROR
        assert STATE_COOKIE_NAME not in context.cookies
