"""Tests for issuing and verifying the session credential."""

import json

from jwcrypto import jwk, jwt
import pytest

from social.atmd.account.entities import SessionData
from social.atmd.account.errors import CredentialErrorCode
from social.atmd.account.result import Err, Ok
from social.atmd.account.session import SessionManager
from tests.fakes import SIGNING_KEY_ID, MemoryContext


class TestSessionManager:
    @pytest.mark.asyncio
    async def test_set_then_get(self, session_manager, json_web_keys):
        context = MemoryContext()

        issued = await session_manager.set(
            context, SessionData(did="did:plc:alice", user_id="01JUSER")
        )
        assert isinstance(issued, Ok)
        assert issued.value.expires_at > issued.value.issued_at
        assert context.max_ages["sid"] == 3600

        token = jwt.JWT(jwt=context.cookies["sid"], key=json_web_keys)
        claims = json.loads(token.claims)
        assert claims["sub"] == "did:plc:alice"
        assert claims["uid"] == "01JUSER"
        assert "jti" in claims
        assert json.loads(token.header)["kid"] == SIGNING_KEY_ID

        session = await session_manager.get(context)
        assert isinstance(session, Ok)
        assert session.value.did == "did:plc:alice"
        assert session.value.user_id == "01JUSER"

    @pytest.mark.asyncio
    async def test_credentials_are_unique(self, session_manager):
        first, second = MemoryContext(), MemoryContext()
        await session_manager.set(first, SessionData(did="did:plc:alice"))
        await session_manager.set(second, SessionData(did="did:plc:alice"))
        assert first.cookies["sid"] != second.cookies["sid"]

    @pytest.mark.asyncio
    async def test_missing(self, session_manager):
        result = await session_manager.get(MemoryContext())
        assert isinstance(result, Err)
        assert result.error.code == CredentialErrorCode.MISSING

    @pytest.mark.asyncio
    async def test_expired(self, json_web_keys):
        expired_manager = SessionManager(json_web_keys, SIGNING_KEY_ID, ttl=-3600)
        context = MemoryContext()
        await expired_manager.set(context, SessionData(did="did:plc:alice"))

        result = await expired_manager.get(context)
        assert isinstance(result, Err)
        assert result.error.code == CredentialErrorCode.EXPIRED

    @pytest.mark.asyncio
    async def test_signed_by_unknown_key(self, session_manager):
        other_key = jwk.JWK.generate(kty="EC", crv="P-256", kid="other", alg="ES256")
        other_keys = jwk.JWKSet()
        other_keys.add(other_key)
        context = MemoryContext()
        await SessionManager(other_keys, "other").set(
            context, SessionData(did="did:plc:mallory")
        )

        result = await session_manager.get(context)
        assert isinstance(result, Err)
        assert result.error.code == CredentialErrorCode.INVALID

    @pytest.mark.asyncio
    async def test_garbage(self, session_manager):
        result = await session_manager.get(MemoryContext({"sid": "not-a-credential"}))
        assert isinstance(result, Err)
        assert result.error.code == CredentialErrorCode.INVALID

    @pytest.mark.asyncio
    async def test_signing_key_not_configured(self, json_web_keys):
        manager = SessionManager(json_web_keys, "missing")
        context = MemoryContext()

        result = await manager.set(context, SessionData(did="did:plc:alice"))
        assert isinstance(result, Err)
        assert result.error.code == CredentialErrorCode.SIGNING_FAILED
        assert "sid" not in context.cookies

    @pytest.mark.asyncio
    async def test_remove(self, session_manager):
        context = MemoryContext()
        await session_manager.set(context, SessionData(did="did:plc:alice"))

        assert isinstance(await session_manager.remove(context), Ok)
        assert "sid" not in context.cookies
        assert (await session_manager.get(context)).error.code == CredentialErrorCode.MISSING
