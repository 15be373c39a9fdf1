"""
Integration tests for the SQLAlchemy repositories.

These run against a real PostgreSQL database and are skipped when none is reachable.
"""

import asyncio

import pytest
from sqlalchemy import select

from social.atmd.account.entities import Profile, TokenPair
from social.atmd.account.errors import RepositoryErrorCode
from social.atmd.account.model.connections import GitHubConnectionRecord
from social.atmd.account.repository.connections import SQLAlchemyConnectionRepository
from social.atmd.account.repository.users import SQLAlchemyUserRepository
from social.atmd.account.result import Err, Ok


@pytest.fixture
def user_repository(database_session_maker):
    return SQLAlchemyUserRepository(database_session_maker)


@pytest.fixture
def connection_repository(database_session_maker, encryption_key):
    return SQLAlchemyConnectionRepository(database_session_maker, encryption_key)


class TestUserRepository:
    @pytest.mark.asyncio
    async def test_create_and_find(self, user_repository):
        created = await user_repository.create(
            "did:plc:alice", Profile(display_name="Alice", description="hi")
        )
        assert isinstance(created, Ok)

        by_did = await user_repository.find_by_did("did:plc:alice")
        by_id = await user_repository.find_by_id(created.value.id)
        assert by_did.value == by_id.value
        assert by_did.value.profile.description == "hi"

    @pytest.mark.asyncio
    async def test_did_is_unique(self, user_repository):
        await user_repository.create("did:plc:alice", Profile())

        duplicate = await user_repository.create("did:plc:alice", Profile())

        assert isinstance(duplicate, Err)
        assert duplicate.error.code == RepositoryErrorCode.CONSTRAINT_VIOLATION

    @pytest.mark.asyncio
    async def test_concurrent_create(self, user_repository):
        results = await asyncio.gather(
            *[user_repository.create("did:plc:alice", Profile()) for _ in range(5)]
        )

        assert sum(1 for result in results if isinstance(result, Ok)) == 1
        assert all(
            result.error.code == RepositoryErrorCode.CONSTRAINT_VIOLATION
            for result in results
            if isinstance(result, Err)
        )

    @pytest.mark.asyncio
    async def test_not_found(self, user_repository):
        result = await user_repository.find_by_did("did:plc:nobody")
        assert result.error.code == RepositoryErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_update(self, user_repository):
        user = (await user_repository.create("did:plc:alice", Profile())).value

        updated = await user_repository.update(
            user.model_copy(update={"profile": Profile(display_name="Alice")})
        )

        assert updated.value.profile.display_name == "Alice"
        assert updated.value.updated_at >= user.updated_at
        assert updated.value.created_at == user.created_at

    @pytest.mark.asyncio
    async def test_delete(self, user_repository):
        user = (await user_repository.create("did:plc:alice", Profile())).value

        assert isinstance(await user_repository.delete(user.id), Ok)

        again = await user_repository.delete(user.id)
        assert again.error.code == RepositoryErrorCode.NOT_FOUND


class TestConnectionRepository:
    @pytest.mark.asyncio
    async def test_tokens_are_encrypted(
        self, user_repository, connection_repository, database_session_maker
    ):
        user = (await user_repository.create("did:plc:alice", Profile())).value

        created = await connection_repository.create(
            user.id, TokenPair(access_token="ghu_token", refresh_token="ghr_token")
        )

        assert created.value.access_token == "ghu_token"
        async with database_session_maker() as database_session:
            record = (
                await database_session.scalars(select(GitHubConnectionRecord))
            ).one()
        assert record.access_token != "ghu_token"
        assert record.refresh_token != "ghr_token"

        found = await connection_repository.find_by_user_id(user.id)
        assert found.value.refresh_token == "ghr_token"

    @pytest.mark.asyncio
    async def test_one_connection_per_user(self, user_repository, connection_repository):
        user = (await user_repository.create("did:plc:alice", Profile())).value
        await connection_repository.create(user.id, TokenPair(access_token="first"))

        second = await connection_repository.create(user.id, TokenPair(access_token="second"))

        assert second.error.code == RepositoryErrorCode.CONSTRAINT_VIOLATION
        found = await connection_repository.find_by_user_id(user.id)
        assert found.value.access_token == "first"

    @pytest.mark.asyncio
    async def test_update(self, user_repository, connection_repository):
        user = (await user_repository.create("did:plc:alice", Profile())).value
        connection = (
            await connection_repository.create(
                user.id, TokenPair(access_token="first", refresh_token="r1")
            )
        ).value

        updated = await connection_repository.update(
            connection.model_copy(update={"access_token": "second", "refresh_token": "r2"})
        )

        assert updated.value.access_token == "second"
        assert updated.value.refresh_token == "r2"

    @pytest.mark.asyncio
    async def test_delete_by_user_id(self, user_repository, connection_repository):
        user = (await user_repository.create("did:plc:alice", Profile())).value
        await connection_repository.create(user.id, TokenPair(access_token="first"))

        assert isinstance(await connection_repository.delete_by_user_id(user.id), Ok)

        again = await connection_repository.delete_by_user_id(user.id)
        assert again.error.code == RepositoryErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_deleting_user_removes_connection(
        self, user_repository, connection_repository
    ):
        user = (await user_repository.create("did:plc:alice", Profile())).value
        await connection_repository.create(user.id, TokenPair(access_token="first"))

        await user_repository.delete(user.id)

        result = await connection_repository.find_by_user_id(user.id)
        assert result.error.code == RepositoryErrorCode.NOT_FOUND
