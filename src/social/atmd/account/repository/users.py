from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from ulid import ULID

from social.atmd.account.entities import Profile, User
from social.atmd.account.errors import (
    RepositoryError,
    RepositoryErrorCode,
    translate_database_error,
)
from social.atmd.account.model.users import UserRecord
from social.atmd.account.result import Err, Ok, Result


class SQLAlchemyUserRepository:
    def __init__(self, database_session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._database_session_maker = database_session_maker

    async def create(self, did: str, profile: Profile) -> Result[User, RepositoryError]:
        now = datetime.now(timezone.utc)
        record = UserRecord(
            id=str(ULID()),
            did=did,
            display_name=profile.display_name,
            description=profile.description,
            avatar_url=profile.avatar_url,
            banner_url=profile.banner_url,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._database_session_maker() as database_session:
                async with database_session.begin():
                    database_session.add(record)
        except SQLAlchemyError as e:
            return Err(translate_database_error(e, f"Failed to create user for {did}"))
        return Ok(record.to_user())

    async def find_by_did(self, did: str) -> Result[User, RepositoryError]:
        return await self._find_one(UserRecord.did == did, f"did {did}")

    async def find_by_id(self, user_id: str) -> Result[User, RepositoryError]:
        return await self._find_one(UserRecord.id == user_id, f"id {user_id}")

    async def update(self, user: User) -> Result[User, RepositoryError]:
        stmt = (
            update(UserRecord)
            .where(UserRecord.id == user.id)
            .values(
                display_name=user.profile.display_name,
                description=user.profile.description,
                avatar_url=user.profile.avatar_url,
                banner_url=user.profile.banner_url,
                updated_at=datetime.now(timezone.utc),
            )
            .returning(UserRecord)
        )
        try:
            async with self._database_session_maker() as database_session:
                async with database_session.begin():
                    record: Optional[UserRecord] = (
                        await database_session.scalars(stmt)
                    ).first()
                    updated = record.to_user() if record is not None else None
        except SQLAlchemyError as e:
            return Err(translate_database_error(e, f"Failed to update user {user.id}"))
        if updated is None:
            return Err(
                RepositoryError(RepositoryErrorCode.NOT_FOUND, f"No user with id {user.id}")
            )
        return Ok(updated)

    async def delete(self, user_id: str) -> Result[None, RepositoryError]:
        try:
            async with self._database_session_maker() as database_session:
                async with database_session.begin():
                    result = await database_session.execute(
                        delete(UserRecord).where(UserRecord.id == user_id)
                    )
        except SQLAlchemyError as e:
            return Err(translate_database_error(e, f"Failed to delete user {user_id}"))
        if result.rowcount == 0:
            return Err(
                RepositoryError(RepositoryErrorCode.NOT_FOUND, f"No user with id {user_id}")
            )
        return Ok(None)

    async def _find_one(self, criterion, description: str) -> Result[User, RepositoryError]:
        try:
            async with self._database_session_maker() as database_session:
                record: Optional[UserRecord] = (
                    await database_session.scalars(select(UserRecord).where(criterion))
                ).first()
        except SQLAlchemyError as e:
            return Err(translate_database_error(e, f"Failed to find user by {description}"))
        if record is None:
            return Err(
                RepositoryError(RepositoryErrorCode.NOT_FOUND, f"No user with {description}")
            )
        return Ok(record.to_user())
