from datetime import datetime, timezone
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from ulid import ULID

from social.atmd.account.entities import Connection, TokenPair
from social.atmd.account.errors import (
    RepositoryError,
    RepositoryErrorCode,
    translate_database_error,
)
from social.atmd.account.model.connections import GitHubConnectionRecord
from social.atmd.account.result import Err, Ok, Result


class SQLAlchemyConnectionRepository:
    """GitHub connections, one per user, with tokens encrypted by ``encryption_key``.

    ``create`` never overwrites: a second row for the same user trips the unique index and
    comes back as CONSTRAINT_VIOLATION.
    """

    def __init__(
        self,
        database_session_maker: async_sessionmaker[AsyncSession],
        encryption_key: Fernet,
    ) -> None:
        self._database_session_maker = database_session_maker
        self._encryption_key = encryption_key

    def _encrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return self._encryption_key.encrypt(value.encode("utf-8")).decode("ascii")

    def _decrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return self._encryption_key.decrypt(value.encode("ascii")).decode("utf-8")

    def _to_connection(
        self, record: GitHubConnectionRecord
    ) -> Result[Connection, RepositoryError]:
        try:
            access_token = self._decrypt(record.access_token)
            refresh_token = self._decrypt(record.refresh_token)
        except InvalidToken as e:
            return Err(
                RepositoryError(
                    RepositoryErrorCode.UNKNOWN_ERROR,
                    f"Unable to decrypt tokens of connection {record.id}",
                    e,
                )
            )
        return Ok(
            Connection(
                id=record.id,
                user_id=record.user_id,
                access_token=access_token or "",
                refresh_token=refresh_token,
                created_at=record.created_at,
                updated_at=record.updated_at,
            )
        )

    async def create(
        self, user_id: str, tokens: TokenPair
    ) -> Result[Connection, RepositoryError]:
        now = datetime.now(timezone.utc)
        record = GitHubConnectionRecord(
            id=str(ULID()),
            user_id=user_id,
            access_token=self._encrypt(tokens.access_token),
            refresh_token=self._encrypt(tokens.refresh_token),
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._database_session_maker() as database_session:
                async with database_session.begin():
                    database_session.add(record)
        except SQLAlchemyError as e:
            return Err(
                translate_database_error(
                    e, f"Failed to create GitHub connection for user {user_id}"
                )
            )
        return self._to_connection(record)

    async def find_by_user_id(self, user_id: str) -> Result[Connection, RepositoryError]:
        stmt = select(GitHubConnectionRecord).where(
            GitHubConnectionRecord.user_id == user_id
        )
        try:
            async with self._database_session_maker() as database_session:
                record: Optional[GitHubConnectionRecord] = (
                    await database_session.scalars(stmt)
                ).first()
        except SQLAlchemyError as e:
            return Err(
                translate_database_error(
                    e, f"Failed to find GitHub connection for user {user_id}"
                )
            )
        if record is None:
            return Err(
                RepositoryError(
                    RepositoryErrorCode.NOT_FOUND,
                    f"No GitHub connection for user {user_id}",
                )
            )
        return self._to_connection(record)

    async def update(self, connection: Connection) -> Result[Connection, RepositoryError]:
        stmt = (
            update(GitHubConnectionRecord)
            .where(
                GitHubConnectionRecord.id == connection.id,
                GitHubConnectionRecord.user_id == connection.user_id,
            )
            .values(
                access_token=self._encrypt(connection.access_token),
                refresh_token=self._encrypt(connection.refresh_token),
                updated_at=datetime.now(timezone.utc),
            )
            .returning(GitHubConnectionRecord)
        )
        try:
            async with self._database_session_maker() as database_session:
                async with database_session.begin():
                    record: Optional[GitHubConnectionRecord] = (
                        await database_session.scalars(stmt)
                    ).first()
        except SQLAlchemyError as e:
            return Err(
                translate_database_error(
                    e, f"Failed to update GitHub connection {connection.id}"
                )
            )
        if record is None:
            return Err(
                RepositoryError(
                    RepositoryErrorCode.NOT_FOUND,
                    f"No GitHub connection {connection.id}",
                )
            )
        return self._to_connection(record)

    async def delete_by_user_id(self, user_id: str) -> Result[None, RepositoryError]:
        stmt = delete(GitHubConnectionRecord).where(
            GitHubConnectionRecord.user_id == user_id
        )
        try:
            async with self._database_session_maker() as database_session:
                async with database_session.begin():
                    result = await database_session.execute(stmt)
        except SQLAlchemyError as e:
            return Err(
                translate_database_error(
                    e, f"Failed to delete GitHub connection for user {user_id}"
                )
            )
        if result.rowcount == 0:
            return Err(
                RepositoryError(
                    RepositoryErrorCode.NOT_FOUND,
                    f"No GitHub connection for user {user_id}",
                )
            )
        return Ok(None)
