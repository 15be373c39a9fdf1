"""User records for AT Protocol identities."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Text
from sqlalchemy.orm import Mapped, mapped_column

from social.atmd.account.entities import Profile, User
from social.atmd.account.model.base import Base, str512, str2048, ulidpk


class UserRecord(Base):
    """Local account bound to exactly one DID.

    The profile columns are a snapshot taken on first login and only change through
    explicit profile updates.
    """

    __tablename__ = "users"

    id: Mapped[ulidpk]
    did: Mapped[str512]
    display_name: Mapped[str512]
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    avatar_url: Mapped[Optional[str2048]]
    banner_url: Mapped[Optional[str2048]]
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (Index("idx_users_did", "did", unique=True),)

    def to_user(self) -> User:
        return User(
            id=self.id,
            did=self.did,
            profile=Profile(
                display_name=self.display_name,
                description=self.description,
                avatar_url=self.avatar_url,
                banner_url=self.banner_url,
            ),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
