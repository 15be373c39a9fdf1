"""GitHub App connection records."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from social.atmd.account.model.base import Base, ulidpk


class GitHubConnectionRecord(Base):
    """Delegated GitHub access for a user.

    Token columns hold Fernet ciphertext; the repository encrypts on write and decrypts
    on read.
    """

    __tablename__ = "github_connections"

    id: Mapped[ulidpk]
    user_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        Index("idx_github_connections_user_id", "user_id", unique=True),
    )
