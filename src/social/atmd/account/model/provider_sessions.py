"""AT Protocol OAuth tokens held on behalf of signed-in users."""

from typing import Any
from datetime import datetime
from sqlalchemy import DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSON, insert

from social.atmd.account.model.base import Base, str512


class ProviderSession(Base):
    """Latest AT Protocol token set for a DID.

    Written at every successful callback and consulted by session re-validation. When the
    user revokes consent at their PDS, refreshing these tokens fails and the local session
    stops validating.
    """

    __tablename__ = "provider_sessions"

    did: Mapped[str512] = mapped_column(primary_key=True)
    issuer: Mapped[str512]
    pds: Mapped[str512]
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    signing_key_id: Mapped[str512]
    dpop_jwk: Mapped[Any] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    access_token_expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    hard_expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


def upsert_provider_session_stmt(
    did: str,
    issuer: str,
    pds: str,
    access_token: str,
    refresh_token: str,
    signing_key_id: str,
    dpop_jwk: Any,
    created_at: datetime,
    access_token_expires_at: datetime,
    hard_expires_at: datetime,
):
    """Create PostgreSQL upsert statement for provider session records.

    A new login for the same DID replaces the previous token set.
    """
    values = {
        "issuer": issuer,
        "pds": pds,
        "access_token": access_token,
        "refresh_token": refresh_token,
        "signing_key_id": signing_key_id,
        "dpop_jwk": dpop_jwk,
        "created_at": created_at,
        "access_token_expires_at": access_token_expires_at,
        "hard_expires_at": hard_expires_at,
    }
    return (
        insert(ProviderSession)
        .values([{"did": did, **values}])
        .on_conflict_do_update(index_elements=["did"], set_=values)
    )
