"""Domain values exchanged between the use cases and their adapters."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class Profile(BaseModel):
    """Public profile snapshot of a user, as published by their identity provider."""

    display_name: str = ""
    description: Optional[str] = None
    avatar_url: Optional[str] = None
    banner_url: Optional[str] = None


class ProfileUpdate(BaseModel):
    """
    Fields of a partial profile edit. Only the fields that were set replace the stored
    ones, so an omitted field keeps its value and an explicit null clears an optional
    field. ``display_name`` may change but is never null.
    """

    model_config = ConfigDict(extra="forbid")

    display_name: str = ""
    description: Optional[str] = None
    avatar_url: Optional[str] = None
    banner_url: Optional[str] = None

    def apply(self, profile: Profile) -> Profile:
        return profile.model_copy(update=self.model_dump(exclude_unset=True))


class User(BaseModel):
    """Local user record. ``did`` is the federation key and never changes."""

    model_config = ConfigDict(frozen=True)

    id: str
    did: str
    profile: Profile
    created_at: datetime
    updated_at: datetime


class TokenPair(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None


class Connection(BaseModel):
    """Delegated GitHub access stored for a user. At most one per user."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    access_token: str
    refresh_token: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class SessionData(BaseModel):
    """
    Payload of the session credential.

    Holding a readable credential does not make it currently valid; the identity provider
    is consulted again on every protected request.
    """

    did: str
    user_id: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class AuthorizationState(BaseModel):
    """
    Single-use record correlated to one in-flight AT Protocol authorization request.

    ``state`` is the anti-forgery value sent to the authorization server and echoed back
    in the callback. Everything else is what the token exchange needs to finish the
    handshake.
    """

    state: str
    issuer: str
    did: str
    handle: str
    pds: str
    token_endpoint: str
    pkce_verifier: str
    signing_key_id: str
    dpop_jwk: Dict[str, Any]
    created_at: datetime
    expires_at: datetime


class InstallationInfo(BaseModel):
    """Read-only projection of a GitHub App installation. Never persisted."""

    id: int
    account_login: str
    account_type: str
    target_type: Optional[str] = None
    repository_selection: Optional[str] = None
    html_url: Optional[str] = None
