"""
Session credential issue and verification.

The session credential is an ES256 JWT signed with the first configured service auth key
and carried in a cookie. Its claims are:

- ``sub``: the user's DID
- ``uid``: the local user id
- ``iat`` / ``exp``: issue and expiry time
- ``jti``: a unique id, so two sessions issued in the same second differ

There is no server-side session table. A credential that verifies only proves that this
service issued it; the identity provider is asked again on every protected request.
"""

from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Any, Dict

from jwcrypto import jwk, jwt
from jwcrypto.common import JWException
from ulid import ULID

from social.atmd.account.entities import SessionData
from social.atmd.account.errors import CredentialError, CredentialErrorCode
from social.atmd.account.ports import SessionContext
from social.atmd.account.result import Err, Ok, Result

logger = logging.getLogger(__name__)


class SessionManager:
    def __init__(
        self,
        json_web_keys: jwk.JWKSet,
        signing_key_id: str,
        cookie_name: str = "sid",
        ttl: int = 1209600,
    ) -> None:
        self.json_web_keys = json_web_keys
        self.signing_key_id = signing_key_id
        self.cookie_name = cookie_name
        self.ttl = ttl

    async def set(
        self, context: SessionContext, session_data: SessionData
    ) -> Result[SessionData, CredentialError]:
        """Sign a credential for ``session_data`` and attach it to the context."""
        signing_key = self.json_web_keys.get_key(self.signing_key_id)
        if signing_key is None:
            return Err(
                CredentialError(
                    CredentialErrorCode.SIGNING_FAILED,
                    f"signing key {self.signing_key_id} is not configured",
                )
            )

        now = datetime.now(timezone.utc).replace(microsecond=0)
        expires_at = now + timedelta(0, self.ttl)
        claims: Dict[str, Any] = {
            "sub": session_data.did,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": str(ULID()),
        }
        if session_data.user_id is not None:
            claims["uid"] = session_data.user_id

        try:
            token = jwt.JWT(
                header={"alg": "ES256", "kid": self.signing_key_id}, claims=claims
            )
            token.make_signed_token(signing_key)
            serialized_token = token.serialize()
        except (JWException, ValueError, TypeError) as e:
            return Err(
                CredentialError(
                    CredentialErrorCode.SIGNING_FAILED, "unable to sign credential", e
                )
            )

        context.set_cookie(self.cookie_name, serialized_token, self.ttl)
        return Ok(
            SessionData(
                did=session_data.did,
                user_id=session_data.user_id,
                issued_at=now,
                expires_at=expires_at,
            )
        )

    async def get(self, context: SessionContext) -> Result[SessionData, CredentialError]:
        """Read and verify the credential attached to the context. No network I/O."""
        serialized_token = context.get_cookie(self.cookie_name)
        if not serialized_token:
            return Err(CredentialError(CredentialErrorCode.MISSING, "no session cookie"))

        try:
            validated_token = jwt.JWT(
                jwt=serialized_token,
                key=self.json_web_keys,
                algs=["ES256"],
                check_claims={"sub": None, "exp": None},
            )
            claims: Dict[str, Any] = json.loads(validated_token.claims)
        except jwt.JWTExpired as e:
            return Err(CredentialError(CredentialErrorCode.EXPIRED, "session expired", e))
        except (JWException, ValueError, TypeError) as e:
            logger.debug("rejected session credential: %s", e)
            return Err(
                CredentialError(CredentialErrorCode.INVALID, "session credential invalid", e)
            )

        subject = claims.get("sub", None)
        if not isinstance(subject, str) or not subject:
            return Err(
                CredentialError(CredentialErrorCode.INVALID, "session credential has no subject")
            )

        now = datetime.now(timezone.utc)
        expires_at = datetime.fromtimestamp(claims["exp"], timezone.utc)
        if expires_at <= now:
            return Err(CredentialError(CredentialErrorCode.EXPIRED, "session expired"))

        issued_at = claims.get("iat", None)
        return Ok(
            SessionData(
                did=subject,
                user_id=claims.get("uid", None),
                issued_at=(
                    datetime.fromtimestamp(issued_at, timezone.utc)
                    if isinstance(issued_at, int)
                    else None
                ),
                expires_at=expires_at,
            )
        )

    async def remove(self, context: SessionContext) -> Result[None, CredentialError]:
        context.delete_cookie(self.cookie_name)
        return Ok(None)
