from datetime import datetime, timezone

from pydantic import ValidationError as PydanticValidationError
import redis.asyncio as redis
from redis.exceptions import RedisError

from social.atmd.account.entities import AuthorizationState
from social.atmd.account.errors import (
    RepositoryError,
    RepositoryErrorCode,
    translate_redis_error,
)
from social.atmd.account.result import Err, Ok, Result

AUTHORIZATION_STATE_KEY_PREFIX = "auth_state:atproto:"


class RedisAuthorizationStateStore:
    """
    Authorization states kept in Redis until they are consumed or their TTL lapses.

    ``save`` uses ``SET NX EX`` so a state value can never be overwritten, and ``consume``
    uses ``GETDEL`` so that of two callbacks racing on the same state exactly one wins,
    whichever server process handles them.
    """

    def __init__(self, redis_client: redis.Redis, ttl: int = 600) -> None:
        self._redis_client = redis_client
        self._ttl = ttl

    async def save(self, state: AuthorizationState) -> Result[None, RepositoryError]:
        key = f"{AUTHORIZATION_STATE_KEY_PREFIX}{state.state}"
        try:
            stored = await self._redis_client.set(
                key, state.model_dump_json(), ex=self._ttl, nx=True
            )
        except RedisError as e:
            return Err(translate_redis_error(e, "Failed to store authorization state"))
        if not stored:
            return Err(
                RepositoryError(
                    RepositoryErrorCode.CONSTRAINT_VIOLATION,
                    "Authorization state already exists",
                )
            )
        return Ok(None)

    async def consume(self, state: str) -> Result[AuthorizationState, RepositoryError]:
        key = f"{AUTHORIZATION_STATE_KEY_PREFIX}{state}"
        try:
            raw = await self._redis_client.getdel(key)
        except RedisError as e:
            return Err(translate_redis_error(e, "Failed to consume authorization state"))
        if raw is None:
            return Err(
                RepositoryError(
                    RepositoryErrorCode.NOT_FOUND,
                    "Authorization state is unknown, expired or already used",
                )
            )
        try:
            authorization_state = AuthorizationState.model_validate_json(raw)
        except PydanticValidationError as e:
            return Err(
                RepositoryError(
                    RepositoryErrorCode.UNKNOWN_ERROR,
                    "Stored authorization state is unreadable",
                    e,
                )
            )
        if authorization_state.expires_at <= datetime.now(timezone.utc):
            return Err(
                RepositoryError(
                    RepositoryErrorCode.NOT_FOUND, "Authorization state has expired"
                )
            )
        return Ok(authorization_state)
