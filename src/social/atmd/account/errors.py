"""
Error taxonomy and translation.

Adapters translate library exceptions into ``ExternalServiceError``, ``RepositoryError``
or ``CredentialError`` at their boundary. Use cases wrap those lower-level errors in an
``AccountError`` subclass, keeping the original as ``__cause__`` so callers can tell
bad authentication apart from infrastructure failure.
"""

import asyncio
from enum import Enum
from typing import Optional

from aiohttp import ClientError, ClientResponseError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError
from sqlalchemy.exc import (
    IntegrityError,
    InterfaceError,
    NoResultFound,
    OperationalError,
    SQLAlchemyError,
)


class ExternalServiceErrorCode(str, Enum):
    REQUEST_FAILED = "request_failed"
    RESPONSE_INVALID = "response_invalid"
    SERVICE_UNAVAILABLE = "service_unavailable"
    RATE_LIMITED = "rate_limited"
    AUTHENTICATION_FAILED = "authentication_failed"
    PROFILE_RETRIEVAL_FAILED = "profile_retrieval_failed"
    UNEXPECTED_ERROR = "unexpected_error"


class RepositoryErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    CONSTRAINT_VIOLATION = "constraint_violation"
    CONNECTION_ERROR = "connection_error"
    UNKNOWN_ERROR = "unknown_error"


class CredentialErrorCode(str, Enum):
    MISSING = "missing"
    INVALID = "invalid"
    EXPIRED = "expired"
    SIGNING_FAILED = "signing_failed"


class ExternalServiceError(Exception):
    """A call to an external provider failed."""

    def __init__(
        self,
        provider: str,
        code: ExternalServiceErrorCode,
        message: str,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(f"{provider} {code.value}: {message}")
        self.provider = provider
        self.code = code
        self.message = message
        self.__cause__ = cause


class RepositoryError(Exception):
    """A persistence operation failed."""

    def __init__(
        self,
        code: RepositoryErrorCode,
        message: str,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(f"{code.value}: {message}")
        self.code = code
        self.message = message
        self.__cause__ = cause


class CredentialError(Exception):
    """The session credential is missing, unreadable or could not be issued."""

    def __init__(
        self,
        code: CredentialErrorCode,
        message: str,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(f"{code.value}: {message}")
        self.code = code
        self.message = message
        self.__cause__ = cause


class ValidationError(Exception):
    """Input rejected before any I/O took place."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class AccountError(Exception):
    """
    Base class for use case failures.

    Each subclass carries a stable error code so that log lines and API responses can be
    correlated without parsing messages. The lower-level error is always kept as the
    cause.
    """

    code = "error-account-1999"

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"{self.code} {message}")
        self.message = message
        self.__cause__ = cause

    @property
    def cause(self) -> Optional[BaseException]:
        return self.__cause__


class AuthorizationFailed(AccountError):
    code = "error-account-1000"


class CallbackFailed(AccountError):
    code = "error-account-1001"


class SessionCreationFailed(AccountError):
    code = "error-account-1002"


class SessionNotFound(AccountError):
    code = "error-account-1003"


class SessionValidationFailed(AccountError):
    code = "error-account-1004"


class SessionRevocationFailed(AccountError):
    code = "error-account-1005"


class GitHubConnectionFailed(AccountError):
    code = "error-account-1100"


class GitHubConnectionNotFound(AccountError):
    code = "error-account-1101"


class GitHubDisconnectionFailed(AccountError):
    code = "error-account-1102"


class GitHubRefreshFailed(AccountError):
    code = "error-account-1103"


class GitHubInstallationsFailed(AccountError):
    code = "error-account-1104"


class UserNotFound(AccountError):
    code = "error-account-1200"


class UpdateFailed(AccountError):
    code = "error-account-1201"


class DeleteFailed(AccountError):
    code = "error-account-1202"


def translate_database_error(exc: SQLAlchemyError, message: str) -> RepositoryError:
    """Map a SQLAlchemy exception onto the repository error codes."""
    if isinstance(exc, IntegrityError):
        return RepositoryError(RepositoryErrorCode.CONSTRAINT_VIOLATION, message, exc)
    if isinstance(exc, NoResultFound):
        return RepositoryError(RepositoryErrorCode.NOT_FOUND, message, exc)
    if isinstance(exc, (OperationalError, InterfaceError)):
        return RepositoryError(RepositoryErrorCode.CONNECTION_ERROR, message, exc)
    return RepositoryError(RepositoryErrorCode.UNKNOWN_ERROR, message, exc)


def translate_redis_error(exc: RedisError, message: str) -> RepositoryError:
    """Map a redis-py exception onto the repository error codes."""
    if isinstance(exc, (RedisConnectionError, RedisTimeoutError)):
        return RepositoryError(RepositoryErrorCode.CONNECTION_ERROR, message, exc)
    return RepositoryError(RepositoryErrorCode.UNKNOWN_ERROR, message, exc)


def status_error_code(status: int) -> ExternalServiceErrorCode:
    """Classify a non-success HTTP status returned by a provider."""
    if status in (401, 403):
        return ExternalServiceErrorCode.AUTHENTICATION_FAILED
    if status == 429:
        return ExternalServiceErrorCode.RATE_LIMITED
    if status >= 500:
        return ExternalServiceErrorCode.SERVICE_UNAVAILABLE
    return ExternalServiceErrorCode.REQUEST_FAILED


def translate_http_error(
    provider: str, exc: BaseException, message: str
) -> ExternalServiceError:
    """Map an aiohttp or timeout exception onto the external service error codes."""
    if isinstance(exc, ClientResponseError):
        return ExternalServiceError(provider, status_error_code(exc.status), message, exc)
    if isinstance(exc, (ClientError, asyncio.TimeoutError)):
        return ExternalServiceError(
            provider, ExternalServiceErrorCode.REQUEST_FAILED, message, exc
        )
    return ExternalServiceError(
        provider, ExternalServiceErrorCode.UNEXPECTED_ERROR, message, exc
    )
