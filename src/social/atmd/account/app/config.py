"""
Configuration Module for the Account Service

Settings are loaded from environment variables through pydantic-settings, with defaults
suitable for local development. Shared resources and the assembled use cases are handed
to request handlers through typed AppKeys on the aiohttp application.

Key configuration areas include:
- Service identification and networking
- Database and cache connections
- Cryptographic materials (signing keys, encryption)
- Session credential and authorization state lifetimes
- GitHub App credentials
"""

import base64
from typing import Annotated, Final, List, Optional

from aio_statsd import TelegrafStatsdClient
from aiohttp import ClientSession, web
from cryptography.fernet import Fernet
from jwcrypto import jwk
from pydantic import AliasChoices, Field, PostgresDsn, RedisDsn, field_validator
from pydantic_settings import BaseSettings, NoDecode
from redis import asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from social.atmd.account.services.accounts import AccountManager
from social.atmd.account.services.authorization import AuthorizationInitiator
from social.atmd.account.services.callback import CallbackReconciler
from social.atmd.account.services.connections import ConnectionManager
from social.atmd.account.services.validation import SessionValidator
from social.atmd.account.session import SessionManager


class Settings(BaseSettings):
    """
    Application settings for the account service.

    Environment variables map onto fields by name. Aliases are provided where the
    deployment environment uses a different convention, for example the database
    connection string can be set with either PG_DSN or DATABASE_URL.
    """

    debug: bool = False
    """
    Enable debug mode for verbose logging.
    Set with DEBUG=true environment variable.
    """

    http_port: int = Field(alias="port", default=5100)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    external_hostname: str = "localhost:5100"
    """
    Public hostname for the service, used for the OAuth client id and callback URLs.
    Set with EXTERNAL_HOSTNAME environment variable.
    """

    plc_hostname: str = "plc.directory"
    """
    Hostname for the PLC directory service for DID resolution.
    Set with PLC_HOSTNAME environment variable.
    """

    appview_hostname: str = "public.api.bsky.app"
    """
    Hostname of the Bluesky AppView used to read public profiles.
    Set with APPVIEW_HOSTNAME environment variable.
    """

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/1?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string for the authorization state store.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    pg_dsn: PostgresDsn = Field(
        "postgresql+asyncpg://postgres:password@db/account",
        validation_alias=AliasChoices("pg_dsn", "database_url"),
    )  # type: ignore
    """
    PostgreSQL connection string for database access.
    Set with PG_DSN or DATABASE_URL environment variables.
    """

    json_web_keys: Annotated[jwk.JWKSet, NoDecode] = jwk.JWKSet()
    """
    JSON Web Key Set containing the signing keys.
    Can be set to a JWKSet object or path to a JSON file containing keys.
    Set with JSON_WEB_KEYS environment variable.
    """

    active_signing_keys: List[str] = list()
    """
    Key IDs (kid) from json_web_keys used for the OAuth client assertion.
    Set with ACTIVE_SIGNING_KEYS environment variable.
    """

    service_auth_keys: List[str] = list()
    """
    Key IDs (kid) from json_web_keys used to sign session credentials. The first one
    signs; all of them verify.
    Set with SERVICE_AUTH_KEYS environment variable.
    """

    encryption_key: Fernet = Fernet(Fernet.generate_key())
    """
    Fernet key used to encrypt GitHub tokens at rest.
    Can be set to a Fernet object or base64-encoded key string.
    Set with ENCRYPTION_KEY environment variable.
    """

    session_cookie_name: str = "sid"
    """Name of the cookie carrying the session credential."""

    session_ttl: int = 1209600  # 14 days
    """
    Lifetime in seconds of an issued session credential.
    Set with SESSION_TTL environment variable.
    """

    authorization_state_ttl: int = 600
    """
    Lifetime in seconds of an in-flight authorization request.
    Set with AUTHORIZATION_STATE_TTL environment variable.
    """

    provider_session_ttl: int = 86400
    """
    Hard expiry in seconds of AT Protocol tokens obtained at login. Once passed, the
    session no longer validates and the user must sign in again.
    """

    http_timeout: float = 10.0
    """Total timeout in seconds for outbound HTTP requests."""

    github_client_id: str = ""
    """GitHub App OAuth client id. Set with GITHUB_CLIENT_ID environment variable."""

    github_client_secret: str = ""
    """GitHub App OAuth client secret. Set with GITHUB_CLIENT_SECRET environment variable."""

    github_app_name: str = ""
    """GitHub App slug used to build the installation URL."""

    destination: str = "/"
    """Where the browser is sent after a successful login or GitHub connection."""

    login_path: str = "/login"
    """Where the browser is sent when a login or connection attempt fails."""

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    statsd_prefix: str = "account"
    """Prefix for all StatsD metrics from this service."""

    @field_validator("json_web_keys", mode="before")
    @classmethod
    def decode_json_web_keys(cls, v) -> jwk.JWKSet:
        """Accept a JWKSet or the path of a JSON file holding one."""
        if isinstance(v, jwk.JWKSet):
            return v
        elif isinstance(v, str):
            with open(v) as fd:
                return jwk.JWKSet.from_json(fd.read())
        raise ValueError(
            "json_web_keys must be a JWKSet object or a valid JSON file path"
        )

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v) -> Fernet:
        """Accept a Fernet instance or a base64-encoded Fernet key."""
        if isinstance(v, Fernet):
            return v
        elif isinstance(v, str):
            return Fernet(base64.b64decode(v))
        raise ValueError(
            "encryption_key must be a Fernet object or a base64-encoded key string"
        )


SettingsAppKey: Final = web.AppKey("settings", Settings)
DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
SessionAppKey: Final = web.AppKey("http_session", ClientSession)
RedisPoolAppKey: Final = web.AppKey("redis_pool", redis.ConnectionPool)
RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
TelegrafStatsdClientAppKey: Final = web.AppKey(
    "telegraf_statsd_client", TelegrafStatsdClient
)

SessionManagerAppKey: Final = web.AppKey("session_manager", SessionManager)
AuthorizationInitiatorAppKey: Final = web.AppKey(
    "authorization_initiator", AuthorizationInitiator
)
CallbackReconcilerAppKey: Final = web.AppKey("callback_reconciler", CallbackReconciler)
SessionValidatorAppKey: Final = web.AppKey("session_validator", SessionValidator)
ConnectionManagerAppKey: Final = web.AppKey("connection_manager", ConnectionManager)
AccountManagerAppKey: Final = web.AppKey("account_manager", AccountManager)
