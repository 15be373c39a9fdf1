import logging
from time import time
from typing import Optional

from aio_statsd import TelegrafStatsdClient
import aiohttp
from aiohttp import web
import redis.asyncio as redis
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from social.atmd.account.app.config import (
    AccountManagerAppKey,
    AuthorizationInitiatorAppKey,
    CallbackReconcilerAppKey,
    ConnectionManagerAppKey,
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    RedisClientAppKey,
    RedisPoolAppKey,
    SessionAppKey,
    SessionManagerAppKey,
    SessionValidatorAppKey,
    Settings,
    SettingsAppKey,
    TelegrafStatsdClientAppKey,
)
from social.atmd.account.app.handlers.account import (
    handle_delete_me,
    handle_me,
    handle_profile_sync,
    handle_profile_update,
)
from social.atmd.account.app.handlers.auth import (
    handle_atproto_callback,
    handle_atproto_client_metadata,
    handle_atproto_login,
    handle_jwks,
    handle_logout,
)
from social.atmd.account.app.handlers.github import (
    handle_github_callback,
    handle_github_connection,
    handle_github_disconnect,
    handle_github_installations,
    handle_github_start,
)
from social.atmd.account.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_ready,
)
from social.atmd.account.atproto.oauth import ATProtoIdentityProvider
from social.atmd.account.github.app import GitHubAppProvider
from social.atmd.account.repository.connections import SQLAlchemyConnectionRepository
from social.atmd.account.repository.locks import RedisRefreshLock
from social.atmd.account.repository.states import RedisAuthorizationStateStore
from social.atmd.account.repository.users import SQLAlchemyUserRepository
from social.atmd.account.services.accounts import AccountManager
from social.atmd.account.services.authorization import AuthorizationInitiator
from social.atmd.account.services.callback import CallbackReconciler
from social.atmd.account.services.connections import ConnectionManager
from social.atmd.account.services.validation import SessionValidator
from social.atmd.account.session import SessionManager

logger = logging.getLogger(__name__)


def build_services(app: web.Application) -> None:
    """Assemble the use cases from the shared resources already on the app."""
    settings: Settings = app[SettingsAppKey]

    service_auth_key_id = next(iter(settings.service_auth_keys), None)
    if service_auth_key_id is None:
        raise Exception("No service auth keys configured")

    database_session_maker = app[DatabaseSessionMakerAppKey]
    http_session = app[SessionAppKey]

    user_repository = SQLAlchemyUserRepository(database_session_maker)
    connection_repository = SQLAlchemyConnectionRepository(
        database_session_maker, settings.encryption_key
    )
    state_store = RedisAuthorizationStateStore(
        app[RedisClientAppKey], settings.authorization_state_ttl
    )
    refresh_lock = RedisRefreshLock(app[RedisClientAppKey])
    identity_provider = ATProtoIdentityProvider(
        settings, http_session, database_session_maker, refresh_lock
    )
    app_provider = GitHubAppProvider(
        http_session, settings.github_client_id, settings.github_client_secret
    )

    session_manager = SessionManager(
        settings.json_web_keys,
        service_auth_key_id,
        cookie_name=settings.session_cookie_name,
        ttl=settings.session_ttl,
    )
    app[SessionManagerAppKey] = session_manager
    app[AuthorizationInitiatorAppKey] = AuthorizationInitiator(
        identity_provider, state_store, settings.authorization_state_ttl
    )
    app[CallbackReconcilerAppKey] = CallbackReconciler(
        identity_provider, user_repository, state_store, session_manager
    )
    app[SessionValidatorAppKey] = SessionValidator(session_manager, identity_provider)
    app[ConnectionManagerAppKey] = ConnectionManager(
        app_provider,
        connection_repository,
        refresh_lock,
        settings.github_client_id,
        settings.github_app_name,
        settings.authorization_state_ttl,
    )
    app[AccountManagerAppKey] = AccountManager(
        user_repository, connection_repository, identity_provider, session_manager
    )


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(str(settings.pg_dsn))
    app[DatabaseAppKey] = engine
    app[DatabaseSessionMakerAppKey] = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logging.info(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=settings.http_timeout),
        trace_configs=[trace_config],
    )

    app[RedisPoolAppKey] = redis.ConnectionPool.from_url(str(settings.redis_dsn))
    app[RedisClientAppKey] = redis.Redis(connection_pool=app[RedisPoolAppKey])

    statsd_client = TelegrafStatsdClient(
        host=settings.statsd_host, port=settings.statsd_port, debug=settings.debug
    )
    await statsd_client.connect()
    app[TelegrafStatsdClientAppKey] = statsd_client

    build_services(app)

    logger.info("Startup complete")

    yield

    logger.info("Shutting down")

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[RedisPoolAppKey].aclose()
    await app[TelegrafStatsdClientAppKey].close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    statsd_client = request.app[TelegrafStatsdClientAppKey]
    prefix = request.app[SettingsAppKey].statsd_prefix
    request_method: str = request.method
    # Tag with the route pattern, not the raw path, to bound cardinality.
    resource = request.match_info.route.resource
    request_path = resource.canonical if resource is not None else "unmatched"

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise e
    except Exception as e:
        statsd_client.increment(
            f"{prefix}.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        statsd_client.timer(
            f"{prefix}.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        statsd_client.increment(
            f"{prefix}.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(middlewares=[statsd_middleware, sentry_middleware])

    app[SettingsAppKey] = settings

    app.add_routes(
        [
            web.get("/.well-known/jwks.json", handle_jwks),
            web.post("/auth/atproto", handle_atproto_login),
            web.get("/auth/atproto/callback", handle_atproto_callback),
            web.get("/auth/atproto/client-metadata.json", handle_atproto_client_metadata),
            web.post("/auth/logout", handle_logout),
        ]
    )

    app.add_routes(
        [
            web.get("/api/me", handle_me),
            web.delete("/api/me", handle_delete_me),
            web.patch("/api/me/profile", handle_profile_update),
            web.post("/api/me/profile/sync", handle_profile_sync),
        ]
    )

    app.add_routes(
        [
            web.get("/auth/github", handle_github_start),
            web.get("/auth/github/callback", handle_github_callback),
            web.get("/api/github/connection", handle_github_connection),
            web.delete("/api/github/connection", handle_github_disconnect),
            web.get("/api/github/installations", handle_github_installations),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
        ]
    )

    app.cleanup_ctx.append(background_tasks)

    return app
