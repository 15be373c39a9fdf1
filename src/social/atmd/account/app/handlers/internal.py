import logging

from aiohttp import web
from redis.exceptions import RedisError
import sentry_sdk
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from social.atmd.account.app.config import DatabaseSessionMakerAppKey, RedisClientAppKey

logger = logging.getLogger(__name__)


async def handle_internal_ready(request: web.Request):
    """Ready when both the database and Redis answer."""
    try:
        await request.app[RedisClientAppKey].ping()
        async with request.app[DatabaseSessionMakerAppKey]() as database_session:
            await database_session.execute(text("SELECT 1"))
    except (RedisError, SQLAlchemyError, OSError) as e:
        logger.warning("readiness check failed: %s", e)
        sentry_sdk.capture_exception(e)
        return web.Response(status=503)
    return web.Response(status=200)


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)
