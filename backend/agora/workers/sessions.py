"""Session maintenance background jobs."""

import logging

from arq import cron

from agora.config import get_settings
from agora.database import create_engine, create_session_maker
from agora.services.session_store import SessionStore, SessionStoreError
from agora.workers.settings import get_redis_settings

logger = logging.getLogger(__name__)


async def purge_expired_sessions(ctx: dict) -> dict:
    """Delete session rows whose lifetime has run out."""
    store: SessionStore = ctx["session_store"]
    try:
        removed = await store.purge_expired()
    except SessionStoreError as e:
        logger.error("Expired session purge failed: %s", e.__cause__ or e)
        return {"status": "error", "error": str(e)}

    if removed:
        logger.info(f"Purged {removed} expired session(s)")
    return {"status": "success", "removed": removed}


async def startup(ctx: dict) -> None:
    """Worker startup hook."""
    logger.info("Session worker starting up...")
    settings = get_settings()
    ctx["engine"] = create_engine(settings)
    ctx["session_store"] = SessionStore(create_session_maker(ctx["engine"]), settings)


async def shutdown(ctx: dict) -> None:
    """Worker shutdown hook."""
    logger.info("Session worker shutting down...")
    await ctx["engine"].dispose()


class WorkerSettings:
    """arq worker settings for session maintenance."""

    functions = [purge_expired_sessions]

    cron_jobs = [
        # Purge expired sessions every 15 minutes
        cron(purge_expired_sessions, minute={0, 15, 30, 45}),
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = get_redis_settings()
