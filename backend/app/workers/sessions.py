"""Session housekeeping background jobs."""

import logging

from arq import cron

from app.config import get_settings
from app.context import build_context
from app.services.session_store import SessionStore
from app.workers.settings import get_redis_settings, sweep_minutes

logger = logging.getLogger(__name__)

settings = get_settings()


async def sweep_expired_sessions(ctx: dict) -> dict:
    """Delete sessions past their expiry. Cache entries age out on their own TTL."""
    context = ctx["context"]
    async with context.database.session() as db:
        store = SessionStore(
            db, context.cache, context.tokens, refresh_ttl=context.settings.refresh_token_ttl
        )
        try:
            removed = await store.sweep_expired()
        except Exception:
            logger.exception("Expired session sweep failed")
            raise

    logger.info(f"Session sweep complete: {removed} removed")
    return {"removed": removed}


async def startup(ctx: dict) -> None:
    """Worker startup hook."""
    logger.info("Session worker starting up...")
    context = build_context(settings)
    await context.connect()
    ctx["context"] = context


async def shutdown(ctx: dict) -> None:
    """Worker shutdown hook."""
    logger.info("Session worker shutting down...")
    context = ctx.get("context")
    if context is not None:
        await context.close()


class WorkerSettings:
    """arq worker settings for session housekeeping."""

    functions = [sweep_expired_sessions]

    cron_jobs = [
        cron(
            sweep_expired_sessions,
            minute=sweep_minutes(settings.session_sweep_interval_minutes),
            run_at_startup=True,
        ),
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = get_redis_settings(settings)

    # Worker configuration
    max_jobs = 2
    job_timeout = 300
    max_tries = 3
    health_check_interval = 30

    queue_name = "arq:sessions"
