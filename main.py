import asyncio
import logging
import os
import signal

# Configure logging FIRST (before any other imports that may log)
# Routes INFO/WARNING → stdout, ERROR/CRITICAL → stderr for correct container classification
from app.core.logging_config import setup_logging
setup_logging()

import config
import database
import health_server
import subscription_sweeper
from app.core.structured_logger import log_event
from app.services.notifications import service as notification_service
from panel_client import close_panel_client

# ====================================================================================
# LOGGING CONTRACT
# ====================================================================================
# Standard log fields: component, operation, correlation_id, outcome, duration_ms, reason
# - Webhooks: correlation_id per request
# - Workers: ITERATION_START / ITERATION_END per tick, no per-item spam
# - Best-effort operations: log_result() (outcome + ErrorKind)
#
# SECURITY: DO NOT log secrets, PII, or full payloads
# ====================================================================================

logger = logging.getLogger(__name__)

DB_RETRY_INTERVAL_SECONDS = 30


async def retry_db_init(on_ready) -> None:
    """
    Повторная инициализация БД каждые 30 секунд, пока DB_READY == False.
    При успехе вызывает on_ready() (запуск задач, пропущенных при старте).
    """
    logger.info(f"Starting DB initialization retry task (every {DB_RETRY_INTERVAL_SECONDS}s)")
    while not database.DB_READY:
        await asyncio.sleep(DB_RETRY_INTERVAL_SECONDS)
        try:
            if await database.init_db():
                logger.info("DATABASE RECOVERY SUCCESSFUL — starting deferred tasks")
                on_ready()
                break
            logger.warning("Database initialization retry failed, will retry later")
        except Exception as e:
            logger.warning(f"Database initialization retry error: {type(e).__name__}: {e}")
    logger.info("DB retry task finished")


async def main():
    config.validate_config()
    logger.info(f"Starting subscription ledger in {config.APP_ENV.upper()} environment")
    if not config.BOT_TOKEN:
        logger.warning("BOT_TOKEN_NOT_SET — user notifications disabled")

    background_tasks = []
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    # ====================================================================================
    # SAFE STARTUP GUARD: сервер поднимается даже без БД (/health отвечает degraded)
    # ====================================================================================
    try:
        await database.init_db()
    except Exception as e:
        logger.error(f"Database initialization failed at startup: {type(e).__name__}: {e}")

    host = os.getenv("HEALTH_SERVER_HOST", "0.0.0.0")
    runner = await health_server.start_health_server(host=host, port=config.WEBHOOK_PORT)

    def start_sweeper():
        task = asyncio.create_task(subscription_sweeper.subscription_sweeper_task(), name="subscription_sweeper")
        background_tasks.append(task)
        logger.info("Subscription sweeper task started")

    if database.DB_READY:
        start_sweeper()
    else:
        background_tasks.append(asyncio.create_task(retry_db_init(start_sweeper), name="db_retry"))

    log_event(logger, component="startup", operation="startup_completed", outcome="success")
    try:
        await stop_event.wait()
    finally:
        log_event(logger, component="shutdown", operation="shutdown_start", outcome="success")

        for task in background_tasks:
            if not task.done():
                task.cancel()
        for task in background_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Error during shutdown of task {task.get_name()}: {e}")

        try:
            await runner.cleanup()
        except Exception as e:
            logger.error(f"Error stopping HTTP server: {e}")
        try:
            await close_panel_client()
        except Exception as e:
            logger.error(f"Error closing panel client: {e}")
        try:
            await database.close_pool()
        except Exception as e:
            logger.error(f"Error closing database pool: {e}")

        bot = notification_service.get_bot()
        if bot is not None:
            try:
                await bot.session.close()
                logger.info("Bot session closed")
            except Exception as e:
                logger.debug(f"Error closing bot session: {e}")

        log_event(logger, component="shutdown", operation="shutdown_completed", outcome="success")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Сервис остановлен")
