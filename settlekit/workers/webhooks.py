import asyncio

from settlekit.config import Settings, load_settings
from settlekit.db.engine import connect_sqlite, init_db
from settlekit.logging_config import configure_logging, get_logger
from settlekit.services.webhook_dispatcher import WebhookDispatcher
from settlekit.workers.runner import install_stop_handlers

logger = get_logger(__name__)


async def run(settings: Settings) -> None:
    conn = connect_sqlite(settings.sqlite_path)
    init_db(conn)
    dispatcher = WebhookDispatcher(conn, timeout_seconds=float(settings.webhook_timeout_seconds))

    try:
        if settings.run_once:
            stats = await dispatcher.process_pending(settings.webhook_batch_size)
            logger.info(
                "webhook_run_once_completed",
                processed=stats.processed,
                succeeded=stats.succeeded,
                failed=stats.failed,
                retried=stats.retried,
            )
        else:
            stop_event = asyncio.Event()
            install_stop_handlers(stop_event)
            await dispatcher.run_forever(
                stop_event,
                batch_size=settings.webhook_batch_size,
                poll_interval_seconds=settings.webhook_poll_interval_ms / 1000.0,
            )
    finally:
        await dispatcher.aclose()
        conn.close()


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    if not settings.webhook_dispatcher_enabled:
        logger.info("webhook_dispatcher_disabled", hint="set WEBHOOK_DISPATCHER_ENABLED=true to run it")
        return
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
