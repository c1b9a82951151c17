import asyncio

from settlekit.config import Settings, load_settings
from settlekit.db.engine import connect_sqlite, init_db
from settlekit.facilitator.client import build_facilitator_client
from settlekit.logging_config import configure_logging, get_logger
from settlekit.services.settlement_worker import SettlementWorker, WorkerOptions
from settlekit.services.webhook_dispatcher import WebhookDispatcher
from settlekit.workers.runner import install_stop_handlers

logger = get_logger(__name__)


def worker_options(settings: Settings) -> WorkerOptions:
    return WorkerOptions(
        lock_timeout_seconds=settings.lock_timeout_seconds,
        poll_interval_seconds=settings.poll_interval_ms / 1000.0,
        max_attempts=settings.max_attempts,
        base_retry_seconds=settings.base_retry_seconds,
        batch_size=settings.worker_batch_size,
    )


async def run(settings: Settings) -> None:
    conn = connect_sqlite(settings.sqlite_path)
    init_db(conn)
    facilitator = build_facilitator_client(settings)
    dispatcher = WebhookDispatcher(conn, timeout_seconds=float(settings.webhook_timeout_seconds))
    worker = SettlementWorker(conn, facilitator, options=worker_options(settings), dispatcher=dispatcher)

    try:
        if settings.run_once:
            stats = await worker.run_once()
            logger.info(
                "settlement_run_once_completed",
                selected=stats.selected,
                claimed=stats.claimed,
                confirmed=stats.confirmed,
                failed=stats.failed,
                retried=stats.retried,
            )
        else:
            stop_event = asyncio.Event()
            install_stop_handlers(stop_event)
            await worker.run_forever(stop_event)
    finally:
        await facilitator.aclose()
        await dispatcher.aclose()
        conn.close()


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
