from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from settlekit.api.routes.health import router as health_router
from settlekit.api.routes.settlements import router as settlements_router
from settlekit.api.routes.webhooks import router as webhooks_router
from settlekit.config import Settings, load_settings
from settlekit.db.engine import connect_sqlite, init_db
from settlekit.logging_config import get_logger
from settlekit.services.webhook_dispatcher import WebhookDispatcher

logger = get_logger(__name__)


def create_app(settings: Settings, *, http_client: httpx.AsyncClient | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        conn = connect_sqlite(settings.sqlite_path)
        init_db(conn)
        app.state.db = conn
        app.state.settings = settings
        app.state.dispatcher = WebhookDispatcher(
            conn,
            client=http_client,
            timeout_seconds=float(settings.webhook_timeout_seconds),
        )
        if not settings.api_auth_token:
            logger.warning("api_auth_token_missing", detail="authenticated routes will answer 503")
        logger.info("api_started", sqlite_path=settings.sqlite_path)

        try:
            yield
        finally:
            await app.state.dispatcher.aclose()
            conn.close()
            logger.info("api_stopped")

    app = FastAPI(title="settlekit", version="0.1.0", lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(settlements_router)
    app.include_router(webhooks_router)
    return app


def build_app() -> FastAPI:
    settings = load_settings()
    return create_app(settings)
