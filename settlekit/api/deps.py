import hmac
import sqlite3

from fastapi import Header, HTTPException, Request

from settlekit.config import Settings
from settlekit.services.webhook_dispatcher import WebhookDispatcher


def get_settings(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise RuntimeError("app settings are not initialised")
    return settings


def get_db(request: Request) -> sqlite3.Connection:
    conn = getattr(request.app.state, "db", None)
    if conn is None:
        raise RuntimeError("app database connection is not initialised")
    return conn


def get_dispatcher(request: Request) -> WebhookDispatcher:
    return request.app.state.dispatcher


def parse_bearer_token(authorization_header: str | None) -> str | None:
    if not authorization_header:
        return None
    raw = authorization_header.strip()
    prefix = "Bearer "
    if not raw.startswith(prefix):
        return None
    token = raw[len(prefix) :].strip()
    return token or None


def require_auth(
    request: Request,
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> None:
    """401 when the bearer token is missing, 403 when it does not match API_AUTH_TOKEN."""

    settings = get_settings(request)
    if not settings.api_auth_token:
        raise HTTPException(status_code=503, detail="API_AUTH_TOKEN is not configured")
    token = parse_bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="missing or malformed Authorization header (Bearer token required)")
    if not hmac.compare_digest(token.encode("utf-8"), settings.api_auth_token.encode("utf-8")):
        raise HTTPException(status_code=403, detail="invalid token")
