import os
from dataclasses import dataclass
from typing import Mapping

from dotenv import load_dotenv

DEFAULT_ENV_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env"))
LEGACY_ENV_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "env", ".env"))
DEFAULT_SQLITE_PATH = "./db/settlekit.sqlite3"


class ConfigError(RuntimeError):
    pass


def _read_str_env(env: Mapping[str, str], key: str) -> str | None:
    value = (env.get(key) or "").strip()
    return value or None


def _read_bool_env(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = (env.get(key) or "").strip().lower()
    if raw == "":
        return default
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"{key} must be a boolean value")


def _read_int_env(env: Mapping[str, str], key: str, default: int, *, min_value: int) -> int:
    raw = (env.get(key) or "").strip()
    if raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be int, got: {raw!r}") from exc
    if value < min_value:
        raise ConfigError(f"{key} must be >= {min_value}, got: {value}")
    return value


@dataclass(frozen=True)
class Settings:
    sqlite_path: str
    api_auth_token: str | None = None
    facilitator_url: str | None = None
    facilitator_key: str | None = None
    network: str | None = None
    cdp_api_key_id: str | None = None
    cdp_api_key_secret: str | None = None
    verify_timeout_seconds: int = 30
    settle_timeout_seconds: int = 20
    verify_retries: int = 2
    settle_retries: int = 2
    lock_timeout_seconds: int = 300
    poll_interval_ms: int = 5000
    max_attempts: int = 5
    base_retry_seconds: int = 30
    worker_batch_size: int = 10
    run_once: bool = False
    webhook_batch_size: int = 10
    webhook_poll_interval_ms: int = 30000
    webhook_timeout_seconds: int = 10
    webhook_dispatcher_enabled: bool = False
    log_level: str = "INFO"
    log_json: bool = True

    @property
    def cdp_configured(self) -> bool:
        return bool(self.cdp_api_key_id and self.cdp_api_key_secret)


def load_settings(
    environ: Mapping[str, str] | None = None,
    *,
    env_path: str | None = None,
) -> Settings:
    if environ is None:
        if env_path is not None:
            load_dotenv(env_path)
        else:
            loaded = load_dotenv(DEFAULT_ENV_PATH)
            if not loaded:
                load_dotenv(LEGACY_ENV_PATH)
        env: Mapping[str, str] = os.environ
    else:
        env = environ

    sqlite_path = (
        _read_str_env(env, "SQLITE_PATH")
        or _read_str_env(env, "SETTLEKIT_SQLITE_PATH")
        or DEFAULT_SQLITE_PATH
    )
    facilitator_url = _read_str_env(env, "FACILITATOR_URL") or _read_str_env(env, "NEXT_PUBLIC_FACILITATOR_URL")
    cdp_api_key_id = _read_str_env(env, "CDP_API_KEY_ID")
    cdp_api_key_secret = _read_str_env(env, "CDP_API_KEY_SECRET")
    log_level = (_read_str_env(env, "LOG_LEVEL") or "INFO").upper()

    if bool(cdp_api_key_id) != bool(cdp_api_key_secret):
        raise ConfigError("CDP_API_KEY_ID and CDP_API_KEY_SECRET must be set together")
    if facilitator_url and not facilitator_url.startswith(("http://", "https://")):
        raise ConfigError(f"FACILITATOR_URL must be an http(s) URL, got: {facilitator_url!r}")
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigError(f"LOG_LEVEL must be a logging level name, got: {log_level!r}")

    return Settings(
        sqlite_path=sqlite_path,
        api_auth_token=_read_str_env(env, "API_AUTH_TOKEN"),
        facilitator_url=facilitator_url,
        facilitator_key=_read_str_env(env, "FACILITATOR_KEY"),
        network=_read_str_env(env, "NETWORK"),
        cdp_api_key_id=cdp_api_key_id,
        cdp_api_key_secret=cdp_api_key_secret,
        verify_timeout_seconds=_read_int_env(env, "FACILITATOR_VERIFY_TIMEOUT_SECONDS", 30, min_value=1),
        settle_timeout_seconds=_read_int_env(env, "FACILITATOR_SETTLE_TIMEOUT_SECONDS", 20, min_value=1),
        verify_retries=_read_int_env(env, "FACILITATOR_VERIFY_RETRIES", 2, min_value=0),
        settle_retries=_read_int_env(env, "FACILITATOR_SETTLE_RETRIES", 2, min_value=0),
        lock_timeout_seconds=_read_int_env(env, "WORKER_LOCK_TIMEOUT_SECONDS", 300, min_value=1),
        poll_interval_ms=_read_int_env(env, "POLL_INTERVAL_MS", 5000, min_value=1),
        max_attempts=_read_int_env(env, "WORKER_MAX_ATTEMPTS", 5, min_value=1),
        base_retry_seconds=_read_int_env(env, "WORKER_BASE_RETRY_SECONDS", 30, min_value=0),
        worker_batch_size=_read_int_env(env, "WORKER_BATCH_SIZE", 10, min_value=1),
        run_once=_read_bool_env(env, "RUN_ONCE", False),
        webhook_batch_size=_read_int_env(env, "WEBHOOK_BATCH_SIZE", 10, min_value=1),
        webhook_poll_interval_ms=_read_int_env(env, "WEBHOOK_POLL_INTERVAL_MS", 30000, min_value=1),
        webhook_timeout_seconds=_read_int_env(env, "WEBHOOK_TIMEOUT_SECONDS", 10, min_value=1),
        webhook_dispatcher_enabled=_read_bool_env(env, "WEBHOOK_DISPATCHER_ENABLED", False),
        log_level=log_level,
        log_json=_read_bool_env(env, "LOG_JSON", True),
    )
