import os
import sqlite3
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def utc_now_iso() -> str:
    return to_iso(utc_now())


def connect_sqlite(sqlite_path: str) -> sqlite3.Connection:
    if sqlite_path != ":memory:":
        parent = os.path.dirname(os.path.abspath(sqlite_path))
        if parent and not os.path.exists(parent):
            os.makedirs(parent, exist_ok=True)

    conn = sqlite3.connect(sqlite_path, check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row

    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    conn.execute("PRAGMA busy_timeout = 30000;")

    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS settlements (
          id TEXT PRIMARY KEY,
          payment_attempt_id TEXT,
          facilitator_request TEXT NOT NULL,
          facilitator_response TEXT,
          status TEXT NOT NULL,
          attempts INTEGER NOT NULL DEFAULT 0,
          last_error TEXT,
          next_retry_at TEXT,
          locked_by TEXT,
          locked_at TEXT,
          tx_hash TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_settlements_status ON settlements(status, next_retry_at);
        CREATE INDEX IF NOT EXISTS idx_settlements_payment_attempt ON settlements(payment_attempt_id);

        CREATE TABLE IF NOT EXISTS payment_logs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          level TEXT NOT NULL,
          message TEXT NOT NULL,
          settlement_id TEXT,
          payer_address TEXT,
          tx_hash TEXT,
          amount TEXT,
          asset TEXT,
          network TEXT,
          success INTEGER NOT NULL,
          response TEXT,
          meta TEXT NOT NULL,
          created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_payment_logs_settlement ON payment_logs(settlement_id);

        CREATE TABLE IF NOT EXISTS webhook_subscriptions (
          id TEXT PRIMARY KEY,
          seller_id TEXT NOT NULL,
          url TEXT NOT NULL,
          events TEXT,
          active INTEGER NOT NULL DEFAULT 1,
          secret TEXT NOT NULL,
          last_delivered_at TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_webhook_subscriptions_seller ON webhook_subscriptions(seller_id, active);

        CREATE TABLE IF NOT EXISTS webhook_events (
          id TEXT PRIMARY KEY,
          event_type TEXT NOT NULL,
          seller_id TEXT NOT NULL,
          resource_type TEXT NOT NULL,
          resource_id TEXT NOT NULL,
          payload TEXT NOT NULL,
          created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS webhook_deliveries (
          id TEXT PRIMARY KEY,
          webhook_subscription_id TEXT NOT NULL,
          webhook_event_id TEXT NOT NULL,
          status TEXT NOT NULL,
          attempt_count INTEGER NOT NULL DEFAULT 0,
          max_attempts INTEGER NOT NULL DEFAULT 5,
          response_status_code INTEGER,
          response_body TEXT,
          error_message TEXT,
          next_retry_at TEXT,
          delivered_at TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_webhook_deliveries_status ON webhook_deliveries(status, next_retry_at);
        """
    )
    conn.commit()
