import json
import sqlite3
from dataclasses import dataclass
from typing import Any

from settlekit.db.engine import utc_now_iso

SETTLEMENT_STATUSES = {"queued", "in_progress", "confirmed", "failed", "retry"}
DELIVERY_STATUSES = {"pending", "success", "retry", "failed"}


class DbError(RuntimeError):
    pass


class AlreadyExistsError(DbError):
    pass


@dataclass(frozen=True)
class Settlement:
    id: str
    payment_attempt_id: str | None
    facilitator_request: dict[str, Any]
    facilitator_response: dict[str, Any] | None
    status: str
    attempts: int
    last_error: str | None
    next_retry_at: str | None
    locked_by: str | None
    locked_at: str | None
    tx_hash: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class PaymentLog:
    id: int
    level: str
    message: str
    settlement_id: str | None
    payer_address: str | None
    tx_hash: str | None
    amount: str | None
    asset: str | None
    network: str | None
    success: bool
    response: dict[str, Any] | None
    meta: dict[str, Any]
    created_at: str


@dataclass(frozen=True)
class WebhookSubscription:
    id: str
    seller_id: str
    url: str
    events: list[str] | None
    active: bool
    secret: str
    last_delivered_at: str | None
    created_at: str
    updated_at: str

    def matches(self, event_type: str) -> bool:
        return self.active and (self.events is None or event_type in self.events)


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    event_type: str
    seller_id: str
    resource_type: str
    resource_id: str
    payload: dict[str, Any]
    created_at: str


@dataclass(frozen=True)
class WebhookDelivery:
    id: str
    webhook_subscription_id: str
    webhook_event_id: str
    status: str
    attempt_count: int
    max_attempts: int
    response_status_code: int | None
    response_body: str | None
    error_message: str | None
    next_retry_at: str | None
    delivered_at: str | None
    created_at: str
    updated_at: str


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def _loads(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def _row_to_settlement(row: sqlite3.Row) -> Settlement:
    return Settlement(
        id=str(row["id"]),
        payment_attempt_id=row["payment_attempt_id"],
        facilitator_request=_loads(row["facilitator_request"]) or {},
        facilitator_response=_loads(row["facilitator_response"]),
        status=str(row["status"]),
        attempts=int(row["attempts"]),
        last_error=row["last_error"],
        next_retry_at=row["next_retry_at"],
        locked_by=row["locked_by"],
        locked_at=row["locked_at"],
        tx_hash=row["tx_hash"],
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


def _row_to_payment_log(row: sqlite3.Row) -> PaymentLog:
    return PaymentLog(
        id=int(row["id"]),
        level=str(row["level"]),
        message=str(row["message"]),
        settlement_id=row["settlement_id"],
        payer_address=row["payer_address"],
        tx_hash=row["tx_hash"],
        amount=row["amount"],
        asset=row["asset"],
        network=row["network"],
        success=bool(row["success"]),
        response=_loads(row["response"]),
        meta=_loads(row["meta"]) or {},
        created_at=str(row["created_at"]),
    )


def _row_to_subscription(row: sqlite3.Row) -> WebhookSubscription:
    return WebhookSubscription(
        id=str(row["id"]),
        seller_id=str(row["seller_id"]),
        url=str(row["url"]),
        events=_loads(row["events"]),
        active=bool(row["active"]),
        secret=str(row["secret"]),
        last_delivered_at=row["last_delivered_at"],
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


def _row_to_event(row: sqlite3.Row) -> WebhookEvent:
    return WebhookEvent(
        id=str(row["id"]),
        event_type=str(row["event_type"]),
        seller_id=str(row["seller_id"]),
        resource_type=str(row["resource_type"]),
        resource_id=str(row["resource_id"]),
        payload=_loads(row["payload"]) or {},
        created_at=str(row["created_at"]),
    )


def _row_to_delivery(row: sqlite3.Row) -> WebhookDelivery:
    return WebhookDelivery(
        id=str(row["id"]),
        webhook_subscription_id=str(row["webhook_subscription_id"]),
        webhook_event_id=str(row["webhook_event_id"]),
        status=str(row["status"]),
        attempt_count=int(row["attempt_count"]),
        max_attempts=int(row["max_attempts"]),
        response_status_code=row["response_status_code"],
        response_body=row["response_body"],
        error_message=row["error_message"],
        next_retry_at=row["next_retry_at"],
        delivered_at=row["delivered_at"],
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


def _update_fields(
    conn: sqlite3.Connection,
    *,
    table: str,
    row_id: str,
    fields: dict[str, Any],
    forbidden: set[str],
    conditions: dict[str, Any] | None = None,
    now: str | None = None,
) -> int:
    """Single-row UPDATE keyed by id, optionally guarded by column conditions.

    Returns the number of affected rows (0 or 1) so callers can detect a lost
    compare-and-swap.
    """

    bad = forbidden.intersection(fields.keys())
    if bad:
        raise ValueError(f"forbidden fields: {sorted(bad)}")

    fields = dict(fields)
    fields["updated_at"] = now or utc_now_iso()

    columns = ", ".join([f"{k} = ?" for k in fields.keys()])
    values = list(fields.values())

    where = ["id = ?"]
    values.append(row_id)
    for key, expected in (conditions or {}).items():
        if expected is None:
            where.append(f"{key} IS NULL")
        elif isinstance(expected, (list, tuple, set, frozenset)):
            expected = list(expected)
            where.append(f"{key} IN ({', '.join('?' for _ in expected)})")
            values.extend(expected)
        else:
            where.append(f"{key} = ?")
            values.append(expected)

    cur = conn.execute(
        f"UPDATE {table} SET {columns} WHERE {' AND '.join(where)}",
        values,
    )
    conn.commit()
    return cur.rowcount


# ---------- settlements ----------


def create_settlement(
    conn: sqlite3.Connection,
    *,
    settlement_id: str,
    facilitator_request: dict[str, Any],
    payment_attempt_id: str | None = None,
    status: str = "queued",
    now: str | None = None,
) -> Settlement:
    if status not in SETTLEMENT_STATUSES:
        raise ValueError(f"unknown settlement status: {status}")
    now = now or utc_now_iso()
    try:
        conn.execute(
            """
            INSERT INTO settlements (
              id, payment_attempt_id, facilitator_request,
              status, attempts, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, 0, ?, ?)
            """,
            (
                settlement_id,
                payment_attempt_id,
                _dumps(facilitator_request),
                status,
                now,
                now,
            ),
        )
    except sqlite3.IntegrityError as exc:
        raise AlreadyExistsError(f"settlement already exists: {settlement_id}") from exc

    conn.commit()
    got = get_settlement_by_id(conn, settlement_id=settlement_id)
    if got is None:
        raise DbError("failed to read settlement after create")
    return got


def get_settlement_by_id(conn: sqlite3.Connection, *, settlement_id: str) -> Settlement | None:
    row = conn.execute("SELECT * FROM settlements WHERE id = ?", (settlement_id,)).fetchone()
    return _row_to_settlement(row) if row else None


def get_open_settlement_by_payment_attempt(
    conn: sqlite3.Connection,
    *,
    payment_attempt_id: str,
) -> Settlement | None:
    row = conn.execute(
        """
        SELECT * FROM settlements
        WHERE payment_attempt_id = ?
          AND status IN ('queued', 'retry', 'in_progress')
        ORDER BY created_at ASC
        LIMIT 1
        """,
        (payment_attempt_id,),
    ).fetchone()
    return _row_to_settlement(row) if row else None


def list_settlements(
    conn: sqlite3.Connection,
    *,
    limit: int = 100,
    status: str | None = None,
) -> list[Settlement]:
    if status is not None:
        rows = conn.execute(
            "SELECT * FROM settlements WHERE status = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (status, int(limit)),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM settlements ORDER BY created_at DESC, id DESC LIMIT ?",
            (int(limit),),
        ).fetchall()
    return [_row_to_settlement(row) for row in rows]


def reclaim_stale_settlements(conn: sqlite3.Connection, *, cutoff: str, now: str) -> int:
    cur = conn.execute(
        """
        UPDATE settlements
        SET status = 'retry', locked_by = NULL, locked_at = NULL,
            next_retry_at = NULL, updated_at = ?
        WHERE status = 'in_progress' AND locked_at <= ?
        """,
        (now, cutoff),
    )
    conn.commit()
    return cur.rowcount


def select_due_settlements(conn: sqlite3.Connection, *, now: str, limit: int) -> list[Settlement]:
    rows = conn.execute(
        """
        SELECT * FROM settlements
        WHERE status IN ('queued', 'retry')
          AND (next_retry_at IS NULL OR next_retry_at <= ?)
        ORDER BY created_at ASC, id ASC
        LIMIT ?
        """,
        (now, int(limit)),
    ).fetchall()
    return [_row_to_settlement(row) for row in rows]


def claim_settlement(
    conn: sqlite3.Connection,
    *,
    settlement_id: str,
    expected_status: str,
    worker_id: str,
    now: str,
) -> Settlement | None:
    """Atomically move a row to in_progress if its status is still `expected_status`.

    Returns None when another worker got there first.
    """

    affected = _update_fields(
        conn,
        table="settlements",
        row_id=settlement_id,
        fields={
            "status": "in_progress",
            "locked_by": worker_id,
            "locked_at": now,
            "next_retry_at": None,
        },
        forbidden=set(),
        conditions={"status": expected_status},
        now=now,
    )
    if affected != 1:
        return None
    return get_settlement_by_id(conn, settlement_id=settlement_id)


def update_locked_settlement(
    conn: sqlite3.Connection,
    *,
    settlement_id: str,
    worker_id: str,
    fields: dict[str, Any],
    now: str | None = None,
) -> bool:
    """Write an outcome for a row this worker still holds. Locks are always released."""

    fields = dict(fields)
    if "facilitator_response" in fields and fields["facilitator_response"] is not None:
        fields["facilitator_response"] = _dumps(fields["facilitator_response"])
    fields["locked_by"] = None
    fields["locked_at"] = None
    affected = _update_fields(
        conn,
        table="settlements",
        row_id=settlement_id,
        fields=fields,
        forbidden={"id", "created_at", "facilitator_request", "payment_attempt_id"},
        conditions={"status": "in_progress", "locked_by": worker_id},
        now=now,
    )
    return affected == 1


def reset_settlement_to_queued(
    conn: sqlite3.Connection,
    *,
    settlement_id: str,
    now: str | None = None,
) -> Settlement | None:
    affected = _update_fields(
        conn,
        table="settlements",
        row_id=settlement_id,
        fields={
            "status": "queued",
            "attempts": 0,
            "last_error": None,
            "next_retry_at": None,
            "locked_by": None,
            "locked_at": None,
        },
        forbidden=set(),
        conditions={"status": "failed"},
        now=now,
    )
    if affected != 1:
        return None
    return get_settlement_by_id(conn, settlement_id=settlement_id)


def insert_payment_log(
    conn: sqlite3.Connection,
    *,
    level: str,
    message: str,
    settlement_id: str | None,
    payer_address: str | None,
    tx_hash: str | None,
    amount: str | None,
    asset: str | None,
    network: str | None,
    success: bool,
    response: dict[str, Any] | None,
    meta: dict[str, Any],
) -> None:
    conn.execute(
        """
        INSERT INTO payment_logs (
          level, message, settlement_id, payer_address, tx_hash,
          amount, asset, network, success, response, meta, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            level,
            message,
            settlement_id,
            payer_address,
            tx_hash,
            amount,
            asset,
            network,
            1 if success else 0,
            _dumps(response) if response is not None else None,
            _dumps(meta),
            utc_now_iso(),
        ),
    )
    conn.commit()


def list_payment_logs(conn: sqlite3.Connection, *, settlement_id: str) -> list[PaymentLog]:
    rows = conn.execute(
        "SELECT * FROM payment_logs WHERE settlement_id = ? ORDER BY id ASC",
        (settlement_id,),
    ).fetchall()
    return [_row_to_payment_log(row) for row in rows]


# ---------- webhook subscriptions ----------


def create_webhook_subscription(
    conn: sqlite3.Connection,
    *,
    subscription_id: str,
    seller_id: str,
    url: str,
    events: list[str] | None,
    active: bool,
    secret: str,
) -> WebhookSubscription:
    now = utc_now_iso()
    try:
        conn.execute(
            """
            INSERT INTO webhook_subscriptions (
              id, seller_id, url, events, active, secret,
              last_delivered_at, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?)
            """,
            (
                subscription_id,
                seller_id,
                url,
                _dumps(events) if events is not None else None,
                1 if active else 0,
                secret,
                now,
                now,
            ),
        )
    except sqlite3.IntegrityError as exc:
        raise AlreadyExistsError(f"webhook subscription already exists: {subscription_id}") from exc

    conn.commit()
    got = get_webhook_subscription(conn, subscription_id=subscription_id)
    if got is None:
        raise DbError("failed to read webhook subscription after create")
    return got


def get_webhook_subscription(conn: sqlite3.Connection, *, subscription_id: str) -> WebhookSubscription | None:
    row = conn.execute("SELECT * FROM webhook_subscriptions WHERE id = ?", (subscription_id,)).fetchone()
    return _row_to_subscription(row) if row else None


def list_webhook_subscriptions(conn: sqlite3.Connection, *, seller_id: str) -> list[WebhookSubscription]:
    rows = conn.execute(
        "SELECT * FROM webhook_subscriptions WHERE seller_id = ? ORDER BY created_at DESC, id DESC",
        (seller_id,),
    ).fetchall()
    return [_row_to_subscription(row) for row in rows]


def list_subscriptions_for_event(
    conn: sqlite3.Connection,
    *,
    seller_id: str,
    event_type: str,
) -> list[WebhookSubscription]:
    rows = conn.execute(
        """
        SELECT * FROM webhook_subscriptions
        WHERE seller_id = ? AND active = 1
        ORDER BY created_at ASC, id ASC
        """,
        (seller_id,),
    ).fetchall()
    subscriptions = [_row_to_subscription(row) for row in rows]
    return [sub for sub in subscriptions if sub.matches(event_type)]


def update_webhook_subscription_fields(
    conn: sqlite3.Connection,
    *,
    subscription_id: str,
    fields: dict[str, Any],
) -> WebhookSubscription:
    fields = dict(fields)
    if "active" in fields:
        fields["active"] = 1 if fields["active"] else 0
    if "events" in fields and fields["events"] is not None:
        fields["events"] = _dumps(fields["events"])

    affected = _update_fields(
        conn,
        table="webhook_subscriptions",
        row_id=subscription_id,
        fields=fields,
        forbidden={"id", "seller_id", "secret", "created_at"},
    )
    if affected != 1:
        raise DbError(f"webhook subscription not found: {subscription_id}")

    got = get_webhook_subscription(conn, subscription_id=subscription_id)
    if got is None:
        raise DbError("failed to read webhook subscription after update")
    return got


def delete_webhook_subscription(conn: sqlite3.Connection, *, subscription_id: str) -> bool:
    cur = conn.execute("DELETE FROM webhook_subscriptions WHERE id = ?", (subscription_id,))
    conn.commit()
    return cur.rowcount == 1


# ---------- webhook events ----------


def create_webhook_event(
    conn: sqlite3.Connection,
    *,
    event_id: str,
    event_type: str,
    seller_id: str,
    resource_type: str,
    resource_id: str,
    payload: dict[str, Any],
) -> WebhookEvent:
    now = utc_now_iso()
    try:
        conn.execute(
            """
            INSERT INTO webhook_events (
              id, event_type, seller_id, resource_type, resource_id, payload, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (event_id, event_type, seller_id, resource_type, resource_id, _dumps(payload), now),
        )
    except sqlite3.IntegrityError as exc:
        raise AlreadyExistsError(f"webhook event already exists: {event_id}") from exc

    conn.commit()
    got = get_webhook_event(conn, event_id=event_id)
    if got is None:
        raise DbError("failed to read webhook event after create")
    return got


def get_webhook_event(conn: sqlite3.Connection, *, event_id: str) -> WebhookEvent | None:
    row = conn.execute("SELECT * FROM webhook_events WHERE id = ?", (event_id,)).fetchone()
    return _row_to_event(row) if row else None


# ---------- webhook deliveries ----------


def create_webhook_delivery(
    conn: sqlite3.Connection,
    *,
    delivery_id: str,
    webhook_subscription_id: str,
    webhook_event_id: str,
    max_attempts: int = 5,
) -> WebhookDelivery:
    now = utc_now_iso()
    try:
        conn.execute(
            """
            INSERT INTO webhook_deliveries (
              id, webhook_subscription_id, webhook_event_id, status,
              attempt_count, max_attempts, created_at, updated_at
            )
            VALUES (?, ?, ?, 'pending', 0, ?, ?, ?)
            """,
            (delivery_id, webhook_subscription_id, webhook_event_id, int(max_attempts), now, now),
        )
    except sqlite3.IntegrityError as exc:
        raise AlreadyExistsError(f"webhook delivery already exists: {delivery_id}") from exc

    conn.commit()
    got = get_webhook_delivery(conn, delivery_id=delivery_id)
    if got is None:
        raise DbError("failed to read webhook delivery after create")
    return got


def get_webhook_delivery(conn: sqlite3.Connection, *, delivery_id: str) -> WebhookDelivery | None:
    row = conn.execute("SELECT * FROM webhook_deliveries WHERE id = ?", (delivery_id,)).fetchone()
    return _row_to_delivery(row) if row else None


def list_webhook_deliveries(conn: sqlite3.Connection, *, webhook_event_id: str) -> list[WebhookDelivery]:
    rows = conn.execute(
        "SELECT * FROM webhook_deliveries WHERE webhook_event_id = ? ORDER BY created_at ASC, id ASC",
        (webhook_event_id,),
    ).fetchall()
    return [_row_to_delivery(row) for row in rows]


def list_due_webhook_deliveries(conn: sqlite3.Connection, *, now: str, limit: int) -> list[WebhookDelivery]:
    rows = conn.execute(
        """
        SELECT * FROM webhook_deliveries
        WHERE status IN ('pending', 'retry')
          AND (next_retry_at IS NULL OR next_retry_at <= ?)
        ORDER BY created_at ASC, id ASC
        LIMIT ?
        """,
        (now, int(limit)),
    ).fetchall()
    return [_row_to_delivery(row) for row in rows]


def lease_webhook_delivery(
    conn: sqlite3.Connection,
    *,
    delivery: WebhookDelivery,
    lease_until: str,
    now: str,
) -> bool:
    """Push a due delivery's next_retry_at forward so no other dispatcher picks it up.

    Guarded on the status and attempt_count that were read, so of two racing
    dispatchers only one sees an affected row.
    """

    cur = conn.execute(
        """
        UPDATE webhook_deliveries
        SET next_retry_at = ?, updated_at = ?
        WHERE id = ?
          AND status = ?
          AND attempt_count = ?
          AND (next_retry_at IS NULL OR next_retry_at <= ?)
        """,
        (lease_until, now, delivery.id, delivery.status, delivery.attempt_count, now),
    )
    conn.commit()
    return cur.rowcount == 1


def update_webhook_delivery_fields(
    conn: sqlite3.Connection,
    *,
    delivery_id: str,
    fields: dict[str, Any],
    now: str | None = None,
) -> WebhookDelivery:
    status = fields.get("status")
    if status is not None and status not in DELIVERY_STATUSES:
        raise ValueError(f"unknown delivery status: {status}")

    affected = _update_fields(
        conn,
        table="webhook_deliveries",
        row_id=delivery_id,
        fields=fields,
        forbidden={"id", "webhook_subscription_id", "webhook_event_id", "created_at"},
        now=now,
    )
    if affected != 1:
        raise DbError(f"webhook delivery not found: {delivery_id}")

    got = get_webhook_delivery(conn, delivery_id=delivery_id)
    if got is None:
        raise DbError("failed to read webhook delivery after update")
    return got
