import sqlite3
import uuid
from typing import Any

from settlekit.db import models
from settlekit.facilitator.base import FacilitatorRequest


class NotFoundError(RuntimeError):
    pass


class InvalidStateError(RuntimeError):
    pass


def _new_settlement_id() -> str:
    return f"stl_{uuid.uuid4().hex}"


def enqueue_settlement(
    conn: sqlite3.Connection,
    facilitator_request: dict[str, Any],
    *,
    payment_attempt_id: str | None = None,
) -> models.Settlement:
    """Queue a settlement for the worker.

    A payment attempt has at most one open settlement; asking again returns it.
    Raises InvalidFacilitatorRequest when the payload could never be settled.
    """

    request = FacilitatorRequest.from_dict(facilitator_request)
    attempt_id = (payment_attempt_id or "").strip() or None

    if attempt_id is not None:
        existing = models.get_open_settlement_by_payment_attempt(conn, payment_attempt_id=attempt_id)
        if existing is not None:
            return existing

    return models.create_settlement(
        conn,
        settlement_id=_new_settlement_id(),
        facilitator_request=request.to_dict(),
        payment_attempt_id=attempt_id,
    )


def get_settlement(conn: sqlite3.Connection, settlement_id: str) -> models.Settlement:
    settlement = models.get_settlement_by_id(conn, settlement_id=settlement_id)
    if settlement is None:
        raise NotFoundError("settlement not found")
    return settlement


def retry_settlement(conn: sqlite3.Connection, settlement_id: str) -> models.Settlement:
    settlement = get_settlement(conn, settlement_id)
    if settlement.status != "failed":
        raise InvalidStateError(f"only failed settlements can be retried (status={settlement.status})")

    reset = models.reset_settlement_to_queued(conn, settlement_id=settlement_id)
    if reset is None:
        # Changed under us between the read and the conditional update.
        current = get_settlement(conn, settlement_id)
        raise InvalidStateError(f"only failed settlements can be retried (status={current.status})")
    return reset


def list_settlements(
    conn: sqlite3.Connection,
    *,
    limit: int = 100,
    status: str | None = None,
) -> list[models.Settlement]:
    if status is not None and status not in models.SETTLEMENT_STATUSES:
        raise ValueError(f"unknown settlement status: {status}")
    limit = max(1, min(int(limit), 500))
    return models.list_settlements(conn, limit=limit, status=status)


def settlement_to_dict(settlement: models.Settlement) -> dict:
    return {
        "id": settlement.id,
        "payment_attempt_id": settlement.payment_attempt_id,
        "status": settlement.status,
        "attempts": settlement.attempts,
        "last_error": settlement.last_error,
        "next_retry_at": settlement.next_retry_at,
        "locked_by": settlement.locked_by,
        "locked_at": settlement.locked_at,
        "tx_hash": settlement.tx_hash,
        "facilitator_request": settlement.facilitator_request,
        "facilitator_response": settlement.facilitator_response,
        "created_at": settlement.created_at,
        "updated_at": settlement.updated_at,
    }
