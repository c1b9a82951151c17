"""
Settlement queue worker.

Each cycle reclaims rows whose lock has gone stale, selects due rows, claims them
one at a time with a conditional update and drives each through the
facilitator's settle call. Any number of workers may share one database: a
claim only succeeds if the row still has the status the worker read.

    queued -> in_progress -> confirmed | failed | retry
    retry  -> in_progress -> ...
    in_progress (lock older than lock_timeout) -> retry
"""

import asyncio
import os
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from eth_utils import is_address, to_checksum_address

from settlekit.db import models
from settlekit.db.engine import to_iso, utc_now
from settlekit.facilitator.base import (
    FacilitatorClient,
    FacilitatorConfigError,
    FacilitatorRequest,
    InvalidFacilitatorRequest,
    SettleResult,
)
from settlekit.logging_config import get_logger
from settlekit.services.webhook_dispatcher import WebhookDispatcher

logger = get_logger(__name__)

LOCK_LOST = "lock_lost"


@dataclass(frozen=True)
class WorkerOptions:
    lock_timeout_seconds: int = 300
    poll_interval_seconds: float = 5.0
    max_attempts: int = 5
    base_retry_seconds: int = 30
    batch_size: int = 10


@dataclass
class CycleStats:
    reclaimed: int = 0
    selected: int = 0
    claimed: int = 0
    confirmed: int = 0
    failed: int = 0
    retried: int = 0
    lock_lost: int = 0


def backoff_seconds(attempts: int, base_retry_seconds: int) -> int:
    return attempts * attempts * base_retry_seconds


def seller_id_for(request: dict[str, Any]) -> str | None:
    requirements = request.get("paymentRequirements")
    if not isinstance(requirements, dict):
        return None
    pay_to = str(requirements.get("payTo") or "").strip()
    if not pay_to:
        return None
    if is_address(pay_to):
        return to_checksum_address(pay_to)
    return pay_to


def new_worker_id() -> str:
    return f"worker-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class SettlementWorker:
    def __init__(
        self,
        conn: sqlite3.Connection,
        facilitator: FacilitatorClient,
        *,
        options: WorkerOptions | None = None,
        worker_id: str | None = None,
        dispatcher: WebhookDispatcher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.conn = conn
        self.facilitator = facilitator
        self.options = options or WorkerOptions()
        self.worker_id = worker_id or new_worker_id()
        self.dispatcher = dispatcher
        self._clock = clock
        self.log = get_logger(__name__, worker_id=self.worker_id)

    async def run_once(self) -> CycleStats:
        stats = CycleStats()
        now = self._clock()

        try:
            stats.reclaimed = models.reclaim_stale_settlements(
                self.conn,
                cutoff=to_iso(now - timedelta(seconds=self.options.lock_timeout_seconds)),
                now=to_iso(now),
            )
            if stats.reclaimed:
                self.log.warning("settlements_reclaimed", count=stats.reclaimed)
        except sqlite3.Error as exc:
            self.log.error("settlement_reclaim_failed", error=str(exc))

        due = models.select_due_settlements(self.conn, now=to_iso(now), limit=self.options.batch_size)
        stats.selected = len(due)

        for settlement in due:
            outcome = await self.process(settlement)
            if outcome is None:
                continue
            stats.claimed += 1
            if outcome == "confirmed":
                stats.confirmed += 1
            elif outcome == "failed":
                stats.failed += 1
            elif outcome == LOCK_LOST:
                stats.lock_lost += 1
            else:
                stats.retried += 1

        return stats

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        self.log.info(
            "settlement_worker_started",
            poll_interval_seconds=self.options.poll_interval_seconds,
            batch_size=self.options.batch_size,
        )
        while not stop_event.is_set():
            try:
                stats = await self.run_once()
                if stats.selected:
                    self.log.info(
                        "settlement_cycle_completed",
                        selected=stats.selected,
                        claimed=stats.claimed,
                        confirmed=stats.confirmed,
                        failed=stats.failed,
                        retried=stats.retried,
                        lock_lost=stats.lock_lost,
                    )
            except Exception as exc:  # noqa: BLE001
                self.log.exception("settlement_cycle_error", error=str(exc))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.options.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
        self.log.info("settlement_worker_stopped")

    async def process(self, settlement: models.Settlement) -> str | None:
        """Claim and settle one row.

        Returns the recorded status, LOCK_LOST if another worker took the row
        before the outcome was written, or None if the claim itself was lost.
        """

        claimed = models.claim_settlement(
            self.conn,
            settlement_id=settlement.id,
            expected_status=settlement.status,
            worker_id=self.worker_id,
            now=to_iso(self._clock()),
        )
        if claimed is None:
            return None

        log = self.log.bind(settlement_id=claimed.id, attempt=claimed.attempts + 1)
        log.info("settlement_claimed")

        try:
            request = FacilitatorRequest.from_dict(claimed.facilitator_request)
            result = await self.facilitator.settle(request, idempotency_key=claimed.id)
        except (InvalidFacilitatorRequest, FacilitatorConfigError) as exc:
            log.error("settlement_unprocessable", error=str(exc), error_type=type(exc).__name__)
            return self._record_error(claimed, exc, retryable=False)
        except Exception as exc:  # noqa: BLE001
            log.warning("settlement_attempt_failed", error=str(exc), error_type=type(exc).__name__)
            return self._record_error(claimed, exc, retryable=True)

        return self._record_result(claimed, request, result)

    def _record_result(
        self,
        settlement: models.Settlement,
        request: FacilitatorRequest,
        result: SettleResult,
    ) -> str:
        status = "confirmed" if result.success else "failed"
        tx_hash = getattr(result, "transaction", None)
        last_error = None if result.success else getattr(result, "reason", None)

        written = models.update_locked_settlement(
            self.conn,
            settlement_id=settlement.id,
            worker_id=self.worker_id,
            fields={
                "status": status,
                "facilitator_response": result.raw,
                "tx_hash": tx_hash,
                "attempts": settlement.attempts + 1,
                "last_error": last_error,
                "next_retry_at": None,
            },
            now=to_iso(self._clock()),
        )

        self._write_payment_log(settlement, request, result)

        if not written:
            self.log.warning("settlement_lock_lost", settlement_id=settlement.id, outcome=status)
            return LOCK_LOST

        self.log.info(
            "settlement_recorded",
            settlement_id=settlement.id,
            status=status,
            tx_hash=tx_hash,
            reason=last_error,
        )
        self._emit_event(
            settlement,
            event_type=f"settlement.{status}",
            extra={
                "tx_hash": tx_hash,
                "network": result.network,
                "payer": result.payer,
                "error": last_error,
            },
        )
        return status

    def _record_error(self, settlement: models.Settlement, exc: Exception, *, retryable: bool) -> str:
        attempts = settlement.attempts + 1
        now = self._clock()
        if retryable and attempts < self.options.max_attempts:
            status = "retry"
            next_retry_at = to_iso(now + timedelta(seconds=backoff_seconds(attempts, self.options.base_retry_seconds)))
        else:
            status = "failed"
            next_retry_at = None

        written = models.update_locked_settlement(
            self.conn,
            settlement_id=settlement.id,
            worker_id=self.worker_id,
            fields={
                "status": status,
                "attempts": attempts,
                "last_error": str(exc) or type(exc).__name__,
                "next_retry_at": next_retry_at,
            },
            now=to_iso(now),
        )
        if not written:
            self.log.warning("settlement_lock_lost", settlement_id=settlement.id, outcome=status)
            return LOCK_LOST

        self.log.info(
            "settlement_rescheduled" if status == "retry" else "settlement_given_up",
            settlement_id=settlement.id,
            attempts=attempts,
            max_attempts=self.options.max_attempts,
            next_retry_at=next_retry_at,
        )
        if status == "failed":
            self._emit_event(settlement, event_type="settlement.failed", extra={"error": str(exc)})
        return status

    def _write_payment_log(
        self,
        settlement: models.Settlement,
        request: FacilitatorRequest,
        result: SettleResult,
    ) -> None:
        requirements = request.payment_requirements
        try:
            models.insert_payment_log(
                self.conn,
                level="info" if result.success else "warning",
                message="settlement_success" if result.success else "settlement_failed",
                settlement_id=settlement.id,
                payer_address=result.payer,
                tx_hash=getattr(result, "transaction", None),
                amount=_opt_str(requirements.get("maxAmountRequired")),
                asset=_opt_str(requirements.get("asset")),
                network=result.network,
                success=result.success,
                response=result.raw,
                meta={"worker_id": self.worker_id, "worker_run_at": to_iso(self._clock())},
            )
        except sqlite3.Error as exc:
            self.log.error("payment_log_write_failed", settlement_id=settlement.id, error=str(exc))

    def _emit_event(self, settlement: models.Settlement, *, event_type: str, extra: dict[str, Any]) -> None:
        if self.dispatcher is None:
            return
        seller_id = seller_id_for(settlement.facilitator_request)
        if seller_id is None:
            self.log.warning("settlement_event_skipped", settlement_id=settlement.id, reason="no payTo")
            return
        payload = {
            "settlement_id": settlement.id,
            "payment_attempt_id": settlement.payment_attempt_id,
            "status": event_type.split(".", 1)[1],
            **extra,
        }
        try:
            self.dispatcher.trigger_event(
                event_type=event_type,
                seller_id=seller_id,
                resource_type="settlement",
                resource_id=settlement.id,
                payload=payload,
            )
        except (models.DbError, sqlite3.Error) as exc:
            self.log.error("settlement_event_failed", settlement_id=settlement.id, error=str(exc))


def _opt_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)
