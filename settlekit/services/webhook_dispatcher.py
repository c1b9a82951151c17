import asyncio
import hashlib
import hmac
import json
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict

import httpx

from settlekit.db import models
from settlekit.db.engine import to_iso, utc_now
from settlekit.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_ATTEMPTS = 5
RESPONSE_BODY_LIMIT = 2000
USER_AGENT = "settlekit-webhooks/0.1"


def sign_webhook(payload: str | bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw body, keyed with the subscription secret."""
    body = payload.encode("utf-8") if isinstance(payload, str) else payload
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: str | bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of an X-Webhook-Signature value. Malformed input is just invalid."""
    if not isinstance(signature, str) or not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256=") :]
    expected = sign_webhook(payload, secret)
    return hmac.compare_digest(provided.lower().encode("utf-8"), expected.encode("ascii"))


def build_webhook_body(event: models.WebhookEvent) -> str:
    return json.dumps(
        {
            "event_type": event.event_type,
            "seller_id": event.seller_id,
            "resource_type": event.resource_type,
            "resource_id": event.resource_id,
            "payload": event.payload,
            "timestamp": event.created_at,
        },
        separators=(",", ":"),
    )


def retry_delay(attempt_count: int) -> timedelta:
    return timedelta(minutes=2**attempt_count)


@dataclass(frozen=True)
class DeliveryStats:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0


class WebhookDispatcher:
    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.conn = conn
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=None)
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self._clock = clock

    def trigger_event(
        self,
        *,
        event_type: str,
        seller_id: str,
        resource_type: str,
        resource_id: str,
        payload: Dict[str, Any],
    ) -> int:
        event = models.create_webhook_event(
            self.conn,
            event_id=f"evt_{uuid.uuid4().hex}",
            event_type=event_type,
            seller_id=seller_id,
            resource_type=resource_type,
            resource_id=resource_id,
            payload=payload,
        )
        subscriptions = models.list_subscriptions_for_event(self.conn, seller_id=seller_id, event_type=event_type)

        created = 0
        failed = 0
        for subscription in subscriptions:
            try:
                models.create_webhook_delivery(
                    self.conn,
                    delivery_id=f"whd_{uuid.uuid4().hex}",
                    webhook_subscription_id=subscription.id,
                    webhook_event_id=event.id,
                    max_attempts=self.max_attempts,
                )
                created += 1
            except (models.DbError, sqlite3.Error) as exc:
                failed += 1
                logger.error(
                    "webhook_delivery_create_failed",
                    event_id=event.id,
                    subscription_id=subscription.id,
                    error=str(exc),
                )

        logger.info(
            "webhook_event_triggered",
            event_id=event.id,
            event_type=event_type,
            seller_id=seller_id,
            deliveries_created=created,
            deliveries_failed=failed,
        )
        return created

    @staticmethod
    def _signed_headers(
        body: str,
        subscription: models.WebhookSubscription,
        event: models.WebhookEvent,
    ) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Signature": sign_webhook(body, subscription.secret),
            "X-Webhook-Event": event.event_type,
            "X-Webhook-Timestamp": event.created_at,
        }

    async def _post(self, subscription: models.WebhookSubscription, event: models.WebhookEvent) -> httpx.Response:
        body = build_webhook_body(event)
        return await asyncio.wait_for(
            self._client.post(
                subscription.url,
                content=body.encode("utf-8"),
                headers=self._signed_headers(body, subscription, event),
            ),
            timeout=self.timeout_seconds,
        )

    async def send_test_event(
        self,
        subscription: models.WebhookSubscription,
        *,
        event_type: str = "settlement.confirmed",
    ) -> Dict[str, Any]:
        """POST a signed sample event to one subscription. Nothing is persisted."""

        event = models.WebhookEvent(
            id=f"evt_test_{uuid.uuid4().hex}",
            event_type=event_type,
            seller_id=subscription.seller_id,
            resource_type="settlement",
            resource_id="stl_test",
            payload={
                "settlement_id": "stl_test",
                "status": event_type.rsplit(".", 1)[-1],
                "tx_hash": "0x1234567890abcdef",
                "test": True,
            },
            created_at=to_iso(self._clock()),
        )
        try:
            resp = await self._post(subscription, event)
        except asyncio.TimeoutError:
            error = f"timed out after {self.timeout_seconds}s"
        except httpx.HTTPError as exc:
            error = f"network error: {exc}"
        else:
            logger.info(
                "webhook_test_sent",
                subscription_id=subscription.id,
                event_type=event_type,
                status_code=resp.status_code,
            )
            return {
                "success": resp.is_success,
                "status_code": resp.status_code,
                "response_body": resp.text[:RESPONSE_BODY_LIMIT],
                "error": None if resp.is_success else f"HTTP {resp.status_code}",
            }

        logger.warning("webhook_test_failed", subscription_id=subscription.id, event_type=event_type, error=error)
        return {"success": False, "status_code": None, "response_body": None, "error": error}

    async def process_delivery(
        self,
        delivery: models.WebhookDelivery,
        subscription: models.WebhookSubscription,
        event: models.WebhookEvent,
    ) -> str:
        attempts = delivery.attempt_count + 1

        try:
            resp = await self._post(subscription, event)
        except asyncio.TimeoutError:
            return self._record_failure(
                delivery, attempts, cause=f"timed out after {self.timeout_seconds}s", status_code=None, body=None
            )
        except httpx.HTTPError as exc:
            return self._record_failure(
                delivery, attempts, cause=f"network error: {exc}", status_code=None, body=None
            )

        response_body = resp.text[:RESPONSE_BODY_LIMIT]
        if resp.is_success:
            now = to_iso(self._clock())
            models.update_webhook_delivery_fields(
                self.conn,
                delivery_id=delivery.id,
                fields={
                    "status": "success",
                    "attempt_count": attempts,
                    "response_status_code": resp.status_code,
                    "response_body": response_body,
                    "error_message": None,
                    "next_retry_at": None,
                    "delivered_at": now,
                },
                now=now,
            )
            try:
                models.update_webhook_subscription_fields(
                    self.conn,
                    subscription_id=subscription.id,
                    fields={"last_delivered_at": now},
                )
            except (models.DbError, sqlite3.Error) as exc:
                # Delivered all the same; the subscription may have been deleted mid-send.
                logger.warning(
                    "webhook_last_delivered_update_failed",
                    delivery_id=delivery.id,
                    subscription_id=subscription.id,
                    error=str(exc),
                )
            logger.info(
                "webhook_delivered",
                delivery_id=delivery.id,
                subscription_id=subscription.id,
                status_code=resp.status_code,
                attempt=attempts,
            )
            return "success"

        return self._record_failure(
            delivery,
            attempts,
            cause=f"HTTP {resp.status_code}",
            status_code=resp.status_code,
            body=response_body,
        )

    def _record_failure(
        self,
        delivery: models.WebhookDelivery,
        attempts: int,
        *,
        cause: str,
        status_code: int | None,
        body: str | None,
    ) -> str:
        now = self._clock()
        fields: Dict[str, Any] = {
            "attempt_count": attempts,
            "response_status_code": status_code,
            "response_body": body,
        }
        if attempts < delivery.max_attempts:
            fields["status"] = "retry"
            fields["error_message"] = cause
            fields["next_retry_at"] = to_iso(now + retry_delay(attempts))
        else:
            fields["status"] = "failed"
            fields["error_message"] = f"Failed after {attempts} attempts: {cause}"
            fields["next_retry_at"] = None

        models.update_webhook_delivery_fields(self.conn, delivery_id=delivery.id, fields=fields, now=to_iso(now))
        logger.warning(
            "webhook_delivery_failed",
            delivery_id=delivery.id,
            attempt=attempts,
            max_attempts=delivery.max_attempts,
            status=fields["status"],
            cause=cause,
        )
        return fields["status"]

    def _fail_permanently(self, delivery: models.WebhookDelivery, message: str) -> None:
        models.update_webhook_delivery_fields(
            self.conn,
            delivery_id=delivery.id,
            fields={"status": "failed", "error_message": message, "next_retry_at": None},
            now=to_iso(self._clock()),
        )
        logger.warning("webhook_delivery_abandoned", delivery_id=delivery.id, reason=message)

    async def process_pending(self, batch_size: int = 10) -> DeliveryStats:
        deliveries = models.list_due_webhook_deliveries(self.conn, now=to_iso(self._clock()), limit=batch_size)

        processed = succeeded = failed = retried = 0
        for delivery in deliveries:
            # Earlier sends in the batch take time; each lease starts from the current clock.
            # It outlives the send deadline, so a crashed dispatcher's rows come back on their own.
            now = self._clock()
            lease_until = to_iso(now + timedelta(seconds=self.timeout_seconds + 60))
            if not models.lease_webhook_delivery(self.conn, delivery=delivery, lease_until=lease_until, now=to_iso(now)):
                continue
            processed += 1

            subscription = models.get_webhook_subscription(self.conn, subscription_id=delivery.webhook_subscription_id)
            event = models.get_webhook_event(self.conn, event_id=delivery.webhook_event_id)
            if subscription is None or event is None:
                self._fail_permanently(delivery, "Subscription or event not found")
                failed += 1
                continue
            if not subscription.active:
                self._fail_permanently(delivery, "Subscription is inactive")
                failed += 1
                continue

            try:
                status = await self.process_delivery(delivery, subscription, event)
            except (models.DbError, sqlite3.Error) as exc:
                logger.error("webhook_delivery_record_failed", delivery_id=delivery.id, error=str(exc))
                failed += 1
                continue

            if status == "success":
                succeeded += 1
            elif status == "failed":
                failed += 1
            else:
                retried += 1

        return DeliveryStats(processed=processed, succeeded=succeeded, failed=failed, retried=retried)

    async def run_forever(
        self,
        stop_event: asyncio.Event,
        *,
        batch_size: int = 10,
        poll_interval_seconds: float = 30.0,
    ) -> None:
        logger.info("webhook_dispatcher_started", batch_size=batch_size, poll_interval_seconds=poll_interval_seconds)
        while not stop_event.is_set():
            try:
                stats = await self.process_pending(batch_size)
                if stats.processed:
                    logger.info(
                        "webhook_cycle_completed",
                        processed=stats.processed,
                        succeeded=stats.succeeded,
                        failed=stats.failed,
                        retried=stats.retried,
                    )
            except Exception as exc:  # noqa: BLE001
                logger.exception("webhook_cycle_error", error=str(exc))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("webhook_dispatcher_stopped")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
