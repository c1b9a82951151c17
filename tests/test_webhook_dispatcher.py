import asyncio
import json
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import httpx

from settlekit.db import models
from settlekit.db.engine import connect_sqlite, init_db, to_iso
from settlekit.services import webhook_subscriptions
from settlekit.services.webhook_dispatcher import (
    RESPONSE_BODY_LIMIT,
    DeliveryStats,
    WebhookDispatcher,
    sign_webhook,
    verify_webhook_signature,
)

SELLER = "0x742d35Cc6634C0532925a3b844Bc454e4438f44e"
NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class SignatureTest(unittest.TestCase):
    def test_round_trip(self) -> None:
        body = '{"event_type":"settlement.confirmed"}'
        secret = "a" * 64
        signature = sign_webhook(body, secret)
        self.assertEqual(len(signature), 64)
        self.assertTrue(verify_webhook_signature(body, signature, secret))
        self.assertTrue(verify_webhook_signature(body.encode(), signature, secret))
        self.assertTrue(verify_webhook_signature(body, f"sha256={signature}", secret))
        self.assertTrue(verify_webhook_signature(body, signature.upper(), secret))

    def test_mutations_fail(self) -> None:
        body = '{"amount":"1000"}'
        secret = "0123456789abcdef" * 4
        signature = sign_webhook(body, secret)
        self.assertFalse(verify_webhook_signature(body, signature, "1" + secret[1:]))
        self.assertFalse(verify_webhook_signature('{"amount":"1001"}', signature, secret))
        flipped = ("0" if signature[0] != "0" else "1") + signature[1:]
        self.assertFalse(verify_webhook_signature(body, flipped, secret))

    def test_malformed_signatures_never_raise(self) -> None:
        body = "{}"
        for bad in (None, "", "abc", "zz" * 32, "é" * 64, 123):
            with self.subTest(bad=bad):
                self.assertFalse(verify_webhook_signature(body, bad, "secret"))


class _Target:
    """Webhook receiver stand-in for httpx.MockTransport."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses) or [httpx.Response(200, text="ok")]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class WebhookDispatcherTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.conn = connect_sqlite(":memory:")
        init_db(self.conn)

    def tearDown(self) -> None:
        self.conn.close()

    def _dispatcher(self, target: _Target | None = None) -> WebhookDispatcher:
        target = target or _Target()
        return WebhookDispatcher(
            self.conn,
            client=httpx.AsyncClient(transport=httpx.MockTransport(target)),
            timeout_seconds=10.0,
            clock=lambda: NOW,
        )

    def _subscribe(self, *, seller_id: str = SELLER, events=None, active: bool = True, url: str = "https://merchant.example/hooks"):
        return webhook_subscriptions.create_subscription(
            self.conn, seller_id=seller_id, url=url, events=events, active=active
        )

    def _trigger(self, dispatcher: WebhookDispatcher, event_type: str = "settlement.confirmed") -> int:
        return dispatcher.trigger_event(
            event_type=event_type,
            seller_id=SELLER,
            resource_type="settlement",
            resource_id="stl_1",
            payload={"tx_hash": "tx-123"},
        )

    def _only_delivery(self) -> models.WebhookDelivery:
        rows = self.conn.execute("SELECT id FROM webhook_deliveries").fetchall()
        self.assertEqual(len(rows), 1)
        return models.get_webhook_delivery(self.conn, delivery_id=rows[0]["id"])

    # ---------- fan-out ----------

    async def test_fan_out_to_matching_active_subscriptions(self) -> None:
        self._subscribe(events=None)
        self._subscribe(events=["settlement.confirmed", "settlement.failed"])
        self._subscribe(events=["payout.created"])
        self._subscribe(events=None, active=False)
        self._subscribe(seller_id="0x0000000000000000000000000000000000000001")

        created = self._trigger(self._dispatcher())

        self.assertEqual(created, 2)
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM webhook_deliveries").fetchone()[0], 2)
        statuses = {row[0] for row in self.conn.execute("SELECT status FROM webhook_deliveries")}
        self.assertEqual(statuses, {"pending"})

    async def test_no_subscriptions_still_records_event(self) -> None:
        created = self._trigger(self._dispatcher())
        self.assertEqual(created, 0)
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM webhook_events").fetchone()[0], 1)

    async def test_failed_delivery_creation_does_not_stop_the_rest(self) -> None:
        self._subscribe()
        self._subscribe()
        real_create = models.create_webhook_delivery
        calls = []

        def flaky(conn, **kwargs):
            calls.append(kwargs)
            if len(calls) == 1:
                raise models.DbError("disk full")
            return real_create(conn, **kwargs)

        with patch("settlekit.db.models.create_webhook_delivery", side_effect=flaky):
            created = self._trigger(self._dispatcher())

        self.assertEqual(created, 1)
        self.assertEqual(len(calls), 2)

    # ---------- delivery ----------

    async def test_successful_delivery(self) -> None:
        subscription = self._subscribe()
        target = _Target(httpx.Response(204))
        dispatcher = self._dispatcher(target)
        self._trigger(dispatcher)

        stats = await dispatcher.process_pending()

        self.assertEqual(stats, DeliveryStats(processed=1, succeeded=1, failed=0, retried=0))
        sent = target.requests[0]
        self.assertEqual(str(sent.url), "https://merchant.example/hooks")
        self.assertEqual(sent.headers["Content-Type"], "application/json")
        self.assertEqual(sent.headers["X-Webhook-Event"], "settlement.confirmed")
        self.assertTrue(verify_webhook_signature(sent.content, sent.headers["X-Webhook-Signature"], subscription.secret))
        body = json.loads(sent.content)
        self.assertEqual(body["event_type"], "settlement.confirmed")
        self.assertEqual(body["seller_id"], SELLER)
        self.assertEqual(body["resource_type"], "settlement")
        self.assertEqual(body["resource_id"], "stl_1")
        self.assertEqual(body["payload"], {"tx_hash": "tx-123"})
        self.assertEqual(sent.headers["X-Webhook-Timestamp"], body["timestamp"])

        delivery = self._only_delivery()
        self.assertEqual(delivery.status, "success")
        self.assertEqual(delivery.attempt_count, 1)
        self.assertEqual(delivery.response_status_code, 204)
        self.assertEqual(delivery.delivered_at, to_iso(NOW))
        self.assertIsNone(delivery.next_retry_at)
        refreshed = models.get_webhook_subscription(self.conn, subscription_id=subscription.id)
        self.assertEqual(refreshed.last_delivered_at, to_iso(NOW))

        # Terminal rows are never picked up again.
        again = await dispatcher.process_pending()
        self.assertEqual(again.processed, 0)

    async def test_non_2xx_schedules_retry(self) -> None:
        self._subscribe()
        dispatcher = self._dispatcher(_Target(httpx.Response(503, text="x" * 5000)))
        self._trigger(dispatcher)

        stats = await dispatcher.process_pending()

        self.assertEqual(stats.retried, 1)
        delivery = self._only_delivery()
        self.assertEqual(delivery.status, "retry")
        self.assertEqual(delivery.attempt_count, 1)
        self.assertEqual(delivery.next_retry_at, to_iso(NOW + timedelta(minutes=2)))
        self.assertEqual(delivery.response_status_code, 503)
        self.assertEqual(len(delivery.response_body), RESPONSE_BODY_LIMIT)
        self.assertEqual(delivery.error_message, "HTTP 503")

    async def test_network_error_schedules_retry(self) -> None:
        self._subscribe()
        dispatcher = self._dispatcher(_Target(httpx.ConnectError("connection refused")))
        self._trigger(dispatcher)

        await dispatcher.process_pending()

        delivery = self._only_delivery()
        self.assertEqual(delivery.status, "retry")
        self.assertIn("network error", delivery.error_message)
        self.assertIsNone(delivery.response_status_code)

    async def test_last_attempt_fails_permanently(self) -> None:
        self._subscribe()
        dispatcher = self._dispatcher(_Target(httpx.Response(503)))
        self._trigger(dispatcher)
        delivery = self._only_delivery()
        models.update_webhook_delivery_fields(
            self.conn,
            delivery_id=delivery.id,
            fields={"status": "retry", "attempt_count": 4, "next_retry_at": to_iso(NOW - timedelta(minutes=1))},
        )

        stats = await dispatcher.process_pending()

        self.assertEqual(stats.failed, 1)
        delivery = self._only_delivery()
        self.assertEqual(delivery.status, "failed")
        self.assertEqual(delivery.attempt_count, 5)
        self.assertTrue(delivery.error_message.startswith("Failed after 5 attempts"))
        self.assertIsNone(delivery.next_retry_at)

    async def test_retry_delay_doubles(self) -> None:
        self._subscribe()
        dispatcher = self._dispatcher(_Target(httpx.Response(500)))
        self._trigger(dispatcher)
        delivery = self._only_delivery()
        models.update_webhook_delivery_fields(
            self.conn,
            delivery_id=delivery.id,
            fields={"status": "retry", "attempt_count": 2, "next_retry_at": None},
        )

        await dispatcher.process_pending()

        self.assertEqual(self._only_delivery().next_retry_at, to_iso(NOW + timedelta(minutes=8)))

    async def test_missing_subscription_fails_permanently(self) -> None:
        subscription = self._subscribe()
        target = _Target()
        dispatcher = self._dispatcher(target)
        self._trigger(dispatcher)
        models.delete_webhook_subscription(self.conn, subscription_id=subscription.id)

        stats = await dispatcher.process_pending()

        self.assertEqual(stats.failed, 1)
        delivery = self._only_delivery()
        self.assertEqual(delivery.status, "failed")
        self.assertEqual(delivery.error_message, "Subscription or event not found")
        self.assertEqual(target.requests, [])

    async def test_leased_delivery_is_not_sent_twice(self) -> None:
        self._subscribe()
        target = _Target()
        dispatcher = self._dispatcher(target)
        self._trigger(dispatcher)
        snapshot = self._only_delivery()

        lease_until = to_iso(NOW + timedelta(seconds=70))
        self.assertTrue(
            models.lease_webhook_delivery(self.conn, delivery=snapshot, lease_until=lease_until, now=to_iso(NOW))
        )
        self.assertFalse(
            models.lease_webhook_delivery(self.conn, delivery=snapshot, lease_until=lease_until, now=to_iso(NOW))
        )

        stats = await dispatcher.process_pending()
        self.assertEqual(stats.processed, 0)
        self.assertEqual(target.requests, [])

    async def test_inactive_subscription_is_abandoned(self) -> None:
        subscription = self._subscribe()
        target = _Target()
        dispatcher = self._dispatcher(target)
        self._trigger(dispatcher)
        webhook_subscriptions.set_subscription_active(
            self.conn, subscription_id=subscription.id, seller_id=SELLER, active=False
        )

        stats = await dispatcher.process_pending()

        self.assertEqual(stats, DeliveryStats(processed=1, succeeded=0, failed=1, retried=0))
        delivery = self._only_delivery()
        self.assertEqual(delivery.status, "failed")
        self.assertEqual(delivery.error_message, "Subscription is inactive")
        self.assertEqual(target.requests, [])

    async def test_slow_endpoint_times_out(self) -> None:
        self._subscribe()

        async def hang(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200)

        dispatcher = WebhookDispatcher(
            self.conn,
            client=httpx.AsyncClient(transport=httpx.MockTransport(hang)),
            timeout_seconds=0.05,
            clock=lambda: NOW,
        )
        self._trigger(dispatcher)

        stats = await dispatcher.process_pending()

        self.assertEqual(stats.retried, 1)
        delivery = self._only_delivery()
        self.assertEqual(delivery.status, "retry")
        self.assertEqual(delivery.attempt_count, 1)
        self.assertIn("timed out", delivery.error_message)
        self.assertIsNone(delivery.response_status_code)

    async def test_subscription_bookkeeping_failure_keeps_success(self) -> None:
        self._subscribe()
        dispatcher = self._dispatcher(_Target(httpx.Response(200)))
        self._trigger(dispatcher)

        with patch(
            "settlekit.db.models.update_webhook_subscription_fields",
            side_effect=models.DbError("webhook subscription not found"),
        ):
            stats = await dispatcher.process_pending()

        self.assertEqual(stats, DeliveryStats(processed=1, succeeded=1, failed=0, retried=0))
        self.assertEqual(self._only_delivery().status, "success")

    async def test_lease_starts_from_current_clock(self) -> None:
        for _ in range(8):
            self._subscribe()
        clock = _Clock(NOW)
        sends: list[str] = []

        def second_dispatcher_handler(request: httpx.Request) -> httpx.Response:
            sends.append("b")
            return httpx.Response(200)

        other = WebhookDispatcher(
            self.conn,
            client=httpx.AsyncClient(transport=httpx.MockTransport(second_dispatcher_handler)),
            timeout_seconds=10.0,
            clock=clock,
        )

        async def slow_endpoint(request: httpx.Request) -> httpx.Response:
            sends.append("a")
            clock.advance(10)
            if len(sends) == 8:
                # Another dispatcher polls while the last delivery of the batch is in flight.
                await other.process_pending()
            return httpx.Response(200)

        dispatcher = WebhookDispatcher(
            self.conn,
            client=httpx.AsyncClient(transport=httpx.MockTransport(slow_endpoint)),
            timeout_seconds=10.0,
            clock=clock,
        )
        self.assertEqual(self._trigger(dispatcher), 8)

        stats = await dispatcher.process_pending(batch_size=10)

        self.assertEqual(stats.succeeded, 8)
        self.assertEqual(sends, ["a"] * 8)

    # ---------- test sends ----------

    async def test_send_test_event(self) -> None:
        subscription = self._subscribe()
        target = _Target(httpx.Response(500, text="nope"))
        result = await self._dispatcher(target).send_test_event(subscription, event_type="payout.failed")

        self.assertFalse(result["success"])
        self.assertEqual(result["status_code"], 500)
        self.assertEqual(result["error"], "HTTP 500")
        sent = target.requests[0]
        self.assertEqual(sent.headers["X-Webhook-Event"], "payout.failed")
        self.assertTrue(verify_webhook_signature(sent.content, sent.headers["X-Webhook-Signature"], subscription.secret))
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM webhook_deliveries").fetchone()[0], 0)

    async def test_send_test_event_network_error(self) -> None:
        subscription = self._subscribe()
        dispatcher = self._dispatcher(_Target(httpx.ConnectError("connection refused")))
        result = await dispatcher.send_test_event(subscription)

        self.assertFalse(result["success"])
        self.assertIsNone(result["status_code"])
        self.assertIn("network error", result["error"])

    # ---------- poll loop ----------

    async def test_run_forever_survives_cycle_errors(self) -> None:
        dispatcher = self._dispatcher()
        stop = asyncio.Event()
        calls: list[int] = []

        async def cycle(batch_size: int) -> DeliveryStats:
            calls.append(batch_size)
            if len(calls) == 1:
                raise RuntimeError("database is locked")
            stop.set()
            return DeliveryStats()

        dispatcher.process_pending = cycle
        await asyncio.wait_for(dispatcher.run_forever(stop, batch_size=3, poll_interval_seconds=0.01), timeout=2)

        self.assertEqual(calls, [3, 3])


if __name__ == "__main__":
    unittest.main()
