import secrets
import sqlite3
import uuid
from typing import Iterable
from urllib.parse import urlparse

from settlekit.db import models

VALID_EVENTS = frozenset(
    {
        "payment.attempt_created",
        "payment.completed",
        "settlement.confirmed",
        "settlement.failed",
        "payout.created",
        "payout.completed",
        "payout.failed",
        "link.expired",
        "reservation.created",
        "reservation.released",
        "reservation.claimed",
    }
)


class NotFoundError(RuntimeError):
    pass


class ForbiddenError(RuntimeError):
    pass


class ValidationError(ValueError):
    pass


def _validate_url(url: str) -> str:
    cleaned = (url or "").strip()
    parsed = urlparse(cleaned)
    if parsed.scheme != "https" or not parsed.netloc:
        raise ValidationError("webhook url must be an absolute https:// URL")
    return cleaned


def _normalize_events(events: Iterable[str] | None) -> list[str] | None:
    if events is None:
        return None
    seen: set[str] = set()
    result: list[str] = []
    for item in events:
        name = (item or "").strip()
        if not name or name in seen:
            continue
        seen.add(name)
        result.append(name)
    if not result:
        raise ValidationError("events must name at least one event type, or be omitted for all events")
    unknown = [name for name in result if name not in VALID_EVENTS]
    if unknown:
        raise ValidationError(f"unknown event types: {', '.join(unknown)}")
    return result


def _require_seller(seller_id: str) -> str:
    cleaned = (seller_id or "").strip()
    if not cleaned:
        raise ValidationError("seller_id is required")
    return cleaned


def create_subscription(
    conn: sqlite3.Connection,
    *,
    seller_id: str,
    url: str,
    events: Iterable[str] | None = None,
    active: bool = True,
) -> models.WebhookSubscription:
    return models.create_webhook_subscription(
        conn,
        subscription_id=f"whsub_{uuid.uuid4().hex}",
        seller_id=_require_seller(seller_id),
        url=_validate_url(url),
        events=_normalize_events(events),
        active=active,
        secret=secrets.token_hex(32),
    )


def list_subscriptions(conn: sqlite3.Connection, *, seller_id: str) -> list[models.WebhookSubscription]:
    return models.list_webhook_subscriptions(conn, seller_id=_require_seller(seller_id))


def _get_owned(conn: sqlite3.Connection, *, subscription_id: str, seller_id: str) -> models.WebhookSubscription:
    subscription = models.get_webhook_subscription(conn, subscription_id=subscription_id)
    if subscription is None:
        raise NotFoundError("webhook subscription not found")
    if subscription.seller_id != seller_id:
        raise ForbiddenError("webhook subscription belongs to another seller")
    return subscription


def get_subscription(conn: sqlite3.Connection, *, subscription_id: str, seller_id: str) -> models.WebhookSubscription:
    return _get_owned(conn, subscription_id=subscription_id, seller_id=seller_id)


def set_subscription_active(
    conn: sqlite3.Connection,
    *,
    subscription_id: str,
    seller_id: str,
    active: bool,
) -> models.WebhookSubscription:
    subscription = _get_owned(conn, subscription_id=subscription_id, seller_id=seller_id)
    if subscription.active == active:
        return subscription
    return models.update_webhook_subscription_fields(
        conn,
        subscription_id=subscription_id,
        fields={"active": active},
    )


def delete_subscription(conn: sqlite3.Connection, *, subscription_id: str, seller_id: str) -> None:
    _get_owned(conn, subscription_id=subscription_id, seller_id=seller_id)
    if not models.delete_webhook_subscription(conn, subscription_id=subscription_id):
        raise NotFoundError("webhook subscription not found")


def subscription_to_dict(subscription: models.WebhookSubscription, *, include_secret: bool = False) -> dict:
    data = {
        "id": subscription.id,
        "seller_id": subscription.seller_id,
        "url": subscription.url,
        "events": subscription.events,
        "active": subscription.active,
        "last_delivered_at": subscription.last_delivered_at,
        "created_at": subscription.created_at,
        "updated_at": subscription.updated_at,
    }
    if include_secret:
        data["secret"] = subscription.secret
    return data
