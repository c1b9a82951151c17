from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from settlekit.api.deps import get_db, get_dispatcher, require_auth
from settlekit.services import webhook_subscriptions
from settlekit.services.webhook_dispatcher import WebhookDispatcher

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"], dependencies=[Depends(require_auth)])


class SubscriptionCreateRequest(BaseModel):
    seller_id: str
    url: str
    events: list[str] | None = None
    active: bool = True


class SubscriptionUpdateRequest(BaseModel):
    seller_id: str
    active: bool


class EventTriggerRequest(BaseModel):
    event_type: str
    seller_id: str
    resource_type: str
    resource_id: str
    payload: dict[str, Any] = Field(default_factory=dict)


@router.post("/subscriptions", status_code=201)
def create_subscription(payload: SubscriptionCreateRequest, conn=Depends(get_db)) -> dict:
    try:
        subscription = webhook_subscriptions.create_subscription(
            conn,
            seller_id=payload.seller_id,
            url=payload.url,
            events=payload.events,
            active=payload.active,
        )
    except webhook_subscriptions.ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    # The only response that ever carries the signing secret.
    return webhook_subscriptions.subscription_to_dict(subscription, include_secret=True)


@router.get("/subscriptions")
def list_subscriptions(seller_id: str, conn=Depends(get_db)) -> dict:
    try:
        subscriptions = webhook_subscriptions.list_subscriptions(conn, seller_id=seller_id)
    except webhook_subscriptions.ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"items": [webhook_subscriptions.subscription_to_dict(s) for s in subscriptions]}


def _owned_call(fn, **kwargs):
    try:
        return fn(**kwargs)
    except webhook_subscriptions.NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except webhook_subscriptions.ForbiddenError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


@router.patch("/subscriptions/{subscription_id}")
def update_subscription(subscription_id: str, payload: SubscriptionUpdateRequest, conn=Depends(get_db)) -> dict:
    subscription = _owned_call(
        webhook_subscriptions.set_subscription_active,
        conn=conn,
        subscription_id=subscription_id,
        seller_id=payload.seller_id,
        active=payload.active,
    )
    return webhook_subscriptions.subscription_to_dict(subscription)


@router.delete("/subscriptions/{subscription_id}")
def delete_subscription(subscription_id: str, seller_id: str, conn=Depends(get_db)) -> dict:
    _owned_call(
        webhook_subscriptions.delete_subscription,
        conn=conn,
        subscription_id=subscription_id,
        seller_id=seller_id,
    )
    return {"success": True}


@router.post("/events", status_code=202)
def trigger_event(payload: EventTriggerRequest, dispatcher: WebhookDispatcher = Depends(get_dispatcher)) -> dict:
    if payload.event_type not in webhook_subscriptions.VALID_EVENTS:
        raise HTTPException(status_code=400, detail=f"unknown event type: {payload.event_type}")
    created = dispatcher.trigger_event(
        event_type=payload.event_type,
        seller_id=payload.seller_id,
        resource_type=payload.resource_type,
        resource_id=payload.resource_id,
        payload=payload.payload,
    )
    return {"deliveries_created": created}


@router.post("/subscriptions/{subscription_id}/test")
async def send_test_event(
    subscription_id: str,
    seller_id: str,
    event_type: str = "settlement.confirmed",
    conn=Depends(get_db),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> dict:
    if event_type not in webhook_subscriptions.VALID_EVENTS:
        raise HTTPException(status_code=400, detail=f"unknown event type: {event_type}")
    subscription = _owned_call(
        webhook_subscriptions.get_subscription,
        conn=conn,
        subscription_id=subscription_id,
        seller_id=seller_id,
    )
    # Sent inline to this one endpoint; no event or delivery rows are written.
    result = await dispatcher.send_test_event(subscription, event_type=event_type)
    return {"endpoint": subscription.url, "event_type": event_type, **result}
