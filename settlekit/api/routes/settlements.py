from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from settlekit.api.deps import get_db, require_auth
from settlekit.facilitator.base import InvalidFacilitatorRequest
from settlekit.services import settlement_service

router = APIRouter(tags=["settlements"], dependencies=[Depends(require_auth)])


class SettlementEnqueueRequest(BaseModel):
    facilitator_request: dict[str, Any]
    payment_attempt_id: str | None = None


@router.post("/v1/settlements", status_code=202)
def enqueue_settlement(payload: SettlementEnqueueRequest, conn=Depends(get_db)) -> dict:
    try:
        settlement = settlement_service.enqueue_settlement(
            conn,
            payload.facilitator_request,
            payment_attempt_id=payload.payment_attempt_id,
        )
    except InvalidFacilitatorRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return settlement_service.settlement_to_dict(settlement)


# ---------- admin ----------


@router.get("/v1/admin/settlements")
def list_settlements(limit: int = 100, status: str | None = None, conn=Depends(get_db)) -> dict:
    try:
        settlements = settlement_service.list_settlements(conn, limit=limit, status=status)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"items": [settlement_service.settlement_to_dict(s) for s in settlements]}


@router.get("/v1/admin/settlements/{settlement_id}")
def get_settlement(settlement_id: str, conn=Depends(get_db)) -> dict:
    try:
        settlement = settlement_service.get_settlement(conn, settlement_id)
    except settlement_service.NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return settlement_service.settlement_to_dict(settlement)


@router.post("/v1/admin/settlements/{settlement_id}/retry")
def retry_settlement(settlement_id: str, conn=Depends(get_db)) -> dict:
    try:
        settlement = settlement_service.retry_settlement(conn, settlement_id)
    except settlement_service.NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except settlement_service.InvalidStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return settlement_service.settlement_to_dict(settlement)
