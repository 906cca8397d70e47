from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from ai.providers import AIProvider
from api.deps import (
    get_check_in_dispatcher,
    get_check_in_mailer,
    get_check_in_provider,
    get_encryption_key,
    get_subscription_store,
)
from auth.utils import require_cron_secret
from db.database import get_db
from db.models import CheckInRunEvent
from services.checkin_service import CheckInProcessingError, process_subscription, trigger_due_processing
from services.email_service import CheckInMailer, EmailDeliveryError
from services.subscription_store import SubscriptionNotFoundError, SubscriptionStore
from utils.datetime_utils import to_iso

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/secure-worker",
    tags=["secure-worker"],
    dependencies=[Depends(require_cron_secret)],
)


class ProcessRequest(BaseModel):
    subscription_id: str = Field(alias="subscriptionId", min_length=1)


class DeliveryCheckRequest(BaseModel):
    email: EmailStr


def serialize_run_event(row: CheckInRunEvent) -> dict:
    return {
        "id": row.id,
        "subscription_id": row.subscription_id,
        "status": row.status,
        "error_kind": row.error_kind,
        "duration_ms": row.duration_ms,
        "next_check_in": to_iso(row.next_check_in),
        "created_at": to_iso(row.created_at),
    }


@router.get("/trigger-checkins")
async def trigger_checkins(
    store: SubscriptionStore = Depends(get_subscription_store),
    dispatch: Callable[[str], Awaitable] = Depends(get_check_in_dispatcher),
):
    summary = await trigger_due_processing(store, dispatch)
    return {"success": True, "processed": summary.as_dict()}


@router.post("/process-checkins")
async def process_checkins(
    payload: ProcessRequest,
    store: SubscriptionStore = Depends(get_subscription_store),
    key: bytes = Depends(get_encryption_key),
    provider: AIProvider = Depends(get_check_in_provider),
    mailer: CheckInMailer = Depends(get_check_in_mailer),
):
    try:
        outcome = await process_subscription(
            payload.subscription_id,
            store=store,
            key=key,
            provider=provider,
            mailer=mailer,
        )
    except SubscriptionNotFoundError:
        raise HTTPException(status_code=404, detail="Subscription not found")
    except CheckInProcessingError:
        raise HTTPException(status_code=500, detail="Processing failed")
    return {
        "success": True,
        "status": outcome.status,
        "processingTime": round(outcome.processing_time_ms, 2),
        "nextCheckIn": to_iso(outcome.next_check_in),
    }


@router.post("/test-email")
async def send_test_email(
    payload: DeliveryCheckRequest,
    mailer: CheckInMailer = Depends(get_check_in_mailer),
):
    try:
        message_id = await mailer.send_test(payload.email)
    except EmailDeliveryError as exc:
        logger.warning(f"Test email failed: {exc}")
        raise HTTPException(status_code=502, detail="Email delivery failed")
    return {"success": True, "messageId": message_id}


@router.get("/runs")
def list_runs(
    status: str | None = Query(default=None),
    subscription_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    query = db.query(CheckInRunEvent)
    if status:
        query = query.filter(CheckInRunEvent.status == status.strip().lower())
    if subscription_id:
        query = query.filter(CheckInRunEvent.subscription_id == subscription_id.strip())
    rows = query.order_by(CheckInRunEvent.created_at.desc(), CheckInRunEvent.id.desc()).limit(limit).all()
    return {"runs": [serialize_run_event(row) for row in rows], "count": len(rows)}
