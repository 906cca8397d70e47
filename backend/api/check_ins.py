from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field

from ai.frameworks import AnalysisFramework
from api.deps import get_subscription_store
from services.checkin_service import SubscriptionValidationError, create_subscription
from services.subscription_models import AnalysisDepth, CheckInFrequency
from services.subscription_store import SubscriptionStore
from utils.encryption import EncryptedPayload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/check-ins", tags=["check-ins"])


class SubscribeRequest(BaseModel):
    email: EmailStr
    frequency: CheckInFrequency
    frameworks: list[AnalysisFramework] = Field(min_length=1)
    responses: EncryptedPayload
    analysis_depth: Optional[AnalysisDepth] = Field(default=None, alias="analysisDepth")


class SubscriptionSummary(BaseModel):
    id: str
    email: str
    frequency: str
    frameworks: list[str]


class SubscribeResponse(BaseModel):
    success: bool
    message: str
    subscription: SubscriptionSummary


@router.post("/subscribe", response_model=SubscribeResponse)
async def subscribe(
    payload: SubscribeRequest,
    store: SubscriptionStore = Depends(get_subscription_store),
):
    try:
        subscription = await create_subscription(
            store,
            email=str(payload.email),
            frequency=payload.frequency,
            frameworks=payload.frameworks,
            responses=payload.responses,
            analysis_depth=payload.analysis_depth,
        )
    except SubscriptionValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "success": True,
        "message": "Successfully subscribed to check-ins",
        "subscription": subscription.public_view(),
    }
