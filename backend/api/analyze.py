from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field

from ai.credentials import MissingCredentialError, resolve_credential
from ai.providers import AIProvider
from api.deps import get_provider_factory, get_rate_limiter
from config import settings
from services.analysis_service import AnalysisError, AnalysisRequest, RateLimitExceededError, run_analysis
from services.rate_limit_service import SharedKeyRateLimiter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["analysis"])


class AnalyzeRequest(BaseModel):
    form_data: dict[str, Any] = Field(alias="formData")
    framework: str
    custom_prompt: Optional[str] = Field(default=None, alias="customPrompt")
    user_name: Optional[str] = Field(default=None, alias="userName")


class AnalyzeResponse(BaseModel):
    analysis: str


@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze(
    payload: AnalyzeRequest,
    x_gemini_key: Optional[str] = Header(default=None, alias="x-gemini-key"),
    limiter: SharedKeyRateLimiter = Depends(get_rate_limiter),
    provider_factory: Callable[[str], AIProvider] = Depends(get_provider_factory),
):
    try:
        credential = resolve_credential(x_gemini_key, settings.GEMINI_API_KEY)
    except MissingCredentialError as exc:
        raise HTTPException(status_code=401, detail=str(exc))

    request = AnalysisRequest(
        form_data=payload.form_data,
        framework=payload.framework,
        custom_prompt=payload.custom_prompt,
        user_name=payload.user_name,
    )
    try:
        analysis = await run_analysis(
            request,
            credential=credential,
            limiter=limiter,
            provider_factory=provider_factory,
        )
    except RateLimitExceededError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail=exc.message,
            headers={"Retry-After": str(exc.retry_after)},
        )
    except AnalysisError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    return {"analysis": analysis}
