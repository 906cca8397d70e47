from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass

from ai.credentials import CredentialSource
from ai.frameworks import AnalysisFramework, framework_data, framework_prompt, parse_framework
from ai.generation import AnalysisTimeoutError, generate_with_retry
from ai.providers import AIProvider, ProviderAuthError, ProviderError, ProviderRateLimitedError
from config import settings
from services.rate_limit_service import RateLimitDecision, SharedKeyRateLimiter, format_rate_limit_error

logger = logging.getLogger(__name__)


class AnalysisError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AnalysisValidationError(AnalysisError):
    status_code = 400


class InvalidApiKeyError(AnalysisError):
    status_code = 401


class RateLimitExceededError(AnalysisError):
    status_code = 429

    def __init__(self, message: str, decision: RateLimitDecision, retry_after: int):
        super().__init__(message)
        self.decision = decision
        self.retry_after = retry_after


class AnalysisTimedOutError(AnalysisError):
    status_code = 504


class UpstreamError(AnalysisError):
    status_code = 502


class UpstreamRateLimitedError(AnalysisError):
    status_code = 429


@dataclass
class AnalysisRequest:
    form_data: dict
    framework: str
    custom_prompt: str | None = None
    user_name: str | None = None


def build_analysis_prompt(request: AnalysisRequest) -> tuple[str, str]:
    """Return (system instruction, user content) for an analysis request."""
    try:
        framework = parse_framework(request.framework)
        system = framework_prompt(framework, request.custom_prompt)
    except ValueError as exc:
        raise AnalysisValidationError(str(exc)) from None
    if not isinstance(request.form_data, dict) or not request.form_data:
        raise AnalysisValidationError("Form data is required for analysis.")

    data = framework_data(framework, request.form_data)
    parts = []
    name = (request.user_name or "").strip()
    if name:
        parts.append(f"The person reflecting is named {name}. Address them by name.")
    if framework is AnalysisFramework.CUSTOM:
        parts.append("Here are all of their questionnaire answers:")
    else:
        parts.append("Here are the questionnaire answers relevant to this analysis:")
    parts.append(json.dumps(data, indent=2, ensure_ascii=False))
    return system, "\n\n".join(parts)


async def run_analysis(
    request: AnalysisRequest,
    *,
    credential: CredentialSource,
    limiter: SharedKeyRateLimiter,
    provider_factory: Callable[[str], AIProvider],
) -> str:
    system, content = build_analysis_prompt(request)

    decision = await limiter.check(credential)
    if not decision.success:
        now = limiter.clock()
        raise RateLimitExceededError(
            format_rate_limit_error(decision, now),
            decision=decision,
            retry_after=decision.retry_after_seconds(now),
        )

    provider = provider_factory(credential.api_key)
    try:
        result = await generate_with_retry(
            lambda: provider.generate(content, system=system),
            timeout=settings.ANALYSIS_TIMEOUT_SECONDS,
            retries=settings.ANALYSIS_MAX_RETRIES,
            backoff=settings.ANALYSIS_RETRY_BACKOFF_SECONDS,
            operation=f"analysis:{request.framework}",
        )
    except AnalysisTimeoutError as exc:
        raise AnalysisTimedOutError(str(exc)) from None
    except ProviderAuthError:
        if credential.is_shared:
            logger.error("Shared Gemini credential was rejected upstream")
            raise UpstreamError("The analysis service is misconfigured. Please try again later.") from None
        raise InvalidApiKeyError(
            "Invalid API key. Please check your API key or remove it to use the shared key."
        ) from None
    except ProviderRateLimitedError:
        if credential.is_shared:
            raise UpstreamRateLimitedError(
                "The shared API key is over its quota. Please try again later or use your own API key."
            ) from None
        raise UpstreamRateLimitedError("Your API key is over its Gemini quota. Please try again later.") from None
    except ProviderError as exc:
        logger.warning(f"Analysis generation failed: {exc}")
        raise UpstreamError("The analysis service is unavailable. Please try again.") from None

    return result["content"]
