from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from ai.providers.base import ProviderError, ProviderUnavailableError

logger = logging.getLogger(__name__)


class AnalysisTimeoutError(Exception):
    def __init__(self, message: str = "Analysis timed out. Please try again."):
        super().__init__(message)


async def generate_with_retry(
    call: Callable[[], Awaitable[dict]],
    *,
    timeout: float,
    retries: int = 2,
    backoff: float = 1.0,
    operation: str = "generate",
) -> dict:
    """Run a provider call with a per-attempt timeout and a fixed-backoff retry.

    Timeouts and retryable provider errors are attempted `retries` more times.
    Non-retryable provider errors (bad key, bad request) surface immediately.
    """
    attempts = max(int(retries), 0) + 1
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(call(), timeout=timeout)
        except asyncio.TimeoutError:
            last_error = AnalysisTimeoutError()
            logger.warning(f"{operation} attempt {attempt}/{attempts} timed out after {timeout}s")
        except ProviderError as exc:
            if not exc.retryable:
                raise
            last_error = exc
            logger.warning(f"{operation} attempt {attempt}/{attempts} failed: {exc.__class__.__name__}")
        if attempt < attempts and backoff > 0:
            await asyncio.sleep(backoff)

    if last_error is None:
        last_error = ProviderUnavailableError(f"{operation} failed")
    raise last_error
