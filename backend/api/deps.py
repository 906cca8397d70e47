"""FastAPI dependencies wiring settings-backed collaborators into routes.

Tests replace these through `app.dependency_overrides`.
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable

from fastapi import Depends, HTTPException

from ai.providers import AIProvider, get_provider
from config import settings
from services.checkin_dispatch import HttpDispatcher, local_dispatcher
from services.email_service import CheckInMailer, get_mailer
from services.kv_store import get_redis
from services.rate_limit_service import SharedKeyRateLimiter
from services.subscription_store import SubscriptionStore
from utils.encryption import load_encryption_key


def get_subscription_store(redis_client=Depends(get_redis)) -> SubscriptionStore:
    return SubscriptionStore(redis_client)


def get_rate_limiter(redis_client=Depends(get_redis)) -> SharedKeyRateLimiter:
    return SharedKeyRateLimiter(redis_client, enabled=settings.RATE_LIMIT_ENABLED)


def get_provider_factory() -> Callable[[str], AIProvider]:
    def _factory(api_key: str) -> AIProvider:
        return get_provider("google", api_key, model=settings.GEMINI_MODEL)

    return _factory


def get_check_in_provider(factory: Callable[[str], AIProvider] = Depends(get_provider_factory)) -> AIProvider:
    if not settings.GEMINI_API_KEY:
        raise HTTPException(status_code=503, detail="Content generation is not configured")
    return factory(settings.GEMINI_API_KEY)


def get_check_in_mailer() -> CheckInMailer:
    return get_mailer()


def get_encryption_key() -> bytes:
    try:
        return load_encryption_key(settings.CHECKIN_ENCRYPTION_KEY)
    except ValueError:
        raise HTTPException(status_code=503, detail="Decryption key not available") from None


def get_check_in_dispatcher(
    store: SubscriptionStore = Depends(get_subscription_store),
    provider_factory: Callable[[str], AIProvider] = Depends(get_provider_factory),
    mailer: CheckInMailer = Depends(get_check_in_mailer),
) -> Callable[[str], Awaitable]:
    # Remote mode keeps decryption keys off the trigger host entirely.
    if settings.CHECKIN_WORKER_URL:
        return HttpDispatcher(settings.CHECKIN_WORKER_URL, settings.CRON_SECRET)
    return local_dispatcher(
        store=store,
        key=get_encryption_key(),
        provider=get_check_in_provider(provider_factory),
        mailer=mailer,
    )
