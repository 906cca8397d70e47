"""Check-in subscriptions: creation, due scanning and the per-subscription pipeline.

Processing order for one subscription is strictly decrypt -> generate ->
send -> reschedule. Only a fully successful cycle advances nextCheckIn, so
any failure leaves the subscription due for the next trigger.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from ai.frameworks import AnalysisFramework
from ai.providers import AIProvider, ProviderError
from ai.generation import AnalysisTimeoutError
from config import settings
from db.database import SessionLocal
from db.models import CheckInRunEvent
from services.checkin_content import build_generation_context, generate_check_in_content
from services.email_service import CheckInMailer, EmailDeliveryError
from services.subscription_models import (
    AnalysisDepth,
    CheckInFrequency,
    Subscription,
    SubscriptionStatus,
    compute_next_check_in,
    is_check_in_due,
)
from services.subscription_store import SubscriptionNotFoundError, SubscriptionStore
from utils.datetime_utils import utcnow
from utils.encryption import EncryptedPayload, SecureDecryptionError, clear_sensitive_data, decrypt_securely

logger = logging.getLogger(__name__)


class SubscriptionValidationError(ValueError):
    pass


class CheckInProcessingError(Exception):
    """A subscription's cycle failed; `kind` is safe to log and store."""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind


@dataclass
class ProcessingOutcome:
    subscription_id: str
    status: str  # succeeded | skipped
    processing_time_ms: float
    next_check_in: datetime | None = None
    reason: str | None = None


@dataclass
class TriggerSummary:
    total: int
    succeeded: int
    failed: int
    skipped: int = 0

    def as_dict(self) -> dict:
        return {"total": self.total, "succeeded": self.succeeded, "failed": self.failed, "skipped": self.skipped}


def new_subscription_id() -> str:
    return secrets.token_urlsafe(16)


async def create_subscription(
    store: SubscriptionStore,
    *,
    email: str,
    frequency: CheckInFrequency | str,
    frameworks: list[AnalysisFramework | str],
    responses: EncryptedPayload | dict,
    analysis_depth: AnalysisDepth | str | None = None,
    now: datetime | None = None,
) -> Subscription:
    try:
        frequency = CheckInFrequency(frequency)
        parsed_frameworks = [AnalysisFramework(f) for f in frameworks]
        depth = AnalysisDepth(analysis_depth) if analysis_depth else None
    except ValueError as exc:
        raise SubscriptionValidationError(str(exc)) from None
    if frequency is CheckInFrequency.DAILY and not settings.CHECKIN_ALLOW_DAILY:
        raise SubscriptionValidationError("Daily check-ins are not available")
    if not parsed_frameworks:
        raise SubscriptionValidationError("Select at least one framework")
    if "@" not in (email or ""):
        raise SubscriptionValidationError("A valid email is required")
    if isinstance(responses, dict):
        responses = EncryptedPayload.model_validate(responses)

    # Keep first occurrence order, drop duplicates.
    parsed_frameworks = list(dict.fromkeys(parsed_frameworks))
    now = now or utcnow()
    subscription = Subscription(
        id=new_subscription_id(),
        email=email.strip(),
        frequency=frequency,
        frameworks=parsed_frameworks,
        responses=responses,
        status=SubscriptionStatus.ACTIVE,
        analysisDepth=depth,
        createdAt=now,
        nextCheckIn=compute_next_check_in(frequency, now),
    )
    await store.save(subscription)
    logger.info(
        f"Subscription {subscription.id} created ({frequency.value}, "
        f"{','.join(f.value for f in parsed_frameworks)})"
    )
    return subscription


async def scan_due_subscriptions(
    store: SubscriptionStore,
    now: datetime | None = None,
    batch_size: int | None = None,
) -> list[Subscription]:
    now = now or utcnow()
    batch_size = batch_size or settings.CHECKIN_SCAN_BATCH_SIZE
    return [sub async for sub in store.iter_due(now, batch_size=batch_size)]


def record_check_in_run(
    *,
    subscription_id: str,
    status: str,
    duration_ms: float,
    error_kind: str | None = None,
    next_check_in: datetime | None = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> None:
    db = session_factory()
    try:
        db.add(
            CheckInRunEvent(
                subscription_id=subscription_id,
                status=status,
                error_kind=error_kind,
                duration_ms=round(duration_ms, 2),
                next_check_in=next_check_in.replace(tzinfo=None) if next_check_in else None,
            )
        )
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.warning(f"Check-in run audit write failed for {subscription_id}: {exc}")
    finally:
        db.close()


async def process_subscription(
    subscription_id: str,
    *,
    store: SubscriptionStore,
    key: bytes,
    provider: AIProvider,
    mailer: CheckInMailer,
    now: datetime | None = None,
    lease_seconds: int | None = None,
    session_factory: Callable[[], Session] | None = SessionLocal,
) -> ProcessingOutcome:
    started = time.perf_counter()
    now = now or utcnow()

    def _elapsed_ms() -> float:
        return (time.perf_counter() - started) * 1000.0

    async def _audit(status: str, error_kind: str | None = None, next_check_in: datetime | None = None) -> None:
        if session_factory is not None:
            await asyncio.to_thread(
                record_check_in_run,
                subscription_id=subscription_id,
                status=status,
                duration_ms=_elapsed_ms(),
                error_kind=error_kind,
                next_check_in=next_check_in,
                session_factory=session_factory,
            )

    subscription = await store.get(subscription_id)
    if subscription is None:
        raise SubscriptionNotFoundError(subscription_id)

    if not is_check_in_due(subscription, now):
        await _audit("skipped")
        return ProcessingOutcome(subscription_id, "skipped", _elapsed_ms(), subscription.next_check_in, "not_due")

    if not await store.acquire_lease(subscription_id, lease_seconds or settings.CHECKIN_LEASE_SECONDS):
        logger.info(f"Subscription {subscription_id} is already being processed")
        await _audit("skipped")
        return ProcessingOutcome(subscription_id, "skipped", _elapsed_ms(), subscription.next_check_in, "in_progress")

    decrypted: Any = None
    try:
        # Re-read under the lease: another worker may have finished this cycle since the first read.
        subscription = await store.get(subscription_id)
        if subscription is None or not is_check_in_due(subscription, now):
            await _audit("skipped")
            next_due = subscription.next_check_in if subscription else None
            return ProcessingOutcome(subscription_id, "skipped", _elapsed_ms(), next_due, "not_due")

        if subscription.responses.key_version != settings.CHECKIN_KEY_VERSION:
            logger.warning(
                f"Subscription {subscription_id} was encrypted under key {subscription.responses.key_version}, "
                f"worker holds {settings.CHECKIN_KEY_VERSION}"
            )

        try:
            decrypted = decrypt_securely(subscription.responses, key)
        except SecureDecryptionError:
            raise CheckInProcessingError("decryption", "Secure decryption failed") from None

        context = build_generation_context(subscription, decrypted)
        try:
            content = await generate_check_in_content(context, provider)
        except (ProviderError, AnalysisTimeoutError) as exc:
            raise CheckInProcessingError("generation", f"Content generation failed: {exc.__class__.__name__}") from None
        finally:
            context.responses = None

        try:
            await mailer.send_check_in(subscription, content)
        except EmailDeliveryError as exc:
            raise CheckInProcessingError("email", str(exc)) from None

        next_check_in = compute_next_check_in(subscription.frequency, now)
        try:
            await store.record_check_in(subscription_id, now, next_check_in)
        except RedisError:
            raise CheckInProcessingError("storage", "Could not record the check-in") from None
    except CheckInProcessingError as exc:
        logger.error(f"Check-in failed for subscription {subscription_id} at {exc.kind} step")
        await _audit("failed", exc.kind)
        raise
    except Exception:
        logger.exception(f"Unexpected check-in failure for subscription {subscription_id}")
        await _audit("failed", "unexpected")
        raise
    finally:
        clear_sensitive_data(decrypted)
        decrypted = None
        await store.release_lease(subscription_id)

    await _audit("succeeded", next_check_in=next_check_in)
    logger.info(f"Subscription {subscription_id} processed; next check-in {next_check_in.isoformat()}")
    return ProcessingOutcome(subscription_id, "succeeded", _elapsed_ms(), next_check_in)


def _result_status(result: Any) -> str | None:
    # In-process dispatch yields a ProcessingOutcome, the HTTP worker a JSON body.
    if isinstance(result, dict):
        return result.get("status")
    return getattr(result, "status", None)


async def trigger_due_processing(
    store: SubscriptionStore,
    dispatch: Callable[[str], Awaitable[Any]],
    now: datetime | None = None,
) -> TriggerSummary:
    """Dispatch every due subscription independently and tally the outcomes."""
    due = await scan_due_subscriptions(store, now=now)
    if not due:
        return TriggerSummary(total=0, succeeded=0, failed=0)

    results = await asyncio.gather(*(dispatch(sub.id) for sub in due), return_exceptions=True)
    failed = skipped = 0
    for sub, result in zip(due, results):
        if isinstance(result, BaseException):
            failed += 1
            kind = getattr(result, "kind", result.__class__.__name__)
            logger.warning(f"Dispatch failed for subscription {sub.id}: {kind}")
        elif _result_status(result) == "skipped":
            skipped += 1
    summary = TriggerSummary(
        total=len(due),
        succeeded=len(due) - failed - skipped,
        failed=failed,
        skipped=skipped,
    )
    logger.info(f"Check-in trigger finished: {summary.as_dict()}")
    return summary
