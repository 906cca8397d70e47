"""Fixed-bucket rate limiting for the shared Gemini credential.

Counters live in Redis so every API process shares one view of usage. Each
request increments both the minute and the day counter before the limits
are checked (increment-then-check), so rejected requests still count
against the quota.
"""
from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from ai.credentials import CredentialSource, credential_fingerprint
from config import settings
from db.database import SessionLocal
from db.models import RateLimitAuditEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    name: str
    limit: int
    window_seconds: int


@dataclass
class RateLimitDecision:
    success: bool
    limit: str | None = None  # minute | day, set when blocked
    count: int | None = None
    remaining: int = 0
    reset_at: float | None = None  # epoch seconds
    remaining_by_window: dict[str, int] = field(default_factory=dict)
    reset_by_window: dict[str, float] = field(default_factory=dict)
    bypassed: bool = False

    def retry_after_seconds(self, now: float) -> int:
        if self.reset_at is None:
            return 0
        return max(int(math.ceil(self.reset_at - now)), 1)


def default_rules() -> tuple[RateLimitRule, RateLimitRule]:
    return (
        RateLimitRule("minute", settings.RATE_LIMIT_REQUESTS_PER_MINUTE, 60),
        RateLimitRule("day", settings.RATE_LIMIT_REQUESTS_PER_DAY, 24 * 60 * 60),
    )


def bucket_for(now: float, window_seconds: int) -> int:
    return int(now // window_seconds)


def bucket_reset_at(now: float, window_seconds: int) -> float:
    return float((bucket_for(now, window_seconds) + 1) * window_seconds)


def record_rate_limit_event(
    *,
    endpoint: str,
    scope_key: str,
    decision: RateLimitDecision,
    now: float,
    session_factory: Callable[[], Session] = SessionLocal,
) -> None:
    db = session_factory()
    try:
        db.add(
            RateLimitAuditEvent(
                endpoint=endpoint,
                scope_key=scope_key,
                limit_name=decision.limit,
                blocked=not decision.success,
                retry_after_seconds=decision.retry_after_seconds(now) if not decision.success else None,
                details_json=json.dumps({"count": decision.count}, ensure_ascii=True),
            )
        )
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.warning(f"Rate limit audit write failed: {exc}")
    finally:
        db.close()


class SharedKeyRateLimiter:
    KEY_PREFIX = "rate_limit"

    def __init__(
        self,
        redis_client,
        rules: tuple[RateLimitRule, ...] | None = None,
        *,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
        endpoint: str = "analyze",
        session_factory: Callable[[], Session] | None = SessionLocal,
    ) -> None:
        self.redis = redis_client
        self.rules = rules or default_rules()
        self.enabled = enabled
        self.clock = clock
        self.endpoint = endpoint
        self.session_factory = session_factory

    def _key(self, fingerprint: str, rule: RateLimitRule, bucket: int) -> str:
        return f"{self.KEY_PREFIX}:{fingerprint}:{rule.name}:{bucket}"

    async def check(self, credential: CredentialSource) -> RateLimitDecision:
        if not credential.is_shared or not self.enabled:
            return RateLimitDecision(success=True, bypassed=True)

        now = self.clock()
        fingerprint = credential_fingerprint(credential.api_key)
        keys = [self._key(fingerprint, rule, bucket_for(now, rule.window_seconds)) for rule in self.rules]

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                for key in keys:
                    pipe.incr(key)
                counts = [int(c) for c in await pipe.execute()]
            for key, rule, count in zip(keys, self.rules, counts):
                if count == 1:
                    await self.redis.expire(key, rule.window_seconds)
        except (RedisError, OSError) as exc:
            logger.warning(f"Rate limit store unavailable, allowing request: {exc}")
            return RateLimitDecision(success=True, bypassed=True)

        remaining_by_window: dict[str, int] = {}
        reset_by_window: dict[str, float] = {}
        for rule, count in zip(self.rules, counts):
            remaining_by_window[rule.name] = max(rule.limit - count, 0)
            reset_by_window[rule.name] = bucket_reset_at(now, rule.window_seconds)

        for rule, count in zip(self.rules, counts):
            if count > rule.limit:
                decision = RateLimitDecision(
                    success=False,
                    limit=rule.name,
                    count=count,
                    remaining=0,
                    reset_at=reset_by_window[rule.name],
                    remaining_by_window=remaining_by_window,
                    reset_by_window=reset_by_window,
                )
                logger.info(f"Shared credential {rule.name} limit reached ({count}/{rule.limit})")
                if self.session_factory is not None:
                    await asyncio.to_thread(
                        record_rate_limit_event,
                        endpoint=self.endpoint,
                        scope_key=fingerprint,
                        decision=decision,
                        now=now,
                        session_factory=self.session_factory,
                    )
                return decision

        return RateLimitDecision(
            success=True,
            remaining=min(remaining_by_window.values()),
            reset_at=min(reset_by_window.values()),
            remaining_by_window=remaining_by_window,
            reset_by_window=reset_by_window,
        )


def format_rate_limit_error(decision: RateLimitDecision, now: float | None = None) -> str:
    now = time.time() if now is None else now
    hint = "or add your own Gemini API key to skip the shared limit."
    if decision.limit == "minute":
        seconds = decision.retry_after_seconds(now)
        unit = "second" if seconds == 1 else "seconds"
        return f"Rate limit exceeded: too many requests this minute. Try again in {seconds} {unit} {hint}"
    if decision.limit == "day":
        reset = datetime.fromtimestamp(decision.reset_at or now, tz=timezone.utc)
        return (
            "Daily rate limit exceeded for the shared API key. "
            f"Try again after {reset.strftime('%H:%M UTC on %b %d')} {hint}"
        )
    return f"Rate limit exceeded. Try again later {hint}"
