"""Redis persistence for check-in subscriptions.

Layout:
    subscription:{id}   hash of Subscription.to_redis_hash() fields
    email:{address}     set of subscription ids for that address
    checkin_lease:{id}  short-lived processing lease (SET NX EX)
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import datetime

from pydantic import ValidationError

from services.subscription_models import Subscription, SubscriptionStatus
from utils.datetime_utils import ensure_utc, to_iso

logger = logging.getLogger(__name__)

SUBSCRIPTION_PREFIX = "subscription:"
EMAIL_PREFIX = "email:"
LEASE_PREFIX = "checkin_lease:"


class SubscriptionNotFoundError(Exception):
    pass


def subscription_key(subscription_id: str) -> str:
    return f"{SUBSCRIPTION_PREFIX}{subscription_id}"


def email_key(email: str) -> str:
    return f"{EMAIL_PREFIX}{email.strip().lower()}"


class SubscriptionStore:
    def __init__(self, redis_client) -> None:
        self.redis = redis_client

    async def save(self, subscription: Subscription) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(subscription_key(subscription.id), mapping=subscription.to_redis_hash())
            pipe.sadd(email_key(subscription.email), subscription.id)
            await pipe.execute()

    async def get(self, subscription_id: str) -> Subscription | None:
        raw = await self.redis.hgetall(subscription_key(subscription_id))
        if not raw:
            return None
        return Subscription.from_redis_hash(raw)

    async def ids_for_email(self, email: str) -> set[str]:
        return set(await self.redis.smembers(email_key(email)))

    async def iter_subscriptions(self, batch_size: int = 50) -> AsyncIterator[Subscription]:
        """Walk every subscription with SCAN, one bounded batch at a time."""
        cursor = 0
        while True:
            cursor, keys = await self.redis.scan(cursor=cursor, match=f"{SUBSCRIPTION_PREFIX}*", count=batch_size)
            if keys:
                async with self.redis.pipeline(transaction=False) as pipe:
                    for key in keys:
                        pipe.hgetall(key)
                    rows = await pipe.execute()
                for key, raw in zip(keys, rows):
                    if not raw:
                        continue
                    try:
                        yield Subscription.from_redis_hash(raw)
                    except (ValidationError, KeyError, ValueError) as exc:
                        logger.warning(f"Skipping unreadable record {key}: {exc.__class__.__name__}")
            if int(cursor) == 0:
                break

    async def iter_due(self, now: datetime, batch_size: int = 50) -> AsyncIterator[Subscription]:
        now = ensure_utc(now)
        async for subscription in self.iter_subscriptions(batch_size=batch_size):
            if subscription.status is not SubscriptionStatus.ACTIVE:
                continue
            if ensure_utc(subscription.next_check_in) <= now:
                yield subscription

    async def record_check_in(self, subscription_id: str, at: datetime, next_check_in: datetime) -> None:
        """Stamp a completed cycle; one HSET so the three fields move together."""
        stamp = to_iso(at)
        await self.redis.hset(
            subscription_key(subscription_id),
            mapping={
                "lastCheckIn": stamp,
                "lastContentGeneration": stamp,
                "nextCheckIn": to_iso(next_check_in),
            },
        )

    async def acquire_lease(self, subscription_id: str, ttl_seconds: int) -> bool:
        return bool(await self.redis.set(f"{LEASE_PREFIX}{subscription_id}", "1", nx=True, ex=ttl_seconds))

    async def release_lease(self, subscription_id: str) -> None:
        await self.redis.delete(f"{LEASE_PREFIX}{subscription_id}")
