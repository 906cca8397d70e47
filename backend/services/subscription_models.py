from __future__ import annotations

import json
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from ai.frameworks import AnalysisFramework
from utils.datetime_utils import add_days, add_months, ensure_utc, parse_iso, start_of_day, to_iso
from utils.encryption import EncryptedPayload


class CheckInFrequency(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    DAILY = "daily"  # testing cadence, gated by CHECKIN_ALLOW_DAILY


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class AnalysisDepth(str, Enum):
    COMPREHENSIVE = "comprehensive"
    FOCUSED = "focused"
    MAINTENANCE = "maintenance"


class Subscription(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    email: str
    frequency: CheckInFrequency
    frameworks: list[AnalysisFramework]
    responses: EncryptedPayload
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    analysis_depth: AnalysisDepth | None = Field(default=None, alias="analysisDepth")
    created_at: datetime = Field(alias="createdAt")
    next_check_in: datetime = Field(alias="nextCheckIn")
    last_check_in: datetime | None = Field(default=None, alias="lastCheckIn")
    last_content_generation: datetime | None = Field(default=None, alias="lastContentGeneration")

    def public_view(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "frequency": self.frequency.value,
            "frameworks": [f.value for f in self.frameworks],
        }

    def to_redis_hash(self) -> dict[str, str]:
        """Flatten to string fields; timestamps are ISO-8601 UTC, absent values are empty."""
        return {
            "id": self.id,
            "email": self.email,
            "frequency": self.frequency.value,
            "frameworks": json.dumps([f.value for f in self.frameworks]),
            "responses": json.dumps(self.responses.to_wire()),
            "status": self.status.value,
            "analysisDepth": self.analysis_depth.value if self.analysis_depth else "",
            "createdAt": to_iso(self.created_at),
            "nextCheckIn": to_iso(self.next_check_in),
            "lastCheckIn": to_iso(self.last_check_in) or "",
            "lastContentGeneration": to_iso(self.last_content_generation) or "",
        }

    @classmethod
    def from_redis_hash(cls, raw: dict[str, str]) -> "Subscription":
        return cls(
            id=raw["id"],
            email=raw["email"],
            frequency=raw["frequency"],
            frameworks=json.loads(raw.get("frameworks") or "[]"),
            responses=EncryptedPayload.model_validate(json.loads(raw["responses"])),
            status=raw.get("status") or SubscriptionStatus.ACTIVE.value,
            analysisDepth=raw.get("analysisDepth") or None,
            createdAt=parse_iso(raw["createdAt"]),
            nextCheckIn=parse_iso(raw["nextCheckIn"]),
            lastCheckIn=parse_iso(raw.get("lastCheckIn")),
            lastContentGeneration=parse_iso(raw.get("lastContentGeneration")),
        )


def compute_next_check_in(frequency: CheckInFrequency | str, now: datetime) -> datetime:
    frequency = CheckInFrequency(frequency)
    if frequency is CheckInFrequency.MONTHLY:
        nxt = add_months(now, 1)
    elif frequency is CheckInFrequency.QUARTERLY:
        nxt = add_months(now, 3)
    else:
        nxt = add_days(now, 1)
    return start_of_day(nxt)


def is_check_in_due(subscription: Subscription, now: datetime) -> bool:
    """Eligible when active, past its next check-in, and not already generated for this cycle.

    A successful run stamps last_check_in and last_content_generation with the
    same instant, so equality means "previous cycle finished", not "done".
    """
    if subscription.status is not SubscriptionStatus.ACTIVE:
        return False
    if ensure_utc(subscription.next_check_in) > ensure_utc(now):
        return False
    generated = subscription.last_content_generation
    last = subscription.last_check_in
    if generated is None or last is None:
        return True
    return ensure_utc(generated) <= ensure_utc(last)
