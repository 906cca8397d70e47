from datetime import datetime
from sqlalchemy import (
    Column, Integer, Text, Boolean, Float, Index,
    DateTime,
)
from db.database import Base


class RateLimitAuditEvent(Base):
    __tablename__ = "rate_limit_audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    endpoint = Column(Text, nullable=False)
    scope_key = Column(Text, nullable=False)  # credential fingerprint, never the key itself
    limit_name = Column(Text)  # minute | day
    blocked = Column(Boolean, nullable=False, default=True)
    retry_after_seconds = Column(Integer)
    details_json = Column(Text)  # JSON object
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_rate_limit_audit_created", "created_at"),
    )


class CheckInRunEvent(Base):
    __tablename__ = "check_in_run_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Text, nullable=False)
    status = Column(Text, nullable=False)  # succeeded | failed | skipped
    error_kind = Column(Text)  # decryption | generation | email | storage | unexpected
    duration_ms = Column(Float)
    next_check_in = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_check_in_run_subscription", "subscription_id"),
        Index("ix_check_in_run_created", "created_at"),
    )
