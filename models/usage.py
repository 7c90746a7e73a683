"""
SQLAlchemy models for AI usage governance: quota policies, per-period
counters and the per-invocation usage log.
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, Integer, DateTime, Boolean, UniqueConstraint
)

from models.crm import Base


def _utcnow():
    return datetime.now(timezone.utc)


class QuotaPeriod(str, PyEnum):
    """Window over which usage is counted before reset."""
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    ALL = "all"


class QuotaPolicy(Base):
    """Per-organization AI limits. Null limits mean unlimited."""

    __tablename__ = "ai_quotas"

    organization_id = Column(String(36), primary_key=True)
    period = Column(String(10), default=QuotaPeriod.MONTH.value, nullable=False)
    request_limit = Column(Integer)
    token_limit = Column(Integer)
    alert_threshold_pct = Column(Integer, default=80)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class UsageRecord(Base):
    """Counter for one organization and period window."""

    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "period", "period_start",
            name="uq_usage_records_window"
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(String(36), nullable=False, index=True)
    period = Column(String(10), nullable=False)
    period_start = Column(DateTime(timezone=True), nullable=False)
    requests_used = Column(Integer, default=0, nullable=False)
    tokens_used = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class AIUsageLog(Base):
    """One row per model invocation."""

    __tablename__ = "ai_usage_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(String(36), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    model = Column(String(100))
    tokens_input = Column(Integer, default=0)
    tokens_output = Column(Integer, default=0)
    success = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
