"""
Quota ledger: per-organization AI usage limits.

A reservation is a single conditional increment against the period's usage
record, so two concurrent turns racing for the last slot cannot both pass.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import case, func, update

from models import AIUsageLog, QuotaPeriod, QuotaPolicy, UsageRecord
from models.errors import QuotaExceeded
from observability import trace_logger
from store.database import Database

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def period_start(period: str, now: Optional[datetime] = None) -> datetime:
    """
    Start of the period containing `now`, on UTC wall-clock boundaries.

    day starts at midnight, week on Monday midnight, month on the first day;
    "all" is the epoch and never resets.
    """
    period = QuotaPeriod(period)
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if period == QuotaPeriod.DAY:
        return midnight
    if period == QuotaPeriod.WEEK:
        return midnight - timedelta(days=midnight.weekday())
    if period == QuotaPeriod.MONTH:
        return midnight.replace(day=1)
    return EPOCH


@dataclass
class QuotaDecision:
    """Outcome of a reservation attempt."""
    allowed: bool
    organization_id: str
    period: str
    period_start: datetime
    requests_used: int
    request_limit: Optional[int] = None
    tokens_used: int = 0
    token_limit: Optional[int] = None

    @property
    def reason(self) -> Optional[str]:
        return None if self.allowed else QuotaExceeded.code

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "allowed": self.allowed,
            "organization_id": self.organization_id,
            "period": self.period,
            "period_start": self.period_start.isoformat(),
            "requests_used": self.requests_used,
            "request_limit": self.request_limit,
            "tokens_used": self.tokens_used,
            "token_limit": self.token_limit,
        }


class QuotaLedger:
    """Atomic check-and-reserve over usage records."""

    def __init__(self, db: Database):
        self.db = db

    def _ensure_record(self, session, organization_id: str, period: str, start: datetime) -> None:
        self.db.insert_ignore(session, UsageRecord, {
            "organization_id": organization_id,
            "period": period,
            "period_start": start,
            "requests_used": 0,
            "tokens_used": 0,
            "updated_at": datetime.now(timezone.utc),
        })

    @staticmethod
    def _record(session, organization_id: str, period: str, start: datetime) -> Optional[UsageRecord]:
        return session.query(UsageRecord).filter(
            UsageRecord.organization_id == organization_id,
            UsageRecord.period == period,
            UsageRecord.period_start == start
        ).first()

    def check_and_reserve(
        self,
        organization_id: str,
        period: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> QuotaDecision:
        """
        Reserve one model request for the organization in the current period.

        Without a policy the organization is unlimited, but the reservation is
        still counted. A limit of zero never allows.
        """
        def operation(session):
            policy = session.get(QuotaPolicy, organization_id)
            effective_period = QuotaPeriod(
                period or (policy.period if policy else QuotaPeriod.MONTH.value)
            ).value
            start = period_start(effective_period, now)
            request_limit = policy.request_limit if policy else None
            token_limit = policy.token_limit if policy else None

            self._ensure_record(session, organization_id, effective_period, start)

            conditions = [
                UsageRecord.organization_id == organization_id,
                UsageRecord.period == effective_period,
                UsageRecord.period_start == start,
            ]
            if request_limit is not None:
                conditions.append(UsageRecord.requests_used < request_limit)
            if token_limit is not None:
                conditions.append(UsageRecord.tokens_used < token_limit)

            result = session.execute(
                update(UsageRecord)
                .where(*conditions)
                .values(
                    requests_used=UsageRecord.requests_used + 1,
                    updated_at=datetime.now(timezone.utc)
                )
            )
            allowed = result.rowcount == 1

            record = self._record(session, organization_id, effective_period, start)
            return QuotaDecision(
                allowed=allowed,
                organization_id=organization_id,
                period=effective_period,
                period_start=start,
                requests_used=record.requests_used if record else 0,
                request_limit=request_limit,
                tokens_used=record.tokens_used if record else 0,
                token_limit=token_limit,
            )

        decision = self.db.run(operation)
        trace_logger.quota_checked(
            organization_id=organization_id,
            allowed=decision.allowed,
            used=decision.requests_used,
            limit=decision.request_limit,
            period=decision.period
        )
        return decision

    def record_usage(
        self,
        organization_id: str,
        model: Optional[str],
        tokens_input: int = 0,
        tokens_output: int = 0,
        success: bool = True,
        action: str = "agent_response",
        now: Optional[datetime] = None
    ) -> None:
        """Log one model invocation and add its tokens to the current period."""
        def operation(session):
            moment = now or datetime.now(timezone.utc)
            policy = session.get(QuotaPolicy, organization_id)
            effective_period = policy.period if policy else QuotaPeriod.MONTH.value
            start = period_start(effective_period, moment)

            session.add(AIUsageLog(
                organization_id=organization_id,
                action=action,
                model=model,
                tokens_input=tokens_input or 0,
                tokens_output=tokens_output or 0,
                success=success,
                created_at=moment,
            ))
            self._ensure_record(session, organization_id, effective_period, start)
            session.execute(
                update(UsageRecord)
                .where(
                    UsageRecord.organization_id == organization_id,
                    UsageRecord.period == effective_period,
                    UsageRecord.period_start == start
                )
                .values(
                    tokens_used=UsageRecord.tokens_used + (tokens_input or 0) + (tokens_output or 0),
                    updated_at=moment
                )
            )

        self.db.run(operation)

    def quota_status(self, organization_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Current window usage against the organization's limits (read-only)."""
        def operation(session):
            policy = session.get(QuotaPolicy, organization_id)
            effective_period = policy.period if policy else QuotaPeriod.MONTH.value
            start = period_start(effective_period, now)
            record = self._record(session, organization_id, effective_period, start)

            requests_used = record.requests_used if record else 0
            tokens_used = record.tokens_used if record else 0
            request_limit = policy.request_limit if policy else None
            token_limit = policy.token_limit if policy else None
            threshold = (policy.alert_threshold_pct if policy else None) or 80

            exhausted = (
                (request_limit is not None and requests_used >= request_limit)
                or (token_limit is not None and tokens_used >= token_limit)
            )
            ratios = []
            if request_limit:
                ratios.append(requests_used / request_limit)
            if token_limit:
                ratios.append(tokens_used / token_limit)
            alert = exhausted or any(r * 100 >= threshold for r in ratios)

            return {
                "organization_id": organization_id,
                "period": effective_period,
                "period_start": start,
                "requests_used": requests_used,
                "tokens_used": tokens_used,
                "request_limit": request_limit,
                "token_limit": token_limit,
                "alert_threshold_pct": threshold,
                "alert": alert,
                "exhausted": exhausted,
            }

        return self.db.run(operation)

    def usage_stats(
        self,
        organization_id: str,
        period: str = QuotaPeriod.MONTH.value,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Aggregate model invocations since the start of `period` (read-only)."""
        start = period_start(period, now)

        def operation(session):
            base = session.query(AIUsageLog).filter(
                AIUsageLog.organization_id == organization_id,
                AIUsageLog.created_at >= start
            )
            total, successes, tokens_in, tokens_out = base.with_entities(
                func.count(AIUsageLog.id),
                func.coalesce(func.sum(case((AIUsageLog.success.is_(True), 1), else_=0)), 0),
                func.coalesce(func.sum(AIUsageLog.tokens_input), 0),
                func.coalesce(func.sum(AIUsageLog.tokens_output), 0),
            ).one()
            by_model = dict(
                base.with_entities(AIUsageLog.model, func.count(AIUsageLog.id))
                .group_by(AIUsageLog.model)
                .all()
            )
            return {
                "organization_id": organization_id,
                "period": QuotaPeriod(period).value,
                "period_start": start,
                "total_requests": int(total or 0),
                "success_count": int(successes or 0),
                "tokens_input": int(tokens_in or 0),
                "tokens_output": int(tokens_out or 0),
                "by_model": {(model or "unknown"): count for model, count in by_model.items()},
            }

        return self.db.run(operation)