"""AI usage quota enforcement."""

from quota.ledger import QuotaLedger, QuotaDecision, period_start

__all__ = ["QuotaLedger", "QuotaDecision", "period_start"]
