"""Tests for the quota ledger: period boundaries, reservations and usage."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from models import AIUsageLog, UsageRecord
from quota import period_start
from quota.ledger import EPOCH


NOW = datetime(2026, 10, 15, 13, 45, 12, tzinfo=timezone.utc)  # a Thursday


class TestPeriodStart:

    def test_day(self):
        assert period_start("day", NOW) == datetime(2026, 10, 15, tzinfo=timezone.utc)

    def test_week_starts_monday(self):
        assert period_start("week", NOW) == datetime(2026, 10, 12, tzinfo=timezone.utc)

    def test_month(self):
        assert period_start("month", NOW) == datetime(2026, 10, 1, tzinfo=timezone.utc)

    def test_all_never_resets(self):
        assert period_start("all", NOW) == EPOCH

    def test_local_offsets_are_normalized_to_utc(self):
        late_evening_brt = datetime(2026, 10, 31, 22, 30, tzinfo=timezone(timedelta(hours=-3)))
        # 01:30 UTC on November 1st
        assert period_start("month", late_evening_brt) == datetime(2026, 11, 1, tzinfo=timezone.utc)

    def test_unknown_period(self):
        with pytest.raises(ValueError):
            period_start("year", NOW)


class TestCheckAndReserve:

    def test_without_policy_is_unlimited_but_counted(self, ledger):
        for _ in range(3):
            decision = ledger.check_and_reserve("org-free", now=NOW)
            assert decision.allowed

        assert decision.requests_used == 3
        assert decision.request_limit is None
        assert decision.period == "month"

    def test_request_limit_boundary(self, ledger, set_quota):
        set_quota("org-1", request_limit=2)

        assert ledger.check_and_reserve("org-1", now=NOW).allowed
        assert ledger.check_and_reserve("org-1", now=NOW).allowed
        denied = ledger.check_and_reserve("org-1", now=NOW)

        assert not denied.allowed
        assert denied.reason == "quota_exceeded"
        assert denied.requests_used == 2

    def test_zero_limit_never_allows(self, ledger, set_quota):
        set_quota("org-1", request_limit=0)
        assert not ledger.check_and_reserve("org-1", now=NOW).allowed

    def test_token_limit_blocks_after_usage(self, ledger, set_quota):
        set_quota("org-1", token_limit=100)

        assert ledger.check_and_reserve("org-1", now=NOW).allowed
        ledger.record_usage("org-1", "fake-model", tokens_input=80, tokens_output=30, now=NOW)

        assert not ledger.check_and_reserve("org-1", now=NOW).allowed

    def test_new_period_resets(self, ledger, set_quota):
        set_quota("org-1", request_limit=1, period="day")

        assert ledger.check_and_reserve("org-1", now=NOW).allowed
        assert not ledger.check_and_reserve("org-1", now=NOW).allowed
        tomorrow = datetime(2026, 10, 16, 0, 0, 1, tzinfo=timezone.utc)
        assert ledger.check_and_reserve("org-1", now=tomorrow).allowed

    def test_concurrent_reservations_never_exceed_limit(self, ledger, set_quota, db):
        set_quota("org-race", request_limit=5)

        with ThreadPoolExecutor(max_workers=10) as pool:
            decisions = list(pool.map(lambda _: ledger.check_and_reserve("org-race", now=NOW), range(20)))

        assert sum(1 for d in decisions if d.allowed) == 5

        def read(session):
            return session.query(UsageRecord).filter(UsageRecord.organization_id == "org-race").one().requests_used

        assert db.run(read) == 5


class TestUsageRecording:

    def test_record_usage_appends_log_and_adds_tokens(self, ledger, db):
        ledger.check_and_reserve("org-1", now=NOW)
        ledger.record_usage("org-1", "gpt-4o-mini", tokens_input=120, tokens_output=30, now=NOW)
        ledger.record_usage("org-1", "gpt-4o-mini", success=False, now=NOW)

        def read(session):
            logs = session.query(AIUsageLog).filter(AIUsageLog.organization_id == "org-1").count()
            record = session.query(UsageRecord).filter(UsageRecord.organization_id == "org-1").one()
            return logs, record.tokens_used, record.requests_used

        assert db.run(read) == (2, 150, 1)

    def test_quota_status_flags(self, ledger, set_quota):
        set_quota("org-1", request_limit=5)
        for _ in range(4):
            ledger.check_and_reserve("org-1")

        status = ledger.quota_status("org-1")

        assert status["requests_used"] == 4
        assert status["request_limit"] == 5
        assert status["alert"] is True
        assert status["exhausted"] is False

    def test_usage_stats_breakdown(self, ledger):
        ledger.record_usage("org-1", "gpt-4o-mini", tokens_input=10, tokens_output=5)
        ledger.record_usage("org-1", "gpt-4o-mini", tokens_input=20, tokens_output=5)
        ledger.record_usage("org-1", "claude-3-5-haiku-latest", success=False)
        ledger.record_usage("org-other", "gpt-4o-mini", tokens_input=999)

        stats = ledger.usage_stats("org-1", "month")

        assert stats["total_requests"] == 3
        assert stats["success_count"] == 2
        assert stats["tokens_input"] == 30
        assert stats["tokens_output"] == 10
        assert stats["by_model"] == {"gpt-4o-mini": 2, "claude-3-5-haiku-latest": 1}
