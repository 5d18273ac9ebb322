"""
Tests for the token budget guard.
"""

from datetime import timedelta

import pytest

from aidev_pipeline.errors import BudgetExceededError
from aidev_pipeline.llm.intake import IntakeReviewer
from aidev_pipeline.pipeline.budget import BudgetGuard, BudgetUsage, day_start, month_start
from aidev_pipeline.pipeline.enums import RequestStatus
from aidev_pipeline.workers.intake import IntakeWorker

from tests.conftest import NOW
from tests.fakes import FakeChatClient, make_proposal, make_request, make_verdict


class _NoReferences:
    def system_prompt_context(self):
        return "reference"


class TestBudgetUsage:
    def test_zero_cap_is_unlimited(self):
        usage = BudgetUsage(daily_used=10**9, monthly_used=10**9, daily_cap=0, monthly_cap=0)
        assert not usage.exceeded

    def test_reaching_the_cap_counts_as_exceeded(self):
        usage = BudgetUsage(daily_used=1000, monthly_used=1000, daily_cap=1000, monthly_cap=0)
        assert usage.daily_exceeded
        assert usage.exceeded

    def test_monthly_cap(self):
        usage = BudgetUsage(daily_used=10, monthly_used=5000, daily_cap=1000, monthly_cap=5000)
        assert not usage.daily_exceeded
        assert usage.monthly_exceeded

    def test_to_dict(self):
        usage = BudgetUsage(1, 2, 3, 4)
        assert usage.to_dict() == {
            "daily_used": 1,
            "daily_cap": 3,
            "monthly_used": 2,
            "monthly_cap": 4,
            "exceeded": False,
        }


class TestWindows:
    def test_day_and_month_start(self):
        assert day_start(NOW) == NOW.replace(hour=0, minute=0, second=0)
        assert month_start(NOW) == NOW.replace(day=1, hour=0, minute=0, second=0)


class TestBudgetGuard:
    """Usage is summed from the stage's own review rows."""

    def test_unknown_stage(self, settings):
        with pytest.raises(ValueError):
            BudgetGuard.for_stage("deploy", settings)

    def test_sums_today_and_this_month(self, db_session, settings):
        settings.intake_daily_token_budget = 10000
        settings.intake_monthly_token_budget = 10000
        request = make_request(db_session)
        make_verdict(db_session, request, NOW - timedelta(hours=1), prompt_tokens=300, completion_tokens=100)
        make_verdict(db_session, request, NOW - timedelta(days=1), prompt_tokens=50, completion_tokens=50)
        # Previous month
        make_verdict(db_session, request, NOW - timedelta(days=40), prompt_tokens=999, completion_tokens=1)

        usage = BudgetGuard.for_stage("intake", settings).usage(db_session, NOW)

        assert usage.daily_used == 400
        assert usage.monthly_used == 500

    def test_allows_cycle_below_cap(self, db_session, settings):
        settings.intake_daily_token_budget = 1000
        request = make_request(db_session)
        make_verdict(db_session, request, NOW, prompt_tokens=500, completion_tokens=100)

        assert BudgetGuard.for_stage("intake", settings).allows_cycle(db_session, NOW)

    def test_refuses_cycle_at_cap(self, db_session, settings):
        settings.intake_daily_token_budget = 600
        request = make_request(db_session)
        make_verdict(db_session, request, NOW, prompt_tokens=500, completion_tokens=100)

        assert not BudgetGuard.for_stage("intake", settings).allows_cycle(db_session, NOW)

    def test_ensure_available_raises(self, db_session, settings):
        settings.intake_daily_token_budget = 100
        request = make_request(db_session)
        make_verdict(db_session, request, NOW, prompt_tokens=500, completion_tokens=100)

        with pytest.raises(BudgetExceededError, match="intake token budget exceeded"):
            BudgetGuard.for_stage("intake", settings).ensure_available(db_session, NOW)

    def test_architect_counts_both_steps(self, db_session, settings):
        settings.architect_daily_token_budget = 10000
        request = make_request(db_session)
        make_proposal(
            db_session, request, NOW,
            step1_prompt_tokens=10, step1_completion_tokens=20,
            step2_prompt_tokens=30, step2_completion_tokens=40,
        )

        assert BudgetGuard.for_stage("architect", settings).usage(db_session, NOW).daily_used == 100


class TestBudgetedCycle:
    """A cycle over budget processes zero rows and changes no counters."""

    def test_cycle_skipped_when_daily_cap_reached(self, db_session, session_factory, settings, hosting):
        settings.intake_daily_token_budget = 150
        spent = make_request(db_session, status=RequestStatus.TRIAGED, agent_review_count=1)
        make_verdict(db_session, spent, NOW - timedelta(minutes=5), prompt_tokens=100, completion_tokens=50)
        waiting = make_request(db_session)

        client = FakeChatClient([{"decision": "Approve", "reasoning": "ok"}])
        worker = IntakeWorker(
            IntakeReviewer(client, _NoReferences()),
            hosting,
            settings,
            session_factory=session_factory,
            clock=lambda: NOW,
        )

        handled = worker.tick()

        db_session.expire_all()
        assert handled == 0
        assert client.calls == []
        assert worker.rows_processed == 0
        assert waiting.status == RequestStatus.NEW
        assert waiting.agent_review_count == 0
        assert hosting.calls == []
