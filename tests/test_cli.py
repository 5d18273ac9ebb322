"""Tests for the ``aidev`` command line."""

from datetime import timedelta

import pytest
from typer.testing import CliRunner

from aidev_pipeline import cli
from aidev_pipeline.db.base import utcnow
from aidev_pipeline.db.prompt_service import SystemPromptService
from aidev_pipeline.errors import BudgetExceededError
from aidev_pipeline.pipeline.enums import DeploymentStatus, RequestStatus
from aidev_pipeline.workers.base import PeriodicWorker
from aidev_pipeline.workers.supervisor import Supervisor

from tests.fakes import make_request

runner = CliRunner()


class _OverBudget:
    name = "intake"

    def ensure_available(self, db, now=None):
        raise BudgetExceededError("intake token budget exceeded (daily 10/5, monthly 0/0)")


@pytest.fixture(autouse=True)
def cli_env(monkeypatch, settings, session_factory):
    """Point the CLI at the test settings and in-memory database."""
    monkeypatch.setattr(cli, "get_settings", lambda: settings)
    monkeypatch.setattr(cli, "configure_logging", lambda settings=None: None)
    monkeypatch.setattr(cli, "_session", session_factory)


def _supervisor_with(monkeypatch, worker):
    supervisor = Supervisor()
    supervisor.register_worker(worker)
    monkeypatch.setattr(cli, "build_supervisor", lambda settings, only=None: supervisor)
    return supervisor


class TestTick:
    def test_runs_one_cycle(self, monkeypatch, session_factory):
        worker = PeriodicWorker(
            name="intake", claim=lambda db, now, limit: [], session_factory=session_factory
        )
        _supervisor_with(monkeypatch, worker)

        result = runner.invoke(cli.app, ["tick", "intake"])

        assert result.exit_code == 0
        assert "0 request(s) handled" in result.output
        assert worker.ticks == 1

    def test_over_budget_exits_1(self, monkeypatch, session_factory):
        worker = PeriodicWorker(
            name="intake", claim=lambda db, now, limit: [], session_factory=session_factory
        )
        worker.budget = _OverBudget()
        _supervisor_with(monkeypatch, worker)

        result = runner.invoke(cli.app, ["tick", "intake"])

        assert result.exit_code == 1
        assert "budget exceeded" in result.output
        assert worker.ticks == 0

    def test_disabled_worker_exits_1(self, monkeypatch):
        monkeypatch.setattr(cli, "build_supervisor", lambda settings, only=None: Supervisor())

        result = runner.invoke(cli.app, ["tick", "intake"])

        assert result.exit_code == 1

    def test_unknown_worker_exits_1(self):
        result = runner.invoke(cli.app, ["tick", "deploy"])

        assert result.exit_code == 1
        assert "deploy" in result.output


class TestHealth:
    def test_shows_summary_and_stalls(self, db_session):
        stalled = make_request(
            db_session,
            status=RequestStatus.NEEDS_CLARIFICATION,
            updated_at=utcnow() - timedelta(days=8),
        )

        result = runner.invoke(cli.app, ["health"])

        assert result.exit_code == 0
        assert "Pipeline Health" in result.output
        assert "Stalled requests" in result.output
        assert f"#{stalled.id}" in result.output

    def test_empty_store(self):
        result = runner.invoke(cli.app, ["health"])

        assert result.exit_code == 0
        assert "Active conflicts" in result.output


class TestRetryDeployment:
    def test_failed_deployment_requeued(self, db_session):
        request = make_request(
            db_session, status=RequestStatus.DONE, deployment_status=DeploymentStatus.FAILED
        )

        result = runner.invoke(cli.app, ["retry-deployment", str(request.id)])

        assert result.exit_code == 0
        assert "deployment retry 1/3 queued" in result.output
        db_session.expire_all()
        assert request.deployment_status == DeploymentStatus.PENDING

    def test_not_failed_exits_1(self, db_session):
        request = make_request(
            db_session, status=RequestStatus.DONE, deployment_status=DeploymentStatus.SUCCEEDED
        )

        result = runner.invoke(cli.app, ["retry-deployment", str(request.id)])

        assert result.exit_code == 1

    def test_missing_request_exits_1(self):
        result = runner.invoke(cli.app, ["retry-deployment", "999"])

        assert result.exit_code == 1
        assert "not found" in result.output


class TestPrompts:
    def test_lists_defaults_and_editors(self, db_session, session_factory):
        SystemPromptService(session_factory).update(db_session, "CodeReview", "Review strictly.", "alice")

        result = runner.invoke(cli.app, ["prompts"])

        assert result.exit_code == 0
        assert "System Prompts" in result.output
        assert "alice" in result.output
        assert "default" in result.output
