"""
Tests for the health worker: stall alerts, deployment tracking and conflicts.
"""

from datetime import timedelta

from aidev_pipeline.integrations.hosting import WorkflowRun
from aidev_pipeline.pipeline.enums import (
    DeploymentStatus,
    ImplementationStatus,
    ProposalDecision,
    RequestStatus,
)
from aidev_pipeline.workers.orchestrator import (
    CONFLICT_LABEL,
    DEPLOY_FAILED_LABEL,
    DEPLOYED_LABEL,
    STALLED_LABEL,
    HealthWorker,
)

from tests.conftest import NOW
from tests.fakes import (
    CREATED_AT,
    in_progress_request,
    make_project,
    make_proposal,
    make_request,
    solution_json,
)


def _worker(hosting, settings, session_factory, clock=lambda: NOW):
    return HealthWorker(hosting, settings, session_factory=session_factory, clock=clock)


def _merged(db_session, project, **fields):
    values = dict(
        status=RequestStatus.DONE,
        implementation_status=ImplementationStatus.PR_MERGED,
        implementation_completed_at=NOW - timedelta(minutes=10),
        deployment_status=DeploymentStatus.PENDING,
        pr_number=7,
    )
    values.update(fields)
    return make_request(db_session, project, **values)


class TestStallPhase:
    """A stalled request is flagged once per threshold period."""

    def test_flags_once(self, db_session, session_factory, settings, hosting):
        request = make_request(
            db_session, make_project(db_session),
            status=RequestStatus.NEEDS_CLARIFICATION, updated_at=NOW - timedelta(days=8),
        )
        worker = _worker(hosting, settings, session_factory)

        assert worker.tick() == 1
        assert worker.tick() == 0

        db_session.expire_all()
        assert request.stall_notified_at == NOW
        assert request.updated_at == NOW - timedelta(days=8)
        assert request.status == RequestStatus.NEEDS_CLARIFICATION
        assert hosting.labels[42] == [STALLED_LABEL]
        assert len(hosting.comments[42]) == 1
        assert hosting.comments[42][0].startswith("**Stall Alert:**")

    def test_flags_again_after_threshold(self, db_session, session_factory, settings, hosting):
        make_request(
            db_session, make_project(db_session),
            status=RequestStatus.NEEDS_CLARIFICATION, updated_at=NOW - timedelta(days=8),
        )
        later = {"now": NOW}
        worker = _worker(hosting, settings, session_factory, clock=lambda: later["now"])

        worker.tick()
        later["now"] = NOW + timedelta(days=7, seconds=1)
        worker.tick()

        assert len(hosting.comments[42]) == 2

    def test_stall_without_project_is_still_recorded(self, db_session, session_factory, settings, hosting):
        request = make_request(
            db_session, status=RequestStatus.ARCHITECT_REVIEW, updated_at=NOW - timedelta(days=4)
        )

        assert _worker(hosting, settings, session_factory).tick() == 1

        db_session.expire_all()
        assert request.stall_notified_at == NOW
        assert hosting.calls == []


class TestDeploymentPhase:
    """Merged requests follow the base branch workflow run to an outcome."""

    def test_succeeded(self, db_session, session_factory, settings, hosting):
        request = _merged(db_session, make_project(db_session))
        hosting.workflow_run = WorkflowRun(id=900, status="completed", conclusion="success")

        _worker(hosting, settings, session_factory).tick()

        db_session.expire_all()
        assert request.deployment_status == DeploymentStatus.SUCCEEDED
        assert request.deployment_run_id == 900
        assert request.deployed_at == NOW
        assert hosting.labels[42] == [DEPLOYED_LABEL]
        assert "Deployed to UAT" in hosting.comments[42][0]
        call = hosting.called("get_latest_workflow_run")[0]
        assert call[3:] == ("main", NOW - timedelta(minutes=10))

    def test_failed(self, db_session, session_factory, settings, hosting):
        request = _merged(db_session, make_project(db_session))
        hosting.workflow_run = WorkflowRun(id=901, status="completed", conclusion="failure")

        _worker(hosting, settings, session_factory).tick()

        db_session.expire_all()
        assert request.deployment_status == DeploymentStatus.FAILED
        assert request.deployed_at is None
        assert hosting.labels[42] == [DEPLOY_FAILED_LABEL]

    def test_running(self, db_session, session_factory, settings, hosting):
        request = _merged(db_session, make_project(db_session))
        hosting.workflow_run = WorkflowRun(id=902, status="in_progress")

        _worker(hosting, settings, session_factory).tick()

        db_session.expire_all()
        assert request.deployment_status == DeploymentStatus.IN_PROGRESS
        assert request.deployment_run_id == 902
        assert hosting.comments == {}

    def test_no_run_yet(self, db_session, session_factory, settings, hosting):
        request = _merged(db_session, make_project(db_session))

        assert _worker(hosting, settings, session_factory).tick() == 0

        db_session.expire_all()
        assert request.deployment_status == DeploymentStatus.PENDING

    def test_unrecorded_merge_time_uses_grace(self, db_session, session_factory, settings, hosting):
        _merged(db_session, make_project(db_session), implementation_completed_at=None)

        _worker(hosting, settings, session_factory).tick()

        assert hosting.called("get_latest_workflow_run")[0][-1] == NOW - timedelta(minutes=30)

    def test_finished_deployments_not_tracked(self, db_session, session_factory, settings, hosting):
        _merged(db_session, make_project(db_session), deployment_status=DeploymentStatus.SUCCEEDED)

        _worker(hosting, settings, session_factory).tick()

        assert hosting.called("get_latest_workflow_run") == []

    def test_failing_repository_does_not_starve_later_rows(
        self, db_session, session_factory, settings, hosting
    ):
        broken = _merged(db_session, make_project(db_session, name="billing", repo="billing"))
        healthy = _merged(db_session, make_project(db_session), issue_number=43)
        hosting.fail_repos = {"billing"}
        hosting.workflow_run = WorkflowRun(id=900, status="completed", conclusion="success")
        worker = _worker(hosting, settings, session_factory)

        assert worker.tick() == 1

        db_session.expire_all()
        assert broken.deployment_status == DeploymentStatus.PENDING
        assert healthy.deployment_status == DeploymentStatus.SUCCEEDED
        assert worker.rows_failed == 1
        assert worker.last_error == "deployments: HostingError: get_latest_workflow_run failed for billing"
        assert hosting.labels[43] == [DEPLOYED_LABEL]


class TestBranchCleanupPhase:
    """Merged branches that could not be deleted are retried until they are gone."""

    def _merged_with_branch(self, db_session):
        return _merged(
            db_session, make_project(db_session),
            deployment_status=DeploymentStatus.SUCCEEDED,
            branch_name="copilot/fix-42",
        )

    def test_retries_failed_delete(self, db_session, session_factory, settings, hosting):
        request = self._merged_with_branch(db_session)
        worker = _worker(hosting, settings, session_factory)
        hosting.delete_result = False

        assert worker.tick() == 0
        db_session.expire_all()
        assert request.branch_deleted is False

        hosting.delete_result = True
        assert worker.tick() == 1
        assert worker.tick() == 0

        db_session.expire_all()
        assert request.branch_deleted is True
        assert [c[1:] for c in hosting.called("delete_branch")] == [
            ("myorg", "storefront", "copilot/fix-42"),
            ("myorg", "storefront", "copilot/fix-42"),
        ]

    def test_deleted_branches_left_alone(self, db_session, session_factory, settings, hosting):
        request = self._merged_with_branch(db_session)
        request.branch_deleted = True
        db_session.commit()

        _worker(hosting, settings, session_factory).tick()

        assert hosting.called("delete_branch") == []


class TestConflictPhase:
    def _implementing(self, db_session, project, issue_number, paths):
        request = in_progress_request(
            db_session, project, NOW - timedelta(hours=1), ImplementationStatus.WORKING,
            issue_number=issue_number,
        )
        make_proposal(
            db_session, request, CREATED_AT, ProposalDecision.APPROVED,
            solution=solution_json(impacted=paths, new=()),
        )
        return request

    def test_both_sides_notified_once_per_window(self, db_session, session_factory, settings, hosting):
        project = make_project(db_session)
        first = self._implementing(db_session, project, 50, ["src/orders/export.py"])
        second = self._implementing(db_session, project, 51, ["src/orders/export.py"])
        worker = _worker(hosting, settings, session_factory)

        assert worker.tick() == 2
        assert worker.tick() == 0

        db_session.expire_all()
        assert first.conflict_notified_at == NOW
        assert second.conflict_notified_at == NOW
        assert hosting.labels[50] == [CONFLICT_LABEL]
        assert hosting.labels[51] == [CONFLICT_LABEL]
        assert f"Request #{second.id}" in hosting.comments[50][0]
        assert f"Request #{first.id}" in hosting.comments[51][0]


class TestPhaseIsolation:
    """A failing phase does not stop the phases after it."""

    def test_deployment_failure_does_not_block_conflicts(
        self, db_session, session_factory, settings, hosting
    ):
        project = make_project(db_session)
        _merged(db_session, project)
        hosting.fail = {"get_latest_workflow_run"}
        for issue_number in (50, 51):
            request = in_progress_request(
                db_session, project, NOW - timedelta(hours=1), ImplementationStatus.WORKING,
                issue_number=issue_number,
            )
            make_proposal(db_session, request, CREATED_AT, ProposalDecision.APPROVED)
        worker = _worker(hosting, settings, session_factory)

        assert worker.tick() == 2

        assert worker.rows_failed == 1
        assert worker.last_error.startswith("deployments: HostingError")
        assert len(hosting.comments[50]) == 1

    def test_status(self, session_factory, settings, hosting):
        worker = _worker(hosting, settings, session_factory)
        worker.tick()

        status = worker.get_status()

        assert status["name"] == "orchestrator"
        assert status["ticks"] == 1
        assert status["last_tick_at"] == NOW.isoformat()
