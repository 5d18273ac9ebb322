"""
Tests for the health queries: stalls, conflicts, deployments and the summary.
"""

from datetime import timedelta

from aidev_pipeline.pipeline.enums import (
    DeploymentStatus,
    ImplementationStatus,
    ProposalDecision,
    RequestStatus,
)
from aidev_pipeline.pipeline.monitoring import (
    STALL_FAILED,
    conflict_comment,
    conflict_recently_notified,
    deployment_run_missing,
    deployments_overdue,
    find_conflicts,
    find_stalled,
    health_summary,
    merge_time,
    stall_comment,
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

S = RequestStatus


class TestFindStalled:
    """Thresholds are strict: exactly at the threshold is not stalled."""

    def test_exact_threshold_is_not_stalled(self, db_session, settings):
        make_request(db_session, status=S.NEEDS_CLARIFICATION, updated_at=NOW - timedelta(days=7))

        assert find_stalled(db_session, settings, NOW) == []

    def test_one_second_past_threshold_is_stalled(self, db_session, settings):
        request = make_request(
            db_session, status=S.NEEDS_CLARIFICATION, updated_at=NOW - timedelta(days=7, seconds=1)
        )

        stalled = find_stalled(db_session, settings, NOW)

        assert [s.request.id for s in stalled] == [request.id]
        assert stalled[0].age_text == "7 days"

    def test_per_state_thresholds(self, db_session, settings):
        review = make_request(db_session, status=S.ARCHITECT_REVIEW, updated_at=NOW - timedelta(days=4))
        approved = make_request(db_session, status=S.APPROVED, updated_at=NOW - timedelta(days=2))
        make_request(
            db_session, status=S.APPROVED, updated_at=NOW - timedelta(days=2),
            implementation_session_id="session-1",
        )
        make_request(db_session, status=S.TRIAGED, updated_at=NOW - timedelta(days=30))

        states = {s.request.id: s.rule.state for s in find_stalled(db_session, settings, NOW)}

        assert states == {review.id: "ArchitectReview", approved.id: "Approved"}

    def test_failed_implementation_measured_from_completion(self, db_session, settings):
        project = make_project(db_session)
        old = in_progress_request(
            db_session, project, NOW - timedelta(days=3), ImplementationStatus.FAILED,
            implementation_completed_at=NOW - timedelta(hours=25),
        )
        in_progress_request(
            db_session, project, NOW - timedelta(days=3), ImplementationStatus.FAILED,
            implementation_completed_at=NOW - timedelta(hours=2),
        )

        stalled = find_stalled(db_session, settings, NOW)

        assert [s.request.id for s in stalled] == [old.id]
        assert stalled[0].rule.state == STALL_FAILED
        assert stalled[0].age_text == "25 hours"

    def test_recent_notification_suppresses(self, db_session, settings):
        make_request(
            db_session, status=S.NEEDS_CLARIFICATION,
            updated_at=NOW - timedelta(days=10),
            stall_notified_at=NOW - timedelta(days=1),
        )

        assert find_stalled(db_session, settings, NOW) == []
        assert len(find_stalled(db_session, settings, NOW, include_notified=True)) == 1

    def test_old_notification_flags_again(self, db_session, settings):
        make_request(
            db_session, status=S.NEEDS_CLARIFICATION,
            updated_at=NOW - timedelta(days=20),
            stall_notified_at=NOW - timedelta(days=8),
        )

        assert len(find_stalled(db_session, settings, NOW)) == 1

    def test_stall_comment(self, db_session, settings):
        make_request(db_session, status=S.ARCHITECT_REVIEW, updated_at=NOW - timedelta(days=5))

        comment = stall_comment(find_stalled(db_session, settings, NOW)[0])

        assert comment.startswith("**Stall Alert:** The proposed solution has been awaiting review for 5 days.")


def _implementing(db_session, project, issue_number, paths):
    request = in_progress_request(
        db_session, project, NOW - timedelta(hours=1), ImplementationStatus.WORKING,
        issue_number=issue_number,
    )
    make_proposal(
        db_session, request, CREATED_AT, ProposalDecision.APPROVED,
        solution=solution_json(impacted=paths, new=()),
    )
    return request


class TestFindConflicts:
    def test_overlap_is_case_insensitive(self, db_session):
        project = make_project(db_session)
        first = _implementing(db_session, project, 50, ["src/Orders/Export.py", "src/a.py"])
        second = _implementing(db_session, project, 51, ["src/orders/export.py"])

        conflicts = find_conflicts(db_session)

        assert len(conflicts) == 1
        assert conflicts[0].files == ["src/orders/export.py"]
        assert conflicts[0].to_dict()["request_ids"] == [first.id, second.id]

    def test_disjoint_sets(self, db_session):
        project = make_project(db_session)
        _implementing(db_session, project, 50, ["src/a.py"])
        _implementing(db_session, project, 51, ["src/b.py"])

        assert find_conflicts(db_session) == []

    def test_finished_implementations_ignored(self, db_session):
        project = make_project(db_session)
        _implementing(db_session, project, 50, ["src/a.py"])
        done = _implementing(db_session, project, 51, ["src/a.py"])
        done.implementation_status = ImplementationStatus.PR_MERGED
        db_session.commit()

        assert find_conflicts(db_session) == []

    def test_without_approved_proposal_no_conflict(self, db_session):
        project = make_project(db_session)
        _implementing(db_session, project, 50, ["src/a.py"])
        in_progress_request(db_session, project, NOW, ImplementationStatus.WORKING, issue_number=51)

        assert find_conflicts(db_session) == []

    def test_recent_notification_window(self, db_session):
        request = make_request(db_session, conflict_notified_at=NOW - timedelta(hours=23))
        window = timedelta(hours=24)

        assert conflict_recently_notified(request, NOW, window)
        assert not conflict_recently_notified(request, NOW + timedelta(hours=2), window)

    def test_comment_lists_at_most_ten_files(self, db_session):
        other = make_request(db_session, issue_number=77)
        files = [f"src/f{i}.py" for i in range(12)]

        comment = conflict_comment(other, files)

        assert f"Request #{other.id} (Issue #77)" in comment
        assert "**Overlapping files (12):**" in comment
        assert comment.count("- `src/") == 10


class TestDeployments:
    def test_merge_time_falls_back_to_grace(self, db_session):
        request = make_request(db_session, status=S.DONE)
        assert merge_time(request, NOW, timedelta(minutes=30)) == NOW - timedelta(minutes=30)

    def test_run_missing_after_grace(self, db_session):
        grace = timedelta(minutes=30)
        recent = make_request(
            db_session, status=S.DONE, implementation_completed_at=NOW - timedelta(minutes=10)
        )
        late = make_request(
            db_session, status=S.DONE, implementation_completed_at=NOW - timedelta(minutes=30)
        )
        unrecorded = make_request(db_session, status=S.DONE)

        assert not deployment_run_missing(recent, NOW, grace)
        assert deployment_run_missing(late, NOW, grace)
        assert deployment_run_missing(unrecorded, NOW, grace)

    def test_overdue_after_timeout(self, db_session, settings):
        overdue = make_request(
            db_session, status=S.DONE, deployment_status=DeploymentStatus.PENDING,
            implementation_completed_at=NOW - timedelta(hours=7),
        )
        make_request(
            db_session, status=S.DONE, deployment_status=DeploymentStatus.IN_PROGRESS,
            implementation_completed_at=NOW - timedelta(hours=1),
        )

        assert [r.id for r in deployments_overdue(db_session, settings, NOW)] == [overdue.id]


class TestHealthSummary:
    def test_counts(self, db_session, settings):
        make_request(db_session, status=S.NEEDS_CLARIFICATION, updated_at=NOW - timedelta(days=8))
        make_request(
            db_session, status=S.DONE, deployment_status=DeploymentStatus.SUCCEEDED,
            implementation_status=ImplementationStatus.PR_MERGED,
            branch_name="copilot/fix-1", branch_deleted=True,
        )
        make_request(
            db_session, status=S.DONE, deployment_status=DeploymentStatus.PENDING,
            implementation_status=ImplementationStatus.PR_MERGED,
            branch_name="copilot/fix-2", branch_deleted=False,
            implementation_completed_at=NOW - timedelta(hours=8),
        )

        summary = health_summary(db_session, settings, NOW)

        assert summary["generated_at"] == NOW.isoformat()
        assert summary["total_stalled"] == 1
        assert summary["stalled"]["NeedsClarification"] == 1
        assert summary["stalled"][STALL_FAILED] == 0
        assert summary["deployments"]["Succeeded"] == 1
        assert summary["deployments"]["Pending"] == 1
        assert summary["branches_deleted"] == 1
        assert summary["branches_outstanding"] == 1
        assert len(summary["deployments_overdue"]) == 1
        assert summary["active_conflicts"] == 0
