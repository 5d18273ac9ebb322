"""
Tests for the implementation trigger and its instruction rendering.
"""

from aidev_pipeline.pipeline.enums import ImplementationStatus, ProposalDecision, RequestStatus
from aidev_pipeline.workers.implementation import (
    IMPLEMENTING_LABEL,
    ImplementationWorker,
    build_instructions,
    session_id_for,
)

from tests.conftest import NOW
from tests.fakes import CREATED_AT, in_progress_request, make_project, make_proposal, make_request


def _worker(hosting, settings, session_factory):
    return ImplementationWorker(hosting, settings, session_factory=session_factory, clock=lambda: NOW)


def _approved(db_session, project, **fields):
    request = make_request(db_session, project, status=RequestStatus.APPROVED, **fields)
    make_proposal(db_session, request, CREATED_AT, ProposalDecision.APPROVED)
    return request


class TestBuildInstructions:
    def test_sections_from_solution(self, db_session):
        request = make_request(db_session, status=RequestStatus.APPROVED)
        proposal = make_proposal(db_session, request, CREATED_AT)

        text = build_instructions(proposal)

        assert text.startswith("## Approved Solution\n\n**Approach:** Add a CSV export endpoint")
        assert "## Files to Modify\n- `src/orders/export.py`" in text
        assert "## New Files to Create\n- `src/orders/csv_writer.py`" in text
        assert "## Implementation Order\n1. Writer\n2. Endpoint" in text
        assert "- [medium] Large exports" in text
        assert "## Testing Requirements\nExport an empty and a large order list." in text
        assert text.rstrip().endswith("unless a breaking change is listed above")

    def test_malformed_solution_still_renders(self, db_session):
        request = make_request(db_session, status=RequestStatus.APPROVED)
        proposal = make_proposal(db_session, request, CREATED_AT, solution={"impactedFiles": "nope"})

        text = build_instructions(proposal)

        assert "## Files to Modify" not in text
        assert "## Important" in text


class TestImplementationWorker:
    """Approved requests are handed to the agent within the concurrency cap."""

    def test_assigns_agent_and_moves_to_in_progress(self, db_session, session_factory, settings, hosting):
        request = _approved(db_session, make_project(db_session))

        assert _worker(hosting, settings, session_factory).tick() == 1

        db_session.expire_all()
        assert request.status == RequestStatus.IN_PROGRESS
        assert request.implementation_status == ImplementationStatus.PENDING
        assert request.implementation_triggered_at == NOW
        assert request.implementation_session_id == f"session-{request.id}-20260302120000"
        assert hosting.assigned[0][0] == 42
        assert "## Approved Solution" in hosting.assigned[0][1]
        assert hosting.called("assign_coding_agent")[0][-1] == "main"
        assert hosting.labels[42] == [IMPLEMENTING_LABEL]
        assert "Implementation triggered" in hosting.comments[42][0]

    def test_respects_capacity(self, db_session, session_factory, settings, hosting):
        settings.implementation_max_concurrent = 2
        project = make_project(db_session)
        in_progress_request(db_session, project, CREATED_AT, ImplementationStatus.WORKING)
        first = _approved(db_session, project, issue_number=50)
        second = _approved(db_session, project, issue_number=51)

        handled = _worker(hosting, settings, session_factory).tick()

        db_session.expire_all()
        assert handled == 1
        statuses = sorted(r.status.value for r in (first, second))
        assert statuses == ["Approved", "InProgress"]

    def test_no_capacity_claims_nothing(self, db_session, session_factory, settings, hosting):
        settings.implementation_max_concurrent = 1
        project = make_project(db_session)
        in_progress_request(db_session, project, CREATED_AT, ImplementationStatus.PENDING)
        waiting = _approved(db_session, project, issue_number=50)

        assert _worker(hosting, settings, session_factory).tick() == 0

        db_session.expire_all()
        assert waiting.status == RequestStatus.APPROVED
        assert hosting.assigned == []

    def test_assign_failure_leaves_request_approved(self, db_session, session_factory, settings, hosting):
        request = _approved(db_session, make_project(db_session))
        hosting.fail = {"assign_coding_agent"}
        worker = _worker(hosting, settings, session_factory)

        assert worker.tick() == 0

        db_session.expire_all()
        assert request.status == RequestStatus.APPROVED
        assert request.implementation_session_id is None
        assert worker.rows_failed == 1

    def test_without_approved_proposal_nothing_happens(self, db_session, session_factory, settings, hosting):
        request = make_request(db_session, make_project(db_session), status=RequestStatus.APPROVED)

        _worker(hosting, settings, session_factory).tick()

        db_session.expire_all()
        assert request.status == RequestStatus.APPROVED
        assert hosting.assigned == []

    def test_session_id_format(self, db_session):
        request = make_request(db_session)
        assert session_id_for(request, NOW) == f"session-{request.id}-20260302120000"
