"""
Tests for the architect worker.
"""

from datetime import timedelta

from aidev_pipeline.db.models import CommentModel, SolutionProposalModel
from aidev_pipeline.integrations.codebase import CodebaseReader
from aidev_pipeline.integrations.hosting import TreeEntry
from aidev_pipeline.llm.architect import SolutionArchitect
from aidev_pipeline.pipeline.enums import ProposalDecision, RequestStatus
from aidev_pipeline.workers.architect import AGENT_NAME, REVIEW_LABEL, ArchitectWorker

from tests.conftest import NOW
from tests.fakes import (
    FakeChatClient,
    make_comment,
    make_project,
    make_proposal,
    make_request,
    make_verdict,
    solution_json,
)


class StaticReferences:
    def system_prompt_context(self):
        return "reference"


def _worker(replies, hosting, settings, session_factory):
    client = FakeChatClient(replies)
    worker = ArchitectWorker(
        SolutionArchitect(client, StaticReferences()),
        CodebaseReader(hosting),
        hosting,
        settings,
        session_factory=session_factory,
        clock=lambda: NOW,
    )
    return worker, client


def _triaged(db_session, project=None, **fields):
    project = project or make_project(db_session)
    request = make_request(db_session, project, status=RequestStatus.TRIAGED, **fields)
    make_verdict(db_session, request, NOW - timedelta(hours=1))
    return request


class TestArchitectWorker:
    """A Pending proposal, an agent comment and ArchitectReview per cycle."""

    def test_first_proposal(self, db_session, session_factory, settings, hosting):
        hosting.tree = [TreeEntry("src/orders/export.py", size=800), TreeEntry("README.md", size=40)]
        hosting.files = {"src/orders/export.py": "def export(): ..."}
        request = _triaged(db_session)
        worker, client = _worker(
            [["src/orders/export.py"], [], solution_json()], hosting, settings, session_factory
        )

        assert worker.tick() == 1

        db_session.expire_all()
        assert request.status == RequestStatus.ARCHITECT_REVIEW
        assert request.architect_review_count == 1
        assert request.last_architect_review_at == NOW

        proposal = db_session.query(SolutionProposalModel).one()
        assert proposal.decision == ProposalDecision.PENDING
        assert proposal.files_read == ["src/orders/export.py"]
        assert proposal.solution_json["solutionSummary"] == "Add a CSV export endpoint"
        assert proposal.step1_prompt_tokens == 200
        assert proposal.step2_prompt_tokens == 100

        comment = db_session.query(CommentModel).one()
        assert comment.author == AGENT_NAME
        assert comment.solution_proposal_id == proposal.id

        assert hosting.labels[42] == [REVIEW_LABEL]
        assert len(hosting.comments[42]) == 1
        step1_user = client.calls[0]["messages"][1].text
        assert "export.py (20 lines)" in step1_user

    def test_missing_verdict_leaves_request(self, db_session, session_factory, settings, hosting):
        request = make_request(db_session, make_project(db_session), status=RequestStatus.TRIAGED)
        worker, client = _worker([solution_json()], hosting, settings, session_factory)

        worker.tick()

        db_session.expire_all()
        assert request.status == RequestStatus.TRIAGED
        assert request.architect_review_count == 0
        assert client.calls == []

    def test_missing_project_leaves_request(self, db_session, session_factory, settings, hosting):
        request = make_request(db_session, status=RequestStatus.TRIAGED)
        make_verdict(db_session, request, NOW - timedelta(hours=1))
        worker, client = _worker([solution_json()], hosting, settings, session_factory)

        worker.tick()

        db_session.expire_all()
        assert request.status == RequestStatus.TRIAGED
        assert client.calls == []

    def test_revision_after_feedback(self, db_session, session_factory, settings, hosting):
        designed_at = NOW - timedelta(hours=3)
        request = _triaged(db_session)
        request.status = RequestStatus.ARCHITECT_REVIEW
        request.architect_review_count = 1
        request.last_architect_review_at = designed_at
        db_session.commit()
        first = make_proposal(db_session, request, designed_at, ProposalDecision.REVISION_REQUESTED)
        make_comment(
            db_session, request, "First design", designed_at,
            is_agent_comment=True, author=AGENT_NAME, solution_proposal_id=first.id,
        )
        make_comment(db_session, request, "Please stream the rows", designed_at + timedelta(hours=1))
        worker, client = _worker([[], solution_json()], hosting, settings, session_factory)

        assert worker.tick() == 1

        db_session.expire_all()
        assert request.status == RequestStatus.ARCHITECT_REVIEW
        assert request.architect_review_count == 2
        assert db_session.query(SolutionProposalModel).count() == 2
        user = client.calls[-1]["messages"][1].text
        assert "THIS IS A REVISION." in user
        assert ">> Please stream the rows" in user

    def test_repository_map_is_cached(self, db_session, session_factory, settings, hosting):
        hosting.tree = [TreeEntry("src/app.py", size=400)]
        project = make_project(db_session)
        _triaged(db_session, project)
        _triaged(db_session, project, title="Second request title")
        worker, _ = _worker([[], solution_json()], hosting, settings, session_factory)

        assert worker.tick() == 2

        assert len(hosting.called("get_tree")) == 1
