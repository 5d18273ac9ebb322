"""
Database services for the AIDev Pipeline.

Each worker's claim predicate lives here so the query that decides "whose
turn is it" is defined once and can be tested on its own.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, desc, exists, func, or_
from sqlalchemy.orm import Session

from ..pipeline.enums import (
    DeploymentStatus,
    ImplementationStatus,
    MergeDecision,
    ProposalDecision,
    RequestStatus,
)
from .base import utcnow
from .models import (
    CommentModel,
    DevRequestModel,
    IntakeVerdictModel,
    MergeReviewModel,
    SolutionProposalModel,
)


def _human_comment_since(last_reviewed_at):
    """EXISTS a human comment newer than ``last_reviewed_at`` (or any, if never reviewed)."""
    return exists().where(
        and_(
            CommentModel.request_id == DevRequestModel.id,
            CommentModel.is_agent_comment.is_(False),
            or_(last_reviewed_at.is_(None), CommentModel.created_at > last_reviewed_at),
        )
    )


class RequestService:
    """Queries over development requests, including every worker's claim predicate."""

    def __init__(self, db: Session):
        self.db = db

    def get_request(self, request_id: int) -> Optional[DevRequestModel]:
        """Get a request by ID."""
        return self.db.query(DevRequestModel).filter(DevRequestModel.id == request_id).first()

    def claim_for_intake(self, max_reviews: int, limit: int) -> List[DevRequestModel]:
        """New requests never reviewed, or clarification requests with fresh human input."""
        r = DevRequestModel
        return (
            self.db.query(r)
            .filter(
                or_(
                    and_(r.status == RequestStatus.NEW, r.agent_review_count == 0),
                    and_(
                        r.status == RequestStatus.NEEDS_CLARIFICATION,
                        r.agent_review_count < max_reviews,
                        _human_comment_since(r.last_agent_review_at),
                    ),
                )
            )
            .order_by(r.created_at.asc(), r.id.asc())
            .limit(limit)
            .all()
        )

    def claim_for_architect(self, max_reviews: int, limit: int) -> List[DevRequestModel]:
        """Triaged requests never designed, or proposals with fresh human feedback."""
        r = DevRequestModel
        return (
            self.db.query(r)
            .filter(
                or_(
                    and_(r.status == RequestStatus.TRIAGED, r.architect_review_count == 0),
                    and_(
                        r.status == RequestStatus.ARCHITECT_REVIEW,
                        r.architect_review_count < max_reviews,
                        _human_comment_since(r.last_architect_review_at),
                    ),
                )
            )
            .order_by(r.created_at.asc(), r.id.asc())
            .limit(limit)
            .all()
        )

    def count_running_implementations(self) -> int:
        """Requests whose coding agent session has not produced a PR yet."""
        return (
            self.db.query(func.count(DevRequestModel.id))
            .filter(
                DevRequestModel.status == RequestStatus.IN_PROGRESS,
                DevRequestModel.implementation_status.in_(
                    [ImplementationStatus.PENDING, ImplementationStatus.WORKING]
                ),
            )
            .scalar()
            or 0
        )

    def claim_for_implementation(self, limit: int) -> List[DevRequestModel]:
        """Approved requests with a linked issue and no agent session yet."""
        if limit <= 0:
            return []
        r = DevRequestModel
        return (
            self.db.query(r)
            .filter(
                r.status == RequestStatus.APPROVED,
                r.implementation_session_id.is_(None),
                r.issue_number.isnot(None),
            )
            .order_by(r.updated_at.asc(), r.id.asc())
            .limit(limit)
            .all()
        )

    def claim_for_pr_monitor(self, limit: int) -> List[DevRequestModel]:
        """In-progress requests whose agent session is still being tracked."""
        r = DevRequestModel
        return (
            self.db.query(r)
            .filter(
                r.status == RequestStatus.IN_PROGRESS,
                r.implementation_session_id.isnot(None),
                or_(
                    r.implementation_status.is_(None),
                    r.implementation_status.notin_(
                        [
                            ImplementationStatus.PR_OPENED,
                            ImplementationStatus.REVIEW_APPROVED,
                            ImplementationStatus.PR_MERGED,
                            ImplementationStatus.FAILED,
                        ]
                    ),
                ),
            )
            .order_by(r.implementation_triggered_at.asc(), r.id.asc())
            .limit(limit)
            .all()
        )

    def open_pull_requests(self, limit: int) -> List[DevRequestModel]:
        """In-progress requests with a PR that has not been merged or abandoned yet."""
        r = DevRequestModel
        return (
            self.db.query(r)
            .filter(
                r.status == RequestStatus.IN_PROGRESS,
                r.pr_number.isnot(None),
                r.implementation_status.in_(
                    [ImplementationStatus.PR_OPENED, ImplementationStatus.REVIEW_APPROVED]
                ),
            )
            .order_by(r.implementation_triggered_at.asc(), r.id.asc())
            .limit(limit)
            .all()
        )

    def claim_for_code_review(self, limit: int) -> List[DevRequestModel]:
        """In-progress requests with an open PR awaiting review."""
        r = DevRequestModel
        return (
            self.db.query(r)
            .filter(
                r.status == RequestStatus.IN_PROGRESS,
                r.implementation_status == ImplementationStatus.PR_OPENED,
                r.pr_number.isnot(None),
            )
            .order_by(r.created_at.asc(), r.id.asc())
            .limit(limit)
            .all()
        )

    def active_implementations(self) -> List[DevRequestModel]:
        """Requests currently being implemented (candidates for file conflicts)."""
        r = DevRequestModel
        return (
            self.db.query(r)
            .filter(
                r.status == RequestStatus.IN_PROGRESS,
                or_(
                    r.implementation_status.is_(None),
                    r.implementation_status.notin_(
                        [ImplementationStatus.PR_MERGED, ImplementationStatus.FAILED]
                    ),
                ),
            )
            .order_by(r.id.asc())
            .all()
        )

    def tracked_deployments(self) -> List[DevRequestModel]:
        """Requests whose deployment outcome is not known yet."""
        return (
            self.db.query(DevRequestModel)
            .filter(
                DevRequestModel.deployment_status.in_(
                    [DeploymentStatus.PENDING, DeploymentStatus.IN_PROGRESS]
                )
            )
            .order_by(DevRequestModel.id.asc())
            .all()
        )

    def undeleted_branches(self, limit: int) -> List[DevRequestModel]:
        """Merged requests whose head branch could not be deleted yet."""
        r = DevRequestModel
        return (
            self.db.query(r)
            .filter(
                r.implementation_status == ImplementationStatus.PR_MERGED,
                r.branch_name.isnot(None),
                r.branch_deleted.is_(False),
            )
            .order_by(r.id.asc())
            .limit(limit)
            .all()
        )

    def other_project_requests(self, request: DevRequestModel, limit: int) -> List[DevRequestModel]:
        """Most recent other requests in the same project, for duplicate detection."""
        return (
            self.db.query(DevRequestModel)
            .filter(
                DevRequestModel.id != request.id,
                DevRequestModel.project_id == request.project_id,
            )
            .order_by(desc(DevRequestModel.created_at), desc(DevRequestModel.id))
            .limit(limit)
            .all()
        )


class ReviewService:
    """Lookups over the append-only review tables."""

    def __init__(self, db: Session):
        self.db = db

    def latest_intake_verdict(self, request_id: int) -> Optional[IntakeVerdictModel]:
        return (
            self.db.query(IntakeVerdictModel)
            .filter(IntakeVerdictModel.request_id == request_id)
            .order_by(desc(IntakeVerdictModel.created_at), desc(IntakeVerdictModel.id))
            .first()
        )

    def latest_proposal(
        self,
        request_id: int,
        decision: Optional[ProposalDecision] = None,
    ) -> Optional[SolutionProposalModel]:
        query = self.db.query(SolutionProposalModel).filter(
            SolutionProposalModel.request_id == request_id
        )
        if decision is not None:
            query = query.filter(SolutionProposalModel.decision == decision)
        return query.order_by(
            desc(SolutionProposalModel.created_at), desc(SolutionProposalModel.id)
        ).first()

    def latest_approved_proposal(self, request_id: int) -> Optional[SolutionProposalModel]:
        return self.latest_proposal(request_id, ProposalDecision.APPROVED)

    def latest_merge_review(self, request_id: int, pr_number: int) -> Optional[MergeReviewModel]:
        return (
            self.db.query(MergeReviewModel)
            .filter(
                MergeReviewModel.request_id == request_id,
                MergeReviewModel.pr_number == pr_number,
            )
            .order_by(desc(MergeReviewModel.created_at), desc(MergeReviewModel.id))
            .first()
        )

    def count_merge_reviews(
        self,
        request_id: int,
        pr_number: int,
        decision: Optional[MergeDecision] = None,
    ) -> int:
        query = self.db.query(func.count(MergeReviewModel.id)).filter(
            MergeReviewModel.request_id == request_id,
            MergeReviewModel.pr_number == pr_number,
        )
        if decision is not None:
            query = query.filter(MergeReviewModel.decision == decision)
        return query.scalar() or 0

    def has_reviewed_revision(self, request_id: int, pr_number: int, head_sha: str) -> bool:
        """True if this exact PR revision already has a review row."""
        return (
            self.db.query(MergeReviewModel.id)
            .filter(
                MergeReviewModel.request_id == request_id,
                MergeReviewModel.pr_number == pr_number,
                MergeReviewModel.head_sha == head_sha,
            )
            .first()
            is not None
        )


class CommentService:
    """Service for the request comment timeline."""

    def __init__(self, db: Session):
        self.db = db

    def add_comment(
        self,
        request: DevRequestModel,
        author: str,
        content: str,
        is_agent_comment: bool = True,
        intake_verdict_id: Optional[int] = None,
        solution_proposal_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> CommentModel:
        """Stage a comment on the session. The caller commits."""
        comment = CommentModel(
            request_id=request.id,
            author=author,
            content=content,
            is_agent_comment=is_agent_comment,
            intake_verdict_id=intake_verdict_id,
            solution_proposal_id=solution_proposal_id,
            created_at=now or utcnow(),
        )
        self.db.add(comment)
        return comment

    def history(self, request_id: int) -> List[CommentModel]:
        """All comments on a request, oldest first."""
        return (
            self.db.query(CommentModel)
            .filter(CommentModel.request_id == request_id)
            .order_by(CommentModel.created_at.asc(), CommentModel.id.asc())
            .all()
        )

    def architect_history(self, request: DevRequestModel) -> List[CommentModel]:
        """Prior proposals plus human feedback received since the last design cycle."""
        since = request.last_architect_review_at
        human_filter = CommentModel.is_agent_comment.is_(False)
        if since is not None:
            human_filter = and_(human_filter, CommentModel.created_at > since)
        return (
            self.db.query(CommentModel)
            .filter(
                CommentModel.request_id == request.id,
                or_(CommentModel.solution_proposal_id.isnot(None), human_filter),
            )
            .order_by(CommentModel.created_at.asc(), CommentModel.id.asc())
            .all()
        )
