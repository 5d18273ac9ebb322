"""
Operator and human actions on requests.

These are the only status changes not made by a worker. Each function
stages and commits its own unit of work, then mirrors the change to the
issue tracker. Hosting failures are logged and do not undo the local change.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from ..db.audit_service import AuditService
from ..db.base import utcnow
from ..db.models import CommentModel, DevRequestModel, ProjectModel, SolutionProposalModel
from ..db.services import CommentService, ReviewService
from ..errors import IllegalTransitionError, MissingPrerequisiteError, PipelineError
from ..integrations.hosting import HostingService
from ..schemas import ProjectCreate, RequestCreate
from .enums import ActorKind, DeploymentStatus, ProposalDecision, RequestStatus
from .state_machine import set_tracking_status, transition

logger = logging.getLogger(__name__)

ARCHITECT_REVIEW_LABEL = "agent:architect-review"
APPROVED_SOLUTION_LABEL = "agent:approved-solution"
REJECTED_LABEL = "agent:rejected"
RESET_CLEANUP_LABELS = (
    "copilot:implementing",
    "copilot:pr-ready",
    "copilot:failed",
    "review:approved",
    "review:changes-requested",
    "merge-conflict",
    "pipeline:stalled",
)


def _mirror(description: str, fn: Callable[..., Any], *args) -> Any:
    try:
        return fn(*args)
    except Exception:
        logger.exception(f"Hosting update failed: {description}")
        return None


def _target(request: DevRequestModel):
    project = request.project
    if project is None or not request.issue_number:
        return None
    return project.owner, project.repo


def _require_status(request: DevRequestModel, *allowed: RequestStatus, action: str) -> None:
    if RequestStatus(request.status) not in allowed:
        raise IllegalTransitionError(request.id, RequestStatus(request.status).value, action)


# Intake


def create_project(db: Session, data: ProjectCreate) -> ProjectModel:
    project = ProjectModel(
        name=data.name,
        display_name=data.display_name or data.name,
        description=data.description,
        owner=data.owner,
        repo=data.repo,
    )
    db.add(project)
    db.flush()
    AuditService(db).log_create(
        "Project",
        project.id,
        project.to_dict(),
        actor_kind=ActorKind.HUMAN,
        actor_id="operator",
    )
    db.commit()
    logger.info(f"Created project {project.name} ({project.owner}/{project.repo})")
    return project


def submit_request(
    db: Session,
    hosting: HostingService,
    data: RequestCreate,
    now: Optional[datetime] = None,
) -> DevRequestModel:
    """Store a New request and open its tracking issue."""
    now = now or utcnow()
    project = None
    if data.project_id is not None:
        project = db.get(ProjectModel, data.project_id)
        if project is None:
            raise MissingPrerequisiteError(f"Project {data.project_id} not found")

    request = DevRequestModel(
        project_id=data.project_id,
        title=data.title,
        description=data.description,
        request_type=data.request_type,
        priority=data.priority,
        steps_to_reproduce=data.steps_to_reproduce,
        expected_behavior=data.expected_behavior,
        actual_behavior=data.actual_behavior,
        submitted_by=data.submitted_by,
        submitted_by_email=data.submitted_by_email,
        status=RequestStatus.NEW,
        created_at=now,
        updated_at=now,
    )
    db.add(request)
    db.flush()
    AuditService(db).log_create(
        "Request",
        request.id,
        {"title": request.title, "status": RequestStatus.NEW.value},
        actor_kind=ActorKind.HUMAN,
        actor_id=data.submitted_by,
    )
    db.commit()
    logger.info(f"Request #{request.id} submitted by {data.submitted_by}")

    if project is not None:
        issue = _mirror("create_issue", hosting.create_issue, project.owner, project.repo, request)
        if issue:
            request.issue_number, request.issue_url = issue
            db.commit()
    return request


def add_human_comment(
    db: Session,
    hosting: HostingService,
    request: DevRequestModel,
    author: str,
    content: str,
    now: Optional[datetime] = None,
) -> CommentModel:
    """A human reply. It makes the request claimable again for intake or design."""
    comment = CommentService(db).add_comment(
        request, author, content, is_agent_comment=False, now=now or utcnow()
    )
    db.commit()
    target = _target(request)
    if target:
        _mirror(
            "post_comment",
            hosting.post_comment, target[0], target[1], request.issue_number,
            f"**{author}:**\n\n{content}",
        )
    return comment


# Solution review


def _pending_proposal(db: Session, request: DevRequestModel) -> SolutionProposalModel:
    _require_status(request, RequestStatus.ARCHITECT_REVIEW, action="proposal decision")
    proposal = ReviewService(db).latest_proposal(request.id)
    if proposal is None:
        raise MissingPrerequisiteError(f"Request {request.id} has no solution proposal")
    if proposal.decision != ProposalDecision.PENDING:
        raise PipelineError(
            f"Proposal #{proposal.id} was already decided: {ProposalDecision(proposal.decision).value}"
        )
    return proposal


def _decide(
    db: Session,
    proposal: SolutionProposalModel,
    decision: ProposalDecision,
    reviewer: str,
    feedback: Optional[str],
    now: datetime,
) -> None:
    before = {"decision": ProposalDecision(proposal.decision).value}
    proposal.decision = decision
    proposal.human_feedback = feedback
    if decision == ProposalDecision.APPROVED:
        proposal.approved_by = reviewer
        proposal.approved_at = now
    AuditService(db).log_update(
        "SolutionProposal",
        proposal.id,
        before,
        {"decision": decision.value},
        actor_kind=ActorKind.HUMAN,
        actor_id=reviewer,
        note=feedback,
    )


def approve_proposal(
    db: Session,
    hosting: HostingService,
    request: DevRequestModel,
    reviewer: str,
    feedback: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SolutionProposalModel:
    now = now or utcnow()
    proposal = _pending_proposal(db, request)
    _decide(db, proposal, ProposalDecision.APPROVED, reviewer, feedback, now)
    transition(
        db, request, RequestStatus.APPROVED,
        actor_id=reviewer, actor_kind=ActorKind.HUMAN,
        note=f"Solution proposal #{proposal.id} approved", now=now,
    )
    db.commit()
    logger.info(f"Request #{request.id}: proposal #{proposal.id} approved by {reviewer}")

    target = _target(request)
    if target:
        owner, repo = target
        _mirror("remove_label", hosting.remove_label, owner, repo, request.issue_number, ARCHITECT_REVIEW_LABEL)
        _mirror("add_labels", hosting.add_labels, owner, repo, request.issue_number, [APPROVED_SOLUTION_LABEL])
        _mirror(
            "post_comment",
            hosting.post_comment, owner, repo, request.issue_number,
            f"**Solution approved** by {reviewer}. Implementation will start shortly.",
        )
    return proposal


def reject_proposal(
    db: Session,
    hosting: HostingService,
    request: DevRequestModel,
    reviewer: str,
    feedback: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SolutionProposalModel:
    now = now or utcnow()
    proposal = _pending_proposal(db, request)
    _decide(db, proposal, ProposalDecision.REJECTED, reviewer, feedback, now)
    transition(
        db, request, RequestStatus.REJECTED,
        actor_id=reviewer, actor_kind=ActorKind.HUMAN,
        note=f"Solution proposal #{proposal.id} rejected", now=now,
    )
    db.commit()
    logger.info(f"Request #{request.id}: proposal #{proposal.id} rejected by {reviewer}")

    target = _target(request)
    if target:
        owner, repo = target
        _mirror("remove_label", hosting.remove_label, owner, repo, request.issue_number, ARCHITECT_REVIEW_LABEL)
        _mirror("add_labels", hosting.add_labels, owner, repo, request.issue_number, [REJECTED_LABEL])
        _mirror(
            "post_comment",
            hosting.post_comment, owner, repo, request.issue_number,
            f"**Solution rejected** by {reviewer}." + (f"\n\n{feedback}" if feedback else ""),
        )
        _mirror("update_issue", hosting.update_issue, owner, repo, request)
    return proposal


def request_revision(
    db: Session,
    hosting: HostingService,
    request: DevRequestModel,
    reviewer: str,
    feedback: str,
    now: Optional[datetime] = None,
) -> SolutionProposalModel:
    """Send the proposal back to the architect with human feedback."""
    if not (feedback or "").strip():
        raise ValueError("Revision feedback must not be empty")
    now = now or utcnow()
    proposal = _pending_proposal(db, request)
    _decide(db, proposal, ProposalDecision.REVISION_REQUESTED, reviewer, feedback, now)
    CommentService(db).add_comment(request, reviewer, feedback, is_agent_comment=False, now=now)
    transition(
        db, request, RequestStatus.ARCHITECT_REVIEW,
        actor_id=reviewer, actor_kind=ActorKind.HUMAN, now=now,
    )
    db.commit()
    logger.info(f"Request #{request.id}: revision of proposal #{proposal.id} requested by {reviewer}")

    target = _target(request)
    if target:
        _mirror(
            "post_comment",
            hosting.post_comment, target[0], target[1], request.issue_number,
            f"**Revision requested** by {reviewer}:\n\n{feedback}",
        )
    return proposal


# Implementation and deployment


def retry_deployment(
    db: Session,
    request: DevRequestModel,
    max_retries: int,
    actor_id: str = "operator",
) -> DevRequestModel:
    """Move a Failed deployment back to Pending so the tracker picks it up again."""
    if request.deployment_status != DeploymentStatus.FAILED:
        raise PipelineError(
            f"Request {request.id}: deployment is "
            f"{DeploymentStatus(request.deployment_status).value}, not Failed"
        )
    if request.deployment_retry_count >= max_retries:
        raise PipelineError(
            f"Request {request.id}: deployment retried {request.deployment_retry_count} times "
            f"(max {max_retries})"
        )
    request.deployment_retry_count += 1
    request.deployment_run_id = None
    set_tracking_status(
        db, request, "deployment_status", DeploymentStatus.PENDING,
        actor_id=actor_id, actor_kind=ActorKind.HUMAN,
        note=f"Deployment retry {request.deployment_retry_count}/{max_retries}",
    )
    db.commit()
    logger.info(f"Request #{request.id}: deployment retry {request.deployment_retry_count}/{max_retries}")
    return request


def reset_implementation(
    db: Session,
    hosting: HostingService,
    request: DevRequestModel,
    actor_id: str = "operator",
    now: Optional[datetime] = None,
) -> DevRequestModel:
    """Return an InProgress request to Approved so a fresh agent session starts."""
    now = now or utcnow()
    _require_status(request, RequestStatus.IN_PROGRESS, action=RequestStatus.APPROVED.value)
    transition(
        db, request, RequestStatus.APPROVED,
        actor_id=actor_id, actor_kind=ActorKind.HUMAN,
        note="Implementation reset by operator", now=now,
    )
    request.implementation_session_id = None
    request.implementation_status = None
    request.implementation_triggered_at = None
    request.implementation_completed_at = None
    request.pr_number = None
    request.pr_url = None
    request.branch_name = None
    request.branch_deleted = False
    request.deployment_retry_count = 0
    request.deployment_run_id = None
    set_tracking_status(
        db, request, "deployment_status", DeploymentStatus.NONE,
        actor_id=actor_id, actor_kind=ActorKind.HUMAN,
    )
    db.commit()
    logger.info(f"Request #{request.id}: implementation reset by {actor_id}")

    target = _target(request)
    if target:
        owner, repo = target
        for label in RESET_CLEANUP_LABELS:
            _mirror("remove_label", hosting.remove_label, owner, repo, request.issue_number, label)
        _mirror(
            "post_comment",
            hosting.post_comment, owner, repo, request.issue_number,
            "**Implementation reset.** The request is back in Approved and a new coding agent "
            "session will be started.",
        )
    return request
