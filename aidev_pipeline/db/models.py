"""
SQLAlchemy models for the AIDev Pipeline.
"""

from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from ..pipeline.enums import (
    DeploymentStatus,
    ImplementationStatus,
    IntakeDecision,
    MergeDecision,
    Priority,
    ProposalDecision,
    RequestStatus,
    RequestType,
)
from .base import Base, UTCDateTime, utcnow


def _enum(enum_cls, name: str) -> Enum:
    """Store the enum's value (not its member name) in a portable VARCHAR."""
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


def _iso(value):
    return value.isoformat() if value else None


def _val(value):
    return value.value if value is not None else None


class ProjectModel(Base):
    """A hosted repository that requests are filed against."""

    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)
    display_name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    # Hosting coordinates
    owner = Column(String(100), nullable=False)
    repo = Column(String(100), nullable=False)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    requests = relationship("DevRequestModel", back_populates="project")

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "owner": self.owner,
            "repo": self.repo,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
        }


class DevRequestModel(Base):
    """A development request moving through the pipeline.

    Only the workers (plus the human approval action) change ``status``;
    every change goes through ``pipeline.state_machine.transition``.
    """

    __tablename__ = "dev_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=True, index=True)

    # Submission
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    request_type = Column(_enum(RequestType, "request_type"), nullable=False, default=RequestType.FEATURE)
    priority = Column(_enum(Priority, "request_priority"), nullable=False, default=Priority.MEDIUM)
    steps_to_reproduce = Column(Text, nullable=True)
    expected_behavior = Column(Text, nullable=True)
    actual_behavior = Column(Text, nullable=True)
    submitted_by = Column(String(200), nullable=False, default="unknown")
    submitted_by_email = Column(String(200), nullable=True)

    status = Column(
        _enum(RequestStatus, "request_status"),
        nullable=False,
        default=RequestStatus.NEW,
        index=True,
    )

    # Per-stage cycle counters and timestamps
    agent_review_count = Column(Integer, nullable=False, default=0)
    last_agent_review_at = Column(UTCDateTime(), nullable=True)
    architect_review_count = Column(Integer, nullable=False, default=0)
    last_architect_review_at = Column(UTCDateTime(), nullable=True)

    # Notification dedup, one field per concern
    stall_notified_at = Column(UTCDateTime(), nullable=True)
    conflict_notified_at = Column(UTCDateTime(), nullable=True)

    # Issue tracker
    issue_number = Column(Integer, nullable=True)
    issue_url = Column(String(500), nullable=True)

    # Implementation
    implementation_session_id = Column(String(100), nullable=True)
    implementation_status = Column(_enum(ImplementationStatus, "implementation_status"), nullable=True)
    implementation_triggered_at = Column(UTCDateTime(), nullable=True)
    implementation_completed_at = Column(UTCDateTime(), nullable=True)
    pr_number = Column(Integer, nullable=True)
    pr_url = Column(String(500), nullable=True)
    branch_name = Column(String(200), nullable=True)
    branch_deleted = Column(Boolean, nullable=False, default=False)

    # Deployment
    deployment_status = Column(
        _enum(DeploymentStatus, "deployment_status"),
        nullable=False,
        default=DeploymentStatus.NONE,
    )
    deployment_run_id = Column(Integer, nullable=True)
    deployed_at = Column(UTCDateTime(), nullable=True)
    deployment_retry_count = Column(Integer, nullable=False, default=0)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow, index=True)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    project = relationship("ProjectModel", back_populates="requests")
    comments = relationship(
        "CommentModel",
        back_populates="request",
        order_by="CommentModel.created_at",
    )
    attachments = relationship("AttachmentModel", back_populates="request")

    __table_args__ = (
        Index("ix_dev_requests_status_created", "status", "created_at"),
        Index("ix_dev_requests_deployment_status", "deployment_status"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "description": self.description,
            "request_type": _val(self.request_type),
            "priority": _val(self.priority),
            "status": _val(self.status),
            "submitted_by": self.submitted_by,
            "agent_review_count": self.agent_review_count,
            "last_agent_review_at": _iso(self.last_agent_review_at),
            "architect_review_count": self.architect_review_count,
            "last_architect_review_at": _iso(self.last_architect_review_at),
            "stall_notified_at": _iso(self.stall_notified_at),
            "conflict_notified_at": _iso(self.conflict_notified_at),
            "issue_number": self.issue_number,
            "issue_url": self.issue_url,
            "implementation_session_id": self.implementation_session_id,
            "implementation_status": _val(self.implementation_status),
            "implementation_triggered_at": _iso(self.implementation_triggered_at),
            "implementation_completed_at": _iso(self.implementation_completed_at),
            "pr_number": self.pr_number,
            "pr_url": self.pr_url,
            "branch_name": self.branch_name,
            "branch_deleted": self.branch_deleted,
            "deployment_status": _val(self.deployment_status),
            "deployment_run_id": self.deployment_run_id,
            "deployed_at": _iso(self.deployed_at),
            "deployment_retry_count": self.deployment_retry_count,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class AttachmentModel(Base):
    """A file uploaded with a request. Images are inlined into prompts."""

    __tablename__ = "attachments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(Integer, ForeignKey("dev_requests.id"), nullable=False, index=True)
    file_name = Column(String(255), nullable=False)
    content_type = Column(String(100), nullable=False)
    size_bytes = Column(Integer, nullable=False, default=0)
    stored_path = Column(String(500), nullable=False)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    request = relationship("DevRequestModel", back_populates="attachments")

    @property
    def is_image(self) -> bool:
        return (self.content_type or "").lower().startswith("image/")


class IntakeVerdictModel(Base):
    """One intake triage cycle. Immutable once written."""

    __tablename__ = "intake_verdicts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(Integer, ForeignKey("dev_requests.id"), nullable=False, index=True)

    decision = Column(_enum(IntakeDecision, "intake_decision"), nullable=False)
    reasoning = Column(Text, nullable=False)
    alignment_score = Column(Integer, nullable=False, default=0)
    completeness_score = Column(Integer, nullable=False, default=0)
    sales_alignment_score = Column(Integer, nullable=False, default=0)
    clarification_questions = Column(JSON, nullable=True)
    suggested_priority = Column(String(20), nullable=True)
    tags = Column(JSON, nullable=True)
    is_duplicate = Column(Boolean, nullable=False, default=False)
    duplicate_of_request_id = Column(Integer, nullable=True)

    prompt_tokens = Column(Integer, nullable=False, default=0)
    completion_tokens = Column(Integer, nullable=False, default=0)
    model_used = Column(String(100), nullable=False, default="")
    duration_ms = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow, index=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "request_id": self.request_id,
            "decision": _val(self.decision),
            "reasoning": self.reasoning,
            "alignment_score": self.alignment_score,
            "completeness_score": self.completeness_score,
            "sales_alignment_score": self.sales_alignment_score,
            "clarification_questions": self.clarification_questions,
            "suggested_priority": self.suggested_priority,
            "tags": self.tags,
            "is_duplicate": self.is_duplicate,
            "duplicate_of_request_id": self.duplicate_of_request_id,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "model_used": self.model_used,
            "duration_ms": self.duration_ms,
            "created_at": _iso(self.created_at),
        }


class SolutionProposalModel(Base):
    """One architecture cycle. Only ``decision`` and the approval fields change later."""

    __tablename__ = "solution_proposals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(Integer, ForeignKey("dev_requests.id"), nullable=False, index=True)

    solution_summary = Column(Text, nullable=False)
    approach = Column(Text, nullable=False)
    solution_json = Column(JSON, nullable=False, default=dict)
    estimated_complexity = Column(String(20), nullable=False, default="unknown")
    estimated_effort = Column(String(100), nullable=False, default="unknown")
    files_read = Column(JSON, nullable=False, default=list)

    decision = Column(
        _enum(ProposalDecision, "proposal_decision"),
        nullable=False,
        default=ProposalDecision.PENDING,
    )
    human_feedback = Column(Text, nullable=True)
    approved_by = Column(String(200), nullable=True)
    approved_at = Column(UTCDateTime(), nullable=True)

    step1_prompt_tokens = Column(Integer, nullable=False, default=0)
    step1_completion_tokens = Column(Integer, nullable=False, default=0)
    step2_prompt_tokens = Column(Integer, nullable=False, default=0)
    step2_completion_tokens = Column(Integer, nullable=False, default=0)
    model_used = Column(String(100), nullable=False, default="")
    duration_ms = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow, index=True)

    def declared_paths(self) -> List[str]:
        """Impacted and new file paths, normalized for comparison."""
        solution = self.solution_json or {}
        paths = [f.get("path") for f in solution.get("impactedFiles") or []]
        paths += [f.get("path") for f in solution.get("newFiles") or []]
        return [p.strip().lower() for p in paths if p and p.strip()]

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "request_id": self.request_id,
            "solution_summary": self.solution_summary,
            "approach": self.approach,
            "solution": self.solution_json,
            "estimated_complexity": self.estimated_complexity,
            "estimated_effort": self.estimated_effort,
            "files_read": self.files_read,
            "decision": _val(self.decision),
            "human_feedback": self.human_feedback,
            "approved_by": self.approved_by,
            "approved_at": _iso(self.approved_at),
            "step1_prompt_tokens": self.step1_prompt_tokens,
            "step1_completion_tokens": self.step1_completion_tokens,
            "step2_prompt_tokens": self.step2_prompt_tokens,
            "step2_completion_tokens": self.step2_completion_tokens,
            "model_used": self.model_used,
            "duration_ms": self.duration_ms,
            "created_at": _iso(self.created_at),
        }


class MergeReviewModel(Base):
    """One automated code review of a specific PR revision."""

    __tablename__ = "merge_reviews"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(Integer, ForeignKey("dev_requests.id"), nullable=False, index=True)
    pr_number = Column(Integer, nullable=False)
    head_sha = Column(String(64), nullable=True)

    decision = Column(_enum(MergeDecision, "merge_decision"), nullable=False)
    summary = Column(Text, nullable=False)
    design_compliance = Column(Boolean, nullable=False, default=False)
    design_compliance_notes = Column(Text, nullable=True)
    security_pass = Column(Boolean, nullable=False, default=False)
    security_notes = Column(Text, nullable=True)
    coding_standards_pass = Column(Boolean, nullable=False, default=False)
    coding_standards_notes = Column(Text, nullable=True)
    quality_score = Column(Integer, nullable=False, default=0)

    files_changed = Column(Integer, nullable=False, default=0)
    lines_added = Column(Integer, nullable=False, default=0)
    lines_removed = Column(Integer, nullable=False, default=0)

    prompt_tokens = Column(Integer, nullable=False, default=0)
    completion_tokens = Column(Integer, nullable=False, default=0)
    model_used = Column(String(100), nullable=False, default="")
    duration_ms = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_merge_reviews_pr_sha", "pr_number", "head_sha"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "request_id": self.request_id,
            "pr_number": self.pr_number,
            "head_sha": self.head_sha,
            "decision": _val(self.decision),
            "summary": self.summary,
            "design_compliance": self.design_compliance,
            "security_pass": self.security_pass,
            "coding_standards_pass": self.coding_standards_pass,
            "quality_score": self.quality_score,
            "files_changed": self.files_changed,
            "lines_added": self.lines_added,
            "lines_removed": self.lines_removed,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "model_used": self.model_used,
            "duration_ms": self.duration_ms,
            "created_at": _iso(self.created_at),
        }


class CommentModel(Base):
    """Timeline entry on a request, authored by a human or an agent."""

    __tablename__ = "request_comments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(Integer, ForeignKey("dev_requests.id"), nullable=False, index=True)
    author = Column(String(200), nullable=False)
    content = Column(Text, nullable=False)
    is_agent_comment = Column(Boolean, nullable=False, default=False)
    intake_verdict_id = Column(Integer, ForeignKey("intake_verdicts.id"), nullable=True)
    solution_proposal_id = Column(Integer, ForeignKey("solution_proposals.id"), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow, index=True)

    request = relationship("DevRequestModel", back_populates="comments")

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "request_id": self.request_id,
            "author": self.author,
            "content": self.content,
            "is_agent_comment": self.is_agent_comment,
            "intake_verdict_id": self.intake_verdict_id,
            "solution_proposal_id": self.solution_proposal_id,
            "created_at": _iso(self.created_at),
        }


class SystemPromptModel(Base):
    """Operator-editable system prompt for one LLM stage.

    ``updated_by`` is null until an operator edits the prompt; such rows keep
    following the built-in default when it changes.
    """

    __tablename__ = "system_prompts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False, unique=True)
    display_name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    prompt_text = Column(Text, nullable=False)
    updated_by = Column(String(200), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "key": self.key,
            "display_name": self.display_name,
            "description": self.description,
            "prompt_text": self.prompt_text,
            "updated_by": self.updated_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
