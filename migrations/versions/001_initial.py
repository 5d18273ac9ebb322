"""Create initial tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
import sqlalchemy as sa
from alembic import op

# revision identifiers
revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, length=32)


REQUEST_STATUS = (
    "New",
    "NeedsClarification",
    "Triaged",
    "ArchitectReview",
    "Approved",
    "InProgress",
    "Done",
    "Rejected",
)
IMPLEMENTATION_STATUS = ("Pending", "Working", "PrOpened", "ReviewApproved", "PrMerged", "Failed")
DEPLOYMENT_STATUS = ("None", "Pending", "InProgress", "Succeeded", "Failed")


def upgrade() -> None:
    # Create projects table
    op.create_table(
        "projects",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("display_name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("owner", sa.String(100), nullable=False),
        sa.Column("repo", sa.String(100), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Create dev_requests table
    op.create_table(
        "dev_requests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.Integer, sa.ForeignKey("projects.id"), nullable=True, index=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column(
            "request_type",
            _enum("request_type", "Bug", "Feature", "Enhancement", "Question"),
            nullable=False,
        ),
        sa.Column(
            "priority",
            _enum("request_priority", "Low", "Medium", "High", "Critical"),
            nullable=False,
        ),
        sa.Column("steps_to_reproduce", sa.Text, nullable=True),
        sa.Column("expected_behavior", sa.Text, nullable=True),
        sa.Column("actual_behavior", sa.Text, nullable=True),
        sa.Column("submitted_by", sa.String(200), nullable=False),
        sa.Column("submitted_by_email", sa.String(200), nullable=True),
        sa.Column("status", _enum("request_status", *REQUEST_STATUS), nullable=False, index=True),
        sa.Column("agent_review_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_agent_review_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("architect_review_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_architect_review_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stall_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("conflict_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("issue_number", sa.Integer, nullable=True),
        sa.Column("issue_url", sa.String(500), nullable=True),
        sa.Column("implementation_session_id", sa.String(100), nullable=True),
        sa.Column(
            "implementation_status",
            _enum("implementation_status", *IMPLEMENTATION_STATUS),
            nullable=True,
        ),
        sa.Column("implementation_triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("implementation_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pr_number", sa.Integer, nullable=True),
        sa.Column("pr_url", sa.String(500), nullable=True),
        sa.Column("branch_name", sa.String(200), nullable=True),
        sa.Column("branch_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "deployment_status",
            _enum("deployment_status", *DEPLOYMENT_STATUS),
            nullable=False,
            server_default="None",
        ),
        sa.Column("deployment_run_id", sa.Integer, nullable=True),
        sa.Column("deployed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deployment_retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            index=True,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Create indexes for dev_requests
    op.create_index("ix_dev_requests_status_created", "dev_requests", ["status", "created_at"])
    op.create_index("ix_dev_requests_deployment_status", "dev_requests", ["deployment_status"])

    # Create attachments table
    op.create_table(
        "attachments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("request_id", sa.Integer, sa.ForeignKey("dev_requests.id"), nullable=False, index=True),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("content_type", sa.String(100), nullable=False),
        sa.Column("size_bytes", sa.Integer, nullable=False, server_default="0"),
        sa.Column("stored_path", sa.String(500), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Create intake_verdicts table
    op.create_table(
        "intake_verdicts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("request_id", sa.Integer, sa.ForeignKey("dev_requests.id"), nullable=False, index=True),
        sa.Column("decision", _enum("intake_decision", "Approve", "Reject", "Clarify"), nullable=False),
        sa.Column("reasoning", sa.Text, nullable=False),
        sa.Column("alignment_score", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completeness_score", sa.Integer, nullable=False, server_default="0"),
        sa.Column("sales_alignment_score", sa.Integer, nullable=False, server_default="0"),
        sa.Column("clarification_questions", sa.JSON, nullable=True),
        sa.Column("suggested_priority", sa.String(20), nullable=True),
        sa.Column("tags", sa.JSON, nullable=True),
        sa.Column("is_duplicate", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("duplicate_of_request_id", sa.Integer, nullable=True),
        sa.Column("prompt_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completion_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("model_used", sa.String(100), nullable=False, server_default=""),
        sa.Column("duration_ms", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            index=True,
        ),
    )

    # Create solution_proposals table
    op.create_table(
        "solution_proposals",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("request_id", sa.Integer, sa.ForeignKey("dev_requests.id"), nullable=False, index=True),
        sa.Column("solution_summary", sa.Text, nullable=False),
        sa.Column("approach", sa.Text, nullable=False),
        sa.Column("solution_json", sa.JSON, nullable=False),
        sa.Column("estimated_complexity", sa.String(20), nullable=False, server_default="unknown"),
        sa.Column("estimated_effort", sa.String(100), nullable=False, server_default="unknown"),
        sa.Column("files_read", sa.JSON, nullable=False),
        sa.Column(
            "decision",
            _enum("proposal_decision", "Pending", "Approved", "Rejected", "RevisionRequested"),
            nullable=False,
            server_default="Pending",
        ),
        sa.Column("human_feedback", sa.Text, nullable=True),
        sa.Column("approved_by", sa.String(200), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("step1_prompt_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("step1_completion_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("step2_prompt_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("step2_completion_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("model_used", sa.String(100), nullable=False, server_default=""),
        sa.Column("duration_ms", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            index=True,
        ),
    )

    # Create merge_reviews table
    op.create_table(
        "merge_reviews",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("request_id", sa.Integer, sa.ForeignKey("dev_requests.id"), nullable=False, index=True),
        sa.Column("pr_number", sa.Integer, nullable=False),
        sa.Column("head_sha", sa.String(64), nullable=True),
        sa.Column(
            "decision",
            _enum("merge_decision", "Approved", "ChangesRequested", "Failed"),
            nullable=False,
        ),
        sa.Column("summary", sa.Text, nullable=False),
        sa.Column("design_compliance", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("design_compliance_notes", sa.Text, nullable=True),
        sa.Column("security_pass", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("security_notes", sa.Text, nullable=True),
        sa.Column("coding_standards_pass", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("coding_standards_notes", sa.Text, nullable=True),
        sa.Column("quality_score", sa.Integer, nullable=False, server_default="0"),
        sa.Column("files_changed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("lines_added", sa.Integer, nullable=False, server_default="0"),
        sa.Column("lines_removed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("prompt_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completion_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("model_used", sa.String(100), nullable=False, server_default=""),
        sa.Column("duration_ms", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            index=True,
        ),
    )
    op.create_index("ix_merge_reviews_pr_sha", "merge_reviews", ["pr_number", "head_sha"])

    # Create request_comments table
    op.create_table(
        "request_comments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("request_id", sa.Integer, sa.ForeignKey("dev_requests.id"), nullable=False, index=True),
        sa.Column("author", sa.String(200), nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("is_agent_comment", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("intake_verdict_id", sa.Integer, sa.ForeignKey("intake_verdicts.id"), nullable=True),
        sa.Column("solution_proposal_id", sa.Integer, sa.ForeignKey("solution_proposals.id"), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            index=True,
        ),
    )

    # Create audit_log table
    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("actor_kind", _enum("audit_actor_kind", "human", "agent", "system"), nullable=False),
        sa.Column("actor_id", sa.String(128), nullable=False, index=True),
        sa.Column(
            "action",
            sa.Enum("created", "updated", "status_changed", name="audit_action", native_enum=False),
            nullable=False,
            index=True,
        ),
        sa.Column("entity_kind", sa.String(50), nullable=False, index=True),
        sa.Column("entity_id", sa.String(128), nullable=False, index=True),
        sa.Column("before", sa.JSON, nullable=True),
        sa.Column("after", sa.JSON, nullable=True),
        sa.Column("note", sa.Text, nullable=True),
        sa.Column("trace_id", sa.String(36), nullable=True, index=True),
    )
    op.create_index("ix_audit_log_entity", "audit_log", ["entity_kind", "entity_id"])
    op.create_index("ix_audit_log_entity_ts", "audit_log", ["entity_kind", "entity_id", "ts"])


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("request_comments")
    op.drop_index("ix_merge_reviews_pr_sha", table_name="merge_reviews")
    op.drop_table("merge_reviews")
    op.drop_table("solution_proposals")
    op.drop_table("intake_verdicts")
    op.drop_table("attachments")
    op.drop_index("ix_dev_requests_deployment_status", table_name="dev_requests")
    op.drop_index("ix_dev_requests_status_created", table_name="dev_requests")
    op.drop_table("dev_requests")
    op.drop_table("projects")
