"""
Intake worker: Product Owner triage of new and clarified requests.

    New                 --approve--> Triaged
    New                 --reject---> Rejected
    New                 --clarify--> NeedsClarification
    NeedsClarification  (same three, once a human has replied)
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.audit_service import AuditService
from ..db.models import DevRequestModel, IntakeVerdictModel
from ..db.services import CommentService, RequestService
from ..integrations.hosting import HostingService
from ..llm.client import build_image_parts
from ..llm.intake import IntakeResult, IntakeReviewer, build_comment
from ..pipeline.budget import BudgetGuard
from ..pipeline.enums import IntakeDecision, RequestStatus
from ..pipeline.state_machine import transition
from .base import HostingWorker, repo_of

AGENT_NAME = "Product Owner Agent"

DECISION_TARGETS = {
    IntakeDecision.APPROVE: RequestStatus.TRIAGED,
    IntakeDecision.REJECT: RequestStatus.REJECTED,
    IntakeDecision.CLARIFY: RequestStatus.NEEDS_CLARIFICATION,
}


class IntakeWorker(HostingWorker):
    """Claims New / NeedsClarification requests and records a verdict for each."""

    name = "intake"

    def __init__(
        self,
        reviewer: IntakeReviewer,
        hosting: HostingService,
        settings: Optional[Settings] = None,
        **kwargs,
    ):
        settings = settings or get_settings()
        kwargs.setdefault("interval_seconds", settings.intake_interval_seconds)
        kwargs.setdefault("initial_delay_seconds", settings.intake_initial_delay_seconds)
        kwargs.setdefault("batch_size", settings.intake_batch_size)
        kwargs.setdefault("budget", BudgetGuard.for_stage("intake", settings))
        super().__init__(hosting, **kwargs)
        self.reviewer = reviewer
        self.settings = settings

    def claim(self, db: Session, now: datetime, limit: int) -> List[DevRequestModel]:
        return RequestService(db).claim_for_intake(self.settings.intake_max_reviews, limit)

    def handle(self, db: Session, request: DevRequestModel, now: datetime) -> None:
        log = self.logger.bind(request_id=request.id)
        follow_up = request.agent_review_count > 0
        history = CommentService(db).history(request.id) if follow_up else None
        existing = RequestService(db).other_project_requests(
            request, self.settings.intake_max_existing_requests
        )
        images = build_image_parts(request.attachments, self.settings.attachments_dir)

        result = self.reviewer.review(request, history, existing, images)

        verdict = self._save_verdict(db, request, result, now)
        comment = build_comment(result)
        CommentService(db).add_comment(
            request, AGENT_NAME, comment, intake_verdict_id=verdict.id, now=now
        )
        previous = transition(
            db,
            request,
            DECISION_TARGETS[result.decision],
            actor_id=self.name,
            note=f"Intake decision: {result.decision.value}",
            now=now,
        )
        request.last_agent_review_at = now
        request.agent_review_count += 1
        db.commit()

        log.info(
            "intake_reviewed",
            decision=result.decision.value,
            previous=previous.value,
            status=request.status.value,
            parsed=result.parsed,
            review_count=request.agent_review_count,
        )

        target = repo_of(request)
        if request.issue_number and target:
            owner, repo = target
            self.after_commit(
                "set_agent_label",
                self.hosting.set_agent_label, owner, repo, request.issue_number, result.decision,
            )
            self.notify(target, request.issue_number, comment)

    def _save_verdict(
        self, db: Session, request: DevRequestModel, result: IntakeResult, now: datetime
    ) -> IntakeVerdictModel:
        verdict = IntakeVerdictModel(
            request_id=request.id,
            decision=result.decision,
            reasoning=result.reasoning,
            alignment_score=result.alignment_score,
            completeness_score=result.completeness_score,
            sales_alignment_score=result.sales_alignment_score,
            clarification_questions=result.clarification_questions or None,
            suggested_priority=result.suggested_priority,
            tags=result.tags or None,
            is_duplicate=result.is_duplicate,
            duplicate_of_request_id=result.duplicate_of_request_id,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            model_used=result.model_used,
            duration_ms=result.duration_ms,
            created_at=now,
        )
        db.add(verdict)
        db.flush()
        AuditService(db).log_create(
            "IntakeVerdict",
            verdict.id,
            {"request_id": request.id, "decision": result.decision.value},
            actor_kind="agent",
            actor_id=self.name,
        )
        return verdict
