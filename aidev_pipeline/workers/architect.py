"""
Architect worker: designs a solution for triaged requests.

    Triaged          --proposal--> ArchitectReview
    ArchitectReview  --proposal--> ArchitectReview   (after new human feedback)

Approval or rejection of the proposal is a human action (see
``pipeline.actions``); this worker never leaves ArchitectReview.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.audit_service import AuditService
from ..db.models import DevRequestModel, SolutionProposalModel
from ..db.services import CommentService, RequestService, ReviewService
from ..integrations.codebase import CodebaseReader
from ..integrations.hosting import HostingService
from ..llm.architect import SolutionArchitect, SolutionResult, build_comment
from ..llm.client import build_image_parts
from ..pipeline.budget import BudgetGuard
from ..pipeline.enums import ProposalDecision, RequestStatus
from ..pipeline.state_machine import transition
from .base import HostingWorker, repo_of

AGENT_NAME = "Architect Agent"
REVIEW_LABEL = "agent:architect-review"


class ArchitectWorker(HostingWorker):
    """Claims Triaged / ArchitectReview requests and writes a Pending proposal."""

    name = "architect"

    def __init__(
        self,
        architect: SolutionArchitect,
        codebase: CodebaseReader,
        hosting: HostingService,
        settings: Optional[Settings] = None,
        **kwargs,
    ):
        settings = settings or get_settings()
        kwargs.setdefault("interval_seconds", settings.architect_interval_seconds)
        kwargs.setdefault("initial_delay_seconds", settings.architect_initial_delay_seconds)
        kwargs.setdefault("batch_size", settings.architect_batch_size)
        kwargs.setdefault("budget", BudgetGuard.for_stage("architect", settings))
        super().__init__(hosting, **kwargs)
        self.architect = architect
        self.codebase = codebase
        self.settings = settings

    def claim(self, db: Session, now: datetime, limit: int) -> List[DevRequestModel]:
        return RequestService(db).claim_for_architect(self.settings.architect_max_reviews, limit)

    def handle(self, db: Session, request: DevRequestModel, now: datetime) -> None:
        log = self.logger.bind(request_id=request.id)

        verdict = ReviewService(db).latest_intake_verdict(request.id)
        if verdict is None:
            log.warning("prerequisite_missing", missing="intake_verdict")
            return
        target = repo_of(request)
        if target is None:
            log.warning("prerequisite_missing", missing="project")
            return
        owner, repo = target

        history = CommentService(db).architect_history(request)
        repository_map = self.codebase.get_repository_map(owner, repo)
        images = build_image_parts(request.attachments, self.settings.attachments_dir)

        result = self.architect.analyse(
            request,
            verdict,
            repository_map,
            self.codebase.reader_for(owner, repo),
            history=history,
            attachments=request.attachments,
            images=images,
        )

        proposal = self._save_proposal(db, request, result, now)
        comment = build_comment(result, proposal.id)
        CommentService(db).add_comment(
            request, AGENT_NAME, comment, solution_proposal_id=proposal.id, now=now
        )
        transition(
            db,
            request,
            RequestStatus.ARCHITECT_REVIEW,
            actor_id=self.name,
            note=f"Solution proposal #{proposal.id} ready for review",
            now=now,
        )
        request.last_architect_review_at = now
        request.architect_review_count += 1
        db.commit()

        log.info(
            "solution_proposed",
            proposal_id=proposal.id,
            files_read=len(result.files_read),
            tokens=result.total_tokens,
            parsed=result.parsed,
            review_count=request.architect_review_count,
        )

        self.relabel(target, request.issue_number, add=[REVIEW_LABEL])
        self.notify(target, request.issue_number, comment)

    def _save_proposal(
        self, db: Session, request: DevRequestModel, result: SolutionResult, now: datetime
    ) -> SolutionProposalModel:
        solution = result.solution
        proposal = SolutionProposalModel(
            request_id=request.id,
            solution_summary=solution.solution_summary,
            approach=solution.approach,
            solution_json=result.solution_json(),
            estimated_complexity=solution.estimated_complexity,
            estimated_effort=solution.estimated_effort,
            files_read=list(result.files_read),
            decision=ProposalDecision.PENDING,
            step1_prompt_tokens=result.step1_prompt_tokens,
            step1_completion_tokens=result.step1_completion_tokens,
            step2_prompt_tokens=result.step2_prompt_tokens,
            step2_completion_tokens=result.step2_completion_tokens,
            model_used=result.model_used,
            duration_ms=result.duration_ms,
            created_at=now,
        )
        db.add(proposal)
        db.flush()
        AuditService(db).log_create(
            "SolutionProposal",
            proposal.id,
            {"request_id": request.id, "decision": ProposalDecision.PENDING.value},
            actor_kind="agent",
            actor_id=self.name,
        )
        return proposal
