"""
Code review worker: reviews the coding agent's pull request against the
approved solution and, when it passes, approves and (optionally) merges it.

    PrOpened --approved--> ReviewApproved           (staged, or auto_merge off)
    PrOpened --approved--> PrMerged, status Done    (auto)
    PrOpened --changes requested--> PrOpened        (agent revises the PR)

Each PR revision (``"{pr}:{head_sha}"``) is reviewed at most once. An approved
revision stays PrOpened until the merge step settles, so a tick that fails
after the review is saved resumes from the approval on the next tick.
"""

from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.audit_service import AuditService
from ..db.models import DevRequestModel, MergeReviewModel
from ..db.services import RequestService, ReviewService
from ..integrations.hosting import HostingService, PullRequestInfo
from ..llm.code_review import CodeReviewer, CodeReviewResult
from ..pipeline.budget import BudgetGuard
from ..pipeline.cache import ProcessCache
from ..pipeline.enums import (
    DeploymentMode,
    ImplementationStatus,
    MergeDecision,
    RequestStatus,
)
from ..pipeline.state_machine import set_tracking_status, transition
from .base import HostingWorker, repo_of
from .pr_monitor import (
    COMPLETE_LABEL,
    FAILED_CONCLUSIONS,
    FAILED_LABEL,
    MERGED_CLEANUP_LABELS,
    PR_READY_LABEL,
    agent_run_window,
    merged_comment,
    record_merge,
)

APPROVED_LABEL = "review:approved"
CHANGES_LABEL = "review:changes-requested"
STAGED_LABEL = "deploy:staged"
CONFLICT_LABEL = "merge-conflict"
REREVIEW_PREFIX = "[Post-rebase re-review] "
PREP_BRANCH_TEMPLATE = "attachments/request-{id}"


def _check(passed: bool) -> str:
    return "Pass" if passed else "Fail"


def format_review_body(result: CodeReviewResult, approved: bool) -> str:
    """Markdown body for the PR review."""
    heading = "Approved" if approved else "Changes Requested"
    return (
        f"## Code Review Agent: {heading}\n\n"
        f"{result.summary}\n\n"
        f"**Quality Score:** {result.quality_score}/10\n\n"
        f"### Design Compliance: {_check(result.design_compliance)}\n"
        f"{result.design_compliance_notes}\n\n"
        f"### Security: {_check(result.security_pass)}\n"
        f"{result.security_notes}\n\n"
        f"### Coding Standards: {_check(result.coding_standards_pass)}\n"
        f"{result.coding_standards_notes}\n\n"
        f"---\n*Reviewed by Code Review Agent ({result.model_used})*"
    )


def merge_commit_message(request: DevRequestModel, result: CodeReviewResult) -> str:
    return (
        f"{request.title} (#{request.pr_number})\n\n"
        "Auto-merged by Code Review Agent.\n"
        f"Quality score: {result.quality_score}/10"
    )


CONFLICT_MESSAGE = (
    "## Merge Conflict Detected\n\n"
    "This branch is behind `{base}` and could not be updated automatically. "
    "Please rebase onto `{base}`, resolve the conflicts and push again."
)


def result_from_review(review: MergeReviewModel) -> CodeReviewResult:
    """Rebuild a stored review's verdict so an interrupted approval can continue."""
    return CodeReviewResult(
        decision=MergeDecision(review.decision),
        summary=review.summary,
        design_compliance=review.design_compliance,
        design_compliance_notes=review.design_compliance_notes or "",
        security_pass=review.security_pass,
        security_notes=review.security_notes or "",
        coding_standards_pass=review.coding_standards_pass,
        coding_standards_notes=review.coding_standards_notes or "",
        quality_score=review.quality_score,
        model_used=review.model_used or "",
    )


class CodeReviewWorker(HostingWorker):
    """Claims requests with an open PR and reviews each new revision once."""

    name = "code_review"

    def __init__(
        self,
        reviewer: CodeReviewer,
        hosting: HostingService,
        settings: Optional[Settings] = None,
        reviewed: Optional[ProcessCache] = None,
        **kwargs,
    ):
        settings = settings or get_settings()
        kwargs.setdefault("interval_seconds", settings.code_review_interval_seconds)
        kwargs.setdefault("initial_delay_seconds", settings.code_review_initial_delay_seconds)
        kwargs.setdefault("budget", BudgetGuard.for_stage("code_review", settings))
        super().__init__(hosting, **kwargs)
        self.reviewer = reviewer
        self.settings = settings
        self.reviewed = reviewed or ProcessCache("reviewed-revisions")

    @property
    def deployment_mode(self) -> DeploymentMode:
        return DeploymentMode(self.settings.code_review_deployment_mode)

    def claim(self, db: Session, now: datetime, limit: int) -> List[DevRequestModel]:
        return RequestService(db).claim_for_code_review(limit)

    def _should_skip(
        self,
        reviews: ReviewService,
        request: DevRequestModel,
        pr: PullRequestInfo,
        latest: Optional[MergeReviewModel],
    ) -> Optional[str]:
        if latest is None:
            return None
        if latest.decision == MergeDecision.CHANGES_REQUESTED:
            count = reviews.count_merge_reviews(request.id, pr.number, MergeDecision.CHANGES_REQUESTED)
            if count >= self.settings.code_review_max_reviews_per_pr:
                return "max_reviews_reached"
        return None

    def handle(self, db: Session, request: DevRequestModel, now: datetime) -> None:
        log = self.logger.bind(request_id=request.id, pr=request.pr_number)
        target = repo_of(request)
        if target is None:
            log.warning("prerequisite_missing", missing="project")
            return
        owner, repo = target

        pr = self.hosting.get_pull_request(owner, repo, request.pr_number)
        if pr is None:
            log.warning("pr_not_found")
            return
        if pr.merged or pr.closed:
            log.debug("review_skipped", reason="pr_not_open")
            return

        reviews = ReviewService(db)
        latest = reviews.latest_merge_review(request.id, pr.number)
        if (
            latest is not None
            and latest.decision == MergeDecision.APPROVED
            and latest.head_sha == pr.head_sha
        ):
            # Still PrOpened, so the approval path stopped before it finished
            self._resume_approval(db, reviews, request, target, pr, latest, now)
            return

        reason = self._should_skip(reviews, request, pr, latest)
        if reason:
            log.debug("review_skipped", reason=reason)
            return

        revision = f"{pr.number}:{pr.head_sha}"
        if revision in self.reviewed:
            log.debug("review_skipped", reason="revision_reviewed")
            return
        if reviews.has_reviewed_revision(request.id, pr.number, pr.head_sha):
            self.reviewed.add(revision)
            log.debug("review_skipped", reason="revision_reviewed")
            return

        proposal = reviews.latest_approved_proposal(request.id) or reviews.latest_proposal(request.id)
        if proposal is None:
            log.warning("prerequisite_missing", missing="solution_proposal")
            return

        diff = self.hosting.get_pull_request_diff(owner, repo, pr.number)
        if not diff.strip():
            log.warning("review_skipped", reason="empty_diff")
            return

        result = self.reviewer.review(
            request, proposal, diff, pr.changed_files, pr.additions, pr.deletions
        )
        passed = self._passes(result)
        self._save_review(db, request, pr, result, now)
        db.commit()
        self.reviewed.add(revision)

        log.info(
            "pr_reviewed",
            decision=result.decision.value,
            score=result.quality_score,
            passed=passed,
            parsed=result.parsed,
        )
        if passed:
            self._approve(db, request, target, pr, proposal, diff, result, now)
        else:
            self._request_changes(request, target, pr, result)

    def _passes(self, result: CodeReviewResult) -> bool:
        """Apply the quality floor; an approval under it is recorded as changes requested."""
        if not result.approved:
            return False
        if result.quality_score < self.settings.code_review_min_quality_score:
            result.decision = MergeDecision.CHANGES_REQUESTED
            return False
        return True

    def _save_review(
        self,
        db: Session,
        request: DevRequestModel,
        pr: PullRequestInfo,
        result: CodeReviewResult,
        now: datetime,
        summary_prefix: str = "",
    ) -> MergeReviewModel:
        review = MergeReviewModel(
            request_id=request.id,
            pr_number=pr.number,
            head_sha=pr.head_sha,
            decision=result.decision,
            summary=summary_prefix + result.summary,
            design_compliance=result.design_compliance,
            design_compliance_notes=result.design_compliance_notes,
            security_pass=result.security_pass,
            security_notes=result.security_notes,
            coding_standards_pass=result.coding_standards_pass,
            coding_standards_notes=result.coding_standards_notes,
            quality_score=result.quality_score,
            files_changed=pr.changed_files,
            lines_added=pr.additions,
            lines_removed=pr.deletions,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            model_used=result.model_used,
            duration_ms=result.duration_ms,
            created_at=now,
        )
        db.add(review)
        db.flush()
        AuditService(db).log_create(
            "MergeReview",
            review.id,
            {"request_id": request.id, "pr_number": pr.number, "decision": result.decision.value},
            actor_kind="agent",
            actor_id=self.name,
        )
        return review

    # Changes requested

    def _request_changes(
        self,
        request: DevRequestModel,
        target: Tuple[str, str],
        pr: PullRequestInfo,
        result: CodeReviewResult,
    ) -> None:
        owner, repo = target
        self.after_commit(
            "request_changes",
            self.hosting.request_changes, owner, repo, pr.number, format_review_body(result, False),
        )
        self.relabel(target, request.issue_number, remove=[PR_READY_LABEL], add=[CHANGES_LABEL])
        self.notify(
            target,
            request.issue_number,
            f"**Code review requested changes on PR #{pr.number}.**\n\n"
            f"**Quality Score:** {result.quality_score}/10 | "
            f"**Design:** {_check(result.design_compliance)} | "
            f"**Security:** {_check(result.security_pass)} | "
            f"**Standards:** {_check(result.coding_standards_pass)}\n\n"
            f"{result.summary}",
        )

    # Approved

    def _approve(
        self,
        db: Session,
        request: DevRequestModel,
        target: Tuple[str, str],
        pr: PullRequestInfo,
        proposal,
        diff: str,
        result: CodeReviewResult,
        now: datetime,
    ) -> None:
        owner, repo = target
        if pr.draft:
            self.after_commit("mark_ready_for_review", self.hosting.mark_ready_for_review, owner, repo, pr)
        self.after_commit(
            "approve_pull_request",
            self.hosting.approve_pull_request, owner, repo, pr.number, format_review_body(result, True),
        )
        self.relabel(target, request.issue_number, remove=[PR_READY_LABEL], add=[APPROVED_LABEL])
        self._finish_approval(db, request, target, pr, proposal, diff, result, now)

    def _resume_approval(
        self,
        db: Session,
        reviews: ReviewService,
        request: DevRequestModel,
        target: Tuple[str, str],
        pr: PullRequestInfo,
        review: MergeReviewModel,
        now: datetime,
    ) -> None:
        """Pick up an approved revision whose merge step failed on an earlier tick."""
        log = self.logger.bind(request_id=request.id, pr=pr.number)
        proposal = reviews.latest_approved_proposal(request.id) or reviews.latest_proposal(request.id)
        if proposal is None:
            log.warning("prerequisite_missing", missing="solution_proposal")
            return
        self.reviewed.add(f"{pr.number}:{pr.head_sha}")
        log.info("approval_resumed", review_id=review.id)
        diff = self.hosting.get_pull_request_diff(target[0], target[1], pr.number)
        self._finish_approval(db, request, target, pr, proposal, diff, result_from_review(review), now)

    def _finish_approval(
        self,
        db: Session,
        request: DevRequestModel,
        target: Tuple[str, str],
        pr: PullRequestInfo,
        proposal,
        diff: str,
        result: CodeReviewResult,
        now: datetime,
    ) -> None:
        """Everything after the PR approval. Safe to run again for the same revision."""
        if not self.settings.code_review_auto_merge:
            self._mark_review_approved(db, request, note="Code review passed")
            db.commit()
            self.notify(
                target,
                request.issue_number,
                f"**Code review passed** (quality score {result.quality_score}/10). "
                f"PR #{pr.number} is approved and ready for a human to merge.",
            )
            return

        if self._agent_run_failed(db, request, target, now):
            return

        if self.deployment_mode == DeploymentMode.STAGED:
            self._mark_review_approved(db, request, note="Code review passed (staged)")
            db.commit()
            self.logger.info("pr_staged", request_id=request.id, pr=pr.number)
            self.relabel(target, request.issue_number, add=[STAGED_LABEL])
            self.notify(
                target,
                request.issue_number,
                f"**Code review passed** (quality score {result.quality_score}/10). "
                f"PR #{pr.number} is approved.\n\n"
                "Staged deployment mode: the PR is waiting for a human to merge and deploy.",
            )
            return

        self._auto_merge(db, request, target, pr, proposal, diff, result, now)

    def _mark_review_approved(self, db: Session, request: DevRequestModel, note: str) -> None:
        set_tracking_status(
            db, request, "implementation_status", ImplementationStatus.REVIEW_APPROVED,
            actor_id=self.name, note=note,
        )

    def _agent_run_failed(
        self, db: Session, request: DevRequestModel, target: Tuple[str, str], now: datetime
    ) -> bool:
        """Block the merge when the agent's own run did not finish cleanly."""
        if request.implementation_triggered_at is None:
            return False
        owner, repo = target
        since, until = agent_run_window(request.implementation_triggered_at)
        run = self.hosting.get_agent_run_conclusion(owner, repo, since, until)
        if run is None or run.conclusion not in FAILED_CONCLUSIONS:
            return False

        set_tracking_status(
            db, request, "implementation_status", ImplementationStatus.FAILED,
            actor_id=self.name, note=f"Agent run {run.run_id} {run.conclusion}",
        )
        request.implementation_completed_at = now
        transition(
            db,
            request,
            RequestStatus.APPROVED,
            actor_id=self.name,
            note="Auto-merge blocked: coding agent run did not complete",
            now=now,
        )
        pr_number = request.pr_number
        # The next session rediscovers its PR by issue reference
        request.implementation_session_id = None
        request.pr_number = None
        request.pr_url = None
        db.commit()
        self.logger.warning(
            "merge_blocked_agent_run", request_id=request.id, run_id=run.run_id, conclusion=run.conclusion
        )
        self.relabel(target, request.issue_number, remove=[APPROVED_LABEL], add=[FAILED_LABEL])
        self.notify(
            target,
            request.issue_number,
            f"**Auto-merge blocked.** The coding agent run {run.run_id} concluded "
            f"`{run.conclusion}`, so PR #{pr_number} was not merged. "
            "The request has been returned to Approved.",
        )
        return True

    def _auto_merge(
        self,
        db: Session,
        request: DevRequestModel,
        target: Tuple[str, str],
        pr: PullRequestInfo,
        proposal,
        diff: str,
        result: CodeReviewResult,
        now: datetime,
    ) -> None:
        log = self.logger.bind(request_id=request.id, pr=pr.number)
        owner, repo = target
        base = self.settings.base_branch

        behind = self.hosting.get_behind_by(owner, repo, base, pr.head_ref or request.branch_name)
        if behind > 0:
            log.info("branch_behind", behind_by=behind)
            if not self.hosting.update_branch(owner, repo, pr.number):
                self._merge_conflict(db, request, target, pr, result, now)
                return

            refreshed = self.hosting.get_pull_request(owner, repo, pr.number) or pr
            new_diff = self.hosting.get_pull_request_diff(owner, repo, pr.number)
            if new_diff and new_diff != diff:
                rereview = self.reviewer.review(
                    request, proposal, new_diff,
                    refreshed.changed_files, refreshed.additions, refreshed.deletions,
                )
                rereview_passed = self._passes(rereview)
                self._save_review(db, request, refreshed, rereview, now, summary_prefix=REREVIEW_PREFIX)
                self.reviewed.add(f"{refreshed.number}:{refreshed.head_sha}")
                if not rereview_passed:
                    db.commit()
                    log.info("rereview_rejected", score=rereview.quality_score)
                    self.relabel(target, request.issue_number, remove=[APPROVED_LABEL])
                    self._request_changes(request, target, refreshed, rereview)
                    return
                db.commit()
                result = rereview

        merged = self.hosting.merge_pull_request(
            owner, repo, pr.number, merge_commit_message(request, result)
        )
        if not merged:
            self._mark_review_approved(db, request, note="Auto-merge failed, awaiting a manual merge")
            db.commit()
            log.warning("merge_failed")
            self.notify(
                target,
                request.issue_number,
                f"**Auto-merge failed** for PR #{pr.number}. The PR is approved; "
                "please merge it manually.",
            )
            return

        record_merge(db, request, now, self.name, note=f"PR #{pr.number} auto-merged")
        db.commit()
        log.info("pr_merged", score=result.quality_score)
        self.delete_merged_branch(db, request, target)
        self.after_commit(
            "delete_prep_branch",
            self.hosting.delete_branch, owner, repo, PREP_BRANCH_TEMPLATE.format(id=request.id),
        )
        self.relabel(target, request.issue_number, remove=MERGED_CLEANUP_LABELS, add=[COMPLETE_LABEL])
        self.notify(target, request.issue_number, merged_comment(request, now))

    def _merge_conflict(
        self,
        db: Session,
        request: DevRequestModel,
        target: Tuple[str, str],
        pr: PullRequestInfo,
        result: CodeReviewResult,
        now: datetime,
    ) -> None:
        """Treat a branch that cannot be updated as a changes-requested review."""
        owner, repo = target
        message = CONFLICT_MESSAGE.format(base=self.settings.base_branch)
        conflict = CodeReviewResult(
            decision=MergeDecision.CHANGES_REQUESTED,
            summary=message,
            design_compliance=result.design_compliance,
            design_compliance_notes=result.design_compliance_notes,
            security_pass=result.security_pass,
            security_notes=result.security_notes,
            coding_standards_pass=result.coding_standards_pass,
            coding_standards_notes=result.coding_standards_notes,
            quality_score=result.quality_score,
            model_used=result.model_used,
        )
        self._save_review(db, request, pr, conflict, now)
        db.commit()
        self.logger.warning("merge_conflict", request_id=request.id, pr=pr.number)
        self.after_commit(
            "request_changes", self.hosting.request_changes, owner, repo, pr.number, message
        )
        self.relabel(target, request.issue_number, remove=[APPROVED_LABEL], add=[CONFLICT_LABEL])
        self.notify(
            target,
            request.issue_number,
            f"**Merge conflict on PR #{pr.number}.** The code review passed, but the branch "
            f"could not be updated from `{self.settings.base_branch}`. "
            "The coding agent has been asked to rebase.",
        )
