"""
PR monitor: follows the coding agent from trigger to pull request and the
pull request to merge.

Before a PR exists the request is matched to one by issue reference and
author. Once a PR exists its merged/closed state decides the outcome:

    InProgress --PR merged--> Done   (deployment Pending)
    InProgress --PR closed--> InProgress (implementation Failed)
"""

from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.models import DevRequestModel
from ..db.services import RequestService
from ..integrations.hosting import HostingService, PullRequestInfo
from ..pipeline.enums import DeploymentStatus, ImplementationStatus, RequestStatus
from ..pipeline.state_machine import set_tracking_status, transition
from .base import HostingWorker, repo_of

IMPLEMENTING_LABEL = "copilot:implementing"
PR_READY_LABEL = "copilot:pr-ready"
FAILED_LABEL = "copilot:failed"
COMPLETE_LABEL = "copilot:complete"
PREP_BRANCH_PREFIX = "attachments/"

MERGED_CLEANUP_LABELS = (
    PR_READY_LABEL,
    "agent:approved",
    "agent:architect-review",
    "agent:approved-solution",
    "review:approved",
)

FAILED_CONCLUSIONS = ("cancelled", "failure")

# The agent run starts shortly after assignment
RUN_WINDOW_BEFORE = timedelta(seconds=30)
RUN_WINDOW_AFTER = timedelta(minutes=5)


def agent_run_window(triggered_at: datetime) -> Tuple[datetime, datetime]:
    return triggered_at - RUN_WINDOW_BEFORE, triggered_at + RUN_WINDOW_AFTER


def minutes_between(start: Optional[datetime], end: datetime) -> int:
    if start is None:
        return 0
    return int((end - start).total_seconds() // 60)


def record_merge(
    db: Session,
    request: DevRequestModel,
    now: datetime,
    actor_id: str,
    note: str,
) -> None:
    """Stage the merged outcome: PrMerged, Done and a Pending deployment."""
    set_tracking_status(
        db, request, "implementation_status", ImplementationStatus.PR_MERGED, actor_id=actor_id
    )
    request.implementation_completed_at = now
    transition(db, request, RequestStatus.DONE, actor_id=actor_id, note=note, now=now)
    set_tracking_status(
        db, request, "deployment_status", DeploymentStatus.PENDING, actor_id=actor_id
    )


def merged_comment(request: DevRequestModel, now: datetime) -> str:
    return (
        f"**Implementation complete!** PR #{request.pr_number} has been merged.\n\n"
        f"Total time from trigger to merge: "
        f"{minutes_between(request.implementation_triggered_at, now)} minutes"
    )


class PRMonitorWorker(HostingWorker):
    """Tracks agent sessions and open pull requests. Makes no model calls."""

    name = "pr_monitor"

    def __init__(
        self,
        hosting: HostingService,
        settings: Optional[Settings] = None,
        **kwargs,
    ):
        settings = settings or get_settings()
        kwargs.setdefault("interval_seconds", settings.pr_monitor_interval_seconds)
        kwargs.setdefault("initial_delay_seconds", settings.pr_monitor_initial_delay_seconds)
        super().__init__(hosting, **kwargs)
        self.settings = settings

    def claim(self, db: Session, now: datetime, limit: int) -> List[DevRequestModel]:
        requests = RequestService(db)
        sessions = requests.claim_for_pr_monitor(limit)
        return sessions + requests.open_pull_requests(limit)

    def handle(self, db: Session, request: DevRequestModel, now: datetime) -> None:
        target = repo_of(request)
        if target is None or not request.issue_number:
            self.logger.warning("prerequisite_missing", request_id=request.id, missing="issue")
            return
        if request.pr_number:
            self._check_pull_request(db, request, target, now)
        else:
            self._find_pull_request(db, request, target, now)

    # Before a PR exists

    def _find_pull_request(
        self, db: Session, request: DevRequestModel, target: Tuple[str, str], now: datetime
    ) -> None:
        log = self.logger.bind(request_id=request.id)
        owner, repo = target

        pr = self.hosting.find_pull_request_for_issue(
            owner, repo, request.issue_number, self.settings.coding_agent_login
        )
        if pr is not None:
            self._record_pull_request(db, request, target, pr)
            return

        triggered_at = request.implementation_triggered_at or request.updated_at
        elapsed = now - triggered_at

        if elapsed > timedelta(minutes=self.settings.pr_monitor_run_check_minutes):
            since, until = agent_run_window(triggered_at)
            run = self.hosting.get_agent_run_conclusion(owner, repo, since, until)
            if run is not None and run.conclusion in FAILED_CONCLUSIONS:
                set_tracking_status(
                    db, request, "implementation_status", ImplementationStatus.FAILED,
                    actor_id=self.name, note=f"Agent run {run.run_id} {run.conclusion}",
                )
                request.implementation_completed_at = now
                if run.head_branch:
                    request.branch_name = run.head_branch
                db.commit()
                log.warning("agent_run_failed", run_id=run.run_id, conclusion=run.conclusion)
                self.relabel(target, request.issue_number, remove=[IMPLEMENTING_LABEL], add=[FAILED_LABEL])
                self.notify(
                    target,
                    request.issue_number,
                    f"**Coding agent run {run.conclusion}.** No pull request was opened.\n\n"
                    f"**Run:** {run.run_id}\n"
                    f"**Branch:** `{run.head_branch or 'unknown'}`\n\n"
                    "An operator can reset the implementation to try again.",
                )
                return

        if elapsed > timedelta(minutes=self.settings.pr_monitor_timeout_minutes):
            set_tracking_status(
                db, request, "implementation_status", ImplementationStatus.FAILED,
                actor_id=self.name, note="Timed out waiting for a pull request",
            )
            request.implementation_completed_at = now
            db.commit()
            log.warning("implementation_timed_out", minutes=minutes_between(triggered_at, now))
            self.relabel(target, request.issue_number, remove=[IMPLEMENTING_LABEL], add=[FAILED_LABEL])
            self.notify(
                target,
                request.issue_number,
                "**Implementation timed out.** No pull request was opened within "
                f"{self.settings.pr_monitor_timeout_minutes} minutes of the trigger.",
            )
            return

        if (
            request.implementation_status == ImplementationStatus.PENDING
            and elapsed > timedelta(minutes=self.settings.pr_monitor_pending_to_working_minutes)
        ):
            set_tracking_status(
                db, request, "implementation_status", ImplementationStatus.WORKING, actor_id=self.name
            )
            db.commit()
            log.info("implementation_working")

    def _record_pull_request(
        self,
        db: Session,
        request: DevRequestModel,
        target: Tuple[str, str],
        pr: PullRequestInfo,
    ) -> None:
        owner, repo = target
        request.pr_number = pr.number
        request.pr_url = pr.url
        request.branch_name = pr.head_ref or request.branch_name
        set_tracking_status(
            db, request, "implementation_status", ImplementationStatus.PR_OPENED,
            actor_id=self.name, note=f"PR #{pr.number} opened",
        )
        db.commit()
        self.logger.info("pr_opened", request_id=request.id, pr=pr.number, branch=pr.head_ref)

        if pr.base_ref.startswith(PREP_BRANCH_PREFIX):
            retargeted = self.after_commit(
                "retarget_pull_request",
                self.hosting.retarget_pull_request, owner, repo, pr.number, self.settings.base_branch,
            )
            if retargeted:
                self.after_commit(
                    "delete_branch", self.hosting.delete_branch, owner, repo, pr.base_ref
                )

        self.relabel(target, request.issue_number, remove=[IMPLEMENTING_LABEL], add=[PR_READY_LABEL])
        self.notify(
            target,
            request.issue_number,
            f"**Coding agent has opened PR #{pr.number}.** Ready for human review.\n\n"
            f"[{pr.title or f'PR #{pr.number}'}]({pr.url})",
        )

    # After a PR exists

    def _check_pull_request(
        self, db: Session, request: DevRequestModel, target: Tuple[str, str], now: datetime
    ) -> None:
        owner, repo = target
        pr = self.hosting.get_pull_request(owner, repo, request.pr_number)
        if pr is None:
            self.logger.warning("pr_not_found", request_id=request.id, pr=request.pr_number)
            return

        if pr.merged:
            record_merge(db, request, now, self.name, note=f"PR #{pr.number} merged")
            db.commit()
            self.logger.info("pr_merged", request_id=request.id, pr=pr.number)
            self.delete_merged_branch(db, request, target)
            self.relabel(target, request.issue_number, remove=MERGED_CLEANUP_LABELS, add=[COMPLETE_LABEL])
            self.notify(target, request.issue_number, merged_comment(request, now))
        elif pr.closed:
            set_tracking_status(
                db, request, "implementation_status", ImplementationStatus.FAILED,
                actor_id=self.name, note=f"PR #{pr.number} closed without merge",
            )
            request.implementation_completed_at = now
            db.commit()
            self.logger.warning("pr_closed_unmerged", request_id=request.id, pr=pr.number)
            self.relabel(target, request.issue_number, remove=[PR_READY_LABEL], add=[FAILED_LABEL])
            self.notify(
                target,
                request.issue_number,
                f"**PR #{pr.number} was closed without merging.** The implementation has been "
                "marked as failed. An operator can reset the implementation to try again.",
            )
