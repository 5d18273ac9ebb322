"""
Pipeline health orchestrator.

Each tick runs four independent phases, each in its own session:

1. stall detection (comment + ``pipeline:stalled``);
2. deployment tracking of merged requests;
3. retry of merged branches that could not be deleted;
4. file conflict detection between active implementations.

A failure in one phase is logged and does not stop the others. Within a
phase a failing request is rolled back and skipped, so one broken
repository never starves the requests after it.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.models import DevRequestModel
from ..db.services import RequestService
from ..integrations.hosting import HostingService
from ..pipeline.enums import DeploymentStatus
from ..pipeline.monitoring import (
    conflict_comment,
    conflict_recently_notified,
    deployment_run_missing,
    find_conflicts,
    find_stalled,
    merge_time,
    stall_comment,
)
from ..pipeline.state_machine import set_tracking_status
from .base import HostingWorker, repo_of

STALLED_LABEL = "pipeline:stalled"
CONFLICT_LABEL = "pipeline:conflict"
DEPLOYED_LABEL = "deployed:uat"
DEPLOY_FAILED_LABEL = "deploy:failed"

RUNNING_RUN_STATUSES = ("in_progress", "queued", "waiting", "requested", "pending")

Phase = Callable[[Session, datetime], int]


class HealthWorker(HostingWorker):
    """Periodic stall, deployment, branch and conflict checks over the whole store."""

    name = "orchestrator"

    def __init__(
        self,
        hosting: HostingService,
        settings: Optional[Settings] = None,
        **kwargs,
    ):
        settings = settings or get_settings()
        kwargs.setdefault("interval_seconds", settings.orchestrator_interval_seconds)
        kwargs.setdefault("initial_delay_seconds", settings.orchestrator_initial_delay_seconds)
        super().__init__(hosting, **kwargs)
        self.settings = settings

    @property
    def phases(self) -> List[Tuple[str, Phase]]:
        return [
            ("stalls", self.detect_stalls),
            ("deployments", self.track_deployments),
            ("branches", self.clean_up_branches),
            ("conflicts", self.detect_conflicts),
        ]

    def run_cycle(self) -> int:
        """Run every phase once. Returns the number of requests acted on."""
        now = self.clock()
        self.ticks += 1
        self.last_tick_at = now
        total = 0
        for phase_name, phase in self.phases:
            if self.stop_event.is_set():
                break
            db = self._open_session()
            try:
                acted = phase(db, now)
                total += acted
                self.rows_processed += acted
            except Exception as e:
                db.rollback()
                self._record_failure(phase_name, e)
                self.logger.exception("phase_failed", phase=phase_name)
            finally:
                db.close()
        return total

    def _record_failure(self, phase_name: str, error: Exception) -> None:
        self.rows_failed += 1
        self.last_error = f"{phase_name}: {type(error).__name__}: {error}"

    def _isolated(self, db: Session, phase_name: str, request_id: int, fn, *args) -> bool:
        """Run one request's step; a failure rolls back and lets the phase go on."""
        try:
            return bool(fn(*args))
        except Exception as e:
            db.rollback()
            self._record_failure(phase_name, e)
            self.logger.exception("row_failed", phase=phase_name, request_id=request_id)
            return False

    # Stalls

    def detect_stalls(self, db: Session, now: datetime) -> int:
        acted = 0
        for item in find_stalled(db, self.settings, now):
            if self._isolated(db, "stalls", item.request.id, self._flag_stall, db, item, now):
                acted += 1
        return acted

    def _flag_stall(self, db: Session, item, now: datetime) -> bool:
        request = item.request
        request.stall_notified_at = now
        db.commit()
        self.logger.info(
            "request_stalled", request_id=request.id, state=item.rule.state, age=item.age_text
        )
        target = repo_of(request)
        if target is not None:
            self.relabel(target, request.issue_number, add=[STALLED_LABEL])
            self.notify(target, request.issue_number, stall_comment(item))
        return True

    # Deployments

    def track_deployments(self, db: Session, now: datetime) -> int:
        acted = 0
        for request in RequestService(db).tracked_deployments():
            if self._isolated(db, "deployments", request.id, self._track_deployment, db, request, now):
                acted += 1
        return acted

    def _track_deployment(self, db: Session, request: DevRequestModel, now: datetime) -> bool:
        log = self.logger.bind(request_id=request.id)
        target = repo_of(request)
        if target is None:
            log.warning("prerequisite_missing", missing="project")
            return False
        owner, repo = target

        grace = timedelta(minutes=self.settings.deployment_grace_minutes)
        merged_at = merge_time(request, now, grace)
        run = self.hosting.get_latest_workflow_run(owner, repo, self.settings.base_branch, merged_at)
        if run is None:
            if deployment_run_missing(request, now, grace):
                log.warning(
                    "deployment_run_missing",
                    minutes_since_merge=int((now - merged_at).total_seconds() // 60),
                )
            return False

        request.deployment_run_id = run.id

        if run.status == "completed":
            if run.conclusion == "success":
                set_tracking_status(
                    db, request, "deployment_status", DeploymentStatus.SUCCEEDED,
                    actor_id=self.name, note=f"Workflow run {run.id} succeeded",
                )
                request.deployed_at = now
                db.commit()
                log.info("deployment_succeeded", run_id=run.id)
                self.relabel(target, request.issue_number, add=[DEPLOYED_LABEL])
                self.notify(
                    target,
                    request.issue_number,
                    f"**Deployed to UAT!** The changes from PR #{request.pr_number} have been "
                    f"successfully deployed.\n\n**Workflow run:** {run.id}",
                )
            else:
                set_tracking_status(
                    db, request, "deployment_status", DeploymentStatus.FAILED,
                    actor_id=self.name, note=f"Workflow run {run.id} concluded {run.conclusion}",
                )
                db.commit()
                log.warning("deployment_failed", run_id=run.id, conclusion=run.conclusion)
                self.relabel(target, request.issue_number, add=[DEPLOY_FAILED_LABEL])
                self.notify(
                    target,
                    request.issue_number,
                    f"**Deployment failed.** The workflow run {run.id} for PR #{request.pr_number} "
                    f"concluded `{run.conclusion}`.\n\n"
                    "Fix the pipeline and retry the deployment from the operator API.",
                )
            return True

        if run.status in RUNNING_RUN_STATUSES:
            set_tracking_status(
                db, request, "deployment_status", DeploymentStatus.IN_PROGRESS, actor_id=self.name
            )
            db.commit()
            log.debug("deployment_running", run_id=run.id, status=run.status)
            return True

        db.commit()
        log.info("deployment_run_unknown_status", run_id=run.id, status=run.status)
        return False

    # Branches

    def clean_up_branches(self, db: Session, now: datetime) -> int:
        acted = 0
        for request in RequestService(db).undeleted_branches(self.batch_size):
            if self._isolated(db, "branches", request.id, self._retry_branch_delete, db, request):
                acted += 1
        return acted

    def _retry_branch_delete(self, db: Session, request: DevRequestModel) -> bool:
        target = repo_of(request)
        if target is None:
            return False
        deleted = self.delete_merged_branch(db, request, target)
        if deleted:
            self.logger.info("branch_deleted", request_id=request.id, branch=request.branch_name)
        return deleted

    # Conflicts

    def detect_conflicts(self, db: Session, now: datetime) -> int:
        window = timedelta(hours=self.settings.conflict_window_hours)
        notified = 0
        for conflict in find_conflicts(db):
            for request, other in (
                (conflict.first, conflict.second),
                (conflict.second, conflict.first),
            ):
                if conflict_recently_notified(request, now, window):
                    continue
                if self._isolated(
                    db, "conflicts", request.id,
                    self._flag_conflict, db, request, other, conflict.files, now,
                ):
                    notified += 1
        return notified

    def _flag_conflict(
        self, db: Session, request: DevRequestModel, other: DevRequestModel, files, now: datetime
    ) -> bool:
        request.conflict_notified_at = now
        db.commit()
        self.logger.info(
            "conflict_detected",
            request_id=request.id,
            other_request_id=other.id,
            files=len(files),
        )
        target = repo_of(request)
        if target is not None:
            self.relabel(target, request.issue_number, add=[CONFLICT_LABEL])
            self.notify(target, request.issue_number, conflict_comment(other, files))
        return True
