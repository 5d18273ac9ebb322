"""
Pipeline health queries: stalls, file conflicts and deployments.

Everything here reads the store and returns plain values. Notifications and
status changes are made by the health worker (``workers.orchestrator``).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from itertools import combinations
from typing import Dict, List, Set

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import Settings
from ..db.models import DevRequestModel
from ..db.services import RequestService, ReviewService
from .enums import DeploymentStatus, ImplementationStatus, RequestStatus

logger = logging.getLogger(__name__)

MAX_LISTED_CONFLICT_FILES = 10

STALL_FAILED = "FailedImplementation"


@dataclass
class StallRule:
    """How long a request may sit in one state before it is flagged."""

    state: str
    threshold: timedelta
    unit: str  # "days" or "hours", used for the notification wording

    def reference_time(self, request: DevRequestModel) -> datetime:
        if self.state == STALL_FAILED:
            return request.implementation_completed_at or request.updated_at
        return request.updated_at

    def applies_to(self, request: DevRequestModel) -> bool:
        status = RequestStatus(request.status)
        if self.state == STALL_FAILED:
            return (
                status == RequestStatus.IN_PROGRESS
                and request.implementation_status == ImplementationStatus.FAILED
            )
        if self.state == RequestStatus.APPROVED.value:
            return status == RequestStatus.APPROVED and request.implementation_session_id is None
        return status.value == self.state


def stall_rules(settings: Settings) -> List[StallRule]:
    return [
        StallRule(
            RequestStatus.NEEDS_CLARIFICATION.value,
            timedelta(days=settings.stall_clarification_days),
            "days",
        ),
        StallRule(
            RequestStatus.ARCHITECT_REVIEW.value,
            timedelta(days=settings.stall_architect_review_days),
            "days",
        ),
        StallRule(RequestStatus.APPROVED.value, timedelta(days=settings.stall_approved_days), "days"),
        StallRule(STALL_FAILED, timedelta(hours=settings.stall_failed_hours), "hours"),
    ]


@dataclass
class StalledRequest:
    request: DevRequestModel
    rule: StallRule
    age: timedelta

    @property
    def age_text(self) -> str:
        if self.rule.unit == "hours":
            return f"{int(self.age.total_seconds() // 3600)} hours"
        return f"{self.age.days} days"

    def to_dict(self) -> dict:
        return {
            "request_id": self.request.id,
            "title": self.request.title,
            "state": self.rule.state,
            "age_seconds": int(self.age.total_seconds()),
            "age": self.age_text,
            "issue_number": self.request.issue_number,
            "stall_notified_at": (
                self.request.stall_notified_at.isoformat() if self.request.stall_notified_at else None
            ),
        }


def find_stalled(
    db: Session,
    settings: Settings,
    now: datetime,
    include_notified: bool = False,
) -> List[StalledRequest]:
    """Requests past their state's threshold.

    Exactly at the threshold is not stalled. Unless ``include_notified`` is
    set, rows notified within the last threshold period are left out.
    """
    candidates = (
        db.query(DevRequestModel)
        .filter(
            DevRequestModel.status.in_(
                [
                    RequestStatus.NEEDS_CLARIFICATION,
                    RequestStatus.ARCHITECT_REVIEW,
                    RequestStatus.APPROVED,
                    RequestStatus.IN_PROGRESS,
                ]
            )
        )
        .order_by(DevRequestModel.id.asc())
        .all()
    )

    stalled = []
    for rule in stall_rules(settings):
        cutoff = now - rule.threshold
        for request in candidates:
            if not rule.applies_to(request):
                continue
            reference = rule.reference_time(request)
            if reference is None or not reference < cutoff:
                continue
            notified = request.stall_notified_at
            if not include_notified and notified is not None and not notified < cutoff:
                continue
            stalled.append(StalledRequest(request, rule, now - reference))
    return stalled


def stall_comment(stalled: StalledRequest) -> str:
    request = stalled.request
    messages = {
        RequestStatus.NEEDS_CLARIFICATION.value: (
            f"This request has been waiting for clarification for {stalled.age_text}. "
            "Please answer the open questions so triage can continue."
        ),
        RequestStatus.ARCHITECT_REVIEW.value: (
            f"The proposed solution has been awaiting review for {stalled.age_text}. "
            "Please approve it, reject it or request a revision."
        ),
        RequestStatus.APPROVED.value: (
            f"This request was approved {stalled.age_text} ago but implementation has not started. "
            "Check the coding agent capacity and the issue link."
        ),
        STALL_FAILED: (
            f"The implementation failed {stalled.age_text} ago and has not been retried. "
            "An operator can reset the implementation to try again."
        ),
    }
    return f"**Stall Alert:** {messages[stalled.rule.state]}\n\n**Request:** #{request.id} {request.title}"


@dataclass
class FileConflict:
    """Two active requests declaring overlapping files."""

    first: DevRequestModel
    second: DevRequestModel
    files: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "request_ids": [self.first.id, self.second.id],
            "issue_numbers": [self.first.issue_number, self.second.issue_number],
            "files": self.files,
        }


def declared_files(db: Session, request: DevRequestModel) -> Set[str]:
    proposal = ReviewService(db).latest_approved_proposal(request.id)
    if proposal is None:
        return set()
    return set(proposal.declared_paths())


def find_conflicts(db: Session) -> List[FileConflict]:
    """Pairs of active implementations whose declared file sets intersect."""
    active = RequestService(db).active_implementations()
    if len(active) < 2:
        return []

    declared: Dict[int, Set[str]] = {r.id: declared_files(db, r) for r in active}
    conflicts = []
    for first, second in combinations(active, 2):
        a, b = declared[first.id], declared[second.id]
        if not a or not b:
            continue
        overlap = a & b
        if overlap:
            conflicts.append(FileConflict(first, second, sorted(overlap)))
    logger.debug(f"Found {len(conflicts)} file conflicts among {len(active)} active implementations")
    return conflicts


def conflict_comment(other: DevRequestModel, files: List[str]) -> str:
    listed = "\n".join(f"- `{path}`" for path in files[:MAX_LISTED_CONFLICT_FILES])
    issue = f"Issue #{other.issue_number}" if other.issue_number else "no issue"
    return (
        f"**Potential Conflict:** This request modifies files that overlap with "
        f"Request #{other.id} ({issue}).\n\n"
        f"**Overlapping files ({len(files)}):**\n{listed}\n\n"
        "Merge conflicts may occur. Consider sequencing these implementations."
    )


def conflict_recently_notified(
    request: DevRequestModel, now: datetime, window: timedelta
) -> bool:
    notified = request.conflict_notified_at
    return notified is not None and notified > now - window


def merge_time(request: DevRequestModel, now: datetime, grace: timedelta) -> datetime:
    """When the request's PR was merged; a best guess when it was not recorded."""
    return request.implementation_completed_at or now - grace


def deployment_run_missing(request: DevRequestModel, now: datetime, grace: timedelta) -> bool:
    """Whether a merged request has waited the full grace period without a workflow run.

    An unrecorded merge time counts as having waited, since the lookup window
    already starts a full grace period back.
    """
    merged_at = request.implementation_completed_at
    return merged_at is None or now - merged_at >= grace


def deployments_overdue(db: Session, settings: Settings, now: datetime) -> List[DevRequestModel]:
    """Tracked deployments with no outcome after the hard timeout."""
    grace = timedelta(minutes=settings.deployment_grace_minutes)
    timeout = timedelta(hours=settings.deployment_timeout_hours)
    return [
        r for r in RequestService(db).tracked_deployments()
        if now - merge_time(r, now, grace) > timeout
    ]


def health_summary(db: Session, settings: Settings, now: datetime) -> dict:
    """Counts operators check first: stalls, deployments, branches and conflicts."""
    stalled = find_stalled(db, settings, now, include_notified=True)
    stalled_by_state: Dict[str, int] = {rule.state: 0 for rule in stall_rules(settings)}
    for item in stalled:
        stalled_by_state[item.rule.state] += 1

    deployments = {status.value: 0 for status in DeploymentStatus}
    for status, count in (
        db.query(DevRequestModel.deployment_status, func.count(DevRequestModel.id))
        .group_by(DevRequestModel.deployment_status)
        .all()
    ):
        deployments[DeploymentStatus(status).value] = count

    merged = db.query(DevRequestModel).filter(
        DevRequestModel.implementation_status == ImplementationStatus.PR_MERGED,
        DevRequestModel.branch_name.isnot(None),
    )
    branches_deleted = merged.filter(DevRequestModel.branch_deleted.is_(True)).count()
    branches_outstanding = merged.filter(DevRequestModel.branch_deleted.is_(False)).count()

    overdue = deployments_overdue(db, settings, now)

    return {
        "generated_at": now.isoformat(),
        "total_stalled": len(stalled),
        "stalled": stalled_by_state,
        "deployments": deployments,
        "deployments_overdue": [r.id for r in overdue],
        "branches_deleted": branches_deleted,
        "branches_outstanding": branches_outstanding,
        "active_conflicts": len(find_conflicts(db)),
    }
