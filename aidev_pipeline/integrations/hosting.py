"""
Issue / pull request hosting service interface.

Workers only talk to ``HostingService``. ``GitHubHostingService`` implements
it over the GitHub REST API; ``NullHostingService`` is used when no token is
configured so the local pipeline still runs end to end.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from ..pipeline.enums import IntakeDecision, RequestStatus

logger = logging.getLogger(__name__)

AGENT_LABEL_PREFIX = "agent:"

AGENT_LABELS = {
    IntakeDecision.APPROVE: "agent:approved",
    IntakeDecision.REJECT: "agent:rejected",
    IntakeDecision.CLARIFY: "agent:needs-info",
}


@dataclass
class PullRequestInfo:
    """The fields of a pull request the pipeline acts on."""

    number: int
    url: str
    title: str = ""
    state: str = "open"
    merged: bool = False
    draft: bool = False
    head_ref: str = ""
    head_sha: str = ""
    base_ref: str = ""
    changed_files: int = 0
    additions: int = 0
    deletions: int = 0
    node_id: str = ""

    @property
    def closed(self) -> bool:
        return self.state == "closed"


@dataclass
class WorkflowRun:
    """A CI workflow run on a branch."""

    id: int
    status: str
    conclusion: Optional[str] = None
    head_branch: str = ""
    created_at: Optional[datetime] = None


@dataclass
class AgentRun:
    """Outcome of a coding agent session run."""

    run_id: int
    conclusion: Optional[str]
    head_branch: str = ""


@dataclass
class TreeEntry:
    """A blob or tree in a repository listing."""

    path: str
    type: str = "blob"
    size: int = 0


def _val(value) -> str:
    return getattr(value, "value", value) or ""


def format_issue_body(request) -> str:
    """Markdown issue body mirroring the request's submitted fields."""
    created = request.created_at.strftime("%Y-%m-%d %H:%M UTC") if request.created_at else ""
    lines = [
        f"## {_val(request.request_type)}: {request.title}",
        "",
        f"**Priority:** {_val(request.priority)}",
        f"**Status:** {_val(request.status)}",
        f"**Submitted by:** {request.submitted_by} ({request.submitted_by_email or 'n/a'})",
        f"**Created:** {created}",
        "",
        "---",
        "",
        "### Description",
        request.description or "",
    ]
    if (request.steps_to_reproduce or "").strip():
        lines += ["", "### Steps to Reproduce", request.steps_to_reproduce]
    if (request.expected_behavior or "").strip():
        lines += ["", "### Expected Behavior", request.expected_behavior]
    if (request.actual_behavior or "").strip():
        lines += ["", "### Actual Behavior", request.actual_behavior]
    lines += ["", "---", f"*Created by AIDev Pipeline: Request #{request.id}*"]
    return "\n".join(lines)


def issue_labels(request) -> List[str]:
    return [_val(request.request_type).lower(), f"priority:{_val(request.priority).lower()}"]


def issue_closed(request) -> bool:
    return request.status in (RequestStatus.DONE, RequestStatus.REJECTED)


class HostingService(ABC):
    """Abstract issue tracker, pull request and CI service."""

    # Issues

    @abstractmethod
    def create_issue(self, owner: str, repo: str, request) -> Optional[Tuple[int, str]]:
        """Open an issue for ``request``. Returns ``(number, url)``."""

    @abstractmethod
    def update_issue(self, owner: str, repo: str, request) -> None:
        """Sync title/body, closing the issue when the request is terminal."""

    @abstractmethod
    def get_labels(self, owner: str, repo: str, issue_number: int) -> List[str]:
        pass

    @abstractmethod
    def add_labels(self, owner: str, repo: str, issue_number: int, labels: List[str]) -> None:
        pass

    @abstractmethod
    def remove_label(self, owner: str, repo: str, issue_number: int, label: str) -> None:
        """Remove a label. A label that is not present is not an error."""

    @abstractmethod
    def post_comment(self, owner: str, repo: str, issue_number: int, body: str) -> None:
        pass

    def set_agent_label(self, owner: str, repo: str, issue_number: int, decision: IntakeDecision) -> str:
        """Replace any ``agent:*`` labels with the one for ``decision``."""
        label = AGENT_LABELS.get(IntakeDecision(decision), "agent:reviewed")
        for existing in self.get_labels(owner, repo, issue_number):
            if existing.startswith(AGENT_LABEL_PREFIX) and existing != label:
                self.remove_label(owner, repo, issue_number, existing)
        self.add_labels(owner, repo, issue_number, [label])
        return label

    # Pull requests

    @abstractmethod
    def find_pull_request_for_issue(
        self, owner: str, repo: str, issue_number: int, author: str
    ) -> Optional[PullRequestInfo]:
        """The PR opened by ``author`` that references ``issue_number``, if any."""

    @abstractmethod
    def get_pull_request(self, owner: str, repo: str, number: int) -> Optional[PullRequestInfo]:
        pass

    @abstractmethod
    def get_pull_request_diff(self, owner: str, repo: str, number: int) -> str:
        pass

    @abstractmethod
    def mark_ready_for_review(self, owner: str, repo: str, pr: PullRequestInfo) -> bool:
        pass

    @abstractmethod
    def approve_pull_request(self, owner: str, repo: str, number: int, body: str) -> None:
        pass

    @abstractmethod
    def request_changes(self, owner: str, repo: str, number: int, body: str) -> None:
        pass

    @abstractmethod
    def get_behind_by(self, owner: str, repo: str, base: str, head: str) -> int:
        """Commits ``head`` is behind ``base``; -1 when unknown."""

    @abstractmethod
    def update_branch(self, owner: str, repo: str, number: int) -> bool:
        """Merge the base branch into the PR branch. False on conflict."""

    @abstractmethod
    def merge_pull_request(self, owner: str, repo: str, number: int, commit_message: str) -> bool:
        pass

    @abstractmethod
    def delete_branch(self, owner: str, repo: str, branch: str) -> bool:
        pass

    @abstractmethod
    def retarget_pull_request(self, owner: str, repo: str, number: int, base: str) -> bool:
        pass

    # CI and the coding agent

    @abstractmethod
    def get_latest_workflow_run(
        self, owner: str, repo: str, branch: str, since: datetime
    ) -> Optional[WorkflowRun]:
        pass

    @abstractmethod
    def get_agent_run_conclusion(
        self, owner: str, repo: str, since: datetime, until: datetime
    ) -> Optional[AgentRun]:
        """The coding agent's completed run started in ``[since, until]``, if any."""

    @abstractmethod
    def assign_coding_agent(
        self, owner: str, repo: str, issue_number: int, instructions: str, base_branch: str
    ) -> None:
        pass

    # Repository contents

    @abstractmethod
    def get_tree(self, owner: str, repo: str, ref: Optional[str] = None) -> List[TreeEntry]:
        pass

    @abstractmethod
    def get_file_content(
        self, owner: str, repo: str, path: str, ref: Optional[str] = None
    ) -> Optional[str]:
        """Decoded text of ``path``, or None when missing or binary."""


class NullHostingService(HostingService):
    """A no-op hosting service used when no token is configured."""

    def _skip(self, action: str) -> None:
        logger.warning(f"Hosting integration not configured, skipping {action}")

    def create_issue(self, owner, repo, request):
        self._skip(f"issue creation for request {request.id}")
        return None

    def update_issue(self, owner, repo, request):
        self._skip(f"issue update for request {request.id}")

    def get_labels(self, owner, repo, issue_number):
        return []

    def add_labels(self, owner, repo, issue_number, labels):
        self._skip(f"labels {labels} on #{issue_number}")

    def remove_label(self, owner, repo, issue_number, label):
        self._skip(f"label removal {label} on #{issue_number}")

    def post_comment(self, owner, repo, issue_number, body):
        self._skip(f"comment on #{issue_number}")

    def find_pull_request_for_issue(self, owner, repo, issue_number, author):
        return None

    def get_pull_request(self, owner, repo, number):
        return None

    def get_pull_request_diff(self, owner, repo, number):
        return ""

    def mark_ready_for_review(self, owner, repo, pr):
        return False

    def approve_pull_request(self, owner, repo, number, body):
        self._skip(f"approval of PR #{number}")

    def request_changes(self, owner, repo, number, body):
        self._skip(f"change request on PR #{number}")

    def get_behind_by(self, owner, repo, base, head):
        return -1

    def update_branch(self, owner, repo, number):
        return False

    def merge_pull_request(self, owner, repo, number, commit_message):
        self._skip(f"merge of PR #{number}")
        return False

    def delete_branch(self, owner, repo, branch):
        return False

    def retarget_pull_request(self, owner, repo, number, base):
        return False

    def get_latest_workflow_run(self, owner, repo, branch, since):
        return None

    def get_agent_run_conclusion(self, owner, repo, since, until):
        return None

    def assign_coding_agent(self, owner, repo, issue_number, instructions, base_branch):
        self._skip(f"coding agent assignment on #{issue_number}")

    def get_tree(self, owner, repo, ref=None):
        return []

    def get_file_content(self, owner, repo, path, ref=None):
        return None
