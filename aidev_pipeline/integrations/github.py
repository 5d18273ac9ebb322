"""
GitHub implementation of the hosting service.

Talks to the GitHub REST API with a synchronous httpx client. Workers run in
their own threads, so blocking calls are fine here.
"""

import base64
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from ..config import Settings, get_settings
from ..errors import HostingError
from .hosting import (
    AgentRun,
    HostingService,
    NullHostingService,
    PullRequestInfo,
    TreeEntry,
    WorkflowRun,
    format_issue_body,
    issue_closed,
    issue_labels,
)

logger = logging.getLogger(__name__)

MARK_READY_MUTATION = """
mutation($id: ID!) {
  markPullRequestReadyForReview(input: {pullRequestId: $id}) {
    pullRequest { isDraft }
  }
}
"""


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _to_pull_request(data: Dict[str, Any]) -> PullRequestInfo:
    head = data.get("head") or {}
    base = data.get("base") or {}
    return PullRequestInfo(
        number=data["number"],
        url=data.get("html_url", ""),
        title=data.get("title", ""),
        state=data.get("state", "open"),
        merged=bool(data.get("merged") or data.get("merged_at")),
        draft=bool(data.get("draft")),
        head_ref=head.get("ref", ""),
        head_sha=head.get("sha", ""),
        base_ref=base.get("ref", ""),
        changed_files=data.get("changed_files") or 0,
        additions=data.get("additions") or 0,
        deletions=data.get("deletions") or 0,
        node_id=data.get("node_id", ""),
    )


class GitHubHostingService(HostingService):
    """GitHub REST client for issues, pull requests, Actions runs and contents."""

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        agent_assignee: str = "copilot-swe-agent[bot]",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.agent_assignee = agent_assignee
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self.client.request(method, path, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            logger.error(
                f"GitHub {method} {path} failed: {e.response.status_code} {e.response.text[:200]}"
            )
            raise HostingError(
                f"GitHub {method} {path} returned {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            logger.error(f"GitHub {method} {path} request error: {e}")
            raise

    def _try(self, method: str, path: str, **kwargs) -> Optional[httpx.Response]:
        """Like ``_request`` but returns None for a rejected call."""
        try:
            return self._request(method, path, **kwargs)
        except HostingError:
            return None

    # Issues

    def create_issue(self, owner, repo, request):
        response = self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues",
            json={
                "title": request.title,
                "body": format_issue_body(request),
                "labels": issue_labels(request),
            },
        )
        data = response.json()
        logger.info(f"Created GitHub issue #{data['number']} for request {request.id}")
        return data["number"], data.get("html_url", "")

    def update_issue(self, owner, repo, request):
        if request.issue_number is None:
            return
        payload = {"title": request.title, "body": format_issue_body(request)}
        if issue_closed(request):
            payload["state"] = "closed"
        self._request("PATCH", f"/repos/{owner}/{repo}/issues/{request.issue_number}", json=payload)
        logger.info(f"Updated GitHub issue #{request.issue_number} for request {request.id}")

    def get_labels(self, owner, repo, issue_number):
        response = self._request("GET", f"/repos/{owner}/{repo}/issues/{issue_number}/labels")
        return [label["name"] for label in response.json()]

    def add_labels(self, owner, repo, issue_number, labels):
        self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{issue_number}/labels",
            json={"labels": list(labels)},
        )
        logger.info(f"Added labels {labels} to issue #{issue_number}")

    def remove_label(self, owner, repo, issue_number, label):
        path = f"/repos/{owner}/{repo}/issues/{issue_number}/labels/{label}"
        response = self.client.delete(path)
        # Removing a label the issue does not carry is a no-op
        if response.status_code == 404:
            return
        if response.is_error:
            raise HostingError(f"GitHub DELETE {path} returned {response.status_code}")

    def post_comment(self, owner, repo, issue_number, body):
        self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{issue_number}/comments",
            json={"body": body},
        )
        logger.info(f"Posted agent comment to issue #{issue_number}")

    # Pull requests

    def find_pull_request_for_issue(self, owner, repo, issue_number, author):
        response = self._request(
            "GET",
            f"/repos/{owner}/{repo}/pulls",
            params={"state": "all", "sort": "created", "direction": "desc", "per_page": 50},
        )
        reference = re.compile(rf"#{issue_number}\b")
        author = author.lower()
        for data in response.json():
            login = ((data.get("user") or {}).get("login") or "").lower()
            if author not in login:
                continue
            text = f"{data.get('title') or ''}\n{data.get('body') or ''}"
            if reference.search(text):
                return _to_pull_request(data)
        return None

    def get_pull_request(self, owner, repo, number):
        response = self._try("GET", f"/repos/{owner}/{repo}/pulls/{number}")
        return _to_pull_request(response.json()) if response is not None else None

    def get_pull_request_diff(self, owner, repo, number):
        response = self._try(
            "GET",
            f"/repos/{owner}/{repo}/pulls/{number}",
            headers={"Accept": "application/vnd.github.v3.diff"},
        )
        return response.text if response is not None else ""

    def mark_ready_for_review(self, owner, repo, pr):
        response = self._try(
            "POST",
            "/graphql",
            json={"query": MARK_READY_MUTATION, "variables": {"id": pr.node_id}},
        )
        if response is None or response.json().get("errors"):
            logger.warning(f"Could not mark PR #{pr.number} ready for review")
            return False
        return True

    def approve_pull_request(self, owner, repo, number, body):
        self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls/{number}/reviews",
            json={"event": "APPROVE", "body": body},
        )
        logger.info(f"Approved PR #{number}")

    def request_changes(self, owner, repo, number, body):
        self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls/{number}/reviews",
            json={"event": "REQUEST_CHANGES", "body": body},
        )
        logger.info(f"Requested changes on PR #{number}")

    def get_behind_by(self, owner, repo, base, head):
        response = self._try("GET", f"/repos/{owner}/{repo}/compare/{base}...{head}")
        if response is None:
            return -1
        return int(response.json().get("behind_by", 0))

    def update_branch(self, owner, repo, number):
        response = self._try("PUT", f"/repos/{owner}/{repo}/pulls/{number}/update-branch")
        return response is not None

    def merge_pull_request(self, owner, repo, number, commit_message):
        title, _, message = commit_message.partition("\n")
        response = self._try(
            "PUT",
            f"/repos/{owner}/{repo}/pulls/{number}/merge",
            json={"commit_title": title, "commit_message": message.strip(), "merge_method": "squash"},
        )
        merged = response is not None and bool(response.json().get("merged"))
        if merged:
            logger.info(f"Merged PR #{number}")
        return merged

    def delete_branch(self, owner, repo, branch):
        response = self._try("DELETE", f"/repos/{owner}/{repo}/git/refs/heads/{branch}")
        if response is not None:
            logger.info(f"Deleted branch {branch}")
        return response is not None

    def retarget_pull_request(self, owner, repo, number, base):
        response = self._try("PATCH", f"/repos/{owner}/{repo}/pulls/{number}", json={"base": base})
        return response is not None

    # CI and the coding agent

    def get_latest_workflow_run(self, owner, repo, branch, since):
        response = self._request(
            "GET",
            f"/repos/{owner}/{repo}/actions/runs",
            params={"branch": branch, "created": f">={_iso(since)}", "per_page": 1},
        )
        runs = response.json().get("workflow_runs") or []
        if not runs:
            return None
        run = runs[0]
        return WorkflowRun(
            id=run["id"],
            status=run.get("status") or "",
            conclusion=run.get("conclusion"),
            head_branch=run.get("head_branch") or "",
            created_at=_parse_ts(run.get("created_at")),
        )

    def get_agent_run_conclusion(self, owner, repo, since, until):
        response = self._request(
            "GET",
            f"/repos/{owner}/{repo}/actions/runs",
            params={"created": f"{_iso(since)}..{_iso(until)}", "per_page": 20},
        )
        agent = self.agent_assignee.split("[")[0].lower()
        for run in response.json().get("workflow_runs") or []:
            actor = ((run.get("actor") or {}).get("login") or "").lower()
            if agent not in actor or run.get("status") != "completed":
                continue
            return AgentRun(
                run_id=run["id"],
                conclusion=run.get("conclusion"),
                head_branch=run.get("head_branch") or "",
            )
        return None

    def assign_coding_agent(self, owner, repo, issue_number, instructions, base_branch):
        self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{issue_number}/assignees",
            json={
                "assignees": [self.agent_assignee],
                "agent_assignment": {
                    "target_repo": f"{owner}/{repo}",
                    "base_branch": base_branch,
                    "custom_instructions": instructions,
                },
            },
        )
        logger.info(f"Assigned coding agent to issue #{issue_number} on {owner}/{repo}")

    # Repository contents

    def get_tree(self, owner, repo, ref=None):
        ref = ref or "HEAD"
        response = self._request(
            "GET",
            f"/repos/{owner}/{repo}/git/trees/{ref}",
            params={"recursive": "1"},
        )
        return [
            TreeEntry(path=item["path"], type=item.get("type", "blob"), size=item.get("size") or 0)
            for item in response.json().get("tree") or []
        ]

    def get_file_content(self, owner, repo, path, ref=None):
        params = {"ref": ref} if ref else None
        response = self._try("GET", f"/repos/{owner}/{repo}/contents/{path}", params=params)
        if response is None:
            return None
        data = response.json()
        if isinstance(data, list) or data.get("encoding") != "base64":
            return None
        try:
            return base64.b64decode(data.get("content", "")).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            logger.warning(f"Skipping undecodable file {path}")
            return None


def get_hosting_service(settings: Optional[Settings] = None) -> HostingService:
    """GitHub when a token is configured, otherwise the no-op service."""
    settings = settings or get_settings()
    if not settings.github_token:
        logger.warning("GITHUB_TOKEN not configured, using NullHostingService")
        return NullHostingService()
    return GitHubHostingService(
        token=settings.github_token,
        base_url=settings.github_api_url,
        agent_assignee=settings.coding_agent_assignee,
        timeout=settings.github_timeout_seconds,
    )
