"""
Tests for the GitHub hosting service against a mocked transport.
"""

import base64
import json
from datetime import datetime, timezone

import httpx
import pytest

from aidev_pipeline.errors import HostingError
from aidev_pipeline.integrations.github import GitHubHostingService, get_hosting_service
from aidev_pipeline.integrations.hosting import NullHostingService, PullRequestInfo
from aidev_pipeline.pipeline.enums import RequestStatus, RequestType

from tests.fakes import make_project, make_request

SINCE = datetime(2026, 3, 2, 11, 0, 0, tzinfo=timezone.utc)
UNTIL = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class Routes:
    """Canned responses keyed by ``(method, path)``; every request is recorded."""

    def __init__(self):
        self.responses = {}
        self.requests = []

    def add(self, method, path, status=200, json_body=None, text=None):
        self.responses[(method, path)] = (status, json_body, text)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, json_body, text = self.responses.get((request.method, request.url.path), (404, {}, None))
        if text is not None:
            return httpx.Response(status, text=text)
        return httpx.Response(status, json=json_body)

    def body(self, index=-1) -> dict:
        return json.loads(self.requests[index].content)


@pytest.fixture
def routes():
    return Routes()


@pytest.fixture
def github(routes):
    service = GitHubHostingService(token="ghp_test", transport=httpx.MockTransport(routes))
    yield service
    service.close()


def _pr(number=7, **fields):
    data = {
        "number": number,
        "html_url": f"https://github.com/myorg/storefront/pull/{number}",
        "title": "Export orders as CSV",
        "body": "Fixes #42",
        "state": "open",
        "draft": False,
        "merged_at": None,
        "head": {"ref": "copilot/fix-42", "sha": "abc123"},
        "base": {"ref": "main"},
        "user": {"login": "Copilot"},
        "node_id": "PR_kw1",
    }
    data.update(fields)
    return data


class TestIssues:
    def test_create_issue(self, db_session, routes, github):
        request = make_request(
            db_session, make_project(db_session), request_type=RequestType.BUG, issue_number=None,
            steps_to_reproduce="Click export",
        )
        routes.add(
            "POST", "/repos/myorg/storefront/issues",
            status=201, json_body={"number": 101, "html_url": "https://github.com/myorg/storefront/issues/101"},
        )

        number, url = github.create_issue("myorg", "storefront", request)

        assert number == 101
        assert url.endswith("/issues/101")
        body = routes.body()
        assert body["labels"] == ["bug", "priority:medium"]
        assert "### Steps to Reproduce\nClick export" in body["body"]
        assert routes.requests[0].headers["Authorization"] == "Bearer ghp_test"

    def test_update_closes_finished_requests(self, db_session, routes, github):
        request = make_request(db_session, make_project(db_session), status=RequestStatus.REJECTED)
        routes.add("PATCH", "/repos/myorg/storefront/issues/42", json_body={})

        github.update_issue("myorg", "storefront", request)

        assert routes.body()["state"] == "closed"

    def test_error_status_raises_hosting_error(self, routes, github):
        routes.add("POST", "/repos/myorg/storefront/issues/42/comments", status=403, json_body={})

        with pytest.raises(HostingError, match="403"):
            github.post_comment("myorg", "storefront", 42, "hello")

    def test_remove_missing_label_is_ignored(self, routes, github):
        github.remove_label("myorg", "storefront", 42, "agent:approved")
        assert routes.requests[0].method == "DELETE"

    def test_remove_label_failure(self, routes, github):
        routes.add("DELETE", "/repos/myorg/storefront/issues/42/labels/agent:approved", status=500)

        with pytest.raises(HostingError):
            github.remove_label("myorg", "storefront", 42, "agent:approved")

    def test_get_labels(self, routes, github):
        routes.add(
            "GET", "/repos/myorg/storefront/issues/42/labels",
            json_body=[{"name": "feature"}, {"name": "agent:approved"}],
        )
        assert github.get_labels("myorg", "storefront", 42) == ["feature", "agent:approved"]


class TestPullRequests:
    def test_find_pr_by_agent_and_issue_reference(self, routes, github):
        routes.add(
            "GET", "/repos/myorg/storefront/pulls",
            json_body=[
                _pr(5, body="Fixes #420"),
                _pr(6, user={"login": "alice"}),
                _pr(7),
            ],
        )

        pr = github.find_pull_request_for_issue("myorg", "storefront", 42, "copilot")

        assert pr.number == 7
        assert pr.head_ref == "copilot/fix-42"
        assert pr.base_ref == "main"
        assert not pr.merged

    def test_no_matching_pr(self, routes, github):
        routes.add("GET", "/repos/myorg/storefront/pulls", json_body=[_pr(5, body="Fixes #420")])
        assert github.find_pull_request_for_issue("myorg", "storefront", 42, "copilot") is None

    def test_merged_flag_from_merged_at(self, routes, github):
        routes.add(
            "GET", "/repos/myorg/storefront/pulls/7",
            json_body=_pr(state="closed", merged_at="2026-03-02T11:00:00Z"),
        )

        pr = github.get_pull_request("myorg", "storefront", 7)

        assert pr.merged
        assert pr.closed

    def test_missing_pr_is_none(self, github):
        assert github.get_pull_request("myorg", "storefront", 99) is None

    def test_diff_requested_as_text(self, routes, github):
        routes.add("GET", "/repos/myorg/storefront/pulls/7", text="diff --git a/x b/x")

        assert github.get_pull_request_diff("myorg", "storefront", 7) == "diff --git a/x b/x"
        assert routes.requests[0].headers["Accept"] == "application/vnd.github.v3.diff"

    def test_squash_merge(self, routes, github):
        routes.add("PUT", "/repos/myorg/storefront/pulls/7/merge", json_body={"merged": True})

        assert github.merge_pull_request("myorg", "storefront", 7, "Title (#7)\n\nBody text")

        body = routes.body()
        assert body == {"commit_title": "Title (#7)", "commit_message": "Body text", "merge_method": "squash"}

    def test_merge_refused(self, routes, github):
        routes.add("PUT", "/repos/myorg/storefront/pulls/7/merge", status=405, json_body={})
        assert not github.merge_pull_request("myorg", "storefront", 7, "Title")

    def test_behind_by(self, routes, github):
        routes.add("GET", "/repos/myorg/storefront/compare/main...copilot/fix-42", json_body={"behind_by": 3})

        assert github.get_behind_by("myorg", "storefront", "main", "copilot/fix-42") == 3
        assert github.get_behind_by("myorg", "storefront", "main", "other") == -1

    def test_mark_ready_graphql_errors(self, routes, github):
        routes.add("POST", "/graphql", json_body={"errors": [{"message": "nope"}]})
        pr = PullRequestInfo(number=7, url="", node_id="PR_kw1")

        assert not github.mark_ready_for_review("myorg", "storefront", pr)
        assert routes.body()["variables"] == {"id": "PR_kw1"}

    def test_delete_branch(self, routes, github):
        routes.add("DELETE", "/repos/myorg/storefront/git/refs/heads/copilot/fix-42", status=204, text="")

        assert github.delete_branch("myorg", "storefront", "copilot/fix-42")
        assert not github.delete_branch("myorg", "storefront", "gone")


class TestActions:
    def test_latest_workflow_run(self, routes, github):
        routes.add(
            "GET", "/repos/myorg/storefront/actions/runs",
            json_body={"workflow_runs": [
                {"id": 900, "status": "completed", "conclusion": "success",
                 "head_branch": "main", "created_at": "2026-03-02T11:30:00Z"},
            ]},
        )

        run = github.get_latest_workflow_run("myorg", "storefront", "main", SINCE)

        assert run.id == 900
        assert run.conclusion == "success"
        assert run.created_at == datetime(2026, 3, 2, 11, 30, tzinfo=timezone.utc)
        params = routes.requests[0].url.params
        assert params["branch"] == "main"
        assert params["created"] == ">=2026-03-02T11:00:00Z"

    def test_no_workflow_run(self, routes, github):
        routes.add("GET", "/repos/myorg/storefront/actions/runs", json_body={"workflow_runs": []})
        assert github.get_latest_workflow_run("myorg", "storefront", "main", SINCE) is None

    def test_agent_run_picks_completed_agent_run(self, routes, github):
        routes.add(
            "GET", "/repos/myorg/storefront/actions/runs",
            json_body={"workflow_runs": [
                {"id": 1, "status": "completed", "conclusion": "success", "actor": {"login": "alice"}},
                {"id": 2, "status": "in_progress", "actor": {"login": "Copilot-SWE-Agent"}},
                {"id": 3, "status": "completed", "conclusion": "failure",
                 "actor": {"login": "copilot-swe-agent"}, "head_branch": "copilot/fix-42"},
            ]},
        )

        run = github.get_agent_run_conclusion("myorg", "storefront", SINCE, UNTIL)

        assert run.run_id == 3
        assert run.conclusion == "failure"
        assert routes.requests[0].url.params["created"] == "2026-03-02T11:00:00Z..2026-03-02T12:00:00Z"

    def test_assign_coding_agent(self, routes, github):
        routes.add("POST", "/repos/myorg/storefront/issues/42/assignees", status=201, json_body={})

        github.assign_coding_agent("myorg", "storefront", 42, "Do the thing", "main")

        body = routes.body()
        assert body["assignees"] == ["copilot-swe-agent[bot]"]
        assert body["agent_assignment"]["base_branch"] == "main"
        assert body["agent_assignment"]["custom_instructions"] == "Do the thing"


class TestContents:
    def test_tree(self, routes, github):
        routes.add(
            "GET", "/repos/myorg/storefront/git/trees/main",
            json_body={"tree": [
                {"path": "src", "type": "tree"},
                {"path": "src/app.py", "type": "blob", "size": 400},
            ]},
        )

        entries = github.get_tree("myorg", "storefront", "main")

        assert [(e.path, e.type, e.size) for e in entries] == [("src", "tree", 0), ("src/app.py", "blob", 400)]
        assert routes.requests[0].url.params["recursive"] == "1"

    def test_file_content_decoded(self, routes, github):
        encoded = base64.b64encode("print('hi')\n".encode()).decode()
        routes.add(
            "GET", "/repos/myorg/storefront/contents/src/app.py",
            json_body={"encoding": "base64", "content": encoded},
        )

        assert github.get_file_content("myorg", "storefront", "src/app.py") == "print('hi')\n"

    def test_directory_and_missing_files(self, routes, github):
        routes.add("GET", "/repos/myorg/storefront/contents/src", json_body=[{"path": "src/app.py"}])

        assert github.get_file_content("myorg", "storefront", "src") is None
        assert github.get_file_content("myorg", "storefront", "missing.py") is None


class TestGetHostingService:
    def test_without_token_uses_null_service(self, settings):
        assert isinstance(get_hosting_service(settings), NullHostingService)

    def test_with_token(self, settings):
        settings.github_token = "ghp_test"

        service = get_hosting_service(settings)

        assert isinstance(service, GitHubHostingService)
        service.close()
