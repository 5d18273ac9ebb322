"""
Tests for the chat client retry loop and the three model-driven stage services.
"""

from types import SimpleNamespace

import pytest

from aidev_pipeline.llm.architect import SolutionArchitect, build_comment as build_solution_comment
from aidev_pipeline.llm.client import (
    ChatClient,
    ChatMessage,
    Completion,
    ImagePart,
    build_image_parts,
)
from aidev_pipeline.llm.code_review import DIFF_MARKER, CodeReviewer, CodeReviewResult, build_user_message
from aidev_pipeline.llm.intake import FALLBACK_QUESTION, IntakeResult, IntakeReviewer, build_comment
from aidev_pipeline.pipeline.enums import IntakeDecision, MergeDecision, RequestType

from tests.conftest import NOW
from tests.fakes import (
    FakeChatClient,
    make_comment,
    make_project,
    make_proposal,
    make_request,
    make_verdict,
    solution_json,
)


class StaticReferences:
    def system_prompt_context(self):
        return "=== ApplicationObjectives.md ===\nSell more."


class FlakyClient(ChatClient):
    """Fails ``failures`` times with a retryable error, then answers."""

    RETRYABLE_ERRORS = (ConnectionError,)

    def __init__(self, failures):
        self.sleeps = []
        super().__init__("flaky-model", sleep=self.sleeps.append)
        self.failures = failures
        self.attempts = 0

    def _call_api(self, messages, temperature, max_tokens):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("connection reset")
        return Completion(text="ok", prompt_tokens=1, completion_tokens=1, model=self.model)


class TestChatClient:
    """Retry with exponential backoff lives in the base class."""

    def test_retries_then_succeeds(self):
        client = FlakyClient(failures=2)

        completion = client.complete([ChatMessage.user("hi")], temperature=0, max_tokens=10)

        assert completion.text == "ok"
        assert client.attempts == 3
        assert client.sleeps == [1, 2]

    def test_gives_up_after_max_retries(self):
        client = FlakyClient(failures=5)

        with pytest.raises(ConnectionError):
            client.complete([ChatMessage.user("hi")], temperature=0, max_tokens=10)

        assert client.attempts == 3

    def test_non_retryable_errors_propagate_immediately(self):
        class Broken(FlakyClient):
            def _call_api(self, messages, temperature, max_tokens):
                self.attempts += 1
                raise KeyError("bad")

        client = Broken(failures=0)

        with pytest.raises(KeyError):
            client.complete([ChatMessage.user("hi")], temperature=0, max_tokens=10)
        assert client.attempts == 1

    def test_user_message_with_images(self):
        message = ChatMessage.user("look", [ImagePart(data=b"png", media_type="image/png")])

        assert isinstance(message.content, list)
        assert message.text == "look"


class TestBuildImageParts:
    def test_loads_images_and_skips_the_rest(self, tmp_path):
        (tmp_path / "shot.png").write_bytes(b"\x89PNG")
        (tmp_path / "big.png").write_bytes(b"x" * 100)
        attachments = [
            SimpleNamespace(file_name="shot.png", content_type="image/png", stored_path="shot.png"),
            SimpleNamespace(file_name="notes.txt", content_type="text/plain", stored_path="notes.txt"),
            SimpleNamespace(file_name="gone.png", content_type="image/png", stored_path="gone.png"),
            SimpleNamespace(file_name="big.png", content_type="image/png", stored_path="big.png"),
        ]

        parts = build_image_parts(attachments, str(tmp_path), max_bytes=50)

        assert [p.file_name for p in parts] == ["shot.png"]
        assert parts[0].data == b"\x89PNG"


class TestIntakeReviewer:
    """Parsed replies map onto a verdict; unparseable ones fall back to Clarify."""

    def test_parsed_reply(self, db_session):
        request = make_request(db_session, make_project(db_session))
        client = FakeChatClient(
            [
                {
                    "decision": "approve",
                    "reasoning": "Clear and aligned.",
                    "alignmentScore": 120,
                    "completenessScore": 72.6,
                    "salesAlignmentScore": -4,
                    "tags": ["export"],
                    "suggestedPriority": "High",
                }
            ],
            prompt_tokens=900,
            completion_tokens=120,
        )

        result = IntakeReviewer(client, StaticReferences()).review(request)

        assert result.parsed
        assert result.decision == IntakeDecision.APPROVE
        assert result.alignment_score == 100
        assert result.completeness_score == 73
        assert result.sales_alignment_score == 0
        assert result.prompt_tokens == 900
        assert result.completion_tokens == 120
        assert result.model_used == "fake-model"
        system, user = client.calls[0]["messages"]
        assert "Sell more." in system.text
        assert "Title: Export orders as CSV" in user.text
        assert "Project: Storefront" in user.text

    def test_unknown_decision_means_clarify(self, db_session):
        request = make_request(db_session)
        client = FakeChatClient([{"decision": "maybe", "reasoning": "Unsure"}])

        result = IntakeReviewer(client, StaticReferences()).review(request)

        assert result.decision == IntakeDecision.CLARIFY

    def test_malformed_reply_falls_back(self, db_session):
        request = make_request(db_session)
        client = FakeChatClient(["Sure! I would approve this request."])

        result = IntakeReviewer(client, StaticReferences()).review(request)

        assert not result.parsed
        assert result.decision == IntakeDecision.CLARIFY
        assert "Sure! I would approve this request." in result.reasoning
        assert result.clarification_questions == [FALLBACK_QUESTION]
        assert (result.alignment_score, result.completeness_score, result.sales_alignment_score) == (50, 50, 50)

    def test_history_and_duplicates_in_message(self, db_session):
        project = make_project(db_session)
        other = make_request(db_session, project, title="CSV export for orders")
        request = make_request(db_session, project, request_type=RequestType.BUG, steps_to_reproduce="Click export")
        make_comment(db_session, request, "Which format?", NOW, is_agent_comment=True)
        make_comment(db_session, request, "CSV with headers", NOW)
        client = FakeChatClient([{"decision": "Clarify", "reasoning": "Need more"}])

        IntakeReviewer(client, StaticReferences()).review(request, request.comments, [other])

        user = client.calls[0]["messages"][1].text
        assert f"Request #{other.id} [Issue #42]" in user
        assert "[Agent] Which format?" in user
        assert "[Submitter] CSV with headers" in user
        assert "Steps to Reproduce: Click export" in user

    def test_comment_lists_questions_and_duplicate(self):
        result = IntakeResult(
            decision=IntakeDecision.CLARIFY,
            reasoning="Missing detail.",
            alignment_score=60,
            completeness_score=30,
            sales_alignment_score=40,
            clarification_questions=["Which columns?"],
            is_duplicate=True,
            duplicate_of_request_id=3,
        )

        comment = build_comment(result)

        assert "Decision: **Clarify**" in comment
        assert "Request #3" in comment
        assert "- Which columns?" in comment
        assert "\u2014" not in comment


class TestSolutionArchitect:
    """File selection, optional extra selection, then the solution."""

    def _architect(self, client, **kwargs):
        return SolutionArchitect(client, StaticReferences(), **kwargs)

    def test_three_step_round_trip(self, db_session):
        request = make_request(db_session, make_project(db_session), status="Triaged")
        verdict = make_verdict(db_session, request, NOW)
        client = FakeChatClient(
            [
                ["src/orders/export.py"],
                ["src/orders/models.py", "src/orders/export.py"],
                solution_json(),
            ]
        )
        reads = []

        def read_files(paths):
            reads.append(list(paths))
            return {p: f"# {p}" for p in paths}

        result = self._architect(client).analyse(request, verdict, "PROJECT STRUCTURE:\n", read_files)

        assert result.parsed
        assert len(client.calls) == 3
        assert reads == [["src/orders/export.py"], ["src/orders/models.py"]]
        assert result.files_read == ["src/orders/export.py", "src/orders/models.py"]
        assert result.step1_prompt_tokens == 200
        assert result.step1_completion_tokens == 100
        assert result.step2_prompt_tokens == 100
        assert result.total_tokens == 450
        assert result.solution.impacted_files[0].path == "src/orders/export.py"
        assert result.solution_json()["solutionSummary"] == "Add a CSV export endpoint"
        system = client.calls[2]["messages"][0].text
        assert "=== src/orders/models.py ===" in system

    def test_skips_extra_selection_without_contents(self, db_session):
        request = make_request(db_session, status="Triaged")
        client = FakeChatClient([["missing.py"], solution_json()])

        result = self._architect(client).analyse(request, None, "map", lambda paths: {})

        assert len(client.calls) == 2
        assert result.parsed

    def test_file_selection_capped(self, db_session):
        request = make_request(db_session, status="Triaged")
        client = FakeChatClient([["a.py", "b.py", "c.py"], solution_json()])

        result = self._architect(client, max_files_to_read=2).analyse(
            request, None, "map", lambda paths: {p: "x" for p in paths}
        )

        assert result.files_read == ["a.py", "b.py"]
        assert len(client.calls) == 2

    def test_malformed_solution_falls_back(self, db_session):
        request = make_request(db_session, status="Triaged")
        client = FakeChatClient(["not json", "Here is my design: rewrite everything."])

        result = self._architect(client).analyse(request, None, "map", lambda paths: {})

        assert not result.parsed
        assert result.files_read == []
        assert result.solution.solution_summary == "Agent response could not be parsed."
        assert "rewrite everything" in result.solution.approach
        assert result.solution.risks[0].severity == "high"

    def test_revision_message_leads_with_feedback(self, db_session):
        request = make_request(db_session, status="ArchitectReview")
        make_comment(db_session, request, "Previous design", NOW, is_agent_comment=True, author="Architect Agent")
        make_comment(db_session, request, "Reuse the report writer", NOW)
        client = FakeChatClient([[], solution_json()])

        self._architect(client).analyse(request, None, "map", lambda paths: {}, history=request.comments)

        user = client.calls[1]["messages"][1].text
        assert user.startswith("=" * 58 + "\nTHIS IS A REVISION.")
        assert ">> Reuse the report writer" in user
        assert "Previous design" in user

    def test_context_fits_input_budget(self, db_session):
        request = make_request(db_session, status="Triaged")
        client = FakeChatClient([["big.py"], [], solution_json()])

        self._architect(client, max_input_tokens=2000).analyse(
            request, None, "m" * 50000, lambda paths: {p: "x" * 50000 for p in paths}
        )

        system = client.calls[2]["messages"][0].text
        assert len(system) < 2000 * 4 + 1000
        assert "[...truncated]" in system

    def test_comment_rendering(self, db_session):
        request = make_request(db_session, status="Triaged")
        client = FakeChatClient([[], solution_json()])
        result = self._architect(client).analyse(request, None, "map", lambda paths: {})

        comment = build_solution_comment(result, 12)

        assert "**Summary:** Add a CSV export endpoint" in comment
        assert "`src/orders/csv_writer.py`" in comment
        assert "Review #12" in comment
        assert "- [medium] Large exports | Mitigation: Stream rows" in comment
        assert "\u2014" not in comment


class TestCodeReviewer:
    def test_parsed_reply_clamps_score(self, db_session):
        request = make_request(db_session, status="InProgress")
        proposal = make_proposal(db_session, request, NOW)
        client = FakeChatClient(
            [{"decision": "Approved", "summary": "Good", "qualityScore": 15, "securityPass": True}]
        )

        result = CodeReviewer(client).review(request, proposal, "diff --git a/x b/x", 1, 10, 2)

        assert result.approved
        assert result.quality_score == 10
        assert result.security_pass
        assert result.prompt_tokens == 100

    def test_changes_requested(self, db_session):
        request = make_request(db_session, status="InProgress")
        proposal = make_proposal(db_session, request, NOW)
        client = FakeChatClient([{"decision": "ChangesRequested", "summary": "Missing tests", "qualityScore": 0}])

        result = CodeReviewer(client).review(request, proposal, "diff")

        assert result.decision == MergeDecision.CHANGES_REQUESTED
        assert result.quality_score == 1

    def test_fallback_reads_free_text(self):
        approved = CodeReviewResult.fallback("Overall this is Approved.")
        rejected = CodeReviewResult.fallback("Decision: ChangesRequested, not approved yet")

        assert approved.approved and approved.quality_score == 7
        assert not approved.parsed
        assert not rejected.approved and rejected.quality_score == 4

    def test_malformed_reply_uses_fallback(self, db_session):
        request = make_request(db_session, status="InProgress")
        proposal = make_proposal(db_session, request, NOW)
        client = FakeChatClient(["LGTM, approved"])

        result = CodeReviewer(client).review(request, proposal, "diff")

        assert not result.parsed
        assert result.approved
        assert "LGTM, approved" in result.summary

    def test_message_truncates_large_diff(self, db_session):
        request = make_request(db_session, status="InProgress")
        proposal = make_proposal(db_session, request, NOW)

        message = build_user_message(request, proposal, "+" * 10000, 3, 100, 5, max_input_chars=1000)

        assert DIFF_MARKER in message
        assert "(3 files changed, +100 -5)" in message
        assert message.count("+") < 1000
