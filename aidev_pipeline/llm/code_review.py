"""
Automated code review of a pull request diff against the approved solution.
"""

import json
import logging
import time
from dataclasses import dataclass

from ..pipeline.enums import MergeDecision
from .client import ChatClient, ChatMessage
from .prompts import CODE_REVIEW, prompt_text
from .protocol import CHARS_PER_TOKEN, Parsed, parse_response
from .schemas import CodeReviewResponse

logger = logging.getLogger(__name__)

SOLUTION_SHARE = 0.4
DIFF_SHARE = 0.6
SOLUTION_MARKER = "\n... [truncated]"
DIFF_MARKER = "... [diff truncated due to size]"
UNPARSED_NOTE = "Could not parse structured response"


@dataclass
class CodeReviewResult:
    decision: MergeDecision
    summary: str
    design_compliance: bool
    design_compliance_notes: str
    security_pass: bool
    security_notes: str
    coding_standards_pass: bool
    coding_standards_notes: str
    quality_score: int
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model_used: str = ""
    duration_ms: int = 0
    parsed: bool = True

    @property
    def approved(self) -> bool:
        return self.decision == MergeDecision.APPROVED

    @classmethod
    def from_response(cls, response: CodeReviewResponse) -> "CodeReviewResult":
        approved = response.decision.strip().lower() == "approved"
        return cls(
            decision=MergeDecision.APPROVED if approved else MergeDecision.CHANGES_REQUESTED,
            summary=response.summary,
            design_compliance=response.design_compliance,
            design_compliance_notes=response.design_compliance_notes,
            security_pass=response.security_pass,
            security_notes=response.security_notes,
            coding_standards_pass=response.coding_standards_pass,
            coding_standards_notes=response.coding_standards_notes,
            quality_score=max(1, min(10, int(round(response.quality_score)))),
        )

    @classmethod
    def fallback(cls, raw_text: str) -> "CodeReviewResult":
        """Best guess from free text when the JSON could not be parsed."""
        lowered = raw_text.lower()
        approved = "approved" in lowered and "changesrequested" not in lowered
        return cls(
            decision=MergeDecision.APPROVED if approved else MergeDecision.CHANGES_REQUESTED,
            summary=f"LLM response could not be parsed. Raw excerpt: {raw_text[:300]}",
            design_compliance=approved,
            design_compliance_notes=UNPARSED_NOTE,
            security_pass=approved,
            security_notes=UNPARSED_NOTE,
            coding_standards_pass=approved,
            coding_standards_notes=UNPARSED_NOTE,
            quality_score=7 if approved else 4,
            parsed=False,
        )


def build_user_message(
    request,
    proposal,
    diff: str,
    files_changed: int,
    lines_added: int,
    lines_removed: int,
    max_input_chars: int,
) -> str:
    """Request summary, approved solution (40%) and diff (60%) within ``max_input_chars``."""
    solution_budget = int(max_input_chars * SOLUTION_SHARE)
    diff_budget = int(max_input_chars * DIFF_SHARE)

    solution = (
        "## Approved Solution\n"
        f"**Summary:** {proposal.solution_summary}\n"
        f"**Approach:** {proposal.approach}\n"
        f"**Complexity:** {proposal.estimated_complexity}\n"
        "**Solution Details:**\n"
        f"{json.dumps(proposal.solution_json or {})}"
    )
    if len(solution) > solution_budget:
        solution = solution[:solution_budget] + SOLUTION_MARKER

    lines = [
        "## Request Being Implemented",
        f"**Title:** {request.title}",
        f"**Description:** {request.description}",
        "",
        solution,
        "",
        f"## Pull Request Diff ({files_changed} files changed, +{lines_added} -{lines_removed})",
    ]
    if len(diff) > diff_budget:
        lines.append(diff[:diff_budget])
        lines.append(DIFF_MARKER)
    else:
        lines.append(diff)
    return "\n".join(lines) + "\n"


class CodeReviewer:
    """Runs the code-review prompt for one pull request revision."""

    def __init__(
        self,
        client: ChatClient,
        temperature: float = 0.2,
        max_tokens: int = 2000,
        max_input_tokens: int = 6000,
        prompts=None,
    ):
        self.client = client
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_input_chars = max_input_tokens * CHARS_PER_TOKEN
        self.prompts = prompts

    def review(
        self,
        request,
        proposal,
        diff: str,
        files_changed: int = 0,
        lines_added: int = 0,
        lines_removed: int = 0,
    ) -> CodeReviewResult:
        started = time.monotonic()
        user_message = build_user_message(
            request, proposal, diff, files_changed, lines_added, lines_removed, self.max_input_chars
        )
        logger.info(f"Code review call: {len(user_message)} chars input, model={self.client.model}")
        completion = self.client.complete(
            [ChatMessage.system(prompt_text(self.prompts, CODE_REVIEW)), ChatMessage.user(user_message)],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

        outcome = parse_response(completion.text, CodeReviewResponse)
        if isinstance(outcome, Parsed):
            result = CodeReviewResult.from_response(outcome.data)
        else:
            logger.warning(f"Failed to parse code review response: {outcome.raw_text[:500]}")
            result = CodeReviewResult.fallback((outcome.raw_text or "").strip())

        result.prompt_tokens = completion.prompt_tokens
        result.completion_tokens = completion.completion_tokens
        result.model_used = completion.model or self.client.model
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Code review response: {completion.total_tokens} tokens in {result.duration_ms}ms, "
            f"decision={result.decision.value}, score={result.quality_score}"
        )
        return result
