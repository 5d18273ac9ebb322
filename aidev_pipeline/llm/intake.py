"""
Intake review: the Product Owner triage of a new or clarified request.
"""

import logging
import time
from dataclasses import dataclass, field
from string import Template
from typing import List, Optional, Sequence

from ..pipeline.enums import IntakeDecision
from .client import ChatClient, ChatMessage, ImagePart
from .prompts import PRODUCT_OWNER, prompt_text
from .protocol import Parsed, parse_response
from .schemas import IntakeResponse

logger = logging.getLogger(__name__)

FALLBACK_QUESTION = (
    "The automated review encountered an issue. A human reviewer should assess this request."
)

_DECISIONS = {
    "approve": IntakeDecision.APPROVE,
    "reject": IntakeDecision.REJECT,
    "clarify": IntakeDecision.CLARIFY,
}


def _clamp(value: float, low: int, high: int) -> int:
    return max(low, min(high, int(round(value))))


def _val(value) -> str:
    return getattr(value, "value", value) or ""


@dataclass
class IntakeResult:
    """Outcome of one intake review, parsed or fallback."""

    decision: IntakeDecision
    reasoning: str
    alignment_score: int
    completeness_score: int
    sales_alignment_score: int
    clarification_questions: List[str] = field(default_factory=list)
    suggested_priority: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    is_duplicate: bool = False
    duplicate_of_request_id: Optional[int] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model_used: str = ""
    duration_ms: int = 0
    parsed: bool = True

    @classmethod
    def from_response(cls, response: IntakeResponse) -> "IntakeResult":
        return cls(
            decision=_DECISIONS.get(response.decision.strip().lower(), IntakeDecision.CLARIFY),
            reasoning=response.reasoning,
            alignment_score=_clamp(response.alignment_score, 0, 100),
            completeness_score=_clamp(response.completeness_score, 0, 100),
            sales_alignment_score=_clamp(response.sales_alignment_score, 0, 100),
            clarification_questions=list(response.clarification_questions),
            suggested_priority=response.suggested_priority,
            tags=list(response.tags),
            is_duplicate=response.is_duplicate,
            duplicate_of_request_id=response.duplicate_of_request_id,
        )

    @classmethod
    def fallback(cls, raw_text: str) -> "IntakeResult":
        """Unparseable reply: ask for clarification so a human looks at it."""
        return cls(
            decision=IntakeDecision.CLARIFY,
            reasoning=f"Agent response could not be parsed. Raw response: {raw_text[:500]}",
            alignment_score=50,
            completeness_score=50,
            sales_alignment_score=50,
            clarification_questions=[FALLBACK_QUESTION],
            parsed=False,
        )


def build_user_message(request, history=None, existing_requests=None) -> str:
    """Render the request, duplicate candidates and conversation for the model."""
    project = request.project.display_name if request.project is not None else "Unknown"
    parts = [
        "Review the following development request:",
        "",
        f"Title: {request.title}",
        f"Type: {_val(request.request_type)}",
        f"Priority: {_val(request.priority)}",
        f"Description: {request.description}",
        f"Project: {project}",
    ]
    if (request.steps_to_reproduce or "").strip():
        parts.append(f"Steps to Reproduce: {request.steps_to_reproduce}")
    if (request.expected_behavior or "").strip():
        parts.append(f"Expected Behavior: {request.expected_behavior}")
    if (request.actual_behavior or "").strip():
        parts.append(f"Actual Behavior: {request.actual_behavior}")
    parts.append(f"Submitted By: {request.submitted_by}")

    if existing_requests:
        parts.append("")
        parts.append("EXISTING REQUESTS (check for duplicates/already-implemented features):")
        for other in existing_requests:
            issue_ref = f" [Issue #{other.issue_number}]" if other.issue_number else ""
            description = other.description or ""
            if len(description) > 150:
                description = description[:150] + "..."
            parts.append(
                f"- Request #{other.id}{issue_ref}: [{_val(other.status)}] "
                f"[{_val(other.request_type)}] {other.title}: {description}"
            )

    if history:
        parts.append("")
        parts.append("CONVERSATION HISTORY:")
        for comment in history:
            source = "Agent" if comment.is_agent_comment else "Submitter"
            parts.append(f"[{source}] {comment.content}")

    return "\n".join(parts)


def build_comment(result: IntakeResult) -> str:
    """Markdown comment posted on the request and its linked issue."""
    lines = [
        f"**Product Owner Agent Review** | Decision: **{result.decision.value}**",
        "",
        result.reasoning,
        "",
        f"**Scores:** Alignment: {result.alignment_score}/100 | "
        f"Completeness: {result.completeness_score}/100 | "
        f"Sales Alignment: {result.sales_alignment_score}/100",
    ]
    if result.suggested_priority:
        lines.append(f"**Suggested Priority:** {result.suggested_priority}")
    if result.is_duplicate:
        lines.append("")
        if result.duplicate_of_request_id is not None:
            lines.append(
                "**Duplicate detected:** This request appears to duplicate "
                f"Request #{result.duplicate_of_request_id}."
            )
        else:
            lines.append(
                "**Duplicate detected:** This request appears to duplicate an existing "
                "request or already-implemented feature."
            )
    if result.tags:
        lines.append(f"**Tags:** {', '.join(result.tags)}")
    if result.clarification_questions:
        lines.append("")
        lines.append("**Questions that need to be addressed:**")
        lines.extend(f"- {q}" for q in result.clarification_questions)
    return "\n".join(lines)


class IntakeReviewer:
    """Runs the Product Owner prompt for one request."""

    def __init__(
        self,
        client: ChatClient,
        references,
        temperature: float = 0.3,
        max_tokens: int = 2000,
        prompts=None,
    ):
        self.client = client
        self.references = references
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.prompts = prompts

    def review(
        self,
        request,
        history=None,
        existing_requests=None,
        images: Optional[Sequence[ImagePart]] = None,
    ) -> IntakeResult:
        started = time.monotonic()
        system_prompt = Template(prompt_text(self.prompts, PRODUCT_OWNER)).safe_substitute(
            reference_context=self.references.system_prompt_context()
        )
        user_message = build_user_message(request, history, existing_requests)

        logger.info(f"Reviewing request #{request.id} '{request.title}' via {self.client.model}")
        completion = self.client.complete(
            [ChatMessage.system(system_prompt), ChatMessage.user(user_message, images)],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

        outcome = parse_response(completion.text, IntakeResponse)
        if isinstance(outcome, Parsed):
            result = IntakeResult.from_response(outcome.data)
        else:
            logger.warning(
                f"Failed to parse intake response for request #{request.id}, "
                f"defaulting to clarify: {outcome.error}"
            )
            result = IntakeResult.fallback(outcome.raw_text)

        result.prompt_tokens = completion.prompt_tokens
        result.completion_tokens = completion.completion_tokens
        result.model_used = completion.model or self.client.model
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Intake response for request #{request.id}: "
            f"{completion.total_tokens} tokens in {result.duration_ms}ms"
        )
        return result
