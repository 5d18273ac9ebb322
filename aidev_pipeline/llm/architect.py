"""
Solution architecture: a two-step LLM round trip.

    step 1   pick files to read from the repository map
    step 1b  optionally ask for more files after seeing previews
    step 2   design the solution from reference docs, map and file contents

Step 2 context is fitted to ``max_input_tokens`` with ``allocate_context``
(40% reference documents, 20% repository map, 40% file contents).
"""

import logging
import time
from dataclasses import dataclass, field
from string import Template
from typing import Callable, Dict, List, Optional, Sequence

from ..pipeline.enums import IntakeDecision
from .client import ChatClient, ChatMessage, ImagePart
from .prompts import (
    ARCHITECT_FILE_SELECTION,
    ARCHITECT_SOLUTION,
    SOLUTION_PLACEHOLDER_CHARS,
    prompt_text,
)
from .protocol import (
    ContextBlock,
    Parsed,
    allocate_context,
    input_char_budget,
    parse_response,
)
from .schemas import Risk, SolutionResponse

logger = logging.getLogger(__name__)

FILE_SELECTION_MAX_TOKENS = 1000
FALLBACK_QUESTION = (
    "The automated analysis encountered an issue. A human architect should review this request."
)

FileReader = Callable[[List[str]], Dict[str, str]]


def _val(value) -> str:
    return getattr(value, "value", value) or ""


def _cut(text: str, limit: int, marker: str) -> str:
    return text[:limit] + marker if len(text) > limit else text


@dataclass
class SolutionResult:
    """A solution proposal plus the accounting for both steps."""

    solution: SolutionResponse
    files_read: List[str] = field(default_factory=list)
    step1_prompt_tokens: int = 0
    step1_completion_tokens: int = 0
    step2_prompt_tokens: int = 0
    step2_completion_tokens: int = 0
    model_used: str = ""
    duration_ms: int = 0
    parsed: bool = True

    @property
    def total_tokens(self) -> int:
        return (
            self.step1_prompt_tokens
            + self.step1_completion_tokens
            + self.step2_prompt_tokens
            + self.step2_completion_tokens
        )

    def solution_json(self) -> dict:
        """The proposal as stored: camelCase keys, same shape the model returns."""
        return self.solution.model_dump(by_alias=True)

    @staticmethod
    def fallback_solution(raw_text: str) -> SolutionResponse:
        return SolutionResponse(
            solution_summary="Agent response could not be parsed.",
            approach=f"Raw response: {raw_text[:1000]}",
            risks=[
                Risk(
                    description="Agent response was unparseable",
                    severity="high",
                    mitigation="Human review required",
                )
            ],
            estimated_complexity="unknown",
            estimated_effort="unknown",
            clarification_questions=[FALLBACK_QUESTION],
        )


def _request_lines(request, with_priority: bool = False) -> List[str]:
    lines = [
        f"Title: {request.title}",
        f"Type: {_val(request.request_type)}",
    ]
    if with_priority:
        lines.append(f"Priority: {_val(request.priority)}")
    lines.append(f"Description: {request.description}")
    if (request.steps_to_reproduce or "").strip():
        lines.append(f"Steps to Reproduce: {request.steps_to_reproduce}")
    if (request.expected_behavior or "").strip():
        lines.append(f"Expected Behavior: {request.expected_behavior}")
    if (request.actual_behavior or "").strip():
        lines.append(f"Actual Behavior: {request.actual_behavior}")
    return lines


def build_file_selection_message(request, repository_map: str, history=None) -> str:
    lines = ["DEVELOPMENT REQUEST:"]
    lines += _request_lines(request)
    lines += ["", "REPOSITORY MAP:", repository_map]

    if history:
        lines.append("")
        human = [c for c in history if not c.is_agent_comment]
        if human:
            lines.append("HUMAN FEEDBACK (select files relevant to these points):")
            lines += [f"  >> {c.content}" for c in human]
        else:
            lines.append("PRIOR CONVERSATION:")
            for comment in history:
                source = "Agent" if comment.is_agent_comment else "Human"
                text = comment.content
                if comment.is_agent_comment:
                    text = _cut(text, 300, "...")
                lines.append(f"[{source}] {text}")
    return "\n".join(lines) + "\n"


def build_additional_files_message(
    request,
    repository_map: str,
    file_contents: Dict[str, str],
    already_selected: Sequence[str],
    remaining: int,
) -> str:
    lines = ["DEVELOPMENT REQUEST:"]
    lines += _request_lines(request)[:3]
    lines += ["", "REPOSITORY MAP:", repository_map, "", "FILES ALREADY SELECTED AND READ:"]
    lines += [f"  - {path}" for path in already_selected]
    lines += ["", "CONTENTS OF SELECTED FILES (summary of what was found):"]
    for path in sorted(file_contents):
        lines.append(f"=== {path} ===")
        lines.append(_cut(file_contents[path], 500, "\n[...truncated]"))
        lines.append("")
    lines += [
        "",
        "TASK: Based on the code you've now read, do you need any ADDITIONAL files "
        "to design a complete solution?",
        f"You can select up to {remaining} more files.",
        "Look for:",
        "- Modules, classes or functions referenced in the code you've read but not yet selected",
        "- Configuration files if the code references configuration",
        "- Related components or models that would be impacted",
        "- Style files if UI components reference them",
        "",
        "Return ONLY a JSON array of additional file paths (NOT files already selected).",
        "If no additional files are needed, return an empty array: []",
    ]
    return "\n".join(lines) + "\n"


def build_solution_message(request, history=None, attachments=None) -> str:
    """User message for step 2. Human feedback leads when this is a revision."""
    history = history or []
    human = [c for c in history if not c.is_agent_comment]
    agent = [c for c in history if c.is_agent_comment]
    rule = "=" * 58
    lines: List[str] = []

    if human:
        lines += [
            rule,
            "THIS IS A REVISION. The human has reviewed your previous",
            "proposal and provided feedback. You MUST substantially",
            "change your design to address EVERY point below.",
            "DO NOT repeat the same solution. Improve it.",
            rule,
            "",
            "HUMAN FEEDBACK (ADDRESS EVERY POINT):",
        ]
        lines += [f"  >> {c.content}" for c in human]
        lines += [
            "",
            "Your 'feedbackResponse' field MUST directly answer each point above,",
            "explaining what you changed and why.",
            rule,
            "",
        ]
        if agent:
            lines.append("YOUR PREVIOUS PROPOSAL (to revise, do NOT copy this unchanged):")
            lines.append(_cut(agent[-1].content, 2000, "\n[...truncated]"))
            lines.append("")
    else:
        lines.append("Design a technical solution for the following request:")

    lines.append("")
    lines += _request_lines(request, with_priority=True)

    images = [a for a in attachments or [] if a.is_image]
    if images:
        staging = f"_temp-attachments/{request.id}/"
        lines += [
            "",
            "ATTACHMENTS:",
            f"Image files for this request are staged in `{staging}` in the repository.",
        ]
        lines += [
            f"- `{staging}{a.file_name}` ({a.content_type}, {a.size_bytes:,} bytes)" for a in images
        ]
        lines += [
            "These files are available for the implementation agent to move into the project.",
            "Your solution MUST include instructions to move them to the correct location "
            "and delete the `_temp-attachments/` folder.",
        ]

    if not human and agent:
        lines += ["", "PRIOR PROPOSALS (summaries of previous architect solutions):"]
        lines += [f"[Prior Proposal] {_cut(c.content, 500, '...')}" for c in agent]

    return "\n".join(lines) + "\n"


def build_file_contents_block(file_contents: Dict[str, str]) -> str:
    if not file_contents:
        return "(No files could be read)"
    return "".join(f"=== {path} ===\n{file_contents[path]}\n\n" for path in sorted(file_contents))


def build_comment(result: SolutionResult, proposal_id: Optional[int] = None) -> str:
    """Markdown rendering of a proposal for the request timeline and issue."""
    s = result.solution
    lines = [
        "**Architect Agent Solution Proposal**",
        "",
        f"**Summary:** {s.solution_summary}",
        "",
        f"**Approach:** {s.approach}",
        "",
        f"**Complexity:** {s.estimated_complexity} | **Effort:** {s.estimated_effort}",
        "",
    ]
    if s.impacted_files:
        lines.append("**Impacted Files:**")
        lines += [
            f"- `{f.path}` ({f.action}, ~{f.estimated_lines_changed} lines): {f.description}"
            for f in s.impacted_files
        ]
        lines.append("")
    if s.new_files:
        lines.append("**New Files:**")
        lines += [f"- `{f.path}` (~{f.estimated_lines} lines): {f.description}" for f in s.new_files]
        lines.append("")
    if s.data_migration.required:
        lines.append(f"**Data Migration Required:** {s.data_migration.description}")
        lines += [f"  - {step}" for step in s.data_migration.steps]
        lines.append("")
    if s.breaking_changes:
        lines.append("**Breaking Changes:**")
        lines += [f"- {change}" for change in s.breaking_changes]
        lines.append("")
    if s.risks:
        lines.append("**Risks:**")
        lines += [f"- [{r.severity}] {r.description} | Mitigation: {r.mitigation}" for r in s.risks]
        lines.append("")
    if s.implementation_order:
        lines.append("**Implementation Order:**")
        lines += [f"  {step}" for step in s.implementation_order]
        lines.append("")
    if s.clarification_questions:
        lines.append("**Clarification Questions:**")
        lines += [f"- {q}" for q in s.clarification_questions]
        lines.append("")
    lines.append("---")
    lines.append(
        f"*Files analysed: {len(result.files_read)} | Tokens: {result.total_tokens} | "
        f"Model: {result.model_used} | Duration: {result.duration_ms}ms | "
        f"Review #{proposal_id if proposal_id is not None else '-'}*"
    )
    return "\n".join(lines)


class SolutionArchitect:
    """Runs the file-selection and solution-proposal prompts for one request."""

    def __init__(
        self,
        client: ChatClient,
        references,
        temperature: float = 0.3,
        max_tokens: int = 4000,
        max_files_to_read: int = 20,
        max_input_tokens: int = 6000,
        prompts=None,
    ):
        self.client = client
        self.references = references
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_files_to_read = max_files_to_read
        self.max_input_tokens = max_input_tokens
        self.prompts = prompts

    def _select_files(self, system_prompt: str, user_message: str, limit: int):
        completion = self.client.complete(
            [ChatMessage.system(system_prompt), ChatMessage.user(user_message)],
            temperature=self.temperature,
            max_tokens=FILE_SELECTION_MAX_TOKENS,
        )
        outcome = parse_response(completion.text, List[str])
        if isinstance(outcome, Parsed):
            files = [f for f in outcome.data if f and f.strip()][:limit]
        else:
            logger.warning(f"Failed to parse file selection response: {outcome.raw_text[:500]}")
            files = []
        return files, completion

    def analyse(
        self,
        request,
        intake_verdict,
        repository_map: str,
        read_files: FileReader,
        history=None,
        attachments=None,
        images: Optional[Sequence[ImagePart]] = None,
    ) -> SolutionResult:
        started = time.monotonic()

        logger.info(f"Architect step 1 (file selection) for request #{request.id} '{request.title}'")
        selection_prompt = Template(prompt_text(self.prompts, ARCHITECT_FILE_SELECTION)).safe_substitute(
            max_files=self.max_files_to_read
        )
        selected, step1 = self._select_files(
            selection_prompt,
            build_file_selection_message(request, repository_map, history),
            self.max_files_to_read,
        )
        step1_prompt = step1.prompt_tokens
        step1_completion = step1.completion_tokens
        logger.info(f"Architect step 1 selected {len(selected)} files, {step1.total_tokens} tokens")

        contents = dict(read_files(selected)) if selected else {}
        logger.info(f"Fetched {len(contents)}/{len(selected)} files from repository")

        if contents and len(selected) < self.max_files_to_read:
            remaining = self.max_files_to_read - len(selected)
            try:
                more, step1b = self._select_files(
                    selection_prompt,
                    build_additional_files_message(request, repository_map, contents, selected, remaining),
                    self.max_files_to_read,
                )
                step1_prompt += step1b.prompt_tokens
                step1_completion += step1b.completion_tokens
                known = {p.lower() for p in selected}
                extra = [p for p in more if p.lower() not in known][:remaining]
                if extra:
                    logger.info(f"Architect step 1b requesting {len(extra)} additional files: {', '.join(extra)}")
                    contents.update(read_files(extra))
                    selected.extend(extra)
                else:
                    logger.info("Architect step 1b: no additional files needed")
            except Exception as e:
                logger.warning(f"Architect step 1b failed, continuing with initial selection: {e}")

        logger.info(f"Architect step 2 (solution proposal) for request #{request.id}")
        solution_template = prompt_text(self.prompts, ARCHITECT_SOLUTION)
        user_message = build_solution_message(request, history, attachments)
        image_count = len(images or [])
        available = input_char_budget(
            self.max_input_tokens,
            solution_template,
            user_message,
            image_count=image_count,
            placeholder_chars=SOLUTION_PLACEHOLDER_CHARS,
        )
        context = allocate_context(
            [
                ContextBlock("reference", self.references.system_prompt_context(), share=0.4, priority=1),
                ContextBlock("repository_map", repository_map, share=0.2, priority=0),
                ContextBlock("file_contents", build_file_contents_block(contents), share=0.4, priority=2),
            ],
            available,
        )
        if context.truncated:
            logger.info(f"Step 2 context truncated to fit {available} chars: {', '.join(context.truncated)}")

        system_prompt = Template(solution_template).safe_substitute(
            reference_context=context["reference"],
            repository_map=context["repository_map"],
            file_contents=context["file_contents"],
            po_decision=_val(intake_verdict.decision) if intake_verdict else IntakeDecision.APPROVE.value,
            po_reasoning=intake_verdict.reasoning if intake_verdict else "",
            alignment_score=intake_verdict.alignment_score if intake_verdict else 0,
            completeness_score=intake_verdict.completeness_score if intake_verdict else 0,
        )
        step2 = self.client.complete(
            [ChatMessage.system(system_prompt), ChatMessage.user(user_message, images)],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

        outcome = parse_response(step2.text, SolutionResponse)
        if isinstance(outcome, Parsed):
            solution, parsed = outcome.data, True
        else:
            logger.warning(f"Failed to parse solution response: {outcome.raw_text[:500]}")
            solution, parsed = SolutionResult.fallback_solution(outcome.raw_text), False

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Architect step 2 complete: {step2.total_tokens} tokens, {duration_ms}ms total")
        return SolutionResult(
            solution=solution,
            files_read=selected,
            step1_prompt_tokens=step1_prompt,
            step1_completion_tokens=step1_completion,
            step2_prompt_tokens=step2.prompt_tokens,
            step2_completion_tokens=step2.completion_tokens,
            model_used=step2.model or self.client.model,
            duration_ms=duration_ms,
            parsed=parsed,
        )
