"""
Implementation trigger: hands approved solutions to the coding agent.

    Approved --assign agent--> InProgress   (implementation_status Pending)

At most ``implementation_max_concurrent`` sessions are Pending or Working at
any time.
"""

import logging
from datetime import datetime
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.models import DevRequestModel, SolutionProposalModel
from ..db.services import RequestService, ReviewService
from ..integrations.hosting import HostingService
from ..llm.schemas import SolutionResponse
from ..pipeline.enums import ImplementationStatus, RequestStatus
from ..pipeline.state_machine import set_tracking_status, transition
from .base import HostingWorker, repo_of

logger = logging.getLogger(__name__)

IMPLEMENTING_LABEL = "copilot:implementing"

GENERAL_GUIDANCE = (
    "- Follow existing code patterns and conventions in the repository",
    "- Run all existing tests and ensure they pass",
    "- Add tests for new functionality",
    "- Do not modify files outside the scope listed above unless absolutely necessary",
    "- Keep public interfaces backward compatible unless a breaking change is listed above",
)


def build_instructions(proposal: SolutionProposalModel) -> str:
    """Markdown instructions for the coding agent, rendered from an approved proposal."""
    lines = [
        "## Approved Solution",
        "",
        f"**Approach:** {proposal.solution_summary}",
        "",
        proposal.approach or "",
        "",
    ]

    solution: Optional[SolutionResponse] = None
    try:
        solution = SolutionResponse.model_validate(proposal.solution_json or {})
    except ValidationError as e:
        logger.warning(f"Failed to read solution JSON for proposal #{proposal.id}: {e}")

    if solution is not None:
        if solution.impacted_files:
            lines.append("## Files to Modify")
            lines += [
                f"- `{f.path}`: {f.description} ({f.action}, ~{f.estimated_lines_changed} lines)"
                for f in solution.impacted_files
            ]
            lines.append("")
        if solution.new_files:
            lines.append("## New Files to Create")
            lines += [f"- `{f.path}`: {f.description} (~{f.estimated_lines} lines)" for f in solution.new_files]
            lines.append("")
        if solution.data_migration.required:
            lines.append("## Data Migration")
            if solution.data_migration.description:
                lines.append(solution.data_migration.description)
            lines += [f"- {step}" for step in solution.data_migration.steps]
            lines.append("")
        if solution.breaking_changes:
            lines.append("## Breaking Changes")
            lines += [f"- {change}" for change in solution.breaking_changes]
            lines.append("")
        if solution.implementation_order:
            lines.append("## Implementation Order")
            lines += list(solution.implementation_order)
            lines.append("")
        if solution.dependency_changes:
            lines.append("## Dependency Changes")
            lines += [
                f"- **{d.package}** ({d.action}): v{d.version} - {d.reason}"
                for d in solution.dependency_changes
            ]
            lines.append("")
        if solution.risks:
            lines.append("## Risks & Considerations")
            lines += [f"- [{r.severity}] {r.description} | Mitigation: {r.mitigation}" for r in solution.risks]
            lines.append("")
        if solution.testing_notes:
            lines += ["## Testing Requirements", solution.testing_notes, ""]

    lines.append("## Important")
    lines += list(GENERAL_GUIDANCE)
    return "\n".join(lines) + "\n"


def session_id_for(request: DevRequestModel, now: datetime) -> str:
    return f"session-{request.id}-{now:%Y%m%d%H%M%S}"


class ImplementationWorker(HostingWorker):
    """Claims Approved requests up to the free session slots and assigns the agent."""

    name = "implementation"

    def __init__(
        self,
        hosting: HostingService,
        settings: Optional[Settings] = None,
        **kwargs,
    ):
        settings = settings or get_settings()
        kwargs.setdefault("interval_seconds", settings.implementation_interval_seconds)
        kwargs.setdefault("initial_delay_seconds", settings.implementation_initial_delay_seconds)
        kwargs.setdefault("batch_size", settings.implementation_max_concurrent)
        super().__init__(hosting, **kwargs)
        self.settings = settings

    def claim(self, db: Session, now: datetime, limit: int) -> List[DevRequestModel]:
        requests = RequestService(db)
        running = requests.count_running_implementations()
        slots = self.settings.implementation_max_concurrent - running
        if slots <= 0:
            self.logger.debug("capacity_full", running=running)
            return []
        return requests.claim_for_implementation(min(slots, limit))

    def handle(self, db: Session, request: DevRequestModel, now: datetime) -> None:
        log = self.logger.bind(request_id=request.id)

        proposal = ReviewService(db).latest_approved_proposal(request.id)
        if proposal is None:
            log.warning("prerequisite_missing", missing="approved_proposal")
            return
        target = repo_of(request)
        if target is None:
            log.warning("prerequisite_missing", missing="project")
            return
        owner, repo = target

        instructions = build_instructions(proposal)
        log.info("implementation_triggering", issue=request.issue_number, summary=proposal.solution_summary)
        self.hosting.assign_coding_agent(
            owner, repo, request.issue_number, instructions, self.settings.base_branch
        )

        transition(
            db,
            request,
            RequestStatus.IN_PROGRESS,
            actor_id=self.name,
            note=f"Coding agent assigned for proposal #{proposal.id}",
            now=now,
        )
        request.implementation_session_id = session_id_for(request, now)
        request.implementation_triggered_at = now
        set_tracking_status(
            db, request, "implementation_status", ImplementationStatus.PENDING, actor_id=self.name
        )
        db.commit()
        log.info("implementation_triggered", session_id=request.implementation_session_id)

        self.relabel(target, request.issue_number, add=[IMPLEMENTING_LABEL])
        self.notify(
            target,
            request.issue_number,
            "**Implementation triggered.** The coding agent is working on the approved solution.\n\n"
            f"**Session:** `{request.implementation_session_id}`\n"
            f"**Triggered at:** {now:%Y-%m-%d %H:%M:%S} UTC",
        )
