"""
Operator API for the AIDev Pipeline.
"""

from __future__ import annotations

import importlib.metadata
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .db.audit_service import AuditService
from .db.base import get_db, get_session_local, init_database, utcnow
from .db.models import DevRequestModel, IntakeVerdictModel, MergeReviewModel, ProjectModel, SolutionProposalModel
from .db.prompt_service import SystemPromptService
from .db.services import CommentService, RequestService
from .errors import BudgetExceededError, IllegalTransitionError, MissingPrerequisiteError, PipelineError
from .integrations.github import get_hosting_service
from .integrations.hosting import HostingService
from .log_config import configure_logging
from .pipeline import actions
from .pipeline.budget import BudgetGuard
from .pipeline.enums import RequestStatus
from .pipeline.monitoring import find_conflicts, find_stalled, health_summary
from .schemas import (
    CommentCreate,
    ProjectCreate,
    ProposalDecisionBody,
    RequestCreate,
    SystemPromptReset,
    SystemPromptUpdate,
)
from .workers.supervisor import Supervisor, build_supervisor

logger = structlog.get_logger()

# Set by the lifespan when API_START_WORKERS is enabled, or by tests
supervisor: Optional[Supervisor] = None
_hosting: Optional[HostingService] = None
_prompts: Optional[SystemPromptService] = None


def get_hosting() -> HostingService:
    global _hosting
    if _hosting is None:
        _hosting = get_hosting_service(get_settings())
    return _hosting


def get_prompt_service() -> SystemPromptService:
    global _prompts
    if _prompts is None:
        _prompts = SystemPromptService(cache_ttl_seconds=get_settings().system_prompt_cache_seconds)
    return _prompts


def _seed_prompts() -> None:
    db = get_session_local()()
    try:
        seeded = get_prompt_service().seed_defaults(db)
    finally:
        db.close()
    logger.info("system_prompts_seeded", rows=seeded)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = get_settings()
    configure_logging(settings)
    logger.info("api_starting", environment=settings.environment)

    try:
        init_database()
        logger.info("database_initialized")
        _seed_prompts()

        global supervisor
        if settings.api_start_workers:
            supervisor = build_supervisor(settings, hosting=get_hosting(), prompts=get_prompt_service())
            supervisor.start()
    except Exception as e:
        logger.error("api_start_failed", error=str(e))
        raise

    yield

    logger.info("api_stopping")
    if supervisor and supervisor.is_running:
        supervisor.stop()
    logger.info("api_stopped")


app = FastAPI(
    title="AIDev Pipeline",
    description="Operator API for the status-driven AI development pipeline",
    version=importlib.metadata.version("aidev-pipeline"),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_request(db: Session, request_id: int) -> DevRequestModel:
    request = RequestService(db).get_request(request_id)
    if not request:
        raise HTTPException(status_code=404, detail="Request not found")
    return request


def _pipeline_error(e: PipelineError) -> HTTPException:
    if isinstance(e, BudgetExceededError):
        return HTTPException(status_code=429, detail=str(e))
    if isinstance(e, MissingPrerequisiteError):
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=409, detail=str(e))


# Health and Info Endpoints
@app.get("/health", tags=["system"])
def health() -> dict:
    """Basic liveness check."""
    return {"status": "ok"}


@app.get("/version", tags=["system"])
def version() -> dict[str, str]:
    """Return the version of the application."""
    return {"version": importlib.metadata.version("aidev-pipeline")}


# Pipeline health
@app.get("/pipeline/health", tags=["pipeline"])
def pipeline_health(
    db: Session = Depends(get_db), settings: Settings = Depends(get_settings)
) -> Dict[str, Any]:
    """Stall, deployment, branch and conflict counts."""
    return health_summary(db, settings, utcnow())


@app.get("/pipeline/stalled", tags=["pipeline"])
def pipeline_stalled(
    db: Session = Depends(get_db), settings: Settings = Depends(get_settings)
) -> List[Dict[str, Any]]:
    """Every request currently past its stall threshold, notified or not."""
    return [s.to_dict() for s in find_stalled(db, settings, utcnow(), include_notified=True)]


@app.get("/pipeline/conflicts", tags=["pipeline"])
def pipeline_conflicts(db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    """Active implementations with overlapping declared files."""
    return [c.to_dict() for c in find_conflicts(db)]


@app.get("/pipeline/budget/{stage}", tags=["pipeline"])
def pipeline_budget(
    stage: str, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)
) -> Dict[str, Any]:
    """Token usage against the stage's daily and monthly caps."""
    try:
        guard = BudgetGuard.for_stage(stage, settings)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return dict(guard.usage(db, utcnow()).to_dict(), stage=stage)


@app.post("/pipeline/cache/reload", tags=["pipeline"])
def reload_caches() -> Dict[str, Any]:
    """Drop reference document, repository and reviewed-revision caches."""
    if not supervisor:
        raise HTTPException(status_code=503, detail="Workers are not running in this process")
    return {"status": "success", "caches": supervisor.reload_caches()}


# System prompts
@app.get("/system-prompts", tags=["prompts"])
def list_system_prompts(
    db: Session = Depends(get_db), prompts: SystemPromptService = Depends(get_prompt_service)
) -> List[Dict[str, Any]]:
    return [p.to_dict() for p in prompts.list_all(db)]


@app.get("/system-prompts/{key}", tags=["prompts"])
def get_system_prompt(
    key: str, db: Session = Depends(get_db), prompts: SystemPromptService = Depends(get_prompt_service)
) -> Dict[str, Any]:
    row = prompts.get_prompt(db, key)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Unknown system prompt: {key}")
    return row.to_dict()


@app.put("/system-prompts/{key}", tags=["prompts"])
def update_system_prompt(
    key: str,
    data: SystemPromptUpdate,
    db: Session = Depends(get_db),
    prompts: SystemPromptService = Depends(get_prompt_service),
) -> Dict[str, Any]:
    """Replace a stage's prompt. Takes effect on that stage's next model call."""
    row = prompts.update(db, key, data.prompt_text, data.updated_by)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Unknown system prompt: {key}")
    return row.to_dict()


@app.post("/system-prompts/{key}/reset", tags=["prompts"])
def reset_system_prompt(
    key: str,
    data: SystemPromptReset,
    db: Session = Depends(get_db),
    prompts: SystemPromptService = Depends(get_prompt_service),
) -> Dict[str, Any]:
    row = prompts.reset_to_default(db, key, data.updated_by)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Unknown system prompt: {key}")
    return row.to_dict()


# Projects
@app.post("/projects", status_code=201, tags=["projects"])
def create_project(data: ProjectCreate, db: Session = Depends(get_db)) -> Dict[str, Any]:
    if db.query(ProjectModel).filter(ProjectModel.name == data.name).first():
        raise HTTPException(status_code=409, detail=f"Project {data.name} already exists")
    return actions.create_project(db, data).to_dict()


@app.get("/projects", tags=["projects"])
def list_projects(db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    return [p.to_dict() for p in db.query(ProjectModel).order_by(ProjectModel.id.asc()).all()]


# Requests
@app.post("/requests", status_code=201, tags=["requests"])
def submit_request(
    data: RequestCreate,
    db: Session = Depends(get_db),
    hosting: HostingService = Depends(get_hosting),
) -> Dict[str, Any]:
    """Submit a new development request. It enters the pipeline as New."""
    try:
        request = actions.submit_request(db, hosting, data)
    except PipelineError as e:
        raise _pipeline_error(e)
    logger.info("request_submitted", request_id=request.id, issue=request.issue_number)
    return request.to_dict()


@app.get("/requests", tags=["requests"])
def list_requests(
    status: Optional[RequestStatus] = None,
    project_id: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
) -> List[Dict[str, Any]]:
    """List requests with optional filtering."""
    query = db.query(DevRequestModel)
    if status is not None:
        query = query.filter(DevRequestModel.status == status)
    if project_id is not None:
        query = query.filter(DevRequestModel.project_id == project_id)
    rows = query.order_by(DevRequestModel.created_at.desc()).offset(offset).limit(limit).all()
    return [r.to_dict() for r in rows]


@app.get("/requests/{request_id}", tags=["requests"])
def get_request(request_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    return _get_request(db, request_id).to_dict()


@app.get("/requests/{request_id}/comments", tags=["requests"])
def list_comments(request_id: int, db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    _get_request(db, request_id)
    return [c.to_dict() for c in CommentService(db).history(request_id)]


@app.post("/requests/{request_id}/comments", status_code=201, tags=["requests"])
def add_comment(
    request_id: int,
    data: CommentCreate,
    db: Session = Depends(get_db),
    hosting: HostingService = Depends(get_hosting),
) -> Dict[str, Any]:
    """Add a human reply; answers clarification questions and proposal feedback."""
    request = _get_request(db, request_id)
    return actions.add_human_comment(db, hosting, request, data.author, data.content).to_dict()


@app.get("/requests/{request_id}/reviews", tags=["requests"])
def list_reviews(request_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Every intake verdict, solution proposal and code review for a request."""
    _get_request(db, request_id)

    def rows(model):
        return [
            r.to_dict()
            for r in db.query(model).filter(model.request_id == request_id).order_by(model.id.asc()).all()
        ]

    return {
        "intake_verdicts": rows(IntakeVerdictModel),
        "solution_proposals": rows(SolutionProposalModel),
        "merge_reviews": rows(MergeReviewModel),
    }


@app.get("/requests/{request_id}/audit", tags=["requests"])
def request_audit(request_id: int, limit: int = 100, db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    _get_request(db, request_id)
    return [e.to_dict() for e in AuditService(db).query_by_entity("Request", request_id, limit=limit)]


# Human decisions
@app.post("/requests/{request_id}/proposal/approve", tags=["decisions"])
def approve_proposal(
    request_id: int,
    body: ProposalDecisionBody,
    db: Session = Depends(get_db),
    hosting: HostingService = Depends(get_hosting),
) -> Dict[str, Any]:
    request = _get_request(db, request_id)
    try:
        proposal = actions.approve_proposal(db, hosting, request, body.reviewer, body.feedback)
    except PipelineError as e:
        raise _pipeline_error(e)
    return {"status": "success", "request": request.to_dict(), "proposal": proposal.to_dict()}


@app.post("/requests/{request_id}/proposal/reject", tags=["decisions"])
def reject_proposal(
    request_id: int,
    body: ProposalDecisionBody,
    db: Session = Depends(get_db),
    hosting: HostingService = Depends(get_hosting),
) -> Dict[str, Any]:
    request = _get_request(db, request_id)
    try:
        proposal = actions.reject_proposal(db, hosting, request, body.reviewer, body.feedback)
    except PipelineError as e:
        raise _pipeline_error(e)
    return {"status": "success", "request": request.to_dict(), "proposal": proposal.to_dict()}


@app.post("/requests/{request_id}/proposal/revise", tags=["decisions"])
def request_revision(
    request_id: int,
    body: ProposalDecisionBody,
    db: Session = Depends(get_db),
    hosting: HostingService = Depends(get_hosting),
) -> Dict[str, Any]:
    request = _get_request(db, request_id)
    try:
        proposal = actions.request_revision(db, hosting, request, body.reviewer, body.feedback or "")
    except PipelineError as e:
        raise _pipeline_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "success", "request": request.to_dict(), "proposal": proposal.to_dict()}


# Operator actions
@app.post("/requests/{request_id}/deployment/retry", tags=["operations"])
def retry_deployment(
    request_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    """Move a Failed deployment back to Pending."""
    request = _get_request(db, request_id)
    try:
        actions.retry_deployment(db, request, settings.deployment_max_retries)
    except PipelineError as e:
        raise _pipeline_error(e)
    return {"status": "success", "request": request.to_dict()}


@app.post("/requests/{request_id}/implementation/reset", tags=["operations"])
def reset_implementation(
    request_id: int,
    db: Session = Depends(get_db),
    hosting: HostingService = Depends(get_hosting),
) -> Dict[str, Any]:
    """Return an InProgress request to Approved for a fresh agent session."""
    request = _get_request(db, request_id)
    try:
        actions.reset_implementation(db, hosting, request)
    except IllegalTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": "success", "request": request.to_dict()}


# Workers
@app.get("/workers", tags=["workers"])
def list_workers() -> Dict[str, Any]:
    """Supervisor status, when workers run in this process."""
    if not supervisor:
        raise HTTPException(status_code=503, detail="Workers are not running in this process")
    return supervisor.get_status()


@app.post("/workers/{name}/tick", tags=["workers"])
def tick_worker(name: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Run one cycle of a worker now.

    Refused with 429 when its stage is over budget and with 409 while the
    worker is already mid-cycle.
    """
    if not supervisor:
        raise HTTPException(status_code=503, detail="Workers are not running in this process")
    worker = supervisor.workers.get(name)
    if worker is None:
        raise HTTPException(status_code=404, detail="Worker not found")
    try:
        if worker.budget is not None:
            worker.budget.ensure_available(db, utcnow())
        handled = supervisor.tick(name)
    except PipelineError as e:
        raise _pipeline_error(e)
    return {"status": "success", "worker": name, "handled": handled}


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
