"""
Worker supervisor: one thread per stage worker and a shared stop event.

    supervisor = build_supervisor(settings)
    supervisor.install_signal_handlers()
    supervisor.start()
    supervisor.wait()
"""

import signal
import threading
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.orm import sessionmaker

from ..config import Settings, get_settings
from ..db.base import utcnow
from ..db.prompt_service import SystemPromptService
from ..integrations.codebase import CodebaseReader
from ..integrations.github import get_hosting_service
from ..integrations.hosting import HostingService
from ..integrations.reference_docs import ReferenceDocuments
from ..llm.architect import SolutionArchitect
from ..llm.client import ChatClient, get_chat_client
from ..llm.code_review import CodeReviewer
from ..llm.intake import IntakeReviewer
from ..pipeline.cache import ProcessCache
from .architect import ArchitectWorker
from .base import PeriodicWorker
from .code_review import CodeReviewWorker
from .implementation import ImplementationWorker
from .intake import IntakeWorker
from .orchestrator import HealthWorker
from .pr_monitor import PRMonitorWorker

logger = structlog.get_logger()

WORKER_NAMES = ("intake", "architect", "implementation", "pr_monitor", "code_review", "orchestrator")


class Supervisor:
    """Starts, stops and reports on the registered workers."""

    def __init__(self, stop_event: Optional[threading.Event] = None):
        self.stop_event = stop_event or threading.Event()
        self.workers: Dict[str, PeriodicWorker] = {}
        self.threads: Dict[str, threading.Thread] = {}
        self.caches: List[Any] = []
        self.started_at = None

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self.threads.values())

    def register_worker(self, worker: PeriodicWorker) -> None:
        """Register a worker; it shares the supervisor's stop event."""
        worker.stop_event = self.stop_event
        self.workers[worker.name] = worker
        logger.info("worker_registered", worker=worker.name, interval=worker.interval_seconds)

    def register_cache(self, cache: Any) -> None:
        """Anything with ``invalidate()`` or ``reload()``, dropped by ``reload_caches``."""
        self.caches.append(cache)

    def start(self) -> None:
        if self.is_running:
            logger.warning("supervisor_already_running")
            return
        self.stop_event.clear()
        self.started_at = utcnow()
        for name, worker in self.workers.items():
            thread = threading.Thread(target=worker.run, name=f"worker-{name}", daemon=True)
            self.threads[name] = thread
            thread.start()
        logger.info("supervisor_started", workers=sorted(self.workers))

    def stop(self, timeout: float = 30.0) -> None:
        """Signal every worker and wait for in-flight rows to finish."""
        logger.info("supervisor_stopping")
        self.stop_event.set()
        for name, thread in self.threads.items():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("worker_did_not_stop", worker=name, timeout=timeout)
        self.threads.clear()
        logger.info("supervisor_stopped")

    def wait(self) -> None:
        """Block until the stop event is set, then stop the workers."""
        while not self.stop_event.wait(1.0):
            pass
        self.stop()

    def _signal_handler(self, signum, frame) -> None:
        logger.info("signal_received", signal=signum)
        self.stop_event.set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def tick(self, name: str, wait: bool = False) -> int:
        """Run one cycle of a worker in the calling thread.

        Raises ``WorkerBusyError`` when the worker's own loop is mid-cycle.
        """
        if name not in self.workers:
            raise KeyError(f"Unknown worker: {name}")
        return self.workers[name].tick(wait=wait)

    def reload_caches(self) -> int:
        for cache in self.caches:
            if hasattr(cache, "reload"):
                cache.reload()
            else:
                cache.invalidate()
        logger.info("caches_reloaded", count=len(self.caches))
        return len(self.caches)

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "workers": {
                name: dict(worker.get_status(), alive=name in self.threads and self.threads[name].is_alive())
                for name, worker in self.workers.items()
            },
            "timestamp": utcnow().isoformat(),
        }


def build_supervisor(
    settings: Optional[Settings] = None,
    hosting: Optional[HostingService] = None,
    chat_client: Optional[ChatClient] = None,
    session_factory: Optional[sessionmaker] = None,
    only: Optional[Iterable[str]] = None,
    prompts: Optional[SystemPromptService] = None,
) -> Supervisor:
    """Wire every enabled worker with shared hosting, caches, prompts and chat client.

    The model-calling stages are left out when no chat client can be built.
    """
    settings = settings or get_settings()
    hosting = hosting or get_hosting_service(settings)
    selected = set(only) if only else set(WORKER_NAMES)
    unknown = selected - set(WORKER_NAMES)
    if unknown:
        raise ValueError(f"Unknown workers: {', '.join(sorted(unknown))}")

    if chat_client is None and selected & {"intake", "architect", "code_review"}:
        try:
            chat_client = get_chat_client(settings)
        except RuntimeError as e:
            logger.warning("llm_unavailable", error=str(e))

    supervisor = Supervisor()
    common = {"session_factory": session_factory}

    references = ReferenceDocuments(settings.reference_docs_dir, settings.reference_max_chars)
    codebase = CodebaseReader(hosting, ref=settings.base_branch)
    reviewed = ProcessCache("reviewed-revisions")
    prompts = prompts or SystemPromptService(session_factory, settings.system_prompt_cache_seconds)
    for cache in (references, codebase.map_cache, codebase.file_cache, reviewed, prompts):
        supervisor.register_cache(cache)

    def enabled(name: str) -> bool:
        return name in selected and getattr(settings, f"{name}_enabled")

    if chat_client is not None:
        if enabled("intake"):
            reviewer = IntakeReviewer(
                chat_client,
                references,
                settings.intake_temperature,
                settings.intake_max_tokens,
                prompts=prompts,
            )
            supervisor.register_worker(IntakeWorker(reviewer, hosting, settings, **common))
        if enabled("architect"):
            architect = SolutionArchitect(
                chat_client,
                references,
                temperature=settings.architect_temperature,
                max_tokens=settings.architect_max_tokens,
                max_files_to_read=settings.architect_max_files_to_read,
                max_input_tokens=settings.architect_max_input_tokens,
                prompts=prompts,
            )
            supervisor.register_worker(ArchitectWorker(architect, codebase, hosting, settings, **common))
        if enabled("code_review"):
            code_reviewer = CodeReviewer(
                chat_client,
                temperature=settings.code_review_temperature,
                max_tokens=settings.code_review_max_tokens,
                max_input_tokens=settings.code_review_max_input_tokens,
                prompts=prompts,
            )
            supervisor.register_worker(
                CodeReviewWorker(code_reviewer, hosting, settings, reviewed=reviewed, **common)
            )

    if enabled("implementation"):
        supervisor.register_worker(ImplementationWorker(hosting, settings, **common))
    if enabled("pr_monitor"):
        supervisor.register_worker(PRMonitorWorker(hosting, settings, **common))
    if enabled("orchestrator"):
        supervisor.register_worker(HealthWorker(hosting, settings, **common))

    return supervisor


def run_supervisor(settings: Optional[Settings] = None, only: Optional[Iterable[str]] = None) -> None:
    """Run all enabled workers until SIGINT/SIGTERM."""
    supervisor = build_supervisor(settings, only=only)
    supervisor.install_signal_handlers()
    supervisor.start()
    supervisor.wait()
