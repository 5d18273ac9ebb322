"""
Pipeline stage workers.

Usage:
    python -m aidev_pipeline.workers

Components:
    - base: PeriodicWorker loop (claim, handle, isolate failures)
    - intake / architect: model-driven triage and solution design
    - implementation / pr_monitor: coding agent trigger and PR tracking
    - code_review: automated PR review and merge
    - orchestrator: stall, deployment and conflict checks
    - supervisor: threads, signals and wiring
"""

from .architect import ArchitectWorker
from .base import HostingWorker, PeriodicWorker, repo_of
from .code_review import CodeReviewWorker
from .implementation import ImplementationWorker, build_instructions
from .intake import IntakeWorker
from .orchestrator import HealthWorker
from .pr_monitor import PRMonitorWorker
from .supervisor import WORKER_NAMES, Supervisor, build_supervisor, run_supervisor

__all__ = [
    "PeriodicWorker",
    "HostingWorker",
    "repo_of",
    "IntakeWorker",
    "ArchitectWorker",
    "ImplementationWorker",
    "build_instructions",
    "PRMonitorWorker",
    "CodeReviewWorker",
    "HealthWorker",
    "Supervisor",
    "WORKER_NAMES",
    "build_supervisor",
    "run_supervisor",
]
