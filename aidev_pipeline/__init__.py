"""
AIDev Pipeline

Status-driven AI development pipeline: intake triage, solution design,
coding agent implementation, code review, merge and deployment tracking.
"""

import importlib.metadata

__version__ = importlib.metadata.version("aidev-pipeline")

from .errors import (
    BudgetExceededError,
    HostingError,
    IllegalTransitionError,
    MissingPrerequisiteError,
    PipelineError,
)
from .pipeline.enums import (
    DeploymentStatus,
    ImplementationStatus,
    RequestStatus,
)

__all__ = [
    "BudgetExceededError",
    "DeploymentStatus",
    "HostingError",
    "IllegalTransitionError",
    "ImplementationStatus",
    "MissingPrerequisiteError",
    "PipelineError",
    "RequestStatus",
]
