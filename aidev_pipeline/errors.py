"""Exception hierarchy for the AIDev Pipeline."""


class PipelineError(Exception):
    """Base class for pipeline errors."""


class IllegalTransitionError(PipelineError, ValueError):
    """Raised when a request status change does not follow an allowed edge."""

    def __init__(self, request_id, current, target):
        self.request_id = request_id
        self.current = current
        self.target = target
        super().__init__(
            f"Request {request_id}: illegal transition {current} -> {target}"
        )


class MissingPrerequisiteError(PipelineError):
    """Raised when a stage cannot run because earlier output is missing."""


class HostingError(PipelineError):
    """Raised when the issue/PR hosting service returns an unusable response."""


class BudgetExceededError(PipelineError):
    """Raised by operator actions that must not run over the token budget."""


class WorkerBusyError(PipelineError):
    """Raised when a manual tick finds the worker already in a cycle."""
