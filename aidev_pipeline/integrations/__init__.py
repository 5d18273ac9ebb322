"""
External integrations: the hosting service, codebase reader and reference documents.
"""

from .hosting import HostingService, NullHostingService, PullRequestInfo, WorkflowRun

__all__ = ["HostingService", "NullHostingService", "PullRequestInfo", "WorkflowRun"]
