"""
Pipeline core: request state machine, budget guard and process caches.

Components:
    - enums: Canonical status and decision values
    - state_machine: Allowed status edges and the audited transition helper
    - budget: Daily/monthly token budget guard
    - cache: Explicit process-scoped caches with invalidation
"""

from .enums import (
    ActorKind,
    DeploymentMode,
    DeploymentStatus,
    ImplementationStatus,
    IntakeDecision,
    MergeDecision,
    Priority,
    ProposalDecision,
    RequestStatus,
    RequestType,
)

__all__ = [
    "ActorKind",
    "DeploymentMode",
    "DeploymentStatus",
    "ImplementationStatus",
    "IntakeDecision",
    "MergeDecision",
    "Priority",
    "ProposalDecision",
    "RequestStatus",
    "RequestType",
]
