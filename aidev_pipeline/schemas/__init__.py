"""Request bodies accepted by the operator API."""

from .operator_v1 import (
    CommentCreate,
    ProjectCreate,
    ProposalDecisionBody,
    RequestCreate,
    SystemPromptReset,
    SystemPromptUpdate,
)

__all__ = [
    "CommentCreate",
    "ProjectCreate",
    "ProposalDecisionBody",
    "RequestCreate",
    "SystemPromptReset",
    "SystemPromptUpdate",
]
