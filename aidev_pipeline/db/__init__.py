"""
Database package for the AIDev Pipeline.
"""

from .base import Base, get_db, get_engine, get_session_local, init_database
from .models import (
    AttachmentModel,
    CommentModel,
    DevRequestModel,
    IntakeVerdictModel,
    MergeReviewModel,
    ProjectModel,
    SolutionProposalModel,
    SystemPromptModel,
)

__all__ = [
    "Base",
    "get_db",
    "get_engine",
    "get_session_local",
    "init_database",
    "AttachmentModel",
    "CommentModel",
    "DevRequestModel",
    "IntakeVerdictModel",
    "MergeReviewModel",
    "ProjectModel",
    "SolutionProposalModel",
    "SystemPromptModel",
]
