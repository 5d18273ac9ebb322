"""
Canonical enums for requests and review rows.

Values are stored as-is in the database and appear in comments and labels,
so they must stay stable.
"""

from enum import Enum


class RequestStatus(str, Enum):
    """Lifecycle status of a development request."""

    NEW = "New"
    NEEDS_CLARIFICATION = "NeedsClarification"
    TRIAGED = "Triaged"
    ARCHITECT_REVIEW = "ArchitectReview"
    APPROVED = "Approved"
    IN_PROGRESS = "InProgress"
    DONE = "Done"
    REJECTED = "Rejected"


class RequestType(str, Enum):
    """Kinds of development requests."""

    BUG = "Bug"
    FEATURE = "Feature"
    ENHANCEMENT = "Enhancement"
    QUESTION = "Question"


class Priority(str, Enum):
    """Priority levels."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class IntakeDecision(str, Enum):
    """Outcome of an intake review."""

    APPROVE = "Approve"
    REJECT = "Reject"
    CLARIFY = "Clarify"


class ProposalDecision(str, Enum):
    """Human decision on a solution proposal."""

    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    REVISION_REQUESTED = "RevisionRequested"


class ImplementationStatus(str, Enum):
    """Progress of the coding agent on an approved request."""

    PENDING = "Pending"
    WORKING = "Working"
    PR_OPENED = "PrOpened"
    REVIEW_APPROVED = "ReviewApproved"
    PR_MERGED = "PrMerged"
    FAILED = "Failed"


class DeploymentStatus(str, Enum):
    """Post-merge deployment progress."""

    NONE = "None"
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class MergeDecision(str, Enum):
    """Outcome of an automated code review."""

    APPROVED = "Approved"
    CHANGES_REQUESTED = "ChangesRequested"
    FAILED = "Failed"


class DeploymentMode(str, Enum):
    """What the code reviewer does after approving a PR."""

    STAGED = "staged"
    AUTO = "auto"


class ActorKind(str, Enum):
    """Who performed an audited action."""

    HUMAN = "human"
    AGENT = "agent"
    SYSTEM = "system"
