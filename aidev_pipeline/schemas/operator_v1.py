from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, constr, model_validator

from ..pipeline.enums import Priority, RequestType


class ProjectCreate(BaseModel):
    """A hosted repository requests can be filed against."""

    name: constr(min_length=1, max_length=100)
    display_name: Optional[constr(min_length=1, max_length=200)] = None
    description: Optional[str] = None
    owner: constr(min_length=1, max_length=100)
    repo: constr(min_length=1, max_length=100)

    class Config:
        extra = "forbid"
        json_schema_extra = {
            "example": {
                "name": "storefront",
                "display_name": "Storefront",
                "owner": "myorg",
                "repo": "storefront",
            }
        }


class RequestCreate(BaseModel):
    """
    A new development request.

    Bug reports should describe how to reproduce the problem; the intake
    reviewer asks for the missing pieces otherwise.
    """

    project_id: Optional[int] = None
    title: constr(min_length=5, max_length=200)
    description: constr(min_length=10, max_length=20000)
    request_type: RequestType = RequestType.FEATURE
    priority: Priority = Priority.MEDIUM
    steps_to_reproduce: Optional[str] = None
    expected_behavior: Optional[str] = None
    actual_behavior: Optional[str] = None
    submitted_by: constr(min_length=1, max_length=200)
    submitted_by_email: Optional[constr(max_length=200)] = None

    @model_validator(mode="after")
    def clear_bug_fields(self) -> "RequestCreate":
        """Reproduction fields only apply to bugs."""
        if self.request_type != RequestType.BUG:
            object.__setattr__(self, "steps_to_reproduce", None)
            object.__setattr__(self, "expected_behavior", None)
            object.__setattr__(self, "actual_behavior", None)
        return self

    class Config:
        extra = "forbid"
        json_schema_extra = {
            "example": {
                "project_id": 1,
                "title": "Export orders as CSV",
                "description": "Store managers need to download the filtered order list as CSV.",
                "request_type": "Feature",
                "priority": "Medium",
                "submitted_by": "alice",
            }
        }


class CommentCreate(BaseModel):
    """A human reply on a request's timeline."""

    author: constr(min_length=1, max_length=200)
    content: constr(min_length=1, max_length=20000)

    class Config:
        extra = "forbid"


class ProposalDecisionBody(BaseModel):
    """A human decision on the latest solution proposal."""

    reviewer: constr(min_length=1, max_length=200)
    feedback: Optional[constr(max_length=20000)] = None

    class Config:
        extra = "forbid"


class SystemPromptUpdate(BaseModel):
    """New text for one stage's system prompt."""

    prompt_text: constr(min_length=1, max_length=100000)
    updated_by: constr(min_length=1, max_length=200)

    class Config:
        extra = "forbid"


class SystemPromptReset(BaseModel):
    updated_by: constr(min_length=1, max_length=200)

    class Config:
        extra = "forbid"
