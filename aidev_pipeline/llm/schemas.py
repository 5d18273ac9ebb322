"""
Response schemas for the JSON the stage prompts ask the model to return.

Keys arrive in camelCase. Explicit ``null`` values fall back to the field
default so a sparse but well-formed answer still validates.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel


class LLMResponse(BaseModel):
    """Base for model responses: camelCase aliases, nulls mean "use default"."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class IntakeResponse(LLMResponse):
    decision: str = ""
    reasoning: str = "No reasoning provided"
    alignment_score: float = 0
    completeness_score: float = 0
    sales_alignment_score: float = 0
    clarification_questions: List[str] = []
    suggested_priority: Optional[str] = None
    tags: List[str] = []
    is_duplicate: bool = False
    duplicate_of_request_id: Optional[int] = None


class ImpactedFile(LLMResponse):
    path: str = ""
    action: str = "modify"
    description: str = ""
    estimated_lines_changed: int = 0


class NewFile(LLMResponse):
    path: str = ""
    description: str = ""
    estimated_lines: int = 0


class DataMigration(LLMResponse):
    required: bool = False
    description: Optional[str] = None
    steps: List[str] = []


class DependencyChange(LLMResponse):
    package: str = ""
    action: str = ""
    version: str = ""
    reason: str = ""


class Risk(LLMResponse):
    description: str = ""
    severity: str = "unknown"
    mitigation: str = ""


class SolutionResponse(LLMResponse):
    solution_summary: str = "No summary provided"
    approach: str = "No approach provided"
    impacted_files: List[ImpactedFile] = []
    new_files: List[NewFile] = []
    data_migration: DataMigration = DataMigration()
    breaking_changes: List[str] = []
    dependency_changes: List[DependencyChange] = []
    risks: List[Risk] = []
    estimated_complexity: str = "unknown"
    estimated_effort: str = "unknown"
    implementation_order: List[str] = []
    testing_notes: str = ""
    architectural_notes: str = ""
    clarification_questions: List[str] = []
    feedback_response: Optional[str] = None


class CodeReviewResponse(LLMResponse):
    decision: str = ""
    summary: str = "No summary provided"
    design_compliance: bool = False
    design_compliance_notes: str = ""
    security_pass: bool = False
    security_notes: str = ""
    coding_standards_pass: bool = False
    coding_standards_notes: str = ""
    quality_score: float = 0
