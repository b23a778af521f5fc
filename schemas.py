"""Pydantic schemas for the divergence, history and scoring endpoints."""

from __future__ import annotations

from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "DivergenceDetailModel",
    "DivergenceModel",
    "DetectionSummary",
    "DetectionResponse",
    "CriticalCountResponse",
    "FixRequest",
    "FixResponse",
    "HistoryItem",
    "HistoryPageResponse",
    "SubjectRuleModel",
    "GradeConfigurationModel",
    "CompositeRequest",
    "LevelModel",
    "CompositeResponse",
]


class DivergenceDetailModel(BaseModel):
    id: str
    entity: str
    entity_id: Any = None
    problem: str
    name: str | None = None
    code: str | None = None
    school: str | None = None
    school_id: Any = None
    region: str | None = None
    region_id: Any = None
    class_name: str | None = None
    class_id: Any = None
    grade: str | None = None
    school_year: str | None = None
    current_value: Any = None
    expected_value: Any = None
    suggested_fix: str | None = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class DivergenceModel(BaseModel):
    type: str
    severity: Literal["critical", "important", "warning", "informational"]
    title: str
    description: str
    icon: str
    fixable: bool
    auto_fixable: bool
    fix_action_label: str | None = None
    count: int
    status: Literal["ok", "failed"]
    error: str | None = None
    offset: int = 0
    truncated: bool = False
    details: List[DivergenceDetailModel] = Field(default_factory=list)


class DetectionSummary(BaseModel):
    critical: int = 0
    important: int = 0
    warning: int = 0
    informational: int = 0
    total: int = 0
    failed_checks: int = 0


class DetectionResponse(BaseModel):
    summary: DetectionSummary
    divergences: List[DivergenceModel]
    ran_at: str
    message: str | None = None


class CriticalCountResponse(BaseModel):
    critical: int
    cached: bool = False


class FixRequest(BaseModel):
    """Correction request; a confirmation token marks operator approval."""

    type: str
    ids: List[str] | None = None
    fix_all: bool = False
    params: Dict[str, Any] | None = None
    confirmation_token: str | None = None

    @field_validator("ids", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, list):
            raise ValueError("ids must be a list")
        return [str(item) for item in value]


class FixResponse(BaseModel):
    type: str
    success: bool
    corrected: int
    noops: int
    errors: int
    cancelled: int
    messages: List[str]


class HistoryItem(BaseModel):
    id: int
    type: str
    severity: str
    title: str
    entity: str | None = None
    entity_id: str | None = None
    entity_name: str | None = None
    before: Any = None
    after: Any = None
    action: str
    automatic: bool
    user_id: str | None = None
    user_name: str | None = None
    created_at: str


class HistoryPageResponse(BaseModel):
    items: List[HistoryItem]
    total: int
    page: int
    limit: int
    pages: int


class SubjectRuleModel(BaseModel):
    code: str
    evaluated: bool
    items: int
    weight: float


class GradeConfigurationModel(BaseModel):
    grade: str
    name: str
    subjects: List[SubjectRuleModel]
    has_essay: bool
    essay_items: int
    essay_weight: float
    uses_learning_level: bool
    total_objective_items: int
    source: str


class CompositeRequest(BaseModel):
    grade: str
    scores: Dict[str, float | None] = Field(default_factory=dict)
    essay_score: float | None = None

    @field_validator("scores")
    @classmethod
    def _lowercase_subjects(cls, value: Dict[str, float | None]) -> Dict[str, float | None]:
        return {key.strip().lower(): score for key, score in value.items()}


class LevelModel(BaseModel):
    code: str
    name: str
    color: str | None = None


class CompositeResponse(BaseModel):
    grade: str
    composite: float | None
    level: LevelModel | None = None
    configuration: GradeConfigurationModel
