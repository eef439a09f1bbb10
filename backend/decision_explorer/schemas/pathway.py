from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from decision_explorer.models.pathway import ActionType, NodeType
from decision_explorer.schemas.common import DecisionFactor


class PathwayBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255, description="Pathway display name")
    description: Optional[str] = Field(None, description="Clinical summary of the pathway")
    primary_condition_codes: List[str] = Field(
        default_factory=list, description="ICD-10 codes the pathway applies to, in priority order"
    )
    applicable_contexts: List[str] = Field(
        default_factory=list, description="Care settings, e.g. 'primary_care' or 'telehealth'"
    )
    evidence_source: Optional[str] = Field(None, description="Guideline or publication the pathway follows")
    evidence_grade: Optional[str] = Field(None, max_length=10, description="Evidence grade, e.g. 'A'")

    @field_validator("primary_condition_codes")
    @classmethod
    def normalize_condition_codes(cls, v: List[str]) -> List[str]:
        return [code.strip().upper() for code in v if code and code.strip()]


class PathwayCreate(PathwayBase):
    """Schema for creating a pathway"""
    slug: Optional[str] = Field(None, max_length=255, description="URL slug; derived from the name when omitted")
    version: str = Field("1.0", max_length=20, description="Clinical content version")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Type 2 Diabetes Management",
                "description": "Initial pharmacologic management of newly diagnosed T2DM",
                "primary_condition_codes": ["E11"],
                "applicable_contexts": ["primary_care"],
                "evidence_source": "ADA Standards of Care 2024",
                "evidence_grade": "A"
            }
        }
    )


class PathwayUpdate(BaseModel):
    """Partial pathway update; omitted fields are left untouched"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    slug: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    primary_condition_codes: Optional[List[str]] = None
    applicable_contexts: Optional[List[str]] = None
    version: Optional[str] = Field(None, max_length=20)
    evidence_source: Optional[str] = None
    evidence_grade: Optional[str] = Field(None, max_length=10)
    is_active: Optional[bool] = None
    expected_revision: Optional[int] = Field(
        None, ge=1, description="Reject the update with 409 unless the stored revision matches"
    )

    @field_validator("primary_condition_codes")
    @classmethod
    def normalize_condition_codes(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        return [code.strip().upper() for code in v if code and code.strip()]

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude={"expected_revision"})


class PathwayResponse(PathwayBase):
    """Pathway as returned by the API"""
    id: UUID
    slug: str
    version: str
    is_active: bool
    is_published: bool
    published_at: Optional[datetime] = None
    revision: int = Field(..., description="Concurrency token to send back as expected_revision")
    created_by: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PathwayFilter(BaseModel):
    is_active: Optional[bool] = None
    is_published: Optional[bool] = None
    condition_code: Optional[str] = None
    search_term: Optional[str] = None


class DuplicatePathwayRequest(BaseModel):
    new_name: str = Field(..., min_length=1, max_length=255, description="Name of the copy")


class NodeCreate(BaseModel):
    """Schema for creating a pathway node"""
    pathway_id: UUID
    parent_node_id: Optional[UUID] = Field(None, description="Parent node; omit only for the root")
    node_type: NodeType
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    action_type: Optional[ActionType] = None
    decision_factors: List[DecisionFactor] = Field(default_factory=list)
    suggested_template_id: Optional[UUID] = None
    sort_order: int = Field(0, ge=0)
    base_confidence: float = Field(0.7, ge=0.0, le=1.0)


class NodeUpdate(BaseModel):
    """Partial node update; structure changes go through move"""
    node_type: Optional[NodeType] = None
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    action_type: Optional[ActionType] = None
    decision_factors: Optional[List[DecisionFactor]] = None
    suggested_template_id: Optional[UUID] = None
    sort_order: Optional[int] = Field(None, ge=0)
    base_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    is_active: Optional[bool] = None

    def changes(self) -> Dict[str, Any]:
        data = self.model_dump(exclude_unset=True)
        if self.decision_factors is not None and "decision_factors" in data:
            data["decision_factors"] = [factor.model_dump(mode="json") for factor in self.decision_factors]
        return data


class NodeMove(BaseModel):
    new_parent_id: Optional[UUID] = Field(None, description="New parent; null makes the node the root")
    new_sort_order: Optional[int] = Field(None, ge=0)


class NodeResponse(BaseModel):
    id: UUID
    pathway_id: UUID
    parent_node_id: Optional[UUID] = None
    node_type: NodeType
    title: str
    description: Optional[str] = None
    action_type: Optional[ActionType] = None
    decision_factors: List[DecisionFactor] = Field(default_factory=list)
    suggested_template_id: Optional[UUID] = None
    sort_order: int
    base_confidence: float
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PathwayNodeTree(NodeResponse):
    """Node with its ordered children, as shown by the pathway editor"""
    children: List["PathwayNodeTree"] = Field(default_factory=list)


class OutcomeCreate(BaseModel):
    node_id: UUID
    label: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    medication_code: Optional[str] = Field(None, max_length=50)
    procedure_code: Optional[str] = Field(None, max_length=50)
    lab_code: Optional[str] = Field(None, max_length=50)
    diagnosis_code: Optional[str] = Field(None, max_length=20)
    outcome_factors: List[Dict[str, Any]] = Field(default_factory=list)
    sort_order: int = Field(0, ge=0)


class OutcomeUpdate(BaseModel):
    label: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    medication_code: Optional[str] = Field(None, max_length=50)
    procedure_code: Optional[str] = Field(None, max_length=50)
    lab_code: Optional[str] = Field(None, max_length=50)
    diagnosis_code: Optional[str] = Field(None, max_length=20)
    outcome_factors: Optional[List[Dict[str, Any]]] = None
    sort_order: Optional[int] = Field(None, ge=0)


class OutcomeResponse(BaseModel):
    id: UUID
    node_id: UUID
    label: str
    description: Optional[str] = None
    medication_code: Optional[str] = None
    procedure_code: Optional[str] = None
    lab_code: Optional[str] = None
    diagnosis_code: Optional[str] = None
    outcome_factors: List[Dict[str, Any]] = Field(default_factory=list)
    sort_order: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PathwayUsageStats(BaseModel):
    total_instances: int = 0
    completed_instances: int = 0
    abandoned_instances: int = 0
    override_rate: float = Field(0.0, description="Percentage of instances with a provider override")
    avg_completion_time_minutes: Optional[float] = None


class NodeSelectionStats(BaseModel):
    total_selections: int = 0
    ml_recommended_count: int = 0
    provider_selected_count: int = 0
    avg_ml_confidence: Optional[float] = None
    linked_care_plans: int = 0
