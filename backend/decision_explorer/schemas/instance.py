from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from decision_explorer.models.instance import InstanceStatus, SelectionType
from decision_explorer.schemas.common import PatientContext


class InstanceStart(BaseModel):
    """Schema for starting a patient pathway instance"""
    patient_id: UUID
    provider_id: UUID
    pathway_id: UUID
    patient_context: PatientContext
    ml_model_id: Optional[str] = Field(None, max_length=100)


class InstanceResponse(BaseModel):
    id: UUID
    patient_id: UUID
    provider_id: UUID
    pathway_id: UUID
    patient_context: Dict[str, Any]
    ml_model_id: Optional[str] = None
    ml_model_version: Optional[str] = None
    ml_recommended_path: Optional[List[UUID]] = None
    ml_confidence_scores: Optional[Dict[str, float]] = None
    status: InstanceStatus
    abandon_reason: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class InstanceFilter(BaseModel):
    patient_id: Optional[UUID] = None
    pathway_id: Optional[UUID] = None
    provider_id: Optional[UUID] = None
    status: Optional[InstanceStatus] = None
    started_after: Optional[datetime] = None
    started_before: Optional[datetime] = None


class AbandonRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000, description="Why the pathway was abandoned")


class MlRecommendationsUpdate(BaseModel):
    model_version: str = Field(..., max_length=50)
    recommended_path: List[UUID] = Field(default_factory=list)
    confidence_scores: Dict[str, float] = Field(default_factory=dict)

    model_config = ConfigDict(protected_namespaces=())


class SelectionRecord(BaseModel):
    """Schema for recording a node selection"""
    instance_id: UUID
    node_id: UUID
    selection_type: SelectionType = SelectionType.ML_RECOMMENDED
    ml_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    ml_rank: Optional[int] = Field(None, ge=1)
    override_reason: Optional[str] = None

    @model_validator(mode="after")
    def require_override_reason(self) -> "SelectionRecord":
        if self.override_reason is not None and not self.override_reason.strip():
            raise ValueError("override_reason must not be blank")
        return self


class SelectionResponse(BaseModel):
    id: UUID
    instance_id: UUID
    node_id: UUID
    selection_type: SelectionType
    ml_confidence: Optional[float] = None
    ml_rank: Optional[int] = None
    override_reason: Optional[str] = None
    resulting_care_plan_id: Optional[UUID] = None
    created_by: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LinkCarePlanRequest(BaseModel):
    care_plan_id: UUID
