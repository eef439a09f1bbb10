from typing import Any, Dict, Generic, List, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from decision_explorer.models.pathway import FactorImpact

T = TypeVar("T")


class DecisionFactor(BaseModel):
    """A factor weighing on a decision node"""
    type: str = Field(..., min_length=1, max_length=50, description="Factor category, e.g. 'lab' or 'condition'")
    label: str = Field(..., min_length=1, max_length=255, description="Human readable factor label")
    value: Optional[str] = Field(None, description="Threshold or value the factor refers to")
    impact: FactorImpact = Field(FactorImpact.NEUTRAL, description="Direction of influence on the decision")


class PatientContext(BaseModel):
    """Snapshot of patient data used to score a pathway"""
    patient_id: Optional[UUID] = Field(None, description="Patient identifier")
    provider_id: Optional[UUID] = Field(None, description="Treating provider identifier")
    condition_codes: List[str] = Field(default_factory=list, description="ICD-10 condition codes")
    age: Optional[int] = Field(None, ge=0, le=130, description="Patient age in years")
    sex: Optional[str] = Field(None, max_length=20, description="Patient sex")
    medication_codes: List[str] = Field(default_factory=list, description="Active medication codes")
    lab_codes: List[str] = Field(default_factory=list, description="Recent lab codes")
    lab_values: Optional[Dict[str, Any]] = Field(None, description="Recent lab results keyed by lab code")
    comorbidities: List[str] = Field(default_factory=list, description="Comorbidity codes")
    risk_factors: List[str] = Field(default_factory=list, description="Documented risk factors")
    clinical_notes: Optional[str] = Field(None, description="Free-text clinical notes")

    @field_validator("condition_codes", "medication_codes", "lab_codes")
    @classmethod
    def normalize_codes(cls, v: List[str]) -> List[str]:
        return [code.strip().upper() for code in v if code and code.strip()]

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "patient_id": "6f1c2a9e-6d8c-4a57-9a3b-2f2d4b1e7c11",
                "condition_codes": ["E11.9", "I10"],
                "age": 64,
                "sex": "female",
                "medication_codes": ["860975"],
                "lab_values": {"4548-4": 8.1},
                "comorbidities": ["I10"],
                "risk_factors": ["obesity"]
            }
        }
    )


class PageInfo(BaseModel):
    has_next_page: bool = Field(..., description="More items exist after end_cursor")
    has_previous_page: bool = Field(..., description="A cursor was supplied for this page")
    start_cursor: Optional[str] = Field(None, description="Cursor of the first edge")
    end_cursor: Optional[str] = Field(None, description="Cursor of the last edge")


class Edge(BaseModel, Generic[T]):
    node: T
    cursor: str


class Connection(BaseModel, Generic[T]):
    """Cursor-paginated list"""
    edges: List[Edge[T]] = Field(default_factory=list)
    page_info: PageInfo
    total_count: int = Field(..., ge=0)


class ErrorResponse(BaseModel):
    error: str
    message: str
    correlation_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
