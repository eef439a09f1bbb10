from typing import Dict, List, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from decision_explorer.models.pathway import ActionType, NodeType
from decision_explorer.schemas.common import DecisionFactor, PatientContext
from decision_explorer.schemas.pathway import PathwayResponse


class NodeScore(BaseModel):
    """Scorer verdict for a single node"""
    confidence: float = Field(..., ge=0.0, le=1.0)
    is_recommended: bool = Field(
        False, validation_alias=AliasChoices("is_recommended", "isRecommended")
    )


class ScoringResult(BaseModel):
    scores: Dict[str, NodeScore] = Field(default_factory=dict)
    model_version: Optional[str] = None

    model_config = ConfigDict(protected_namespaces=())


class RecommendationProjection(BaseModel):
    """Care-plan projection carried by recommendation nodes"""
    template_id: Optional[UUID] = None
    title: str
    description: str = ""
    action_type: Optional[ActionType] = None
    medications: List[str] = Field(default_factory=list)
    procedures: List[str] = Field(default_factory=list)
    confidence: float


class DecisionTreeNode(BaseModel):
    id: UUID
    type: NodeType
    title: str
    description: str = ""
    confidence: float = Field(..., ge=0.0, le=1.0)
    factors: List[DecisionFactor] = Field(default_factory=list)
    children: List["DecisionTreeNode"] = Field(default_factory=list)
    alternative_count: int = Field(0, ge=0, description="Sibling alternatives below this node")
    is_recommended_path: bool = False
    recommendation: Optional[RecommendationProjection] = None


class DecisionTreeRequest(BaseModel):
    patient_context: Optional[PatientContext] = Field(
        None, description="Score the tree for this patient; omit for base confidences"
    )


class DecisionTreeResponse(BaseModel):
    pathway: PathwayResponse
    tree: DecisionTreeNode
    model_version: str = Field(..., description="'no-context' when no patient context was supplied")
    processing_time_ms: float

    model_config = ConfigDict(protected_namespaces=())


class ScorerRecommendation(BaseModel):
    """Raw scorer recommendation entry"""
    pathway_id: UUID = Field(..., validation_alias=AliasChoices("pathway_id", "pathwayId"))
    match_score: Optional[float] = Field(None, validation_alias=AliasChoices("match_score", "matchScore"))
    match_reasons: Optional[List[str]] = Field(
        None, validation_alias=AliasChoices("match_reasons", "matchReasons")
    )
    ml_confidence: Optional[float] = Field(
        None, validation_alias=AliasChoices("ml_confidence", "mlConfidence")
    )

    model_config = ConfigDict(populate_by_name=True)


class RecommendPathwaysRequest(BaseModel):
    patient_context: PatientContext
    first: Optional[int] = Field(None, ge=1, le=50, description="Maximum number of recommendations")


class PathwayRecommendation(BaseModel):
    pathway: PathwayResponse
    match_score: float
    match_reasons: List[str]
    ml_confidence: float
