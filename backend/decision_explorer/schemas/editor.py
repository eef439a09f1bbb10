from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from decision_explorer.models.pathway import ActionType, NodeType
from decision_explorer.schemas.common import DecisionFactor
from decision_explorer.schemas.pathway import PathwayResponse, PathwayUpdate

TEMP_ID_PREFIX = "temp-"


class EditorNode(BaseModel):
    """
    Node as held by the pathway editor.

    New nodes carry a client-generated ``temp-<ts>-<rand>`` id until saved.
    """
    id: str = Field(..., min_length=1, description="Server id, or temporary id for unsaved nodes")
    is_new: bool = False
    is_dirty: bool = False
    node_type: NodeType
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    action_type: Optional[ActionType] = None
    decision_factors: List[DecisionFactor] = Field(default_factory=list)
    suggested_template_id: Optional[UUID] = None
    base_confidence: float = Field(0.7, ge=0.0, le=1.0)
    # Position last loaded from the server; unknown for new nodes
    parent_node_id: Optional[UUID] = None
    sort_order: Optional[int] = Field(None, ge=0)
    children: List["EditorNode"] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not v.startswith(TEMP_ID_PREFIX):
            UUID(v)
        return v


class TreeSaveRequest(BaseModel):
    expected_revision: int = Field(..., ge=1, description="Revision the editor loaded")
    pathway: Optional[PathwayUpdate] = Field(None, description="Pathway metadata changes")
    root: EditorNode
    deleted_node_ids: List[UUID] = Field(default_factory=list)


class TreeSaveResult(BaseModel):
    pathway: PathwayResponse
    id_map: Dict[str, UUID] = Field(default_factory=dict, description="Temporary id to server id")
    created: int = 0
    updated: int = 0
    moved: int = 0
    deleted: int = 0
