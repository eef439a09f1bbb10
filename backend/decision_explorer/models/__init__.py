from decision_explorer.models.pathway import (
    ClinicalPathway,
    PathwayConditionCode,
    PathwayNode,
    PathwayNodeOutcome,
    NodeType,
    ActionType,
    FactorImpact,
    slugify
)

from decision_explorer.models.instance import (
    PatientPathwayInstance,
    PatientPathwaySelection,
    InstanceStatus,
    SelectionType
)

# Base model for all tables
from decision_explorer.core.database import Base

# Model collections for easy iteration
PATHWAY_MODELS = [
    ClinicalPathway,
    PathwayConditionCode,
    PathwayNode,
    PathwayNodeOutcome
]

TRACKING_MODELS = [
    PatientPathwayInstance,
    PatientPathwaySelection
]

ALL_MODELS = PATHWAY_MODELS + TRACKING_MODELS

__all__ = [
    "Base",
    "ClinicalPathway",
    "PathwayConditionCode",
    "PathwayNode",
    "PathwayNodeOutcome",
    "PatientPathwayInstance",
    "PatientPathwaySelection",
    "NodeType",
    "ActionType",
    "FactorImpact",
    "InstanceStatus",
    "SelectionType",
    "slugify",
    "PATHWAY_MODELS",
    "TRACKING_MODELS",
    "ALL_MODELS"
]
