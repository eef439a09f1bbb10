import enum
import uuid

from sqlalchemy import (
    Column,
    String,
    Integer,
    Float,
    DateTime,
    Text,
    Uuid,
    ForeignKey,
    Index,
    UniqueConstraint,
    CheckConstraint,
    Enum as SQLEnum
)

from decision_explorer.core.database import Base
from decision_explorer.models.pathway import JSONType, utcnow


class InstanceStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"

    @property
    def is_terminal(self) -> bool:
        return self is not InstanceStatus.IN_PROGRESS


class SelectionType(str, enum.Enum):
    ML_RECOMMENDED = "ML_RECOMMENDED"
    PROVIDER_SELECTED = "PROVIDER_SELECTED"
    AUTO_APPLIED = "AUTO_APPLIED"


class PatientPathwayInstance(Base):
    """One patient's traversal of a pathway"""

    __tablename__ = "patient_pathway_instances"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    patient_id = Column(Uuid, nullable=False, index=True)
    provider_id = Column(Uuid, nullable=False, index=True)
    pathway_id = Column(
        Uuid, ForeignKey("clinical_pathways.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    # Snapshot taken at start; never updated afterwards
    patient_context = Column(JSONType, nullable=False)

    # Scorer output captured for this traversal
    ml_model_id = Column(String(100))
    ml_model_version = Column(String(50))
    ml_recommended_path = Column(JSONType)
    ml_confidence_scores = Column(JSONType)

    status = Column(
        SQLEnum(InstanceStatus, native_enum=False, length=20),
        default=InstanceStatus.IN_PROGRESS,
        nullable=False,
    )
    abandon_reason = Column(Text)

    started_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_instance_patient_started", "patient_id", "started_at"),
        Index("idx_instance_status", "status"),
    )

    def __repr__(self):
        return f"<PatientPathwayInstance(patient_id='{self.patient_id}', status='{self.status}')>"


class PatientPathwaySelection(Base):
    """A node chosen during an instance, optionally tied to the care plan it produced"""

    __tablename__ = "patient_pathway_selections"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    instance_id = Column(
        Uuid, ForeignKey("patient_pathway_instances.id", ondelete="CASCADE"), nullable=False, index=True
    )
    node_id = Column(Uuid, ForeignKey("pathway_nodes.id", ondelete="RESTRICT"), nullable=False, index=True)

    selection_type = Column(
        SQLEnum(SelectionType, native_enum=False, length=20),
        default=SelectionType.ML_RECOMMENDED,
        nullable=False,
    )
    ml_confidence = Column(Float)
    ml_rank = Column(Integer)
    override_reason = Column(Text)

    # Care plans live in another service; no FK
    resulting_care_plan_id = Column(Uuid)

    created_by = Column(Uuid)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("instance_id", "node_id", name="uq_selection_instance_node"),
        CheckConstraint(
            "ml_confidence IS NULL OR (ml_confidence >= 0 AND ml_confidence <= 1)",
            name="check_selection_ml_confidence_range",
        ),
    )

    def __repr__(self):
        return f"<PatientPathwaySelection(node_id='{self.node_id}', type='{self.selection_type}')>"
