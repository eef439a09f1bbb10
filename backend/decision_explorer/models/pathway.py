from datetime import datetime, timezone
from typing import List
import enum
import re
import uuid

from sqlalchemy import (
    Column,
    String,
    Integer,
    Float,
    Boolean,
    DateTime,
    Text,
    JSON,
    Uuid,
    ForeignKey,
    Index,
    CheckConstraint,
    Enum as SQLEnum
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, validates

from decision_explorer.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def slugify(value: str) -> str:
    """Lowercase, drop non-word characters, collapse whitespace and hyphens"""
    value = re.sub(r"[^\w\s-]", "", value.lower())
    value = re.sub(r"\s+", "-", value.strip())
    return re.sub(r"-+", "-", value).strip("-")


class NodeType(str, enum.Enum):
    ROOT = "ROOT"
    DECISION = "DECISION"
    BRANCH = "BRANCH"
    RECOMMENDATION = "RECOMMENDATION"


class ActionType(str, enum.Enum):
    MEDICATION = "MEDICATION"
    LAB = "LAB"
    REFERRAL = "REFERRAL"
    PROCEDURE = "PROCEDURE"
    EDUCATION = "EDUCATION"
    MONITORING = "MONITORING"
    LIFESTYLE = "LIFESTYLE"
    FOLLOW_UP = "FOLLOW_UP"
    URGENT_CARE = "URGENT_CARE"


class FactorImpact(str, enum.Enum):
    POSITIVE = "POSITIVE"
    NEGATIVE = "NEGATIVE"
    NEUTRAL = "NEUTRAL"


class ClinicalPathway(Base):
    """A clinical decision pathway: metadata plus the owning scope of its node tree"""

    __tablename__ = "clinical_pathways"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False, unique=True, index=True)
    description = Column(Text)
    applicable_contexts = Column(JSONType, default=list, nullable=False)

    # Clinical content versioning and evidence
    version = Column(String(20), default="1.0", nullable=False)
    evidence_source = Column(Text)
    evidence_grade = Column(String(10))

    is_active = Column(Boolean, default=True, nullable=False)
    is_published = Column(Boolean, default=False, nullable=False)
    published_at = Column(DateTime(timezone=True))

    # Optimistic concurrency token, bumped on every pathway or node write
    revision = Column(Integer, default=1, nullable=False)

    created_by = Column(Uuid)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    condition_links = relationship(
        "PathwayConditionCode",
        order_by="PathwayConditionCode.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("revision >= 1", name="check_pathway_revision_positive"),
        Index("idx_pathway_active_published", "is_active", "is_published"),
        Index("idx_pathway_name", "name", "id"),
    )

    @property
    def primary_condition_codes(self) -> List[str]:
        return [link.code for link in self.condition_links]

    def set_condition_codes(self, codes: List[str]) -> None:
        self.condition_links = [
            PathwayConditionCode(code=code, position=position)
            for position, code in enumerate(codes)
        ]

    @validates("name")
    def validate_name(self, key, name):
        if not name or not name.strip():
            raise ValueError("Pathway name must not be empty")
        return name.strip()

    def __repr__(self):
        return f"<ClinicalPathway(slug='{self.slug}', revision={self.revision}, published={self.is_published})>"


class PathwayConditionCode(Base):
    """Ordered primary condition codes of a pathway"""

    __tablename__ = "clinical_pathway_conditions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    pathway_id = Column(
        Uuid, ForeignKey("clinical_pathways.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False)
    code = Column(String(20), nullable=False)

    __table_args__ = (
        Index("idx_pathway_condition_code", "code"),
    )

    def __repr__(self):
        return f"<PathwayConditionCode(code='{self.code}', position={self.position})>"


class PathwayNode(Base):
    """A single node of a pathway tree, linked to its parent by id"""

    __tablename__ = "pathway_nodes"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    pathway_id = Column(
        Uuid, ForeignKey("clinical_pathways.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # NULL only for the pathway root
    parent_node_id = Column(Uuid, ForeignKey("pathway_nodes.id", ondelete="CASCADE"), index=True)

    node_type = Column(SQLEnum(NodeType, native_enum=False, length=20), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    action_type = Column(SQLEnum(ActionType, native_enum=False, length=20))

    # [{type, label, value, impact}]
    decision_factors = Column(JSONType, default=list, nullable=False)
    suggested_template_id = Column(Uuid)

    sort_order = Column(Integer, default=0, nullable=False)
    base_confidence = Column(Float, default=0.7, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "base_confidence >= 0 AND base_confidence <= 1", name="check_node_base_confidence_range"
        ),
        CheckConstraint("sort_order >= 0", name="check_node_sort_order"),
        Index(
            "uq_pathway_single_root",
            "pathway_id",
            unique=True,
            postgresql_where=parent_node_id.is_(None),
            sqlite_where=parent_node_id.is_(None),
        ),
        Index("idx_node_parent_sort", "parent_node_id", "sort_order"),
    )

    @validates("base_confidence")
    def validate_base_confidence(self, key, value):
        if value is not None and not 0 <= value <= 1:
            raise ValueError("base_confidence must be between 0 and 1")
        return value

    def __repr__(self):
        return f"<PathwayNode(type='{self.node_type}', title='{self.title}', sort_order={self.sort_order})>"


class PathwayNodeOutcome(Base):
    """Concrete clinical outcome attached to a node"""

    __tablename__ = "pathway_node_outcomes"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    node_id = Column(Uuid, ForeignKey("pathway_nodes.id", ondelete="CASCADE"), nullable=False, index=True)

    label = Column(String(255), nullable=False)
    description = Column(Text)
    medication_code = Column(String(50))
    procedure_code = Column(String(50))
    lab_code = Column(String(50))
    diagnosis_code = Column(String(20))
    outcome_factors = Column(JSONType, default=list, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<PathwayNodeOutcome(label='{self.label}', node_id='{self.node_id}')>"
