from datetime import datetime, timezone
from typing import List, Optional, Sequence
import uuid

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from decision_explorer.core.config import get_settings
from decision_explorer.core.database import flush_or_raise
from decision_explorer.core.exceptions import InstanceStateError, NotFoundError, ValidationFailure
from decision_explorer.models.instance import (
    InstanceStatus,
    PatientPathwayInstance,
    PatientPathwaySelection
)
from decision_explorer.models.pathway import ClinicalPathway, PathwayNode
from decision_explorer.schemas.common import Connection
from decision_explorer.schemas.instance import (
    InstanceFilter,
    InstanceResponse,
    InstanceStart,
    MlRecommendationsUpdate,
    SelectionRecord
)
from decision_explorer.utils.pagination import (
    build_connection,
    clamp_page_size,
    decode_cursor,
    keyset_predicate
)

logger = structlog.get_logger(__name__)


def _parse_timestamp(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise ValidationFailure("Invalid cursor timestamp", {"reason": str(e)})


class PatientPathwayInstanceService:
    """Lifecycle of patient pathway instances: IN_PROGRESS to COMPLETED or ABANDONED, once"""

    def __init__(self):
        self.settings = get_settings()

    async def get_by_id(self, instance_id: uuid.UUID, db: AsyncSession) -> Optional[PatientPathwayInstance]:
        result = await db.execute(select(PatientPathwayInstance).where(PatientPathwayInstance.id == instance_id))
        return result.scalar_one_or_none()

    async def start(self, data: InstanceStart, db: AsyncSession) -> PatientPathwayInstance:
        pathway_exists = (
            await db.execute(select(ClinicalPathway.id).where(ClinicalPathway.id == data.pathway_id))
        ).first()
        if not pathway_exists:
            raise NotFoundError("Clinical pathway", data.pathway_id)

        instance = PatientPathwayInstance(
            patient_id=data.patient_id,
            provider_id=data.provider_id,
            pathway_id=data.pathway_id,
            patient_context=data.patient_context.model_dump(mode="json"),
            ml_model_id=data.ml_model_id,
            status=InstanceStatus.IN_PROGRESS,
            started_at=datetime.now(timezone.utc),
        )
        db.add(instance)
        await flush_or_raise(db, "start pathway instance", pathway_id=data.pathway_id)

        logger.info(
            "Pathway instance started",
            instance_id=str(instance.id),
            pathway_id=str(data.pathway_id),
            provider_id=str(data.provider_id)
        )
        return instance

    async def _finish(
        self,
        instance_id: uuid.UUID,
        status: InstanceStatus,
        db: AsyncSession,
        reason: Optional[str] = None
    ) -> Optional[PatientPathwayInstance]:
        result = await db.execute(
            select(PatientPathwayInstance)
            .where(PatientPathwayInstance.id == instance_id)
            .with_for_update()
        )
        instance = result.scalar_one_or_none()
        if not instance:
            return None

        if instance.status.is_terminal:
            raise InstanceStateError(
                f"Pathway instance is already {instance.status.value.lower()}",
                {"instance_id": str(instance_id), "status": instance.status.value}
            )

        instance.status = status
        instance.completed_at = datetime.now(timezone.utc)
        if reason:
            instance.abandon_reason = reason
        await flush_or_raise(db, f"mark instance {status.value.lower()}", instance_id=instance_id)

        logger.info(
            "Pathway instance finished",
            instance_id=str(instance_id),
            status=status.value,
            has_reason=bool(reason)
        )
        return instance

    async def complete(self, instance_id: uuid.UUID, db: AsyncSession) -> Optional[PatientPathwayInstance]:
        return await self._finish(instance_id, InstanceStatus.COMPLETED, db)

    async def abandon(
        self,
        instance_id: uuid.UUID,
        db: AsyncSession,
        reason: Optional[str] = None
    ) -> Optional[PatientPathwayInstance]:
        return await self._finish(instance_id, InstanceStatus.ABANDONED, db, reason=reason)

    async def set_ml_recommendations(
        self,
        instance_id: uuid.UUID,
        data: MlRecommendationsUpdate,
        db: AsyncSession
    ) -> Optional[PatientPathwayInstance]:
        """Store the scorer output the provider saw for this traversal"""
        instance = await self.get_by_id(instance_id, db)
        if not instance:
            return None

        instance.ml_model_version = data.model_version
        instance.ml_recommended_path = [str(node_id) for node_id in data.recommended_path]
        instance.ml_confidence_scores = dict(data.confidence_scores)
        await flush_or_raise(db, "store ml recommendations", instance_id=instance_id)
        return instance

    async def list(
        self,
        filters: InstanceFilter,
        db: AsyncSession,
        first: Optional[int] = None,
        after: Optional[str] = None
    ) -> Connection:
        """Instances, most recently started first"""
        Instance = PatientPathwayInstance
        page_size = clamp_page_size(
            first,
            self.settings.pathways.PATHWAY_PAGE_SIZE,
            self.settings.pathways.PATHWAY_MAX_PAGE_SIZE
        )

        clauses = []
        if filters.patient_id:
            clauses.append(Instance.patient_id == filters.patient_id)
        if filters.pathway_id:
            clauses.append(Instance.pathway_id == filters.pathway_id)
        if filters.provider_id:
            clauses.append(Instance.provider_id == filters.provider_id)
        if filters.status:
            clauses.append(Instance.status == filters.status)
        if filters.started_after:
            clauses.append(Instance.started_at >= filters.started_after)
        if filters.started_before:
            clauses.append(Instance.started_at <= filters.started_before)

        count_query = select(func.count(Instance.id))
        if clauses:
            count_query = count_query.where(and_(*clauses))
        total_count = (await db.execute(count_query)).scalar() or 0

        page_clauses = list(clauses)
        if after:
            sort_value, row_id = decode_cursor(after)
            page_clauses.append(
                keyset_predicate(
                    Instance.started_at, Instance.id, _parse_timestamp(sort_value), row_id, descending=True
                )
            )

        query = select(Instance).order_by(Instance.started_at.desc(), Instance.id.desc())
        if page_clauses:
            query = query.where(and_(*page_clauses))
        rows = (await db.execute(query.limit(page_size + 1))).scalars().all()

        return build_connection(
            rows,
            page_size=page_size,
            total_count=total_count,
            after=after,
            node_schema=InstanceResponse,
            sort_key=lambda row: row.started_at.isoformat()
        )

    async def list_by_patient(
        self,
        patient_id: uuid.UUID,
        db: AsyncSession
    ) -> Sequence[PatientPathwayInstance]:
        result = await db.execute(
            select(PatientPathwayInstance)
            .where(PatientPathwayInstance.patient_id == patient_id)
            .order_by(PatientPathwayInstance.started_at.desc(), PatientPathwayInstance.id.desc())
        )
        return result.scalars().all()


class PatientPathwaySelectionService:
    """Node selections made during a pathway instance"""

    async def get_by_id(self, selection_id: uuid.UUID, db: AsyncSession) -> Optional[PatientPathwaySelection]:
        result = await db.execute(
            select(PatientPathwaySelection).where(PatientPathwaySelection.id == selection_id)
        )
        return result.scalar_one_or_none()

    async def list_by_instance(self, instance_id: uuid.UUID, db: AsyncSession) -> List[PatientPathwaySelection]:
        result = await db.execute(
            select(PatientPathwaySelection)
            .where(PatientPathwaySelection.instance_id == instance_id)
            .order_by(PatientPathwaySelection.created_at.asc(), PatientPathwaySelection.id.asc())
        )
        return list(result.scalars().all())

    async def record(
        self,
        data: SelectionRecord,
        db: AsyncSession,
        created_by: Optional[uuid.UUID] = None
    ) -> PatientPathwaySelection:
        """
        Record a node selection.

        Re-selecting the same node within an instance overwrites the earlier
        selection row.
        """
        instance = (
            await db.execute(select(PatientPathwayInstance).where(PatientPathwayInstance.id == data.instance_id))
        ).scalar_one_or_none()
        if not instance:
            raise NotFoundError("Pathway instance", data.instance_id)
        if instance.status.is_terminal:
            raise InstanceStateError(
                "Selections cannot be recorded on a finished pathway instance",
                {"instance_id": str(data.instance_id), "status": instance.status.value}
            )

        node_pathway_id = (
            await db.execute(select(PathwayNode.pathway_id).where(PathwayNode.id == data.node_id))
        ).scalar_one_or_none()
        if node_pathway_id is None:
            raise NotFoundError("Pathway node", data.node_id)
        if node_pathway_id != instance.pathway_id:
            raise ValidationFailure(
                "Selected node does not belong to the instance's pathway",
                {"node_id": str(data.node_id), "pathway_id": str(instance.pathway_id)}
            )

        selection = (
            await db.execute(
                select(PatientPathwaySelection).where(
                    and_(
                        PatientPathwaySelection.instance_id == data.instance_id,
                        PatientPathwaySelection.node_id == data.node_id
                    )
                )
            )
        ).scalar_one_or_none()

        if selection is None:
            selection = PatientPathwaySelection(instance_id=data.instance_id, node_id=data.node_id)
            db.add(selection)

        selection.selection_type = data.selection_type
        selection.ml_confidence = data.ml_confidence
        selection.ml_rank = data.ml_rank
        selection.override_reason = data.override_reason
        selection.created_by = created_by
        selection.created_at = datetime.now(timezone.utc)

        await flush_or_raise(db, "record selection", instance_id=data.instance_id, node_id=data.node_id)

        logger.info(
            "Pathway selection recorded",
            selection_id=str(selection.id),
            instance_id=str(data.instance_id),
            node_id=str(data.node_id),
            selection_type=data.selection_type.value
        )
        return selection

    async def link_to_care_plan(
        self,
        selection_id: uuid.UUID,
        care_plan_id: uuid.UUID,
        db: AsyncSession
    ) -> Optional[PatientPathwaySelection]:
        """Attach the resulting care plan; a later link replaces an earlier one"""
        selection = await self.get_by_id(selection_id, db)
        if not selection:
            return None

        previous = selection.resulting_care_plan_id
        selection.resulting_care_plan_id = care_plan_id
        await flush_or_raise(db, "link care plan", selection_id=selection_id)

        if previous and previous != care_plan_id:
            logger.warning(
                "Selection care plan replaced",
                selection_id=str(selection_id),
                previous_care_plan_id=str(previous),
                care_plan_id=str(care_plan_id)
            )
        return selection


__all__ = ["PatientPathwayInstanceService", "PatientPathwaySelectionService"]
