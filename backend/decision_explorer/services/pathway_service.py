from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import and_, case, distinct, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from decision_explorer.core.config import AppConstants, get_settings
from decision_explorer.core.database import flush_or_raise
from decision_explorer.core.exceptions import ConflictError, ValidationFailure
from decision_explorer.models.instance import (
    InstanceStatus,
    PatientPathwayInstance,
    PatientPathwaySelection,
    SelectionType
)
from decision_explorer.models.pathway import (
    ClinicalPathway,
    PathwayConditionCode,
    PathwayNode,
    PathwayNodeOutcome,
    slugify
)
from decision_explorer.schemas.common import Connection
from decision_explorer.schemas.pathway import (
    PathwayCreate,
    PathwayFilter,
    PathwayResponse,
    PathwayUpdate,
    PathwayUsageStats
)
from decision_explorer.services.tree_service import order_parent_first
from decision_explorer.utils.cache import CacheManager, cache_manager
from decision_explorer.utils.pagination import (
    build_connection,
    clamp_page_size,
    decode_cursor,
    keyset_predicate
)

logger = structlog.get_logger(__name__)


class ClinicalPathwayService:
    """Persistence and lifecycle of clinical pathways"""

    def __init__(self, cache: Optional[CacheManager] = None):
        self.settings = get_settings()
        self.cache = cache or cache_manager

    @staticmethod
    def cache_key(pathway_id: uuid.UUID) -> str:
        return AppConstants.CACHE_KEY_PATHWAY.format(pathway_id=pathway_id)

    async def get_by_id(self, pathway_id: uuid.UUID, db: AsyncSession) -> Optional[ClinicalPathway]:
        result = await db.execute(select(ClinicalPathway).where(ClinicalPathway.id == pathway_id))
        return result.scalar_one_or_none()

    async def get_response(self, pathway_id: uuid.UUID, db: AsyncSession) -> Optional[PathwayResponse]:
        """Read-through cached pathway view"""
        cached = await self.cache.get(self.cache_key(pathway_id))
        if cached:
            return PathwayResponse.model_validate(cached)

        pathway = await self.get_by_id(pathway_id, db)
        if not pathway:
            return None

        response = PathwayResponse.model_validate(pathway)
        await self.cache.set(
            self.cache_key(pathway_id),
            response.model_dump(mode="json"),
            ttl=self.settings.redis.PATHWAY_CACHE_TTL
        )
        return response

    async def get_by_slug(self, slug: str, db: AsyncSession) -> Optional[ClinicalPathway]:
        result = await db.execute(select(ClinicalPathway).where(ClinicalPathway.slug == slug))
        return result.scalar_one_or_none()

    def _filter_clauses(self, filters: PathwayFilter) -> List[Any]:
        clauses = []
        if filters.is_active is not None:
            clauses.append(ClinicalPathway.is_active == filters.is_active)
        if filters.is_published is not None:
            clauses.append(ClinicalPathway.is_published == filters.is_published)
        if filters.condition_code:
            clauses.append(
                exists().where(
                    and_(
                        PathwayConditionCode.pathway_id == ClinicalPathway.id,
                        PathwayConditionCode.code == filters.condition_code.strip().upper()
                    )
                )
            )
        if filters.search_term:
            pattern = f"%{filters.search_term.strip().lower()}%"
            clauses.append(
                or_(
                    func.lower(ClinicalPathway.name).like(pattern),
                    func.lower(ClinicalPathway.description).like(pattern)
                )
            )
        return clauses

    async def list(
        self,
        filters: PathwayFilter,
        db: AsyncSession,
        first: Optional[int] = None,
        after: Optional[str] = None
    ) -> Connection:
        """List pathways ordered by name with cursor pagination"""
        page_size = clamp_page_size(
            first,
            self.settings.pathways.PATHWAY_PAGE_SIZE,
            self.settings.pathways.PATHWAY_MAX_PAGE_SIZE
        )
        clauses = self._filter_clauses(filters)

        count_query = select(func.count(ClinicalPathway.id))
        if clauses:
            count_query = count_query.where(and_(*clauses))
        total_count = (await db.execute(count_query)).scalar() or 0

        query = select(ClinicalPathway).order_by(ClinicalPathway.name.asc(), ClinicalPathway.id.asc())
        page_clauses = list(clauses)
        if after:
            sort_value, row_id = decode_cursor(after)
            page_clauses.append(keyset_predicate(ClinicalPathway.name, ClinicalPathway.id, sort_value, row_id))
        if page_clauses:
            query = query.where(and_(*page_clauses))

        result = await db.execute(query.limit(page_size + 1))
        rows = result.scalars().all()

        logger.debug("Pathways listed", total_count=total_count, returned=min(len(rows), page_size))

        return build_connection(
            rows,
            page_size=page_size,
            total_count=total_count,
            after=after,
            node_schema=PathwayResponse,
            sort_key=lambda row: row.name
        )

    async def _unique_slug(
        self,
        base: str,
        db: AsyncSession,
        exclude_id: Optional[uuid.UUID] = None
    ) -> str:
        base = slugify(base) or "pathway"
        candidate = base
        suffix = 2
        while True:
            query = select(ClinicalPathway.id).where(ClinicalPathway.slug == candidate)
            if exclude_id:
                query = query.where(ClinicalPathway.id != exclude_id)
            if (await db.execute(query)).first() is None:
                return candidate
            candidate = f"{base}-{suffix}"
            suffix += 1

    async def create(
        self,
        data: PathwayCreate,
        db: AsyncSession,
        created_by: Optional[uuid.UUID] = None
    ) -> ClinicalPathway:
        pathway = ClinicalPathway(
            name=data.name,
            slug=await self._unique_slug(data.slug or data.name, db),
            description=data.description,
            applicable_contexts=list(data.applicable_contexts),
            version=data.version or AppConstants.DEFAULT_PATHWAY_VERSION,
            evidence_source=data.evidence_source,
            evidence_grade=data.evidence_grade,
            is_active=True,
            is_published=False,
            revision=1,
            created_by=created_by,
        )
        pathway.set_condition_codes(data.primary_condition_codes)
        db.add(pathway)
        await flush_or_raise(db, "create pathway", name=data.name)

        logger.info("Pathway created", pathway_id=str(pathway.id), slug=pathway.slug)
        return pathway

    async def _lock(self, pathway_id: uuid.UUID, db: AsyncSession) -> Optional[ClinicalPathway]:
        result = await db.execute(
            select(ClinicalPathway).where(ClinicalPathway.id == pathway_id).with_for_update()
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _check_revision(pathway: ClinicalPathway, expected_revision: Optional[int]) -> None:
        if expected_revision is not None and pathway.revision != expected_revision:
            raise ConflictError(
                "Pathway was modified by another session",
                {
                    "pathway_id": str(pathway.id),
                    "expected_revision": expected_revision,
                    "current_revision": pathway.revision
                }
            )

    async def update(
        self,
        pathway_id: uuid.UUID,
        data: PathwayUpdate,
        db: AsyncSession
    ) -> Optional[ClinicalPathway]:
        """Apply a partial update; only fields present in the payload change"""
        pathway = await self._lock(pathway_id, db)
        if not pathway:
            return None
        self._check_revision(pathway, data.expected_revision)

        changes = data.changes()
        new_slug = changes.pop("slug", None)
        if new_slug or changes.get("name"):
            pathway.slug = await self._unique_slug(new_slug or changes["name"], db, exclude_id=pathway.id)
        codes = changes.pop("primary_condition_codes", None)
        if codes is not None:
            pathway.set_condition_codes(codes)
        for field, value in changes.items():
            setattr(pathway, field, value)

        pathway.revision += 1
        await flush_or_raise(db, "update pathway", pathway_id=pathway_id)
        await self.cache.invalidate_after_commit(db, self.cache_key(pathway_id))

        logger.info("Pathway updated", pathway_id=str(pathway_id), fields=sorted(data.changes()))
        return pathway

    async def touch(self, pathway_id: uuid.UUID, db: AsyncSession) -> None:
        """Bump the revision after a node write"""
        pathway = await self._lock(pathway_id, db)
        if not pathway:
            return
        pathway.revision += 1
        await flush_or_raise(db, "update pathway revision", pathway_id=pathway_id)
        await self.cache.invalidate_after_commit(db, self.cache_key(pathway_id))

    async def delete(self, pathway_id: uuid.UUID, db: AsyncSession) -> bool:
        pathway = await self.get_by_id(pathway_id, db)
        if not pathway:
            return False

        await db.delete(pathway)
        await flush_or_raise(db, "delete pathway", pathway_id=pathway_id)
        await self.cache.invalidate_after_commit(db, self.cache_key(pathway_id))

        logger.info("Pathway deleted", pathway_id=str(pathway_id))
        return True

    async def publish(self, pathway_id: uuid.UUID, db: AsyncSession) -> Optional[ClinicalPathway]:
        pathway = await self._lock(pathway_id, db)
        if not pathway:
            return None

        root_count = (
            await db.execute(
                select(func.count(PathwayNode.id)).where(
                    and_(PathwayNode.pathway_id == pathway_id, PathwayNode.parent_node_id.is_(None))
                )
            )
        ).scalar() or 0
        if root_count != 1:
            raise ValidationFailure(
                "A pathway must have exactly one root node to be published",
                {"pathway_id": str(pathway_id), "root_count": root_count}
            )

        pathway.is_published = True
        pathway.published_at = datetime.now(timezone.utc)
        pathway.revision += 1
        await flush_or_raise(db, "publish pathway", pathway_id=pathway_id)
        await self.cache.invalidate_after_commit(db, self.cache_key(pathway_id))

        logger.info("Pathway published", pathway_id=str(pathway_id))
        return pathway

    async def unpublish(self, pathway_id: uuid.UUID, db: AsyncSession) -> Optional[ClinicalPathway]:
        pathway = await self._lock(pathway_id, db)
        if not pathway:
            return None

        pathway.is_published = False
        pathway.published_at = None
        pathway.revision += 1
        await flush_or_raise(db, "unpublish pathway", pathway_id=pathway_id)
        await self.cache.invalidate_after_commit(db, self.cache_key(pathway_id))

        logger.info("Pathway unpublished", pathway_id=str(pathway_id))
        return pathway

    async def duplicate(
        self,
        pathway_id: uuid.UUID,
        new_name: str,
        db: AsyncSession,
        created_by: Optional[uuid.UUID] = None
    ) -> Optional[ClinicalPathway]:
        """Deep-copy a pathway, its node tree and node outcomes under new ids"""
        source = await self.get_by_id(pathway_id, db)
        if not source:
            return None

        clone = ClinicalPathway(
            name=new_name,
            slug=await self._unique_slug(new_name, db),
            description=source.description,
            applicable_contexts=list(source.applicable_contexts or []),
            version=source.version,
            evidence_source=source.evidence_source,
            evidence_grade=source.evidence_grade,
            is_active=True,
            is_published=False,
            revision=1,
            created_by=created_by or source.created_by,
        )
        clone.set_condition_codes(source.primary_condition_codes)
        db.add(clone)
        await flush_or_raise(db, "duplicate pathway", pathway_id=pathway_id)

        result = await db.execute(select(PathwayNode).where(PathwayNode.pathway_id == pathway_id))
        nodes = result.scalars().all()

        # Parents are inserted before children so every parent id is already mapped
        id_map: Dict[uuid.UUID, uuid.UUID] = {}
        for node in order_parent_first(nodes):
            new_id = uuid.uuid4()
            id_map[node.id] = new_id
            db.add(
                PathwayNode(
                    id=new_id,
                    pathway_id=clone.id,
                    parent_node_id=id_map[node.parent_node_id] if node.parent_node_id else None,
                    node_type=node.node_type,
                    title=node.title,
                    description=node.description,
                    action_type=node.action_type,
                    decision_factors=list(node.decision_factors or []),
                    suggested_template_id=node.suggested_template_id,
                    sort_order=node.sort_order,
                    base_confidence=node.base_confidence,
                    is_active=node.is_active,
                )
            )
        await flush_or_raise(db, "duplicate pathway nodes", pathway_id=pathway_id)

        if id_map:
            result = await db.execute(
                select(PathwayNodeOutcome).where(PathwayNodeOutcome.node_id.in_(list(id_map)))
            )
            for outcome in result.scalars().all():
                db.add(
                    PathwayNodeOutcome(
                        node_id=id_map[outcome.node_id],
                        label=outcome.label,
                        description=outcome.description,
                        medication_code=outcome.medication_code,
                        procedure_code=outcome.procedure_code,
                        lab_code=outcome.lab_code,
                        diagnosis_code=outcome.diagnosis_code,
                        outcome_factors=list(outcome.outcome_factors or []),
                        sort_order=outcome.sort_order,
                    )
                )
            await flush_or_raise(db, "duplicate node outcomes", pathway_id=pathway_id)

        logger.info(
            "Pathway duplicated",
            source_pathway_id=str(pathway_id),
            pathway_id=str(clone.id),
            node_count=len(id_map)
        )
        return clone

    async def get_usage_stats(self, pathway_id: uuid.UUID, db: AsyncSession) -> PathwayUsageStats:
        Instance = PatientPathwayInstance

        counts = (
            await db.execute(
                select(
                    func.count(Instance.id),
                    func.count(case((Instance.status == InstanceStatus.COMPLETED, 1))),
                    func.count(case((Instance.status == InstanceStatus.ABANDONED, 1)))
                ).where(Instance.pathway_id == pathway_id)
            )
        ).one()
        total, completed, abandoned = counts

        overridden = (
            await db.execute(
                select(func.count(distinct(PatientPathwaySelection.instance_id)))
                .join(Instance, Instance.id == PatientPathwaySelection.instance_id)
                .where(
                    and_(
                        Instance.pathway_id == pathway_id,
                        PatientPathwaySelection.selection_type == SelectionType.PROVIDER_SELECTED
                    )
                )
            )
        ).scalar() or 0

        durations = (
            await db.execute(
                select(Instance.started_at, Instance.completed_at).where(
                    and_(
                        Instance.pathway_id == pathway_id,
                        Instance.status == InstanceStatus.COMPLETED,
                        Instance.completed_at.isnot(None)
                    )
                )
            )
        ).all()
        minutes = [(done - started).total_seconds() / 60 for started, done in durations]

        return PathwayUsageStats(
            total_instances=total,
            completed_instances=completed,
            abandoned_instances=abandoned,
            override_rate=round(overridden * 100.0 / total, 2) if total else 0.0,
            avg_completion_time_minutes=round(sum(minutes) / len(minutes), 2) if minutes else None,
        )


__all__ = ["ClinicalPathwayService"]
