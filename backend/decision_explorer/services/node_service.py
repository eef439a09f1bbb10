from typing import Dict, List, Optional, Sequence, Set
import uuid

from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from decision_explorer.core.database import flush_or_raise
from decision_explorer.core.exceptions import NotFoundError, ValidationFailure
from decision_explorer.models.instance import PatientPathwaySelection, SelectionType
from decision_explorer.models.pathway import ClinicalPathway, PathwayNode, PathwayNodeOutcome
from decision_explorer.schemas.pathway import (
    NodeCreate,
    NodeSelectionStats,
    NodeUpdate,
    OutcomeCreate,
    OutcomeUpdate
)
from decision_explorer.services.pathway_service import ClinicalPathwayService

logger = structlog.get_logger(__name__)


class PathwayNodeService:
    """Persistence of pathway nodes and the structural rules of the node tree"""

    def __init__(self, pathway_service: Optional[ClinicalPathwayService] = None):
        self.pathway_service = pathway_service or ClinicalPathwayService()

    async def get_by_id(self, node_id: uuid.UUID, db: AsyncSession) -> Optional[PathwayNode]:
        result = await db.execute(select(PathwayNode).where(PathwayNode.id == node_id))
        return result.scalar_one_or_none()

    async def get_root_node(self, pathway_id: uuid.UUID, db: AsyncSession) -> Optional[PathwayNode]:
        result = await db.execute(
            select(PathwayNode).where(
                and_(
                    PathwayNode.pathway_id == pathway_id,
                    PathwayNode.parent_node_id.is_(None),
                    PathwayNode.is_active.is_(True)
                )
            )
        )
        return result.scalars().first()

    async def get_children(self, node_id: uuid.UUID, db: AsyncSession) -> List[PathwayNode]:
        result = await db.execute(
            select(PathwayNode)
            .where(and_(PathwayNode.parent_node_id == node_id, PathwayNode.is_active.is_(True)))
            .order_by(PathwayNode.sort_order.asc(), PathwayNode.id.asc())
        )
        return list(result.scalars().all())

    async def list_by_pathway(
        self,
        pathway_id: uuid.UUID,
        db: AsyncSession,
        include_inactive: bool = False
    ) -> List[PathwayNode]:
        """All nodes of a pathway as a flat list"""
        query = select(PathwayNode).where(PathwayNode.pathway_id == pathway_id)
        if not include_inactive:
            query = query.where(PathwayNode.is_active.is_(True))
        result = await db.execute(query.order_by(PathwayNode.sort_order.asc(), PathwayNode.id.asc()))
        return list(result.scalars().all())

    async def get_node_count(self, pathway_id: uuid.UUID, db: AsyncSession) -> int:
        result = await db.execute(
            select(func.count(PathwayNode.id)).where(
                and_(PathwayNode.pathway_id == pathway_id, PathwayNode.is_active.is_(True))
            )
        )
        return result.scalar() or 0

    async def _existing_root_id(
        self,
        pathway_id: uuid.UUID,
        db: AsyncSession
    ) -> Optional[uuid.UUID]:
        result = await db.execute(
            select(PathwayNode.id).where(
                and_(PathwayNode.pathway_id == pathway_id, PathwayNode.parent_node_id.is_(None))
            )
        )
        return result.scalars().first()

    async def _require_parent(
        self,
        parent_id: uuid.UUID,
        pathway_id: uuid.UUID,
        db: AsyncSession
    ) -> PathwayNode:
        parent = await self.get_by_id(parent_id, db)
        if not parent or parent.pathway_id != pathway_id:
            raise ValidationFailure(
                "Parent node must belong to the same pathway",
                {"parent_node_id": str(parent_id), "pathway_id": str(pathway_id)}
            )
        return parent

    async def create(self, data: NodeCreate, db: AsyncSession) -> PathwayNode:
        pathway_exists = (
            await db.execute(select(ClinicalPathway.id).where(ClinicalPathway.id == data.pathway_id))
        ).first()
        if not pathway_exists:
            raise NotFoundError("Clinical pathway", data.pathway_id)

        if data.parent_node_id is None:
            root_id = await self._existing_root_id(data.pathway_id, db)
            if root_id:
                raise ValidationFailure(
                    "Pathway already has a root node",
                    {"pathway_id": str(data.pathway_id), "root_node_id": str(root_id)}
                )
        else:
            await self._require_parent(data.parent_node_id, data.pathway_id, db)

        node = PathwayNode(
            pathway_id=data.pathway_id,
            parent_node_id=data.parent_node_id,
            node_type=data.node_type,
            title=data.title,
            description=data.description,
            action_type=data.action_type,
            decision_factors=[factor.model_dump(mode="json") for factor in data.decision_factors],
            suggested_template_id=data.suggested_template_id,
            sort_order=data.sort_order,
            base_confidence=data.base_confidence,
            is_active=True,
        )
        db.add(node)
        await flush_or_raise(db, "create node", pathway_id=data.pathway_id)
        await self.pathway_service.touch(data.pathway_id, db)

        logger.info(
            "Pathway node created",
            node_id=str(node.id),
            pathway_id=str(data.pathway_id),
            node_type=node.node_type.value
        )
        return node

    async def update(
        self,
        node_id: uuid.UUID,
        data: NodeUpdate,
        db: AsyncSession
    ) -> Optional[PathwayNode]:
        node = await self.get_by_id(node_id, db)
        if not node:
            return None

        changes = data.changes()
        for field, value in changes.items():
            setattr(node, field, value)

        await flush_or_raise(db, "update node", node_id=node_id)
        await self.pathway_service.touch(node.pathway_id, db)

        logger.info("Pathway node updated", node_id=str(node_id), fields=sorted(changes))
        return node

    async def delete(self, node_id: uuid.UUID, db: AsyncSession) -> bool:
        """Hard-delete a node; its subtree and outcomes go with it"""
        node = await self.get_by_id(node_id, db)
        if not node:
            return False
        pathway_id = node.pathway_id

        subtree = await self._subtree_ids(node, db)
        await db.delete(node)
        await flush_or_raise(db, "delete node", node_id=node_id)

        # Descendants were removed by the database cascade
        for stale in list(db.identity_map.values()):
            if isinstance(stale, PathwayNode) and stale.id in subtree and stale is not node:
                db.expunge(stale)
        await self.pathway_service.touch(pathway_id, db)

        logger.info("Pathway node deleted", node_id=str(node_id), subtree_size=len(subtree))
        return True

    async def _subtree_ids(self, node: PathwayNode, db: AsyncSession) -> Set[uuid.UUID]:
        nodes = await self.list_by_pathway(node.pathway_id, db, include_inactive=True)
        children: Dict[Optional[uuid.UUID], List[uuid.UUID]] = {}
        for candidate in nodes:
            children.setdefault(candidate.parent_node_id, []).append(candidate.id)

        subtree: Set[uuid.UUID] = set()
        stack = [node.id]
        while stack:
            current = stack.pop()
            if current in subtree:
                continue
            subtree.add(current)
            stack.extend(children.get(current, []))
        return subtree

    @staticmethod
    def _ancestor_ids(
        start_id: uuid.UUID,
        parents: Dict[uuid.UUID, Optional[uuid.UUID]]
    ) -> List[uuid.UUID]:
        """Ids from start_id up to the root, start_id included"""
        chain: List[uuid.UUID] = []
        seen: Set[uuid.UUID] = set()
        current: Optional[uuid.UUID] = start_id
        while current is not None and current not in seen:
            seen.add(current)
            chain.append(current)
            current = parents.get(current)
        return chain

    async def move(
        self,
        node_id: uuid.UUID,
        new_parent_id: Optional[uuid.UUID],
        db: AsyncSession,
        new_sort_order: Optional[int] = None
    ) -> Optional[PathwayNode]:
        """
        Re-parent and/or re-order a node.

        Rejects a parent inside the node's own subtree, a parent from another
        pathway and a second root.
        """
        node = await self.get_by_id(node_id, db)
        if not node:
            return None

        if new_parent_id is None:
            root_id = await self._existing_root_id(node.pathway_id, db)
            if root_id and root_id != node.id:
                raise ValidationFailure(
                    "Pathway already has a root node",
                    {"pathway_id": str(node.pathway_id), "root_node_id": str(root_id)}
                )
        else:
            await self._require_parent(new_parent_id, node.pathway_id, db)
            nodes = await self.list_by_pathway(node.pathway_id, db, include_inactive=True)
            parents = {candidate.id: candidate.parent_node_id for candidate in nodes}
            if node.id in self._ancestor_ids(new_parent_id, parents):
                raise ValidationFailure(
                    "A node cannot be moved below itself or one of its descendants",
                    {"node_id": str(node_id), "new_parent_id": str(new_parent_id)}
                )

        node.parent_node_id = new_parent_id
        if new_sort_order is not None:
            node.sort_order = new_sort_order

        await flush_or_raise(db, "move node", node_id=node_id)
        await self.pathway_service.touch(node.pathway_id, db)

        logger.info(
            "Pathway node moved",
            node_id=str(node_id),
            new_parent_id=str(new_parent_id) if new_parent_id else None,
            sort_order=node.sort_order
        )
        return node

    async def get_selection_stats(self, node_id: uuid.UUID, db: AsyncSession) -> NodeSelectionStats:
        Selection = PatientPathwaySelection
        total, ml_recommended, provider_selected, avg_confidence, linked = (
            await db.execute(
                select(
                    func.count(Selection.id),
                    func.count(case((Selection.selection_type == SelectionType.ML_RECOMMENDED, 1))),
                    func.count(case((Selection.selection_type == SelectionType.PROVIDER_SELECTED, 1))),
                    func.avg(Selection.ml_confidence),
                    func.count(Selection.resulting_care_plan_id)
                ).where(Selection.node_id == node_id)
            )
        ).one()

        return NodeSelectionStats(
            total_selections=total,
            ml_recommended_count=ml_recommended,
            provider_selected_count=provider_selected,
            avg_ml_confidence=round(float(avg_confidence), 3) if avg_confidence is not None else None,
            linked_care_plans=linked,
        )


class PathwayNodeOutcomeService:
    """Clinical outcomes attached to pathway nodes"""

    async def get_by_id(self, outcome_id: uuid.UUID, db: AsyncSession) -> Optional[PathwayNodeOutcome]:
        result = await db.execute(select(PathwayNodeOutcome).where(PathwayNodeOutcome.id == outcome_id))
        return result.scalar_one_or_none()

    async def list_by_node(self, node_id: uuid.UUID, db: AsyncSession) -> Sequence[PathwayNodeOutcome]:
        result = await db.execute(
            select(PathwayNodeOutcome)
            .where(PathwayNodeOutcome.node_id == node_id)
            .order_by(PathwayNodeOutcome.sort_order.asc(), PathwayNodeOutcome.id.asc())
        )
        return result.scalars().all()

    async def create(self, data: OutcomeCreate, db: AsyncSession) -> PathwayNodeOutcome:
        node_exists = (await db.execute(select(PathwayNode.id).where(PathwayNode.id == data.node_id))).first()
        if not node_exists:
            raise NotFoundError("Pathway node", data.node_id)

        outcome = PathwayNodeOutcome(**data.model_dump())
        db.add(outcome)
        await flush_or_raise(db, "create node outcome", node_id=data.node_id)

        logger.info("Node outcome created", outcome_id=str(outcome.id), node_id=str(data.node_id))
        return outcome

    async def update(
        self,
        outcome_id: uuid.UUID,
        data: OutcomeUpdate,
        db: AsyncSession
    ) -> Optional[PathwayNodeOutcome]:
        outcome = await self.get_by_id(outcome_id, db)
        if not outcome:
            return None

        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(outcome, field, value)
        await flush_or_raise(db, "update node outcome", outcome_id=outcome_id)
        return outcome

    async def delete(self, outcome_id: uuid.UUID, db: AsyncSession) -> bool:
        outcome = await self.get_by_id(outcome_id, db)
        if not outcome:
            return False
        await db.delete(outcome)
        await flush_or_raise(db, "delete node outcome", outcome_id=outcome_id)
        return True


__all__ = ["PathwayNodeService", "PathwayNodeOutcomeService"]
