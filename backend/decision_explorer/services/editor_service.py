from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple
import uuid

from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from decision_explorer.core.exceptions import NotFoundError, PathwayError, TreeSaveError, ValidationFailure
from decision_explorer.schemas.editor import EditorNode, TreeSaveRequest, TreeSaveResult
from decision_explorer.schemas.pathway import NodeCreate, NodeUpdate, PathwayResponse, PathwayUpdate
from decision_explorer.services.node_service import PathwayNodeService
from decision_explorer.services.pathway_service import ClinicalPathwayService

logger = structlog.get_logger(__name__)


@dataclass
class _SaveProgress:
    owned_ids: Set[uuid.UUID] = field(default_factory=set)
    id_map: Dict[str, uuid.UUID] = field(default_factory=dict)
    created: int = 0
    updated: int = 0
    moved: int = 0
    deleted: int = 0


class PathwayTreeEditor:
    """
    Persists a tree built in the pathway editor.

    The tree is walked depth-first with every parent written before its
    children, so a new child is always created under the server id its
    (possibly just created) parent received. Temporary ids are resolved
    through an explicit temp-id to server-id map. The whole save runs in
    the caller's transaction: the first failing node write aborts it.
    """

    def __init__(
        self,
        pathway_service: Optional[ClinicalPathwayService] = None,
        node_service: Optional[PathwayNodeService] = None
    ):
        self.pathway_service = pathway_service or ClinicalPathwayService()
        self.node_service = node_service or PathwayNodeService(self.pathway_service)

    async def save_tree(
        self,
        pathway_id: uuid.UUID,
        request: TreeSaveRequest,
        db: AsyncSession
    ) -> TreeSaveResult:
        metadata = (request.pathway or PathwayUpdate()).model_copy(
            update={"expected_revision": request.expected_revision}
        )
        pathway = await self.pathway_service.update(pathway_id, metadata, db)
        if not pathway:
            raise NotFoundError("Clinical pathway", pathway_id)

        progress = _SaveProgress(
            owned_ids={
                node.id for node in await self.node_service.list_by_pathway(pathway_id, db, include_inactive=True)
            }
        )

        for node_id in request.deleted_node_ids:
            if node_id not in progress.owned_ids:
                # Already gone: nothing to delete
                if await self.node_service.get_by_id(node_id, db) is None:
                    continue
                logger.warning(
                    "Tree save aborted",
                    pathway_id=str(pathway_id),
                    node_id=str(node_id),
                    action="delete",
                    error="Node does not belong to the pathway"
                )
                raise TreeSaveError(
                    f"Failed to delete node: {node_id}",
                    {"node_id": str(node_id), "reason": "Node does not belong to the pathway"}
                )
            if await self.node_service.delete(node_id, db):
                progress.deleted += 1

        # (editor node, resolved parent id, sibling index)
        stack: List[Tuple[EditorNode, Optional[uuid.UUID], int]] = [(request.root, None, 0)]
        while stack:
            node, parent_id, sort_order = stack.pop()
            real_id = await self._save_node(pathway_id, node, parent_id, sort_order, db, progress)
            for index in range(len(node.children) - 1, -1, -1):
                stack.append((node.children[index], real_id, index))

        logger.info(
            "Pathway tree saved",
            pathway_id=str(pathway_id),
            created=progress.created,
            updated=progress.updated,
            moved=progress.moved,
            deleted=progress.deleted,
            revision=pathway.revision
        )

        return TreeSaveResult(
            pathway=PathwayResponse.model_validate(pathway),
            id_map=progress.id_map,
            created=progress.created,
            updated=progress.updated,
            moved=progress.moved,
            deleted=progress.deleted,
        )

    async def _save_node(
        self,
        pathway_id: uuid.UUID,
        node: EditorNode,
        parent_id: Optional[uuid.UUID],
        sort_order: int,
        db: AsyncSession,
        progress: _SaveProgress
    ) -> uuid.UUID:
        action = "create" if node.is_new else "update"
        try:
            if node.is_new:
                created = await self.node_service.create(
                    NodeCreate(
                        pathway_id=pathway_id,
                        parent_node_id=parent_id,
                        node_type=node.node_type,
                        title=node.title,
                        description=node.description,
                        action_type=node.action_type,
                        decision_factors=node.decision_factors,
                        suggested_template_id=node.suggested_template_id,
                        sort_order=sort_order,
                        base_confidence=node.base_confidence,
                    ),
                    db
                )
                progress.id_map[node.id] = created.id
                progress.created += 1
                return created.id

            node_id = uuid.UUID(node.id)
            if node_id not in progress.owned_ids:
                raise ValidationFailure(
                    "Node does not belong to the pathway",
                    {"node_id": node.id, "pathway_id": str(pathway_id)}
                )

            position_known = node.sort_order is not None
            position_changed = position_known and (
                node.parent_node_id != parent_id or node.sort_order != sort_order
            )

            if node.is_dirty:
                updated = await self.node_service.update(
                    node_id,
                    NodeUpdate(
                        node_type=node.node_type,
                        title=node.title,
                        description=node.description,
                        action_type=node.action_type,
                        decision_factors=node.decision_factors,
                        suggested_template_id=node.suggested_template_id,
                        base_confidence=node.base_confidence,
                        sort_order=sort_order,
                    ),
                    db
                )
                if updated is None:
                    raise NotFoundError("Pathway node", node_id)
                progress.updated += 1
                if updated.parent_node_id != parent_id:
                    await self.node_service.move(node_id, parent_id, db, new_sort_order=sort_order)
                    progress.moved += 1
            elif position_changed:
                moved = await self.node_service.move(node_id, parent_id, db, new_sort_order=sort_order)
                if moved is None:
                    raise NotFoundError("Pathway node", node_id)
                progress.moved += 1

            return node_id

        except PathwayError as e:
            logger.warning(
                "Tree save aborted",
                pathway_id=str(pathway_id),
                node_id=node.id,
                action=action,
                error=e.message
            )
            raise TreeSaveError(
                f"Failed to {action} node: {node.title}",
                {"node_id": node.id, "reason": e.message}
            ) from e


__all__ = ["PathwayTreeEditor"]
