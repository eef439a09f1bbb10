from typing import Any, Dict, List, Optional
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from decision_explorer.api.dependencies import get_correlation_id, get_current_user_id, server_error
from decision_explorer.core.database import get_db
from decision_explorer.core.exceptions import NotFoundError, PathwayError
from decision_explorer.schemas.common import Connection
from decision_explorer.schemas.decision import (
    DecisionTreeRequest,
    DecisionTreeResponse,
    PathwayRecommendation,
    RecommendPathwaysRequest
)
from decision_explorer.schemas.editor import TreeSaveRequest, TreeSaveResult
from decision_explorer.schemas.pathway import (
    DuplicatePathwayRequest,
    NodeResponse,
    PathwayCreate,
    PathwayFilter,
    PathwayNodeTree,
    PathwayResponse,
    PathwayUpdate,
    PathwayUsageStats
)
from decision_explorer.services.decision_service import DecisionService
from decision_explorer.services.editor_service import PathwayTreeEditor
from decision_explorer.services.node_service import PathwayNodeService
from decision_explorer.services.pathway_service import ClinicalPathwayService
from decision_explorer.services.scoring_service import ScoringService
from decision_explorer.services.tree_service import TreeAssembler

logger = structlog.get_logger(__name__)
router = APIRouter()

# Initialize services
pathway_service = ClinicalPathwayService()
node_service = PathwayNodeService(pathway_service)
scoring_service = ScoringService()
decision_service = DecisionService(pathway_service, node_service, scoring_service)
tree_editor = PathwayTreeEditor(pathway_service, node_service)
tree_assembler = TreeAssembler()


async def _require_pathway(pathway_id: uuid.UUID, db: AsyncSession) -> None:
    if not await pathway_service.get_by_id(pathway_id, db):
        raise NotFoundError("Clinical pathway", pathway_id)


@router.get(
    "/pathways",
    response_model=Connection[PathwayResponse],
    summary="List Clinical Pathways",
    description="Cursor-paginated pathways ordered by name"
)
async def list_pathways(
    is_active: Optional[bool] = Query(None, description="Filter by active flag"),
    is_published: Optional[bool] = Query(None, description="Filter by published flag"),
    condition_code: Optional[str] = Query(None, description="Exact ICD-10 condition code"),
    search_term: Optional[str] = Query(None, description="Case-insensitive match on name or description"),
    first: Optional[int] = Query(None, ge=1, description="Page size"),
    after: Optional[str] = Query(None, description="Cursor of the last item of the previous page"),
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> Connection[PathwayResponse]:
    try:
        filters = PathwayFilter(
            is_active=is_active,
            is_published=is_published,
            condition_code=condition_code,
            search_term=search_term
        )
        return await pathway_service.list(filters, db, first=first, after=after)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Pathway listing failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while listing pathways", correlation_id)


@router.post(
    "/pathways",
    response_model=PathwayResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Clinical Pathway",
    description="Create a draft pathway; nodes are added separately or through a tree save"
)
async def create_pathway(
    pathway_data: PathwayCreate,
    correlation_id: str = Depends(get_correlation_id),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
) -> PathwayResponse:
    try:
        pathway = await pathway_service.create(pathway_data, db, created_by=user_id)
        logger.info("Pathway created", correlation_id=correlation_id, pathway_id=str(pathway.id))
        return PathwayResponse.model_validate(pathway)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Pathway creation failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while creating the pathway", correlation_id)


@router.post(
    "/pathways/recommend",
    response_model=List[PathwayRecommendation],
    summary="Recommend Pathways for Patient",
    description="Rank pathways for a patient context using the scorer, with condition-code fallback"
)
async def recommend_pathways(
    recommend_request: RecommendPathwaysRequest,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> List[PathwayRecommendation]:
    """
    Recommend pathways for a patient.

    **Parameters:**
    - **patient_context**: Conditions, medications, labs and demographics
    - **first**: Maximum number of recommendations (default 5)

    **Returns:**
    - **pathway**, **match_score**, **match_reasons**, **ml_confidence** per match
    """
    try:
        recommendations = await decision_service.recommend_pathways(
            recommend_request.patient_context, db, first=recommend_request.first
        )
        logger.info(
            "Pathway recommendations served",
            correlation_id=correlation_id,
            count=len(recommendations)
        )
        return recommendations

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Pathway recommendation failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while recommending pathways", correlation_id)


@router.get(
    "/pathways/slug/{slug}",
    response_model=PathwayResponse,
    summary="Get Pathway by Slug"
)
async def get_pathway_by_slug(
    slug: str,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> PathwayResponse:
    try:
        pathway = await pathway_service.get_by_slug(slug, db)
        if not pathway:
            raise NotFoundError("Clinical pathway", slug)
        return PathwayResponse.model_validate(pathway)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Pathway lookup failed", correlation_id=correlation_id, slug=slug, error=str(e), exc_info=True)
        raise server_error("An error occurred while loading the pathway", correlation_id)


@router.get(
    "/pathways/{pathway_id}",
    response_model=PathwayResponse,
    summary="Get Clinical Pathway"
)
async def get_pathway(
    pathway_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> PathwayResponse:
    try:
        pathway = await pathway_service.get_response(pathway_id, db)
        if not pathway:
            raise NotFoundError("Clinical pathway", pathway_id)
        return pathway

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error(
            "Pathway lookup failed",
            correlation_id=correlation_id,
            pathway_id=str(pathway_id),
            error=str(e),
            exc_info=True
        )
        raise server_error("An error occurred while loading the pathway", correlation_id)


@router.patch(
    "/pathways/{pathway_id}",
    response_model=PathwayResponse,
    summary="Update Clinical Pathway",
    description="Partial update; send expected_revision to guard against concurrent edits"
)
async def update_pathway(
    pathway_id: uuid.UUID,
    pathway_data: PathwayUpdate,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> PathwayResponse:
    try:
        pathway = await pathway_service.update(pathway_id, pathway_data, db)
        if not pathway:
            raise NotFoundError("Clinical pathway", pathway_id)
        return PathwayResponse.model_validate(pathway)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error(
            "Pathway update failed",
            correlation_id=correlation_id,
            pathway_id=str(pathway_id),
            error=str(e),
            exc_info=True
        )
        raise server_error("An error occurred while updating the pathway", correlation_id)


@router.delete(
    "/pathways/{pathway_id}",
    summary="Delete Clinical Pathway",
    description="Delete a pathway with its nodes; refused while patient instances reference it"
)
async def delete_pathway(
    pathway_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    try:
        deleted = await pathway_service.delete(pathway_id, db)
        if not deleted:
            raise NotFoundError("Clinical pathway", pathway_id)
        return {"id": str(pathway_id), "deleted": True}

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error(
            "Pathway deletion failed",
            correlation_id=correlation_id,
            pathway_id=str(pathway_id),
            error=str(e),
            exc_info=True
        )
        raise server_error("An error occurred while deleting the pathway", correlation_id)


@router.post(
    "/pathways/{pathway_id}/publish",
    response_model=PathwayResponse,
    summary="Publish Clinical Pathway",
    description="Publish a pathway; it must have exactly one root node"
)
async def publish_pathway(
    pathway_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> PathwayResponse:
    try:
        pathway = await pathway_service.publish(pathway_id, db)
        if not pathway:
            raise NotFoundError("Clinical pathway", pathway_id)
        return PathwayResponse.model_validate(pathway)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Pathway publish failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while publishing the pathway", correlation_id)


@router.post(
    "/pathways/{pathway_id}/unpublish",
    response_model=PathwayResponse,
    summary="Unpublish Clinical Pathway"
)
async def unpublish_pathway(
    pathway_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> PathwayResponse:
    try:
        pathway = await pathway_service.unpublish(pathway_id, db)
        if not pathway:
            raise NotFoundError("Clinical pathway", pathway_id)
        return PathwayResponse.model_validate(pathway)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Pathway unpublish failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while unpublishing the pathway", correlation_id)


@router.post(
    "/pathways/{pathway_id}/duplicate",
    response_model=PathwayResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Duplicate Clinical Pathway",
    description="Deep-copy a pathway with its node tree as a new unpublished draft"
)
async def duplicate_pathway(
    pathway_id: uuid.UUID,
    duplicate_request: DuplicatePathwayRequest,
    correlation_id: str = Depends(get_correlation_id),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
) -> PathwayResponse:
    try:
        clone = await pathway_service.duplicate(
            pathway_id, duplicate_request.new_name, db, created_by=user_id
        )
        if not clone:
            raise NotFoundError("Clinical pathway", pathway_id)
        return PathwayResponse.model_validate(clone)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Pathway duplication failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while duplicating the pathway", correlation_id)


@router.get(
    "/pathways/{pathway_id}/nodes",
    response_model=List[NodeResponse],
    summary="List Pathway Nodes",
    description="Flat node list of a pathway ordered by sort order"
)
async def list_pathway_nodes(
    pathway_id: uuid.UUID,
    include_inactive: bool = Query(False, description="Include deactivated nodes"),
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> List[NodeResponse]:
    try:
        await _require_pathway(pathway_id, db)
        nodes = await node_service.list_by_pathway(pathway_id, db, include_inactive=include_inactive)
        return [NodeResponse.model_validate(node) for node in nodes]

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Node listing failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while listing pathway nodes", correlation_id)


@router.get(
    "/pathways/{pathway_id}/tree",
    response_model=Optional[PathwayNodeTree],
    summary="Get Pathway Tree",
    description="Editor view of the node tree; null when the pathway has no root yet"
)
async def get_pathway_tree(
    pathway_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> Optional[PathwayNodeTree]:
    try:
        await _require_pathway(pathway_id, db)
        nodes = await node_service.list_by_pathway(pathway_id, db, include_inactive=True)
        return tree_assembler.build_node_tree(nodes)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Pathway tree load failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while loading the pathway tree", correlation_id)


@router.put(
    "/pathways/{pathway_id}/tree",
    response_model=TreeSaveResult,
    summary="Save Pathway Tree",
    description="Persist an editor tree, resolving temporary ids of new nodes"
)
async def save_pathway_tree(
    pathway_id: uuid.UUID,
    save_request: TreeSaveRequest,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> TreeSaveResult:
    """
    Save a pathway tree built in the editor.

    **Parameters:**
    - **expected_revision**: Revision the editor loaded; 409 when stale
    - **pathway**: Optional metadata changes
    - **root**: Full editor tree; new nodes carry `temp-` ids
    - **deleted_node_ids**: Nodes removed in the editor

    **Returns:**
    - **id_map**: Temporary id to server id for every created node
    """
    try:
        result = await tree_editor.save_tree(pathway_id, save_request, db)
        logger.info(
            "Pathway tree save completed",
            correlation_id=correlation_id,
            pathway_id=str(pathway_id),
            created=result.created,
            updated=result.updated
        )
        return result

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Pathway tree save failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while saving the pathway tree", correlation_id)


@router.post(
    "/pathways/{pathway_id}/decision-tree",
    response_model=DecisionTreeResponse,
    summary="Get Decision Tree",
    description="Pathway tree decorated with confidences, scored for a patient when a context is given"
)
async def get_decision_tree(
    pathway_id: uuid.UUID,
    tree_request: Optional[DecisionTreeRequest] = None,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> DecisionTreeResponse:
    """
    Build the decision tree of a pathway.

    **Parameters:**
    - **patient_context**: Optional; without it nodes carry their base confidence

    **Returns:**
    - **tree**: Nested nodes with confidence, factors and recommendation details
    - **model_version**: Scorer model version, or `no-context`
    - **processing_time_ms**: Server-side processing time
    """
    try:
        patient_context = tree_request.patient_context if tree_request else None
        response = await decision_service.get_decision_tree(pathway_id, db, patient_context=patient_context)

        logger.info(
            "Decision tree served",
            correlation_id=correlation_id,
            pathway_id=str(pathway_id),
            model_version=response.model_version,
            processing_time_ms=response.processing_time_ms
        )
        return response

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Decision tree failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while building the decision tree", correlation_id)


@router.get(
    "/pathways/{pathway_id}/usage-stats",
    response_model=PathwayUsageStats,
    summary="Pathway Usage Statistics"
)
async def get_pathway_usage_stats(
    pathway_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> PathwayUsageStats:
    try:
        await _require_pathway(pathway_id, db)
        return await pathway_service.get_usage_stats(pathway_id, db)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Usage statistics failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while computing usage statistics", correlation_id)


@router.post(
    "/pathways/{pathway_id}/embeddings",
    summary="Generate Pathway Embeddings",
    description="Ask the scorer to re-index the pathway for recommendation matching"
)
async def generate_pathway_embeddings(
    pathway_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    try:
        await _require_pathway(pathway_id, db)
        success = await scoring_service.generate_pathway_embeddings(pathway_id)
        logger.info("Pathway embeddings requested", correlation_id=correlation_id, success=success)
        return {"pathway_id": str(pathway_id), "success": success}

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Embedding request failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while requesting embeddings", correlation_id)


@router.post(
    "/pathways/{pathway_id}/node-embeddings",
    summary="Generate Node Embeddings",
    description="Ask the scorer to re-index every node of the pathway"
)
async def generate_node_embeddings(
    pathway_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    try:
        await _require_pathway(pathway_id, db)
        node_count = await scoring_service.generate_node_embeddings(pathway_id)
        logger.info("Node embeddings requested", correlation_id=correlation_id, node_count=node_count)
        return {"pathway_id": str(pathway_id), "node_count": node_count}

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Embedding request failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while requesting node embeddings", correlation_id)
