from typing import Any, Dict, List
import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from decision_explorer.api.dependencies import get_correlation_id, server_error
from decision_explorer.core.database import get_db
from decision_explorer.core.exceptions import NotFoundError, PathwayError
from decision_explorer.schemas.pathway import (
    NodeCreate,
    NodeMove,
    NodeResponse,
    NodeSelectionStats,
    NodeUpdate,
    OutcomeCreate,
    OutcomeResponse,
    OutcomeUpdate
)
from decision_explorer.services.node_service import PathwayNodeOutcomeService, PathwayNodeService

logger = structlog.get_logger(__name__)
router = APIRouter()

# Initialize services
node_service = PathwayNodeService()
outcome_service = PathwayNodeOutcomeService()


@router.get("/nodes/{node_id}", response_model=NodeResponse, summary="Get Pathway Node")
async def get_node(
    node_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> NodeResponse:
    try:
        node = await node_service.get_by_id(node_id, db)
        if not node:
            raise NotFoundError("Pathway node", node_id)
        return NodeResponse.model_validate(node)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Node lookup failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while loading the node", correlation_id)


@router.post(
    "/nodes",
    response_model=NodeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Pathway Node",
    description="Add a node; omit parent_node_id only for the pathway's single root"
)
async def create_node(
    node_data: NodeCreate,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> NodeResponse:
    try:
        node = await node_service.create(node_data, db)
        logger.info("Node created", correlation_id=correlation_id, node_id=str(node.id))
        return NodeResponse.model_validate(node)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Node creation failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while creating the node", correlation_id)


@router.patch("/nodes/{node_id}", response_model=NodeResponse, summary="Update Pathway Node")
async def update_node(
    node_id: uuid.UUID,
    node_data: NodeUpdate,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> NodeResponse:
    try:
        node = await node_service.update(node_id, node_data, db)
        if not node:
            raise NotFoundError("Pathway node", node_id)
        return NodeResponse.model_validate(node)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Node update failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while updating the node", correlation_id)


@router.delete(
    "/nodes/{node_id}",
    summary="Delete Pathway Node",
    description="Delete a node together with its subtree"
)
async def delete_node(
    node_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    try:
        deleted = await node_service.delete(node_id, db)
        if not deleted:
            raise NotFoundError("Pathway node", node_id)
        return {"id": str(node_id), "deleted": True}

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Node deletion failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while deleting the node", correlation_id)


@router.post(
    "/nodes/{node_id}/move",
    response_model=NodeResponse,
    summary="Move Pathway Node",
    description="Re-parent or re-order a node within its pathway"
)
async def move_node(
    node_id: uuid.UUID,
    move_request: NodeMove,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> NodeResponse:
    try:
        node = await node_service.move(
            node_id, move_request.new_parent_id, db, new_sort_order=move_request.new_sort_order
        )
        if not node:
            raise NotFoundError("Pathway node", node_id)
        return NodeResponse.model_validate(node)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Node move failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while moving the node", correlation_id)


@router.get(
    "/nodes/{node_id}/selection-stats",
    response_model=NodeSelectionStats,
    summary="Node Selection Statistics"
)
async def get_node_selection_stats(
    node_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> NodeSelectionStats:
    try:
        if not await node_service.get_by_id(node_id, db):
            raise NotFoundError("Pathway node", node_id)
        return await node_service.get_selection_stats(node_id, db)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Selection statistics failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while computing selection statistics", correlation_id)


@router.get(
    "/nodes/{node_id}/outcomes",
    response_model=List[OutcomeResponse],
    summary="List Node Outcomes"
)
async def list_node_outcomes(
    node_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> List[OutcomeResponse]:
    try:
        if not await node_service.get_by_id(node_id, db):
            raise NotFoundError("Pathway node", node_id)
        outcomes = await outcome_service.list_by_node(node_id, db)
        return [OutcomeResponse.model_validate(outcome) for outcome in outcomes]

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Outcome listing failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while listing node outcomes", correlation_id)


@router.post(
    "/outcomes",
    response_model=OutcomeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Node Outcome"
)
async def create_outcome(
    outcome_data: OutcomeCreate,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> OutcomeResponse:
    try:
        outcome = await outcome_service.create(outcome_data, db)
        return OutcomeResponse.model_validate(outcome)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Outcome creation failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while creating the outcome", correlation_id)


@router.patch("/outcomes/{outcome_id}", response_model=OutcomeResponse, summary="Update Node Outcome")
async def update_outcome(
    outcome_id: uuid.UUID,
    outcome_data: OutcomeUpdate,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> OutcomeResponse:
    try:
        outcome = await outcome_service.update(outcome_id, outcome_data, db)
        if not outcome:
            raise NotFoundError("Node outcome", outcome_id)
        return OutcomeResponse.model_validate(outcome)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Outcome update failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while updating the outcome", correlation_id)


@router.delete("/outcomes/{outcome_id}", summary="Delete Node Outcome")
async def delete_outcome(
    outcome_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    try:
        deleted = await outcome_service.delete(outcome_id, db)
        if not deleted:
            raise NotFoundError("Node outcome", outcome_id)
        return {"id": str(outcome_id), "deleted": True}

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Outcome deletion failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while deleting the outcome", correlation_id)
