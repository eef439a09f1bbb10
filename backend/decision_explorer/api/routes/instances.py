from datetime import datetime
from typing import List, Optional
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from decision_explorer.api.dependencies import get_correlation_id, get_current_user_id, server_error
from decision_explorer.core.database import get_db
from decision_explorer.core.exceptions import NotFoundError, PathwayError
from decision_explorer.models.instance import InstanceStatus
from decision_explorer.schemas.common import Connection
from decision_explorer.schemas.instance import (
    AbandonRequest,
    InstanceFilter,
    InstanceResponse,
    InstanceStart,
    LinkCarePlanRequest,
    MlRecommendationsUpdate,
    SelectionRecord,
    SelectionResponse
)
from decision_explorer.services.tracking_service import (
    PatientPathwayInstanceService,
    PatientPathwaySelectionService
)

logger = structlog.get_logger(__name__)
router = APIRouter()

# Initialize services
instance_service = PatientPathwayInstanceService()
selection_service = PatientPathwaySelectionService()


@router.post(
    "/instances",
    response_model=InstanceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start Pathway Instance",
    description="Start a patient traversal of a pathway, snapshotting the patient context"
)
async def start_instance(
    instance_data: InstanceStart,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> InstanceResponse:
    try:
        instance = await instance_service.start(instance_data, db)
        logger.info("Instance started", correlation_id=correlation_id, instance_id=str(instance.id))
        return InstanceResponse.model_validate(instance)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Instance start failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while starting the pathway instance", correlation_id)


@router.get(
    "/instances",
    response_model=Connection[InstanceResponse],
    summary="List Pathway Instances",
    description="Cursor-paginated instances, most recently started first"
)
async def list_instances(
    patient_id: Optional[uuid.UUID] = Query(None),
    pathway_id: Optional[uuid.UUID] = Query(None),
    provider_id: Optional[uuid.UUID] = Query(None),
    instance_status: Optional[InstanceStatus] = Query(None, alias="status"),
    started_after: Optional[datetime] = Query(None),
    started_before: Optional[datetime] = Query(None),
    first: Optional[int] = Query(None, ge=1, description="Page size"),
    after: Optional[str] = Query(None, description="Cursor of the last item of the previous page"),
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> Connection[InstanceResponse]:
    try:
        filters = InstanceFilter(
            patient_id=patient_id,
            pathway_id=pathway_id,
            provider_id=provider_id,
            status=instance_status,
            started_after=started_after,
            started_before=started_before
        )
        return await instance_service.list(filters, db, first=first, after=after)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Instance listing failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while listing pathway instances", correlation_id)


@router.get("/instances/{instance_id}", response_model=InstanceResponse, summary="Get Pathway Instance")
async def get_instance(
    instance_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> InstanceResponse:
    try:
        instance = await instance_service.get_by_id(instance_id, db)
        if not instance:
            raise NotFoundError("Pathway instance", instance_id)
        return InstanceResponse.model_validate(instance)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Instance lookup failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while loading the pathway instance", correlation_id)


@router.post(
    "/instances/{instance_id}/complete",
    response_model=InstanceResponse,
    summary="Complete Pathway Instance"
)
async def complete_instance(
    instance_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> InstanceResponse:
    try:
        instance = await instance_service.complete(instance_id, db)
        if not instance:
            raise NotFoundError("Pathway instance", instance_id)
        return InstanceResponse.model_validate(instance)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Instance completion failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while completing the pathway instance", correlation_id)


@router.post(
    "/instances/{instance_id}/abandon",
    response_model=InstanceResponse,
    summary="Abandon Pathway Instance"
)
async def abandon_instance(
    instance_id: uuid.UUID,
    abandon_request: Optional[AbandonRequest] = None,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> InstanceResponse:
    try:
        reason = abandon_request.reason if abandon_request else None
        instance = await instance_service.abandon(instance_id, db, reason=reason)
        if not instance:
            raise NotFoundError("Pathway instance", instance_id)
        return InstanceResponse.model_validate(instance)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Instance abandon failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while abandoning the pathway instance", correlation_id)


@router.post(
    "/instances/{instance_id}/ml-recommendations",
    response_model=InstanceResponse,
    summary="Store ML Recommendations",
    description="Record the scorer's recommended path and confidences shown for this instance"
)
async def set_ml_recommendations(
    instance_id: uuid.UUID,
    recommendations: MlRecommendationsUpdate,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> InstanceResponse:
    try:
        instance = await instance_service.set_ml_recommendations(instance_id, recommendations, db)
        if not instance:
            raise NotFoundError("Pathway instance", instance_id)
        return InstanceResponse.model_validate(instance)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Storing recommendations failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while storing ML recommendations", correlation_id)


@router.get(
    "/instances/{instance_id}/selections",
    response_model=List[SelectionResponse],
    summary="List Instance Selections"
)
async def list_instance_selections(
    instance_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> List[SelectionResponse]:
    try:
        if not await instance_service.get_by_id(instance_id, db):
            raise NotFoundError("Pathway instance", instance_id)
        selections = await selection_service.list_by_instance(instance_id, db)
        return [SelectionResponse.model_validate(selection) for selection in selections]

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Selection listing failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while listing selections", correlation_id)


@router.post(
    "/selections",
    response_model=SelectionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record Pathway Selection",
    description="Record the node chosen at a decision point; re-selecting a node replaces the earlier record"
)
async def record_selection(
    selection_data: SelectionRecord,
    correlation_id: str = Depends(get_correlation_id),
    user_id: Optional[uuid.UUID] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db)
) -> SelectionResponse:
    try:
        selection = await selection_service.record(selection_data, db, created_by=user_id)
        logger.info(
            "Selection recorded",
            correlation_id=correlation_id,
            selection_id=str(selection.id),
            selection_type=selection.selection_type.value
        )
        return SelectionResponse.model_validate(selection)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Selection recording failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while recording the selection", correlation_id)


@router.post(
    "/selections/{selection_id}/link-care-plan",
    response_model=SelectionResponse,
    summary="Link Selection to Care Plan",
    description="Attach the care plan created from a selection; a later link replaces an earlier one"
)
async def link_selection_to_care_plan(
    selection_id: uuid.UUID,
    link_request: LinkCarePlanRequest,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> SelectionResponse:
    try:
        selection = await selection_service.link_to_care_plan(selection_id, link_request.care_plan_id, db)
        if not selection:
            raise NotFoundError("Pathway selection", selection_id)
        return SelectionResponse.model_validate(selection)

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Care plan link failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while linking the care plan", correlation_id)


@router.get(
    "/patients/{patient_id}/pathway-history",
    response_model=List[InstanceResponse],
    summary="Patient Pathway History",
    description="All pathway instances of a patient, most recent first"
)
async def get_patient_pathway_history(
    patient_id: uuid.UUID,
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db)
) -> List[InstanceResponse]:
    try:
        instances = await instance_service.list_by_patient(patient_id, db)
        return [InstanceResponse.model_validate(instance) for instance in instances]

    except (HTTPException, PathwayError):
        raise
    except Exception as e:
        logger.error("Patient history failed", correlation_id=correlation_id, error=str(e), exc_info=True)
        raise server_error("An error occurred while loading the patient pathway history", correlation_id)
