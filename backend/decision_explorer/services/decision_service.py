from typing import List, Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from decision_explorer.core.config import AppConstants, get_settings
from decision_explorer.core.exceptions import NotFoundError
from decision_explorer.schemas.common import PatientContext
from decision_explorer.schemas.decision import (
    DecisionTreeResponse,
    PathwayRecommendation,
    ScoringResult
)
from decision_explorer.schemas.pathway import PathwayFilter, PathwayResponse
from decision_explorer.services.node_service import PathwayNodeService
from decision_explorer.services.pathway_service import ClinicalPathwayService
from decision_explorer.services.scoring_service import ScoringService
from decision_explorer.services.tree_service import TreeAssembler
from decision_explorer.utils.logger import operation_timer

logger = structlog.get_logger(__name__)


def codes_match(patient_code: str, pathway_code: str) -> bool:
    """ICD-10 hierarchy match: either code is a prefix of the other"""
    return pathway_code.startswith(patient_code) or patient_code.startswith(pathway_code)


class DecisionService:
    """Builds scored decision trees and patient pathway recommendations"""

    def __init__(
        self,
        pathway_service: Optional[ClinicalPathwayService] = None,
        node_service: Optional[PathwayNodeService] = None,
        scoring_service: Optional[ScoringService] = None,
        assembler: Optional[TreeAssembler] = None
    ):
        self.settings = get_settings()
        self.pathway_service = pathway_service or ClinicalPathwayService()
        self.node_service = node_service or PathwayNodeService(self.pathway_service)
        self.scoring_service = scoring_service or ScoringService()
        self.assembler = assembler or TreeAssembler()

    async def get_decision_tree(
        self,
        pathway_id: uuid.UUID,
        db: AsyncSession,
        patient_context: Optional[PatientContext] = None
    ) -> DecisionTreeResponse:
        """
        Assemble the decision tree of a pathway, scored for a patient when a
        context is given.

        Scorer failures never surface: the tree then carries base
        confidences and no recommended path.
        """
        async with operation_timer("get_decision_tree", pathway_id=str(pathway_id)) as timing:
            pathway = await self.pathway_service.get_by_id(pathway_id, db)
            if not pathway:
                raise NotFoundError("Clinical pathway", pathway_id)

            root = await self.node_service.get_root_node(pathway_id, db)
            if not root:
                raise NotFoundError("Root node for pathway", pathway_id)

            nodes = await self.node_service.list_by_pathway(pathway_id, db)

            if patient_context is not None:
                scoring = await self.scoring_service.score_tree(pathway_id, nodes, patient_context)
                model_version = scoring.model_version or self.settings.scorer.SCORER_MODEL_VERSION
            else:
                scoring = ScoringResult()
                model_version = AppConstants.NO_CONTEXT_MODEL_VERSION

            tree = self.assembler.build_decision_tree(nodes, scoring.scores, root=root)
            pathway_response = PathwayResponse.model_validate(pathway)

        logger.info(
            "Decision tree built",
            pathway_id=str(pathway_id),
            node_count=len(nodes),
            scored_nodes=len(scoring.scores),
            model_version=model_version
        )

        return DecisionTreeResponse(
            pathway=pathway_response,
            tree=tree,
            model_version=model_version,
            processing_time_ms=round(timing["duration_ms"], 2),
        )

    async def recommend_pathways(
        self,
        patient_context: PatientContext,
        db: AsyncSession,
        first: Optional[int] = None
    ) -> List[PathwayRecommendation]:
        """Rank pathways for a patient, falling back to condition-code matching"""
        limit = first or self.settings.pathways.RECOMMENDATION_LIMIT

        scorer_results = await self.scoring_service.recommend_pathways(patient_context, limit)
        if scorer_results:
            recommendations: List[PathwayRecommendation] = []
            for result in scorer_results:
                pathway = await self.pathway_service.get_by_id(result.pathway_id, db)
                if not pathway:
                    logger.warning("Scorer recommended unknown pathway", pathway_id=str(result.pathway_id))
                    continue
                recommendations.append(
                    PathwayRecommendation(
                        pathway=PathwayResponse.model_validate(pathway),
                        match_score=result.match_score if result.match_score is not None
                        else AppConstants.ML_DEFAULT_MATCH_SCORE,
                        match_reasons=result.match_reasons or list(AppConstants.ML_DEFAULT_MATCH_REASONS),
                        ml_confidence=result.ml_confidence if result.ml_confidence is not None
                        else AppConstants.ML_DEFAULT_CONFIDENCE,
                    )
                )
            if recommendations:
                return recommendations[:limit]

        return await self._fallback_recommendations(patient_context, db, limit)

    async def _fallback_recommendations(
        self,
        patient_context: PatientContext,
        db: AsyncSession,
        limit: int
    ) -> List[PathwayRecommendation]:
        candidates = await self.pathway_service.list(
            PathwayFilter(is_active=True, is_published=True),
            db,
            first=self.settings.pathways.FALLBACK_CANDIDATE_LIMIT
        )

        matches: List[PathwayRecommendation] = []
        for edge in candidates.edges:
            pathway = edge.node
            if any(
                codes_match(patient_code, pathway_code)
                for patient_code in patient_context.condition_codes
                for pathway_code in pathway.primary_condition_codes
            ):
                matches.append(
                    PathwayRecommendation(
                        pathway=pathway,
                        match_score=AppConstants.FALLBACK_MATCH_SCORE,
                        match_reasons=list(AppConstants.FALLBACK_MATCH_REASONS),
                        ml_confidence=AppConstants.FALLBACK_CONFIDENCE,
                    )
                )

        logger.info(
            "Condition-code fallback recommendations",
            candidates=len(candidates.edges),
            matches=len(matches)
        )
        return matches[:limit]


__all__ = ["DecisionService", "codes_match"]
