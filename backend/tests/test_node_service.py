import uuid

import pytest

from decision_explorer.core.exceptions import InvalidReferenceError, NotFoundError, ValidationFailure
from decision_explorer.models import NodeType
from decision_explorer.schemas.common import DecisionFactor, PatientContext
from decision_explorer.schemas.instance import InstanceStart, SelectionRecord
from decision_explorer.schemas.pathway import (
    NodeCreate,
    NodeUpdate,
    OutcomeCreate,
    OutcomeUpdate,
    PathwayCreate
)
from decision_explorer.services.node_service import PathwayNodeOutcomeService
from decision_explorer.services.tracking_service import (
    PatientPathwayInstanceService,
    PatientPathwaySelectionService
)


class TestNodeStructure:
    """Structural rules of the node tree."""

    async def test_get_root_node(self, db_session, node_service, sample_pathway):
        root = await node_service.get_root_node(sample_pathway.pathway.id, db_session)

        assert root.id == sample_pathway.root.id

    async def test_children_in_sort_order(self, db_session, node_service, sample_pathway):
        children = await node_service.get_children(sample_pathway.root.id, db_session)

        assert [child.title for child in children] == ["Stage 1", "Stage 2"]

    async def test_second_root_rejected(self, db_session, node_service, sample_pathway):
        with pytest.raises(ValidationFailure, match="root"):
            await node_service.create(
                NodeCreate(pathway_id=sample_pathway.pathway.id, node_type=NodeType.ROOT, title="Another root"),
                db_session
            )

        assert await node_service.get_node_count(sample_pathway.pathway.id, db_session) == 4

    async def test_create_in_missing_pathway(self, db_session, node_service):
        with pytest.raises(NotFoundError):
            await node_service.create(
                NodeCreate(pathway_id=uuid.uuid4(), node_type=NodeType.ROOT, title="Root"),
                db_session
            )

    async def test_parent_from_other_pathway_rejected(
        self, db_session, pathway_service, node_service, sample_pathway
    ):
        other = await pathway_service.create(PathwayCreate(name="Other"), db_session)

        with pytest.raises(ValidationFailure, match="same pathway"):
            await node_service.create(
                NodeCreate(
                    pathway_id=other.id,
                    parent_node_id=sample_pathway.a.id,
                    node_type=NodeType.DECISION,
                    title="Cross-linked",
                ),
                db_session
            )

    async def test_update_changes_only_given_fields(self, db_session, node_service, sample_pathway):
        factor = DecisionFactor(type="lab", label="Systolic BP", value=">= 140")

        node = await node_service.update(
            sample_pathway.a.id,
            NodeUpdate(title="Stage 1 hypertension", decision_factors=[factor]),
            db_session
        )

        assert node.title == "Stage 1 hypertension"
        assert node.base_confidence == 0.7
        assert node.decision_factors == [factor.model_dump(mode="json")]

    async def test_update_missing_node(self, db_session, node_service):
        assert await node_service.update(uuid.uuid4(), NodeUpdate(title="x"), db_session) is None


class TestNodeMove:

    async def test_move_under_descendant_rejected(self, db_session, node_service, sample_pathway):
        with pytest.raises(ValidationFailure, match="descendants"):
            await node_service.move(sample_pathway.a.id, sample_pathway.a1.id, db_session)

    async def test_move_under_itself_rejected(self, db_session, node_service, sample_pathway):
        with pytest.raises(ValidationFailure):
            await node_service.move(sample_pathway.a.id, sample_pathway.a.id, db_session)

    async def test_move_to_sibling_branch(self, db_session, node_service, pathway_service, sample_pathway):
        revision = sample_pathway.pathway.revision

        moved = await node_service.move(sample_pathway.a1.id, sample_pathway.b.id, db_session, new_sort_order=3)

        assert moved.parent_node_id == sample_pathway.b.id
        assert moved.sort_order == 3
        pathway = await pathway_service.get_by_id(sample_pathway.pathway.id, db_session)
        assert pathway.revision == revision + 1

    async def test_move_to_root_position_rejected(self, db_session, node_service, sample_pathway):
        with pytest.raises(ValidationFailure, match="root"):
            await node_service.move(sample_pathway.b.id, None, db_session)

    async def test_move_missing_node(self, db_session, node_service, sample_pathway):
        assert await node_service.move(uuid.uuid4(), sample_pathway.root.id, db_session) is None


class TestNodeDelete:

    async def test_delete_removes_subtree(self, db_session, node_service, sample_pathway):
        assert await node_service.delete(sample_pathway.a.id, db_session) is True

        remaining = await node_service.list_by_pathway(sample_pathway.pathway.id, db_session)
        assert sorted(node.title for node in remaining) == ["Confirm diagnosis", "Stage 2"]

    async def test_delete_missing_node(self, db_session, node_service):
        assert await node_service.delete(uuid.uuid4(), db_session) is False

    async def test_delete_selected_node_refused(self, db_session, node_service, sample_pathway):
        instance = await PatientPathwayInstanceService().start(
            InstanceStart(
                patient_id=uuid.uuid4(),
                provider_id=uuid.uuid4(),
                pathway_id=sample_pathway.pathway.id,
                patient_context=PatientContext(condition_codes=["I10"]),
            ),
            db_session
        )
        await PatientPathwaySelectionService().record(
            SelectionRecord(instance_id=instance.id, node_id=sample_pathway.a1.id),
            db_session
        )

        with pytest.raises(InvalidReferenceError):
            await node_service.delete(sample_pathway.a.id, db_session)


class TestNodeOutcomes:

    def setup_method(self):
        self.outcome_service = PathwayNodeOutcomeService()

    async def test_outcome_crud(self, db_session, sample_pathway):
        outcome = await self.outcome_service.create(
            OutcomeCreate(node_id=sample_pathway.a1.id, label="Start lisinopril", medication_code="C09AA03"),
            db_session
        )

        updated = await self.outcome_service.update(outcome.id, OutcomeUpdate(sort_order=2), db_session)
        assert updated.sort_order == 2
        assert updated.label == "Start lisinopril"

        listed = await self.outcome_service.list_by_node(sample_pathway.a1.id, db_session)
        assert [item.id for item in listed] == [outcome.id]

        assert await self.outcome_service.delete(outcome.id, db_session) is True
        assert await self.outcome_service.get_by_id(outcome.id, db_session) is None

    async def test_outcome_for_missing_node(self, db_session):
        with pytest.raises(NotFoundError):
            await self.outcome_service.create(OutcomeCreate(node_id=uuid.uuid4(), label="x"), db_session)

    async def test_selection_stats(self, db_session, node_service, sample_pathway):
        instance = await PatientPathwayInstanceService().start(
            InstanceStart(
                patient_id=uuid.uuid4(),
                provider_id=uuid.uuid4(),
                pathway_id=sample_pathway.pathway.id,
                patient_context=PatientContext(),
            ),
            db_session
        )
        await PatientPathwaySelectionService().record(
            SelectionRecord(instance_id=instance.id, node_id=sample_pathway.a.id, ml_confidence=0.8, ml_rank=1),
            db_session
        )

        stats = await node_service.get_selection_stats(sample_pathway.a.id, db_session)

        assert stats.total_selections == 1
        assert stats.ml_recommended_count == 1
        assert stats.provider_selected_count == 0
        assert stats.avg_ml_confidence == 0.8
        assert stats.linked_care_plans == 0
