import uuid

import pytest

from decision_explorer.core.exceptions import InstanceStateError, NotFoundError, ValidationFailure
from decision_explorer.models import InstanceStatus, NodeType, SelectionType
from decision_explorer.schemas.common import PatientContext
from decision_explorer.schemas.instance import (
    InstanceFilter,
    InstanceStart,
    MlRecommendationsUpdate,
    SelectionRecord
)
from decision_explorer.schemas.pathway import NodeCreate, PathwayCreate
from decision_explorer.services.tracking_service import (
    PatientPathwayInstanceService,
    PatientPathwaySelectionService
)


@pytest.fixture
def instances():
    return PatientPathwayInstanceService()


@pytest.fixture
def selections():
    return PatientPathwaySelectionService()


def start_request(pathway_id, patient_id=None):
    return InstanceStart(
        patient_id=patient_id or uuid.uuid4(),
        provider_id=uuid.uuid4(),
        pathway_id=pathway_id,
        patient_context=PatientContext(condition_codes=["i10"], age=58),
    )


class TestInstanceLifecycle:
    """IN_PROGRESS moves to exactly one terminal state"""

    async def test_start(self, db_session, instances, sample_pathway):
        instance = await instances.start(start_request(sample_pathway.pathway.id), db_session)

        assert instance.status == InstanceStatus.IN_PROGRESS
        assert instance.completed_at is None
        assert instance.patient_context["condition_codes"] == ["I10"]

    async def test_start_for_missing_pathway(self, db_session, instances):
        with pytest.raises(NotFoundError):
            await instances.start(start_request(uuid.uuid4()), db_session)

    async def test_complete_twice_rejected(self, db_session, instances, sample_pathway):
        instance = await instances.start(start_request(sample_pathway.pathway.id), db_session)

        completed = await instances.complete(instance.id, db_session)
        assert completed.status == InstanceStatus.COMPLETED
        assert completed.completed_at is not None

        with pytest.raises(InstanceStateError):
            await instances.complete(instance.id, db_session)

    async def test_abandon_after_complete_rejected(self, db_session, instances, sample_pathway):
        instance = await instances.start(start_request(sample_pathway.pathway.id), db_session)
        await instances.complete(instance.id, db_session)

        with pytest.raises(InstanceStateError) as exc_info:
            await instances.abandon(instance.id, db_session, reason="too late")

        assert exc_info.value.details["status"] == "COMPLETED"

    async def test_abandon_keeps_reason(self, db_session, instances, sample_pathway):
        instance = await instances.start(start_request(sample_pathway.pathway.id), db_session)

        abandoned = await instances.abandon(instance.id, db_session, reason="Patient declined treatment")

        assert abandoned.status == InstanceStatus.ABANDONED
        assert abandoned.abandon_reason == "Patient declined treatment"

    async def test_finish_missing_instance(self, db_session, instances):
        assert await instances.complete(uuid.uuid4(), db_session) is None
        assert await instances.abandon(uuid.uuid4(), db_session) is None

    async def test_set_ml_recommendations(self, db_session, instances, sample_pathway):
        instance = await instances.start(start_request(sample_pathway.pathway.id), db_session)
        path = [sample_pathway.root.id, sample_pathway.a.id]

        updated = await instances.set_ml_recommendations(
            instance.id,
            MlRecommendationsUpdate(
                model_version="v2.1",
                recommended_path=path,
                confidence_scores={str(sample_pathway.a.id): 0.81},
            ),
            db_session
        )

        assert updated.ml_model_version == "v2.1"
        assert updated.ml_recommended_path == [str(node_id) for node_id in path]
        assert updated.ml_confidence_scores == {str(sample_pathway.a.id): 0.81}


class TestInstanceListing:

    async def test_pages_cover_every_instance_once(self, db_session, instances, sample_pathway):
        started = [await instances.start(start_request(sample_pathway.pathway.id), db_session) for _ in range(5)]

        seen = []
        after = None
        while True:
            page = await instances.list(InstanceFilter(), db_session, first=2, after=after)
            assert page.total_count == 5
            seen.extend(edge.node.id for edge in page.edges)
            if not page.page_info.has_next_page:
                break
            after = page.page_info.end_cursor

        assert len(seen) == 5
        assert set(seen) == {instance.id for instance in started}

    async def test_status_filter(self, db_session, instances, sample_pathway):
        first = await instances.start(start_request(sample_pathway.pathway.id), db_session)
        await instances.start(start_request(sample_pathway.pathway.id), db_session)
        await instances.complete(first.id, db_session)

        page = await instances.list(InstanceFilter(status=InstanceStatus.COMPLETED), db_session)

        assert [edge.node.id for edge in page.edges] == [first.id]

    async def test_list_by_patient(self, db_session, instances, sample_pathway):
        patient_id = uuid.uuid4()
        await instances.start(start_request(sample_pathway.pathway.id, patient_id), db_session)
        await instances.start(start_request(sample_pathway.pathway.id, patient_id), db_session)
        await instances.start(start_request(sample_pathway.pathway.id), db_session)

        history = await instances.list_by_patient(patient_id, db_session)

        assert len(history) == 2
        assert all(instance.patient_id == patient_id for instance in history)


class TestSelections:

    async def test_reselecting_a_node_overwrites(self, db_session, instances, selections, sample_pathway):
        instance = await instances.start(start_request(sample_pathway.pathway.id), db_session)

        first = await selections.record(
            SelectionRecord(instance_id=instance.id, node_id=sample_pathway.a.id, ml_confidence=0.7, ml_rank=1),
            db_session
        )
        second = await selections.record(
            SelectionRecord(
                instance_id=instance.id,
                node_id=sample_pathway.a.id,
                selection_type=SelectionType.PROVIDER_SELECTED,
                override_reason="Prefers lifestyle changes first",
            ),
            db_session
        )

        assert second.id == first.id
        rows = await selections.list_by_instance(instance.id, db_session)
        assert len(rows) == 1
        assert rows[0].selection_type == SelectionType.PROVIDER_SELECTED
        assert rows[0].ml_confidence is None

    async def test_selection_on_finished_instance_rejected(
        self, db_session, instances, selections, sample_pathway
    ):
        instance = await instances.start(start_request(sample_pathway.pathway.id), db_session)
        await instances.abandon(instance.id, db_session)

        with pytest.raises(InstanceStateError):
            await selections.record(
                SelectionRecord(instance_id=instance.id, node_id=sample_pathway.a.id),
                db_session
            )

    async def test_node_from_other_pathway_rejected(
        self, db_session, instances, selections, pathway_service, node_service, sample_pathway
    ):
        other = await pathway_service.create(PathwayCreate(name="Atrial Fibrillation"), db_session)
        foreign = await node_service.create(
            NodeCreate(pathway_id=other.id, node_type=NodeType.ROOT, title="Assess stroke risk"),
            db_session
        )
        instance = await instances.start(start_request(sample_pathway.pathway.id), db_session)

        with pytest.raises(ValidationFailure):
            await selections.record(SelectionRecord(instance_id=instance.id, node_id=foreign.id), db_session)

    async def test_unknown_instance(self, db_session, selections, sample_pathway):
        with pytest.raises(NotFoundError):
            await selections.record(
                SelectionRecord(instance_id=uuid.uuid4(), node_id=sample_pathway.a.id),
                db_session
            )

    async def test_blank_override_reason_rejected(self):
        with pytest.raises(ValueError):
            SelectionRecord(instance_id=uuid.uuid4(), node_id=uuid.uuid4(), override_reason="   ")

    async def test_care_plan_link_last_write_wins(self, db_session, instances, selections, sample_pathway):
        instance = await instances.start(start_request(sample_pathway.pathway.id), db_session)
        selection = await selections.record(
            SelectionRecord(instance_id=instance.id, node_id=sample_pathway.a1.id),
            db_session,
            created_by=uuid.uuid4()
        )
        first_plan, second_plan = uuid.uuid4(), uuid.uuid4()

        await selections.link_to_care_plan(selection.id, first_plan, db_session)
        linked = await selections.link_to_care_plan(selection.id, second_plan, db_session)

        assert linked.resulting_care_plan_id == second_plan
        assert await selections.link_to_care_plan(uuid.uuid4(), first_plan, db_session) is None
