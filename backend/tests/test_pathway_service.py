import uuid
from unittest.mock import AsyncMock, call

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from decision_explorer.core.database import DatabaseManager
from decision_explorer.core.exceptions import ConflictError, InvalidReferenceError, ValidationFailure
from decision_explorer.models import InstanceStatus, NodeType, PathwayNode, SelectionType
from decision_explorer.schemas.common import PatientContext
from decision_explorer.schemas.instance import InstanceStart, SelectionRecord
from decision_explorer.schemas.pathway import (
    OutcomeCreate,
    PathwayCreate,
    PathwayFilter,
    PathwayUpdate
)
from decision_explorer.services.node_service import PathwayNodeOutcomeService
from decision_explorer.services.pathway_service import ClinicalPathwayService
from decision_explorer.services.tracking_service import (
    PatientPathwayInstanceService,
    PatientPathwaySelectionService
)
from decision_explorer.services.tree_service import TreeAssembler, flatten_tree
from decision_explorer.utils.cache import CacheManager


class TestPathwayLifecycle:
    """Create, update, publish and delete pathways."""

    async def test_create_derives_unique_slug(self, db_session, pathway_service):
        first = await pathway_service.create(PathwayCreate(name="Heart Failure (HFrEF)"), db_session)
        second = await pathway_service.create(PathwayCreate(name="Heart failure HFrEF"), db_session)

        assert first.slug == "heart-failure-hfref"
        assert second.slug == "heart-failure-hfref-2"
        assert first.revision == 1
        assert first.is_published is False

    async def test_condition_codes_keep_order(self, db_session, pathway_service):
        pathway = await pathway_service.create(
            PathwayCreate(name="CKD", primary_condition_codes=["n18.3", "N18.4", "E11.22"]),
            db_session
        )

        assert pathway.primary_condition_codes == ["N18.3", "N18.4", "E11.22"]

    async def test_update_missing_pathway_returns_none(self, db_session, pathway_service):
        assert await pathway_service.update(uuid.uuid4(), PathwayUpdate(name="x"), db_session) is None

    async def test_update_bumps_revision_and_slug(self, db_session, pathway_service):
        pathway = await pathway_service.create(PathwayCreate(name="Asthma"), db_session)

        updated = await pathway_service.update(
            pathway.id,
            PathwayUpdate(name="Adult Asthma", primary_condition_codes=["J45"], expected_revision=1),
            db_session
        )

        assert updated.revision == 2
        assert updated.slug == "adult-asthma"
        assert updated.primary_condition_codes == ["J45"]

    async def test_stale_revision_conflicts(self, db_session, pathway_service):
        pathway = await pathway_service.create(PathwayCreate(name="COPD"), db_session)
        await pathway_service.update(pathway.id, PathwayUpdate(description="v2"), db_session)

        with pytest.raises(ConflictError) as exc_info:
            await pathway_service.update(
                pathway.id, PathwayUpdate(description="stale", expected_revision=1), db_session
            )

        assert exc_info.value.details["current_revision"] == 2

    async def test_node_writes_bump_revision(self, sample_pathway):
        # created at revision 1, then four node inserts
        assert sample_pathway.pathway.revision == 5

    async def test_publish_requires_root(self, db_session, pathway_service):
        pathway = await pathway_service.create(PathwayCreate(name="Empty"), db_session)

        with pytest.raises(ValidationFailure):
            await pathway_service.publish(pathway.id, db_session)

    async def test_publish_and_unpublish(self, db_session, pathway_service, sample_pathway):
        published = await pathway_service.publish(sample_pathway.pathway.id, db_session)
        assert published.is_published is True
        assert published.published_at is not None

        unpublished = await pathway_service.unpublish(sample_pathway.pathway.id, db_session)
        assert unpublished.is_published is False
        assert unpublished.published_at is None

    async def test_delete_cascades_nodes(self, db_session, pathway_service, sample_pathway):
        assert await pathway_service.delete(sample_pathway.pathway.id, db_session) is True

        remaining = (await db_session.execute(select(PathwayNode.id))).all()
        assert remaining == []
        assert await pathway_service.delete(sample_pathway.pathway.id, db_session) is False

    async def test_delete_refused_while_instances_exist(self, db_session, pathway_service, sample_pathway):
        await PatientPathwayInstanceService().start(
            InstanceStart(
                patient_id=uuid.uuid4(),
                provider_id=uuid.uuid4(),
                pathway_id=sample_pathway.pathway.id,
                patient_context=PatientContext(condition_codes=["I10"]),
            ),
            db_session
        )

        with pytest.raises(InvalidReferenceError):
            await pathway_service.delete(sample_pathway.pathway.id, db_session)


class TestPathwayDuplicate:

    async def test_duplicate_preserves_shape(self, db_session, pathway_service, node_service, sample_pathway):
        await PathwayNodeOutcomeService().create(
            OutcomeCreate(node_id=sample_pathway.a1.id, label="BP below 130/80", medication_code="C09AA"),
            db_session
        )

        clone = await pathway_service.duplicate(sample_pathway.pathway.id, "Hypertension (copy)", db_session)

        assert clone.id != sample_pathway.pathway.id
        assert clone.slug == "hypertension-copy"
        assert clone.is_published is False
        assert clone.primary_condition_codes == ["I10"]

        assembler = TreeAssembler()
        source_tree = assembler.build_node_tree(await node_service.list_by_pathway(sample_pathway.pathway.id, db_session))
        clone_nodes = await node_service.list_by_pathway(clone.id, db_session)
        clone_tree = assembler.build_node_tree(clone_nodes)

        def shape(tree):
            return [(node.title, node.node_type, node.sort_order, len(node.children)) for node in _walk(tree)]

        assert shape(clone_tree) == shape(source_tree)
        assert not {n[0] for n in flatten_tree(clone_tree)} & {n[0] for n in flatten_tree(source_tree)}

        cloned_leaf = next(node for node in clone_nodes if node.title == "Start ACE inhibitor")
        outcomes = await PathwayNodeOutcomeService().list_by_node(cloned_leaf.id, db_session)
        assert [outcome.label for outcome in outcomes] == ["BP below 130/80"]

    async def test_duplicate_missing_pathway(self, db_session, pathway_service):
        assert await pathway_service.duplicate(uuid.uuid4(), "Copy", db_session) is None


def _walk(tree):
    stack = [tree]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))


class TestPathwayListing:
    """Filtering and cursor pagination."""

    async def test_pagination_matches_full_listing_with_name_ties(self, db_session, pathway_service):
        for name in ["Gamma", "Beta", "Alpha", "Beta", "Beta", "Delta", "Alpha"]:
            await pathway_service.create(PathwayCreate(name=name), db_session)

        full = await pathway_service.list(PathwayFilter(), db_session, first=100)
        expected = [edge.node.id for edge in full.edges]
        assert len(expected) == 7
        assert [edge.node.name for edge in full.edges] == [
            "Alpha", "Alpha", "Beta", "Beta", "Beta", "Delta", "Gamma"
        ]

        seen = []
        after = None
        while True:
            page = await pathway_service.list(PathwayFilter(), db_session, first=2, after=after)
            seen.extend(edge.node.id for edge in page.edges)
            assert page.total_count == 7
            if not page.page_info.has_next_page:
                break
            after = page.page_info.end_cursor

        assert seen == expected

    async def test_filters(self, db_session, pathway_service, sample_pathway):
        await pathway_service.create(
            PathwayCreate(name="Type 2 Diabetes", primary_condition_codes=["E11"], description="Glycemic control"),
            db_session
        )
        await pathway_service.publish(sample_pathway.pathway.id, db_session)

        by_code = await pathway_service.list(PathwayFilter(condition_code="e11"), db_session)
        assert [edge.node.name for edge in by_code.edges] == ["Type 2 Diabetes"]

        by_term = await pathway_service.list(PathwayFilter(search_term="GLYCEMIC"), db_session)
        assert by_term.total_count == 1

        published = await pathway_service.list(PathwayFilter(is_published=True), db_session)
        assert [edge.node.id for edge in published.edges] == [sample_pathway.pathway.id]

    async def test_get_by_slug(self, db_session, pathway_service, sample_pathway):
        found = await pathway_service.get_by_slug("hypertension-management", db_session)

        assert found.id == sample_pathway.pathway.id


class TestUsageStats:

    async def test_usage_stats(self, db_session, pathway_service, sample_pathway):
        instances = PatientPathwayInstanceService()
        selections = PatientPathwaySelectionService()

        started = []
        for _ in range(3):
            started.append(
                await instances.start(
                    InstanceStart(
                        patient_id=uuid.uuid4(),
                        provider_id=uuid.uuid4(),
                        pathway_id=sample_pathway.pathway.id,
                        patient_context=PatientContext(condition_codes=["I10"]),
                    ),
                    db_session
                )
            )

        await selections.record(
            SelectionRecord(
                instance_id=started[0].id,
                node_id=sample_pathway.b.id,
                selection_type=SelectionType.PROVIDER_SELECTED,
                override_reason="Patient intolerant of ACE inhibitors",
            ),
            db_session
        )
        await instances.complete(started[0].id, db_session)
        await instances.abandon(started[1].id, db_session, reason="Transferred care")

        stats = await pathway_service.get_usage_stats(sample_pathway.pathway.id, db_session)

        assert stats.total_instances == 3
        assert stats.completed_instances == 1
        assert stats.abandoned_instances == 1
        assert stats.override_rate == pytest.approx(33.33)
        assert stats.avg_completion_time_minutes is not None
        assert started[1].status == InstanceStatus.ABANDONED

    async def test_usage_stats_without_instances(self, db_session, pathway_service, sample_pathway):
        stats = await pathway_service.get_usage_stats(sample_pathway.pathway.id, db_session)

        assert stats.total_instances == 0
        assert stats.override_rate == 0.0
        assert stats.avg_completion_time_minutes is None


class TestCacheInvalidation:
    """Cached pathway views are dropped again once the write commits"""

    @pytest.fixture
    def cache(self):
        cache = CacheManager(enabled=True)
        cache.invalidate = AsyncMock()
        return cache

    @pytest.fixture
    def manager(self, db_engine):
        manager = DatabaseManager()
        manager.async_session_factory = async_sessionmaker(
            bind=db_engine, class_=AsyncSession, expire_on_commit=False
        )
        manager._initialized = True
        return manager

    @pytest.fixture
    async def service_and_pathway(self, manager, cache):
        service = ClinicalPathwayService(cache=cache)
        async with manager.get_async_session() as session:
            pathway = await service.create(PathwayCreate(name="Asthma"), session)
        cache.invalidate.reset_mock()
        return service, pathway

    async def test_invalidated_again_after_commit(self, manager, cache, service_and_pathway):
        service, pathway = service_and_pathway
        key = service.cache_key(pathway.id)

        async with manager.get_async_session() as session:
            await service.update(pathway.id, PathwayUpdate(description="v2"), session)
            assert cache.invalidate.await_args_list == [call(key)]

        assert cache.invalidate.await_args_list == [call(key), call(key)]

    async def test_rollback_skips_deferred_invalidation(self, manager, cache, service_and_pathway):
        service, pathway = service_and_pathway

        with pytest.raises(RuntimeError):
            async with manager.get_async_session() as session:
                await service.update(pathway.id, PathwayUpdate(description="v2"), session)
                raise RuntimeError("request failed")

        assert cache.invalidate.await_count == 1
