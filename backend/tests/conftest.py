import os

# Settings are cached on first use; configure the test environment before any
# application module is imported.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ["redis__CACHE_ENABLED"] = "false"
os.environ["scorer__SCORER_ENABLED"] = "false"

import logging
from types import SimpleNamespace
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from decision_explorer.core.database import Base
from decision_explorer.models import NodeType
from decision_explorer.schemas.pathway import NodeCreate, PathwayCreate
from decision_explorer.services.node_service import PathwayNodeService
from decision_explorer.services.pathway_service import ClinicalPathwayService
from decision_explorer.utils.cache import CacheManager

# Configure logging for tests
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test"""
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )
    async with session_factory() as session:
        yield session


@pytest.fixture
def pathway_service() -> ClinicalPathwayService:
    return ClinicalPathwayService(cache=CacheManager(enabled=False))


@pytest.fixture
def node_service(pathway_service: ClinicalPathwayService) -> PathwayNodeService:
    return PathwayNodeService(pathway_service)


@pytest.fixture
async def sample_pathway(
    db_session: AsyncSession,
    pathway_service: ClinicalPathwayService,
    node_service: PathwayNodeService
) -> SimpleNamespace:
    """
    Hypertension pathway:

        R (ROOT, 0.9)
        +-- A (BRANCH, 0.7)
        |   +-- A1 (RECOMMENDATION, 0.6)
        +-- B (BRANCH, 0.5)
    """
    pathway = await pathway_service.create(
        PathwayCreate(
            name="Hypertension Management",
            description="Stepwise blood pressure control",
            primary_condition_codes=["I10"],
            applicable_contexts=["primary_care"],
        ),
        db_session
    )

    async def add(title, node_type, parent=None, sort_order=0, base_confidence=0.7):
        return await node_service.create(
            NodeCreate(
                pathway_id=pathway.id,
                parent_node_id=parent.id if parent else None,
                node_type=node_type,
                title=title,
                sort_order=sort_order,
                base_confidence=base_confidence,
            ),
            db_session
        )

    root = await add("Confirm diagnosis", NodeType.ROOT, base_confidence=0.9)
    branch_a = await add("Stage 1", NodeType.BRANCH, root, sort_order=0, base_confidence=0.7)
    leaf_a1 = await add("Start ACE inhibitor", NodeType.RECOMMENDATION, branch_a, base_confidence=0.6)
    branch_b = await add("Stage 2", NodeType.BRANCH, root, sort_order=1, base_confidence=0.5)

    return SimpleNamespace(pathway=pathway, root=root, a=branch_a, a1=leaf_a1, b=branch_b)
