"""Root conftest for engine, store and API tests.

Provides:
- In-memory SQLite database (replaces the production engine)
- A file-backed SQLite database with a real connection pool, for tests
  where concurrent requests must contend the way they do in production
- A recording dispatcher standing in for outbound worker webhooks
- An EdgeWalker wired to both, plus a FastAPI client using it
- Flow graph builders shared by the scenario tests
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

import app.database as db_module
from app.database import Base, configure_sqlite, get_session_ctx

# Import all ORM models so they register with Base.metadata
import app.models.db  # noqa: F401
from app.repositories.flow import FlowRepository
from stitch.errors import ErrorKind, Result
from stitch.protocol import WorkerPayload
from stitch.runner import EdgeWalker, get_engine


# ---------------------------------------------------------------------------
# In-memory async SQLite engine (StaticPool shares one connection)
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory SQLite engine per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@asynccontextmanager
async def _use_engine(target: AsyncEngine) -> AsyncGenerator[async_sessionmaker, None]:
    """Point app.database at target.

    Every get_session_ctx() call in the stores and routes looks the
    session factory up at call time, so swapping it here is enough.
    """
    original_engine = db_module.engine
    original_factory = db_module.async_session_factory

    factory = async_sessionmaker(target, class_=AsyncSession, expire_on_commit=False)
    db_module.engine = target
    db_module.async_session_factory = factory
    try:
        yield factory
    finally:
        db_module.engine = original_engine
        db_module.async_session_factory = original_factory


@pytest_asyncio.fixture
async def db(test_engine: AsyncEngine) -> AsyncGenerator[async_sessionmaker, None]:
    async with _use_engine(test_engine) as factory:
        yield factory


@pytest_asyncio.fixture
async def file_test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite file in WAL mode behind a pooled engine.

    Each concurrent session gets its own connection, so writers really
    contend for the database lock instead of sharing one connection.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'stitch.db'}", echo=False)
    configure_sqlite(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def file_db(file_test_engine: AsyncEngine) -> AsyncGenerator[async_sessionmaker, None]:
    async with _use_engine(file_test_engine) as factory:
        yield factory


# ---------------------------------------------------------------------------
# Outbound webhooks + SSE
# ---------------------------------------------------------------------------

class RecordingDispatcher:
    """Records every webhook instead of POSTing it.

    URLs listed in ``failing`` come back as a WORKER_FAILURE, the way a
    non-2xx response or timeout would.
    """

    def __init__(self):
        self.calls: List[Tuple[str, WorkerPayload]] = []
        self.failing: set = set()

    async def dispatch(self, url: str, payload: WorkerPayload) -> Result:
        self.calls.append((url, payload))
        if url in self.failing:
            return Result.failure(ErrorKind.WORKER_FAILURE, f"Webhook returned HTTP 500: {url}")
        return Result.success(200)

    def node_ids(self) -> List[str]:
        return [payload.node_id for _, payload in self.calls]

    def payload_for(self, node_id: str) -> WorkerPayload:
        matches = [p for _, p in self.calls if p.node_id == node_id]
        assert matches, f"no webhook fired for {node_id}; fired: {self.node_ids()}"
        return matches[-1]


class EventRecorder:
    """Collects engine notifications as (run_id, event_type, data)."""

    def __init__(self):
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    def __call__(self, run_id: str, event_type: str, data: dict) -> None:
        self.events.append((run_id, event_type, data))

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [data for _, t, data in self.events if t == event_type]


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def events() -> EventRecorder:
    return EventRecorder()


@pytest_asyncio.fixture
async def engine(db, dispatcher, events) -> EdgeWalker:
    """EdgeWalker on the test database with recorded webhooks and events."""
    return EdgeWalker(dispatcher=dispatcher, publish=events)


@pytest_asyncio.fixture
async def file_engine(file_db, dispatcher, events) -> EdgeWalker:
    """EdgeWalker on the file-backed database."""
    return EdgeWalker(dispatcher=dispatcher, publish=events)


# ---------------------------------------------------------------------------
# FastAPI test client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(db, engine: EdgeWalker) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing FastAPI routes against the test engine."""
    from app.main import app

    app.dependency_overrides[get_engine] = lambda: engine
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.pop(get_engine, None)


# ---------------------------------------------------------------------------
# Flow builders
# ---------------------------------------------------------------------------

def worker(node_id: str, **config: Any) -> Dict[str, Any]:
    config.setdefault("webhook_url", f"https://workers.test/{node_id}")
    return {"id": node_id, "type": "Worker", "config": config}


def node(node_id: str, node_type: str, **config: Any) -> Dict[str, Any]:
    return {"id": node_id, "type": node_type, "config": config}


def edge(source: str, target: str, edge_id: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    return {"id": edge_id or f"{source}->{target}", "source": source, "target": target, **extra}


def scenario_a_graph() -> Dict[str, Any]:
    """Worker(A) → Splitter(S) → Worker(B) → Collector(C) → Worker(D)."""
    return {
        "nodes": [
            worker("A"),
            node("S", "Splitter", array_path="items"),
            worker("B"),
            node("C", "Collector"),
            worker("D"),
        ],
        "edges": [edge("A", "S"), edge("S", "B"), edge("B", "C"), edge("C", "D")],
    }


async def save_flow(graph: Dict[str, Any], name: str = "Test flow") -> str:
    """Persist a flow with one version; returns the flow id."""
    async with get_session_ctx() as session:
        flow, _ = await FlowRepository(session).create(name=name, graph=graph)
        return flow.id


@pytest.fixture
def make_flow(db):
    """Factory fixture: ``flow_id = await make_flow(graph)``."""
    return save_flow
