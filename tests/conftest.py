import asyncio
from typing import Callable, Dict

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from hostel_issues.config import TrackerConfig
from hostel_issues.consolidation import Report
from hostel_issues.database import init_db, make_engine
from hostel_issues.dependencies import build_services
from hostel_issues.main import create_app
from hostel_issues.memory_store import MemoryDocumentStore
from hostel_issues.sql_store import SqlDocumentStore


@pytest.fixture
def config() -> TrackerConfig:
    return TrackerConfig(app_id="test-hostel")


@pytest.fixture
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def any_store(request, tmp_path):
    """Run a test against both document store backends."""
    if request.param == "memory":
        yield MemoryDocumentStore()
        return
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'documents.db'}")
    await init_db(engine)
    store = SqlDocumentStore(engine)
    yield store
    await store.close()


@pytest.fixture
def services(store, config):
    return build_services(store, config)


@pytest.fixture
def make_report() -> Callable[..., Report]:
    def _make(room: str = "201", user_id: str = "u1", **overrides) -> Report:
        fields = dict(
            block="A",
            floor=2,
            category="WiFi/Network",
            description="No signal in the corridor",
            reporter_room=room,
            reporter_user_id=user_id,
            is_urgent=False,
        )
        fields.update(overrides)
        return Report(**fields)

    return _make


# HTTP fixtures ------------------------------------------------------------

PROFILES: Dict[str, Dict] = {
    "care-1": {"userId": "care-1", "email": "caretaker@hostel.test", "role": "caretaker", "createdAt": "2024-01-01T00:00:00+00:00"},
    "stu-201": {"userId": "stu-201", "email": "s201@hostel.test", "role": "student", "block": "A", "roomNumber": "201", "createdAt": "2024-01-02T00:00:00+00:00"},
    "stu-305": {"userId": "stu-305", "email": "s305@hostel.test", "role": "student", "block": "A", "roomNumber": "305", "createdAt": "2024-01-03T00:00:00+00:00"},
    "stu-b101": {"userId": "stu-b101", "email": "b101@hostel.test", "role": "student", "block": "B", "roomNumber": "101", "createdAt": "2024-01-04T00:00:00+00:00"},
}


@pytest.fixture
def app_store(config) -> MemoryDocumentStore:
    store = MemoryDocumentStore()

    async def _seed():
        for user_id, profile in PROFILES.items():
            await store.set_document(config.profiles_collection, user_id, profile)

    asyncio.run(_seed())
    return store


@pytest.fixture
def client(app_store, config):
    app = create_app(store=app_store, config=config)
    with TestClient(app) as client:
        yield client
