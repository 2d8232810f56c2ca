import pytest
from waypoint import idempotency as I
from waypoint.db import create_database

from tests.helpers import Clock, seed_order


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def memory_store() -> I.MemoryStore:
    return I.MemoryStore()


@pytest.fixture
def keys(memory_store, clock) -> I.IdempotencyKeyService:
    return I.IdempotencyKeyService(memory_store, clock=clock)


@pytest.fixture
async def database(tmp_path):
    session_factory, engine = await create_database(
        f"sqlite+aiosqlite:///{tmp_path / 'waypoint.db'}"
    )
    yield session_factory
    await engine.dispose()


@pytest.fixture
async def seeded(database):
    await seed_order(database)
    return database
