import asyncio

import pytest

from telemetry_aggregator.domain.enums import DefinitionKind
from telemetry_aggregator.main import create_app
from telemetry_aggregator.services.dependencies import build_pipeline
from telemetry_aggregator.services.rules import THRESHOLD_EXCEEDED
from telemetry_aggregator.settings import Settings
from tests.fakes import FakeDatabase, FakePool, FakeStreamSource, fake_repositories

STATISTICS = ("mean", "std_dev", "min", "max", "p95")


@pytest.fixture
def db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def pool(db) -> FakePool:
    return FakePool(db)


@pytest.fixture
def repos(db):
    return fake_repositories(db)


@pytest.fixture
def definitions(db) -> dict[str, int]:
    """Registry with every default statistic plus threshold events."""
    ids = {name: db.add_definition(DefinitionKind.METRIC, name) for name in STATISTICS}
    ids[THRESHOLD_EXCEEDED] = db.add_definition(DefinitionKind.EVENT, THRESHOLD_EXCEEDED)
    return ids


@pytest.fixture
def source() -> FakeStreamSource:
    return FakeStreamSource()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    """Records backoff delays instead of waiting them out."""

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)
        await asyncio.sleep(0)

    return _sleep


@pytest.fixture
def make_pipeline(pool, repos, source, fake_sleep, definitions):
    def _make(**overrides):
        options = {
            "window_size": 50,
            "window_statistics": ["mean"],
            "worker_concurrency": 4,
            "commit_timeout_seconds": 2.0,
            "commit_max_attempts": 3,
            "retry_base_delay_seconds": 0.5,
            "retry_max_delay_seconds": 4.0,
            "session_error_threshold": 5,
            "recovery_min_age_seconds": 0.0,
        }
        options.update(overrides)
        return build_pipeline(
            pool,
            Settings(**options),
            repositories=repos,
            source=source,
            sleep=fake_sleep,
        )

    return _make


@pytest.fixture
def pipeline(make_pipeline):
    return make_pipeline()



@pytest.fixture
async def service_client(aiohttp_client, pipeline):
    """Client for the HTTP surface over the in-memory pipeline."""
    return await aiohttp_client(create_app(pipeline))
