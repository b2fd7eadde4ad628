"""Shared fixtures and sample builders for HealthByte engine tests."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from unittest.mock import AsyncMock
from uuid import UUID

import pytest

from healthbyte.health.aggregation import WindowedAggregationQuery
from healthbyte.health.authorization import AuthorizationGate
from healthbyte.health.base import QuantitySample, RemoteStore, Unit
from healthbyte.health.catalog import MetricCatalog, load_metric_catalog
from healthbyte.health.sources.memory import InMemoryHealthSource
from healthbyte.health.sync.uploader import SyncUploader

# Canonical test user ID
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
TEST_DATE = date(2026, 2, 23)

# Mid-afternoon on TEST_DATE; today's bucket ends here
NOW = datetime.combine(TEST_DATE, time(15, 0), tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for the aggregation query."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def sample(
    metric_id: str,
    days_ago: int,
    value: float,
    unit: Unit = Unit.COUNT,
    hour: int = 12,
    source: str = "iPhone",
) -> QuantitySample:
    """A sample taken ``days_ago`` days before TEST_DATE at ``hour`` UTC."""
    day = TEST_DATE - timedelta(days=days_ago)
    return QuantitySample(
        metric_id=metric_id,
        timestamp=datetime.combine(day, time(hour, 0), tzinfo=timezone.utc),
        value=value,
        unit=unit,
        source=source,
    )


def steps(days_ago: int, value: float, hour: int = 12) -> QuantitySample:
    return sample("stepCount", days_ago, value, hour=hour)


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def catalog() -> MetricCatalog:
    """Load the real metric catalog for tests."""
    return load_metric_catalog()


@pytest.fixture
def source() -> InMemoryHealthSource:
    return InMemoryHealthSource()


@pytest.fixture
def gate(source: InMemoryHealthSource, catalog: MetricCatalog) -> AuthorizationGate:
    return AuthorizationGate(source, catalog)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def query(
    source: InMemoryHealthSource,
    catalog: MetricCatalog,
    gate: AuthorizationGate,
    clock: FakeClock,
) -> WindowedAggregationQuery:
    return WindowedAggregationQuery(source, catalog, gate, tz="UTC", clock=clock)


@pytest.fixture
def store() -> AsyncMock:
    """RemoteStore mock whose updates touch exactly one row."""
    mock = AsyncMock(spec=RemoteStore)
    mock.current_user_id.return_value = TEST_USER_ID
    mock.update.return_value = 1
    return mock


@pytest.fixture
def uploader(store: AsyncMock, catalog: MetricCatalog) -> SyncUploader:
    return SyncUploader(store, catalog)
