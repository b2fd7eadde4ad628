"""Canonical data models and collaborator interfaces for the HealthByte engine.

Every health data source must subclass ``HealthSource`` and every remote
backend must subclass ``RemoteStore``.  The models here are the single
vocabulary shared by the catalog, the aggregation query, the projector, the
uploader and the HTTP layer.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable
from uuid import UUID


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Unit(str, Enum):
    """Units a quantity sample can be expressed in."""

    COUNT = "count"
    METER = "m"
    KILOMETER = "km"
    MILE = "mi"
    FOOT = "ft"

    def convert(self, value: float, to: Unit) -> float:
        """Convert ``value`` from this unit into ``to``.

        Raises:
            ValueError: If the two units measure different quantities.
        """
        if self is to:
            return value
        if self in _METERS_PER_UNIT and to in _METERS_PER_UNIT:
            return value * _METERS_PER_UNIT[self] / _METERS_PER_UNIT[to]
        raise ValueError(f"Cannot convert {self.value} to {to.value}")


_METERS_PER_UNIT: dict[Unit, float] = {
    Unit.METER: 1.0,
    Unit.KILOMETER: 1000.0,
    Unit.MILE: 1609.344,
    Unit.FOOT: 0.3048,
}


class AggregationPolicy(str, Enum):
    """How samples (and daily buckets) of one metric combine."""

    SUM = "sum"  # cumulative counters: steps, distance
    MOST_RECENT = "most_recent"  # point-in-time measurements: walk tests


class ColumnType(str, Enum):
    """Numeric representation of a remote column."""

    INTEGER = "integer"
    FLOAT = "float"


class AuthorizationStatus(str, Enum):
    """Last-known read grant for a single metric."""

    GRANTED = "granted"
    DENIED = "denied"
    UNDETERMINED = "undetermined"


class AuthorizationRequestStatus(str, Enum):
    """Whether asking the user for permission would show a prompt."""

    SHOULD_REQUEST = "should_request"
    UNNECESSARY = "unnecessary"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Samples and buckets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QuantitySample:
    """One immutable reading owned by the health source.

    Attributes:
        metric_id: Catalog id of the metric (e.g. 'stepCount').
        timestamp: Timezone-aware instant the sample was taken.
        value:     Reading in ``unit``.
        unit:      Unit of ``value``.
        source:    Name of the device or app that recorded the sample.
    """

    metric_id: str
    timestamp: datetime
    value: float
    unit: Unit
    source: str = "unknown"


@dataclass(frozen=True)
class DailyBucket:
    """Aggregate for one local calendar day.

    ``end`` is the next local midnight, except for today's bucket which ends
    at the moment of computation.

    Attributes:
        start:        Local midnight opening the day (tz-aware).
        end:          Exclusive end of the bucket (tz-aware).
        value:        Aggregate in the metric's unit; 0 for an empty day.
        sample_count: Number of samples that fell inside the bucket.
    """

    start: datetime
    end: datetime
    value: float = 0.0
    sample_count: int = 0

    @property
    def day(self) -> date:
        return self.start.date()

    @property
    def is_empty(self) -> bool:
        return self.sample_count == 0


@dataclass(frozen=True)
class BucketSnapshot:
    """A complete, ordered bucket sequence for one metric.

    Snapshots are replaced wholesale, never patched.  When two arrive out of
    order the one with the later ``end`` wins.
    """

    metric_id: str
    buckets: tuple[DailyBucket, ...]
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def end(self) -> datetime | None:
        return self.buckets[-1].end if self.buckets else None

    @property
    def values(self) -> list[float]:
        return [b.value for b in self.buckets]


# ---------------------------------------------------------------------------
# Metric descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricDescriptor:
    """Static description of one metric, loaded from metric_catalog.yaml.

    Attributes:
        id:             Unique catalog id (e.g. 'stepCount').
        name:           Human-readable name for titles and status text.
        unit:           Unit the aggregate is expressed in.
        policy:         Aggregation policy for days and for the weekly total.
        remote_column:  Patient-table column, or None if the metric is not synced.
        column_type:    Numeric representation of ``remote_column``.
        hk_identifier:  HealthKit quantity type identifier, used by importers.
    """

    id: str
    name: str
    unit: Unit
    policy: AggregationPolicy
    remote_column: str | None = None
    column_type: ColumnType = ColumnType.FLOAT
    hk_identifier: str | None = None

    @property
    def is_synced(self) -> bool:
        return self.remote_column is not None


# ---------------------------------------------------------------------------
# Health source interface
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ObserverHandle:
    """Token returned by ``HealthSource.observe()``."""

    metric_id: str
    token: int


class HealthSource(ABC):
    """Abstract base class for platform health data stores.

    Subclasses must implement:
        - is_health_data_available()
        - request_authorization()
        - authorization_request_status()
        - authorization_status()
        - query_samples()
        - observe() / stop_observing()
    """

    #: Unique slug for logging.
    SOURCE_ID: str = "unknown"

    #: Human-readable name for status text.
    DISPLAY_NAME: str = "Health"

    @abstractmethod
    def is_health_data_available(self) -> bool:
        """Return False if the device has no health data store at all."""

    @abstractmethod
    async def request_authorization(self, read_metrics: set[str]) -> bool:
        """Ask the user for read access to ``read_metrics``.

        May suspend while a consent prompt is on screen.  Returns True when
        the request flow completed; this is not a per-metric acceptance.

        Raises:
            HealthSourceError: If the platform reported an error.
        """

    @abstractmethod
    async def authorization_request_status(
        self, read_metrics: set[str]
    ) -> AuthorizationRequestStatus:
        """Report whether requesting ``read_metrics`` would prompt the user."""

    @abstractmethod
    def authorization_status(self, metric_id: str) -> AuthorizationStatus:
        """Return the last-known grant for one metric.  Must not block."""

    @abstractmethod
    async def query_samples(
        self, metric_id: str, start: datetime, end: datetime
    ) -> list[QuantitySample]:
        """Return samples of ``metric_id`` with ``start <= timestamp < end``."""

    @abstractmethod
    def observe(self, metric_id: str, callback: Callable[[str], None]) -> ObserverHandle:
        """Call ``callback(metric_id)`` whenever samples of the metric change."""

    @abstractmethod
    def stop_observing(self, handle: ObserverHandle) -> None:
        """Unregister an observer.  Unknown handles are ignored."""


# ---------------------------------------------------------------------------
# Remote store interface
# ---------------------------------------------------------------------------


class RemoteStore(ABC):
    """Authenticated backend holding one row per user.

    Transport failures must be raised as ``RemoteStoreError``.
    """

    @abstractmethod
    async def current_user_id(self) -> UUID | None:
        """Return the signed-in user's id, or None if nobody is signed in."""

    @abstractmethod
    async def update(
        self,
        table: str,
        column: str,
        value: int | float,
        *,
        auth_id: UUID,
        id_column: str = "authId",
    ) -> int:
        """Set ``column`` on the row whose ``id_column`` equals ``auth_id``.

        Never inserts.  Returns the number of rows affected.
        """

    @abstractmethod
    async def insert(self, table: str, row: dict[str, Any]) -> None:
        """Insert one row (used once, at account creation)."""
