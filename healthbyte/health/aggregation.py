"""Windowed daily aggregation with live updates.

Given a metric and a trailing window of N days, the query computes one
aggregate per local calendar day and keeps the result current while the
session is active:

1. Day boundaries are local midnights in the configured time zone, so a
   bucket is 23 or 25 hours long across a DST change.  The first bucket
   opens at midnight N-1 days before today; today's bucket ends at ``now``.
2. Each sample is converted to the metric's unit and assigned to the day
   containing its timestamp.  ``sum`` adds values, ``most_recent`` keeps the
   value of the latest sample.  Empty days are 0.
3. The full bucket tuple is published as one ``BucketSnapshot``.
4. Recomputation happens once on start, on every change notification from
   the health source, at every local midnight, and on ``refresh()``.

Snapshots are replaced wholesale.  If recomputations finish out of order the
one describing the later window end wins; equal ends fall back to request
order.

Usage::

    query = WindowedAggregationQuery(source, catalog, gate, tz="Europe/Berlin")
    session = await query.start("stepCount", window_days=7)
    session.subscribe(lambda snap: print(snap.values))
    ...
    session.stop()
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
import logging
from datetime import datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any, AsyncIterator, Callable, Iterable
from zoneinfo import ZoneInfo

from healthbyte.health.authorization import AuthorizationGate
from healthbyte.health.base import (
    AggregationPolicy,
    BucketSnapshot,
    DailyBucket,
    HealthSource,
    MetricDescriptor,
    ObserverHandle,
    QuantitySample,
)
from healthbyte.health.catalog import MetricCatalog
from healthbyte.health.errors import HealthByteError, NotAuthorized, SessionAlreadyActive

logger = logging.getLogger("healthbyte.health.aggregation")

DEFAULT_WINDOW_DAYS = 7


class SessionState(str, Enum):
    IDLE = "idle"
    AUTHORIZING = "authorizing"
    ACTIVE = "active"
    STOPPED = "stopped"


# ---------------------------------------------------------------------------
# Pure bucket arithmetic
# ---------------------------------------------------------------------------


def resolve_timezone(tz: tzinfo | str | None) -> tzinfo:
    if tz is None:
        return timezone.utc
    if isinstance(tz, str):
        return ZoneInfo(tz)
    return tz


def anchor_date(now: datetime, tz: tzinfo) -> datetime:
    """Return local start-of-day for ``now``; the phase reference for buckets."""
    local_now = now.astimezone(tz)
    return datetime.combine(local_now.date(), time.min, tzinfo=tz)


def day_boundaries(
    now: datetime, window_days: int, tz: tzinfo
) -> list[tuple[datetime, datetime]]:
    """Return ``window_days`` contiguous ``(start, end)`` pairs ending at ``now``.

    Raises:
        ValueError: If ``window_days`` is less than 1.
    """
    if window_days < 1:
        raise ValueError(f"window_days must be >= 1, got {window_days}")

    local_now = now.astimezone(tz)
    today = local_now.date()
    first = today - timedelta(days=window_days - 1)

    boundaries = []
    for offset in range(window_days):
        day = first + timedelta(days=offset)
        start = datetime.combine(day, time.min, tzinfo=tz)
        if day == today:
            end = local_now
        else:
            end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
        boundaries.append((start, end))
    return boundaries


def seconds_until_next_midnight(now: datetime, tz: tzinfo) -> float:
    local_now = now.astimezone(tz)
    next_midnight = datetime.combine(
        local_now.date() + timedelta(days=1), time.min, tzinfo=tz
    )
    return (next_midnight.astimezone(timezone.utc) - now.astimezone(timezone.utc)).total_seconds()


def aggregate_samples(
    samples: Iterable[QuantitySample],
    boundaries: list[tuple[datetime, datetime]],
    descriptor: MetricDescriptor,
) -> tuple[DailyBucket, ...]:
    """Fold samples into one bucket per boundary pair using the metric policy.

    Samples outside every bucket and samples whose unit cannot be converted
    to the metric's unit are ignored.
    """
    # Compare in UTC: aware datetimes sharing a tzinfo compare by wall clock.
    starts = [start.astimezone(timezone.utc) for start, _ in boundaries]
    ends = [end.astimezone(timezone.utc) for _, end in boundaries]

    totals = [0.0] * len(boundaries)
    counts = [0] * len(boundaries)
    latest: list[datetime | None] = [None] * len(boundaries)

    for sample in samples:
        ts = sample.timestamp.astimezone(timezone.utc)
        idx = bisect.bisect_right(starts, ts) - 1
        if idx < 0 or ts >= ends[idx]:
            continue
        try:
            value = sample.unit.convert(sample.value, descriptor.unit)
        except ValueError:
            logger.warning(
                "Skipping %s sample in %s (metric unit is %s)",
                descriptor.id, sample.unit.value, descriptor.unit.value,
            )
            continue

        counts[idx] += 1
        if descriptor.policy is AggregationPolicy.SUM:
            totals[idx] += value
        elif latest[idx] is None or ts >= latest[idx]:
            latest[idx] = ts
            totals[idx] = value

    return tuple(
        DailyBucket(start=start, end=end, value=totals[i], sample_count=counts[i])
        for i, (start, end) in enumerate(boundaries)
    )


def build_snapshot(
    descriptor: MetricDescriptor,
    samples: Iterable[QuantitySample],
    now: datetime,
    window_days: int,
    tz: tzinfo,
) -> BucketSnapshot:
    boundaries = day_boundaries(now, window_days, tz)
    return BucketSnapshot(
        metric_id=descriptor.id,
        buckets=aggregate_samples(samples, boundaries, descriptor),
        computed_at=now,
    )


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class Subscription:
    """Handle returned by ``AggregationSession.subscribe()``."""

    def __init__(self, session: AggregationSession, token: int) -> None:
        self._session = session
        self._token = token

    @property
    def active(self) -> bool:
        return self._token in self._session._subscribers

    def cancel(self) -> None:
        self._session._subscribers.pop(self._token, None)


_STOPPED = object()


class AggregationSession:
    """One live aggregation over a trailing window for one metric.

    Owned by the caller that started it.  ``stop()`` is idempotent and
    guarantees that no subscriber is called after it returns.
    """

    def __init__(
        self,
        query: WindowedAggregationQuery,
        descriptor: MetricDescriptor,
        window_days: int,
        live: bool = True,
    ) -> None:
        self._query = query
        self.descriptor = descriptor
        self.window_days = window_days
        self.live = live
        self.state = SessionState.IDLE

        self._snapshot: BucketSnapshot | None = None
        self._snapshot_seq = -1
        self._seq = itertools.count()
        self._subscribers: dict[int, tuple[Callable[[BucketSnapshot], Any], Callable | None]] = {}
        self._tokens = itertools.count(1)
        self._queues: set[asyncio.Queue] = set()
        self._observer: ObserverHandle | None = None
        self._pending: set[asyncio.Task] = set()
        self._rollover_task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def metric_id(self) -> str:
        return self.descriptor.id

    @property
    def latest(self) -> BucketSnapshot | None:
        """The most recent complete snapshot (None before the first one)."""
        return self._snapshot

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _start(self) -> None:
        gate = self._query.gate
        self._loop = asyncio.get_running_loop()
        self.state = SessionState.AUTHORIZING
        try:
            if not gate.is_granted(self.metric_id):
                await gate.request_authorization([self.metric_id])
                if self.state is SessionState.STOPPED:
                    return
                if not gate.is_granted(self.metric_id):
                    raise NotAuthorized(
                        f"Read access to {self.descriptor.name} has not been granted."
                    )
        except HealthByteError:
            self.state = SessionState.IDLE
            raise

        self.state = SessionState.ACTIVE
        if self.live:
            self._observer = self._query.source.observe(self.metric_id, self._on_samples_changed)
            self._rollover_task = self._loop.create_task(self._rollover_loop())
        try:
            await self.refresh()
        except BaseException:
            self.stop()
            self.state = SessionState.IDLE
            raise
        logger.info(
            "Aggregation session started: %s (%d days, live=%s)",
            self.metric_id, self.window_days, self.live,
        )

    def stop(self) -> None:
        """Cancel the live subscription.  A no-op if not running."""
        if self.state in (SessionState.IDLE, SessionState.STOPPED):
            return
        self.state = SessionState.STOPPED

        if self._observer is not None:
            self._query.source.stop_observing(self._observer)
            self._observer = None
        if self._rollover_task is not None:
            self._rollover_task.cancel()
            self._rollover_task = None
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()
        self._subscribers.clear()

        for queue in self._queues:
            while not queue.empty():
                queue.get_nowait()
            queue.put_nowait(_STOPPED)

        self._query._release(self)
        logger.info("Aggregation session stopped: %s", self.metric_id)

    async def refresh(self) -> BucketSnapshot:
        """Run an aggregation pass now and return the current snapshot.

        Raises:
            RuntimeError:  If the session is not active.
            NotAuthorized: If read access was revoked.
        """
        if self.state is not SessionState.ACTIVE:
            raise RuntimeError(f"Aggregation session for {self.metric_id} is {self.state.value}")
        seq = next(self._seq)
        snapshot = await self._query.compute(self.descriptor, self.window_days)
        self._publish(snapshot, seq)
        return self._snapshot or snapshot

    async def settle(self) -> None:
        """Wait until every scheduled recomputation has finished."""
        await asyncio.sleep(0)
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
            await asyncio.sleep(0)

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(
        self,
        on_update: Callable[[BucketSnapshot], Any],
        on_error: Callable[[Exception], Any] | None = None,
        *,
        replay: bool = True,
    ) -> Subscription:
        """Register callbacks for snapshots (and live recompute failures).

        With ``replay`` the current snapshot, if any, is delivered at once.
        """
        token = next(self._tokens)
        self._subscribers[token] = (on_update, on_error)
        if replay and self._snapshot is not None and self.is_active:
            on_update(self._snapshot)
        return Subscription(self, token)

    async def updates(self) -> AsyncIterator[BucketSnapshot]:
        """Iterate over snapshots until the session stops."""
        if self.state is SessionState.STOPPED:
            return
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.add(queue)
        subscription = self.subscribe(queue.put_nowait)
        try:
            while True:
                item = await queue.get()
                if item is _STOPPED:
                    return
                yield item
        finally:
            subscription.cancel()
            self._queues.discard(queue)

    def _publish(self, snapshot: BucketSnapshot, seq: int) -> bool:
        if self.state is not SessionState.ACTIVE:
            return False
        current = self._snapshot
        if current is not None and current.end is not None and snapshot.end is not None:
            if (snapshot.end, seq) <= (current.end, self._snapshot_seq):
                logger.debug("Discarding stale snapshot for %s", self.metric_id)
                return False

        self._snapshot = snapshot
        self._snapshot_seq = seq
        for on_update, _ in list(self._subscribers.values()):
            try:
                on_update(snapshot)
            except Exception:
                logger.exception("Bucket subscriber for %s failed", self.metric_id)
        return True

    # ------------------------------------------------------------------
    # Live updates
    # ------------------------------------------------------------------

    def _on_samples_changed(self, metric_id: str) -> None:
        # May be called from any thread; hop onto the session's loop.
        if self._loop is None or self.state is not SessionState.ACTIVE:
            return
        self._loop.call_soon_threadsafe(self._schedule_recompute)

    def _schedule_recompute(self) -> None:
        if self.state is not SessionState.ACTIVE or self._loop is None:
            return
        task = self._loop.create_task(self._recompute())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _recompute(self) -> None:
        try:
            await self.refresh()
        except Exception as exc:
            if self.state is not SessionState.ACTIVE:
                return
            logger.warning("Live recompute failed for %s: %s", self.metric_id, exc)
            for _, on_error in list(self._subscribers.values()):
                if on_error is None:
                    continue
                try:
                    on_error(exc)
                except Exception:
                    logger.exception("Error subscriber for %s failed", self.metric_id)

    async def _rollover_loop(self) -> None:
        while self.state is SessionState.ACTIVE:
            delay = seconds_until_next_midnight(self._query.now(), self._query.tz)
            await asyncio.sleep(max(delay, 1.0))
            logger.debug("Midnight rollover for %s", self.metric_id)
            self._schedule_recompute()


# ---------------------------------------------------------------------------
# Query facade
# ---------------------------------------------------------------------------


class WindowedAggregationQuery:
    """Start and track aggregation sessions; at most one active per metric."""

    def __init__(
        self,
        source: HealthSource,
        catalog: MetricCatalog,
        gate: AuthorizationGate,
        *,
        tz: tzinfo | str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the query.

        Args:
            source:  Health data source providing samples and change events.
            catalog: Metric catalog.
            gate:    Authorization gate for the same source.
            tz:      Zone defining calendar days (IANA name or tzinfo). UTC by default.
            clock:   Returns the current aware datetime (for testing).
        """
        self.source = source
        self.catalog = catalog
        self.gate = gate
        self.tz = resolve_timezone(tz)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._active: dict[str, AggregationSession] = {}

    def now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            raise ValueError("clock() must return a timezone-aware datetime")
        return now

    async def start(
        self, metric_id: str, window_days: int = DEFAULT_WINDOW_DAYS, *, live: bool = True
    ) -> AggregationSession:
        """Authorize (if needed) and start a session for ``metric_id``.

        Raises:
            UnknownMetric:         The metric is not in the catalog.
            ValueError:            ``window_days`` < 1.
            SessionAlreadyActive:  A session for the metric is already running.
            DataSourceUnavailable: The device has no health store.
            NotAuthorized:         Read access was not granted.
        """
        descriptor = self.catalog.get(metric_id)
        if window_days < 1:
            raise ValueError(f"window_days must be >= 1, got {window_days}")
        if metric_id in self._active:
            raise SessionAlreadyActive(
                f"An aggregation session for {metric_id} is already active; stop it first."
            )

        session = AggregationSession(self, descriptor, window_days, live=live)
        self._active[metric_id] = session
        try:
            await session._start()
        except BaseException:
            self._release(session)
            raise
        if session.state is SessionState.STOPPED:
            self._release(session)
        return session

    async def compute(
        self, descriptor: MetricDescriptor, window_days: int = DEFAULT_WINDOW_DAYS
    ) -> BucketSnapshot:
        """One aggregation pass, independent of any session.

        Raises:
            NotAuthorized: If read access to the metric is not granted.
        """
        if not self.gate.is_granted(descriptor.id):
            raise NotAuthorized(f"Read access to {descriptor.name} has not been granted.")
        now = self.now()
        window_start = anchor_date(now, self.tz) - timedelta(days=window_days - 1)
        samples = await self.source.query_samples(
            descriptor.id,
            window_start.astimezone(timezone.utc),
            now.astimezone(timezone.utc),
        )
        snapshot = build_snapshot(descriptor, samples, now, window_days, self.tz)
        logger.debug(
            "Computed %s buckets from %d samples: %s",
            descriptor.id, len(samples), snapshot.values,
        )
        return snapshot

    def active_session(self, metric_id: str) -> AggregationSession | None:
        return self._active.get(metric_id)

    def stop_all(self) -> None:
        for session in list(self._active.values()):
            session.stop()

    def _release(self, session: AggregationSession) -> None:
        if self._active.get(session.metric_id) is session:
            del self._active[session.metric_id]
