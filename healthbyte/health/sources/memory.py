"""In-process health data store.

Holds quantity samples, read grants and change observers in memory.  It is
the health source used by the HTTP companion service (fed by sample pushes
and Apple Health imports) and by the test-suite.

Samples are de-duplicated by content so the same reading arriving through
two paths (e.g. a re-imported export) is only counted once.
"""

from __future__ import annotations

import itertools
import logging
from datetime import datetime, timezone
from typing import Callable, Iterable

from healthbyte.health.base import (
    AuthorizationRequestStatus,
    AuthorizationStatus,
    HealthSource,
    ObserverHandle,
    QuantitySample,
)
from healthbyte.health.errors import HealthSourceError

logger = logging.getLogger("healthbyte.health.sources.memory")


def sample_key(sample: QuantitySample) -> str:
    """Generate a dedup key for a quantity sample.

    Two samples with the same metric, origin, instant, value and unit are the
    same reading.

    Returns:
        Pipe-separated dedup key string.
    """
    return "|".join(
        (
            sample.metric_id,
            sample.source,
            sample.timestamp.astimezone(timezone.utc).isoformat(),
            repr(float(sample.value)),
            sample.unit.value,
        )
    )


class InMemoryHealthSource(HealthSource):
    """Health source backed by plain Python containers.

    Usage::

        source = InMemoryHealthSource(denied={"flightsClimbed"})
        await source.request_authorization({"stepCount"})
        source.add_samples([QuantitySample("stepCount", ts, 1200, Unit.COUNT)])
    """

    SOURCE_ID = "memory"
    DISPLAY_NAME = "Health"

    def __init__(
        self,
        *,
        available: bool = True,
        denied: Iterable[str] = (),
        authorization_error: str | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            available:           False simulates a device without a health store.
            denied:              Metric ids the user declines when asked.
            authorization_error: If set, request_authorization() fails with this message.
        """
        self._available = available
        self._denied = set(denied)
        self.authorization_error = authorization_error
        self._requested: set[str] = set()
        self._samples: dict[str, list[QuantitySample]] = {}
        self._seen: set[str] = set()
        self._observers: dict[int, tuple[str, Callable[[str], None]]] = {}
        self._tokens = itertools.count(1)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def is_health_data_available(self) -> bool:
        return self._available

    async def request_authorization(self, read_metrics: set[str]) -> bool:
        if self.authorization_error:
            raise HealthSourceError(self.authorization_error)
        self._requested.update(read_metrics)
        logger.debug("Authorization requested for %s", sorted(read_metrics))
        return True

    async def authorization_request_status(
        self, read_metrics: set[str]
    ) -> AuthorizationRequestStatus:
        if not self._available:
            return AuthorizationRequestStatus.UNKNOWN
        if set(read_metrics) <= self._requested:
            return AuthorizationRequestStatus.UNNECESSARY
        return AuthorizationRequestStatus.SHOULD_REQUEST

    def authorization_status(self, metric_id: str) -> AuthorizationStatus:
        if metric_id not in self._requested:
            return AuthorizationStatus.UNDETERMINED
        if metric_id in self._denied:
            return AuthorizationStatus.DENIED
        return AuthorizationStatus.GRANTED

    # ------------------------------------------------------------------
    # Samples
    # ------------------------------------------------------------------

    def add_samples(self, samples: Iterable[QuantitySample]) -> int:
        """Store new samples and notify observers of the affected metrics.

        Returns:
            Number of samples actually added (duplicates are skipped).

        Raises:
            ValueError: If a sample carries a naive timestamp.
        """
        changed: set[str] = set()
        added = 0
        for sample in samples:
            if sample.timestamp.tzinfo is None:
                raise ValueError(f"Sample timestamp must be timezone-aware: {sample!r}")
            key = sample_key(sample)
            if key in self._seen:
                continue
            self._seen.add(key)
            self._samples.setdefault(sample.metric_id, []).append(sample)
            changed.add(sample.metric_id)
            added += 1

        if added:
            logger.debug("Added %d samples for %s", added, sorted(changed))
            self._notify(changed)
        return added

    def remove_samples(self, samples: Iterable[QuantitySample]) -> int:
        """Delete samples (matched by content) and notify observers."""
        doomed = {sample_key(s) for s in samples}
        changed: set[str] = set()
        removed = 0
        for metric_id, stored in self._samples.items():
            kept = [s for s in stored if sample_key(s) not in doomed]
            if len(kept) != len(stored):
                removed += len(stored) - len(kept)
                self._samples[metric_id] = kept
                changed.add(metric_id)
        self._seen -= doomed

        if removed:
            self._notify(changed)
        return removed

    async def query_samples(
        self, metric_id: str, start: datetime, end: datetime
    ) -> list[QuantitySample]:
        matching = [
            s for s in self._samples.get(metric_id, []) if start <= s.timestamp < end
        ]
        return sorted(matching, key=lambda s: s.timestamp)

    def sample_count(self, metric_id: str | None = None) -> int:
        if metric_id is not None:
            return len(self._samples.get(metric_id, []))
        return sum(len(v) for v in self._samples.values())

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def observe(self, metric_id: str, callback: Callable[[str], None]) -> ObserverHandle:
        handle = ObserverHandle(metric_id=metric_id, token=next(self._tokens))
        self._observers[handle.token] = (metric_id, callback)
        return handle

    def stop_observing(self, handle: ObserverHandle) -> None:
        self._observers.pop(handle.token, None)

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def _notify(self, metric_ids: set[str]) -> None:
        # Copy: callbacks may unregister themselves.
        for metric_id, callback in list(self._observers.values()):
            if metric_id not in metric_ids:
                continue
            try:
                callback(metric_id)
            except Exception:
                logger.exception("Observer for %s failed", metric_id)
