"""Wire the engine's components together for one device.

``HealthByteEngine`` is the composition root used by the API: it owns the
catalog, the health source, the authorization gate, the aggregation query,
the uploader and one ``MetricScreen`` per metric that has been opened.
``ScreenStateView`` is the ``MetricView`` those screens report to; it just
remembers the latest values so HTTP handlers can read them back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Callable, Sequence

from healthbyte.health.aggregation import DEFAULT_WINDOW_DAYS, WindowedAggregationQuery
from healthbyte.health.authorization import AuthorizationGate
from healthbyte.health.base import DailyBucket, HealthSource, RemoteStore
from healthbyte.health.catalog import MetricCatalog
from healthbyte.health.screen import MetricScreen
from healthbyte.health.sync.uploader import DEFAULT_ID_COLUMN, DEFAULT_TABLE, SyncUploader, UploadResult

logger = logging.getLogger("healthbyte.health.engine")


@dataclass
class ScreenStateView:
    """MetricView that records the last thing each screen reported.

    Attributes:
        buckets:     Latest bucket tuple per metric.
        uploads:     Latest upload result per metric.
        status_text: Latest authorization / error status line.
    """

    buckets: dict[str, tuple[DailyBucket, ...]] = field(default_factory=dict)
    uploads: dict[str, UploadResult] = field(default_factory=dict)
    status_text: str | None = None

    def on_buckets_updated(self, metric_id: str, buckets: Sequence[DailyBucket]) -> None:
        self.buckets[metric_id] = tuple(buckets)
        logger.debug("Buckets for %s: %s", metric_id, [b.value for b in buckets])

    def on_upload_result(self, metric_id: str, result: UploadResult) -> None:
        self.uploads[metric_id] = result

    def on_authorization_status(self, text: str) -> None:
        self.status_text = text


class HealthByteEngine:
    """All long-lived engine objects for one device and one remote backend."""

    def __init__(
        self,
        source: HealthSource,
        catalog: MetricCatalog,
        store: RemoteStore,
        *,
        tz: tzinfo | str | None = None,
        window_days: int = DEFAULT_WINDOW_DAYS,
        table: str = DEFAULT_TABLE,
        id_column: str = DEFAULT_ID_COLUMN,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.source = source
        self.catalog = catalog
        self.window_days = window_days
        self.gate = AuthorizationGate(source, catalog)
        self.query = WindowedAggregationQuery(source, catalog, self.gate, tz=tz, clock=clock)
        self.uploader = SyncUploader(store, catalog, table=table, id_column=id_column)
        self.view = ScreenStateView()
        self._screens: dict[str, MetricScreen] = {}

    def screen(self, metric_id: str) -> MetricScreen:
        """Return the screen for ``metric_id``, creating it on first use.

        Raises:
            UnknownMetric: If the metric is not in the catalog.
        """
        screen = self._screens.get(metric_id)
        if screen is None:
            screen = MetricScreen(
                self.catalog.get(metric_id),
                authorizer=self.gate,
                aggregator=self.query,
                uploader=self.uploader,
                view=self.view,
                window_days=self.window_days,
            )
            self._screens[metric_id] = screen
        return screen

    def existing_screen(self, metric_id: str) -> MetricScreen | None:
        return self._screens.get(metric_id)

    def shutdown(self) -> None:
        """Dismiss every screen and stop any remaining sessions."""
        for screen in self._screens.values():
            screen.dismiss()
        self.query.stop_all()
        logger.info("Engine shut down (%d screens)", len(self._screens))
