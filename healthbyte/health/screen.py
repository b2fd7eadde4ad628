"""Generic per-metric screen driver.

A ``MetricScreen`` is what a UI binds to when it shows one metric's week.
It is composed from three capabilities instead of inheriting them:

    AuthorizationRequester — asks for read access, returns status text
    LiveAggregationSource  — starts live aggregation sessions
    Uploader               — sends the weekly total to the remote store

and reports everything to a ``MetricView``.

State machine::

    Idle → Authorizing → Active ⇄ Uploading
                           ↓
                        Stopped   (dismiss; appear() starts over)

Uploading lasts while any upload is pending.  Overlapping uploads are
serialized per user by the uploader, not by the screen, so different users
sharing a screen do not block each other.  A failed upload returns to Active
so the user can retry by hand.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, Protocol, Sequence
from uuid import UUID

from healthbyte.health.aggregation import DEFAULT_WINDOW_DAYS, AggregationSession, Subscription
from healthbyte.health.base import BucketSnapshot, DailyBucket, MetricDescriptor, RemoteStore
from healthbyte.health.errors import (
    DataSourceUnavailable,
    HealthByteError,
    NotAuthorized,
)
from healthbyte.health.projector import WeeklyTotalProjector
from healthbyte.health.sync.uploader import UploadResult

logger = logging.getLogger("healthbyte.health.screen")


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class AuthorizationRequester(Protocol):
    async def request_with_status(self, metric_ids: Iterable[str]) -> tuple[bool, str]: ...


class LiveAggregationSource(Protocol):
    async def start(
        self, metric_id: str, window_days: int = ..., *, live: bool = ...
    ) -> AggregationSession: ...

    def active_session(self, metric_id: str) -> AggregationSession | None: ...


class Uploader(Protocol):
    async def upload(
        self,
        metric_id: str,
        scalar: float,
        user_id: UUID | str | None = ...,
        *,
        store: RemoteStore | None = ...,
    ) -> UploadResult: ...


class MetricView(Protocol):
    """Callbacks the UI layer implements."""

    def on_buckets_updated(self, metric_id: str, buckets: Sequence[DailyBucket]) -> None: ...

    def on_upload_result(self, metric_id: str, result: UploadResult) -> None: ...

    def on_authorization_status(self, text: str) -> None: ...


class ScreenState(str, Enum):
    IDLE = "idle"
    AUTHORIZING = "authorizing"
    ACTIVE = "active"
    UPLOADING = "uploading"
    STOPPED = "stopped"


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


class MetricScreen:
    """Drive one metric's authorize → live buckets → upload workflow."""

    def __init__(
        self,
        descriptor: MetricDescriptor,
        *,
        authorizer: AuthorizationRequester,
        aggregator: LiveAggregationSource,
        uploader: Uploader,
        view: MetricView,
        window_days: int = DEFAULT_WINDOW_DAYS,
    ) -> None:
        self.descriptor = descriptor
        self.window_days = window_days
        self._authorizer = authorizer
        self._aggregator = aggregator
        self._uploader = uploader
        self._view = view
        self._projector = WeeklyTotalProjector()

        self.state = ScreenState.IDLE
        self.feature_disabled = False
        self.session: AggregationSession | None = None
        self._subscription: Subscription | None = None
        self._uploads = 0

    @property
    def metric_id(self) -> str:
        return self.descriptor.id

    @property
    def title(self) -> str:
        return self.descriptor.name

    @property
    def upload_button_title(self) -> str:
        return f"Update {self.descriptor.name}"

    @property
    def can_upload(self) -> bool:
        return self.descriptor.is_synced and self.state is ScreenState.ACTIVE

    @property
    def snapshot(self) -> BucketSnapshot | None:
        return self.session.latest if self.session else None

    @property
    def weekly_total(self) -> float | None:
        snapshot = self.snapshot
        if snapshot is None:
            return None
        return self._projector.project(snapshot, self.descriptor)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def appear(self) -> bool:
        """Authorize and start live aggregation.  Returns True when Active.

        Only sets up once per appearance; calling it on an active screen is
        a no-op.
        """
        if self.state in (ScreenState.AUTHORIZING, ScreenState.ACTIVE, ScreenState.UPLOADING):
            return self.state is not ScreenState.AUTHORIZING
        if self.feature_disabled:
            return False

        self.state = ScreenState.AUTHORIZING
        try:
            granted, text = await self._authorizer.request_with_status([self.metric_id])
        except DataSourceUnavailable as exc:
            self._disable(str(exc))
            return False
        self._view.on_authorization_status(text)
        if not granted or self.state is ScreenState.STOPPED:
            if self.state is ScreenState.AUTHORIZING:
                self.state = ScreenState.IDLE
            return False

        existing = self._aggregator.active_session(self.metric_id)
        if existing is not None:
            existing.stop()

        try:
            session = await self._aggregator.start(self.metric_id, self.window_days)
        except DataSourceUnavailable as exc:
            self._disable(str(exc))
            return False
        except NotAuthorized as exc:
            self._view.on_authorization_status(str(exc))
            self.state = ScreenState.IDLE
            return False

        if self.state is ScreenState.STOPPED:
            session.stop()
            return False

        self.session = session
        self._subscription = session.subscribe(self._on_snapshot, self._on_live_error)
        self.state = ScreenState.ACTIVE
        logger.info("Screen for %s is active", self.metric_id)
        return True

    def dismiss(self) -> None:
        """Tear down the live session.  Safe to call repeatedly."""
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        if self.session is not None:
            self.session.stop()
        if self.state is not ScreenState.IDLE or self.session is not None:
            self.state = ScreenState.STOPPED

    async def refresh(self) -> bool:
        """Re-request authorization and recompute the buckets."""
        try:
            granted, text = await self._authorizer.request_with_status([self.metric_id])
        except DataSourceUnavailable as exc:
            self._disable(str(exc))
            return False
        self._view.on_authorization_status(text)
        if not granted:
            return False
        if self.session is not None and self.session.is_active:
            try:
                await self.session.refresh()
            except NotAuthorized as exc:
                self._view.on_authorization_status(str(exc))
                return False
            return True
        return await self.appear()

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(
        self, user_id: UUID | str | None = None, *, store: RemoteStore | None = None
    ) -> UploadResult:
        """Run a fresh aggregation pass, reduce it and upload the total.

        Raises:
            RuntimeError: If the screen is not active.
        """
        if self.state not in (ScreenState.ACTIVE, ScreenState.UPLOADING) or self.session is None:
            raise RuntimeError(f"Screen for {self.metric_id} is {self.state.value}")

        self.state = ScreenState.UPLOADING
        self._uploads += 1
        try:
            snapshot = await self._fresh_snapshot(self.session)
            total = self._projector.project(snapshot, self.descriptor)
            result = await self._uploader.upload(self.metric_id, total, user_id, store=store)
        finally:
            self._uploads -= 1
            if self._uploads == 0 and self.state is ScreenState.UPLOADING:
                self.state = ScreenState.ACTIVE

        self._view.on_upload_result(self.metric_id, result)
        return result

    async def _fresh_snapshot(self, session: AggregationSession) -> BucketSnapshot:
        try:
            return await session.refresh()
        except (HealthByteError, RuntimeError) as exc:
            if session.latest is None:
                raise
            logger.warning(
                "Fresh aggregation for %s failed (%s); uploading last snapshot",
                self.metric_id, exc,
            )
            return session.latest

    # ------------------------------------------------------------------
    # Session callbacks
    # ------------------------------------------------------------------

    def _on_snapshot(self, snapshot: BucketSnapshot) -> None:
        self._view.on_buckets_updated(self.metric_id, snapshot.buckets)

    def _on_live_error(self, exc: Exception) -> None:
        self._view.on_authorization_status(str(exc))

    def _disable(self, text: str) -> None:
        logger.warning("Disabling %s screen: %s", self.metric_id, text)
        self.feature_disabled = True
        self.state = ScreenState.IDLE
        self._view.on_authorization_status(text)
