"""Tests for the MetricScreen driver and the engine composition root."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID

import pytest

from healthbyte.health.aggregation import WindowedAggregationQuery
from healthbyte.health.authorization import AuthorizationGate
from healthbyte.health.catalog import MetricCatalog
from healthbyte.health.engine import HealthByteEngine, ScreenStateView
from healthbyte.health.errors import UnknownMetric
from healthbyte.health.screen import MetricScreen, ScreenState
from healthbyte.health.sources.memory import InMemoryHealthSource
from healthbyte.health.sync.uploader import SyncUploader
from healthbyte.health.tests.conftest import TEST_USER_ID, FakeClock, steps


@pytest.fixture
def view() -> MagicMock:
    return MagicMock()


def _screen(
    metric_id: str,
    catalog: MetricCatalog,
    gate: AuthorizationGate,
    query: WindowedAggregationQuery,
    uploader: SyncUploader,
    view: MagicMock,
) -> MetricScreen:
    return MetricScreen(
        catalog.get(metric_id),
        authorizer=gate,
        aggregator=query,
        uploader=uploader,
        view=view,
    )


@pytest.fixture
def screen(
    catalog: MetricCatalog,
    gate: AuthorizationGate,
    query: WindowedAggregationQuery,
    uploader: SyncUploader,
    view: MagicMock,
) -> MetricScreen:
    return _screen("stepCount", catalog, gate, query, uploader, view)


class TestAppear:
    @pytest.mark.asyncio
    async def test_appear_authorizes_and_shows_buckets(
        self, screen: MetricScreen, view: MagicMock, source: InMemoryHealthSource
    ) -> None:
        source.add_samples([steps(6, 1000), steps(5, 2000), steps(3, 500)])
        assert await screen.appear()

        assert screen.state is ScreenState.ACTIVE
        status_text = view.on_authorization_status.call_args.args[0]
        assert "authorization request was successful" in status_text
        metric_id, buckets = view.on_buckets_updated.call_args.args
        assert metric_id == "stepCount"
        assert [b.value for b in buckets] == [1000, 2000, 0, 500, 0, 0, 0]
        assert screen.weekly_total == 3500
        screen.dismiss()

    @pytest.mark.asyncio
    async def test_appear_twice_is_noop(
        self, screen: MetricScreen, query: WindowedAggregationQuery
    ) -> None:
        assert await screen.appear()
        session = screen.session
        assert await screen.appear()
        assert screen.session is session
        assert query.active_session("stepCount") is session
        screen.dismiss()

    @pytest.mark.asyncio
    async def test_live_updates_reach_view(
        self, screen: MetricScreen, view: MagicMock, source: InMemoryHealthSource
    ) -> None:
        await screen.appear()
        source.add_samples([steps(0, 321, hour=10)])
        await screen.session.settle()

        _, buckets = view.on_buckets_updated.call_args.args
        assert buckets[-1].value == 321
        screen.dismiss()

    @pytest.mark.asyncio
    async def test_denied_metric(
        self, catalog: MetricCatalog, clock: FakeClock, uploader: SyncUploader, view: MagicMock
    ) -> None:
        source = InMemoryHealthSource(denied={"stepCount"})
        gate = AuthorizationGate(source, catalog)
        query = WindowedAggregationQuery(source, catalog, gate, clock=clock)
        screen = _screen("stepCount", catalog, gate, query, uploader, view)

        assert not await screen.appear()
        assert screen.state is ScreenState.IDLE
        assert "has not been granted" in view.on_authorization_status.call_args.args[0]
        assert source.observer_count == 0

    @pytest.mark.asyncio
    async def test_unavailable_source_disables_feature(
        self, catalog: MetricCatalog, clock: FakeClock, uploader: SyncUploader, view: MagicMock
    ) -> None:
        source = InMemoryHealthSource(available=False)
        gate = AuthorizationGate(source, catalog)
        query = WindowedAggregationQuery(source, catalog, gate, clock=clock)
        screen = _screen("stepCount", catalog, gate, query, uploader, view)

        assert not await screen.appear()
        assert screen.feature_disabled
        view.on_authorization_status.assert_called_once_with(
            "Health data is not available on this device."
        )

        assert not await screen.appear()
        view.on_authorization_status.assert_called_once()
        assert source.observer_count == 0

    @pytest.mark.asyncio
    async def test_authorization_error_text(
        self, catalog: MetricCatalog, clock: FakeClock, uploader: SyncUploader, view: MagicMock
    ) -> None:
        source = InMemoryHealthSource(authorization_error="user cancelled")
        gate = AuthorizationGate(source, catalog)
        query = WindowedAggregationQuery(source, catalog, gate, clock=clock)
        screen = _screen("stepCount", catalog, gate, query, uploader, view)

        assert not await screen.appear()
        view.on_authorization_status.assert_called_once_with(
            "Health authorization error: user cancelled"
        )
        assert screen.state is ScreenState.IDLE


class TestDismiss:
    @pytest.mark.asyncio
    async def test_dismiss_stops_session(
        self,
        screen: MetricScreen,
        view: MagicMock,
        source: InMemoryHealthSource,
        query: WindowedAggregationQuery,
    ) -> None:
        await screen.appear()
        view.on_buckets_updated.reset_mock()

        screen.dismiss()
        screen.dismiss()
        source.add_samples([steps(0, 5, hour=9)])
        await asyncio.sleep(0)

        assert screen.state is ScreenState.STOPPED
        assert query.active_session("stepCount") is None
        view.on_buckets_updated.assert_not_called()

    def test_dismiss_before_appear(self, screen: MetricScreen) -> None:
        screen.dismiss()
        assert screen.state is ScreenState.IDLE

    @pytest.mark.asyncio
    async def test_appear_after_dismiss(self, screen: MetricScreen) -> None:
        await screen.appear()
        first = screen.session
        screen.dismiss()

        assert await screen.appear()
        assert screen.session is not first
        assert screen.state is ScreenState.ACTIVE
        screen.dismiss()


class TestUpload:
    def test_titles(self, screen: MetricScreen) -> None:
        assert screen.title == "Steps"
        assert screen.upload_button_title == "Update Steps"

    @pytest.mark.asyncio
    async def test_upload_weekly_total(
        self,
        screen: MetricScreen,
        view: MagicMock,
        store: AsyncMock,
        source: InMemoryHealthSource,
    ) -> None:
        source.add_samples([steps(6, 1000), steps(5, 2000), steps(3, 500)])
        await screen.appear()
        assert screen.can_upload

        result = await screen.upload(TEST_USER_ID)
        assert result.ok
        assert result.value == 3500
        store.update.assert_awaited_once_with(
            "Patient", "stepCount", 3500, auth_id=TEST_USER_ID, id_column="authId"
        )
        view.on_upload_result.assert_called_once_with("stepCount", result)
        assert screen.state is ScreenState.ACTIVE
        screen.dismiss()

    @pytest.mark.asyncio
    async def test_upload_uses_fresh_aggregation(
        self,
        catalog: MetricCatalog,
        gate: AuthorizationGate,
        query: WindowedAggregationQuery,
        uploader: SyncUploader,
        view: MagicMock,
        store: AsyncMock,
        source: InMemoryHealthSource,
    ) -> None:
        screen = _screen("stepCount", catalog, gate, query, uploader, view)
        await screen.appear()
        # Stop live delivery so only the upload's own pass can see the sample
        source.stop_observing(screen.session._observer)
        source.add_samples([steps(1, 64)])

        result = await screen.upload(TEST_USER_ID)
        assert result.value == 64
        screen.dismiss()

    @pytest.mark.asyncio
    async def test_upload_failure_returns_to_active(
        self, screen: MetricScreen, view: MagicMock, store: AsyncMock
    ) -> None:
        store.update.return_value = 0
        await screen.appear()

        result = await screen.upload(TEST_USER_ID)
        assert result.error_code == "row_not_found"
        assert screen.state is ScreenState.ACTIVE
        view.on_upload_result.assert_called_once_with("stepCount", result)
        screen.dismiss()

    @pytest.mark.asyncio
    async def test_upload_requires_active_screen(self, screen: MetricScreen) -> None:
        with pytest.raises(RuntimeError):
            await screen.upload(TEST_USER_ID)

    @pytest.mark.asyncio
    async def test_second_tap_while_uploading(
        self, screen: MetricScreen, store: AsyncMock
    ) -> None:
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_update(*args: object, **kwargs: object) -> int:
            started.set()
            await release.wait()
            return 1

        store.update.side_effect = slow_update
        await screen.appear()

        first = asyncio.create_task(screen.upload(TEST_USER_ID))
        await started.wait()
        assert screen.state is ScreenState.UPLOADING

        second = await screen.upload(TEST_USER_ID)
        assert second.error_code == "upload_in_progress"

        release.set()
        assert (await first).ok
        store.update.assert_awaited_once()
        screen.dismiss()

    @pytest.mark.asyncio
    async def test_other_user_not_blocked_while_uploading(
        self, screen: MetricScreen, store: AsyncMock
    ) -> None:
        first_user = UUID(int=1)
        second_user = UUID(int=2)
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_for_first_user(*args: object, **kwargs: object) -> int:
            if kwargs["auth_id"] == first_user:
                started.set()
                await release.wait()
            return 1

        store.update.side_effect = slow_for_first_user
        await screen.appear()

        first = asyncio.create_task(screen.upload(first_user))
        await started.wait()
        assert screen.state is ScreenState.UPLOADING

        second = await screen.upload(second_user)
        assert second.ok
        assert second.user_id == second_user
        # The first upload is still pending
        assert screen.state is ScreenState.UPLOADING

        release.set()
        assert (await first).ok
        assert screen.state is ScreenState.ACTIVE
        assert store.update.await_count == 2
        screen.dismiss()

    @pytest.mark.asyncio
    async def test_unsynced_metric(
        self,
        catalog: MetricCatalog,
        gate: AuthorizationGate,
        query: WindowedAggregationQuery,
        uploader: SyncUploader,
        view: MagicMock,
    ) -> None:
        screen = _screen("flightsClimbed", catalog, gate, query, uploader, view)
        await screen.appear()
        assert not screen.can_upload

        result = await screen.upload(TEST_USER_ID)
        assert result.error_code == "unmapped_metric"
        screen.dismiss()


class TestEngine:
    def test_screen_is_cached(self, source: InMemoryHealthSource, catalog: MetricCatalog) -> None:
        engine = HealthByteEngine(source, catalog, AsyncMock())
        assert engine.screen("stepCount") is engine.screen("stepCount")
        assert engine.existing_screen("distanceWalkingRunning") is None

    def test_unknown_screen(self, source: InMemoryHealthSource, catalog: MetricCatalog) -> None:
        engine = HealthByteEngine(source, catalog, AsyncMock())
        with pytest.raises(UnknownMetric):
            engine.screen("heartRate")

    @pytest.mark.asyncio
    async def test_shutdown_stops_sessions(
        self, source: InMemoryHealthSource, catalog: MetricCatalog, clock: FakeClock
    ) -> None:
        engine = HealthByteEngine(source, catalog, AsyncMock(), clock=clock)
        await engine.screen("stepCount").appear()
        assert source.observer_count == 1

        engine.shutdown()
        assert source.observer_count == 0
        assert engine.query.active_session("stepCount") is None

    def test_state_view_records_latest(self) -> None:
        view = ScreenStateView()
        view.on_authorization_status("ok")
        view.on_buckets_updated("stepCount", [])
        assert view.status_text == "ok"
        assert view.buckets == {"stepCount": ()}
