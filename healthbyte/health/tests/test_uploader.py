"""Tests for SyncUploader — column mapping, identity, serialization and failures."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from healthbyte.health.base import ColumnType, RemoteStore
from healthbyte.health.catalog import MetricCatalog
from healthbyte.health.errors import RemoteStoreError
from healthbyte.health.sync.uploader import (
    SyncUploader,
    convert_for_column,
    create_patient_row,
)
from healthbyte.health.tests.conftest import TEST_USER_ID


class TestConvertForColumn:
    @pytest.mark.parametrize(
        "value,expected",
        [(3500.0, 3500), (3500.5, 3501), (2.5, 3), (2.4999, 2), (-2.5, -3), (0.0, 0)],
    )
    def test_integer_rounds_half_away_from_zero(self, value: float, expected: int) -> None:
        result = convert_for_column(value, ColumnType.INTEGER)
        assert result == expected
        assert isinstance(result, int)

    def test_float_keeps_precision(self) -> None:
        assert convert_for_column(1234.567, ColumnType.FLOAT) == 1234.567

    def test_non_finite_rejected(self) -> None:
        with pytest.raises(ValueError):
            convert_for_column(float("nan"), ColumnType.FLOAT)


class TestUploadSuccess:
    @pytest.mark.asyncio
    async def test_updates_patient_row(self, uploader: SyncUploader, store: AsyncMock) -> None:
        result = await uploader.upload("stepCount", 3500.0, TEST_USER_ID)

        assert result.ok
        assert result.error is None
        assert result.column == "stepCount"
        assert result.value == 3500
        assert result.rows_affected == 1
        store.update.assert_awaited_once_with(
            "Patient", "stepCount", 3500, auth_id=TEST_USER_ID, id_column="authId"
        )

    @pytest.mark.asyncio
    async def test_distance_uploaded_as_float(
        self, uploader: SyncUploader, store: AsyncMock
    ) -> None:
        result = await uploader.upload("distanceWalkingRunning", 4321.5, TEST_USER_ID)
        assert result.ok
        assert result.value == 4321.5
        assert store.update.await_args.args[1] == "walkingDistanceMeters"

    @pytest.mark.asyncio
    async def test_user_resolved_from_store(
        self, uploader: SyncUploader, store: AsyncMock
    ) -> None:
        result = await uploader.upload("stepCount", 10)
        assert result.ok
        assert result.user_id == TEST_USER_ID
        store.current_user_id.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_string_user_id_accepted(
        self, uploader: SyncUploader, store: AsyncMock
    ) -> None:
        result = await uploader.upload("stepCount", 10, str(TEST_USER_ID).upper())
        assert result.ok
        assert result.user_id == TEST_USER_ID
        store.current_user_id.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_never_inserts(self, uploader: SyncUploader, store: AsyncMock) -> None:
        await uploader.upload("stepCount", 10, TEST_USER_ID)
        store.insert.assert_not_called()

    @pytest.mark.asyncio
    async def test_per_call_store(self, uploader: SyncUploader, store: AsyncMock) -> None:
        session_store = AsyncMock(spec=RemoteStore)
        session_store.current_user_id.return_value = TEST_USER_ID
        session_store.update.return_value = 1

        result = await uploader.upload("stepCount", 10, store=session_store)
        assert result.ok
        session_store.update.assert_awaited_once()
        store.update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_custom_table_and_id_column(
        self, store: AsyncMock, catalog: MetricCatalog
    ) -> None:
        uploader = SyncUploader(store, catalog, table="Participant", id_column="userId")
        await uploader.upload("stepCount", 1, TEST_USER_ID)
        store.update.assert_awaited_once_with(
            "Participant", "stepCount", 1, auth_id=TEST_USER_ID, id_column="userId"
        )


class TestUploadFailures:
    @pytest.mark.asyncio
    async def test_row_not_found(self, uploader: SyncUploader, store: AsyncMock) -> None:
        store.update.return_value = 0
        result = await uploader.upload("stepCount", 3500, TEST_USER_ID)

        assert not result.ok
        assert result.error_code == "row_not_found"
        assert result.rows_affected == 0
        store.update.assert_awaited_once()
        store.insert.assert_not_called()

    @pytest.mark.asyncio
    async def test_unauthenticated_when_store_has_no_user(
        self, uploader: SyncUploader, store: AsyncMock
    ) -> None:
        store.current_user_id.return_value = None
        result = await uploader.upload("stepCount", 3500)

        assert result.error_code == "unauthenticated"
        store.update.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_id", ["", "   ", "not-a-uuid"])
    async def test_unauthenticated_for_bad_user_id(
        self, uploader: SyncUploader, store: AsyncMock, user_id: str
    ) -> None:
        result = await uploader.upload("stepCount", 3500, user_id)

        assert result.error_code == "unauthenticated"
        store.current_user_id.assert_not_awaited()
        store.update.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("metric_id", ["flightsClimbed", "heartRate"])
    async def test_unmapped_metric(
        self, uploader: SyncUploader, store: AsyncMock, metric_id: str
    ) -> None:
        result = await uploader.upload(metric_id, 12, TEST_USER_ID)

        assert result.error_code == "unmapped_metric"
        assert result.column is None
        store.update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_network_failure(self, uploader: SyncUploader, store: AsyncMock) -> None:
        store.update.side_effect = RemoteStoreError("connection reset")
        result = await uploader.upload("stepCount", 3500, TEST_USER_ID)

        assert result.error_code == "network_failure"
        assert "connection reset" in str(result.error)
        assert not uploader.is_uploading(TEST_USER_ID, "stepCount")

    @pytest.mark.asyncio
    async def test_identity_lookup_failure(
        self, uploader: SyncUploader, store: AsyncMock
    ) -> None:
        store.current_user_id.side_effect = RemoteStoreError("timeout")
        result = await uploader.upload("stepCount", 3500)
        assert result.error_code == "network_failure"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("total", [float("inf"), float("nan")])
    async def test_non_finite_total_reported(
        self, uploader: SyncUploader, store: AsyncMock, total: float
    ) -> None:
        result = await uploader.upload("stepCount", total, TEST_USER_ID)

        assert result.error_code == "invalid_value"
        assert result.value is None
        store.update.assert_not_awaited()
        assert not uploader.is_uploading(TEST_USER_ID, "stepCount")

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, uploader: SyncUploader, store: AsyncMock) -> None:
        store.update.side_effect = [RemoteStoreError("timeout"), 1]
        first = await uploader.upload("stepCount", 3500, TEST_USER_ID)
        second = await uploader.upload("stepCount", 3500, TEST_USER_ID)
        assert first.error_code == "network_failure"
        assert second.ok


class TestUploadSerialization:
    @pytest.mark.asyncio
    async def test_concurrent_upload_rejected(
        self, uploader: SyncUploader, store: AsyncMock
    ) -> None:
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_update(*args: object, **kwargs: object) -> int:
            started.set()
            await release.wait()
            return 1

        store.update.side_effect = slow_update

        first = asyncio.create_task(uploader.upload("stepCount", 100, TEST_USER_ID))
        await started.wait()
        assert uploader.is_uploading(TEST_USER_ID, "stepCount")

        second = await uploader.upload("stepCount", 200, TEST_USER_ID)
        assert second.error_code == "upload_in_progress"

        release.set()
        result = await first
        assert result.ok
        assert not uploader.is_uploading(TEST_USER_ID, "stepCount")
        store.update.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_different_metrics_upload_concurrently(
        self, uploader: SyncUploader, store: AsyncMock
    ) -> None:
        release = asyncio.Event()

        async def slow_update(*args: object, **kwargs: object) -> int:
            await release.wait()
            return 1

        store.update.side_effect = slow_update
        steps_task = asyncio.create_task(uploader.upload("stepCount", 1, TEST_USER_ID))
        distance_task = asyncio.create_task(
            uploader.upload("distanceWalkingRunning", 2.0, TEST_USER_ID)
        )
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(steps_task, distance_task)
        assert all(r.ok for r in results)
        assert store.update.await_count == 2


class TestCreatePatientRow:
    @pytest.mark.asyncio
    async def test_inserts_lowercase_auth_id(self, store: AsyncMock) -> None:
        await create_patient_row(store, TEST_USER_ID, stepCount=0)
        store.insert.assert_awaited_once_with(
            "Patient", {"authId": str(TEST_USER_ID).lower(), "stepCount": 0}
        )
