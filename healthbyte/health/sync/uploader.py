"""Upload weekly totals to the user's Patient row.

The upload is a single update-if-exists round trip keyed by the
authenticated user's id.  It never inserts: the row is created once at
account creation (``create_patient_row``), and an update that matches no
row is reported as ``RowNotFound``.

The remote store has no compare-and-swap, so uploads are serialized here:
while an upload for ``(user_id, metric_id)`` is pending, a second one is
rejected with ``UploadInProgress``.

Errors are returned inside ``UploadResult``; ``upload()`` does not raise for
any sync failure.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from healthbyte.health.base import ColumnType, RemoteStore
from healthbyte.health.catalog import MetricCatalog
from healthbyte.health.errors import (
    InvalidValue,
    NetworkFailure,
    RemoteStoreError,
    RowNotFound,
    SyncError,
    Unauthenticated,
    UnmappedMetric,
    UploadInProgress,
)

logger = logging.getLogger("healthbyte.health.sync.uploader")

DEFAULT_TABLE = "Patient"
DEFAULT_ID_COLUMN = "authId"


@dataclass(frozen=True)
class SyncRequest:
    """One pending column update.  Discarded once the store responds."""

    user_id: UUID
    remote_column: str
    value: int | float


@dataclass
class UploadResult:
    """Result of a single upload.

    Attributes:
        metric_id:     Catalog id that was uploaded.
        user_id:       Resolved user id (None if unauthenticated).
        column:        Remote column written (None if unmapped).
        value:         Value sent after column conversion.
        status:        'success' or 'error'.
        error:         The SyncError when status == 'error'.
        rows_affected: Rows the update touched.
        uploaded_at:   UTC timestamp of completion.
    """

    metric_id: str
    user_id: UUID | None = None
    column: str | None = None
    value: int | float | None = None
    status: str = "success"
    error: SyncError | None = None
    rows_affected: int = 0
    uploaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @property
    def error_code(self) -> str | None:
        return self.error.code if self.error else None


def convert_for_column(value: float, column_type: ColumnType) -> int | float:
    """Convert a scalar to the column's numeric representation.

    Integer columns round half away from zero; float columns keep full precision.

    Raises:
        ValueError: If ``value`` is NaN or infinite.
    """
    if not math.isfinite(value):
        raise ValueError(f"Cannot upload non-finite value {value!r}")
    if column_type is ColumnType.INTEGER:
        return int(Decimal(repr(float(value))).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return float(value)


def _coerce_user_id(user_id: UUID | str | None) -> UUID | None:
    if user_id is None or isinstance(user_id, UUID):
        return user_id
    if not str(user_id).strip():
        return None
    try:
        return UUID(str(user_id))
    except ValueError:
        return None


class SyncUploader:
    """Serialize and send weekly totals to the remote store."""

    def __init__(
        self,
        store: RemoteStore,
        catalog: MetricCatalog,
        *,
        table: str = DEFAULT_TABLE,
        id_column: str = DEFAULT_ID_COLUMN,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._table = table
        self._id_column = id_column
        self._in_flight: set[tuple[UUID, str]] = set()
        self._lock = threading.Lock()

    def is_uploading(self, user_id: UUID, metric_id: str) -> bool:
        with self._lock:
            return (user_id, metric_id) in self._in_flight

    async def upload(
        self,
        metric_id: str,
        scalar: float,
        user_id: UUID | str | None = None,
        *,
        store: RemoteStore | None = None,
    ) -> UploadResult:
        """Write ``scalar`` to the metric's column on the user's row.

        Args:
            metric_id: Catalog id; must map to a remote column.
            scalar:    Weekly total in the metric's unit.
            user_id:   Signed-in user; falls back to the store's current user.
            store:     Session-scoped store for this call; defaults to the
                       uploader's own store.

        Returns:
            UploadResult; ``error`` is set on failure.
        """
        store = store or self._store
        result = UploadResult(metric_id=metric_id)

        column = self._catalog.remote_column(metric_id)
        if column is None:
            return self._fail(result, UnmappedMetric(f"No remote column mapped for {metric_id}"))
        result.column = column
        column_type = self._catalog.get(metric_id).column_type

        try:
            resolved = _coerce_user_id(user_id)
            if resolved is None and user_id is None:
                resolved = await store.current_user_id()
        except RemoteStoreError as exc:
            return self._fail(result, NetworkFailure(str(exc)))
        if resolved is None:
            return self._fail(result, Unauthenticated("No authenticated user; cannot update data."))
        result.user_id = resolved

        try:
            value = convert_for_column(scalar, column_type)
        except ValueError as exc:
            return self._fail(result, InvalidValue(str(exc)))
        request = SyncRequest(user_id=resolved, remote_column=column, value=value)
        result.value = request.value

        key = (resolved, metric_id)
        with self._lock:
            if key in self._in_flight:
                return self._fail(
                    result, UploadInProgress(f"An upload of {metric_id} is already in progress")
                )
            self._in_flight.add(key)

        try:
            rows = await store.update(
                self._table,
                request.remote_column,
                request.value,
                auth_id=request.user_id,
                id_column=self._id_column,
            )
        except RemoteStoreError as exc:
            return self._fail(result, NetworkFailure(str(exc)))
        finally:
            with self._lock:
                self._in_flight.discard(key)

        result.rows_affected = rows
        if rows == 0:
            return self._fail(
                result, RowNotFound(f"No {self._table} row for user {request.user_id}")
            )

        logger.info(
            "Uploaded %s=%s for %s (%d row)", column, request.value, request.user_id, rows
        )
        return result

    def _fail(self, result: UploadResult, error: SyncError) -> UploadResult:
        result.status = "error"
        result.error = error
        logger.warning("Upload of %s failed [%s]: %s", result.metric_id, error.code, error)
        return result


async def create_patient_row(
    store: RemoteStore,
    user_id: UUID,
    *,
    table: str = DEFAULT_TABLE,
    id_column: str = DEFAULT_ID_COLUMN,
    **columns: Any,
) -> None:
    """Insert the user's row at account creation.

    The only insert the system performs; uploads afterwards are updates.
    """
    row = {id_column: str(user_id).lower(), **columns}
    await store.insert(table, row)
    logger.info("Created %s row for %s", table, user_id)
