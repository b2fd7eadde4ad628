"""Exception hierarchy for the HealthByte aggregation-and-sync engine.

Authorization and query errors are raised to the screen driver, which turns
them into status text.  Sync errors are never raised out of
``SyncUploader.upload()``; they travel inside an ``UploadResult`` instead.
"""

from __future__ import annotations


class HealthByteError(Exception):
    """Base class for all engine errors."""


class DataSourceUnavailable(HealthByteError):
    """The health data store does not exist on this device.

    Fatal for the feature (the UI must disable it), never for the process.
    """


class NotAuthorized(HealthByteError):
    """Read permission for a metric has not been granted.  Re-request."""


class UnknownMetric(HealthByteError, KeyError):
    """A metric id has no descriptor in the catalog."""

    def __init__(self, metric_id: str) -> None:
        super().__init__(metric_id)
        self.metric_id = metric_id

    def __str__(self) -> str:
        return f"No catalog entry for metric '{self.metric_id}'"


class SessionAlreadyActive(HealthByteError):
    """A live aggregation session for this metric is already running."""


class HealthSourceError(HealthByteError):
    """The health platform reported an error while handling a request."""


class RemoteStoreError(HealthByteError):
    """Transport-level failure talking to the remote store."""


# ---------------------------------------------------------------------------
# Sync errors (reported through UploadResult)
# ---------------------------------------------------------------------------


class SyncError(HealthByteError):
    """Base class for upload failures.

    Attributes:
        code: Short machine-readable slug used by the HTTP layer and logs.
    """

    code: str = "sync_error"


class Unauthenticated(SyncError):
    """No signed-in user; the caller must sign in before syncing."""

    code = "unauthenticated"


class UnmappedMetric(SyncError):
    """The metric has no remote column.  A configuration error."""

    code = "unmapped_metric"


class RowNotFound(SyncError):
    """The update matched zero rows; the patient row does not exist."""

    code = "row_not_found"


class UploadInProgress(SyncError):
    """An upload for the same user and metric is still pending."""

    code = "upload_in_progress"


class NetworkFailure(SyncError):
    """Transient transport failure.  Surfaced; retry is manual only."""

    code = "network_failure"


class InvalidValue(SyncError):
    """The total is NaN or infinite and cannot be written to a column."""

    code = "invalid_value"
