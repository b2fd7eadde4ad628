"""Read-permission gate in front of the health data source.

The gate validates metric ids against the catalog, refuses to touch a
platform that has no health store (``DataSourceUnavailable``), and renders
the status text the UI shows on the welcome screen.

Note that ``request_authorization()`` returning True only means the request
flow completed.  Platforms do not always reveal per-metric read denial, so
callers that need a grant check ``check_status()`` afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from healthbyte.health.base import (
    AuthorizationRequestStatus,
    AuthorizationStatus,
    HealthSource,
)
from healthbyte.health.catalog import MetricCatalog
from healthbyte.health.errors import DataSourceUnavailable, HealthSourceError

logger = logging.getLogger("healthbyte.health.authorization")


@dataclass(frozen=True)
class AuthorizationStatusReport:
    """Per-metric grants partitioned into three sets."""

    granted: frozenset[str]
    denied: frozenset[str]
    undetermined: frozenset[str]

    @property
    def all_granted(self) -> bool:
        return not self.denied and not self.undetermined


class AuthorizationGate:
    """Request and report read permission for catalog metrics."""

    def __init__(self, source: HealthSource, catalog: MetricCatalog) -> None:
        self._source = source
        self._catalog = catalog
        self.has_requested = False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def check_status(self, metric_ids: Iterable[str]) -> AuthorizationStatusReport:
        """Partition ``metric_ids`` by their last-known grant.  Never blocks.

        Raises:
            DataSourceUnavailable: If the device has no health store.
            UnknownMetric:         If an id is not in the catalog.
        """
        ids = self._validate(metric_ids)
        self._require_available()

        buckets: dict[AuthorizationStatus, set[str]] = {s: set() for s in AuthorizationStatus}
        for metric_id in ids:
            buckets[self._source.authorization_status(metric_id)].add(metric_id)
        return AuthorizationStatusReport(
            granted=frozenset(buckets[AuthorizationStatus.GRANTED]),
            denied=frozenset(buckets[AuthorizationStatus.DENIED]),
            undetermined=frozenset(buckets[AuthorizationStatus.UNDETERMINED]),
        )

    def is_granted(self, metric_id: str) -> bool:
        return metric_id in self.check_status([metric_id]).granted

    async def request_status(self, metric_ids: Iterable[str]) -> AuthorizationRequestStatus:
        ids = self._validate(metric_ids)
        self._require_available()
        try:
            status = await self._source.authorization_request_status(ids)
        except HealthSourceError as exc:
            logger.warning("Authorization request status failed: %s", exc)
            return AuthorizationRequestStatus.UNKNOWN
        if status is AuthorizationRequestStatus.UNNECESSARY:
            self.has_requested = True
        return status

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request_authorization(self, metric_ids: Iterable[str]) -> bool:
        """Ask the platform for read access.  May suspend on a consent prompt.

        Returns:
            True if the platform did not report an error.

        Raises:
            DataSourceUnavailable: If the device has no health store.
            UnknownMetric:         If an id is not in the catalog.
        """
        ids = self._validate(metric_ids)
        self._require_available()

        logger.info("Requesting %s authorization for %s", self._source.DISPLAY_NAME, sorted(ids))
        try:
            success = await self._source.request_authorization(ids)
        except HealthSourceError as exc:
            logger.warning("Authorization request failed: %s", exc)
            return False
        if success:
            self.has_requested = True
        return bool(success)

    # ------------------------------------------------------------------
    # Status text
    # ------------------------------------------------------------------

    def describe_status(self, metric_ids: Iterable[str]) -> str:
        """One-sentence summary of how many metrics are readable."""
        ids = self._validate(metric_ids)
        report = self.check_status(ids)
        text = f"{len(report.granted)} of {len(ids)} data types are authorized for reading."
        if report.denied:
            names = ", ".join(sorted(self._catalog.get(m).name for m in report.denied))
            text += f" Denied: {names}."
        return text

    async def status_text(self, metric_ids: Iterable[str]) -> str:
        """Status shown before the user taps "Authorize"."""
        ids = self._validate(metric_ids)
        status = await self.request_status(ids)
        if status is AuthorizationRequestStatus.SHOULD_REQUEST:
            return (
                "The application has not yet requested authorization "
                "for all of the specified data types."
            )
        if status is AuthorizationRequestStatus.UNNECESSARY:
            return "The application has already requested authorization. " + self.describe_status(ids)
        return (
            "The authorization request status could not be determined "
            "because an error occurred."
        )

    async def request_with_status(self, metric_ids: Iterable[str]) -> tuple[bool, str]:
        """Request authorization and return ``(success, status_text)``."""
        ids = self._validate(metric_ids)
        already_requested = self.has_requested
        try:
            self._require_available()
            success = await self._source.request_authorization(ids)
        except HealthSourceError as exc:
            return False, f"{self._source.DISPLAY_NAME} authorization error: {exc}"

        if not success:
            return False, f"{self._source.DISPLAY_NAME} authorization did not complete successfully."

        self.has_requested = True
        if already_requested:
            prefix = "You've already requested access to health data. "
        else:
            prefix = f"{self._source.DISPLAY_NAME} authorization request was successful! "
        return True, prefix + self.describe_status(ids)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate(self, metric_ids: Iterable[str]) -> set[str]:
        ids = set(metric_ids)
        for metric_id in ids:
            self._catalog.get(metric_id)
        return ids

    def _require_available(self) -> None:
        if not self._source.is_health_data_available():
            raise DataSourceUnavailable(
                f"{self._source.DISPLAY_NAME} data is not available on this device."
            )
