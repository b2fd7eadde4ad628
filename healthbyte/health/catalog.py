"""Load, validate, and hot-reload the HealthByte metric catalog.

The catalog lives in ``metric_catalog.yaml`` alongside this module.  It is
loaded once at start-up and cached; a missing or malformed catalog is a hard
failure.  Call ``reload_metric_catalog()`` to re-read it from disk.

Usage::

    from healthbyte.health.catalog import get_metric_catalog

    catalog = get_metric_catalog()
    steps = catalog.get("stepCount")
    steps.policy          # AggregationPolicy.SUM
    steps.remote_column   # 'stepCount'
"""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Any, Iterator

import yaml

from healthbyte.health.base import AggregationPolicy, ColumnType, MetricDescriptor, Unit
from healthbyte.health.errors import UnknownMetric

logger = logging.getLogger("healthbyte.health.catalog")

# Path to the YAML file sitting next to this module
_CATALOG_PATH = Path(__file__).parent / "metric_catalog.yaml"

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class CatalogValidationError(ValueError):
    """Raised when metric_catalog.yaml fails validation."""


class MetricCatalog:
    """Immutable registry of metric descriptors keyed by id."""

    def __init__(self, descriptors: list[MetricDescriptor], version: str = "1.0") -> None:
        self.version = version
        self._by_id: dict[str, MetricDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.id in self._by_id:
                raise CatalogValidationError(f"Duplicate metric id '{descriptor.id}'")
            self._by_id[descriptor.id] = descriptor
        self._by_hk = {d.hk_identifier: d for d in descriptors if d.hk_identifier}

    def get(self, metric_id: str) -> MetricDescriptor:
        """Return the descriptor for ``metric_id``.

        Raises:
            UnknownMetric: If the id is not in the catalog.
        """
        try:
            return self._by_id[metric_id]
        except KeyError:
            raise UnknownMetric(metric_id) from None

    def by_hk_identifier(self, hk_identifier: str) -> MetricDescriptor | None:
        return self._by_hk.get(hk_identifier)

    def remote_column(self, metric_id: str) -> str | None:
        """Return the remote column for a metric, or None if unknown/unsynced."""
        descriptor = self._by_id.get(metric_id)
        return descriptor.remote_column if descriptor else None

    def synced(self) -> list[MetricDescriptor]:
        """Descriptors that may be offered for upload."""
        return [d for d in self._by_id.values() if d.is_synced]

    @property
    def ids(self) -> list[str]:
        return list(self._by_id)

    def __contains__(self, metric_id: object) -> bool:
        return metric_id in self._by_id

    def __iter__(self) -> Iterator[MetricDescriptor]:
        return iter(self._by_id.values())

    def __len__(self) -> int:
        return len(self._by_id)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        CatalogValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Metric catalog not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise CatalogValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> MetricCatalog:
    """Validate the raw YAML dict and construct a MetricCatalog.

    All problems are collected and reported together.

    Raises:
        CatalogValidationError: If any entry is missing or invalid.
    """
    errors: list[str] = []
    version = str(raw.get("version", "1.0"))

    metrics_raw = raw.get("metrics", {})
    if not metrics_raw or not isinstance(metrics_raw, dict):
        errors.append("'metrics' section is missing or empty")
        metrics_raw = {}

    descriptors: list[MetricDescriptor] = []
    for metric_id, cfg in metrics_raw.items():
        if not isinstance(cfg, dict):
            errors.append(f"metrics.{metric_id} must be a mapping")
            continue

        def _enum(enum_cls: Any, key: str, default: str | None = None) -> Any:
            value = cfg.get(key, default)
            if value is None:
                errors.append(f"metrics.{metric_id}.{key} is required")
                return None
            try:
                return enum_cls(value)
            except ValueError:
                allowed = ", ".join(m.value for m in enum_cls)
                errors.append(
                    f"metrics.{metric_id}.{key} = {value!r} is not one of: {allowed}"
                )
                return None

        unit = _enum(Unit, "unit")
        policy = _enum(AggregationPolicy, "policy")
        column_type = _enum(ColumnType, "column_type", "float")

        remote_column = cfg.get("remote_column")
        if remote_column is not None and not _IDENTIFIER_RE.match(str(remote_column)):
            errors.append(
                f"metrics.{metric_id}.remote_column = {remote_column!r} is not a valid column name"
            )

        if unit is None or policy is None or column_type is None:
            continue

        descriptors.append(
            MetricDescriptor(
                id=str(metric_id),
                name=str(cfg.get("name", metric_id)),
                unit=unit,
                policy=policy,
                remote_column=remote_column,
                column_type=column_type,
                hk_identifier=cfg.get("hk_identifier"),
            )
        )

    columns = [d.remote_column for d in descriptors if d.remote_column]
    for column in {c for c in columns if columns.count(c) > 1}:
        errors.append(f"remote_column '{column}' is mapped by more than one metric")

    if errors:
        raise CatalogValidationError(
            f"metric_catalog.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return MetricCatalog(descriptors, version=version)


def load_metric_catalog(path: Path | None = None) -> MetricCatalog:
    """Load and validate the metric catalog from disk.

    Args:
        path: Override path to YAML. Uses the bundled metric_catalog.yaml by default.
    """
    target = path or _CATALOG_PATH
    catalog = _validate_and_build(_load_yaml(target))
    logger.info(
        "Loaded metric catalog v%s from %s (%d metrics)", catalog.version, target, len(catalog)
    )
    return catalog


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_catalog: MetricCatalog | None = None
_catalog_lock = threading.Lock()


def get_metric_catalog() -> MetricCatalog:
    """Return the global MetricCatalog, loading it on first call.  Thread-safe."""
    global _catalog
    if _catalog is None:
        with _catalog_lock:
            if _catalog is None:  # double-checked locking
                _catalog = load_metric_catalog()
    return _catalog


def reload_metric_catalog(path: Path | None = None) -> MetricCatalog:
    """Reload the catalog from disk and replace the global singleton.

    If validation fails the old catalog is retained and the error re-raised.
    """
    global _catalog
    new_catalog = load_metric_catalog(path)  # validate before acquiring lock
    with _catalog_lock:
        old_version = _catalog.version if _catalog else "none"
        _catalog = new_catalog
    logger.info("Reloaded metric catalog: %s → %s", old_version, new_catalog.version)
    return new_catalog
