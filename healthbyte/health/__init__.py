"""HealthByte aggregation-and-sync engine.

This package reads quantity samples from a health data source, folds them
into daily buckets over a trailing window, keeps those buckets live, and
uploads the weekly total to the patient's row in the remote store.

Subpackages:
    sources/ — Health data sources (in-memory store, Apple Health export import)
    sync/    — Serialized upload of weekly totals

Core modules:
    base          — HealthSource / RemoteStore ABCs and canonical data models
    catalog       — Load/validate/hot-reload metric_catalog.yaml
    authorization — Read-permission gate and status text
    aggregation   — Windowed daily aggregation with live sessions
    projector     — Weekly total reduction
    screen        — Per-metric authorize → buckets → upload driver
    engine        — Composition root used by the API
"""

from healthbyte.health.base import (
    AggregationPolicy,
    BucketSnapshot,
    DailyBucket,
    HealthSource,
    MetricDescriptor,
    QuantitySample,
    RemoteStore,
    Unit,
)
from healthbyte.health.catalog import MetricCatalog, get_metric_catalog

__all__ = [
    "HealthSource",
    "RemoteStore",
    "QuantitySample",
    "DailyBucket",
    "BucketSnapshot",
    "MetricDescriptor",
    "AggregationPolicy",
    "Unit",
    "MetricCatalog",
    "get_metric_catalog",
]
