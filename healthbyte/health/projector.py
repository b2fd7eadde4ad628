"""Reduce a daily bucket sequence to the weekly total.

Pure and deterministic: the projector runs on every live update, so it must
never accumulate state between calls.
"""

from __future__ import annotations

from typing import Iterable

from healthbyte.health.base import AggregationPolicy, BucketSnapshot, DailyBucket, MetricDescriptor


def reduce_buckets(buckets: Iterable[DailyBucket], policy: AggregationPolicy) -> float:
    """Collapse ``buckets`` into one scalar.

    ``sum`` adds every bucket.  ``most_recent`` returns the value of the
    latest bucket that received at least one sample, skipping empty days;
    0.0 if every bucket is empty.
    """
    ordered = sorted(buckets, key=lambda b: b.start)
    if policy is AggregationPolicy.SUM:
        return float(sum(b.value for b in ordered))
    for bucket in reversed(ordered):
        if not bucket.is_empty:
            return float(bucket.value)
    return 0.0


class WeeklyTotalProjector:
    """Policy-aware projection of snapshots to weekly totals."""

    @staticmethod
    def reduce(buckets: Iterable[DailyBucket], policy: AggregationPolicy) -> float:
        return reduce_buckets(buckets, policy)

    def project(self, snapshot: BucketSnapshot, descriptor: MetricDescriptor) -> float:
        if snapshot.metric_id != descriptor.id:
            raise ValueError(
                f"Snapshot is for {snapshot.metric_id}, descriptor is {descriptor.id}"
            )
        return reduce_buckets(snapshot.buckets, descriptor.policy)
