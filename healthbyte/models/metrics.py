"""Pydantic models for the metric API: catalog, samples, buckets, uploads, authorization."""

from __future__ import annotations

import uuid
from datetime import date, datetime

from pydantic import Field, field_validator

from healthbyte.health.base import (
    AggregationPolicy,
    ColumnType,
    DailyBucket,
    MetricDescriptor,
    QuantitySample,
    Unit,
)
from healthbyte.health.sync.uploader import UploadResult
from healthbyte.models.base import HealthByteBase


# ---------- Catalog ----------

class MetricRead(HealthByteBase):
    id: str
    name: str
    unit: Unit
    policy: AggregationPolicy
    remote_column: str | None = None
    column_type: ColumnType = ColumnType.FLOAT
    synced: bool = False

    @classmethod
    def from_descriptor(cls, descriptor: MetricDescriptor) -> MetricRead:
        return cls(
            id=descriptor.id,
            name=descriptor.name,
            unit=descriptor.unit,
            policy=descriptor.policy,
            remote_column=descriptor.remote_column,
            column_type=descriptor.column_type,
            synced=descriptor.is_synced,
        )


# ---------- Samples ----------

class SampleCreate(HealthByteBase):
    metric_id: str = Field(min_length=1)
    timestamp: datetime
    value: float = Field(ge=0, allow_inf_nan=False)
    unit: Unit
    source: str = "api"

    @field_validator("timestamp")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None or v.utcoffset() is None:
            raise ValueError("timestamp must include a UTC offset")
        return v

    def to_sample(self) -> QuantitySample:
        return QuantitySample(
            metric_id=self.metric_id,
            timestamp=self.timestamp,
            value=self.value,
            unit=self.unit,
            source=self.source,
        )


class SampleBatch(HealthByteBase):
    samples: list[SampleCreate] = Field(min_length=1, max_length=10000)


class IngestResult(HealthByteBase):
    received: int
    added: int
    skipped: int = 0


# ---------- Buckets ----------

class BucketRead(HealthByteBase):
    day: date
    start: datetime
    end: datetime
    value: float
    sample_count: int = 0

    @classmethod
    def from_bucket(cls, bucket: DailyBucket) -> BucketRead:
        return cls(
            day=bucket.day,
            start=bucket.start,
            end=bucket.end,
            value=bucket.value,
            sample_count=bucket.sample_count,
        )


class MetricWeekRead(HealthByteBase):
    metric_id: str
    name: str
    unit: Unit
    state: str
    buckets: list[BucketRead] = Field(default_factory=list)
    weekly_total: float | None = None
    computed_at: datetime | None = None
    upload_button_title: str
    can_upload: bool = False
    status_text: str | None = None


# ---------- Upload ----------

class UploadResultRead(HealthByteBase):
    metric_id: str
    status: str
    user_id: uuid.UUID | None = None
    column: str | None = None
    value: int | float | None = None
    rows_affected: int = 0
    error_code: str | None = None
    error: str | None = None
    uploaded_at: datetime

    @classmethod
    def from_result(cls, result: UploadResult) -> UploadResultRead:
        return cls(
            metric_id=result.metric_id,
            status=result.status,
            user_id=result.user_id,
            column=result.column,
            value=result.value,
            rows_affected=result.rows_affected,
            error_code=result.error_code,
            error=str(result.error) if result.error else None,
            uploaded_at=result.uploaded_at,
        )


# ---------- Authorization ----------

class AuthorizationRead(HealthByteBase):
    granted: list[str] = Field(default_factory=list)
    denied: list[str] = Field(default_factory=list)
    undetermined: list[str] = Field(default_factory=list)
    status_text: str


class AuthorizationRequestResult(HealthByteBase):
    success: bool
    status_text: str
