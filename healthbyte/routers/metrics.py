"""Endpoints for the metric catalog, authorization, sample ingest, weekly buckets and uploads.

The service stands in for one device: a single health source holds the
device owner's samples and every screen reads from it.  The bearer token
only chooses which remote row an upload writes to; it does not partition
samples.  Run one instance per device.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, File, HTTPException, UploadFile

from healthbyte.dependencies import AppSettings, CurrentStore, Engine
from healthbyte.health.engine import HealthByteEngine
from healthbyte.health.errors import DataSourceUnavailable, UnknownMetric
from healthbyte.health.screen import MetricScreen, ScreenState
from healthbyte.health.sources.apple_health import import_export
from healthbyte.models.metrics import (
    AuthorizationRead,
    AuthorizationRequestResult,
    BucketRead,
    IngestResult,
    MetricRead,
    MetricWeekRead,
    SampleBatch,
    UploadResultRead,
)

router = APIRouter(tags=["metrics"])
logger = logging.getLogger("healthbyte.api.metrics")

# SyncError.code → HTTP status
SYNC_ERROR_STATUS: dict[str, int] = {
    "unauthenticated": 401,
    "row_not_found": 404,
    "upload_in_progress": 409,
    "unmapped_metric": 422,
    "invalid_value": 422,
    "network_failure": 502,
}

MAX_EXPORT_BYTES = 200 * 1024 * 1024


def _get_screen(engine: HealthByteEngine, metric_id: str) -> MetricScreen:
    try:
        return engine.screen(metric_id)
    except UnknownMetric as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


async def _open_screen(engine: HealthByteEngine, metric_id: str) -> MetricScreen:
    """Return an active screen, authorizing and starting it if needed."""
    screen = _get_screen(engine, metric_id)
    if screen.state in (ScreenState.ACTIVE, ScreenState.UPLOADING):
        return screen
    if await screen.appear():
        return screen

    detail = engine.view.status_text or f"Could not start {metric_id}"
    if screen.feature_disabled:
        raise HTTPException(status_code=503, detail=detail)
    raise HTTPException(status_code=403, detail=detail)


def _week(engine: HealthByteEngine, screen: MetricScreen) -> MetricWeekRead:
    snapshot = screen.snapshot
    return MetricWeekRead(
        metric_id=screen.metric_id,
        name=screen.title,
        unit=screen.descriptor.unit,
        state=screen.state.value,
        buckets=[BucketRead.from_bucket(b) for b in snapshot.buckets] if snapshot else [],
        weekly_total=screen.weekly_total,
        computed_at=snapshot.computed_at if snapshot else None,
        upload_button_title=screen.upload_button_title,
        can_upload=screen.can_upload,
        status_text=engine.view.status_text,
    )


# ---------- Catalog ----------

@router.get("/metrics", response_model=list[MetricRead])
async def list_metrics(engine: Engine) -> Any:
    return [MetricRead.from_descriptor(d) for d in engine.catalog]


# ---------- Authorization ----------

@router.get("/authorization", response_model=AuthorizationRead)
async def get_authorization(engine: Engine) -> Any:
    ids = engine.catalog.ids
    try:
        text = await engine.gate.status_text(ids)
        report = engine.gate.check_status(ids)
    except DataSourceUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return AuthorizationRead(
        granted=sorted(report.granted),
        denied=sorted(report.denied),
        undetermined=sorted(report.undetermined),
        status_text=text,
    )


@router.post("/authorization", response_model=AuthorizationRequestResult)
async def request_authorization(engine: Engine) -> Any:
    try:
        success, text = await engine.gate.request_with_status(engine.catalog.ids)
    except DataSourceUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    engine.view.on_authorization_status(text)
    return AuthorizationRequestResult(success=success, status_text=text)


# ---------- Samples ----------

@router.post("/samples", response_model=IngestResult, status_code=201)
async def ingest_samples(engine: Engine, body: SampleBatch) -> Any:
    unknown = sorted({s.metric_id for s in body.samples if s.metric_id not in engine.catalog})
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown metrics: {', '.join(unknown)}")

    added = engine.source.add_samples(s.to_sample() for s in body.samples)
    logger.info("Ingested %d of %d samples", added, len(body.samples))
    return IngestResult(received=len(body.samples), added=added, skipped=len(body.samples) - added)


@router.post("/samples/import", response_model=IngestResult, status_code=201)
async def import_apple_health(engine: Engine, file: UploadFile = File(...)) -> Any:
    """Load an Apple Health ``export.xml`` into the health source."""
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(data) > MAX_EXPORT_BYTES:
        raise HTTPException(status_code=413, detail="Export too large")

    before = engine.source.sample_count()
    try:
        added = import_export(data, engine.source, engine.catalog)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Imported %s: %d new samples (%d total)", file.filename, added, before + added)
    return IngestResult(received=added, added=added)


# ---------- Weekly buckets ----------

@router.get("/metrics/{metric_id}/buckets", response_model=MetricWeekRead)
async def get_buckets(metric_id: str, engine: Engine) -> Any:
    """Open the metric's screen (authorizing if needed) and return its week."""
    screen = await _open_screen(engine, metric_id)
    return _week(engine, screen)


@router.delete("/metrics/{metric_id}/session", status_code=204)
async def dismiss_session(metric_id: str, engine: Engine) -> None:
    if metric_id not in engine.catalog:
        raise HTTPException(status_code=404, detail=str(UnknownMetric(metric_id)))
    screen = engine.existing_screen(metric_id)
    if screen is not None:
        screen.dismiss()


# ---------- Upload ----------

@router.post("/metrics/{metric_id}/upload", response_model=UploadResultRead)
async def upload_weekly_total(
    metric_id: str, engine: Engine, store: CurrentStore, settings: AppSettings
) -> Any:
    """Aggregate the current window and write the total to the caller's row."""
    screen = await _open_screen(engine, metric_id)
    result = await screen.upload(store=store)

    if not result.ok and result.error is not None:
        status = SYNC_ERROR_STATUS.get(result.error.code, 500)
        raise HTTPException(
            status_code=status,
            detail={"code": result.error.code, "message": str(result.error)},
        )
    logger.info(
        "Upload of %s to %s.%s succeeded", metric_id, settings.patient_table, result.column
    )
    return UploadResultRead.from_result(result)
