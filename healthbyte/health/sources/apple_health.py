"""Apple Health export import.

Apple does not provide a server-side API; users export their data from the
Health app (``export.xml``) and upload it.  This module turns the export's
``Record`` elements into ``QuantitySample`` objects for every metric the
catalog knows, so an ``InMemoryHealthSource`` can serve them.

Records look like::

    <Record type="HKQuantityTypeIdentifierStepCount" sourceName="iPhone"
            unit="count" value="412"
            startDate="2026-02-23 08:01:00 -0500" endDate="2026-02-23 08:09:00 -0500"/>
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from xml.etree import ElementTree as ET

from healthbyte.health.base import QuantitySample, Unit
from healthbyte.health.catalog import MetricCatalog
from healthbyte.health.sources.memory import InMemoryHealthSource

logger = logging.getLogger("healthbyte.health.sources.apple_health")

# HealthKit unit strings → canonical Unit
_HK_UNIT_MAP: dict[str, Unit] = {
    "count": Unit.COUNT,
    "m": Unit.METER,
    "km": Unit.KILOMETER,
    "mi": Unit.MILE,
    "ft": Unit.FOOT,
}

_EXPORT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S %z"


def _parse_export_datetime(value: str | None) -> datetime | None:
    """Parse an export timestamp into an aware datetime.

    Handles the native ``2026-02-23 08:01:00 -0500`` format and ISO-8601.
    Naive values are assumed to be UTC.  Returns None if unparseable.
    """
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), _EXPORT_DATE_FORMAT)
    except ValueError:
        pass
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Could not parse export datetime: %r", value)
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_export_xml(xml_bytes: bytes, catalog: MetricCatalog) -> list[QuantitySample]:
    """Parse an Apple Health export.xml into quantity samples.

    Records whose type is not in the catalog are ignored; records with a
    missing date, an unparseable value or an unsupported unit are skipped.

    Raises:
        ValueError: If the document is not valid XML.
    """
    try:
        root = ET.fromstring(xml_bytes)
    except ET.ParseError as exc:
        logger.error("Apple Health XML parse error: %s", exc)
        raise ValueError(f"Invalid Apple Health XML: {exc}") from exc

    samples: list[QuantitySample] = []
    skipped = 0
    for record in root.iter("Record"):
        descriptor = catalog.by_hk_identifier(record.get("type", ""))
        if descriptor is None:
            continue

        timestamp = _parse_export_datetime(record.get("startDate"))
        unit = _HK_UNIT_MAP.get(record.get("unit", ""))
        try:
            value = float(record.get("value", ""))
        except ValueError:
            value = None

        if timestamp is None or unit is None or value is None:
            skipped += 1
            continue

        samples.append(
            QuantitySample(
                metric_id=descriptor.id,
                timestamp=timestamp,
                value=value,
                unit=unit,
                source=record.get("sourceName") or "Apple Health",
            )
        )

    logger.info(
        "Apple Health XML: parsed %d samples (%d skipped)", len(samples), skipped
    )
    return samples


def import_export(
    xml_bytes: bytes, source: InMemoryHealthSource, catalog: MetricCatalog
) -> int:
    """Parse an export and load it into ``source``.  Returns samples added."""
    return source.add_samples(parse_export_xml(xml_bytes, catalog))


def import_export_file(
    path: str | Path, source: InMemoryHealthSource, catalog: MetricCatalog
) -> int:
    """Read an export.xml from disk and load it into ``source``."""
    target = Path(path)
    if not target.exists():
        raise FileNotFoundError(f"Apple Health export not found: {target}")
    added = import_export(target.read_bytes(), source, catalog)
    logger.info("Imported %d samples from %s", added, target)
    return added
