"""Position reports: the value type every analyzer consumes, and the parsing boundary.

Reports come from several places (ORM rows, API payloads, fixture dicts) and
the coordinate arrives in one of three encodings: a ``[lat, lon]`` pair, a
JSON-encoded pair, or a ``"lat,lon"`` string. Everything is normalised here so
the analyzers only ever see :class:`PositionReport`.
"""

import datetime
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PositionReport:
    """A single device position sample.

    Attributes:
        subject_id: Tracked entity (tractor, labourer or user).
        timestamp: When the device took the sample.
        latitude: Decimal degrees.
        longitude: Decimal degrees.
        speed: km/h, never negative.
        status: Device-online flag, 0 or 1.
        altitude: Metres, when the device reports it.
        imei: Device identity; not used by the analyzers.
    """

    subject_id: Any
    timestamp: datetime.datetime
    latitude: float
    longitude: float
    speed: float = 0.0
    status: int = 0
    altitude: Optional[float] = None
    imei: Optional[str] = None

    @property
    def coordinate(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)

    @property
    def is_moving(self) -> bool:
        """Device on and reporting speed."""
        return self.status == 1 and self.speed > 0


# ---------------------------------------------------------------------------
# Field parsers
# ---------------------------------------------------------------------------

def _pair(values) -> Optional[tuple[float, float]]:
    if len(values) < 2:
        return None
    lat, lon = values[0], values[1]
    if lat is None or lon is None:
        return None
    if isinstance(lat, str):
        lat = lat.strip()
    if isinstance(lon, str):
        lon = lon.strip()
    if lat == "" or lon == "":
        return None
    try:
        lat, lon = float(lat), float(lon)
    except (TypeError, ValueError):
        return None
    if math.isnan(lat) or math.isnan(lon) or abs(lat) > 90 or abs(lon) > 180:
        return None
    return lat, lon


def parse_coordinate(value) -> Optional[tuple[float, float]]:
    """Normalise a coordinate to ``(lat, lon)``, or None if it is malformed."""
    if value is None:
        return None

    if isinstance(value, dict):
        lat = value.get("lat", value.get("latitude"))
        lon = value.get("lng", value.get("lon", value.get("longitude")))
        return _pair([lat, lon])

    if isinstance(value, (list, tuple)):
        return _pair(value)

    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")

    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except ValueError:
            decoded = None
        if isinstance(decoded, (list, tuple)):
            return _pair(decoded)
        return _pair(value.split(","))

    return None


def _naive_utc(dt: datetime.datetime) -> datetime.datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(datetime.timezone.utc).replace(tzinfo=None)


def utcnow() -> datetime.datetime:
    """Current time as naive UTC, the way timestamps are stored."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def parse_timestamp(value) -> Optional[datetime.datetime]:
    """Accept a datetime, an ISO-8601 string or epoch seconds.

    Timestamps are stored as naive UTC, so aware values are converted.
    """
    if isinstance(value, datetime.datetime):
        return _naive_utc(value)
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time())
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return _naive_utc(datetime.datetime.fromtimestamp(value, tz=datetime.timezone.utc))
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        try:
            return _naive_utc(datetime.datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def _status(value) -> int:
    if isinstance(value, str):
        value = value.strip()
        return 1 if value in ("1", "true", "True", "on") else 0
    return 1 if value else 0


def _speed(value) -> float:
    try:
        speed = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(speed) or speed < 0:
        return 0.0
    return speed


def _field(record, *names, default=None):
    for name in names:
        if isinstance(record, dict):
            if name in record and record[name] is not None:
                return record[name]
        else:
            value = getattr(record, name, None)
            if value is not None:
                return value
    return default


# ---------------------------------------------------------------------------
# Record parsing
# ---------------------------------------------------------------------------

def parse_report(record, subject_id=None) -> Optional[PositionReport]:
    """Normalise one record (dict, ORM row or PositionReport).

    Returns None when the coordinate or timestamp cannot be read; callers skip
    such records instead of failing the whole series.
    """
    if isinstance(record, PositionReport):
        return record

    raw_coordinate = _field(record, "coordinate")
    if raw_coordinate is None:
        lat = _field(record, "latitude", "lat")
        lon = _field(record, "longitude", "lon", "lng")
        raw_coordinate = None if lat is None or lon is None else [lat, lon]
    coordinate = parse_coordinate(raw_coordinate)
    if coordinate is None:
        return None

    timestamp = parse_timestamp(_field(record, "timestamp", "date_time", "time"))
    if timestamp is None:
        return None

    altitude = _field(record, "altitude")
    try:
        altitude = float(altitude) if altitude is not None else None
    except (TypeError, ValueError):
        altitude = None

    return PositionReport(
        subject_id=_field(record, "subject_id", default=subject_id),
        timestamp=timestamp,
        latitude=coordinate[0],
        longitude=coordinate[1],
        speed=_speed(_field(record, "speed", default=0)),
        status=_status(_field(record, "status", default=0)),
        altitude=altitude,
        imei=_field(record, "imei"),
    )


def parse_reports(records: Iterable, subject_id=None) -> list[PositionReport]:
    """Parse a batch, dropping malformed records."""
    reports = []
    skipped = 0
    for record in records:
        report = parse_report(record, subject_id=subject_id)
        if report is None:
            skipped += 1
            continue
        reports.append(report)
    if skipped:
        logger.debug("Skipped %d malformed position records", skipped)
    return reports


def sort_reports(reports: Iterable[PositionReport]) -> list[PositionReport]:
    """Return reports in ascending timestamp order.

    Segmentation assumes monotonic timestamps, so out-of-order input is
    sorted here and reported in the log.
    """
    reports = list(reports)
    in_order = all(
        reports[i - 1].timestamp <= reports[i].timestamp for i in range(1, len(reports))
    )
    if in_order:
        return reports
    logger.warning(
        "Position reports for subject=%s arrived out of order; sorting %d records",
        reports[0].subject_id, len(reports),
    )
    return sorted(reports, key=lambda r: r.timestamp)
