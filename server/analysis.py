"""Movement and stoppage analysis over one subject's position reports.

Two analyzers share the same span engine:

- :class:`MovementSegmentAnalyzer` looks at the whole (optionally time- and
  polygon-filtered) history.
- :class:`ZoneSegmentAnalyzer` only measures while the subject is inside a
  zone, stitching metrics across several entry/exit cycles.

A span is the interval between two consecutive reports. It is MOVING when
the earlier report has the device on and a positive speed, otherwise STOPPED.
Stopped spans are buffered; when movement resumes (or the data ends) the
buffer becomes a counted stoppage if it lasted at least the stoppage
threshold, or is folded back into movement time if it did not.
"""

import datetime
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from geofence import build_polygon, classify_points, haversine_km
from reports import PositionReport, parse_reports, sort_reports

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

STOPPAGE_THRESHOLD_S = 60              # shorter stopped runs are GPS noise
CONSECUTIVE_MOVEMENTS_TO_CONFIRM = 3   # moving spans before "started working"


def format_hhmmss(seconds: float) -> str:
    """``HH:MM:SS``; hours keep counting past 24."""
    s = int(round(seconds or 0))
    h = s // 3600
    m = (s % 3600) // 60
    sec = s % 60
    return f"{h:02d}:{m:02d}:{sec:02d}"


def _iso(dt: Optional[datetime.datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Stoppage:
    """One run of stopped spans, counted or ignored."""

    start_time: datetime.datetime
    end_time: datetime.datetime
    duration_seconds: float
    duration_on_seconds: float
    duration_off_seconds: float
    latitude: float
    longitude: float
    device_on: bool
    ignored: bool

    def to_dict(self) -> dict:
        return {
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration_seconds": self.duration_seconds,
            "duration_formatted": format_hhmmss(self.duration_seconds),
            "location": {"latitude": self.latitude, "longitude": self.longitude},
            "status": "on" if self.device_on else "off",
            "ignored": self.ignored,
        }


@dataclass(frozen=True, slots=True)
class MetricsResult:
    """Aggregated movement metrics. The default instance is the empty result."""

    movement_distance_km: float = 0.0
    movement_duration_seconds: float = 0
    stoppage_duration_seconds: float = 0
    stoppage_duration_while_on_seconds: float = 0
    stoppage_duration_while_off_seconds: float = 0
    stoppage_count: int = 0
    ignored_stoppage_count: int = 0
    ignored_stoppage_duration_seconds: float = 0
    average_speed: float = 0.0
    max_speed: float = 0.0
    total_records: int = 0
    device_on_time: Optional[datetime.datetime] = None
    first_movement_time: Optional[datetime.datetime] = None
    start_time: Optional[datetime.datetime] = None
    end_time: Optional[datetime.datetime] = None
    latest_status: Optional[int] = None
    stoppages: tuple[Stoppage, ...] = ()

    @property
    def movement_distance_meters(self) -> float:
        return self.movement_distance_km * 1000

    @property
    def movement_duration_hhmmss(self) -> str:
        return format_hhmmss(self.movement_duration_seconds)

    @property
    def stoppage_duration_hhmmss(self) -> str:
        return format_hhmmss(self.stoppage_duration_seconds)

    def to_dict(self, include_stoppages: bool = False) -> dict:
        payload = {
            "movement_distance_km": round(self.movement_distance_km, 3),
            "movement_distance_meters": round(self.movement_distance_meters, 2),
            "movement_duration_seconds": self.movement_duration_seconds,
            "movement_duration_formatted": format_hhmmss(self.movement_duration_seconds),
            "stoppage_duration_seconds": self.stoppage_duration_seconds,
            "stoppage_duration_formatted": format_hhmmss(self.stoppage_duration_seconds),
            "stoppage_duration_while_on_seconds": self.stoppage_duration_while_on_seconds,
            "stoppage_duration_while_on_formatted": format_hhmmss(self.stoppage_duration_while_on_seconds),
            "stoppage_duration_while_off_seconds": self.stoppage_duration_while_off_seconds,
            "stoppage_duration_while_off_formatted": format_hhmmss(self.stoppage_duration_while_off_seconds),
            "stoppage_count": self.stoppage_count,
            "ignored_stoppage_count": self.ignored_stoppage_count,
            "ignored_stoppage_duration_seconds": self.ignored_stoppage_duration_seconds,
            "ignored_stoppage_duration_formatted": format_hhmmss(self.ignored_stoppage_duration_seconds),
            "device_on_time": _iso(self.device_on_time),
            "first_movement_time": _iso(self.first_movement_time),
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "latest_status": self.latest_status,
            "average_speed": self.average_speed,
            "max_speed": self.max_speed,
            "total_records": self.total_records,
        }
        if include_stoppages:
            payload["stoppages"] = [s.to_dict() for s in self.stoppages]
        return payload


def empty_result() -> MetricsResult:
    return MetricsResult()


# ---------------------------------------------------------------------------
# Span engine
# ---------------------------------------------------------------------------

@dataclass
class _PendingStop:
    start: PositionReport
    end: PositionReport
    duration: float = 0.0
    duration_on: float = 0.0
    duration_off: float = 0.0


@dataclass
class _SpanAccumulator:
    """Running totals for one analysis pass.

    ``observe`` is called once per report that takes part in the analysis and
    ``add_span`` once per pair of adjacent participating reports. Pairs that
    straddle a filtered-out gap are never passed in, so gaps contribute
    nothing, while pending-stop and movement-streak state carry across them.
    """

    stoppage_threshold: float = STOPPAGE_THRESHOLD_S
    confirm_count: int = CONSECUTIVE_MOVEMENTS_TO_CONFIRM

    distance_km: float = 0.0
    movement_seconds: float = 0.0
    stoppage_seconds: float = 0.0
    stoppage_on_seconds: float = 0.0
    stoppage_off_seconds: float = 0.0
    stoppage_count: int = 0
    ignored_count: int = 0
    ignored_seconds: float = 0.0
    stoppages: list = field(default_factory=list)

    max_speed: float = 0.0
    total_records: int = 0
    first: Optional[PositionReport] = None
    last: Optional[PositionReport] = None
    device_on_time: Optional[datetime.datetime] = None
    first_movement_time: Optional[datetime.datetime] = None

    _pending: Optional[_PendingStop] = None
    _streak: int = 0
    _streak_start: Optional[PositionReport] = None

    def observe(self, report: PositionReport) -> None:
        if self.device_on_time is None and report.status == 1:
            if self.last is None or self.last.status == 0:
                self.device_on_time = report.timestamp
        if self.first is None:
            self.first = report
        self.last = report
        self.total_records += 1
        self.max_speed = max(self.max_speed, report.speed)

    def add_span(self, earlier: PositionReport, later: PositionReport) -> None:
        elapsed = (later.timestamp - earlier.timestamp).total_seconds()
        if elapsed < 0:
            logger.error(
                "Negative span of %.0fs for subject=%s at %s; skipping",
                elapsed, earlier.subject_id, later.timestamp,
            )
            return

        if earlier.is_moving:
            self._flush()
            self.movement_seconds += elapsed
            self.distance_km += haversine_km(
                earlier.latitude, earlier.longitude, later.latitude, later.longitude,
            )
            if self._streak == 0:
                self._streak_start = earlier
            self._streak += 1
            if self._streak == self.confirm_count and self.first_movement_time is None:
                self.first_movement_time = self._streak_start.timestamp
            return

        self._streak = 0
        self._streak_start = None
        if self._pending is None:
            self._pending = _PendingStop(start=earlier, end=later)
        self._pending.end = later
        self._pending.duration += elapsed
        if earlier.status == 1:
            self._pending.duration_on += elapsed
        else:
            self._pending.duration_off += elapsed

    def _flush(self) -> None:
        pending, self._pending = self._pending, None
        if pending is None:
            return
        ignored = pending.duration < self.stoppage_threshold
        if ignored:
            self.ignored_count += 1
            self.ignored_seconds += pending.duration
            self.movement_seconds += pending.duration
        else:
            self.stoppage_count += 1
            self.stoppage_seconds += pending.duration
            self.stoppage_on_seconds += pending.duration_on
            self.stoppage_off_seconds += pending.duration_off
        self.stoppages.append(Stoppage(
            start_time=pending.start.timestamp,
            end_time=pending.end.timestamp,
            duration_seconds=pending.duration,
            duration_on_seconds=pending.duration_on,
            duration_off_seconds=pending.duration_off,
            latitude=pending.start.latitude,
            longitude=pending.start.longitude,
            device_on=pending.start.status == 1,
            ignored=ignored,
        ))

    def finish(self) -> MetricsResult:
        self._flush()
        if self.total_records == 0:
            return empty_result()

        average_speed = 0.0
        if self.movement_seconds > 0:
            average_speed = round(self.distance_km / self.movement_seconds * 3600, 2)

        return MetricsResult(
            movement_distance_km=self.distance_km,
            movement_duration_seconds=self.movement_seconds,
            stoppage_duration_seconds=self.stoppage_seconds,
            stoppage_duration_while_on_seconds=self.stoppage_on_seconds,
            stoppage_duration_while_off_seconds=self.stoppage_off_seconds,
            stoppage_count=self.stoppage_count,
            ignored_stoppage_count=self.ignored_count,
            ignored_stoppage_duration_seconds=self.ignored_seconds,
            average_speed=average_speed,
            max_speed=self.max_speed,
            total_records=self.total_records,
            device_on_time=self.device_on_time,
            first_movement_time=self.first_movement_time,
            start_time=self.first.timestamp,
            end_time=self.last.timestamp,
            latest_status=self.last.status,
            stoppages=tuple(self.stoppages),
        )


# ---------------------------------------------------------------------------
# Analyzers
# ---------------------------------------------------------------------------

class _Analyzer:
    def __init__(self, records: Iterable = (), thresholds: dict | None = None):
        self.thresholds = thresholds or {}
        self.reports: list[PositionReport] = []
        self.load(records)

    def load(self, records: Iterable, subject_id=None):
        """Parse, normalise and sort a series. Malformed records are skipped."""
        self.reports = sort_reports(parse_reports(records, subject_id=subject_id))
        return self

    def _accumulator(self) -> _SpanAccumulator:
        return _SpanAccumulator(
            stoppage_threshold=float(
                self.thresholds.get("stoppage_threshold_s", STOPPAGE_THRESHOLD_S)
            ),
            confirm_count=int(
                self.thresholds.get("consecutive_movements_to_confirm", CONSECUTIVE_MOVEMENTS_TO_CONFIRM)
            ),
        )


class MovementSegmentAnalyzer(_Analyzer):
    """Full-history metrics, optionally restricted to a time window and/or polygon."""

    def analyze(
        self,
        start: Optional[datetime.datetime] = None,
        end: Optional[datetime.datetime] = None,
        polygon=None,
    ) -> MetricsResult:
        reports = self.reports
        keep = [
            (start is None or r.timestamp >= start) and (end is None or r.timestamp <= end)
            for r in reports
        ]
        if polygon is not None:
            inside = classify_points([r.coordinate for r in reports], polygon)
            keep = [k and i for k, i in zip(keep, inside)]

        acc = self._accumulator()
        previous = None
        for i, report in enumerate(reports):
            if not keep[i]:
                continue
            acc.observe(report)
            if previous == i - 1:
                acc.add_span(reports[i - 1], report)
            previous = i
        return acc.finish()


def identify_zone_segments(inside: Sequence[bool]) -> list[tuple[int, int]]:
    """``(start, end)`` index pairs (inclusive) of each maximal inside run."""
    segments = []
    segment_start = None
    for i, flag in enumerate(inside):
        if flag and segment_start is None:
            segment_start = i
        elif not flag and segment_start is not None:
            segments.append((segment_start, i - 1))
            segment_start = None
    if segment_start is not None:
        segments.append((segment_start, len(inside) - 1))
    return segments


class ZoneSegmentAnalyzer(_Analyzer):
    """Metrics measured only while inside a zone; time outside does not exist."""

    def analyze(self, polygon) -> MetricsResult:
        shape = build_polygon(polygon)
        if shape is None or not self.reports:
            return empty_result()

        inside = classify_points([r.coordinate for r in self.reports], shape)
        segments = identify_zone_segments(inside)
        if not segments:
            return empty_result()

        acc = self._accumulator()
        for seg_start, seg_end in segments:
            for i in range(seg_start, seg_end + 1):
                acc.observe(self.reports[i])
                if i > seg_start:
                    acc.add_span(self.reports[i - 1], self.reports[i])

        logger.debug(
            "Zone analysis: %d segments, %d of %d reports inside",
            len(segments), acc.total_records, len(self.reports),
        )
        return acc.finish()
