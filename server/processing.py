"""Telemetry processing engine: ingest, attendance, metrics and active subjects.

Processing pipeline (runs server-side after each batch upload):
1. Parse and normalise the reports, skipping malformed records
2. Store them against the subject
3. Feed each report through boundary detection to open, update or close the
   day's attendance session
4. Drop cached active-subject lists so dashboards see the new positions

Movement metrics are computed on demand from the stored history, optionally
through path correction first, and can be recorded as a daily summary.
"""

import datetime
import logging
import uuid
from typing import Iterable, Optional

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

import active
import analysis
import attendance
import productivity
import smoothing
from analysis import MetricsResult, MovementSegmentAnalyzer, ZoneSegmentAnalyzer
from attendance import AttendanceUpdated, BoundaryDetectionService, KeyedLocks, SessionState
from geofence import point_in_polygon
from models import (
    AttendanceSession, AttendanceTracking, Config, DailyMetrics, PositionReportRow, Subject, Zone,
)
from reports import PositionReport, parse_reports, sort_reports, utcnow

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_EXPECTED_WORK_HOURS = 8.0

# Shared across requests so concurrent uploads for one subject serialise
_session_locks = KeyedLocks()
_active_cache = active.InMemoryCache()


def get_thresholds(db: Session) -> dict:
    """Read processing thresholds from the Config table, falling back to module defaults."""
    defaults = {
        "stoppage_threshold_s": analysis.STOPPAGE_THRESHOLD_S,
        "exit_debounce_s": attendance.EXIT_DEBOUNCE_S,
        "consecutive_movements_to_confirm": analysis.CONSECUTIVE_MOVEMENTS_TO_CONFIRM,
        "active_window_s": active.ACTIVE_WINDOW_S,
        "kalman_process_noise": smoothing.KALMAN_PROCESS_NOISE,
        "kalman_measurement_noise": smoothing.KALMAN_MEASUREMENT_NOISE,
        "median_window_size": smoothing.MEDIAN_WINDOW_SIZE,
    }
    rows = db.query(Config).filter(Config.key.in_(defaults.keys())).all()
    for row in rows:
        try:
            defaults[row.key] = float(row.value)
        except ValueError:
            logger.warning("Ignoring non-numeric threshold %s=%r", row.key, row.value)
    return defaults


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def zone_value(zone: Zone) -> active.Zone:
    return active.Zone(id=zone.id, name=zone.name, polygon=zone.polygon)


def load_tracking(db: Session, subject_id: int) -> Optional[attendance.AttendanceTracking]:
    """The subject's attendance configuration with its zone polygon, if any."""
    row = (
        db.query(AttendanceTracking)
        .filter(AttendanceTracking.subject_id == subject_id)
        .first()
    )
    if row is None or row.zone is None:
        return None
    return attendance.AttendanceTracking(
        subject_id=subject_id,
        polygon=row.zone.polygon,
        enabled=bool(row.enabled),
        work_start=row.work_start,
        work_end=row.work_end,
        expected_work_hours=row.expected_work_hours or 0.0,
    )


def session_to_dict(session) -> Optional[dict]:
    """Serialise a SessionState or an AttendanceSession row."""
    if session is None:
        return None

    def iso(dt):
        return dt.isoformat() if dt else None

    return {
        "subject_id": session.subject_id,
        "date": session.date.isoformat(),
        "status": session.status,
        "entry_time": iso(session.entry_time),
        "exit_time": iso(session.exit_time),
        "total_in_zone_duration": session.total_in_zone_duration or 0.0,
        "total_out_zone_duration": session.total_out_zone_duration or 0.0,
        "total_in_zone_formatted": analysis.format_hhmmss(session.total_in_zone_duration),
        "total_out_zone_formatted": analysis.format_hhmmss(session.total_out_zone_duration),
    }


# ---------------------------------------------------------------------------
# Session storage
# ---------------------------------------------------------------------------

class SqlSessionStore:
    """Attendance sessions persisted in the ``attendance_sessions`` table."""

    def __init__(self, db: Session, zone_id: Optional[int] = None):
        self.db = db
        self.zone_id = zone_id

    def _row(self, subject_id, day) -> Optional[AttendanceSession]:
        return (
            self.db.query(AttendanceSession)
            .filter(AttendanceSession.subject_id == subject_id, AttendanceSession.date == day)
            .first()
        )

    def get(self, subject_id, day) -> Optional[SessionState]:
        row = self._row(subject_id, day)
        if row is None:
            return None
        return SessionState(
            subject_id=row.subject_id,
            date=row.date,
            entry_time=row.entry_time,
            last_point_time=row.last_point_time,
            last_in_zone_time=row.last_in_zone_time,
            status=row.status,
            exit_time=row.exit_time,
            total_in_zone_duration=row.total_in_zone_duration or 0.0,
            total_out_zone_duration=row.total_out_zone_duration or 0.0,
            out_of_zone_since=row.out_of_zone_since,
        )

    def save(self, session: SessionState) -> None:
        row = self._row(session.subject_id, session.date)
        if row is None:
            row = AttendanceSession(subject_id=session.subject_id, date=session.date, zone_id=self.zone_id)
            self.db.add(row)
        row.entry_time = session.entry_time
        row.exit_time = session.exit_time
        row.status = session.status
        row.total_in_zone_duration = session.total_in_zone_duration
        row.total_out_zone_duration = session.total_out_zone_duration
        row.last_point_time = session.last_point_time
        row.last_in_zone_time = session.last_in_zone_time
        row.out_of_zone_since = session.out_of_zone_since
        self.db.commit()


def _boundary_service(db: Session, subject_id: int, thresholds: dict, on_event=None) -> BoundaryDetectionService:
    row = db.query(AttendanceTracking).filter(AttendanceTracking.subject_id == subject_id).first()
    return BoundaryDetectionService(
        SqlSessionStore(db, zone_id=row.zone_id if row else None),
        on_event=on_event,
        thresholds=thresholds,
        locks=_session_locks,
    )


def process_attendance_point(
    db: Session, subject_id: int, coordinate, timestamp, thresholds: dict | None = None,
) -> Optional[AttendanceUpdated]:
    """Run a single streamed point through boundary detection."""
    if thresholds is None:
        thresholds = get_thresholds(db)
    tracking = load_tracking(db, subject_id)
    service = _boundary_service(db, subject_id, thresholds)
    return service.process_gps_point(subject_id, coordinate, timestamp, tracking)


# ---------------------------------------------------------------------------
# Active subjects
# ---------------------------------------------------------------------------

class SqlLatestReportSource:
    """Latest stored report of every subject tracked on a zone."""

    def __init__(self, db: Session):
        self.db = db

    def latest_reports(self, zone: active.Zone) -> list[PositionReport]:
        latest = (
            self.db.query(
                PositionReportRow.subject_id,
                func.max(PositionReportRow.timestamp).label("latest"),
            )
            .join(AttendanceTracking, AttendanceTracking.subject_id == PositionReportRow.subject_id)
            .filter(AttendanceTracking.zone_id == zone.id)
            .group_by(PositionReportRow.subject_id)
            .subquery()
        )
        rows = (
            self.db.query(PositionReportRow)
            .join(latest, and_(
                PositionReportRow.subject_id == latest.c.subject_id,
                PositionReportRow.timestamp == latest.c.latest,
            ))
            .order_by(PositionReportRow.subject_id)
            .all()
        )
        return parse_reports(rows)


def active_index(db: Session, clock=None) -> active.ActiveSubjectsIndex:
    return active.ActiveSubjectsIndex(SqlLatestReportSource(db), cache=_active_cache, clock=clock)


def get_active_subjects(
    db: Session, zone: Zone, window_s: float | None = None, clock=None,
) -> list[active.ActiveSubject]:
    if window_s is None:
        window_s = get_thresholds(db)["active_window_s"]
    return active_index(db, clock=clock).get_active(
        zone_value(zone), datetime.timedelta(seconds=float(window_s)),
    )


def clear_active_cache(db: Session) -> None:
    index = active_index(db)
    for zone in db.query(Zone).all():
        index.clear_cache(zone_value(zone))


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------

def ingest_reports(
    db: Session, subject: Subject, records: Iterable, thresholds: dict | None = None,
) -> dict:
    """Store a batch of reports for a subject and run boundary detection on it.

    Returns {"received", "stored", "skipped", "batch_id", "sessions_touched"}.
    """
    if thresholds is None:
        thresholds = get_thresholds(db)

    records = list(records)
    reports = sort_reports(parse_reports(records, subject_id=subject.id))
    batch_id = uuid.uuid4().hex[:12]
    now = utcnow()

    for r in reports:
        db.add(PositionReportRow(
            subject_id=subject.id,
            latitude=r.latitude,
            longitude=r.longitude,
            altitude=r.altitude,
            speed=r.speed,
            status=r.status,
            imei=r.imei,
            timestamp=r.timestamp,
            received_at=now,
            batch_id=batch_id,
        ))
    if reports:
        subject.last_seen = now
    db.commit()

    logger.info(
        "Received %d reports for subject=%d batch=%s (%d skipped)",
        len(records), subject.id, batch_id, len(records) - len(reports),
    )

    events: list[AttendanceUpdated] = []
    tracking = load_tracking(db, subject.id)
    if tracking is not None and reports:
        service = _boundary_service(db, subject.id, thresholds, on_event=events.append)
        for r in reports:
            service.process_gps_point(subject.id, r.coordinate, r.timestamp, tracking)

    clear_active_cache(db)

    return {
        "received": len(records),
        "stored": len(reports),
        "skipped": len(records) - len(reports),
        "batch_id": batch_id,
        "sessions_touched": len({(e.subject_id, e.date) for e in events}),
    }


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

def load_subject_reports(
    db: Session,
    subject_id: int,
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
) -> list[PositionReport]:
    """Stored reports for a subject in ascending time order, bounds inclusive."""
    query = db.query(PositionReportRow).filter(PositionReportRow.subject_id == subject_id)
    if start is not None:
        query = query.filter(PositionReportRow.timestamp >= start)
    if end is not None:
        query = query.filter(PositionReportRow.timestamp <= end)
    rows = query.order_by(PositionReportRow.timestamp.asc(), PositionReportRow.id.asc()).all()
    return parse_reports(rows)


def compute_subject_metrics(
    db: Session,
    subject_id: int,
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
    zone: Optional[Zone] = None,
    smooth: bool = False,
    thresholds: dict | None = None,
) -> MetricsResult:
    if thresholds is None:
        thresholds = get_thresholds(db)
    reports = load_subject_reports(db, subject_id, start, end)
    if smooth:
        reports = smoothing.correct_path(reports, thresholds=thresholds)
    analyzer = MovementSegmentAnalyzer(reports, thresholds=thresholds)
    return analyzer.analyze(start, end, polygon=zone.polygon if zone is not None else None)


def compute_zone_metrics(
    db: Session,
    subject_id: int,
    zone: Zone,
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
    thresholds: dict | None = None,
) -> MetricsResult:
    """Metrics counted only while the subject was inside the zone."""
    if thresholds is None:
        thresholds = get_thresholds(db)
    reports = load_subject_reports(db, subject_id, start, end)
    return ZoneSegmentAnalyzer(reports, thresholds=thresholds).analyze(zone.polygon)


def work_window(day: datetime.date, tracking: Optional[attendance.AttendanceTracking]):
    """``(start, end)`` of the working day, or the whole calendar day."""
    if tracking is not None and tracking.work_start and tracking.work_end:
        start = datetime.datetime.combine(day, tracking.work_start)
        end = datetime.datetime.combine(day, tracking.work_end)
        if end <= start:
            end += datetime.timedelta(days=1)
        return start, end
    start = datetime.datetime.combine(day, datetime.time())
    return start, start + datetime.timedelta(days=1) - datetime.timedelta(microseconds=1)


def record_daily_metrics(
    db: Session,
    subject_id: int,
    day: datetime.date,
    zone: Optional[Zone] = None,
    thresholds: dict | None = None,
) -> Optional[DailyMetrics]:
    """Compute the day's metrics and upsert the summary row.

    Nothing is written for a day without movement; returns None then.
    """
    tracking = load_tracking(db, subject_id)
    start, end = work_window(day, tracking)
    result = compute_subject_metrics(db, subject_id, start, end, zone=zone, thresholds=thresholds)

    if result.movement_duration_seconds <= 0:
        logger.info("No movement for subject=%d on %s; daily metrics not recorded", subject_id, day)
        return None

    expected = DEFAULT_EXPECTED_WORK_HOURS
    if tracking is not None and tracking.expected_work_hours:
        expected = tracking.expected_work_hours

    zone_id = zone.id if zone is not None else None
    zone_filter = DailyMetrics.zone_id.is_(None) if zone_id is None else DailyMetrics.zone_id == zone_id
    row = (
        db.query(DailyMetrics)
        .filter(DailyMetrics.subject_id == subject_id, DailyMetrics.date == day, zone_filter)
        .first()
    )
    if row is None:
        row = DailyMetrics(subject_id=subject_id, date=day, zone_id=zone_id)
        db.add(row)

    row.movement_distance_km = result.movement_distance_km
    row.movement_duration_seconds = result.movement_duration_seconds
    row.stoppage_duration_seconds = result.stoppage_duration_seconds
    row.stoppage_duration_while_on_seconds = result.stoppage_duration_while_on_seconds
    row.stoppage_duration_while_off_seconds = result.stoppage_duration_while_off_seconds
    row.stoppage_count = result.stoppage_count
    row.average_speed = result.average_speed
    row.max_speed = result.max_speed
    row.device_on_time = result.device_on_time
    row.first_movement_time = result.first_movement_time
    row.efficiency = productivity.efficiency(result.movement_duration_seconds, expected)
    db.commit()

    logger.info(
        "Daily metrics for subject=%d on %s: %.3f km, %s moving, %d stoppages",
        subject_id, day, result.movement_distance_km,
        result.movement_duration_hhmmss, result.stoppage_count,
    )
    return row


def daily_metrics_to_dict(row: DailyMetrics) -> dict:
    return {
        "subject_id": row.subject_id,
        "zone_id": row.zone_id,
        "date": row.date.isoformat(),
        "movement_distance_km": round(row.movement_distance_km, 3),
        "movement_duration_seconds": row.movement_duration_seconds,
        "stoppage_duration_seconds": row.stoppage_duration_seconds,
        "stoppage_duration_while_on_seconds": row.stoppage_duration_while_on_seconds,
        "stoppage_duration_while_off_seconds": row.stoppage_duration_while_off_seconds,
        "stoppage_count": row.stoppage_count,
        "average_speed": row.average_speed,
        "max_speed": row.max_speed,
        "device_on_time": row.device_on_time.isoformat() if row.device_on_time else None,
        "first_movement_time": row.first_movement_time.isoformat() if row.first_movement_time else None,
        "efficiency": row.efficiency,
    }


# ---------------------------------------------------------------------------
# Attendance summary
# ---------------------------------------------------------------------------

def attendance_summary(
    db: Session, subject_id: int, day: datetime.date, now: Optional[datetime.datetime] = None,
) -> dict:
    """The day's session with productivity, efficiency and current presence."""
    tracking = load_tracking(db, subject_id)
    session = SqlSessionStore(db).get(subject_id, day)
    now = now or utcnow()

    in_zone = out_zone = 0.0
    if session is not None:
        in_zone = session.total_in_zone_duration
        out_zone = session.total_out_zone_duration

    expected = tracking.expected_work_hours if tracking and tracking.expected_work_hours else DEFAULT_EXPECTED_WORK_HOURS

    latest = (
        db.query(PositionReportRow)
        .filter(PositionReportRow.subject_id == subject_id)
        .order_by(PositionReportRow.timestamp.desc())
        .first()
    )
    is_in_zone = bool(
        tracking is not None and latest is not None
        and point_in_polygon(latest.latitude, latest.longitude, tracking.polygon)
    )

    return {
        "subject_id": subject_id,
        "date": day.isoformat(),
        "tracking_enabled": bool(tracking and tracking.enabled),
        "session": session_to_dict(session),
        "productivity": productivity.calculate(in_zone, out_zone),
        "efficiency": productivity.efficiency(in_zone, expected),
        "status": attendance.attendance_status(
            now, is_in_zone,
            tracking.work_start if tracking else None,
            tracking.work_end if tracking else None,
        ),
    }
