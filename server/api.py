"""REST API endpoints for device report uploads, metrics, attendance and active subjects."""

import datetime
import logging
from typing import Any, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from database import get_db
from models import Subject, Zone
from processing import (
    attendance_summary,
    compute_subject_metrics,
    compute_zone_metrics,
    daily_metrics_to_dict,
    get_active_subjects,
    ingest_reports,
    record_daily_metrics,
)
from reports import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class ReportPoint(BaseModel):
    """One device report. The coordinate may be a [lat, lon] pair, a JSON
    string of that pair, a "lat,lon" string, or separate latitude/longitude."""

    coordinate: Any = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    speed: Optional[float] = None
    status: Union[int, bool, str, None] = None
    imei: Optional[str] = None
    timestamp: Union[str, float, int, None] = None


class ReportBatch(BaseModel):
    subject_id: int
    reports: list[ReportPoint]


class BatchResponse(BaseModel):
    received: int
    stored: int
    skipped: int
    batch_id: str
    sessions_touched: int = 0


class ActiveSubjectResponse(BaseModel):
    subject_id: int
    name: Optional[str] = None
    is_in_zone: bool
    latitude: float
    longitude: float
    last_update: str


class DailyMetricsResponse(BaseModel):
    recorded: bool
    metrics: Optional[dict] = None


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def _get_subject(db: Session, subject_id: int) -> Subject:
    subject = db.query(Subject).filter(Subject.id == subject_id).first()
    if not subject:
        raise HTTPException(status_code=404, detail="Subject not found")
    return subject


def _get_zone(db: Session, zone_id: int) -> Zone:
    zone = db.query(Zone).filter(Zone.id == zone_id).first()
    if not zone:
        raise HTTPException(status_code=404, detail="Zone not found")
    return zone


def _time_range(start: Optional[datetime.datetime], end: Optional[datetime.datetime]):
    start = parse_timestamp(start) if start is not None else None
    end = parse_timestamp(end) if end is not None else None
    if start is not None and end is not None and start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")
    return start, end


# ---------------------------------------------------------------------------
# Report endpoints
# ---------------------------------------------------------------------------

@router.post("/reports", response_model=BatchResponse)
def upload_reports(batch: ReportBatch, db: Session = Depends(get_db)):
    subject = _get_subject(db, batch.subject_id)
    result = ingest_reports(db, subject, [pt.model_dump() for pt in batch.reports])
    return BatchResponse(**result)


# ---------------------------------------------------------------------------
# Metrics endpoints
# ---------------------------------------------------------------------------

@router.get("/subjects/{subject_id}/metrics")
def get_metrics(
    subject_id: int,
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
    zone_id: Optional[int] = None,
    smooth: bool = False,
    include_stoppages: bool = False,
    db: Session = Depends(get_db),
):
    """Movement metrics over the subject's history, optionally windowed and zone-filtered."""
    _get_subject(db, subject_id)
    start, end = _time_range(start, end)
    zone = _get_zone(db, zone_id) if zone_id is not None else None
    result = compute_subject_metrics(db, subject_id, start, end, zone=zone, smooth=smooth)
    return result.to_dict(include_stoppages=include_stoppages)


@router.get("/subjects/{subject_id}/zone-metrics")
def get_zone_metrics(
    subject_id: int,
    zone_id: int,
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
    include_stoppages: bool = False,
    db: Session = Depends(get_db),
):
    """Metrics counted only while the subject was inside the zone."""
    _get_subject(db, subject_id)
    zone = _get_zone(db, zone_id)
    start, end = _time_range(start, end)
    result = compute_zone_metrics(db, subject_id, zone, start, end)
    return result.to_dict(include_stoppages=include_stoppages)


@router.post("/subjects/{subject_id}/daily-metrics", response_model=DailyMetricsResponse)
def post_daily_metrics(
    subject_id: int,
    date: Optional[datetime.date] = None,
    zone_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    _get_subject(db, subject_id)
    zone = _get_zone(db, zone_id) if zone_id is not None else None
    day = date or utcnow().date()
    row = record_daily_metrics(db, subject_id, day, zone=zone)
    if row is None:
        return DailyMetricsResponse(recorded=False)
    return DailyMetricsResponse(recorded=True, metrics=daily_metrics_to_dict(row))


# ---------------------------------------------------------------------------
# Attendance endpoints
# ---------------------------------------------------------------------------

@router.get("/subjects/{subject_id}/attendance")
def get_attendance(
    subject_id: int,
    date: Optional[datetime.date] = None,
    db: Session = Depends(get_db),
):
    _get_subject(db, subject_id)
    return attendance_summary(db, subject_id, date or utcnow().date())


# ---------------------------------------------------------------------------
# Zone endpoints
# ---------------------------------------------------------------------------

@router.get("/zones/{zone_id}/active", response_model=list[ActiveSubjectResponse])
def get_active(
    zone_id: int,
    window_minutes: Optional[int] = Query(None, gt=0, le=24 * 60),
    db: Session = Depends(get_db),
):
    """Subjects that reported recently, flagged by whether they are inside the zone."""
    zone = _get_zone(db, zone_id)
    window_s = window_minutes * 60 if window_minutes is not None else None
    active = get_active_subjects(db, zone, window_s)

    names = {
        s.id: s.name
        for s in db.query(Subject).filter(Subject.id.in_([a.subject_id for a in active])).all()
    }
    return [
        ActiveSubjectResponse(
            subject_id=a.subject_id,
            name=names.get(a.subject_id),
            is_in_zone=a.is_in_zone,
            latitude=a.coordinate[0],
            longitude=a.coordinate[1],
            last_update=a.last_update.isoformat(),
        )
        for a in active
    ]
