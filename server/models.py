"""SQLAlchemy models for subjects, zones, position reports, attendance and metrics."""

import datetime
from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, String, Text, Time,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


class Subject(Base):
    """A tracked entity: a tractor, a labourer or a generic user."""

    __tablename__ = "subjects"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    kind = Column(String, nullable=False, default="tractor")
    imei = Column(String, unique=True, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    last_seen = Column(DateTime, nullable=True)

    reports = relationship("PositionReportRow", back_populates="subject", cascade="all, delete-orphan")
    tracking = relationship("AttendanceTracking", back_populates="subject", uselist=False,
                            cascade="all, delete-orphan")


class Zone(Base):
    """A farm or field boundary. ``polygon`` is a JSON list of [lon, lat] vertices."""

    __tablename__ = "zones"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    polygon = Column(Text, nullable=False, default="[]")
    created_at = Column(DateTime, default=datetime.datetime.utcnow)


class AttendanceTracking(Base):
    __tablename__ = "attendance_tracking"

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(Integer, ForeignKey("subjects.id"), nullable=False, unique=True)
    zone_id = Column(Integer, ForeignKey("zones.id"), nullable=False)
    enabled = Column(Boolean, default=True)
    work_start = Column(Time, nullable=True)
    work_end = Column(Time, nullable=True)
    expected_work_hours = Column(Float, default=0.0)

    subject = relationship("Subject", back_populates="tracking")
    zone = relationship("Zone")


class PositionReportRow(Base):
    __tablename__ = "position_reports"

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(Integer, ForeignKey("subjects.id"), nullable=False, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    altitude = Column(Float, nullable=True)
    speed = Column(Float, default=0.0)
    status = Column(Integer, default=0)
    imei = Column(String, nullable=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    received_at = Column(DateTime, default=datetime.datetime.utcnow)
    batch_id = Column(String, nullable=True, index=True)

    subject = relationship("Subject", back_populates="reports")


class AttendanceSession(Base):
    """One row per subject per calendar day; see attendance.advance_session."""

    __tablename__ = "attendance_sessions"
    __table_args__ = (UniqueConstraint("subject_id", "date", name="uq_attendance_subject_date"),)

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(Integer, ForeignKey("subjects.id"), nullable=False, index=True)
    zone_id = Column(Integer, ForeignKey("zones.id"), nullable=True)
    date = Column(Date, nullable=False)
    entry_time = Column(DateTime, nullable=False)
    exit_time = Column(DateTime, nullable=True)
    status = Column(String, nullable=False, default="in_progress")
    total_in_zone_duration = Column(Float, default=0.0)
    total_out_zone_duration = Column(Float, default=0.0)
    last_point_time = Column(DateTime, nullable=False)
    last_in_zone_time = Column(DateTime, nullable=False)
    out_of_zone_since = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    subject = relationship("Subject")


class DailyMetrics(Base):
    """Movement summary for a subject on one day, optionally per zone.

    Recomputed for the whole day and overwritten each time it is recorded.
    """

    __tablename__ = "daily_metrics"

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(Integer, ForeignKey("subjects.id"), nullable=False, index=True)
    zone_id = Column(Integer, ForeignKey("zones.id"), nullable=True)
    date = Column(Date, nullable=False)
    movement_distance_km = Column(Float, default=0.0)
    movement_duration_seconds = Column(Float, default=0.0)
    stoppage_duration_seconds = Column(Float, default=0.0)
    stoppage_duration_while_on_seconds = Column(Float, default=0.0)
    stoppage_duration_while_off_seconds = Column(Float, default=0.0)
    stoppage_count = Column(Integer, default=0)
    average_speed = Column(Float, default=0.0)
    max_speed = Column(Float, default=0.0)
    device_on_time = Column(DateTime, nullable=True)
    first_movement_time = Column(DateTime, nullable=True)
    efficiency = Column(Float, default=0.0)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)

    subject = relationship("Subject")


class Config(Base):
    """Key/value overrides for processing thresholds and UI settings."""

    __tablename__ = "config"

    key = Column(String, primary_key=True)
    value = Column(String, nullable=False)
