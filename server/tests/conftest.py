"""Shared pytest fixtures: in-memory DB, test subject, farm zone, tracking."""

import sys
import os

# Add server root to path so imports work
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import processing
from database import Base
from models import AttendanceTracking, PositionReportRow, Subject, Zone
from tests.gps_test_fixtures import FARM_POLYGON, FARM_TRACE


@pytest.fixture(autouse=True)
def clear_active_cache():
    """The active-subject cache is process-wide; start each test empty."""
    processing._active_cache.clear()
    yield
    processing._active_cache.clear()


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite database for each test."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db(engine):
    """Provide a DB session, closed after each test."""
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def test_subject(db):
    """Create a test tractor."""
    subject = Subject(name="Test Tractor", kind="tractor", imei="860000000000001")
    db.add(subject)
    db.commit()
    db.refresh(subject)
    return subject


@pytest.fixture
def farm_zone(db):
    """Create the square farm zone used by the GPS fixtures."""
    zone = Zone(name="North Farm", polygon=json.dumps(FARM_POLYGON))
    db.add(zone)
    db.commit()
    db.refresh(zone)
    return zone


@pytest.fixture
def tracked_subject(db, test_subject, farm_zone):
    """The test tractor with attendance tracking enabled on the farm."""
    db.add(AttendanceTracking(
        subject_id=test_subject.id,
        zone_id=farm_zone.id,
        enabled=True,
        expected_work_hours=8.0,
    ))
    db.commit()
    return test_subject


@pytest.fixture
def populated_subject(db, test_subject):
    """The test tractor with the full farm trace stored."""
    for pt in FARM_TRACE:
        db.add(PositionReportRow(
            subject_id=test_subject.id,
            latitude=pt["latitude"],
            longitude=pt["longitude"],
            speed=pt["speed"],
            status=pt["status"],
            timestamp=pt["timestamp"],
        ))
    db.commit()
    return test_subject
