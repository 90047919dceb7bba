"""Tests for REST API endpoints using the ASGI test client."""

import datetime
import json
from unittest.mock import patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db as original_get_db
from models import AttendanceSession, AttendanceTracking, DailyMetrics, PositionReportRow, Subject, Zone
from tests.gps_test_fixtures import FARM_POLYGON, FARM_TRACE, FIRST_INSIDE_TIME, as_api_payload

DAY = FARM_TRACE[0]["timestamp"].date()
LAST_REPORT_TIME = FARM_TRACE[-1]["timestamp"]


# ---------------------------------------------------------------------------
# Test setup: override get_db using the original function reference as key
# ---------------------------------------------------------------------------

@pytest.fixture
def app_and_db():
    """Create a test FastAPI app with an in-memory database."""
    # Use StaticPool so all threads/connections share the same in-memory DB
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestSession = sessionmaker(bind=engine)

    def test_get_db():
        session = TestSession()
        try:
            yield session
        finally:
            session.close()

    from api import router

    app = FastAPI()
    app.dependency_overrides[original_get_db] = test_get_db
    app.include_router(router)

    # Seed a tracked tractor on the farm and an untracked harvester
    session = TestSession()
    zone = Zone(name="North Farm", polygon=json.dumps(FARM_POLYGON))
    tractor = Subject(name="Tractor 1", kind="tractor", imei="860000000000001")
    harvester = Subject(name="Harvester", kind="harvester", imei="860000000000002")
    session.add_all([zone, tractor, harvester])
    session.commit()
    session.add(AttendanceTracking(
        subject_id=tractor.id, zone_id=zone.id, enabled=True, expected_work_hours=8.0,
    ))
    session.commit()
    ids = {"zone": zone.id, "tractor": tractor.id, "harvester": harvester.id}
    session.close()

    client = TestClient(app)
    return client, ids, TestSession


@pytest.fixture
def client(app_and_db):
    return app_and_db[0]


@pytest.fixture
def ids(app_and_db):
    return app_and_db[1]


@pytest.fixture
def db(app_and_db):
    TestSession = app_and_db[2]
    session = TestSession()
    try:
        yield session
    finally:
        session.close()


def _upload(client, subject_id, trace=FARM_TRACE):
    return client.post("/api/reports", json={
        "subject_id": subject_id,
        "reports": as_api_payload(trace),
    })


# ---------------------------------------------------------------------------
# Report upload tests
# ---------------------------------------------------------------------------

class TestReportEndpoints:
    def test_upload_batch(self, client, ids, db):
        resp = _upload(client, ids["tractor"])
        assert resp.status_code == 200
        data = resp.json()
        assert data["received"] == len(FARM_TRACE)
        assert data["stored"] == len(FARM_TRACE)
        assert data["skipped"] == 0
        assert data["sessions_touched"] == 1
        assert "batch_id" in data
        assert db.query(PositionReportRow).count() == len(FARM_TRACE)

    def test_upload_opens_attendance_session(self, client, ids, db):
        _upload(client, ids["tractor"])
        session = db.query(AttendanceSession).one()
        assert session.subject_id == ids["tractor"]
        assert session.zone_id == ids["zone"]
        assert session.entry_time == FIRST_INSIDE_TIME

    def test_untracked_subject_has_no_session(self, client, ids, db):
        resp = _upload(client, ids["harvester"])
        assert resp.json()["sessions_touched"] == 0
        assert db.query(AttendanceSession).count() == 0

    def test_mixed_coordinate_formats(self, client, ids):
        resp = client.post("/api/reports", json={
            "subject_id": ids["harvester"],
            "reports": [
                {"coordinate": "35.005,51.005", "timestamp": "2024-05-06T08:00:00Z"},
                {"coordinate": [35.005, 51.006], "timestamp": 1714982460},
                {"coordinate": "[35.005, 51.007]", "timestamp": "2024-05-06 08:02:00"},
                {"latitude": 35.005, "longitude": 51.008, "timestamp": "2024-05-06T08:03:00"},
                {"coordinate": "nowhere", "timestamp": "2024-05-06T08:04:00"},
            ],
        })
        assert resp.status_code == 200
        assert resp.json()["stored"] == 4
        assert resp.json()["skipped"] == 1

    def test_unknown_subject(self, client):
        resp = _upload(client, 9999)
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Subject not found"

    def test_missing_subject_id(self, client):
        resp = client.post("/api/reports", json={"reports": []})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Metrics endpoint tests
# ---------------------------------------------------------------------------

class TestMetricsEndpoints:
    def test_full_history(self, client, ids):
        _upload(client, ids["tractor"])
        resp = client.get(f"/api/subjects/{ids['tractor']}/metrics")
        assert resp.status_code == 200
        data = resp.json()
        assert data["stoppage_count"] == 3
        assert data["stoppage_duration_seconds"] == 3030
        assert data["movement_duration_seconds"] == 1170
        assert data["movement_duration_formatted"] == "00:19:30"
        assert data["max_speed"] == 15
        assert data["total_records"] == len(FARM_TRACE)
        assert "stoppages" not in data

    def test_include_stoppages(self, client, ids):
        _upload(client, ids["tractor"])
        resp = client.get(f"/api/subjects/{ids['tractor']}/metrics", params={"include_stoppages": True})
        stoppages = [s for s in resp.json()["stoppages"] if not s["ignored"]]
        assert [s["duration_seconds"] for s in stoppages] == [630, 300, 2100]
        assert [s["status"] for s in stoppages] == ["off", "on", "on"]

    def test_time_window(self, client, ids):
        _upload(client, ids["tractor"])
        resp = client.get(f"/api/subjects/{ids['tractor']}/metrics", params={
            "start": "2024-05-06T07:13:00",
            "end": "2024-05-06T07:20:00",
        })
        data = resp.json()
        assert data["stoppage_count"] == 0
        assert data["movement_duration_seconds"] == 420

    def test_zone_filter(self, client, ids):
        _upload(client, ids["tractor"])
        resp = client.get(f"/api/subjects/{ids['tractor']}/metrics", params={"zone_id": ids["zone"]})
        data = resp.json()
        assert data["stoppage_count"] == 1
        assert data["start_time"] == FIRST_INSIDE_TIME.isoformat()

    def test_smoothed(self, client, ids):
        _upload(client, ids["tractor"])
        resp = client.get(f"/api/subjects/{ids['tractor']}/metrics", params={"smooth": True})
        assert resp.status_code == 200
        assert resp.json()["movement_duration_seconds"] == 1170

    def test_no_reports(self, client, ids):
        resp = client.get(f"/api/subjects/{ids['harvester']}/metrics")
        assert resp.status_code == 200
        assert resp.json()["total_records"] == 0
        assert resp.json()["movement_distance_km"] == 0

    def test_start_after_end(self, client, ids):
        resp = client.get(f"/api/subjects/{ids['tractor']}/metrics", params={
            "start": "2024-05-06T09:00:00",
            "end": "2024-05-06T08:00:00",
        })
        assert resp.status_code == 400

    def test_unknown_zone(self, client, ids):
        resp = client.get(f"/api/subjects/{ids['tractor']}/metrics", params={"zone_id": 9999})
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Zone not found"

    def test_unknown_subject(self, client):
        assert client.get("/api/subjects/9999/metrics").status_code == 404

    def test_zone_metrics(self, client, ids):
        _upload(client, ids["tractor"])
        resp = client.get(f"/api/subjects/{ids['tractor']}/zone-metrics", params={"zone_id": ids["zone"]})
        assert resp.status_code == 200
        data = resp.json()
        assert data["movement_duration_seconds"] == 990
        assert data["stoppage_duration_seconds"] == 300
        assert data["end_time"] == "2024-05-06T07:33:00"

    def test_zone_metrics_requires_zone(self, client, ids):
        resp = client.get(f"/api/subjects/{ids['tractor']}/zone-metrics")
        assert resp.status_code == 422


class TestDailyMetricsEndpoint:
    def test_records_day(self, client, ids, db):
        _upload(client, ids["tractor"])
        resp = client.post(f"/api/subjects/{ids['tractor']}/daily-metrics", params={"date": DAY.isoformat()})
        assert resp.status_code == 200
        data = resp.json()
        assert data["recorded"] is True
        assert data["metrics"]["stoppage_count"] == 3
        assert data["metrics"]["efficiency"] == round(1170 / (8 * 3600) * 100, 2)
        assert db.query(DailyMetrics).count() == 1

    def test_repeat_upserts(self, client, ids, db):
        _upload(client, ids["tractor"])
        for _ in range(2):
            client.post(f"/api/subjects/{ids['tractor']}/daily-metrics", params={"date": DAY.isoformat()})
        assert db.query(DailyMetrics).count() == 1

    def test_idle_day_not_recorded(self, client, ids, db):
        resp = client.post(f"/api/subjects/{ids['harvester']}/daily-metrics", params={"date": DAY.isoformat()})
        assert resp.json() == {"recorded": False, "metrics": None}
        assert db.query(DailyMetrics).count() == 0


# ---------------------------------------------------------------------------
# Attendance endpoint tests
# ---------------------------------------------------------------------------

class TestAttendanceEndpoint:
    @patch("processing.utcnow", return_value=LAST_REPORT_TIME)
    def test_completed_session(self, mock_now, client, ids):
        _upload(client, ids["tractor"])
        resp = client.get(f"/api/subjects/{ids['tractor']}/attendance", params={"date": DAY.isoformat()})
        assert resp.status_code == 200
        data = resp.json()
        assert data["tracking_enabled"] is True
        assert data["session"]["status"] == "completed"
        assert data["session"]["exit_time"] == "2024-05-06T07:33:30"
        assert data["productivity"] == 36.75
        assert data["status"] == "resting"

    def test_untracked_subject(self, client, ids):
        resp = client.get(f"/api/subjects/{ids['harvester']}/attendance", params={"date": DAY.isoformat()})
        data = resp.json()
        assert data["tracking_enabled"] is False
        assert data["session"] is None
        assert data["productivity"] is None

    def test_unknown_subject(self, client):
        assert client.get("/api/subjects/9999/attendance").status_code == 404


# ---------------------------------------------------------------------------
# Active subject endpoint tests
# ---------------------------------------------------------------------------

class TestActiveEndpoint:
    @patch("active.utcnow", return_value=LAST_REPORT_TIME)
    def test_recent_subjects_listed(self, mock_now, client, ids):
        _upload(client, ids["tractor"])
        resp = client.get(f"/api/zones/{ids['zone']}/active")
        assert resp.status_code == 200
        (entry,) = resp.json()
        assert entry["subject_id"] == ids["tractor"]
        assert entry["name"] == "Tractor 1"
        assert entry["is_in_zone"] is False
        assert entry["last_update"] == LAST_REPORT_TIME.isoformat()

    @patch("active.utcnow", return_value=datetime.datetime(2024, 5, 6, 7, 20, 0))
    def test_inside_subject_flagged(self, mock_now, client, ids):
        cutoff = datetime.datetime(2024, 5, 6, 7, 20, 0)
        _upload(client, ids["tractor"], [pt for pt in FARM_TRACE if pt["timestamp"] < cutoff])
        (entry,) = client.get(f"/api/zones/{ids['zone']}/active").json()
        assert entry["is_in_zone"] is True

    @patch("active.utcnow", return_value=LAST_REPORT_TIME)
    def test_subjects_not_tracked_on_zone_excluded(self, mock_now, client, ids):
        _upload(client, ids["harvester"])
        assert client.get(f"/api/zones/{ids['zone']}/active").json() == []

    @patch("active.utcnow", return_value=LAST_REPORT_TIME + datetime.timedelta(minutes=30))
    def test_window_minutes(self, mock_now, client, ids):
        _upload(client, ids["tractor"])
        url = f"/api/zones/{ids['zone']}/active"
        assert client.get(url).json() == []
        assert len(client.get(url, params={"window_minutes": 45}).json()) == 1

    def test_invalid_window(self, client, ids):
        url = f"/api/zones/{ids['zone']}/active"
        assert client.get(url, params={"window_minutes": 0}).status_code == 422
        assert client.get(url, params={"window_minutes": 2.5}).status_code == 422
        assert client.get(url, params={"window_minutes": 24 * 60 + 1}).status_code == 422

    def test_unknown_zone(self, client):
        assert client.get("/api/zones/9999/active").status_code == 404
