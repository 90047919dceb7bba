#!/usr/bin/env python3
"""Seed the database with GPS test fixture data for development and web UI testing.

Usage:
    python seed_test_data.py

This creates the North Farm zone and a demo tractor tracked on it, uploads
the 30-point morning trace, then records the day's metrics.
"""

import json

from database import init_db, SessionLocal
from models import AttendanceTracking, Subject, Zone
from processing import attendance_summary, ingest_reports, record_daily_metrics
from tests.gps_test_fixtures import FARM_POLYGON, FARM_TRACE


def seed():
    init_db()
    db = SessionLocal()

    existing = db.query(Subject).filter(Subject.imei == "860000000000999").first()
    if existing:
        print("Demo tractor already exists. Skipping seed.")
        db.close()
        return

    zone = Zone(name="North Farm", polygon=json.dumps(FARM_POLYGON))
    db.add(zone)
    subject = Subject(name="Demo Tractor", kind="tractor", imei="860000000000999")
    db.add(subject)
    db.commit()
    db.refresh(zone)
    db.refresh(subject)
    print(f"Created zone: {zone.name} (id={zone.id})")
    print(f"Created subject: {subject.name} (id={subject.id})")

    db.add(AttendanceTracking(
        subject_id=subject.id,
        zone_id=zone.id,
        enabled=True,
        expected_work_hours=8.0,
    ))
    db.commit()

    result = ingest_reports(db, subject, FARM_TRACE)
    print(f"Inserted {result['stored']} position reports (batch {result['batch_id']})")

    day = FARM_TRACE[0]["timestamp"].date()
    row = record_daily_metrics(db, subject.id, day)
    if row is not None:
        print(f"Daily metrics: {row.movement_distance_km:.2f} km moving, "
              f"{row.stoppage_count} stoppages, efficiency {row.efficiency}%")

    summary = attendance_summary(db, subject.id, day)
    session = summary["session"]
    if session:
        print(f"Attendance: {session['status']} "
              f"({session['entry_time']} - {session['exit_time'] or 'open'}), "
              f"productivity {summary['productivity']}%")

    db.close()
    print("\nDone! Open the dashboard and pick 'North Farm'.")


if __name__ == "__main__":
    seed()
