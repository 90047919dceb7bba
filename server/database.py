"""Database setup and session management using SQLAlchemy + SQLite."""

import logging
import os

logger = logging.getLogger(__name__)

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///telemetry.db")

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all tables, run migrations, and seed the default thresholds."""
    from models import (  # noqa: F401
        AttendanceSession, AttendanceTracking, Config, DailyMetrics, PositionReportRow, Subject, Zone,
    )

    logger.info("Initializing database at %s", DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    _migrate()
    _seed_config()


def _migrate():
    """Add any missing columns to existing tables."""
    insp = inspect(engine)
    if "position_reports" in insp.get_table_names():
        columns = {c["name"] for c in insp.get_columns("position_reports")}
        if "batch_id" not in columns:
            logger.info("Migrating: adding batch_id column to position_reports table")
            with engine.begin() as conn:
                conn.execute(text("ALTER TABLE position_reports ADD COLUMN batch_id VARCHAR"))


# Default processing thresholds (must match the module-level constants in
# analysis.py, attendance.py, active.py and smoothing.py)
DEFAULT_THRESHOLDS = {
    "stoppage_threshold_s": "60",
    "exit_debounce_s": "1800",
    "consecutive_movements_to_confirm": "3",
    "active_window_s": "600",
    "kalman_process_noise": "3.0",
    "kalman_measurement_noise": "6.0",
    "median_window_size": "5",
}


DEFAULT_SETTINGS = {
    "timezone": "UTC",
}


def _seed_config(session_factory=None):
    """Insert default thresholds and settings if not present."""
    from models import Config

    db = (session_factory or SessionLocal)()
    try:
        for key, value in {**DEFAULT_THRESHOLDS, **DEFAULT_SETTINGS}.items():
            if not db.query(Config).filter(Config.key == key).first():
                db.add(Config(key=key, value=value))
        db.commit()
    finally:
        db.close()
