"""Geofence attendance: per-subject, per-day session tracking from streamed GPS points.

Session lifecycle for one (subject, calendar day):

    no session --inside--> in_progress --outside for >= exit debounce--> completed

While in progress, the time since the previous point is credited to the
in-zone or out-of-zone total depending on where the new point is. A short
trip outside (GPS jitter along the fence, a walk to the road) does not close
the session; only an absence of at least the exit debounce, measured from the
last in-zone sighting, does. The exit time is backdated to the first point
seen outside. A completed session is final for that day and the next day
always starts from scratch.

:func:`advance_session` is the pure transition; :class:`BoundaryDetectionService`
wraps it with storage, locking and event emission.
"""

import dataclasses
import datetime
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from geofence import build_polygon, point_in_polygon
from reports import parse_coordinate, parse_timestamp

logger = logging.getLogger(__name__)

EXIT_DEBOUNCE_S = 30 * 60

STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"


@dataclass
class SessionState:
    subject_id: Any
    date: datetime.date
    entry_time: datetime.datetime
    last_point_time: datetime.datetime
    last_in_zone_time: datetime.datetime
    status: str = STATUS_IN_PROGRESS
    exit_time: Optional[datetime.datetime] = None
    total_in_zone_duration: float = 0.0
    total_out_zone_duration: float = 0.0
    out_of_zone_since: Optional[datetime.datetime] = None


@dataclass(frozen=True)
class AttendanceTracking:
    """Per-subject attendance configuration: which zone, and when work happens."""

    subject_id: Any
    polygon: Any
    enabled: bool = True
    work_start: Optional[datetime.time] = None
    work_end: Optional[datetime.time] = None
    expected_work_hours: float = 0.0


@dataclass(frozen=True)
class AttendanceUpdated:
    """Emitted after a session is created, updated or completed."""

    subject_id: Any
    date: datetime.date
    action: str
    session: SessionState


class SessionStore(Protocol):
    def get(self, subject_id, day: datetime.date) -> Optional[SessionState]: ...

    def save(self, session: SessionState) -> None: ...


class InMemorySessionStore:
    def __init__(self):
        self.sessions: dict[tuple, SessionState] = {}

    def get(self, subject_id, day):
        session = self.sessions.get((subject_id, day))
        return dataclasses.replace(session) if session is not None else None

    def save(self, session):
        self.sessions[(session.subject_id, session.date)] = dataclasses.replace(session)


# ---------------------------------------------------------------------------
# Transition
# ---------------------------------------------------------------------------

def advance_session(
    session: Optional[SessionState],
    subject_id,
    timestamp: datetime.datetime,
    inside: bool,
    exit_debounce_s: float = EXIT_DEBOUNCE_S,
) -> tuple[Optional[SessionState], Optional[str]]:
    """Apply one GPS point to the day's session.

    Returns the new session (or the unchanged input) and the action taken:
    ``"created"``, ``"updated"``, ``"completed"`` or None when nothing changed.
    """
    if session is None:
        if not inside:
            return None, None
        return SessionState(
            subject_id=subject_id,
            date=timestamp.date(),
            entry_time=timestamp,
            last_point_time=timestamp,
            last_in_zone_time=timestamp,
        ), "created"

    if session.status != STATUS_IN_PROGRESS:
        return session, None

    elapsed = (timestamp - session.last_point_time).total_seconds()
    if elapsed < 0:
        logger.warning(
            "Out-of-order attendance point for subject=%s: %s is before %s; not accrued",
            subject_id, timestamp, session.last_point_time,
        )
        return session, None

    updated = dataclasses.replace(session, last_point_time=timestamp)
    if inside:
        updated.total_in_zone_duration += elapsed
        updated.last_in_zone_time = timestamp
        updated.out_of_zone_since = None
        return updated, "updated"

    updated.total_out_zone_duration += elapsed
    if updated.out_of_zone_since is None:
        updated.out_of_zone_since = timestamp

    absent_for = (timestamp - updated.last_in_zone_time).total_seconds()
    if absent_for >= exit_debounce_s:
        updated.status = STATUS_COMPLETED
        updated.exit_time = updated.out_of_zone_since
        return updated, "completed"
    return updated, "updated"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class KeyedLocks:
    """One lock per key, created on first use. Share an instance to serialise
    updates across several services.

    Keys should come from a bounded set (subject ids, not subject-days):
    locks are kept for the life of the instance.
    """

    def __init__(self):
        self._locks: dict[Any, threading.Lock] = defaultdict(threading.Lock)
        self._guard = threading.Lock()

    def __call__(self, key) -> threading.Lock:
        with self._guard:
            return self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class BoundaryDetectionService:
    """Feeds streamed GPS points through :func:`advance_session`.

    Points for the same subject are serialised with a per-subject lock so
    concurrent uploads cannot interleave a read-modify-write of the session.
    """

    def __init__(
        self,
        store: SessionStore,
        on_event: Optional[Callable[[AttendanceUpdated], None]] = None,
        thresholds: dict | None = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.store = store
        self.on_event = on_event
        self.exit_debounce_s = float(
            (thresholds or {}).get("exit_debounce_s", EXIT_DEBOUNCE_S)
        )
        self._locks = locks if locks is not None else KeyedLocks()

    def process_gps_point(
        self,
        subject_id,
        coordinate,
        timestamp,
        tracking: Optional[AttendanceTracking],
    ) -> Optional[AttendanceUpdated]:
        """Apply one point; returns the emitted event, or None when nothing changed."""
        if tracking is None or not tracking.enabled:
            logger.debug("Attendance tracking not enabled for subject=%s", subject_id)
            return None

        shape = build_polygon(tracking.polygon)
        if shape is None:
            logger.warning("No usable zone polygon for subject=%s; skipping point", subject_id)
            return None

        point = parse_coordinate(coordinate)
        when = parse_timestamp(timestamp)
        if point is None or when is None:
            logger.debug("Malformed attendance point for subject=%s: %r @ %r", subject_id, coordinate, timestamp)
            return None

        inside = point_in_polygon(point[0], point[1], shape)
        day = when.date()

        with self._locks(subject_id):
            session = self.store.get(subject_id, day)
            session, action = advance_session(session, subject_id, when, inside, self.exit_debounce_s)
            if action is None:
                return None
            self.store.save(session)

        if action == "created":
            logger.info("Attendance session opened for subject=%s at %s", subject_id, when)
        elif action == "completed":
            logger.info(
                "Attendance session closed for subject=%s, exit at %s", subject_id, session.exit_time,
            )

        event = AttendanceUpdated(subject_id=subject_id, date=day, action=action, session=session)
        if self.on_event is not None:
            self.on_event(event)
        return event


# ---------------------------------------------------------------------------
# Presence status
# ---------------------------------------------------------------------------

def attendance_status(
    now: datetime.datetime,
    is_in_zone: bool,
    work_start: Optional[datetime.time],
    work_end: Optional[datetime.time],
) -> str:
    """``present``/``absent`` during working hours, ``resting`` otherwise.

    A window whose end is not after its start runs past midnight.
    """
    if work_start is None or work_end is None:
        return "resting"

    t = now.time()
    if work_end > work_start:
        working = work_start <= t < work_end
    else:
        working = t >= work_start or t < work_end

    if not working:
        return "resting"
    return "present" if is_in_zone else "absent"
