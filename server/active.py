"""Which subjects are reporting right now, and are they inside a zone.

Results are cached per zone until :meth:`ActiveSubjectsIndex.clear_cache` is
called; the ingest path clears the cache after it stores new reports.
"""

import datetime
import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Iterable, Optional, Protocol

from geofence import build_polygon, point_in_polygon
from reports import PositionReport, sort_reports, utcnow

logger = logging.getLogger(__name__)

ACTIVE_WINDOW_S = 10 * 60


@dataclass(frozen=True)
class Zone:
    id: Any
    name: str
    polygon: Any


@dataclass(frozen=True)
class ActiveSubject:
    subject_id: Any
    is_in_zone: bool
    coordinate: tuple[float, float]
    last_update: datetime.datetime

    def to_dict(self) -> dict:
        return {
            "subject_id": self.subject_id,
            "is_in_zone": self.is_in_zone,
            "latitude": self.coordinate[0],
            "longitude": self.coordinate[1],
            "last_update": self.last_update.isoformat(),
        }


class Cache(Protocol):
    def get(self, key): ...

    def set(self, key, value) -> None: ...

    def delete(self, key) -> None: ...


class InMemoryCache:
    """Process-local cache with no expiry; entries live until deleted."""

    def __init__(self):
        self._cache = {}
        self._lock = Lock()

    def get(self, key):
        with self._lock:
            return self._cache.get(key)

    def set(self, key, value):
        with self._lock:
            self._cache[key] = value

    def delete(self, key):
        with self._lock:
            self._cache.pop(key, None)

    def clear(self):
        with self._lock:
            self._cache.clear()


class LatestReportSource(Protocol):
    def latest_reports(self, zone: Zone) -> Iterable[PositionReport]:
        """Most recent report of each subject that may be working in ``zone``."""
        ...


def _cache_key(zone: Zone) -> str:
    return f"active:{zone.id}"


class ActiveSubjectsIndex:
    def __init__(
        self,
        source: LatestReportSource,
        cache: Optional[Cache] = None,
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ):
        self.source = source
        self.cache = cache if cache is not None else InMemoryCache()
        self.clock = clock or utcnow

    def get_active(
        self,
        zone: Zone,
        recency_window: datetime.timedelta = datetime.timedelta(seconds=ACTIVE_WINDOW_S),
    ) -> list[ActiveSubject]:
        """Subjects whose latest report is no older than ``recency_window``.

        Each is flagged with whether that latest position is inside the zone.
        Cached entries are keyed by zone and window length.
        """
        key = _cache_key(zone)
        window_s = int(recency_window.total_seconds())
        cached = self.cache.get(key) or {}
        if window_s in cached:
            return cached[window_s]

        active = self._compute(zone, recency_window)
        cached = dict(cached)
        cached[window_s] = active
        self.cache.set(key, cached)
        return active

    def _compute(self, zone: Zone, recency_window: datetime.timedelta) -> list[ActiveSubject]:
        cutoff = self.clock() - recency_window
        shape = build_polygon(zone.polygon)
        if shape is None:
            logger.warning("Zone %s has no usable polygon; nobody will be in zone", zone.id)

        latest: dict[Any, PositionReport] = {}
        for report in sort_reports(self.source.latest_reports(zone)):
            latest[report.subject_id] = report

        active = []
        for subject_id, report in latest.items():
            if report.timestamp < cutoff:
                continue
            inside = shape is not None and point_in_polygon(report.latitude, report.longitude, shape)
            active.append(ActiveSubject(
                subject_id=subject_id,
                is_in_zone=inside,
                coordinate=report.coordinate,
                last_update=report.timestamp,
            ))
        logger.debug("Zone %s: %d active subjects", zone.id, len(active))
        return active

    def clear_cache(self, zone: Zone) -> None:
        self.cache.delete(_cache_key(zone))
