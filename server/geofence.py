"""Geofence engine: polygon normalisation, point-in-polygon and great-circle distance.

Zone polygons are stored the way the farm boundary editor produces them: an
ordered list of ``(longitude, latitude)`` vertices. Position reports carry
``(latitude, longitude)``. The swap is part of the contract; callers pass the
point as ``lat, lon`` and the engine tests it as ``x=lon, y=lat``.
"""

import json
import logging
import math
from typing import Optional, Sequence

from shapely.geometry import Point, Polygon

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


# ---------------------------------------------------------------------------
# Geo math
# ---------------------------------------------------------------------------

def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in kilometres between two WGS-84 points."""
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in metres between two WGS-84 points."""
    return haversine_km(lat1, lon1, lat2, lon2) * 1000.0


# ---------------------------------------------------------------------------
# Polygons
# ---------------------------------------------------------------------------

def normalize_polygon(polygon) -> list[tuple[float, float]]:
    """Return the polygon as a list of ``(lon, lat)`` float pairs.

    Accepts a sequence of pairs or a JSON-encoded list of pairs. Vertices that
    cannot be read are dropped, as is an explicit closing vertex that repeats
    the first one. Returns an empty list when fewer than three distinct
    vertices remain: such a polygon is "no zone".
    """
    if polygon is None:
        return []

    if isinstance(polygon, (str, bytes)):
        try:
            polygon = json.loads(polygon)
        except ValueError:
            logger.warning("Zone polygon is not valid JSON; treating as empty")
            return []

    try:
        raw = list(polygon)
    except TypeError:
        return []

    vertices = []
    for vertex in raw:
        try:
            lon, lat = float(vertex[0]), float(vertex[1])
        except (TypeError, ValueError, IndexError, KeyError):
            continue
        if math.isnan(lon) or math.isnan(lat):
            continue
        vertices.append((lon, lat))

    if len(vertices) > 1 and vertices[0] == vertices[-1]:
        vertices.pop()

    if len(set(vertices)) < 3:
        return []
    return vertices


def build_polygon(polygon) -> Optional[Polygon]:
    """Build a Shapely polygon from raw vertices, or None for "no zone"."""
    vertices = normalize_polygon(polygon)
    if not vertices:
        return None
    return Polygon(vertices)


def point_in_polygon(lat: float, lon: float, polygon) -> bool:
    """True if the point lies inside the polygon or on its boundary.

    ``polygon`` may be raw vertices (``(lon, lat)`` pairs) or a polygon
    already built with :func:`build_polygon`. A degenerate polygon never
    contains anything.
    """
    shape = polygon if isinstance(polygon, Polygon) else build_polygon(polygon)
    if shape is None or shape.is_empty:
        return False
    return shape.covers(Point(lon, lat))


def classify_points(points: Sequence[tuple[float, float]], polygon) -> list[bool]:
    """Inside/outside flag for each ``(lat, lon)`` point, building the polygon once."""
    shape = polygon if isinstance(polygon, Polygon) else build_polygon(polygon)
    if shape is None:
        return [False] * len(points)
    return [point_in_polygon(lat, lon, shape) for lat, lon in points]
