"""Productivity and efficiency scores derived from accumulated durations."""

from typing import Optional


def calculate(in_zone_seconds: float, out_zone_seconds: float) -> Optional[float]:
    """Percentage of attended time spent inside the zone.

    None when nothing was recorded: a subject who never showed up in the data
    has no score rather than 0%.
    """
    total = (in_zone_seconds or 0) + (out_zone_seconds or 0)
    if total <= 0:
        return None
    return round((in_zone_seconds or 0) / total * 100, 2)


def efficiency(worked_seconds: float, expected_hours: float) -> float:
    """Worked time as a percentage of the expected working day."""
    expected_seconds = (expected_hours or 0) * 3600
    if expected_seconds <= 0:
        return 0.0
    return round((worked_seconds or 0) / expected_seconds * 100, 2)
