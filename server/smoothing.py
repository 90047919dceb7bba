"""Position smoothing: a scalar Kalman filter plus a median path filter.

The Kalman filter runs independently on latitude and longitude with a shared
uncertainty. It does not reject outliers: large jumps pull the estimate most
of the way over, so genuine fast movement is not lagged. The median filter is
the tool for knocking out single-sample spikes, and :func:`correct_path`
chains the two.
"""

import dataclasses
import logging
import statistics
from typing import Callable, Iterable, Optional, Sequence

from reports import PositionReport

logger = logging.getLogger(__name__)

KALMAN_PROCESS_NOISE = 3.0      # Q
KALMAN_MEASUREMENT_NOISE = 6.0  # R
MEDIAN_WINDOW_SIZE = 5


class KalmanFilter:
    """Single-subject position smoother. Not shared between threads."""

    def __init__(
        self,
        process_noise: float = KALMAN_PROCESS_NOISE,
        measurement_noise: float = KALMAN_MEASUREMENT_NOISE,
    ):
        self.process_noise = process_noise
        self.measurement_noise = measurement_noise
        self.lat: Optional[float] = None
        self.lon: Optional[float] = None
        self.variance: float = measurement_noise

    def filter(self, lat: float, lon: float) -> tuple[float, float]:
        if self.lat is None or self.lon is None:
            self.lat, self.lon = lat, lon
            self.variance = self.measurement_noise
            return lat, lon

        gain = self.variance / (self.variance + self.measurement_noise)
        self.lat = self.lat + gain * (lat - self.lat)
        self.lon = self.lon + gain * (lon - self.lon)
        self.variance = (1 - gain) * self.variance + self.process_noise
        return self.lat, self.lon

    def reset(self) -> None:
        self.lat = None
        self.lon = None
        self.variance = self.measurement_noise


# ---------------------------------------------------------------------------
# Path correction steps
# ---------------------------------------------------------------------------

def _moved(report: PositionReport, lat: float, lon: float) -> PositionReport:
    return dataclasses.replace(report, latitude=lat, longitude=lon)


def median_filter(
    reports: Sequence[PositionReport], window_size: int = MEDIAN_WINDOW_SIZE,
) -> list[PositionReport]:
    """Replace each coordinate with the per-axis median of its neighbourhood.

    The window is forced odd with a minimum of 3. Series shorter than the
    window are returned unchanged. Windows are truncated at the ends.
    """
    window_size = int(window_size)
    if window_size % 2 == 0:
        window_size += 1
    window_size = max(window_size, 3)

    if len(reports) < window_size:
        return list(reports)

    half = window_size // 2
    filtered = []
    for i, report in enumerate(reports):
        window = reports[max(0, i - half): i + half + 1]
        lat = statistics.median_high(r.latitude for r in window)
        lon = statistics.median_high(r.longitude for r in window)
        filtered.append(_moved(report, lat, lon))
    return filtered


def kalman_smooth(
    reports: Iterable[PositionReport],
    process_noise: float = KALMAN_PROCESS_NOISE,
    measurement_noise: float = KALMAN_MEASUREMENT_NOISE,
) -> list[PositionReport]:
    """Run a fresh Kalman filter over the series."""
    kalman = KalmanFilter(process_noise, measurement_noise)
    smoothed = []
    for report in reports:
        lat, lon = kalman.filter(report.latitude, report.longitude)
        smoothed.append(_moved(report, lat, lon))
    return smoothed


PathStep = Callable[[list[PositionReport]], list[PositionReport]]


def default_steps(thresholds: dict | None = None) -> list[PathStep]:
    """Median then Kalman, configured from the thresholds dict."""
    window = int((thresholds or {}).get("median_window_size", MEDIAN_WINDOW_SIZE))
    q = float((thresholds or {}).get("kalman_process_noise", KALMAN_PROCESS_NOISE))
    r = float((thresholds or {}).get("kalman_measurement_noise", KALMAN_MEASUREMENT_NOISE))
    return [
        lambda pts: median_filter(pts, window),
        lambda pts: kalman_smooth(pts, q, r),
    ]


def correct_path(
    reports: Iterable[PositionReport],
    steps: Optional[Sequence[PathStep]] = None,
    thresholds: dict | None = None,
) -> list[PositionReport]:
    """Pass the series through each correction step in order."""
    points = list(reports)
    if not points:
        return points
    for step in (steps if steps is not None else default_steps(thresholds)):
        points = step(points)
    logger.debug("Corrected path of %d points", len(points))
    return points
