"""Tests for movement/stoppage segmentation over full report histories."""

import datetime

import pytest

from analysis import (
    MetricsResult,
    MovementSegmentAnalyzer,
    empty_result,
    format_hhmmss,
)
from tests.gps_test_fixtures import FARM_POLYGON, FARM_TRACE, as_coordinate_pairs

T0 = datetime.datetime(2024, 5, 6, 7, 0, 0)


def _at(seconds):
    return T0 + datetime.timedelta(seconds=seconds)


def _rec(seconds, speed, status=1, lat=35.0, lon=51.0):
    return {"latitude": lat, "longitude": lon, "speed": speed, "status": status, "timestamp": _at(seconds)}


def _analyze(records, **kwargs):
    return MovementSegmentAnalyzer(records).analyze(**kwargs)


# =====================================================================
# Formatting and the empty result
# =====================================================================

class TestFormatting:
    def test_hhmmss(self):
        assert format_hhmmss(0) == "00:00:00"
        assert format_hhmmss(3725) == "01:02:05"

    def test_hours_keep_counting_past_a_day(self):
        assert format_hhmmss(90000) == "25:00:00"

    def test_empty_result_shape(self):
        d = empty_result().to_dict()
        assert d["movement_duration_seconds"] == 0
        assert d["movement_duration_formatted"] == "00:00:00"
        assert d["stoppage_duration_formatted"] == "00:00:00"
        assert d["movement_distance_km"] == 0
        assert d["stoppage_count"] == 0
        assert d["average_speed"] == 0
        assert d["total_records"] == 0
        for key in ("device_on_time", "first_movement_time", "start_time", "end_time", "latest_status"):
            assert d[key] is None

    def test_no_records_gives_empty_result(self):
        assert _analyze([]) == MetricsResult()


# =====================================================================
# End-to-end scenarios
# =====================================================================

class TestMovementScenarios:
    def test_four_moving_points(self):
        records = [
            _rec(0, 10, lat=35.000),
            _rec(10, 10, lat=35.002),
            _rec(20, 10, lat=35.004),
            _rec(30, 10, lat=35.006),
        ]
        result = _analyze(records)
        assert result.movement_duration_seconds == 30
        assert result.movement_distance_km > 0
        assert result.stoppage_count == 0
        assert result.average_speed > 0
        assert result.first_movement_time == _at(0)
        assert result.device_on_time == _at(0)
        assert result.latest_status == 1

    def test_average_speed_is_distance_over_moving_time(self):
        records = [_rec(0, 10, lat=35.000), _rec(36, 10, lat=35.001)]
        result = _analyze(records)
        expected = round(result.movement_distance_km / 36 * 3600, 2)
        assert result.average_speed == expected

    def test_speed_without_device_on_is_stopped(self):
        records = [_rec(0, 10, status=0), _rec(120, 10, status=0)]
        result = _analyze(records)
        assert result.movement_duration_seconds == 0
        assert result.stoppage_count == 1
        assert result.stoppage_duration_while_off_seconds == 120
        assert result.device_on_time is None


# =====================================================================
# Stoppage threshold
# =====================================================================

class TestStoppageThreshold:
    def test_59_second_stop_folded_into_movement(self):
        records = [_rec(0, 10), _rec(10, 0), _rec(69, 10), _rec(80, 10)]
        result = _analyze(records)
        assert result.stoppage_count == 0
        assert result.stoppage_duration_seconds == 0
        assert result.movement_duration_seconds == 80
        assert result.ignored_stoppage_count == 1
        assert result.ignored_stoppage_duration_seconds == 59

    def test_60_second_stop_counted(self):
        records = [_rec(0, 10), _rec(10, 0), _rec(70, 10), _rec(80, 10)]
        result = _analyze(records)
        assert result.stoppage_count == 1
        assert result.stoppage_duration_seconds == 60
        assert result.movement_duration_seconds == 20
        assert result.ignored_stoppage_count == 0

    def test_trailing_stop_flushed_at_end(self):
        records = [_rec(0, 10), _rec(10, 0), _rec(100, 0)]
        result = _analyze(records)
        assert result.stoppage_count == 1
        assert result.stoppage_duration_seconds == 90

    def test_threshold_is_configurable(self):
        records = [_rec(0, 10), _rec(10, 0), _rec(70, 10), _rec(80, 10)]
        result = MovementSegmentAnalyzer(records, thresholds={"stoppage_threshold_s": 120}).analyze()
        assert result.stoppage_count == 0
        assert result.movement_duration_seconds == 80

    def test_stoppage_details(self):
        records = [_rec(0, 10), _rec(10, 0, lat=35.001), _rec(70, 10), _rec(80, 10)]
        result = _analyze(records)
        (stop,) = result.stoppages
        assert stop.start_time == _at(10)
        assert stop.end_time == _at(70)
        assert stop.latitude == 35.001
        assert stop.device_on is True
        assert stop.ignored is False
        d = result.to_dict(include_stoppages=True)
        assert d["stoppages"][0]["duration_formatted"] == "00:01:00"


class TestOnOffSplit:
    def test_split_partitions_total_when_status_toggles(self):
        records = [
            _rec(0, 10),
            _rec(10, 0, status=1),
            _rec(40, 0, status=0),
            _rec(100, 0, status=1),
            _rec(130, 0, status=0),
            _rec(160, 10, status=1),
            _rec(170, 10, status=1),
        ]
        result = _analyze(records)
        assert result.stoppage_count == 1
        assert result.stoppage_duration_seconds == 150
        assert result.stoppage_duration_while_on_seconds == 30 + 30
        assert result.stoppage_duration_while_off_seconds == 60 + 30
        assert (
            result.stoppage_duration_while_on_seconds + result.stoppage_duration_while_off_seconds
            == result.stoppage_duration_seconds
        )


# =====================================================================
# Device-on and first-movement timings
# =====================================================================

class TestTimings:
    def test_device_on_at_first_off_to_on_transition(self):
        records = [_rec(0, 0, status=0), _rec(60, 0, status=0), _rec(120, 0, status=1), _rec(180, 0, status=0)]
        assert _analyze(records).device_on_time == _at(120)

    def test_first_movement_needs_three_consecutive_moving_spans(self):
        records = [
            _rec(0, 10), _rec(10, 10), _rec(20, 0),    # two moving spans, then a stop
            _rec(30, 10), _rec(40, 10), _rec(50, 10), _rec(60, 10),
        ]
        assert _analyze(records).first_movement_time == _at(30)

    def test_no_first_movement_when_streak_too_short(self):
        records = [_rec(0, 10), _rec(10, 10), _rec(20, 0)]
        assert _analyze(records).first_movement_time is None

    def test_confirm_count_configurable(self):
        records = [_rec(0, 10), _rec(10, 10), _rec(20, 0)]
        result = MovementSegmentAnalyzer(records, thresholds={"consecutive_movements_to_confirm": 2}).analyze()
        assert result.first_movement_time == _at(0)


# =====================================================================
# Time window and polygon filters
# =====================================================================

class TestFilters:
    def test_superset_window_is_a_no_op(self):
        analyzer = MovementSegmentAnalyzer(FARM_TRACE)
        unbounded = analyzer.analyze()
        windowed = analyzer.analyze(
            start=FARM_TRACE[0]["timestamp"] - datetime.timedelta(days=1),
            end=FARM_TRACE[-1]["timestamp"] + datetime.timedelta(days=1),
        )
        assert windowed == unbounded

    def test_window_bounds_are_inclusive(self):
        records = [_rec(0, 10), _rec(10, 10), _rec(20, 10), _rec(30, 10)]
        result = _analyze(records, start=_at(10), end=_at(20))
        assert result.total_records == 2
        assert result.movement_duration_seconds == 10

    def test_polygon_filter_does_not_bridge_gaps(self):
        inside, outside = (35.005, 51.005), (35.005, 50.995)
        records = [
            _rec(0, 10, lat=inside[0], lon=inside[1]),
            _rec(10, 10, lat=inside[0], lon=inside[1]),
            _rec(20, 10, lat=outside[0], lon=outside[1]),
            _rec(120, 10, lat=inside[0], lon=inside[1]),
            _rec(130, 10, lat=inside[0], lon=inside[1]),
        ]
        result = _analyze(records, polygon=FARM_POLYGON)
        assert result.total_records == 4
        assert result.movement_duration_seconds == 20

    def test_degenerate_polygon_matches_nothing(self):
        result = _analyze(FARM_TRACE, polygon=[[51.0, 35.0], [51.01, 35.0]])
        assert result == empty_result()

    def test_coordinate_pair_records_analyse_the_same(self):
        assert _analyze(as_coordinate_pairs(FARM_TRACE)) == _analyze(FARM_TRACE)

    def test_out_of_order_input_sorted(self):
        shuffled = list(reversed(FARM_TRACE))
        assert _analyze(shuffled) == _analyze(FARM_TRACE)


# =====================================================================
# Full farm trace
# =====================================================================

class TestFarmTrace:
    @pytest.fixture
    def result(self):
        return _analyze(FARM_TRACE)

    def test_stoppages(self, result):
        assert result.stoppage_count == 3
        assert result.stoppage_duration_seconds == 630 + 300 + 2100
        assert result.stoppage_duration_while_on_seconds == 1230
        assert result.stoppage_duration_while_off_seconds == 1800

    def test_movement(self, result):
        assert result.movement_duration_seconds == 1170
        assert result.movement_distance_km > 1.0
        assert result.max_speed == 15.0

    def test_timings(self, result):
        assert result.device_on_time == T0 + datetime.timedelta(minutes=10)
        assert result.first_movement_time == T0 + datetime.timedelta(minutes=10, seconds=30)
        assert result.start_time == FARM_TRACE[0]["timestamp"]
        assert result.end_time == FARM_TRACE[-1]["timestamp"]
        assert result.latest_status == 0
        assert result.total_records == len(FARM_TRACE)

    def test_durations_cover_the_whole_trace(self, result):
        span = (FARM_TRACE[-1]["timestamp"] - FARM_TRACE[0]["timestamp"]).total_seconds()
        assert result.movement_duration_seconds + result.stoppage_duration_seconds == span

    def test_to_dict_formats(self, result):
        d = result.to_dict()
        assert d["movement_duration_formatted"] == "00:19:30"
        assert d["stoppage_duration_formatted"] == "00:50:30"
        assert d["device_on_time"] == "2024-05-06T07:10:00"
