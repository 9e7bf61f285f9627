"""
Unit Tests for Time Utilities

Run with:
    pytest tests/unit/test_time.py -v
"""

from datetime import datetime, timezone

import pytest

from core.utils.time import current_utc_datetime, parse_duration, to_utc_datetime


class TestToUTCDatetime:
    """Tests for to_utc_datetime"""

    def test_milliseconds(self):
        """Verify millisecond timestamps are detected"""
        assert to_utc_datetime(1704110400000) == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_seconds(self):
        """Verify second timestamps are accepted"""
        assert to_utc_datetime(1704110400) == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_negative(self):
        """Verify negative timestamps are rejected"""
        with pytest.raises(ValueError):
            to_utc_datetime(-1)

    def test_current_is_aware(self):
        """Verify the current time carries UTC tzinfo"""
        assert current_utc_datetime().tzinfo == timezone.utc


class TestParseDuration:
    """Tests for parse_duration"""

    @pytest.mark.parametrize("value,expected", [
        ("5s", 5.0),
        ("250ms", 0.25),
        ("1m30s", 90.0),
        ("1h", 3600.0),
        ("-1s", -1.0),
        ("0", 0.0),
        (2, 2.0),
        (0.5, 0.5),
    ])
    def test_valid(self, value, expected):
        """Verify numbers and unit strings convert to seconds"""
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["", "5", "abc", "5x", "1s junk"])
    def test_invalid(self, value):
        """Verify malformed durations raise ValueError"""
        with pytest.raises(ValueError):
            parse_duration(value)
