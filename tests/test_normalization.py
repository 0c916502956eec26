"""Tests for waymark/core/normalization.py."""

import pytest

from waymark.core.normalization import (
    detect_time_fields,
    epoch_ms_to_iso,
    iso8601_to_epoch_ms,
    normalize_entities,
    normalize_name,
    to_epoch_ms,
    trim_property_keys,
)


def test_normalize_entities_double_escaped():
    assert normalize_entities("Bob&amp;apos;s") == "Bob's"
    assert normalize_entities(None) == ""


def test_normalize_name():
    assert normalize_name("  Camp &amp; Lake ") == "Camp & Lake"


def test_trim_property_keys_first_wins():
    assert trim_property_keys({" name ": "a", "name": "b", "x": 1}) == {"name": "a", "x": 1}
    assert trim_property_keys(None) == {}


class TestTimestamps:
    def test_iso_z(self):
        assert iso8601_to_epoch_ms("1970-01-01T00:00:01Z") == 1000

    def test_iso_offset(self):
        assert iso8601_to_epoch_ms("1970-01-01T01:00:00+01:00") == 0

    def test_iso_date_only_is_utc_midnight(self):
        assert iso8601_to_epoch_ms("1970-01-02") == 86_400_000

    def test_iso_space_separator(self):
        assert iso8601_to_epoch_ms("1970-01-01 00:00:02") == 2000

    def test_iso_rejects_words(self):
        assert iso8601_to_epoch_ms("yesterday") is None
        assert iso8601_to_epoch_ms("") is None

    @pytest.mark.parametrize(
        "value,expected",
        [(1000, 1000.0), (2.5, 2.5), ("1970-01-01T00:00:01Z", 1000.0), (None, None), (True, None), ("x", None), (float("nan"), None)],
    )
    def test_to_epoch_ms(self, value, expected):
        assert to_epoch_ms(value) == expected

    def test_epoch_ms_to_iso(self):
        assert epoch_ms_to_iso(0) == "1970-01-01T00:00:00Z"


class TestDetectTimeFields:
    def test_iso_majority(self):
        props = [
            {"when": "2024-01-01T00:00:00Z", "name": "a"},
            {"when": "2024-01-02", "name": "b"},
            {"when": "not a date", "name": "c"},
            {"when": None, "name": "d"},
        ]
        assert detect_time_fields(props) == ["when"]

    def test_numeric_with_temporal_key(self):
        props = [{"created_at": 1700000000000, "count": 3}, {"created_at": 1700000001000, "count": 4}]
        assert detect_time_fields(props) == ["created_at"]

    def test_numeric_without_temporal_key(self):
        assert detect_time_fields([{"elevation": 100}]) == []

    def test_first_seen_order(self):
        props = [{"b_time": 1, "a_date": "2024-01-01"}]
        assert detect_time_fields(props) == ["b_time", "a_date"]
