"""Tests for tabular coordinate recovery (waymark/core/coordinates.py)."""

import pytest

from waymark.core.coordinates import (
    detect_coordinate_columns,
    geometry_from_row,
    parse_coordinate_pair,
    parse_wkt,
    rows_to_builder,
    to_float,
)
from waymark.model import CollectionBuilder


class TestDetectColumns:
    def test_exact_lat_lng(self):
        cols = detect_coordinate_columns(["Name", "Latitude", "Longitude"])
        assert (cols.lat, cols.lng, cols.match) == ("Latitude", "Longitude", "exact")

    def test_combined_wins(self):
        cols = detect_coordinate_columns(["lat", "lon", "WKT"])
        assert cols.combined == "WKT"
        assert cols.match == "combined"

    def test_exported_wkt_column_beats_geometry_property(self):
        cols = detect_coordinate_columns(["name", "geometry", "geom_wkt"])
        assert cols.combined == "geom_wkt"

    def test_headers_are_trimmed(self):
        cols = detect_coordinate_columns([" lat ", " lng"])
        assert cols.lat == " lat "
        assert cols.found

    def test_fuzzy_match(self):
        cols = detect_coordinate_columns(["site", "lat1", "lon1"])
        assert cols.match == "fuzzy"
        assert (cols.lat, cols.lng) == ("lat1", "lon1")

    def test_short_candidates_are_not_fuzzy_matched(self):
        cols = detect_coordinate_columns(["yield", "xray"])
        assert not cols.found

    def test_nothing_found(self):
        cols = detect_coordinate_columns(["a", "b"])
        assert not cols.found
        assert cols.to_dict()["match"] == "none"


class TestParsing:
    def test_wkt_point(self):
        assert parse_wkt("POINT (30 10)") == {"type": "Point", "coordinates": [30.0, 10.0]}

    def test_wkt_polygon(self):
        geom = parse_wkt("POLYGON ((30 10, 40 40, 20 40, 10 20, 30 10))")
        assert geom["type"] == "Polygon"
        assert geom["coordinates"][0][0] == [30.0, 10.0]

    def test_wkt_rejects_unsupported_and_garbage(self):
        assert parse_wkt("MULTILINESTRING ((0 0, 1 1))") is None
        assert parse_wkt("POINT (oops)") is None
        assert parse_wkt("POINT EMPTY") is None
        assert parse_wkt(12) is None

    def test_pair_lat_first(self):
        assert parse_coordinate_pair("45.5, -122.6") == (-122.6, 45.5)

    def test_pair_lng_first(self):
        assert parse_coordinate_pair("-122.6, 45.5") == (-122.6, 45.5)

    def test_pair_space_separated(self):
        assert parse_coordinate_pair("10 20") == (20.0, 10.0)

    def test_pair_none(self):
        assert parse_coordinate_pair("no numbers") is None

    @pytest.mark.parametrize("value,expected", [("1.5", 1.5), (2, 2.0), ("", None), (True, None), ("abc", None), ("nan", None)])
    def test_to_float(self, value, expected):
        assert to_float(value) == expected


def test_geometry_from_row_lat_lng():
    cols = detect_coordinate_columns(["lat", "lng"])
    assert geometry_from_row({"lat": "1", "lng": "2"}, cols) == {"type": "Point", "coordinates": [2.0, 1.0]}
    assert geometry_from_row({"lat": "", "lng": "2"}, cols) is None


def test_rows_to_builder_drops_bad_rows_and_records_columns():
    builder = CollectionBuilder("t.csv", "csv")
    rows = [
        {"name": "a", "lat": "10", "lon": "20"},
        {"name": "b", "lat": "x", "lon": "20"},
        {"name": "c", "lat": "95", "lon": "20"},
    ]
    rows_to_builder(rows, builder)
    fc = builder.build()
    assert len(fc.features) == 1
    assert fc.metadata.dropped_count == 2
    assert fc.metadata.extra["coordinate_columns"]["lat"] == "lat"
    assert fc.metadata.extra["row_count"] == 3


def test_rows_to_builder_without_coordinates_warns():
    builder = CollectionBuilder("t.csv", "csv")
    rows_to_builder([{"a": 1}], builder)
    fc = builder.build()
    assert fc.features == []
    assert any("No coordinate columns" in w for w in fc.metadata.warnings)
