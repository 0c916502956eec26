"""Tests for the GeoJSON adapter (waymark/io/geojson.py)."""

import json

import pytest

from waymark.core.errors import DecodeError, InputShapeError
from waymark.core.trace import MemoryTrace
from waymark.io.geojson import read_geojson, write_geojson


def _bytes(obj):
    return json.dumps(obj).encode("utf-8")


class TestReadGeoJSON:
    def test_bare_geometry_is_wrapped(self):
        fc = read_geojson(b'{"type":"Point","coordinates":[1,2]}')
        assert len(fc.features) == 1
        feature = fc.features[0]
        assert feature.properties == {}
        assert feature.geometry == {"type": "Point", "coordinates": [1, 2]}

    def test_bare_feature_is_wrapped(self):
        fc = read_geojson(_bytes({"type": "Feature", "id": 7, "geometry": {"type": "Point", "coordinates": [3, 4]}, "properties": {"a": 1}}))
        assert fc.features[0].id == 7
        assert fc.features[0].properties == {"a": 1}

    def test_feature_collection(self):
        fc = read_geojson(
            _bytes(
                {
                    "type": "FeatureCollection",
                    "name": "sites",
                    "features": [
                        {"type": "Feature", "geometry": {"type": "Point", "coordinates": [0, 1]}, "properties": {" name ": "A"}},
                        {"type": "Feature", "geometry": {"type": "LineString", "coordinates": [[0, 0], [2, 2]]}, "properties": None},
                    ],
                }
            ),
            label="sites.geojson",
        )
        assert [f.geometry_type for f in fc.features] == ["Point", "LineString"]
        assert fc.features[0].properties == {"name": "A"}
        assert fc.features[1].properties == {}
        assert fc.metadata.extra["name"] == "sites"
        assert fc.bbox.to_list() == [0, 0, 2, 2]
        assert fc.metadata.geometry_types == {"Point": 1, "LineString": 1}

    def test_bad_features_are_dropped_with_warnings(self):
        trace = MemoryTrace()
        fc = read_geojson(
            _bytes(
                {
                    "type": "FeatureCollection",
                    "features": [
                        {"type": "Feature", "geometry": {"type": "Point", "coordinates": [200, 0]}, "properties": {}},
                        {"type": "Feature", "geometry": None, "properties": {}},
                        "junk",
                        {"type": "Feature", "geometry": {"type": "Point", "coordinates": [1, 1]}, "properties": {}},
                    ],
                }
            ),
            trace=trace,
        )
        assert len(fc.features) == 1
        assert fc.metadata.dropped_count == 3
        assert len(fc.metadata.warnings) == 3
        assert len(trace.of("ingest.feature.dropped")) == 3

    def test_features_must_be_array(self):
        with pytest.raises(InputShapeError):
            read_geojson(_bytes({"type": "FeatureCollection", "features": {}}))

    def test_unknown_top_level(self):
        with pytest.raises(InputShapeError):
            read_geojson(_bytes({"type": "Topology"}))
        with pytest.raises(InputShapeError):
            read_geojson(b"[1, 2]")

    def test_invalid_json(self):
        with pytest.raises(DecodeError):
            read_geojson(b"{not json")

    def test_empty_file(self):
        with pytest.raises(DecodeError):
            read_geojson(b"   ")

    def test_bom_is_accepted(self):
        fc = read_geojson(b"\xef\xbb\xbf" + b'{"type":"Point","coordinates":[1,2]}')
        assert len(fc.features) == 1


def test_write_geojson_pretty_with_optional_metadata():
    fc = read_geojson(b'{"type":"Point","coordinates":[1,2]}', label="pt")
    plain = write_geojson(fc)
    assert b"\n  " in plain
    obj = json.loads(plain)
    assert obj["type"] == "FeatureCollection"
    assert obj["bbox"] == [1, 2, 1, 2]
    assert "metadata" not in obj

    with_meta = json.loads(write_geojson(fc, include_metadata=True))
    assert with_meta["metadata"]["label"] == "pt"
    assert with_meta["metadata"]["source_kind"] == "geojson"
