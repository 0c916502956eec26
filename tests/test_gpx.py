"""Tests for the GPX adapter (waymark/io/gpx.py)."""

import xml.etree.ElementTree as ET

import pytest

from waymark.core.errors import DecodeError, InputShapeError
from waymark.io.gpx import GPX_NS, read_gpx, write_gpx
from waymark.model import Feature, FeatureCollection

NS = {"g": GPX_NS}

SAMPLE = f"""<?xml version="1.0" encoding="UTF-8"?>
<gpx xmlns="{GPX_NS}" version="1.1" creator="unit-test" xmlns:x="urn:ext">
  <metadata><name>Trip</name></metadata>
  <wpt lat="45.0" lon="-110.0">
    <ele>2100.5</ele>
    <time>2024-07-01T08:00:00Z</time>
    <name>Summit</name>
    <desc>Top</desc>
    <cmt>windy</cmt>
    <sym>Flag</sym>
    <extensions><x:color>red</x:color></extensions>
  </wpt>
  <wpt lat="nope" lon="1"><name>Broken</name></wpt>
  <rte>
    <name>Planned</name>
    <rtept lat="45.0" lon="-110.0"/>
    <rtept lat="45.1" lon="-110.1"/>
  </rte>
  <trk>
    <name>Actual</name>
    <trkseg>
      <trkpt lat="45.0" lon="-110.0"><time>2024-07-01T07:00:00Z</time></trkpt>
      <trkpt lat="45.2" lon="-110.2"/>
      <trkpt lat="95" lon="0"/>
    </trkseg>
    <trkseg>
      <trkpt lat="46.0" lon="-111.0"/>
      <trkpt lat="46.1" lon="-111.1"/>
    </trkseg>
  </trk>
</gpx>
""".encode("utf-8")


class TestReadGPX:
    @pytest.fixture
    def fc(self):
        return read_gpx(SAMPLE, label="trip.gpx")

    def test_features(self, fc):
        assert [f.geometry_type for f in fc.features] == ["Point", "LineString", "MultiLineString"]
        assert fc.metadata.dropped_count == 1
        assert fc.metadata.extra["document_name"] == "Trip"
        assert fc.metadata.extra["creator"] == "unit-test"

    def test_waypoint_properties_and_elevation(self, fc):
        wpt = fc.features[0]
        assert wpt.geometry["coordinates"] == [-110.0, 45.0, 2100.5]
        assert wpt.properties["name"] == "Summit"
        assert wpt.properties["desc"] == "Top"
        assert wpt.properties["cmt"] == "windy"
        assert wpt.properties["sym"] == "Flag"
        assert wpt.properties["time"] == "2024-07-01T08:00:00Z"
        assert wpt.properties["color"] == "red"
        assert wpt.properties["_gpxType"] == "wpt"

    def test_route_type_recorded(self, fc):
        assert fc.features[1].properties["_gpxType"] == "rte"

    def test_track_segments_and_first_point_time(self, fc):
        trk = fc.features[2]
        assert len(trk.geometry["coordinates"]) == 2
        assert trk.properties["time"] == "2024-07-01T07:00:00Z"
        assert any("1 track/route point(s) skipped" in w for w in fc.metadata.warnings)


@pytest.mark.parametrize("data,exc", [(b" ", DecodeError), (b"<gpx>", DecodeError), (b"<kml/>", InputShapeError)])
def test_read_errors(data, exc):
    with pytest.raises(exc):
        read_gpx(data)


def _fc(features):
    return FeatureCollection.create(features, label="export", source_kind="geojson")


class TestWriteGPX:
    def test_geometry_mapping(self):
        fc = _fc(
            [
                Feature({"type": "Point", "coordinates": [1, 2, 30]}, {"name": "P", "time": "2024-01-01T00:00:00Z"}),
                Feature({"type": "MultiPoint", "coordinates": [[1, 2], [3, 4]]}, {"name": "M"}),
                Feature({"type": "LineString", "coordinates": [[0, 0], [1, 1]]}, {"name": "L"}),
                Feature({"type": "Polygon", "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 0]]]}, {"name": "Poly"}),
            ]
        )
        root = ET.fromstring(write_gpx(fc))
        wpts = root.findall("g:wpt", NS)
        assert [w.find("g:name", NS).text for w in wpts] == ["P", "M-1", "M-2"]
        assert wpts[0].get("lat") == "2" and wpts[0].get("lon") == "1"
        assert wpts[0].find("g:ele", NS).text == "30"
        assert wpts[0].find("g:time", NS).text == "2024-01-01T00:00:00Z"
        trks = root.findall("g:trk", NS)
        assert [t.find("g:name", NS).text for t in trks] == ["L", "Poly"]
        assert len(trks[1].findall("g:trkseg/g:trkpt", NS)) == 4
        meta = root.find("g:metadata", NS)
        assert meta.find("g:name", NS).text == "export"
        assert meta.find("g:time", NS).text.endswith("Z")

    def test_requires_an_encodable_feature(self):
        with pytest.raises(InputShapeError):
            write_gpx(_fc([]))

    def test_skipped_features_warn(self):
        fc = FeatureCollection.create(
            [Feature(None, {}), Feature({"type": "Point", "coordinates": [1, 2]}, {})], label="x", source_kind="csv"
        )
        warnings = []
        write_gpx(fc, warnings=warnings)
        assert warnings and "1 feature(s) skipped" in warnings[0]


def test_roundtrip_keeps_routes_as_routes():
    src = read_gpx(SAMPLE)
    root = ET.fromstring(write_gpx(src))
    assert len(root.findall("g:rte", NS)) == 1
    again = read_gpx(write_gpx(src))
    assert len(again.features) == len(src.features)
    assert [f.geometry for f in again.features] == [f.geometry for f in src.features]
