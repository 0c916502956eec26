"""Tests for the dataset registry (waymark/core/workspace.py)."""

import json

import pytest

from waymark.core.export import ExportConfig
from waymark.core.symbology import Symbology
from waymark.core.trace import MemoryTrace
from waymark.core.workspace import Workspace
from waymark.model import UploadedFile


def _geojson(name, times):
    features = [
        {"type": "Feature", "geometry": {"type": "Point", "coordinates": [i, i]}, "properties": {"t": t, "name": f"{name}-{i}"}}
        for i, t in enumerate(times)
    ]
    payload = json.dumps({"type": "FeatureCollection", "features": features}).encode()
    return UploadedFile.from_bytes(f"{name}.geojson", payload)


@pytest.fixture
def ws():
    workspace = Workspace()
    errors = workspace.add_uploads([_geojson("a", [10, 20, 30]), _geojson("b", [15, 25, 35])])
    assert errors == []
    return workspace


def _uid(ws, label):
    return next(ds.uid for ds in ws.datasets() if ds.label == label)


class TestWorkspace:
    def test_registration(self, ws):
        assert len(ws) == 2
        uid = _uid(ws, "a.geojson")
        assert uid in ws
        assert not ws.get(uid).is_parsed

    def test_unknown_uid(self, ws):
        with pytest.raises(KeyError):
            ws.get("nope")

    def test_collection_parses_lazily(self, ws):
        uid = _uid(ws, "a.geojson")
        fc = ws.collection(uid)
        assert len(fc.features) == 3
        assert ws.get(uid).is_parsed
        assert ws.collection(uid) is fc

    def test_uids_are_stable_across_additions(self, ws):
        before = {ds.label: ds.uid for ds in ws.datasets()}
        ws.add_uploads([_geojson("c", [1])])
        after = {ds.label: ds.uid for ds in ws.datasets()}
        assert {k: after[k] for k in before} == before
        assert len(ws) == 3

    def test_snapshot_is_isolated_from_later_writes(self, ws):
        snap = ws.snapshot()
        ws.remove(_uid(ws, "a.geojson"))
        assert len(snap) == 2
        assert len(ws) == 1

    def test_remove_clears_parsed_state(self, ws):
        uid = _uid(ws, "a.geojson")
        ws.collection(uid)
        ws.set_style(uid, Symbology.single("#ff0000"))
        ds = ws.remove(uid)
        assert ds.collection is None and ds.style is None
        assert uid not in ws

    def test_visibility(self, ws):
        ws.set_visible(_uid(ws, "b.geojson"), False)
        assert [fc.label for fc in ws.visible_collections()] == ["a.geojson"]

    def test_time_fields(self, ws):
        assert ws.time_fields() == ["t"]

    def test_filtered(self, ws):
        a, b = ws.filtered("t", "cumulative", cursor=22)
        assert [f.properties["t"] for f in a.features] == [10, 20]
        assert [f.properties["t"] for f in b.features] == [15]

    def test_export_uses_dataset_style(self, ws):
        uid = _uid(ws, "a.geojson")
        ws.set_style(uid, Symbology.single("#ff0000"))
        outcome = ws.export(uid, ExportConfig(format="kml"))
        assert outcome.ok
        assert b'<Style id="style-ff0000">' in outcome.artifact.data

    def test_trace_is_shared(self):
        trace = MemoryTrace()
        workspace = Workspace(trace=trace)
        workspace.add_uploads([_geojson("a", [1])])
        uid = workspace.datasets()[0].uid
        workspace.export(uid, ExportConfig(format="csv"))
        assert [e["event"] for e in trace.events] == ["ingest.dataset", "export.artifact"]

    def test_grouping_errors_are_returned(self):
        workspace = Workspace()
        errors = workspace.add_uploads([UploadedFile.from_bytes("lonely.dbf", b"\x00")])
        assert errors and "missing .shp" in errors[0]
        assert len(workspace) == 0
