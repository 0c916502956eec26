import json

from waymark.core.trace import MemoryTrace, TraceReader, TraceWriter
from waymark.model import CollectionBuilder


def test_writer_emits_jsonl_with_timestamps(tmp_path):
    path = tmp_path / "trace.jsonl"
    with TraceWriter(path) as trace:
        trace.emit({"event": "run.start", "command": "convert"})
        trace.emit({"event": "export.artifact", "ts": "fixed", "bytes": 10})
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["event"] == "run.start"
    assert "ts" in first
    assert json.loads(lines[1])["ts"] == "fixed"


def test_close_is_idempotent(tmp_path):
    trace = TraceWriter(tmp_path / "t.jsonl")
    trace.close()
    trace.close()


def test_reader_filters_by_event(tmp_path):
    path = tmp_path / "trace.jsonl"
    with TraceWriter(path) as trace:
        trace.emit({"event": "a", "n": 1})
        trace.emit({"event": "b", "n": 2})
        trace.emit({"event": "a", "n": 3})
    assert [r["n"] for r in TraceReader(path, event="a")] == [1, 3]
    assert len(list(TraceReader(path))) == 3


def test_dropped_features_are_traced():
    trace = MemoryTrace()
    builder = CollectionBuilder("bad", "geojson", trace=trace)
    builder.add({"type": "Point", "coordinates": [500, 0]}, {}, index=0)
    builder.add(None, {}, index=1)
    fc = builder.build()
    assert fc.metadata.dropped_count == 2
    events = trace.of("ingest.feature.dropped")
    assert [e["label"] for e in events] == ["bad", "bad"]
    assert "feature 1: missing geometry" in events[1]["reason"]


def test_memory_trace_serialises_values():
    trace = MemoryTrace()
    trace.emit({"event": "x", "path": object()})
    assert isinstance(trace.events[0]["path"], str)
