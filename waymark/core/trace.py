"""
Machine-parseable tracing for ingest and export.

Trace files are JSON Lines (one JSON object per line). They are not meant for
human reading; they are for replay and diffing between runs.

Events emitted by the pipeline:
- ingest.dataset         one per parsed dataset (kind, features, dropped, error)
- ingest.feature.dropped one per feature rejected by validation
- ingest.raster          one per decoded GeoTIFF
- export.artifact        one per export (format, filename, bytes, warnings)
- raster.tile.failed     one per basemap tile that could not be used
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


def _default(o: Any) -> Any:
    if is_dataclass(o) and not isinstance(o, type):
        return asdict(o)
    return str(o)


class TraceWriter:
    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._fh = self._path.open("w", encoding="utf-8")

    @property
    def path(self) -> Path:
        return self._path

    def emit(self, event: Dict[str, Any]) -> None:
        # Add a timestamp if caller didn't.
        if "ts" not in event:
            event = dict(event)
            event["ts"] = datetime.now(timezone.utc).isoformat()
        self._fh.write(json.dumps(event, ensure_ascii=False, default=_default) + "\n")
        self._fh.flush()

    def close(self) -> None:
        if self._fh.closed:
            return
        try:
            self._fh.close()
        except OSError as e:
            logger.warning("Could not close trace file %s: %s", self._path, e)

    def __enter__(self) -> "TraceWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class MemoryTrace:
    """In-memory trace sink with the same `emit` contract, for tests and previews."""

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def emit(self, event: Dict[str, Any]) -> None:
        self.events.append(json.loads(json.dumps(event, default=_default)))

    def of(self, name: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e.get("event") == name]


class TraceReader:
    def __init__(self, path: str | Path, event: Optional[str] = None):
        self._path = Path(path)
        self._event = event

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        with self._path.open("r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                record = json.loads(line)
                if self._event is None or record.get("event") == self._event:
                    yield record
