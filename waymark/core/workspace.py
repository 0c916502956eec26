"""
Dataset registry.

The workspace is the single writer of the uid -> Dataset map. Readers
(previewers, exporters, the temporal filter) take a `snapshot()`, which is a
copy of the map, so later writes do not change what they see.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from waymark.core.export import ExportConfig, ExportOutcome, run_export
from waymark.core.grouping import group_files
from waymark.core.ingest import ParseOutcome, parse_dataset
from waymark.core.symbology import Symbology
from waymark.core.temporal import filter_collections
from waymark.model import Dataset, FeatureCollection, UploadedFile

logger = logging.getLogger(__name__)


class Workspace:
    def __init__(self, *, trace: Any = None):
        self._datasets: Dict[str, Dataset] = {}
        self.trace = trace

    def __len__(self) -> int:
        return len(self._datasets)

    def __contains__(self, uid: object) -> bool:
        return uid in self._datasets

    def add_uploads(self, files: Iterable[UploadedFile]) -> List[str]:
        """
        Group and register uploads. Returns the grouping errors; the new
        datasets are registered unparsed and parse on first use.
        """
        result = group_files(files)
        for ds in result.datasets:
            self._datasets[ds.uid] = ds
            logger.debug("registered %s (%s) as %s", ds.label, ds.kind, ds.uid)
        return list(result.errors)

    def get(self, uid: str) -> Dataset:
        try:
            return self._datasets[uid]
        except KeyError:
            raise KeyError(f"No dataset with uid {uid}") from None

    def datasets(self) -> List[Dataset]:
        return list(self._datasets.values())

    def parse(self, uid: str, *, sheet: Optional[str] = None, force: bool = False) -> ParseOutcome:
        return parse_dataset(self.get(uid), sheet=sheet, trace=self.trace, force=force)

    def collection(self, uid: str) -> Optional[FeatureCollection]:
        """The parsed collection, parsing lazily; None for raster or failed datasets."""
        return self.parse(uid).collection

    def remove(self, uid: str) -> Dataset:
        """Drop a dataset together with its parsed collection, raster and style."""
        ds = self._datasets.pop(uid)
        ds.collection = None
        ds.raster = None
        ds.style = None
        return ds

    def set_style(self, uid: str, style: Optional[Symbology]) -> None:
        self.get(uid).style = style

    def set_visible(self, uid: str, visible: bool) -> None:
        self.get(uid).visible = bool(visible)

    def snapshot(self) -> Dict[str, Dataset]:
        return dict(self._datasets)

    def visible_collections(self) -> List[FeatureCollection]:
        """Parsed collections of visible datasets, in registration order."""
        out = []
        for ds in self.snapshot().values():
            if not ds.visible:
                continue
            fc = self.collection(ds.uid)
            if fc is not None:
                out.append(fc)
        return out

    def filtered(
        self,
        field: Optional[str],
        mode: str = "cumulative",
        range_start: Optional[float] = None,
        range_end: Optional[float] = None,
        cursor: Optional[float] = None,
    ) -> List[FeatureCollection]:
        return filter_collections(self.visible_collections(), field, mode, range_start, range_end, cursor)

    def time_fields(self) -> List[str]:
        """Union of candidate time fields over visible datasets, first-seen order."""
        seen: Dict[str, None] = {}
        for fc in self.visible_collections():
            for name in fc.metadata.time_fields:
                seen.setdefault(name, None)
        return list(seen)

    def export(self, uid: str, config: ExportConfig, *, transport: Any = None) -> ExportOutcome:
        return run_export(self.get(uid), config, transport=transport, trace=self.trace)
