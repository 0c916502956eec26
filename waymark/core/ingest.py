"""
Parser dispatch: Dataset -> FeatureCollection | RasterDataset.

Each source kind maps to one parser in `PARSERS`. `parse_dataset()` is the
boundary: it never raises `WaymarkError`, it returns a `ParseOutcome` with
either a value or the typed error, plus the warnings gathered on the way.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from waymark.core.errors import DecodeError, UnsupportedFormatError, WaymarkError
from waymark.core.grouping import GroupingResult, group_files, kind_label
from waymark.io.geojson import read_geojson
from waymark.io.geotiff import read_geotiff
from waymark.io.gpx import read_gpx
from waymark.io.kml import read_kml
from waymark.io.kmz import read_kmz
from waymark.io.shapefile import read_shapefile
from waymark.io.tabular import read_csv, read_excel
from waymark.model import Dataset, FeatureCollection, RasterDataset, UploadedFile

logger = logging.getLogger(__name__)


Parsed = Union[FeatureCollection, RasterDataset]
Parser = Callable[[Dataset, Optional[str], Any], Parsed]


@dataclass
class ParseOutcome:
    collection: Optional[FeatureCollection] = None
    raster: Optional[RasterDataset] = None
    error: Optional[WaymarkError] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def feature_count(self) -> int:
        return len(self.collection.features) if self.collection is not None else 0


def _only_file(dataset: Dataset) -> bytes:
    if not dataset.files:
        raise DecodeError(f"Dataset has no files: {dataset.label}")
    try:
        return dataset.files[0].read()
    except OSError as e:
        raise DecodeError(f"Could not read {dataset.files[0].name} ({e}): {dataset.label}") from e


def _parse_geojson(dataset: Dataset, sheet: Optional[str], trace: Any) -> Parsed:
    return read_geojson(_only_file(dataset), label=dataset.label, trace=trace)


def _parse_kml(dataset: Dataset, sheet: Optional[str], trace: Any) -> Parsed:
    return read_kml(_only_file(dataset), label=dataset.label, trace=trace)


def _parse_kmz(dataset: Dataset, sheet: Optional[str], trace: Any) -> Parsed:
    return read_kmz(_only_file(dataset), label=dataset.label, trace=trace)


def _parse_gpx(dataset: Dataset, sheet: Optional[str], trace: Any) -> Parsed:
    return read_gpx(_only_file(dataset), label=dataset.label, trace=trace)


def _parse_csv(dataset: Dataset, sheet: Optional[str], trace: Any) -> Parsed:
    return read_csv(_only_file(dataset), label=dataset.label, trace=trace)


def _parse_excel(dataset: Dataset, sheet: Optional[str], trace: Any) -> Parsed:
    return read_excel(_only_file(dataset), label=dataset.label, sheet=sheet, trace=trace)


def _parse_geotiff(dataset: Dataset, sheet: Optional[str], trace: Any) -> Parsed:
    return read_geotiff(_only_file(dataset), label=dataset.label, trace=trace)


def _parse_shapefile(dataset: Dataset, sheet: Optional[str], trace: Any) -> Parsed:
    if len(dataset.files) == 1 and dataset.files[0].extension == "zip":
        return read_shapefile(zip_bytes=_only_file(dataset), label=dataset.label, trace=trace)
    parts = []
    for f in dataset.files:
        try:
            parts.append((f.name, f.read()))
        except OSError as e:
            raise DecodeError(f"Could not read {f.name} ({e}): {dataset.label}") from e
    return read_shapefile(files=parts, label=dataset.label, trace=trace)


PARSERS: Dict[str, Parser] = {
    "shapefile": _parse_shapefile,
    "geojson": _parse_geojson,
    "kml": _parse_kml,
    "kmz": _parse_kmz,
    "gpx": _parse_gpx,
    "csv": _parse_csv,
    "excel": _parse_excel,
    "geotiff": _parse_geotiff,
}


def parse_dataset(
    dataset: Dataset,
    *,
    sheet: Optional[str] = None,
    trace: Any = None,
    force: bool = False,
) -> ParseOutcome:
    """
    Parse a dataset's files and attach the result to the dataset.

    A dataset that is already parsed is returned as-is unless `force` is set
    or a different Excel sheet is requested.
    """
    current_sheet = dataset.collection.metadata.extra.get("active_sheet") if dataset.collection else None
    if dataset.is_parsed and not force and (sheet is None or sheet == current_sheet):
        return _outcome(dataset)

    parser = PARSERS.get(dataset.kind)
    try:
        if parser is None:
            raise UnsupportedFormatError(f"No parser for {kind_label(dataset.kind)} files: {dataset.label}")
        parsed = parser(dataset, sheet, trace)
    except WaymarkError as e:
        logger.warning("%s: %s", dataset.label, e.message)
        if trace is not None:
            trace.emit({"event": "ingest.dataset", "label": dataset.label, "kind": dataset.kind, "error": e.to_dict()})
        return ParseOutcome(error=e, warnings=list(dataset.warnings))

    if isinstance(parsed, RasterDataset):
        dataset.raster, dataset.collection = parsed, None
    else:
        dataset.collection, dataset.raster = parsed, None

    outcome = _outcome(dataset)
    if trace is not None:
        trace.emit(
            {
                "event": "ingest.dataset",
                "label": dataset.label,
                "kind": dataset.kind,
                "features": outcome.feature_count,
                "dropped": dataset.collection.metadata.dropped_count if dataset.collection else 0,
                "warnings": len(outcome.warnings),
            }
        )
    logger.info("%s: parsed %s, %d feature(s)", dataset.label, dataset.kind, outcome.feature_count)
    return outcome


def _outcome(dataset: Dataset) -> ParseOutcome:
    warnings = list(dataset.warnings)
    if dataset.collection is not None:
        warnings.extend(dataset.collection.metadata.warnings)
    return ParseOutcome(collection=dataset.collection, raster=dataset.raster, warnings=warnings)


@dataclass
class IngestReport:
    datasets: List[Dataset]
    errors: List[str]
    outcomes: Dict[str, ParseOutcome]


def ingest_files(files: Iterable[UploadedFile], *, trace: Any = None) -> IngestReport:
    """Group uploads into datasets and parse each one."""
    grouped: GroupingResult = group_files(files)
    outcomes = {ds.uid: parse_dataset(ds, trace=trace) for ds in grouped.datasets}
    return IngestReport(datasets=grouped.datasets, errors=list(grouped.errors), outcomes=outcomes)
