"""
Canonical in-memory data model for Waymark.

This is the normal form shared between every reader and every writer:
- readers turn Shapefile / GeoJSON / KML / KMZ / GPX / CSV / Excel bytes into a
  `FeatureCollection` (or a `RasterDataset` for GeoTIFF)
- writers turn a `FeatureCollection` into GeoJSON / CSV / KML / KMZ / GPX /
  Shapefile / PNG / GeoTIFF bytes

Geometries are GeoJSON-shaped dicts. Properties are plain dicts whose keys are
trimmed on ingest.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional, Union

from waymark.core.errors import WaymarkError
from waymark.core.geometry import BBox, compute_bbox, geometry_histogram, validate_geometry
from waymark.core.normalization import detect_time_fields, trim_property_keys
from waymark.core.symbology import Symbology


SourceKind = Literal[
    "shapefile",
    "geojson",
    "kml",
    "kmz",
    "gpx",
    "csv",
    "excel",
    "geotiff",
    "unknown",
]


@dataclass
class Feature:
    geometry: Optional[Dict[str, Any]]
    properties: Dict[str, Any] = field(default_factory=dict)
    id: Optional[Union[str, int]] = None

    @property
    def geometry_type(self) -> Optional[str]:
        if self.geometry:
            return self.geometry.get("type")
        return None

    def to_geojson(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": "Feature"}
        if self.id is not None:
            out["id"] = self.id
        out["geometry"] = self.geometry
        out["properties"] = self.properties
        return out


@dataclass
class CollectionMetadata:
    label: str
    source_kind: str
    bbox: Optional[BBox] = None
    geometry_types: Dict[str, int] = field(default_factory=dict)
    time_fields: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    dropped_count: int = 0
    # Reader-specific detail: detected CSV columns, Excel sheets, shapefile layers, ...
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "source_kind": self.source_kind,
            "bbox": self.bbox.as_dict() if self.bbox else None,
            "geometry_types": dict(self.geometry_types),
            "time_fields": list(self.time_fields),
            "warnings": list(self.warnings),
            "dropped_count": self.dropped_count,
            "extra": copy.deepcopy(self.extra),
        }


@dataclass
class FeatureCollection:
    """
    Ordered features plus metadata.

    Build instances with `FeatureCollection.create()` so the bbox, geometry
    histogram and time-field candidates are computed once from the features.
    """

    features: List[Feature]
    metadata: CollectionMetadata

    @classmethod
    def create(
        cls,
        features: Iterable[Feature],
        *,
        label: str,
        source_kind: str,
        warnings: Optional[List[str]] = None,
        dropped_count: int = 0,
        extra: Optional[Dict[str, Any]] = None,
    ) -> "FeatureCollection":
        feats = list(features)
        geoms = [f.geometry for f in feats]
        meta = CollectionMetadata(
            label=label,
            source_kind=source_kind,
            bbox=compute_bbox(geoms),
            geometry_types=geometry_histogram(geoms),
            time_fields=detect_time_fields(f.properties for f in feats),
            warnings=list(warnings or []),
            dropped_count=dropped_count,
            extra=dict(extra or {}),
        )
        return cls(features=feats, metadata=meta)

    def derive(self, features: Iterable[Feature]) -> "FeatureCollection":
        """A new collection over a subset of features, keeping label and kind."""
        return FeatureCollection.create(
            features,
            label=self.metadata.label,
            source_kind=self.metadata.source_kind,
            extra=self.metadata.extra,
        )

    @property
    def label(self) -> str:
        return self.metadata.label

    @property
    def bbox(self) -> Optional[BBox]:
        return self.metadata.bbox

    def __len__(self) -> int:
        return len(self.features)

    def property_keys(self) -> List[str]:
        """Union of property keys in first-seen order."""
        keys: Dict[str, None] = {}
        for f in self.features:
            for k in f.properties or {}:
                keys.setdefault(k, None)
        return list(keys)

    def to_geojson(self, *, include_metadata: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "type": "FeatureCollection",
            "features": [f.to_geojson() for f in self.features],
        }
        if self.metadata.bbox is not None:
            out["bbox"] = self.metadata.bbox.to_list()
        if include_metadata:
            out["metadata"] = self.metadata.to_dict()
        return out


class CollectionBuilder:
    """
    Accumulates features for one dataset while validating every geometry on the way in.

    Every candidate geometry is validated (finite, in range, well-formed); bad
    features are dropped with a warning instead of failing the whole parse.
    """

    def __init__(self, label: str, source_kind: str, *, trace: Any = None):
        self.label = label
        self.source_kind = source_kind
        self.features: List[Feature] = []
        self.warnings: List[str] = []
        self.dropped = 0
        self.extra: Dict[str, Any] = {}
        self._trace = trace

    def add(
        self,
        geometry: Any,
        properties: Optional[Dict[str, Any]] = None,
        *,
        feature_id: Optional[Union[str, int]] = None,
        index: Optional[int] = None,
    ) -> bool:
        where = f"feature {index}" if index is not None else f"feature {len(self.features) + self.dropped}"
        if geometry is None:
            self.drop(f"{where}: missing geometry")
            return False
        try:
            geom = validate_geometry(geometry)
        except WaymarkError as e:
            self.drop(f"{where}: {e.message}")
            return False
        self.features.append(Feature(geometry=geom, properties=trim_property_keys(properties), id=feature_id))
        return True

    def drop(self, reason: str) -> None:
        self.dropped += 1
        # Cap the stored messages; the counter keeps the true total.
        if len(self.warnings) < 50:
            self.warnings.append(reason)
        if self._trace is not None:
            self._trace.emit({"event": "ingest.feature.dropped", "label": self.label, "reason": reason})

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def build(self) -> FeatureCollection:
        warnings = list(self.warnings)
        if self.dropped > 50:
            warnings.append(f"{self.dropped - 50} more features dropped")
        return FeatureCollection.create(
            self.features,
            label=self.label,
            source_kind=self.source_kind,
            warnings=warnings,
            dropped_count=self.dropped,
            extra=self.extra,
        )


@dataclass
class RasterMetadata:
    width: int
    height: int
    samples_per_pixel: int
    bits_per_sample: List[int] = field(default_factory=list)
    origin: Optional[List[float]] = None
    resolution: Optional[List[float]] = None
    pixel_scale: Optional[List[float]] = None
    tiepoints: Optional[List[float]] = None
    geo_keys: Dict[int, Any] = field(default_factory=dict)
    bbox: Optional[BBox] = None
    driver: str = "GTiff"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "samples_per_pixel": self.samples_per_pixel,
            "bits_per_sample": list(self.bits_per_sample),
            "origin": self.origin,
            "resolution": self.resolution,
            "pixel_scale": self.pixel_scale,
            "tiepoints": self.tiepoints,
            "geo_keys": {str(k): v for k, v in self.geo_keys.items()},
            "bbox": self.bbox.as_dict() if self.bbox else None,
            "driver": self.driver,
        }


@dataclass
class RasterDataset:
    """Decoded GeoTIFF: metadata, a PNG preview and the untouched source bytes."""

    label: str
    metadata: RasterMetadata
    preview_png: bytes
    preview_size: tuple
    source_bytes: bytes
    source_kind: str = "geotiff"


class UploadedFile:
    """
    A named byte source. Grouping only looks at `name`; bytes are read on demand.
    """

    def __init__(self, name: str, size: int, loader: Callable[[], bytes]):
        self.name = name
        self.size = size
        self._loader = loader

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "UploadedFile":
        p = Path(path)
        return cls(p.name, p.stat().st_size, p.read_bytes)

    @classmethod
    def from_bytes(cls, name: str, data: bytes) -> "UploadedFile":
        return cls(name, len(data), lambda: data)

    @property
    def extension(self) -> str:
        return self.name.rsplit(".", 1)[-1].lower() if "." in self.name else ""

    @property
    def stem(self) -> str:
        lower = self.name.lower()
        return lower.rsplit(".", 1)[0] if "." in lower else lower

    def read(self) -> bytes:
        return self._loader()

    def __repr__(self) -> str:
        return f"UploadedFile({self.name!r}, size={self.size})"


@dataclass
class Dataset:
    """
    A user-visible handle over one or more uploaded files.

    `uid` is assigned once when the dataset is registered and never changes;
    parsed collections, styles and symbology are joined on it.
    """

    uid: str
    label: str
    kind: str
    files: List[UploadedFile]
    size: int = 0
    previewable: bool = False
    warnings: List[str] = field(default_factory=list)
    collection: Optional[FeatureCollection] = None
    raster: Optional[RasterDataset] = None
    visible: bool = True
    style: Optional[Symbology] = None

    @property
    def is_parsed(self) -> bool:
        return self.collection is not None or self.raster is not None

    def file_names(self) -> List[str]:
        return [f.name for f in self.files]
