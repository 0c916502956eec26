"""
Export dispatch: FeatureCollection -> (bytes, filename, MIME type).

`ExportConfig` is a flat options record. `export_collection()` raises typed
errors; `run_export()` is the boundary used by the CLI and workspace and
reports failures as an `ExportOutcome` instead.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from waymark.core.errors import InputShapeError, UnsupportedFormatError, WaymarkError
from waymark.core.ingest import parse_dataset
from waymark.core.symbology import Symbology
from waymark.io.geojson import write_geojson
from waymark.io.geotiff import COMPRESSION, write_geotiff
from waymark.io.gpx import write_gpx
from waymark.io.kml import write_kml
from waymark.io.kmz import write_kmz
from waymark.io.raster import (
    DEFAULT_CONCURRENCY,
    DEFAULT_TILE_TIMEOUT_MS,
    DEFAULT_TILE_URL,
    DEFAULT_USER_AGENT,
    BasemapCompositor,
    encode_png,
    render_basemap_png,
    render_geotiff_canvas,
    render_vector_png,
)
from waymark.io.shapefile import write_shapefile
from waymark.io.tabular import write_csv
from waymark.model import Dataset, FeatureCollection, RasterDataset
from waymark.utils.utils import sanitize_filename

logger = logging.getLogger(__name__)


FORMATS = ("geojson", "csv", "kml", "kmz", "gpx", "shapefile", "geotiff", "png")

MIME_TYPES = {
    "geojson": "application/geo+json",
    "csv": "text/csv",
    "kml": "application/vnd.google-earth.kml+xml",
    "kmz": "application/vnd.google-earth.kmz",
    "gpx": "application/gpx+xml",
    "shapefile": "application/zip",
    "geotiff": "image/tiff",
    "png": "image/png",
}

EXTENSIONS = {
    "geojson": "geojson",
    "csv": "csv",
    "kml": "kml",
    "kmz": "kmz",
    "gpx": "gpx",
    "shapefile": "zip",
    "geotiff": "tif",
    "png": "png",
}

SUPPORTED_CRS = ("EPSG:4326", "EPSG:3857", "EPSG:32633")
CSV_GEOMETRY_MODES = ("wkt", "latlng")
DEFAULT_FILENAME_PREFIX = "waymark_"

# Alternate spellings accepted by ExportConfig.from_mapping, after
# camelCase / kebab-case have been folded to snake_case.
_ALIASES = {
    "geometry_mode_for_csv": "csv_geometry_mode",
    "csv_geometry": "csv_geometry_mode",
    "geometry_mode": "csv_geometry_mode",
    "tile_timeout_ms": "raster_tile_timeout_ms",
    "concurrency": "raster_concurrency",
    "width": "raster_width",
    "height": "raster_height",
    "zoom": "raster_zoom",
    "stem": "filename_stem",
    "prefix": "filename_prefix",
    "bits_per_sample": "geotiff_bits",
    "samples": "geotiff_samples",
    "compression": "geotiff_compression",
}

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", str(key).strip()).replace("-", "_").lower()


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass
class ExportConfig:
    format: str = "geojson"
    crs: str = "EPSG:4326"
    csv_geometry_mode: str = "wkt"
    include_metadata: bool = False
    simplify_geometry: bool = False
    raster_width: int = 1024
    raster_height: int = 768
    raster_zoom: Optional[int] = None
    raster_concurrency: int = DEFAULT_CONCURRENCY
    raster_tile_timeout_ms: int = DEFAULT_TILE_TIMEOUT_MS
    basemap: bool = False
    tile_url: str = DEFAULT_TILE_URL
    user_agent: str = DEFAULT_USER_AGENT
    name_field: str = "name"
    filename_stem: Optional[str] = None
    filename_prefix: str = DEFAULT_FILENAME_PREFIX
    geotiff_samples: int = 3
    geotiff_bits: int = 8
    geotiff_compression: str = "none"

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]], **overrides: Any) -> "ExportConfig":
        """
        Build from a loose mapping. Keys may be snake_case, kebab-case or
        camelCase; unknown keys are ignored.
        """
        known = {f.name: f for f in dataclasses.fields(cls)}
        values: Dict[str, Any] = {}
        for raw_key, value in list((data or {}).items()) + list(overrides.items()):
            key = _snake(raw_key)
            key = _ALIASES.get(key, key)
            if key not in known:
                logger.debug("Ignoring unknown export option %r", raw_key)
                continue
            if value is None and key not in ("raster_zoom", "filename_stem"):
                continue
            values[key] = value
        return cls(**values)._coerced()

    def _coerced(self) -> "ExportConfig":
        for name in ("include_metadata", "simplify_geometry", "basemap"):
            setattr(self, name, _as_bool(getattr(self, name)))
        for name in ("raster_width", "raster_height", "raster_concurrency", "raster_tile_timeout_ms", "geotiff_samples", "geotiff_bits"):
            try:
                setattr(self, name, int(getattr(self, name)))
            except (TypeError, ValueError):
                raise InputShapeError(f"Export option {name} must be an integer, got {getattr(self, name)!r}")
        if self.raster_zoom is not None:
            try:
                self.raster_zoom = int(self.raster_zoom)
            except (TypeError, ValueError):
                raise InputShapeError(f"Export option raster_zoom must be an integer, got {self.raster_zoom!r}")
        self.format = str(self.format).strip().lower()
        self.csv_geometry_mode = str(self.csv_geometry_mode).strip().lower()
        self.crs = str(self.crs).strip().upper()
        self.geotiff_compression = str(self.geotiff_compression).strip().lower()
        return self

    def validate(self) -> None:
        """
        Raises:
            UnsupportedFormatError: unknown format
            InputShapeError: an option value outside its allowed set
        """
        if self.format not in FORMATS:
            raise UnsupportedFormatError(f"Unsupported export format {self.format!r} (supported: {', '.join(FORMATS)})")
        if self.csv_geometry_mode not in CSV_GEOMETRY_MODES:
            raise InputShapeError(f"Unknown CSV geometry mode {self.csv_geometry_mode!r} (wkt, latlng)")
        if self.raster_width <= 0 or self.raster_height <= 0:
            raise InputShapeError(f"Raster size must be positive, got {self.raster_width}x{self.raster_height}")
        if self.raster_concurrency < 1:
            raise InputShapeError("raster_concurrency must be at least 1")
        if self.raster_tile_timeout_ms < 1:
            raise InputShapeError("raster_tile_timeout_ms must be at least 1")
        if self.geotiff_compression not in COMPRESSION:
            raise InputShapeError(f"Unsupported GeoTIFF compression {self.geotiff_compression!r} (none, lzw, deflate)")

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    def replace(self, **changes: Any) -> "ExportConfig":
        return dataclasses.replace(self, **changes)._coerced()


@dataclass
class ExportArtifact:
    data: bytes
    filename: str
    mime: str
    format: str
    feature_count: int = 0
    warnings: List[str] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class ExportOutcome:
    artifact: Optional[ExportArtifact] = None
    error: Optional[WaymarkError] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.artifact is not None


def build_filename(label: str, fmt: str, *, stem: Optional[str] = None, prefix: str = DEFAULT_FILENAME_PREFIX) -> str:
    """`<prefix><sanitized stem or label>.<ext>`"""
    ext = EXTENSIONS.get(fmt)
    if ext is None:
        raise UnsupportedFormatError(f"Unsupported export format {fmt!r}")
    return f"{prefix}{sanitize_filename(stem or label)}.{ext}"


# Vector serializers: (fc, config, symbology, warnings) -> bytes

Serializer = Callable[[FeatureCollection, ExportConfig, Optional[Symbology], List[str]], bytes]


def _geojson(fc: FeatureCollection, config: ExportConfig, symbology: Optional[Symbology], warnings: List[str]) -> bytes:
    return write_geojson(fc, include_metadata=config.include_metadata)


def _csv(fc: FeatureCollection, config: ExportConfig, symbology: Optional[Symbology], warnings: List[str]) -> bytes:
    return write_csv(fc, geometry_mode=config.csv_geometry_mode, warnings=warnings)


def _kml(fc: FeatureCollection, config: ExportConfig, symbology: Optional[Symbology], warnings: List[str]) -> bytes:
    return write_kml(fc, name_field=config.name_field, symbology=symbology, warnings=warnings)


def _kmz(fc: FeatureCollection, config: ExportConfig, symbology: Optional[Symbology], warnings: List[str]) -> bytes:
    return write_kmz(fc, name_field=config.name_field, symbology=symbology, warnings=warnings)


def _gpx(fc: FeatureCollection, config: ExportConfig, symbology: Optional[Symbology], warnings: List[str]) -> bytes:
    return write_gpx(fc, name_field=config.name_field, warnings=warnings)


def _shapefile(fc: FeatureCollection, config: ExportConfig, symbology: Optional[Symbology], warnings: List[str]) -> bytes:
    stem = sanitize_filename(config.filename_stem or fc.label)
    return write_shapefile(fc, stem=stem, warnings=warnings)


def _geotiff(fc: FeatureCollection, config: ExportConfig, symbology: Optional[Symbology], warnings: List[str]) -> bytes:
    rgba, bbox = render_geotiff_canvas(
        fc, width=config.raster_width, height=config.raster_height, symbology=symbology
    )
    return write_geotiff(
        rgba,
        bbox,
        samples=config.geotiff_samples,
        bits_per_sample=config.geotiff_bits,
        compression=config.geotiff_compression,
        description=f"Waymark export: {fc.label}",
    )


SERIALIZERS: Dict[str, Serializer] = {
    "geojson": _geojson,
    "csv": _csv,
    "kml": _kml,
    "kmz": _kmz,
    "gpx": _gpx,
    "shapefile": _shapefile,
    "geotiff": _geotiff,
}


def _advisories(config: ExportConfig, label: str) -> List[str]:
    warnings: List[str] = []
    if config.crs != "EPSG:4326":
        if config.crs not in SUPPORTED_CRS:
            warnings.append(f"Unknown CRS {config.crs}; output is WGS84 (EPSG:4326)")
        else:
            warnings.append(f"CRS {config.crs} is advisory; output is WGS84 (EPSG:4326)")
    if config.simplify_geometry:
        logger.info("%s: simplify_geometry is reserved and has no effect", label)
    return warnings


async def _png(
    fc: FeatureCollection,
    config: ExportConfig,
    symbology: Optional[Symbology],
    warnings: List[str],
    diagnostics: List[str],
    transport: Any,
    trace: Any,
) -> bytes:
    if not config.basemap:
        image, scene = render_vector_png(
            fc, width=config.raster_width, height=config.raster_height, symbology=symbology
        )
    else:
        compositor = BasemapCompositor(
            tile_url=config.tile_url,
            concurrency=config.raster_concurrency,
            tile_timeout_ms=config.raster_tile_timeout_ms,
            user_agent=config.user_agent,
            transport=transport,
            trace=trace,
        )
        render = await render_basemap_png(
            fc,
            width=config.raster_width,
            height=config.raster_height,
            zoom=config.raster_zoom,
            compositor=compositor,
            symbology=symbology,
        )
        image, scene = render.image, render.scene
        diagnostics.extend(render.diagnostics)
        if render.tiles_failed:
            warnings.append(f"{render.tiles_failed} of {render.tiles_total} basemap tile(s) failed")
    if scene.dropped_points:
        warnings.append(f"{scene.dropped_points} point(s) outside the Web Mercator band were not drawn")
    return encode_png(image)


async def export_collection_async(
    fc: FeatureCollection,
    config: ExportConfig,
    *,
    symbology: Optional[Symbology] = None,
    transport: Any = None,
    trace: Any = None,
) -> ExportArtifact:
    """
    Serialize a collection.

    Raises:
        UnsupportedFormatError: unknown format
        InputShapeError: bad options, or nothing encodable for a format that needs features
        DownstreamIOError: encoder, zip or basemap failure
    """
    config.validate()
    warnings = _advisories(config, fc.label)
    diagnostics: List[str] = []

    if config.format == "png":
        data = await _png(fc, config, symbology, warnings, diagnostics, transport, trace)
    else:
        data = SERIALIZERS[config.format](fc, config, symbology, warnings)

    artifact = ExportArtifact(
        data=data,
        filename=build_filename(fc.label, config.format, stem=config.filename_stem, prefix=config.filename_prefix),
        mime=MIME_TYPES[config.format],
        format=config.format,
        feature_count=len(fc.features),
        warnings=warnings,
        diagnostics=diagnostics,
    )
    logger.info("%s: exported %d feature(s) as %s (%d bytes)", fc.label, artifact.feature_count, config.format, artifact.size)
    if trace is not None:
        trace.emit(
            {
                "event": "export.artifact",
                "label": fc.label,
                "format": config.format,
                "filename": artifact.filename,
                "bytes": artifact.size,
                "features": artifact.feature_count,
                "warnings": list(warnings),
                "diagnostics": len(diagnostics),
            }
        )
    return artifact


def export_collection(
    fc: FeatureCollection,
    config: ExportConfig,
    *,
    symbology: Optional[Symbology] = None,
    transport: Any = None,
    trace: Any = None,
) -> ExportArtifact:
    """Synchronous wrapper around `export_collection_async`."""
    return asyncio.run(
        export_collection_async(fc, config, symbology=symbology, transport=transport, trace=trace)
    )


def export_raster_dataset(raster: RasterDataset, config: ExportConfig) -> ExportArtifact:
    """
    Raster datasets bypass the vector serializers: GeoTIFF re-exports the
    original bytes, PNG the decoded preview.

    Raises:
        UnsupportedFormatError: any other format
    """
    if config.format == "geotiff":
        data = raster.source_bytes
    elif config.format == "png":
        data = raster.preview_png
    else:
        raise UnsupportedFormatError(
            f"Raster dataset {raster.label} can only be exported as geotiff or png, not {config.format}"
        )
    return ExportArtifact(
        data=data,
        filename=build_filename(raster.label, config.format, stem=config.filename_stem, prefix=config.filename_prefix),
        mime=MIME_TYPES[config.format],
        format=config.format,
    )


async def run_export_async(
    dataset: Dataset,
    config: ExportConfig,
    *,
    transport: Any = None,
    trace: Any = None,
) -> ExportOutcome:
    """Export one dataset; never raises `WaymarkError`."""
    try:
        if not dataset.is_parsed:
            parsed = parse_dataset(dataset, trace=trace)
            if parsed.error is not None:
                return ExportOutcome(error=parsed.error, warnings=list(parsed.warnings))
        if dataset.raster is not None:
            config.validate()
            artifact = export_raster_dataset(dataset.raster, config)
        else:
            artifact = await export_collection_async(
                dataset.collection, config, symbology=dataset.style, transport=transport, trace=trace
            )
    except WaymarkError as e:
        logger.warning("%s: export failed: %s", dataset.label, e.message)
        if trace is not None:
            trace.emit({"event": "export.artifact", "label": dataset.label, "format": config.format, "error": e.to_dict()})
        return ExportOutcome(error=e)
    return ExportOutcome(artifact=artifact, warnings=list(artifact.warnings))


def run_export(
    dataset: Dataset,
    config: ExportConfig,
    *,
    transport: Any = None,
    trace: Any = None,
) -> ExportOutcome:
    return asyncio.run(run_export_async(dataset, config, transport=transport, trace=trace))
