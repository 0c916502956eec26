"""
Partition uploaded files into datasets and assign each a source kind.

Only file names are inspected here; bytes are read later by the parsers.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple

from waymark.model import Dataset, UploadedFile

logger = logging.getLogger(__name__)


SHAPEFILE_PARTS = ("shp", "shx", "dbf", "prj", "sbn", "sbx", "cpg")

TABULAR_WARNING = "Preview requires coordinate columns (lat/lon or geometry)"

# extension -> (kind, previewable, warning)
_SINGLE_KINDS: Tuple[Tuple[Tuple[str, ...], str, bool, str], ...] = (
    (("geojson", "json"), "geojson", True, ""),
    (("kml",), "kml", True, ""),
    (("kmz",), "kmz", True, ""),
    (("gpx",), "gpx", True, ""),
    (("csv",), "csv", True, TABULAR_WARNING),
    (("xlsx", "xls"), "excel", True, TABULAR_WARNING),
    (("tif", "tiff"), "geotiff", False, "Raster preview not yet supported - conversion available"),
    (("dwg",), "autocad-dwg", False, "CAD preview not yet supported"),
    (("dxf",), "autocad-dxf", False, "CAD preview not yet supported"),
    (("gpkg",), "geopackage", False, "Database preview not yet supported"),
    (("gdb",), "geodatabase", False, "Geodatabase preview not yet supported"),
    (("mxd", "aprx"), "arcgis-map", False, "ArcGIS map document preview not yet supported"),
    (("lyr", "lyrx"), "arcgis-layer", False, "ArcGIS layer preview not yet supported"),
    (("pdf", "pdfx"), "geopdf", False, "GeoPDF preview not yet supported"),
    (("dgnlib",), "microstation", False, "MicroStation preview not yet supported"),
    (("las", "laz"), "lidar", False, "LiDAR point cloud preview not yet supported"),
    (("hdf", "img", "nc", "nc4"), "raster", False, "Raster format preview not yet supported"),
    (("osm",), "openstreetmap", False, "OSM preview not yet supported"),
    (("cityjson",), "cityjson", False, "CityJSON 3D preview not yet supported"),
    (("gltf", "glb"), "3d-tiles", False, "3D tiles preview not yet supported"),
    (("topojson",), "topojson", False, "TopoJSON preview not yet supported"),
    (("wkt", "wkb"), "well-known", False, "Well-Known format preview not yet supported"),
    (("gml",), "gml", False, "GML preview not yet supported"),
)

KIND_LABELS: Dict[str, str] = {
    "shapefile": "Shapefile",
    "geojson": "GeoJSON",
    "kml": "KML",
    "kmz": "KMZ",
    "gpx": "GPX",
    "csv": "CSV",
    "excel": "Excel Spreadsheet",
    "geotiff": "GeoTIFF Raster",
    "autocad-dwg": "AutoCAD DWG",
    "autocad-dxf": "AutoCAD DXF",
    "geopackage": "GeoPackage",
    "geodatabase": "File Geodatabase",
    "arcgis-map": "ArcGIS Map Document",
    "arcgis-layer": "ArcGIS Layer",
    "geopdf": "GeoPDF",
    "microstation": "MicroStation",
    "lidar": "LiDAR Point Cloud",
    "raster": "Raster Image",
    "openstreetmap": "OpenStreetMap",
    "cityjson": "CityJSON",
    "3d-tiles": "3D Tiles",
    "topojson": "TopoJSON",
    "well-known": "Well-Known Format",
    "gml": "GML",
    "unknown": "Unknown Format",
}


def kind_label(kind: str) -> str:
    return KIND_LABELS.get(kind, "Unknown")


def kind_for_extension(ext: str) -> Tuple[str, bool, str]:
    """(kind, previewable, warning) for a single-file extension; first match wins."""
    ext = (ext or "").lower().lstrip(".")
    for exts, kind, previewable, warning in _SINGLE_KINDS:
        if ext in exts:
            return kind, previewable, warning
    return "unknown", False, ""


def new_uid() -> str:
    return uuid.uuid4().hex


@dataclass
class GroupingResult:
    datasets: List[Dataset] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def group_files(files: Iterable[UploadedFile]) -> GroupingResult:
    """
    Group uploads into datasets.

    1. every `.zip` is its own shapefile dataset
    2. loose shapefile components are bucketed by stem; a bucket needs `.shp`
       and `.dbf`, otherwise it becomes an "incomplete shapefile set" error
    3. everything else is a single-file dataset kinded by extension

    Errors are non-fatal: well-formed datasets are still returned.
    """
    result = GroupingResult()
    remaining: List[UploadedFile] = []

    for f in files:
        if f.extension == "zip":
            label = f.name[: -len(".zip")] if f.name.lower().endswith(".zip") else f.name
            result.datasets.append(
                Dataset(
                    uid=new_uid(),
                    label=label,
                    kind="shapefile",
                    files=[f],
                    size=f.size,
                    previewable=True,
                )
            )
        else:
            remaining.append(f)

    by_stem: Dict[str, List[UploadedFile]] = {}
    singles: List[UploadedFile] = []
    for f in remaining:
        if f.extension in SHAPEFILE_PARTS:
            by_stem.setdefault(f.stem, []).append(f)
        else:
            singles.append(f)

    for stem, group in by_stem.items():
        exts = {f.extension for f in group}
        missing = [f".{e}" for e in ("shp", "dbf") if e not in exts]
        if missing:
            msg = f"incomplete shapefile set {stem}: missing {', '.join(missing)}"
            logger.warning(msg)
            result.errors.append(msg)
            continue

        warnings = []
        if "shx" not in exts:
            warnings.append("Missing .shx (index) file")
        if "prj" not in exts:
            warnings.append("Missing .prj (projection) file")
        shp = next(f for f in group if f.extension == "shp")
        result.datasets.append(
            Dataset(
                uid=new_uid(),
                label=shp.name.rsplit(".", 1)[0],
                kind="shapefile",
                files=list(group),
                size=sum(f.size for f in group),
                previewable=True,
                warnings=warnings,
            )
        )

    for f in singles:
        kind, previewable, warning = kind_for_extension(f.extension)
        result.datasets.append(
            Dataset(
                uid=new_uid(),
                label=f.name,
                kind=kind,
                files=[f],
                size=f.size,
                previewable=previewable,
                warnings=[warning] if warning else [],
            )
        )

    return result
