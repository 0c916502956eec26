"""
Shapefile adapter (geopandas).

Reading accepts either a single zip or a loose {.shp, .dbf, [.shx, .prj, .cpg]}
bundle. Parts are staged in a temporary directory and every `.shp` found is read
in archive order; multiple layers are merged into one collection. A `.prj`
that declares anything other than WGS84 is normalised to EPSG:4326.

Writing splits the collection by geometry family because a shapefile layer holds
a single geometry type: `<stem>.shp` for a single family, otherwise
`<stem>_points`, `<stem>_lines` and `<stem>_polygons` side by side in one zip.
"""

from __future__ import annotations

import io
import json
import logging
import tempfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Sequence, Tuple

import geopandas as gpd
import pandas as pd
import pyogrio
from pyproj import CRS
from shapely.geometry import MultiLineString, MultiPoint, MultiPolygon

from waymark.core.errors import DecodeError, DownstreamIOError, IncompleteError, InputShapeError
from waymark.core.geometry import geometry_family
from waymark.io.tabular import plain_value
from waymark.model import CollectionBuilder, FeatureCollection

logger = logging.getLogger(__name__)


SHAPEFILE_PARTS = (".shp", ".shx", ".dbf", ".prj", ".cpg", ".sbn", ".sbx")
FAMILY_ORDER = ("points", "lines", "polygons")
_MULTI = {"Point": MultiPoint, "LineString": MultiLineString, "Polygon": MultiPolygon}


def _safe_name(name: str) -> Optional[str]:
    """Base name of an archive member, or None for directories and resource forks."""
    if name.endswith("/") or name.startswith("__MACOSX") or "/__MACOSX/" in name:
        return None
    base = PurePosixPath(name.replace("\\", "/")).name
    if not base or base.startswith("._"):
        return None
    return base


def _stage_zip(data: bytes, workdir: Path, label: str) -> List[Path]:
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as e:
        raise DecodeError(f"Invalid shapefile zip ({e}): {label}")

    shp_paths: List[Path] = []
    with zf:
        for info in zf.infolist():
            base = _safe_name(info.filename)
            if base is None or Path(base).suffix.lower() not in SHAPEFILE_PARTS:
                continue
            target = workdir / base
            try:
                target.write_bytes(zf.read(info))
            except (zipfile.BadZipFile, OSError) as e:
                raise DecodeError(f"Could not extract {info.filename} ({e}): {label}")
            if target.suffix.lower() == ".shp":
                shp_paths.append(target)
    return shp_paths


def _stage_files(files: Sequence[Tuple[str, bytes]], workdir: Path) -> List[Path]:
    shp_paths: List[Path] = []
    for name, payload in files:
        base = _safe_name(name)
        if base is None:
            continue
        target = workdir / base
        target.write_bytes(payload)
        if target.suffix.lower() == ".shp":
            shp_paths.append(target)
    return shp_paths


def _sibling(shp: Path, ext: str) -> Optional[Path]:
    for p in shp.parent.iterdir():
        if p.stem == shp.stem and p.suffix.lower() == ext:
            return p
    return None


def _read_layer(shp: Path, label: str) -> Tuple[gpd.GeoDataFrame, List[str]]:
    notes: List[str] = []
    if _sibling(shp, ".dbf") is None:
        raise IncompleteError(f"incomplete shapefile set {shp.stem}: missing .dbf")
    restore_shx = _sibling(shp, ".shx") is None
    if restore_shx:
        notes.append(f"{shp.stem}: .shx index rebuilt from .shp")
        pyogrio.set_gdal_config_options({"SHAPE_RESTORE_SHX": True})
    try:
        gdf = gpd.read_file(shp)
    except Exception as e:
        raise DecodeError(f"Failed to read shapefile layer {shp.name} ({e}): {label}") from e
    finally:
        if restore_shx:
            pyogrio.set_gdal_config_options({"SHAPE_RESTORE_SHX": None})

    if gdf.crs is not None and gdf.crs.to_epsg() != 4326:
        logger.info("%s: reprojecting layer %s from %s to EPSG:4326", label, shp.stem, gdf.crs.to_string())
        notes.append(f"{shp.stem}: transformed from {gdf.crs.to_string()} to EPSG:4326")
        gdf = gdf.to_crs(4326)
    return gdf, notes


def _listify(obj: Any) -> Any:
    if isinstance(obj, (list, tuple)):
        return [_listify(o) for o in obj]
    if isinstance(obj, dict):
        return {k: _listify(v) for k, v in obj.items()}
    return plain_value(obj)


def read_shapefile(
    *,
    zip_bytes: Optional[bytes] = None,
    files: Optional[Sequence[Tuple[str, bytes]]] = None,
    label: str = "shapefile",
    trace: Any = None,
) -> FeatureCollection:
    """
    Read a zipped shapefile or a loose component bundle.

    Feature i joins the i-th shape with the i-th DBF record.

    Raises:
        DecodeError: corrupt zip or unreadable layer
        InputShapeError: no `.shp` present
        IncompleteError: a `.shp` without its `.dbf`
    """
    builder = CollectionBuilder(label, "shapefile", trace=trace)
    layers: List[Dict[str, Any]] = []

    with tempfile.TemporaryDirectory(prefix="waymark-shp-") as tmp:
        workdir = Path(tmp)
        if zip_bytes is not None:
            shp_paths = _stage_zip(zip_bytes, workdir, label)
        else:
            shp_paths = _stage_files(files or [], workdir)
        if not shp_paths:
            raise InputShapeError(f"No .shp file found: {label}")

        index = 0
        for shp in shp_paths:
            gdf, notes = _read_layer(shp, label)
            for note in notes:
                builder.warn(note)
            layers.append({"name": shp.stem, "features": len(gdf), "fields": [str(c) for c in gdf.columns if c != gdf.geometry.name]})
            for feat in gdf.iterfeatures(na="null", drop_id=True):
                props = {str(k): plain_value(v) for k, v in (feat.get("properties") or {}).items()}
                builder.add(_listify(feat.get("geometry")), props, index=index)
                index += 1

    builder.extra["layers"] = layers
    return builder.build()


# Writing


def _cell(value: Any) -> Any:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return value


def _frame(features: List[Dict[str, Any]]) -> gpd.GeoDataFrame:
    gdf = gpd.GeoDataFrame.from_features(features, crs="EPSG:4326")
    if gdf.geom_type.nunique() > 1:
        # A layer holds one shape type: promote singles when multis share the family.
        gdf["geometry"] = gpd.GeoSeries(
            [_MULTI[g.geom_type]([g]) if g is not None and g.geom_type in _MULTI else g for g in gdf.geometry],
            index=gdf.index,
            crs=gdf.crs,
        )
    for col in gdf.columns:
        if col == gdf.geometry.name or gdf[col].dtype != object:
            continue
        kinds = {type(v) for v in gdf[col] if v is not None and not (isinstance(v, float) and pd.isna(v))}
        # DBF columns are single-typed; mixed columns are written as text.
        if len(kinds) > 1:
            gdf[col] = gdf[col].map(lambda v: None if v is None else str(v))
    return gdf


def write_shapefile(
    fc: FeatureCollection,
    *,
    stem: str,
    warnings: Optional[List[str]] = None,
) -> bytes:
    """
    Zip of `.shp/.shx/.dbf/.prj` files, one layer per geometry family.

    Raises:
        InputShapeError: nothing encodable (empty collection or only GeometryCollections)
        DownstreamIOError: the shapefile driver or zip write failed
    """
    by_family: Dict[str, List[Dict[str, Any]]] = {}
    skipped = 0
    for feature in fc.features:
        family = geometry_family(feature.geometry_type)
        if family is None:
            skipped += 1
            continue
        props = {k: _cell(v) for k, v in (feature.properties or {}).items()}
        by_family.setdefault(family, []).append(
            {"type": "Feature", "geometry": feature.geometry, "properties": props}
        )

    if not by_family:
        raise InputShapeError(f"Shapefile export requires at least one point, line or polygon feature: {fc.label}")
    if skipped:
        msg = f"{skipped} feature(s) skipped: geometry type not representable in a shapefile"
        logger.info("%s: %s", fc.label, msg)
        if warnings is not None:
            warnings.append(msg)

    single = len(by_family) == 1
    buf = io.BytesIO()
    with tempfile.TemporaryDirectory(prefix="waymark-shp-out-") as tmp:
        workdir = Path(tmp)
        for family in FAMILY_ORDER:
            feats = by_family.get(family)
            if not feats:
                continue
            layer = stem if single else f"{stem}_{family}"
            try:
                _frame(feats).to_file(workdir / f"{layer}.shp", driver="ESRI Shapefile", encoding="utf-8")
            except Exception as e:
                raise DownstreamIOError(f"Shapefile write failed for layer {layer} ({e}): {fc.label}") from e
            prj = workdir / f"{layer}.prj"
            if not prj.exists():
                prj.write_text(CRS.from_epsg(4326).to_wkt("WKT1_ESRI"), encoding="utf-8")

        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path in sorted(workdir.iterdir()):
                zf.write(path, arcname=path.name)
    return buf.getvalue()
