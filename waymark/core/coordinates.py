"""
Coordinate recovery for tabular sources (CSV and Excel sheets).

Column detection order:
1. a combined column (WKT or "lat, lng" text), exact header match
2. a latitude / longitude pair, exact header match
3. a latitude / longitude pair, bounded prefix/suffix match

The chosen columns are recorded in the collection metadata so users can audit
the heuristic.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import shapely.wkt
from shapely.errors import ShapelyError
from shapely.geometry import mapping

logger = logging.getLogger(__name__)


LAT_CANDIDATES: Tuple[str, ...] = (
    "latitude",
    "lat",
    "y",
    "y_coord",
    "lat_dd",
    "latitude_dd",
    "lat_deg",
    "decimal_lat",
)
LNG_CANDIDATES: Tuple[str, ...] = (
    "longitude",
    "lng",
    "lon",
    "x",
    "x_coord",
    "lng_dd",
    "longitude_dd",
    "long",
    "decimal_lng",
    "decimal_lon",
)
COMBINED_CANDIDATES: Tuple[str, ...] = (
    "location",
    "coordinates",
    "point",
    "geometry",
    "latlng",
    "latlon",
    "coord",
    "the_geom",
    "geom",
    "wkt",
)

# Column the CSV writer uses for WKT when a property already owns `geometry`.
WKT_EXPORT_COLUMN = "geom_wkt"

# WKT types that produce a full geometry from a combined column.
WKT_TYPES = ("POINT", "LINESTRING", "POLYGON", "MULTIPOLYGON")

_WKT_HEAD_RE = re.compile(r"^\s*(POINT|LINESTRING|POLYGON|MULTIPOLYGON)\s*(Z\s*|M\s*|ZM\s*)?\(", re.IGNORECASE)
_NUM = r"([+-]?\d*\.?\d+(?:[eE][+-]?\d+)?)"
_COMMA_PAIR_RE = re.compile(_NUM + r"\s*,\s*" + _NUM)
_SPACE_PAIR_RE = re.compile(_NUM + r"\s+" + _NUM)


@dataclass
class CoordinateColumns:
    lat: Optional[str] = None
    lng: Optional[str] = None
    combined: Optional[str] = None
    match: str = "none"  # combined | exact | fuzzy | none

    @property
    def found(self) -> bool:
        return bool(self.combined or (self.lat and self.lng))

    def to_dict(self) -> Dict[str, Any]:
        return {"lat": self.lat, "lng": self.lng, "combined": self.combined, "match": self.match}


def _fuzzy_find(headers: Sequence[str], lowered: Sequence[str], candidates: Iterable[str]) -> Optional[str]:
    for header, low in zip(headers, lowered):
        for cand in candidates:
            # Single-letter candidates (x, y) would match half the headers in a sheet.
            if len(cand) < 3:
                continue
            if cand in low and len(low) <= len(cand) + 3 and (low.startswith(cand) or low.endswith(cand)):
                return header
    return None


def detect_coordinate_columns(headers: Sequence[str]) -> CoordinateColumns:
    """Pick coordinate columns from a header row (case-insensitive, trimmed)."""
    headers = [str(h) for h in headers]
    lowered = [h.strip().lower() for h in headers]

    for header, low in zip(headers, lowered):
        if low == WKT_EXPORT_COLUMN:
            return CoordinateColumns(combined=header, match="combined")

    for header, low in zip(headers, lowered):
        if low in COMBINED_CANDIDATES:
            return CoordinateColumns(combined=header, match="combined")

    def exact(candidates: Tuple[str, ...]) -> Optional[str]:
        for header, low in zip(headers, lowered):
            if low in candidates:
                return header
        return None

    lat = exact(LAT_CANDIDATES)
    lng = exact(LNG_CANDIDATES)
    fuzzy = False
    if lat is None:
        lat = _fuzzy_find(headers, lowered, LAT_CANDIDATES)
        fuzzy = fuzzy or lat is not None
    if lng is None:
        lng = _fuzzy_find(headers, lowered, LNG_CANDIDATES)
        fuzzy = fuzzy or lng is not None

    if lat and lng:
        return CoordinateColumns(lat=lat, lng=lng, match="fuzzy" if fuzzy else "exact")
    return CoordinateColumns(lat=lat, lng=lng, match="none")


def _listify(coords: Any) -> Any:
    if isinstance(coords, (list, tuple)):
        if coords and isinstance(coords[0], (int, float)):
            return [float(c) for c in coords]
        return [_listify(c) for c in coords]
    return coords


def parse_wkt(text: Any) -> Optional[Dict[str, Any]]:
    """
    Decode a WKT string into a GeoJSON geometry dict.

    Only POINT, LINESTRING, POLYGON and MULTIPOLYGON are accepted; anything
    else (including empty geometries) returns None.
    """
    if not isinstance(text, str) or not _WKT_HEAD_RE.match(text):
        return None
    try:
        geom = shapely.wkt.loads(text.strip())
    except (ShapelyError, ValueError, TypeError) as e:
        logger.debug("WKT decode failed for %r: %s", text[:60], e)
        return None
    if geom.is_empty or geom.geom_type.upper() not in WKT_TYPES:
        return None
    gj = mapping(geom)
    return {"type": gj["type"], "coordinates": _listify(gj["coordinates"])}


def parse_coordinate_pair(text: Any) -> Optional[Tuple[float, float]]:
    """
    Recover (lng, lat) from "a, b" or "a b" text.

    The latitude-plausible ordering wins: if |a| <= 90 and |b| <= 180 the text
    is read as "lat, lng", else if |b| <= 90 and |a| <= 180 as "lng, lat".
    Whitespace-separated pairs that fit neither are returned as (a, b) and left
    to coordinate validation.
    """
    if not isinstance(text, str):
        return None

    m = _COMMA_PAIR_RE.search(text)
    if m:
        a, b = float(m.group(1)), float(m.group(2))
        if abs(a) <= 90 and abs(b) <= 180:
            return (b, a)
        if abs(b) <= 90 and abs(a) <= 180:
            return (a, b)

    m = _SPACE_PAIR_RE.search(text)
    if m:
        a, b = float(m.group(1)), float(m.group(2))
        if abs(a) <= 90 and abs(b) <= 180:
            return (b, a)
        if abs(b) <= 90 and abs(a) <= 180:
            return (a, b)
        return (a, b)
    return None


def to_float(value: Any) -> Optional[float]:
    """Numeric cell value, or None for blanks, booleans and non-numeric text."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
    elif isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        try:
            f = float(s)
        except ValueError:
            return None
    else:
        return None
    return f if math.isfinite(f) else None


def geometry_from_row(row: Mapping[str, Any], columns: CoordinateColumns) -> Optional[Dict[str, Any]]:
    """Build a geometry for one row, or None if its coordinates cannot be recovered."""
    if columns.combined:
        raw = row.get(columns.combined)
        geom = parse_wkt(raw)
        if geom is not None:
            return geom
        pair = parse_coordinate_pair(raw)
        if pair is not None:
            return {"type": "Point", "coordinates": [pair[0], pair[1]]}
        return None

    if columns.lat and columns.lng:
        lat = to_float(row.get(columns.lat))
        lng = to_float(row.get(columns.lng))
        if lat is None or lng is None:
            return None
        return {"type": "Point", "coordinates": [lng, lat]}
    return None


def rows_to_builder(rows: List[Dict[str, Any]], builder: Any, headers: Optional[Sequence[str]] = None) -> CoordinateColumns:
    """
    Feed tabular rows into a `CollectionBuilder`.

    Rows whose coordinates cannot be recovered are dropped and counted. When no
    coordinate columns are found the builder stays empty and gets a warning.
    """
    if headers is None:
        headers = list(rows[0].keys()) if rows else []
    columns = detect_coordinate_columns(headers)
    builder.extra["coordinate_columns"] = columns.to_dict()
    builder.extra["row_count"] = len(rows)

    if not columns.found:
        builder.warn("No coordinate columns detected (lat/lon or geometry); dataset is tabular only")
        return columns

    logger.debug("%s: coordinate columns %s", builder.label, columns.to_dict())
    for i, row in enumerate(rows):
        geom = geometry_from_row(row, columns)
        if geom is None:
            builder.drop(f"row {i + 1}: coordinates could not be recovered")
            continue
        builder.add(geom, row, index=i + 1)
    return columns
