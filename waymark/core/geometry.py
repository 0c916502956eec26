"""
Geometry helpers for GeoJSON-shaped geometry dicts.

Geometries stay plain dicts (``{"type": ..., "coordinates": ...}``) throughout
Waymark. These helpers validate and normalise them, walk their positions and
compute envelopes. Recursion depth is bounded by GeoJSON nesting (MultiPolygon
is four levels deep, GeometryCollections add one level per nesting).
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from waymark.core.errors import CoordinateError, InputShapeError


GEOMETRY_TYPES = (
    "Point",
    "MultiPoint",
    "LineString",
    "MultiLineString",
    "Polygon",
    "MultiPolygon",
    "GeometryCollection",
)

# Coordinate nesting depth per geometry type (Point positions are depth 0).
_DEPTH = {
    "Point": 0,
    "MultiPoint": 1,
    "LineString": 1,
    "MultiLineString": 2,
    "Polygon": 2,
    "MultiPolygon": 3,
}

Position = List[float]


@dataclass(frozen=True)
class BBox:
    """Axis-aligned WGS84 envelope."""

    west: float
    south: float
    east: float
    north: float

    def contains(self, lon: float, lat: float) -> bool:
        return self.west <= lon <= self.east and self.south <= lat <= self.north

    @property
    def width(self) -> float:
        return self.east - self.west

    @property
    def height(self) -> float:
        return self.north - self.south

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.west + self.east) / 2.0, (self.south + self.north) / 2.0)

    def padded(self, minimum: float = 1e-3) -> "BBox":
        """Grow a degenerate (zero-width or zero-height) box to `minimum` degrees."""
        west, south, east, north = self.west, self.south, self.east, self.north
        if east - west < minimum:
            cx = (west + east) / 2.0
            west, east = cx - minimum / 2.0, cx + minimum / 2.0
        if north - south < minimum:
            cy = (south + north) / 2.0
            south, north = cy - minimum / 2.0, cy + minimum / 2.0
        return BBox(west, south, east, north)

    def to_list(self) -> List[float]:
        return [self.west, self.south, self.east, self.north]

    def as_dict(self) -> Dict[str, float]:
        return {"west": self.west, "south": self.south, "east": self.east, "north": self.north}


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def is_valid_position(pos: Any) -> bool:
    """True for a finite [lon, lat(, ele)] pair inside WGS84 bounds."""
    if not isinstance(pos, (list, tuple)) or len(pos) < 2:
        return False
    lon, lat = pos[0], pos[1]
    if not (_is_number(lon) and _is_number(lat)):
        return False
    if not (math.isfinite(lon) and math.isfinite(lat)):
        return False
    return -180.0 <= lon <= 180.0 and -90.0 <= lat <= 90.0


def _normalize_position(pos: Any) -> Position:
    if not is_valid_position(pos):
        raise CoordinateError(f"Invalid coordinate: {pos!r}")
    out = [pos[0], pos[1]]
    # Elevation is kept when present and finite; extra dimensions are dropped.
    if len(pos) >= 3 and _is_number(pos[2]) and math.isfinite(pos[2]):
        out.append(pos[2])
    return out


def _normalize_coords(coords: Any, depth: int) -> Any:
    if depth == 0:
        return _normalize_position(coords)
    if not isinstance(coords, (list, tuple)):
        raise CoordinateError(f"Expected a coordinate array, got {type(coords).__name__}")
    return [_normalize_coords(c, depth - 1) for c in coords]


def validate_geometry(geom: Any) -> Dict[str, Any]:
    """
    Return a normalised copy of a GeoJSON geometry dict.

    Raises:
        InputShapeError: unknown geometry type or missing members
        CoordinateError: any position is non-finite, out of range or malformed,
            or a part is too short to be drawn (LineString < 2 positions,
            empty polygon ring, empty Multi* geometry)
    """
    if not isinstance(geom, dict):
        raise InputShapeError("Geometry must be an object")
    gtype = geom.get("type")
    if gtype not in GEOMETRY_TYPES:
        raise InputShapeError(f"Unsupported geometry type: {gtype!r}")

    if gtype == "GeometryCollection":
        members = geom.get("geometries")
        if not isinstance(members, (list, tuple)) or not members:
            raise InputShapeError("GeometryCollection requires a non-empty 'geometries' array")
        return {"type": gtype, "geometries": [validate_geometry(g) for g in members]}

    if "coordinates" not in geom:
        raise InputShapeError(f"{gtype} is missing 'coordinates'")
    coords = _normalize_coords(geom["coordinates"], _DEPTH[gtype])

    if gtype == "LineString" and len(coords) < 2:
        raise CoordinateError("LineString requires at least two positions")
    if gtype == "MultiLineString":
        if not coords or any(len(line) < 2 for line in coords):
            raise CoordinateError("MultiLineString parts require at least two positions")
    if gtype == "Polygon" and (not coords or any(not ring for ring in coords)):
        raise CoordinateError("Polygon requires non-empty rings")
    if gtype == "MultiPolygon":
        if not coords or any(not poly or any(not ring for ring in poly) for poly in coords):
            raise CoordinateError("MultiPolygon requires non-empty polygons")
    if gtype == "MultiPoint" and not coords:
        raise CoordinateError("MultiPoint requires at least one position")

    return {"type": gtype, "coordinates": coords}


def iter_positions(geom: Optional[Dict[str, Any]]) -> Iterator[Sequence[float]]:
    """Yield every position of a geometry, descending into collections."""
    if not geom:
        return
    gtype = geom.get("type")
    if gtype == "GeometryCollection":
        for member in geom.get("geometries") or []:
            yield from iter_positions(member)
        return
    depth = _DEPTH.get(gtype)
    if depth is None:
        return

    def walk(coords: Any, d: int) -> Iterator[Sequence[float]]:
        if d == 0:
            yield coords
            return
        for c in coords or []:
            yield from walk(c, d - 1)

    yield from walk(geom.get("coordinates"), depth)


def compute_bbox(geometries: Iterable[Optional[Dict[str, Any]]]) -> Optional[BBox]:
    """Envelope of all finite positions, or None when there are none."""
    west = south = math.inf
    east = north = -math.inf
    for geom in geometries:
        for pos in iter_positions(geom):
            if len(pos) < 2:
                continue
            x, y = pos[0], pos[1]
            if not (_is_number(x) and _is_number(y) and math.isfinite(x) and math.isfinite(y)):
                continue
            west, east = min(west, x), max(east, x)
            south, north = min(south, y), max(north, y)
    if not math.isfinite(west):
        return None
    return BBox(west, south, east, north)


def geometry_histogram(geometries: Iterable[Optional[Dict[str, Any]]]) -> Dict[str, int]:
    counts: Counter = Counter()
    for geom in geometries:
        counts[geom.get("type") if geom else "None"] += 1
    return dict(counts)


def geometry_family(gtype: Optional[str]) -> Optional[str]:
    """Collapse a geometry type into points / lines / polygons."""
    if gtype in ("Point", "MultiPoint"):
        return "points"
    if gtype in ("LineString", "MultiLineString"):
        return "lines"
    if gtype in ("Polygon", "MultiPolygon"):
        return "polygons"
    return None


def is_closed(ring: Sequence[Sequence[float]]) -> bool:
    return len(ring) >= 2 and list(ring[0][:2]) == list(ring[-1][:2])


def close_ring(ring: Sequence[Sequence[float]]) -> List[Sequence[float]]:
    """Return the ring with its first position repeated at the end if needed."""
    ring = list(ring)
    if ring and not is_closed(ring):
        ring.append(ring[0])
    return ring


def clean_rings(rings: Sequence[Sequence[Sequence[float]]]) -> List[List[Sequence[float]]]:
    """
    Polygon rings ready to serialize: valid positions only, each ring closed.

    Holes shorter than a LinearRing (4 positions) are dropped. When the outer
    ring is too short the whole polygon is dropped and `[]` is returned.
    """
    out = []
    for i, ring in enumerate(rings or []):
        pts = close_ring([p for p in (ring or []) if is_valid_position(p)])
        if len(pts) >= 4:
            out.append(pts)
        elif i == 0:
            return []
    return out


def format_number(value: float) -> str:
    """Shortest round-tripping text for a coordinate value (integral floats lose '.0')."""
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    s = repr(float(value))
    return s[:-2] if s.endswith(".0") else s
