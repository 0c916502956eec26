"""
Web Mercator (EPSG:3857) pixel math for slippy-map tiles, plus the plate
carrée transform used when the output must line up with degree-based tags.

World pixel coordinates follow the tile convention: 256 * 2**zoom pixels
across, origin at the north-west corner.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

from waymark.core.geometry import BBox

TILE_SIZE = 256
MAX_LATITUDE = 85.05112878
MAX_ZOOM = 19


def clamp_latitude(lat: float) -> float:
    return max(-MAX_LATITUDE, min(MAX_LATITUDE, lat))


def in_mercator_band(lat: float) -> bool:
    return -MAX_LATITUDE <= lat <= MAX_LATITUDE


def world_size(zoom: int) -> float:
    return TILE_SIZE * float(2 ** zoom)


def lonlat_to_world(lon: float, lat: float, zoom: int) -> Tuple[float, float]:
    """Project to world pixels at `zoom`; latitude is clamped to the Mercator band."""
    size = world_size(zoom)
    phi = math.radians(clamp_latitude(lat))
    x = (lon + 180.0) / 360.0 * size
    y = (1.0 - math.log(math.tan(phi) + 1.0 / math.cos(phi)) / math.pi) / 2.0 * size
    return x, y


def world_to_lonlat(x: float, y: float, zoom: int) -> Tuple[float, float]:
    size = world_size(zoom)
    lon = x / size * 360.0 - 180.0
    n = math.pi - 2.0 * math.pi * y / size
    lat = math.degrees(math.atan(math.sinh(n)))
    return lon, lat


def tile_for(lon: float, lat: float, zoom: int) -> Tuple[int, int]:
    """Tile indices containing a position, clipped to the valid range."""
    x, y = lonlat_to_world(lon, lat, zoom)
    last = 2 ** zoom - 1
    return (
        min(last, max(0, int(x // TILE_SIZE))),
        min(last, max(0, int(y // TILE_SIZE))),
    )


def tile_range(bbox: BBox, zoom: int) -> Tuple[int, int, int, int]:
    """(x_min, y_min, x_max, y_max) tile indices covering `bbox`, inclusive."""
    x0, y0 = tile_for(bbox.west, bbox.north, zoom)
    x1, y1 = tile_for(bbox.east, bbox.south, zoom)
    return x0, y0, x1, y1


def choose_zoom(bbox: BBox, width: int, height: int, max_zoom: int = MAX_ZOOM) -> int:
    """Largest zoom (<= max_zoom) at which the bbox fits inside width x height pixels."""
    for zoom in range(max_zoom, -1, -1):
        x0, y0 = lonlat_to_world(bbox.west, bbox.north, zoom)
        x1, y1 = lonlat_to_world(bbox.east, bbox.south, zoom)
        if abs(x1 - x0) <= width and abs(y1 - y0) <= height:
            return zoom
    return 0


@dataclass(frozen=True)
class MercatorViewport:
    """A width x height window of the Mercator world at a fixed zoom."""

    zoom: int
    width: int
    height: int
    origin_x: float
    origin_y: float

    @classmethod
    def around(cls, bbox: BBox, width: int, height: int, zoom: Optional[int] = None) -> "MercatorViewport":
        """Viewport centred on the bbox centre; zoom is fitted when not given."""
        if zoom is None:
            zoom = choose_zoom(bbox, width, height)
        zoom = max(0, min(MAX_ZOOM, int(zoom)))
        cx, cy = lonlat_to_world(*bbox.center, zoom)
        return cls(zoom=zoom, width=width, height=height, origin_x=cx - width / 2.0, origin_y=cy - height / 2.0)

    def to_pixel(self, lon: float, lat: float) -> Tuple[float, float]:
        x, y = lonlat_to_world(lon, lat, self.zoom)
        return x - self.origin_x, y - self.origin_y

    def tiles(self) -> Iterator[Tuple[int, int, float, float]]:
        """
        Yield (tile_x, tile_y, offset_x, offset_y) for every tile touching the
        viewport. Tile x wraps around the antimeridian; rows outside the world
        are skipped.
        """
        count = 2 ** self.zoom
        first_x = int(math.floor(self.origin_x / TILE_SIZE))
        last_x = int(math.floor((self.origin_x + self.width - 1) / TILE_SIZE))
        first_y = int(math.floor(self.origin_y / TILE_SIZE))
        last_y = int(math.floor((self.origin_y + self.height - 1) / TILE_SIZE))
        for ty in range(first_y, last_y + 1):
            if ty < 0 or ty >= count:
                continue
            for tx in range(first_x, last_x + 1):
                yield tx % count, ty, tx * TILE_SIZE - self.origin_x, ty * TILE_SIZE - self.origin_y


@dataclass(frozen=True)
class LinearViewport:
    """
    Plate carrée mapping of a bbox onto width x height pixels.

    Pixel (0, 0) is the north-west corner of the bbox and each pixel spans
    bbox.width / width degrees, matching ModelPixelScale / ModelTiepoint.
    """

    bbox: BBox
    width: int
    height: int

    def to_pixel(self, lon: float, lat: float) -> Tuple[float, float]:
        dx = self.bbox.width or 1.0
        dy = self.bbox.height or 1.0
        return (
            (lon - self.bbox.west) / dx * self.width,
            (self.bbox.north - lat) / dy * self.height,
        )


def fit_bbox(bbox: BBox, width: int, height: int, margin: float = 0.05) -> BBox:
    """
    Pad a bbox by `margin` on every side and widen the short axis so the
    result has the width:height aspect ratio of the target canvas.
    """
    box = bbox.padded()
    pad_x = box.width * margin
    pad_y = box.height * margin
    west, east = box.west - pad_x, box.east + pad_x
    south, north = box.south - pad_y, box.north + pad_y
    target = width / float(height)
    w, h = east - west, north - south
    if w / h < target:
        extra = (h * target - w) / 2.0
        west, east = west - extra, east + extra
    else:
        extra = (w / target - h) / 2.0
        south, north = south - extra, north + extra
    return BBox(max(-180.0, west), max(-90.0, south), min(180.0, east), min(90.0, north))


@dataclass(frozen=True)
class FittedMercator:
    """
    Continuous Web Mercator fit of a bbox into width x height pixels, centred,
    with `padding` pixels kept clear on every side. Used when no tile grid is
    involved so the zoom does not need to be an integer.
    """

    bbox: BBox
    width: int
    height: int
    padding: float = 16.0

    def _frame(self) -> Tuple[float, float, float]:
        box = self.bbox.padded()
        x0, y0 = lonlat_to_world(box.west, box.north, 0)
        x1, y1 = lonlat_to_world(box.east, box.south, 0)
        avail_w = max(1.0, self.width - 2 * self.padding)
        avail_h = max(1.0, self.height - 2 * self.padding)
        scale = min(avail_w / max(x1 - x0, 1e-12), avail_h / max(y1 - y0, 1e-12))
        off_x = (self.width - (x1 - x0) * scale) / 2.0 - x0 * scale
        off_y = (self.height - (y1 - y0) * scale) / 2.0 - y0 * scale
        return scale, off_x, off_y

    def to_pixel(self, lon: float, lat: float) -> Tuple[float, float]:
        scale, off_x, off_y = self._frame()
        x, y = lonlat_to_world(lon, lat, 0)
        return x * scale + off_x, y * scale + off_y
