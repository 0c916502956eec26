"""
Raster rendering of a FeatureCollection.

Features are first projected into a `Scene` of pixel-space shapes, which is
then either serialised as SVG text or drawn onto a Pillow RGBA canvas.

Three canvases are produced from the same scene builder:
- the SVG/vector path: a continuous Web Mercator fit, no basemap
- the basemap composite: slippy-map tiles fetched with bounded concurrency,
  vector layer drawn on top at the tiles' Mercator offsets
- the GeoTIFF canvas: a plate carrée fit so degree-based geo tags describe
  the pixels exactly

In the Mercator paths, line and polygon vertices beyond +/-85.05112878 are
clamped to the band and points beyond it are dropped.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
from xml.sax.saxutils import quoteattr

import httpx
import numpy as np
from PIL import Image, ImageDraw, UnidentifiedImageError

from waymark.core.errors import DownstreamIOError, InputShapeError, RenderCancelledError
from waymark.core.geometry import BBox
from waymark.core.mercator import (
    TILE_SIZE,
    FittedMercator,
    LinearViewport,
    MercatorViewport,
    clamp_latitude,
    fit_bbox,
    in_mercator_band,
)
from waymark.core.symbology import Symbology
from waymark.model import FeatureCollection

logger = logging.getLogger(__name__)


RGBA = Tuple[int, int, int, int]

DEFAULT_TILE_URL = "https://tile.openstreetmap.org/{z}/{x}/{y}.png"
DEFAULT_USER_AGENT = "waymark/0.1 (+https://github.com/waymark)"
DEFAULT_CONCURRENCY = 6
DEFAULT_TILE_TIMEOUT_MS = 7000
FILL_ALPHA = 204


@dataclass
class RasterStyle:
    fill: RGBA = (255, 87, 71, FILL_ALPHA)
    stroke: RGBA = (255, 87, 71, 255)
    line_width: int = 1
    point_radius: int = 4
    background: RGBA = (255, 255, 255, 0)


@dataclass
class Shape:
    kind: str  # "point" | "line" | "polygon"
    # point: [(x, y)]; line: [(x, y), ...]; polygon: [[(x, y), ...], ...] rings
    coords: Any
    fill: RGBA
    stroke: RGBA


@dataclass
class Scene:
    width: int
    height: int
    shapes: List[Shape] = field(default_factory=list)
    dropped_points: int = 0


def _colors(props: Dict[str, Any], symbology: Optional[Symbology], style: RasterStyle) -> Tuple[RGBA, RGBA]:
    if symbology is None:
        return style.fill, style.stroke
    r, g, b = symbology.rgb_for(props)
    return (r, g, b, FILL_ALPHA), (r, g, b, 255)


def build_scene(
    fc: FeatureCollection,
    projection: Any,
    width: int,
    height: int,
    *,
    symbology: Optional[Symbology] = None,
    style: Optional[RasterStyle] = None,
    mercator: bool = True,
) -> Scene:
    """Project every feature through `projection.to_pixel(lon, lat)`."""
    style = style or RasterStyle()
    scene = Scene(width=width, height=height)

    def vertex(pos: Sequence[float]) -> Tuple[float, float]:
        lat = clamp_latitude(pos[1]) if mercator else pos[1]
        return projection.to_pixel(pos[0], lat)

    def point(pos: Sequence[float], fill: RGBA, stroke: RGBA) -> None:
        if mercator and not in_mercator_band(pos[1]):
            scene.dropped_points += 1
            return
        scene.shapes.append(Shape("point", [projection.to_pixel(pos[0], pos[1])], fill, stroke))

    def line(coords: Sequence[Sequence[float]], fill: RGBA, stroke: RGBA) -> None:
        if len(coords) >= 2:
            scene.shapes.append(Shape("line", [vertex(p) for p in coords], fill, stroke))

    def polygon(rings: Sequence[Sequence[Sequence[float]]], fill: RGBA, stroke: RGBA) -> None:
        px = [[vertex(p) for p in ring] for ring in rings if len(ring) >= 3]
        if px:
            scene.shapes.append(Shape("polygon", px, fill, stroke))

    def walk(geom: Optional[Dict[str, Any]], fill: RGBA, stroke: RGBA) -> None:
        if not geom:
            return
        gtype = geom.get("type")
        coords = geom.get("coordinates")
        if gtype == "Point":
            point(coords, fill, stroke)
        elif gtype == "MultiPoint":
            for p in coords or []:
                point(p, fill, stroke)
        elif gtype == "LineString":
            line(coords or [], fill, stroke)
        elif gtype == "MultiLineString":
            for part in coords or []:
                line(part, fill, stroke)
        elif gtype == "Polygon":
            polygon(coords or [], fill, stroke)
        elif gtype == "MultiPolygon":
            for poly in coords or []:
                polygon(poly, fill, stroke)
        elif gtype == "GeometryCollection":
            for member in geom.get("geometries") or []:
                walk(member, fill, stroke)

    for feature in fc.features:
        fill, stroke = _colors(feature.properties, symbology, style)
        walk(feature.geometry, fill, stroke)

    if scene.dropped_points:
        logger.info("%s: %d point(s) outside the Web Mercator band dropped", fc.label, scene.dropped_points)
    return scene


# SVG


def _svg_color(rgba: RGBA) -> str:
    return "#{:02x}{:02x}{:02x}".format(*rgba[:3])


def _svg_path(rings: Sequence[Sequence[Tuple[float, float]]], close: bool) -> str:
    parts = []
    for ring in rings:
        pts = " L ".join(f"{x:.2f} {y:.2f}" for x, y in ring)
        parts.append(f"M {pts}" + (" Z" if close else ""))
    return " ".join(parts)


def scene_to_svg(scene: Scene, style: Optional[RasterStyle] = None) -> str:
    style = style or RasterStyle()
    lines = [
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{scene.width}" height="{scene.height}" '
        f'viewBox="0 0 {scene.width} {scene.height}">'
    ]
    if style.background[3]:
        lines.append(
            f'  <rect width="100%" height="100%" fill="{_svg_color(style.background)}" '
            f'fill-opacity="{style.background[3] / 255:.3f}"/>'
        )
    for shape in scene.shapes:
        stroke = quoteattr(_svg_color(shape.stroke))
        if shape.kind == "point":
            x, y = shape.coords[0]
            lines.append(
                f'  <circle cx="{x:.2f}" cy="{y:.2f}" r="{style.point_radius}" fill={quoteattr(_svg_color(shape.fill))} '
                f'fill-opacity="{shape.fill[3] / 255:.3f}" stroke={stroke} stroke-width="{style.line_width}"/>'
            )
        elif shape.kind == "line":
            lines.append(
                f'  <path d="{_svg_path([shape.coords], close=False)}" fill="none" stroke={stroke} '
                f'stroke-width="{style.line_width}" stroke-linejoin="round" stroke-linecap="round"/>'
            )
        else:
            lines.append(
                f'  <path d="{_svg_path(shape.coords, close=True)}" fill={quoteattr(_svg_color(shape.fill))} '
                f'fill-opacity="{shape.fill[3] / 255:.3f}" fill-rule="evenodd" stroke={stroke} '
                f'stroke-width="{style.line_width}" stroke-linejoin="round"/>'
            )
    lines.append("</svg>")
    return "\n".join(lines) + "\n"


# Pillow


def draw_scene(scene: Scene, canvas: Image.Image, style: Optional[RasterStyle] = None) -> Image.Image:
    """Draw the scene over `canvas` (RGBA) and return the composited image."""
    style = style or RasterStyle()
    layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(layer)
    width = max(1, int(style.line_width))
    r = style.point_radius

    for shape in scene.shapes:
        if shape.kind == "polygon":
            # Even-odd fill through a mask so holes stay transparent.
            mask = Image.new("L", canvas.size, 0)
            mdraw = ImageDraw.Draw(mask)
            for i, ring in enumerate(shape.coords):
                mdraw.polygon(ring, fill=255 if i == 0 else 0)
            layer.paste(Image.new("RGBA", canvas.size, shape.fill), (0, 0), mask)
            for ring in shape.coords:
                draw.line(list(ring) + [ring[0]], fill=shape.stroke, width=width, joint="curve")
        elif shape.kind == "line":
            draw.line(shape.coords, fill=shape.stroke, width=width, joint="curve")
        else:
            x, y = shape.coords[0]
            draw.ellipse((x - r, y - r, x + r, y + r), fill=shape.fill, outline=shape.stroke, width=width)

    return Image.alpha_composite(canvas.convert("RGBA"), layer)


def encode_png(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    try:
        image.save(buf, format="PNG")
    except (OSError, ValueError) as e:
        raise DownstreamIOError(f"PNG encode failed ({e})") from e
    return buf.getvalue()


def _require_features(fc: FeatureCollection, what: str) -> BBox:
    if not fc.features or fc.bbox is None:
        raise InputShapeError(f"{what} export requires at least one feature with geometry: {fc.label}")
    return fc.bbox


def _check_size(width: int, height: int) -> None:
    if width <= 0 or height <= 0:
        raise InputShapeError(f"Raster size must be positive, got {width}x{height}")


def render_svg(
    fc: FeatureCollection,
    *,
    width: int = 1024,
    height: int = 768,
    symbology: Optional[Symbology] = None,
    style: Optional[RasterStyle] = None,
) -> Tuple[str, Scene]:
    """SVG text of the collection, fitted into width x height with Web Mercator."""
    _check_size(width, height)
    bbox = _require_features(fc, "SVG")
    scene = build_scene(fc, FittedMercator(bbox, width, height), width, height, symbology=symbology, style=style)
    return scene_to_svg(scene, style), scene


def render_vector_png(
    fc: FeatureCollection,
    *,
    width: int = 1024,
    height: int = 768,
    symbology: Optional[Symbology] = None,
    style: Optional[RasterStyle] = None,
) -> Tuple[Image.Image, Scene]:
    """The SVG path rasterised: same scene, drawn with Pillow instead of a browser canvas."""
    _check_size(width, height)
    style = style or RasterStyle()
    bbox = _require_features(fc, "PNG")
    scene = build_scene(fc, FittedMercator(bbox, width, height), width, height, symbology=symbology, style=style)
    canvas = Image.new("RGBA", (width, height), style.background)
    return draw_scene(scene, canvas, style), scene


def render_geotiff_canvas(
    fc: FeatureCollection,
    *,
    width: int = 1024,
    height: int = 1024,
    symbology: Optional[Symbology] = None,
    style: Optional[RasterStyle] = None,
) -> Tuple[np.ndarray, BBox]:
    """
    RGBA pixels (height x width x 4) on a plate carrée canvas plus the bbox
    those pixels cover. The bbox is the data envelope padded to the canvas
    aspect ratio, so one pixel spans the same number of degrees on both axes.
    """
    _check_size(width, height)
    style = style or RasterStyle()
    data_bbox = _require_features(fc, "GeoTIFF")
    bbox = fit_bbox(data_bbox, width, height)
    scene = build_scene(
        fc, LinearViewport(bbox, width, height), width, height, symbology=symbology, style=style, mercator=False
    )
    canvas = Image.new("RGBA", (width, height), style.background)
    image = draw_scene(scene, canvas, style)
    return np.asarray(image, dtype=np.uint8).copy(), bbox


# Basemap composite


@dataclass
class TileSpec:
    x: int
    y: int
    z: int
    offset: Tuple[int, int]
    url: str

    @property
    def key(self) -> str:
        return f"{self.z}/{self.x}/{self.y}"


@dataclass
class BasemapRender:
    image: Image.Image
    scene: Scene
    zoom: int
    tiles_total: int
    tiles_failed: int
    diagnostics: List[str] = field(default_factory=list)


def tile_url_for(tile_url: str, z: int, x: int, y: int) -> str:
    """
    Fill a `{z}/{x}/{y}` template.

    Raises:
        InputShapeError: the template uses placeholders other than z, x and y
    """
    try:
        return tile_url.format(z=z, x=x, y=y)
    except (KeyError, IndexError, ValueError) as e:
        raise InputShapeError(f"Tile URL template must only use {{z}}, {{x}} and {{y}} ({e!r}): {tile_url}") from e


def plan_tiles(viewport: MercatorViewport, tile_url: str) -> List[TileSpec]:
    return [
        TileSpec(x=tx, y=ty, z=viewport.zoom, offset=(int(round(ox)), int(round(oy))), url=tile_url_for(tile_url, viewport.zoom, tx, ty))
        for tx, ty, ox, oy in viewport.tiles()
    ]


async def fetch_tile(client: httpx.AsyncClient, tile: TileSpec) -> Image.Image:
    """
    Raises:
        httpx.HTTPError: transport failure or non-2xx status
        UnidentifiedImageError / OSError: body is not a decodable image
    """
    resp = await client.get(tile.url)
    resp.raise_for_status()
    img = Image.open(io.BytesIO(resp.content))
    img.load()
    return img.convert("RGBA")


class BasemapCompositor:
    """
    Fetches tiles with a queue runner: up to `concurrency` fetches in flight,
    the next one started as soon as any finishes. Each fetch has its own
    timeout; a failed tile leaves a transparent gap and a diagnostic line.
    """

    def __init__(
        self,
        *,
        tile_url: str = DEFAULT_TILE_URL,
        concurrency: int = DEFAULT_CONCURRENCY,
        tile_timeout_ms: int = DEFAULT_TILE_TIMEOUT_MS,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        trace: Any = None,
    ):
        self.tile_url = tile_url
        self.concurrency = max(1, int(concurrency))
        self.timeout = max(1, int(tile_timeout_ms)) / 1000.0
        self.user_agent = user_agent
        self.transport = transport
        self.trace = trace
        self.cancelled = False

    def _fail(self, tile: TileSpec, reason: str, diagnostics: List[str]) -> None:
        msg = f"tile {tile.key} failed: {reason}"
        diagnostics.append(msg)
        logger.debug(msg)
        if self.trace is not None:
            self.trace.emit({"event": "raster.tile.failed", "tile": tile.key, "url": tile.url, "reason": reason})

    async def _guarded(self, client: httpx.AsyncClient, tile: TileSpec) -> Image.Image:
        return await asyncio.wait_for(fetch_tile(client, tile), timeout=self.timeout)

    async def composite(self, canvas: Image.Image, tiles: Sequence[TileSpec]) -> Tuple[int, List[str]]:
        """Paste every fetched tile onto `canvas`; returns (failed_count, diagnostics)."""
        diagnostics: List[str] = []
        failed = 0
        queue = list(tiles)
        pending: Dict[asyncio.Task, TileSpec] = {}
        headers = {"User-Agent": self.user_agent}

        async with httpx.AsyncClient(headers=headers, transport=self.transport, follow_redirects=True) as client:
            try:
                while queue or pending:
                    if self.cancelled:
                        raise RenderCancelledError("Render cancelled")
                    while queue and len(pending) < self.concurrency:
                        tile = queue.pop(0)
                        pending[asyncio.ensure_future(self._guarded(client, tile))] = tile
                    done, _ = await asyncio.wait(list(pending), return_when=asyncio.FIRST_COMPLETED)
                    for task in done:
                        tile = pending.pop(task)
                        if self.cancelled:
                            continue
                        try:
                            img = task.result()
                        except asyncio.TimeoutError:
                            failed += 1
                            self._fail(tile, f"timed out after {self.timeout:g}s", diagnostics)
                        except httpx.HTTPError as e:
                            failed += 1
                            self._fail(tile, f"{type(e).__name__}: {e}", diagnostics)
                        except (UnidentifiedImageError, OSError) as e:
                            failed += 1
                            self._fail(tile, f"undecodable image ({e})", diagnostics)
                        else:
                            _paste_tile(canvas, img, tile.offset)
                if self.cancelled:
                    raise RenderCancelledError("Render cancelled")
            finally:
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
        return failed, diagnostics


def _paste_tile(canvas: Image.Image, tile: Image.Image, offset: Tuple[int, int]) -> None:
    if tile.size != (TILE_SIZE, TILE_SIZE):
        tile = tile.resize((TILE_SIZE, TILE_SIZE))
    ox, oy = offset
    # alpha_composite takes no negative destination; crop the tile instead.
    sx, sy = max(0, -ox), max(0, -oy)
    if sx >= TILE_SIZE or sy >= TILE_SIZE:
        return
    canvas.alpha_composite(tile, dest=(max(0, ox), max(0, oy)), source=(sx, sy))


def read_back(image: Image.Image) -> np.ndarray:
    """Pixel buffer of a finished canvas; an unreadable canvas is an error, never a blank image."""
    try:
        pixels = np.asarray(image.convert("RGBA"), dtype=np.uint8)
    except (OSError, ValueError) as e:
        raise DownstreamIOError(f"Rendered canvas could not be read back ({e})") from e
    if pixels.ndim != 3 or pixels.shape[0] != image.height or pixels.shape[1] != image.width:
        raise DownstreamIOError("Rendered canvas could not be read back")
    return pixels


async def render_basemap_png(
    fc: FeatureCollection,
    *,
    width: int = 1024,
    height: int = 768,
    zoom: Optional[int] = None,
    compositor: Optional[BasemapCompositor] = None,
    symbology: Optional[Symbology] = None,
    style: Optional[RasterStyle] = None,
) -> BasemapRender:
    """
    Basemap composite: tiles covering a width x height viewport centred on the
    collection's bbox, then the vector layer in one pass on the same canvas.

    Raises:
        InputShapeError: empty collection or bad size
        DownstreamIOError: every tile failed, or the canvas cannot be read back
        RenderCancelledError: the render was cancelled
    """
    _check_size(width, height)
    style = style or RasterStyle()
    bbox = _require_features(fc, "PNG")
    compositor = compositor or BasemapCompositor()
    viewport = MercatorViewport.around(bbox.padded(), width, height, zoom)
    tiles = plan_tiles(viewport, compositor.tile_url)
    logger.info("%s: compositing %d tile(s) at zoom %d", fc.label, len(tiles), viewport.zoom)

    canvas = Image.new("RGBA", (width, height), style.background)
    failed, diagnostics = await compositor.composite(canvas, tiles)
    if tiles and failed == len(tiles):
        raise DownstreamIOError(f"Basemap render failed: all {failed} tile(s) failed ({diagnostics[0]})")

    scene = build_scene(fc, viewport, width, height, symbology=symbology, style=style)
    image = draw_scene(scene, canvas, style)
    read_back(image)
    return BasemapRender(
        image=image,
        scene=scene,
        zoom=viewport.zoom,
        tiles_total=len(tiles),
        tiles_failed=failed,
        diagnostics=diagnostics,
    )


class RenderJob:
    """
    Handle over a running basemap render.

    `cancel()` abandons in-flight tile fetches; awaiting `result()` then raises
    `RenderCancelledError` and the partial canvas is never handed out.
    """

    def __init__(self, fc: FeatureCollection, compositor: BasemapCompositor, **kwargs: Any):
        self._compositor = compositor
        self._task: asyncio.Task = asyncio.ensure_future(render_basemap_png(fc, compositor=compositor, **kwargs))

    def cancel(self) -> None:
        self._compositor.cancelled = True
        self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._compositor.cancelled

    def done(self) -> bool:
        return self._task.done()

    async def result(self) -> BasemapRender:
        try:
            return await self._task
        except asyncio.CancelledError:
            if self._compositor.cancelled:
                raise RenderCancelledError("Render cancelled") from None
            raise
