"""Tests for raster rendering and basemap compositing (waymark/io/raster.py)."""

import asyncio
import io

import httpx
import numpy as np
import pytest
from PIL import Image

from waymark.core.errors import DownstreamIOError, InputShapeError, RenderCancelledError
from waymark.core.symbology import Symbology
from waymark.core.trace import MemoryTrace
from waymark.io.raster import (
    BasemapCompositor,
    RasterStyle,
    RenderJob,
    read_back,
    render_basemap_png,
    render_geotiff_canvas,
    render_svg,
    render_vector_png,
    tile_url_for,
)
from waymark.model import Feature, FeatureCollection

TILE_URL = "https://tiles.test/{z}/{x}/{y}.png"


def _fc(features, label="layer"):
    return FeatureCollection.create(features, label=label, source_kind="geojson")


@pytest.fixture
def square():
    return _fc(
        [
            Feature({"type": "Polygon", "coordinates": [[[-1, -1], [1, -1], [1, 1], [-1, 1], [-1, -1]]]}, {"kind": "a"}),
        ]
    )


@pytest.fixture
def two_points():
    return _fc(
        [
            Feature({"type": "Point", "coordinates": [-1, -1]}, {}),
            Feature({"type": "Point", "coordinates": [1, 1]}, {}),
        ]
    )


def _tile_png(color=(0, 0, 255, 255)):
    buf = io.BytesIO()
    Image.new("RGBA", (256, 256), color).save(buf, format="PNG")
    return buf.getvalue()


class TestVectorRender:
    def test_svg_shapes(self, square, two_points):
        svg, scene = render_svg(square, width=200, height=100)
        assert svg.startswith("<svg")
        assert 'fill-rule="evenodd"' in svg
        assert " Z" in svg
        svg, scene = render_svg(two_points, width=200, height=100)
        assert svg.count("<circle") == 2
        assert len(scene.shapes) == 2

    def test_points_outside_mercator_band_are_dropped(self):
        fc = _fc(
            [
                Feature({"type": "Point", "coordinates": [0, 89.5]}, {}),
                Feature({"type": "Point", "coordinates": [0, 10]}, {}),
            ]
        )
        _, scene = render_svg(fc)
        assert scene.dropped_points == 1
        assert len(scene.shapes) == 1

    def test_png_fills_polygon_with_symbology_colour(self, square):
        sym = Symbology.categorical("kind", {"a": "#00ff00"})
        image, _ = render_vector_png(square, width=100, height=100, symbology=sym)
        assert image.size == (100, 100)
        r, g, b, a = image.getpixel((50, 50))
        assert (r, g, b) == (0, 255, 0)
        assert a > 0
        assert image.getpixel((1, 1))[3] == 0

    def test_empty_collection_is_rejected(self):
        with pytest.raises(InputShapeError):
            render_vector_png(_fc([]))

    def test_bad_size_is_rejected(self, square):
        with pytest.raises(InputShapeError):
            render_svg(square, width=0, height=10)


def test_geotiff_canvas_matches_aspect(square):
    pixels, bbox = render_geotiff_canvas(square, width=200, height=100)
    assert pixels.shape == (100, 200, 4)
    assert pixels.dtype == np.uint8
    assert bbox.width / bbox.height == pytest.approx(2.0)
    assert pixels[50, 100, 3] > 0


def test_read_back_returns_rgba_pixels():
    pixels = read_back(Image.new("RGB", (3, 2), (1, 2, 3)))
    assert pixels.shape == (2, 3, 4)


class TestBasemap:
    def _compositor(self, handler, **kwargs):
        return BasemapCompositor(tile_url=TILE_URL, transport=httpx.MockTransport(handler), **kwargs)

    def test_all_tiles_pasted(self, two_points):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, content=_tile_png())

        render = asyncio.run(
            render_basemap_png(two_points, width=256, height=256, zoom=2, compositor=self._compositor(handler))
        )
        assert render.zoom == 2
        assert render.tiles_total == 4
        assert render.tiles_failed == 0
        assert len(requests) == 4
        assert requests[0].headers["User-Agent"].startswith("waymark/")
        assert render.image.getpixel((250, 5)) == (0, 0, 255, 255)

    def test_partial_failure_leaves_gap(self, two_points):
        trace = MemoryTrace()

        def handler(request):
            if request.url.path == "/2/1/1.png":
                return httpx.Response(404)
            return httpx.Response(200, content=_tile_png())

        render = asyncio.run(
            render_basemap_png(two_points, width=256, height=256, zoom=2, compositor=self._compositor(handler, trace=trace))
        )
        assert render.tiles_failed == 1
        assert "tile 2/1/1 failed" in render.diagnostics[0]
        assert render.image.getpixel((5, 5))[3] == 0
        assert render.image.getpixel((250, 250)) == (0, 0, 255, 255)
        assert [e["tile"] for e in trace.of("raster.tile.failed")] == ["2/1/1"]

    def test_undecodable_tile_counts_as_failure(self, two_points):
        def handler(request):
            return httpx.Response(200, content=b"not an image")

        with pytest.raises(DownstreamIOError, match="all 4 tile"):
            asyncio.run(render_basemap_png(two_points, width=256, height=256, zoom=2, compositor=self._compositor(handler)))

    def test_timeout(self, two_points):
        async def handler(request):
            await asyncio.sleep(1.0)
            return httpx.Response(200, content=_tile_png())

        compositor = self._compositor(handler, tile_timeout_ms=20)
        with pytest.raises(DownstreamIOError) as exc:
            asyncio.run(render_basemap_png(two_points, width=256, height=256, zoom=2, compositor=compositor))
        assert "timed out" in exc.value.message

    def test_cancel(self, two_points):
        async def handler(request):
            await asyncio.sleep(5.0)
            return httpx.Response(200, content=_tile_png())

        async def run():
            job = RenderJob(two_points, self._compositor(handler), width=256, height=256, zoom=2)
            await asyncio.sleep(0.05)
            job.cancel()
            assert job.cancelled
            with pytest.raises(RenderCancelledError):
                await job.result()
            assert job.done()

        asyncio.run(run())

    def test_style_background(self, two_points):
        def handler(request):
            return httpx.Response(200, content=_tile_png((0, 0, 0, 0)))

        style = RasterStyle(background=(255, 255, 255, 255))
        render = asyncio.run(
            render_basemap_png(two_points, width=256, height=256, zoom=2, compositor=self._compositor(handler), style=style)
        )
        assert render.image.getpixel((250, 5)) == (255, 255, 255, 255)


def test_tile_url_for():
    assert tile_url_for(TILE_URL, 3, 1, 2) == "https://tiles.test/3/1/2.png"
    with pytest.raises(InputShapeError):
        tile_url_for("https://{s}.tiles.test/{z}/{x}/{y}.png", 3, 1, 2)
    with pytest.raises(InputShapeError):
        tile_url_for("https://tiles.test/{0}/{x}/{y}.png", 3, 1, 2)
