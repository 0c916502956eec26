"""Tests for the GeoTIFF adapter (waymark/io/geotiff.py)."""

import io

import numpy as np
import pytest
import tifffile
from PIL import Image

from waymark.core.errors import DecodeError, InputShapeError
from waymark.core.geometry import BBox
from waymark.io.geotiff import (
    TAG_MODEL_PIXEL_SCALE,
    TAG_MODEL_TIEPOINT,
    parse_geo_keys,
    read_geotiff,
    render_preview,
    to_byte,
    write_geotiff,
)


def _canvas(width=8, height=4):
    rgba = np.zeros((height, width, 4), dtype=np.uint8)
    rgba[:, :, 0] = 200
    rgba[:, :, 3] = 255
    return rgba


class TestWriteGeoTIFF:
    def test_georeferencing_tags(self):
        data = write_geotiff(_canvas(), BBox(-10.0, 40.0, 10.0, 50.0))
        with tifffile.TiffFile(io.BytesIO(data)) as tif:
            page = tif.pages[0]
            assert page.samplesperpixel == 3
            assert tuple(page.tags[TAG_MODEL_PIXEL_SCALE].value) == (2.5, 2.5, 0.0)
            assert tuple(page.tags[TAG_MODEL_TIEPOINT].value) == (0.0, 0.0, 0.0, -10.0, 50.0, 0.0)

    def test_rgba_16_bit_deflate(self):
        data = write_geotiff(_canvas(), BBox(0, 0, 1, 1), samples=4, bits_per_sample=16, compression="deflate")
        with tifffile.TiffFile(io.BytesIO(data)) as tif:
            page = tif.pages[0]
            assert page.samplesperpixel == 4
            assert page.compression == 8
            arr = page.asarray()
        assert arr.dtype == np.uint16
        assert arr[0, 0, 0] == 200 * 257
        assert arr[0, 0, 3] == 65535

    @pytest.mark.parametrize(
        "kwargs",
        [{"samples": 2}, {"bits_per_sample": 32}, {"compression": "jpeg"}],
    )
    def test_bad_options(self, kwargs):
        with pytest.raises(InputShapeError):
            write_geotiff(_canvas(), BBox(0, 0, 1, 1), **kwargs)

    def test_bad_canvas(self):
        with pytest.raises(InputShapeError):
            write_geotiff(np.zeros((4, 4), dtype=np.uint8), BBox(0, 0, 1, 1))


class TestReadGeoTIFF:
    def test_reads_back_written_raster(self):
        data = write_geotiff(_canvas(), BBox(-10.0, 40.0, 10.0, 50.0), compression="lzw")
        raster = read_geotiff(data, label="r.tif")
        meta = raster.metadata
        assert (meta.width, meta.height, meta.samples_per_pixel) == (8, 4, 3)
        assert meta.bits_per_sample == [8, 8, 8]
        assert meta.bbox.to_list() == [-10.0, 40.0, 10.0, 50.0]
        assert meta.origin == [-10.0, 50.0, 0.0]
        assert meta.resolution == [2.5, -2.5, 0.0]
        assert meta.geo_keys[2048] == 4326
        assert raster.source_bytes == data
        assert raster.preview_size == (8, 4)
        assert Image.open(io.BytesIO(raster.preview_png)).mode == "RGB"

    def test_plain_tiff_without_georeferencing(self):
        buf = io.BytesIO()
        tifffile.imwrite(buf, np.arange(600 * 20, dtype=np.uint16).reshape(600, 20))
        raster = read_geotiff(buf.getvalue())
        assert raster.metadata.bbox is None
        assert raster.preview_size == (20, 512)
        assert Image.open(io.BytesIO(raster.preview_png)).mode == "L"

    @pytest.mark.parametrize("data", [b"", b"II*\x00garbage"])
    def test_unreadable(self, data):
        with pytest.raises(DecodeError):
            read_geotiff(data)


def test_to_byte_clamps_and_zeroes_nan():
    out = to_byte(np.array([-5.0, 12.4, 300.0, np.nan]))
    assert out.tolist() == [0, 12, 255, 0]


def test_two_band_preview_is_rgb():
    pixels = np.zeros((3, 3, 2), dtype=np.uint8)
    png, size = render_preview(pixels, 2)
    assert size == (3, 3)
    assert Image.open(io.BytesIO(png)).mode == "RGB"


def test_parse_geo_keys_with_double_and_ascii_params():
    directory = [1, 1, 0, 2, 2057, 34736, 1, 0, 3073, 34737, 6, 0]
    keys = parse_geo_keys(directory, doubles=[6378137.0], ascii_params="WGS 84|")
    assert keys == {2057: 6378137.0, 3073: "WGS 84"}
