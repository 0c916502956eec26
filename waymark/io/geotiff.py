"""
GeoTIFF adapter (tifffile + Pillow).

Reading decodes the first image into a `RasterDataset`: georeferencing tags,
a PNG preview of at most 512x512 pixels, and the untouched source bytes for
later re-export. Raster datasets never pass through the vector serializers.

Writing turns an RGBA canvas into an interleaved RGB(A) GeoTIFF whose
ModelPixelScale / ModelTiepoint describe a WGS84 bbox.
"""

from __future__ import annotations

import io
import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import tifffile
from PIL import Image

from waymark.core.errors import DecodeError, DownstreamIOError, InputShapeError
from waymark.core.geometry import BBox
from waymark.model import RasterDataset, RasterMetadata

logger = logging.getLogger(__name__)


TAG_MODEL_PIXEL_SCALE = 33550
TAG_MODEL_TIEPOINT = 33922
TAG_MODEL_TRANSFORMATION = 34264
TAG_GEO_KEY_DIRECTORY = 34735
TAG_GEO_DOUBLE_PARAMS = 34736
TAG_GEO_ASCII_PARAMS = 34737

PREVIEW_MAX = 512

COMPRESSION = {"none": None, "lzw": "lzw", "deflate": "zlib"}

# GTModelType=Geographic, GTRasterType=PixelIsArea, GeographicType=EPSG:4326
WGS84_GEO_KEYS = (1, 1, 0, 3, 1024, 0, 1, 2, 1025, 0, 1, 1, 2048, 0, 1, 4326)


def _tag_value(page: Any, code: int) -> Any:
    tag = page.tags.get(code)
    return tag.value if tag is not None else None


def parse_geo_keys(directory: Optional[Sequence[int]], doubles: Any = None, ascii_params: Any = None) -> Dict[int, Any]:
    """Decode a GeoKeyDirectory into {key_id: value}."""
    if not directory or len(directory) < 4:
        return {}
    keys: Dict[int, Any] = {}
    count = int(directory[3])
    for i in range(count):
        base = 4 + i * 4
        if base + 3 >= len(directory):
            break
        key_id, location, n, offset = (int(v) for v in directory[base : base + 4])
        if location == 0:
            keys[key_id] = offset
        elif location == TAG_GEO_DOUBLE_PARAMS and doubles is not None:
            vals = [float(v) for v in list(doubles)[offset : offset + n]]
            keys[key_id] = vals[0] if n == 1 and vals else vals
        elif location == TAG_GEO_ASCII_PARAMS and ascii_params is not None:
            text = ascii_params if isinstance(ascii_params, str) else bytes(ascii_params).decode("latin-1")
            keys[key_id] = text[offset : offset + n].rstrip("|\x00")
    return keys


def _georef(page: Any, width: int, height: int) -> Dict[str, Any]:
    scale = _tag_value(page, TAG_MODEL_PIXEL_SCALE)
    ties = _tag_value(page, TAG_MODEL_TIEPOINT)
    matrix = _tag_value(page, TAG_MODEL_TRANSFORMATION)
    out: Dict[str, Any] = {"pixel_scale": None, "tiepoints": None, "origin": None, "resolution": None, "bbox": None}

    if scale is not None:
        out["pixel_scale"] = [float(v) for v in scale]
    if ties is not None:
        out["tiepoints"] = [float(v) for v in ties]

    if out["pixel_scale"] and out["tiepoints"] and len(out["tiepoints"]) >= 6:
        sx, sy = out["pixel_scale"][0], out["pixel_scale"][1]
        sz = out["pixel_scale"][2] if len(out["pixel_scale"]) > 2 else 0.0
        i, j, _k, x, y, z = out["tiepoints"][:6]
        out["origin"] = [x - i * sx, y + j * sy, z]
        out["resolution"] = [sx, -sy, sz]
    elif matrix is not None and len(matrix) >= 16:
        m = [float(v) for v in matrix]
        out["origin"] = [m[3], m[7], m[11]]
        out["resolution"] = [m[0], m[5], m[10]]

    if out["origin"] and out["resolution"]:
        x0, y0 = out["origin"][0], out["origin"][1]
        x1 = x0 + out["resolution"][0] * width
        y1 = y0 + out["resolution"][1] * height
        west, east = min(x0, x1), max(x0, x1)
        south, north = min(y0, y1), max(y0, y1)
        # Only geographic extents make a WGS84 bbox; projected rasters keep origin/resolution only.
        if -180.0 <= west <= east <= 180.0 and -90.0 <= south <= north <= 90.0:
            out["bbox"] = BBox(west, south, east, north)
    return out


def _band_stack(arr: np.ndarray, samples: int) -> np.ndarray:
    """Return pixels as (height, width, bands)."""
    while arr.ndim > 3 and arr.shape[0] == 1:
        arr = arr[0]
    if arr.ndim == 2:
        return arr[:, :, None]
    if arr.ndim == 3:
        if samples > 1 and arr.shape[0] == samples and arr.shape[-1] != samples:
            return np.moveaxis(arr, 0, -1)
        return arr
    raise DecodeError(f"Unsupported raster layout with shape {arr.shape}")


def to_byte(values: np.ndarray) -> np.ndarray:
    """Map samples into 0..255: NaN -> 0, everything else rounded and clamped."""
    f = np.asarray(values, dtype=np.float64)
    f = np.where(np.isfinite(f), f, 0.0)
    return np.clip(np.rint(f), 0, 255).astype(np.uint8)


def render_preview(pixels: np.ndarray, samples: int) -> Tuple[bytes, Tuple[int, int]]:
    """PNG preview of min(512, w) x min(512, h), grayscale for one band, RGB for three or more."""
    height, width = pixels.shape[0], pixels.shape[1]
    out_w, out_h = min(PREVIEW_MAX, width), min(PREVIEW_MAX, height)
    rows = (np.arange(out_h) * height // out_h).astype(int)
    cols = (np.arange(out_w) * width // out_w).astype(int)
    sampled = pixels[rows][:, cols]

    bands = sampled.shape[2]
    if samples == 1 or bands == 1:
        img = Image.fromarray(to_byte(sampled[:, :, 0]))
    elif bands >= 3:
        img = Image.fromarray(to_byte(sampled[:, :, :3]))
    else:
        # Two bands: first band fills the channels the data cannot.
        b0 = sampled[:, :, 0]
        rgb = np.stack([b0, sampled[:, :, 1], b0], axis=-1)
        img = Image.fromarray(to_byte(rgb))

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue(), (out_w, out_h)


def read_geotiff(data: bytes, *, label: str = "geotiff", trace: Any = None) -> RasterDataset:
    """
    Decode the first image of a (Geo)TIFF.

    Raises:
        DecodeError: unreadable or empty TIFF
    """
    if not data:
        raise DecodeError(f"TIFF file is empty: {label}")
    try:
        with tifffile.TiffFile(io.BytesIO(data)) as tif:
            if not tif.pages:
                raise DecodeError(f"No image found in TIFF: {label}")
            page = tif.pages[0]
            width, height = int(page.imagewidth), int(page.imagelength)
            samples = int(page.samplesperpixel)
            bits = page.bitspersample
            georef = _georef(page, width, height)
            geo_keys = parse_geo_keys(
                _tag_value(page, TAG_GEO_KEY_DIRECTORY),
                _tag_value(page, TAG_GEO_DOUBLE_PARAMS),
                _tag_value(page, TAG_GEO_ASCII_PARAMS),
            )
            arr = page.asarray()
    except DecodeError:
        raise
    except Exception as e:
        raise DecodeError(f"Unable to parse TIFF ({e}): {label}") from e

    if width <= 0 or height <= 0:
        raise DecodeError(f"TIFF has no pixels: {label}")

    pixels = _band_stack(arr, samples)
    preview, preview_size = render_preview(pixels, samples)

    bits_list: List[int] = list(bits) if isinstance(bits, (tuple, list)) else [int(bits)] * samples
    meta = RasterMetadata(
        width=width,
        height=height,
        samples_per_pixel=samples,
        bits_per_sample=bits_list,
        origin=georef["origin"],
        resolution=georef["resolution"],
        pixel_scale=georef["pixel_scale"],
        tiepoints=georef["tiepoints"],
        geo_keys=geo_keys,
        bbox=georef["bbox"],
    )
    if trace is not None:
        trace.emit({"event": "ingest.raster", "label": label, "width": width, "height": height, "bands": samples})
    logger.debug("%s: %dx%d raster, %d band(s)", label, width, height, samples)
    return RasterDataset(
        label=label,
        metadata=meta,
        preview_png=preview,
        preview_size=preview_size,
        source_bytes=data,
    )


def write_geotiff(
    rgba: np.ndarray,
    bbox: BBox,
    *,
    samples: int = 3,
    bits_per_sample: int = 8,
    compression: str = "none",
    description: str = "Waymark export",
) -> bytes:
    """
    Encode an RGBA canvas (height x width x 4, uint8) as a georeferenced TIFF.

    16-bit output scales each byte by 257 so 255 maps to 65535.

    Raises:
        InputShapeError: bad canvas shape, bbox or option value
        DownstreamIOError: the TIFF encoder failed
    """
    if rgba.ndim != 3 or rgba.shape[2] < 4:
        raise InputShapeError(f"Expected an RGBA canvas, got shape {rgba.shape}")
    if samples not in (3, 4):
        raise InputShapeError(f"samples must be 3 or 4, got {samples}")
    if bits_per_sample not in (8, 16):
        raise InputShapeError(f"bits_per_sample must be 8 or 16, got {bits_per_sample}")
    key = (compression or "none").lower()
    if key not in COMPRESSION:
        raise InputShapeError(f"Unsupported compression {compression!r} (none, lzw, deflate)")
    if not all(math.isfinite(v) for v in bbox.to_list()):
        raise InputShapeError("GeoTIFF bbox must be finite")

    height, width = rgba.shape[0], rgba.shape[1]
    pixels = np.ascontiguousarray(rgba[:, :, :samples], dtype=np.uint8)
    if bits_per_sample == 16:
        pixels = pixels.astype(np.uint16) * np.uint16(257)

    scale = ((bbox.east - bbox.west) / width, (bbox.north - bbox.south) / height, 0.0)
    tiepoint = (0.0, 0.0, 0.0, bbox.west, bbox.north, 0.0)
    extratags = [
        (TAG_MODEL_PIXEL_SCALE, "d", 3, scale, True),
        (TAG_MODEL_TIEPOINT, "d", 6, tiepoint, True),
        (TAG_GEO_KEY_DIRECTORY, "H", len(WGS84_GEO_KEYS), WGS84_GEO_KEYS, True),
    ]

    buf = io.BytesIO()
    try:
        tifffile.imwrite(
            buf,
            pixels,
            photometric="rgb",
            planarconfig="contig",
            compression=COMPRESSION[key],
            extrasamples=(2,) if samples == 4 else None,  # unassociated alpha
            description=description,
            metadata=None,
            extratags=extratags,
        )
    except Exception as e:
        raise DownstreamIOError(f"GeoTIFF encode failed ({e})") from e
    return buf.getvalue()
