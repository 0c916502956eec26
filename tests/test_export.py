"""Tests for export dispatch (waymark/core/export.py)."""

import asyncio
import io
import json
import zipfile

import httpx
import numpy as np
import pytest
from PIL import Image

from waymark.core.errors import ErrorKind, InputShapeError, UnsupportedFormatError
from waymark.core.export import (
    FORMATS,
    ExportConfig,
    build_filename,
    export_collection,
    export_collection_async,
    export_raster_dataset,
    run_export,
)
from waymark.core.geometry import BBox
from waymark.core.grouping import group_files
from waymark.core.trace import MemoryTrace
from waymark.io.geotiff import read_geotiff, write_geotiff
from waymark.model import Feature, FeatureCollection, UploadedFile


def _fc(features=None, label="sites.geojson"):
    if features is None:
        features = [
            Feature({"type": "Point", "coordinates": [-95.8, 29.5]}, {"name": "A"}),
            Feature({"type": "Point", "coordinates": [2.35, 48.85]}, {"name": "B"}),
        ]
    return FeatureCollection.create(features, label=label, source_kind="geojson")


def _dataset(name, data):
    (ds,) = group_files([UploadedFile.from_bytes(name, data)]).datasets
    return ds


def _tile_png():
    buf = io.BytesIO()
    Image.new("RGBA", (256, 256), (0, 0, 255, 255)).save(buf, format="PNG")
    return buf.getvalue()


class TestBuildFilename:
    def test_prefix_and_extension(self):
        assert build_filename("My Data.csv", "geojson") == "waymark_My_Data.geojson"
        assert build_filename("parcels", "shapefile") == "waymark_parcels.zip"
        assert build_filename("r", "geotiff", prefix="") == "r.tif"

    def test_stem_overrides_label(self):
        assert build_filename("ignored", "kml", stem="trail: loop") == "waymark_trail_loop.kml"

    def test_unknown_format(self):
        with pytest.raises(UnsupportedFormatError):
            build_filename("x", "dwg")


class TestExportConfig:
    def test_defaults(self):
        config = ExportConfig()
        assert config.format == "geojson"
        assert config.csv_geometry_mode == "wkt"
        assert (config.raster_width, config.raster_height) == (1024, 768)
        config.validate()

    def test_from_mapping_folds_key_styles_and_aliases(self):
        config = ExportConfig.from_mapping(
            {
                "format": "CSV",
                "geometryModeForCSV": "latlng",
                "raster-width": "640",
                "includeMetadata": "yes",
                "compression": "Deflate",
                "bogus": 1,
            }
        )
        assert config.format == "csv"
        assert config.csv_geometry_mode == "latlng"
        assert config.raster_width == 640
        assert config.include_metadata is True
        assert config.geotiff_compression == "deflate"

    def test_none_overrides_are_ignored(self):
        config = ExportConfig.from_mapping({"format": "kml"}, format=None, name_field="title")
        assert config.format == "kml"
        assert config.name_field == "title"

    def test_bad_integer(self):
        with pytest.raises(InputShapeError):
            ExportConfig.from_mapping({"width": "wide"})

    @pytest.mark.parametrize(
        "changes,exc",
        [
            ({"format": "dwg"}, UnsupportedFormatError),
            ({"csv_geometry_mode": "xy"}, InputShapeError),
            ({"raster_width": 0}, InputShapeError),
            ({"raster_concurrency": 0}, InputShapeError),
            ({"geotiff_compression": "jpeg"}, InputShapeError),
        ],
    )
    def test_validate(self, changes, exc):
        with pytest.raises(exc):
            ExportConfig().replace(**changes).validate()

    def test_to_dict(self):
        assert ExportConfig(format="gpx").to_dict()["format"] == "gpx"


class TestExportCollection:
    def test_geojson(self):
        artifact = export_collection(_fc(), ExportConfig(include_metadata=True))
        payload = json.loads(artifact.data)
        assert payload["type"] == "FeatureCollection"
        assert len(payload["features"]) == 2
        assert payload["metadata"]["label"] == "sites.geojson"
        assert artifact.filename == "waymark_sites.geojson"
        assert artifact.mime == "application/geo+json"
        assert artifact.feature_count == 2
        assert artifact.size == len(artifact.data)

    def test_csv_latlng(self):
        artifact = export_collection(_fc(), ExportConfig(format="csv", csv_geometry_mode="latlng"))
        lines = artifact.data.decode("utf-8").splitlines()
        assert lines == ["name,lng,lat", "A,-95.8,29.5", "B,2.35,48.85"]

    @pytest.mark.parametrize("fmt", ["kml", "kmz", "gpx", "shapefile"])
    def test_vector_formats(self, fmt):
        artifact = export_collection(_fc(), ExportConfig(format=fmt))
        assert artifact.format == fmt
        assert artifact.data
        if fmt in ("kmz", "shapefile"):
            assert zipfile.is_zipfile(io.BytesIO(artifact.data))

    def test_shapefile_layer_named_after_label(self):
        artifact = export_collection(_fc(), ExportConfig(format="shapefile"))
        with zipfile.ZipFile(io.BytesIO(artifact.data)) as zf:
            assert "sites.shp" in zf.namelist()

    @pytest.mark.parametrize("fmt", ["gpx", "shapefile", "geotiff", "png"])
    def test_formats_that_need_features(self, fmt):
        with pytest.raises(InputShapeError):
            export_collection(_fc([]), ExportConfig(format=fmt))

    def test_empty_collection_still_exports_as_geojson_and_csv(self):
        assert json.loads(export_collection(_fc([]), ExportConfig()).data)["features"] == []
        assert export_collection(_fc([]), ExportConfig(format="csv")).data.decode().strip() == "geometry"

    def test_crs_is_advisory(self):
        artifact = export_collection(_fc(), ExportConfig.from_mapping({"crs": "epsg:3857"}))
        assert artifact.warnings == ["CRS EPSG:3857 is advisory; output is WGS84 (EPSG:4326)"]
        artifact = export_collection(_fc(), ExportConfig(crs="EPSG:9999"))
        assert "Unknown CRS" in artifact.warnings[0]

    def test_geotiff(self):
        artifact = export_collection(
            _fc(), ExportConfig(format="geotiff", raster_width=64, raster_height=32, geotiff_compression="deflate")
        )
        raster = read_geotiff(artifact.data)
        assert (raster.metadata.width, raster.metadata.height) == (64, 32)
        assert raster.metadata.bbox.contains(-95.8, 29.5)
        assert artifact.filename.endswith(".tif")

    def test_vector_png(self):
        artifact = export_collection(_fc(), ExportConfig(format="png", raster_width=120, raster_height=80))
        image = Image.open(io.BytesIO(artifact.data))
        assert image.size == (120, 80)
        assert artifact.mime == "image/png"

    def test_basemap_png_reports_failed_tiles(self):
        def handler(request):
            if request.url.path == "/2/1/1.png":
                return httpx.Response(500)
            return httpx.Response(200, content=_tile_png())

        trace = MemoryTrace()
        config = ExportConfig(
            format="png",
            basemap=True,
            raster_width=256,
            raster_height=256,
            raster_zoom=2,
            tile_url="https://tiles.test/{z}/{x}/{y}.png",
        )
        fc = _fc(
            [
                Feature({"type": "Point", "coordinates": [-1, -1]}, {}),
                Feature({"type": "Point", "coordinates": [1, 1]}, {}),
            ]
        )
        artifact = asyncio.run(
            export_collection_async(fc, config, transport=httpx.MockTransport(handler), trace=trace)
        )
        assert "1 of 4 basemap tile(s) failed" in artifact.warnings
        assert len(artifact.diagnostics) == 1
        assert len(trace.of("raster.tile.failed")) == 1
        (event,) = trace.of("export.artifact")
        assert event["format"] == "png"
        assert event["diagnostics"] == 1


class TestRasterDataset:
    @pytest.fixture
    def raster(self):
        rgba = np.full((4, 4, 4), 255, dtype=np.uint8)
        return read_geotiff(write_geotiff(rgba, BBox(0, 0, 1, 1)), label="dem.tif")

    def test_geotiff_reexports_source_bytes(self, raster):
        artifact = export_raster_dataset(raster, ExportConfig(format="geotiff"))
        assert artifact.data == raster.source_bytes
        assert artifact.filename == "waymark_dem.tif"

    def test_png_uses_preview(self, raster):
        assert export_raster_dataset(raster, ExportConfig(format="png")).data == raster.preview_png

    def test_vector_formats_rejected(self, raster):
        with pytest.raises(UnsupportedFormatError):
            export_raster_dataset(raster, ExportConfig(format="kml"))


class TestRunExport:
    def test_parses_lazily_and_exports(self):
        ds = _dataset("points.csv", b"name,lat,lon\nA,29.5,-95.8\n")
        trace = MemoryTrace()
        outcome = run_export(ds, ExportConfig(format="kml"), trace=trace)
        assert outcome.ok
        assert outcome.artifact.filename == "waymark_points.kml"
        assert ds.is_parsed
        assert [e["event"] for e in trace.events] == ["ingest.dataset", "export.artifact"]

    def test_parse_error_is_returned(self):
        outcome = run_export(_dataset("broken.geojson", b"{nope"), ExportConfig())
        assert not outcome.ok
        assert outcome.error.kind is ErrorKind.DECODE

    def test_unsupported_kind(self):
        outcome = run_export(_dataset("plan.dwg", b"\x00"), ExportConfig())
        assert outcome.error.kind is ErrorKind.UNSUPPORTED

    def test_export_error_is_returned(self):
        trace = MemoryTrace()
        ds = _dataset("table.csv", b"name,age\nA,1\n")
        outcome = run_export(ds, ExportConfig(format="gpx"), trace=trace)
        assert outcome.error.kind is ErrorKind.INPUT_SHAPE
        assert trace.of("export.artifact")[0]["error"]["kind"] == "input_shape"

    def test_invalid_config_is_returned(self):
        outcome = run_export(_dataset("a.geojson", b'{"type":"Point","coordinates":[1,2]}'), ExportConfig(format="svgz"))
        assert outcome.error.kind is ErrorKind.UNSUPPORTED

    def test_bad_tile_template_is_returned(self):
        ds = _dataset("a.geojson", b'{"type":"Point","coordinates":[1,2]}')
        config = ExportConfig(format="png", basemap=True, tile_url="https://{s}.tile.example/{z}/{x}/{y}.png")
        outcome = run_export(ds, config)
        assert outcome.error.kind is ErrorKind.INPUT_SHAPE
        assert "{s}" in outcome.error.message

    def test_raster_dataset(self):
        tif = write_geotiff(np.zeros((2, 2, 4), dtype=np.uint8), BBox(0, 0, 1, 1))
        outcome = run_export(_dataset("scan.tif", tif), ExportConfig(format="geotiff"))
        assert outcome.ok
        assert outcome.artifact.data == tif


def test_every_format_has_a_path():
    assert set(FORMATS) == {"geojson", "csv", "kml", "kmz", "gpx", "shapefile", "geotiff", "png"}
