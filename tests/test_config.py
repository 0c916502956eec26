"""Tests for YAML configuration (waymark/core/config.py)."""

from pathlib import Path

import pytest
import yaml

from waymark.core.config import WaymarkConfig, find_config_file, load_config
from waymark.core.export import DEFAULT_FILENAME_PREFIX
from waymark.io.raster import DEFAULT_TILE_URL


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "waymark_config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_without_file():
    cfg = WaymarkConfig()
    assert cfg.filename_prefix == DEFAULT_FILENAME_PREFIX
    assert cfg.tile_url == DEFAULT_TILE_URL
    assert cfg.time_mode == "cumulative"
    assert cfg.source is None
    assert cfg.export_config().format == "geojson"


def test_missing_file_keeps_defaults(tmp_path: Path):
    cfg = WaymarkConfig(tmp_path / "nope.yaml")
    assert cfg.source is None


@pytest.mark.parametrize("text", ["", "null\n"])
def test_empty_yaml_keeps_defaults(tmp_path: Path, text):
    cfg = WaymarkConfig(_write(tmp_path, text))
    assert cfg.export == {}
    assert cfg.source is not None


def test_full_file(tmp_path: Path):
    path = _write(
        tmp_path,
        """
filename_prefix: ""
export:
  format: kml
  nameField: title
  raster-width: 640
raster:
  tile_url: https://tiles.example/{z}/{x}/{y}.png
  user_agent: test-agent/1.0
time:
  mode: Moving
  window_sec: 30
  speed: 2
""",
    )
    cfg = WaymarkConfig(path)
    assert cfg.filename_prefix == ""
    assert cfg.time_mode == "moving"
    assert (cfg.window_sec, cfg.speed) == (30.0, 2.0)
    export = cfg.export_config()
    assert export.format == "kml"
    assert export.name_field == "title"
    assert export.raster_width == 640
    assert export.tile_url == "https://tiles.example/{z}/{x}/{y}.png"
    assert export.user_agent == "test-agent/1.0"
    assert export.filename_prefix == ""


def test_overrides_beat_file_and_none_is_ignored(tmp_path: Path):
    cfg = WaymarkConfig(_write(tmp_path, "export:\n  format: kml\n  csv_geometry_mode: latlng\n"))
    export = cfg.export_config(format="gpx", csv_geometry_mode=None)
    assert export.format == "gpx"
    assert export.csv_geometry_mode == "latlng"


@pytest.mark.parametrize(
    "text,message",
    [
        ("export: [unclosed\n", "Invalid YAML"),
        ("- a\n- b\n", "mapping at the top level"),
        ("export: [1, 2]\n", "`export` must be a mapping"),
        ("raster: 3\n", "`raster` must be a mapping"),
        ("raster:\n  tile_url: https://tiles.example/{z}.png\n", "must contain"),
        ("raster:\n  tile_url: https://{s}.tiles.example/{z}/{x}/{y}.png\n", "must only use"),
        ("time:\n  window_sec: soon\n", "Invalid time setting"),
        ("time:\n  mode: sideways\n", "Invalid time.mode"),
    ],
)
def test_invalid_files(tmp_path: Path, text, message):
    with pytest.raises(ValueError, match=message):
        WaymarkConfig(_write(tmp_path, text))


def test_template_round_trips(tmp_path: Path):
    out = tmp_path / "template.yaml"
    WaymarkConfig().export_template(out)
    data = yaml.safe_load(out.read_text(encoding="utf-8"))
    assert data["export"]["format"] == "geojson"
    assert data["time"]["mode"] == "cumulative"
    cfg = WaymarkConfig(out)
    cfg.export_config().validate()
    assert cfg.tile_url == DEFAULT_TILE_URL


def test_summary(tmp_path: Path):
    summary = WaymarkConfig(_write(tmp_path, "export:\n  width: 800\n  height: 600\n")).get_config_summary()
    assert summary["raster_size"] == "800x600"
    assert summary["source"].endswith("waymark_config.yaml")
    assert summary["export_format"] == "geojson"


def test_find_and_load_from_cwd(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert find_config_file() is None
    assert load_config().source is None
    (tmp_path / "waymark_config.yml").write_text("export:\n  format: csv\n", encoding="utf-8")
    assert find_config_file() == Path("waymark_config.yml")
    assert load_config().export_config().format == "csv"
