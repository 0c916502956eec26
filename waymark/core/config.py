"""
Configuration for Waymark.

Settings are read from a YAML file (`waymark_config.yaml` / `.yml` in the
current directory, or an explicit path) and layered over built-in defaults.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from waymark.core.export import DEFAULT_FILENAME_PREFIX, ExportConfig
from waymark.core.temporal import MODES
from waymark.io.raster import DEFAULT_TILE_URL, DEFAULT_USER_AGENT, tile_url_for


CONFIG_FILENAMES = ("waymark_config.yaml", "waymark_config.yml")


class WaymarkConfig:
    """Export defaults, raster tile settings and playback settings."""

    def __init__(self, config_file: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_file: Optional path to user config YAML file
        """
        self.filename_prefix = DEFAULT_FILENAME_PREFIX
        self.export: Dict[str, Any] = {}
        self.tile_url = DEFAULT_TILE_URL
        self.user_agent = DEFAULT_USER_AGENT
        self.window_sec = 60.0
        self.speed = 1.0
        self.time_mode = "cumulative"
        self.source: Optional[Path] = None

        if config_file and Path(config_file).exists():
            self.load_user_config(Path(config_file))

    def load_user_config(self, config_file: Path) -> None:
        """
        Load user configuration from YAML file.

        Format:
        filename_prefix: waymark_
        export:
          format: kml
          nameField: title
        raster:
          tile_url: https://tile.openstreetmap.org/{z}/{x}/{y}.png
          user_agent: my-app/1.0
        time:
          window_sec: 60
          speed: 1

        Raises:
            ValueError: invalid YAML or invalid values
        """
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                user_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file: {e}")
        except OSError as e:
            raise ValueError(f"Error loading config file: {e}")

        # Handle empty config file
        if user_config is None:
            user_config = {}
        if not isinstance(user_config, dict):
            raise ValueError("Config file must contain a mapping at the top level")

        if user_config.get("filename_prefix") is not None:
            self.filename_prefix = str(user_config["filename_prefix"])

        export = user_config.get("export") or {}
        if not isinstance(export, dict):
            raise ValueError("`export` must be a mapping of export options")
        self.export = dict(export)

        raster = user_config.get("raster") or {}
        if not isinstance(raster, dict):
            raise ValueError("`raster` must be a mapping")
        if raster.get("tile_url"):
            tile_url = str(raster["tile_url"])
            if not all(k in tile_url for k in ("{z}", "{x}", "{y}")):
                raise ValueError(f"raster.tile_url must contain {{z}}, {{x}} and {{y}}: {tile_url}")
            tile_url_for(tile_url, 0, 0, 0)
            self.tile_url = tile_url
        if raster.get("user_agent"):
            self.user_agent = str(raster["user_agent"])

        time_cfg = user_config.get("time") or {}
        if not isinstance(time_cfg, dict):
            raise ValueError("`time` must be a mapping")
        try:
            if "window_sec" in time_cfg:
                self.window_sec = float(time_cfg["window_sec"])
            if "speed" in time_cfg:
                self.speed = float(time_cfg["speed"])
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid time setting: {e}")
        if "mode" in time_cfg:
            mode = str(time_cfg["mode"]).lower()
            if mode not in MODES:
                raise ValueError(f"Invalid time.mode '{mode}' (expected one of: {', '.join(MODES)})")
            self.time_mode = mode

        self.source = config_file

    def export_config(self, **overrides: Any) -> ExportConfig:
        """ExportConfig from the file's `export` section, with command-line overrides on top."""
        base: Dict[str, Any] = {
            "filename_prefix": self.filename_prefix,
            "tile_url": self.tile_url,
            "user_agent": self.user_agent,
        }
        base.update(self.export)
        return ExportConfig.from_mapping(base, **{k: v for k, v in overrides.items() if v is not None})

    def export_template(self, output_path: Path) -> None:
        """
        Write a commented configuration template.

        Args:
            output_path: Path to write the template file (.yaml)
        """
        yaml_content = f"""# =============================================================================
# Waymark Configuration
# =============================================================================

# Prefix for every exported filename: <prefix><label>.<ext>
filename_prefix: {DEFAULT_FILENAME_PREFIX}

# Default export options. Keys may be snake_case, kebab-case or camelCase.
export:
  format: geojson               # geojson, csv, kml, kmz, gpx, shapefile, geotiff, png
  crs: EPSG:4326                # advisory; output is always WGS84
  csv_geometry_mode: wkt        # wkt or latlng
  include_metadata: false
  name_field: name              # KML/KMZ/GPX placemark names
  raster_width: 1024
  raster_height: 768
  raster_concurrency: 6
  raster_tile_timeout_ms: 7000
  basemap: false
  geotiff_samples: 3            # 3 (RGB) or 4 (RGBA)
  geotiff_bits: 8               # 8 or 16
  geotiff_compression: none     # none, lzw, deflate

# Basemap tiles for PNG exports with basemap: true
raster:
  tile_url: {DEFAULT_TILE_URL}
  user_agent: {DEFAULT_USER_AGENT}

# Timeline playback
time:
  mode: cumulative              # full, fixed, moving, cumulative
  window_sec: 60
  speed: 1
"""
        output_path = Path(output_path)
        with open(output_path, "w", encoding="utf-8") as f:
            f.write(yaml_content)

    def get_config_summary(self) -> Dict[str, Any]:
        export = self.export_config()
        return {
            "source": str(self.source) if self.source else None,
            "filename_prefix": self.filename_prefix,
            "export_format": export.format,
            "csv_geometry_mode": export.csv_geometry_mode,
            "name_field": export.name_field,
            "raster_size": f"{export.raster_width}x{export.raster_height}",
            "tile_url": self.tile_url,
            "user_agent": self.user_agent,
            "time_mode": self.time_mode,
            "window_sec": self.window_sec,
            "speed": self.speed,
        }


def find_config_file() -> Optional[Path]:
    for name in CONFIG_FILENAMES:
        candidate = Path(name)
        if candidate.exists():
            return candidate
    return None


def load_config(config_file: Optional[Path] = None) -> WaymarkConfig:
    """
    Load configuration.

    Args:
        config_file: Optional path to a config file (.yaml or .yml).
                    If None, looks for 'waymark_config.yaml' in current directory.

    Returns:
        WaymarkConfig instance
    """
    if config_file is None:
        config_file = find_config_file()
    return WaymarkConfig(config_file)
