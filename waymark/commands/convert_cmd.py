"""Convert command for Waymark CLI."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from waymark.commands.inspect_cmd import load_uploads, open_trace, print_grouping_errors
from waymark.core.config import load_config
from waymark.core.errors import WaymarkError
from waymark.core.symbology import Symbology
from waymark.core.workspace import Workspace
from waymark.utils.utils import ensure_output_dir, format_file_size

console = Console()


class ToFormat(str, Enum):
    geojson = "geojson"
    csv = "csv"
    kml = "kml"
    kmz = "kmz"
    gpx = "gpx"
    shapefile = "shapefile"
    geotiff = "geotiff"
    png = "png"


class CsvGeometry(str, Enum):
    wkt = "wkt"
    latlng = "latlng"


def _style_for(ws: Workspace, uid: str, color: Optional[str], color_by: Optional[str]) -> Optional[Symbology]:
    if color_by:
        fc = ws.collection(uid)
        if fc is None:
            return None
        values = [(f.properties or {}).get(color_by) for f in fc.features]
        return Symbology.from_values(color_by, values)
    if color:
        return Symbology.single(color)
    return None


def convert(
    files: List[Path] = typer.Argument(..., help="Input files (shapefile parts may be given together)"),
    to_format: Optional[ToFormat] = typer.Option(None, "--to", "-t", help="Target format (default: from config, else geojson)"),
    output_dir: Path = typer.Option(Path("."), "--output-dir", "-o", help="Directory for exported files"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to waymark_config.yaml"),
    csv_geometry: Optional[CsvGeometry] = typer.Option(None, "--csv-geometry", help="CSV geometry columns: wkt or latlng"),
    name_field: Optional[str] = typer.Option(None, "--name-field", help="Property used for KML/KMZ/GPX names"),
    stem: Optional[str] = typer.Option(None, "--stem", help="Output filename stem (default: dataset label)"),
    include_metadata: Optional[bool] = typer.Option(None, "--include-metadata/--no-include-metadata", help="Embed collection metadata in GeoJSON"),
    basemap: Optional[bool] = typer.Option(None, "--basemap/--no-basemap", help="Composite PNG output over web map tiles"),
    width: Optional[int] = typer.Option(None, "--width", help="Raster width in pixels"),
    height: Optional[int] = typer.Option(None, "--height", help="Raster height in pixels"),
    zoom: Optional[int] = typer.Option(None, "--zoom", help="Basemap zoom (default: fit)"),
    color: Optional[str] = typer.Option(None, "--color", help="Single colour for KML styles and rasters (#RRGGBB)"),
    color_by: Optional[str] = typer.Option(None, "--color-by", help="Colour features by the values of this property"),
    sheet: Optional[str] = typer.Option(None, "--sheet", help="Excel sheet to read"),
    trace_path: Optional[Path] = typer.Option(None, "--trace", help="Write a JSONL trace log to this path"),
):
    """Convert datasets to another format.

    Each input dataset is parsed into GeoJSON and written to the output
    directory as <prefix><label>.<ext>.

    \b
    Examples:
      waymark convert parcels.zip --to kml
      waymark convert tracks.gpx --to csv --csv-geometry latlng -o out/
      waymark convert sites.geojson --to png --basemap --width 800 --height 600
    """
    try:
        cfg = load_config(config_file)
        export_config = cfg.export_config(
            format=to_format.value if to_format else None,
            csv_geometry_mode=csv_geometry.value if csv_geometry else None,
            name_field=name_field,
            filename_stem=stem,
            include_metadata=include_metadata,
            basemap=basemap,
            raster_width=width,
            raster_height=height,
            raster_zoom=zoom,
        )
        export_config.validate()
    except (WaymarkError, ValueError) as e:
        console.print(f"\n[bold red]❌ Invalid options:[/] {e}")
        raise typer.Exit(1)

    uploads = load_uploads(files)
    out_dir = ensure_output_dir(output_dir)

    trace_ctx = open_trace(trace_path)
    failures = 0
    table = Table(title=f"Export → {export_config.format}")
    table.add_column("Dataset", style="cyan")
    table.add_column("Output")
    table.add_column("Features", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Notes")
    try:
        if trace_ctx:
            trace_ctx.emit({"event": "run.start", "command": "convert", "to": export_config.format})

        ws = Workspace(trace=trace_ctx)
        print_grouping_errors(ws.add_uploads(uploads))

        for ds in ws.datasets():
            if sheet:
                ws.parse(ds.uid, sheet=sheet)
            ws.set_style(ds.uid, _style_for(ws, ds.uid, color, color_by))
            outcome = ws.export(ds.uid, export_config)
            if not outcome.ok:
                failures += 1
                table.add_row(ds.label, "[red]failed[/]", "-", "-", f"[red]{outcome.error.message}[/]")
                continue
            artifact = outcome.artifact
            target = out_dir / artifact.filename
            target.write_bytes(artifact.data)
            notes = "; ".join(outcome.warnings[:3])
            if len(outcome.warnings) > 3:
                notes += f" (+{len(outcome.warnings) - 3} more)"
            table.add_row(ds.label, artifact.filename, str(artifact.feature_count), format_file_size(artifact.size), notes)
    finally:
        if trace_ctx:
            trace_ctx.close()

    console.print(table)
    console.print(f"\n[bold green]✔[/] Output directory: [underline]{out_dir}[/]")
    if failures:
        console.print(f"[bold red]{failures} dataset(s) failed[/]")
        raise typer.Exit(1)
