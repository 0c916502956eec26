#!/usr/bin/env python3
"""
Waymark - GIS format conversion
Main CLI entry point
"""

from __future__ import annotations

import logging

import typer
from rich.logging import RichHandler

# Import command modules
from waymark.commands import config_cmd, convert_cmd, inspect_cmd, timeline_cmd

app = typer.Typer(
    name="waymark",
    help="Convert GIS datasets between vector, tabular and raster formats",
    no_args_is_help=True,
    add_completion=True,
)

app.command(name="inspect", help="Group, parse and summarise input files")(inspect_cmd.inspect)
app.command(name="convert", help="Convert datasets to another format")(convert_cmd.convert)
app.command(name="timeline", help="Show the time domain and filtered feature counts")(timeline_cmd.timeline)

# Register command groups
app.add_typer(config_cmd.app, name="config", help="Manage configuration settings")


def setup_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
            force=True,
        )
    else:
        logging.basicConfig(level=logging.WARNING)


@app.callback()
def callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """
    Waymark - GIS format conversion

    Workflow:
      inspect   - Group files into datasets and summarise what parses
      convert   - Export datasets as GeoJSON, CSV, KML, KMZ, GPX, Shapefile, GeoTIFF or PNG
      timeline  - Explore timestamped features over time

    Utilities:
      config    - Manage configuration settings
    """
    setup_logging(verbose)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
