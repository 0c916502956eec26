"""Inspect command for Waymark CLI."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.tree import Tree

from waymark.core.diagnostics import check_data_quality, collection_inventory, raster_inventory
from waymark.core.grouping import kind_label
from waymark.core.ingest import ParseOutcome
from waymark.core.trace import TraceWriter
from waymark.core.workspace import Workspace
from waymark.model import Dataset, UploadedFile
from waymark.utils.utils import format_file_size, natural_sort_key

console = Console()


def load_uploads(files: List[Path]) -> List[UploadedFile]:
    uploads = []
    for path in files:
        if not path.exists():
            console.print(f"\n[bold red]❌ Error:[/] File not found: {path}")
            raise typer.Exit(1)
        uploads.append(UploadedFile.from_path(path))
    return uploads


def open_trace(trace_path: Optional[Path]) -> Optional[TraceWriter]:
    if trace_path is None:
        return None
    trace_path = trace_path.expanduser()
    trace_path.parent.mkdir(parents=True, exist_ok=True)
    return TraceWriter(trace_path)


def print_grouping_errors(errors: List[str]) -> None:
    for err in errors:
        console.print(f"[yellow]⚠[/] {err}")


def _dataset_node(ds: Dataset, outcome: ParseOutcome, quality: bool) -> Tree:
    node = Tree(
        f"📂 [bold]{ds.label}[/] [dim]({kind_label(ds.kind)}, {len(ds.files)} file(s), {format_file_size(ds.size)})[/]"
    )
    if outcome.error is not None:
        node.add(f"[red]❌ {outcome.error.kind.value}: {outcome.error.message}[/]")
    elif outcome.raster is not None:
        inv = raster_inventory(outcome.raster)
        node.add(f"🗺  {inv['width']}×{inv['height']} px, {inv['samples_per_pixel']} band(s), bits {inv['bits_per_sample']}")
        node.add(f"bbox: [cyan]{inv['bbox']}[/]")
    elif outcome.collection is not None:
        inv = collection_inventory(outcome.collection)
        kinds = ", ".join(f"{k} {v}" for k, v in inv["geometry_types"].items()) or "none"
        node.add(f"📍 {inv['feature_count']} feature(s): {kinds}")
        if inv["dropped_count"]:
            node.add(f"[yellow]{inv['dropped_count']} feature(s) dropped[/]")
        node.add(f"bbox: [cyan]{inv['bbox']}[/]")
        if inv["time_fields"]:
            node.add(f"time fields: [cyan]{', '.join(inv['time_fields'])}[/]")
        extra = outcome.collection.metadata.extra
        if extra.get("sheets"):
            node.add(f"sheets: {', '.join(extra['sheets'])} [dim](active: {extra.get('active_sheet')})[/]")
        if quality:
            report = check_data_quality(outcome.collection)
            q = node.add("[bold]Data quality[/]")
            q.add(f"empty names: {len(report['empty_names'])}")
            q.add(f"duplicate names: {len(report['duplicate_names'])}")
            q.add(f"suspicious coordinates: {len(report['suspicious_coords'])}")
            q.add(f"empty geometries: {len(report['empty_geometries'])}")
    for warning in outcome.warnings[:10]:
        node.add(f"[yellow]⚠ {warning}[/]")
    if len(outcome.warnings) > 10:
        node.add(f"[dim]… {len(outcome.warnings) - 10} more warning(s)[/]")
    return node


def inspect(
    files: List[Path] = typer.Argument(..., help="Files to inspect (shapefile parts may be given together)"),
    sheet: Optional[str] = typer.Option(None, "--sheet", help="Excel sheet to read"),
    quality: bool = typer.Option(False, "--quality/--no-quality", help="Run data-quality checks"),
    trace_path: Optional[Path] = typer.Option(None, "--trace", help="Write a JSONL trace log to this path"),
):
    """Group files into datasets, parse them and print a summary.

    \b
    Examples:
      waymark inspect parcels.zip
      waymark inspect roads.shp roads.dbf roads.shx roads.prj
      waymark inspect points.csv --quality
    """
    uploads = load_uploads(files)
    trace_ctx = open_trace(trace_path)
    try:
        ws = Workspace(trace=trace_ctx)
        print_grouping_errors(ws.add_uploads(uploads))
        if not len(ws):
            console.print("[yellow]No datasets found[/]")
            raise typer.Exit(1)

        failed = 0
        tree = Tree(f"🗂  [bold]{len(ws)} dataset(s)[/]")
        for ds in sorted(ws.datasets(), key=lambda d: natural_sort_key(d.label)):
            outcome = ws.parse(ds.uid, sheet=sheet)
            if not outcome.ok:
                failed += 1
            tree.add(_dataset_node(ds, outcome, quality))
        console.print(tree)
    finally:
        if trace_ctx:
            trace_ctx.close()

    if failed:
        raise typer.Exit(1)
