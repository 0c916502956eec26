"""Timeline command for Waymark CLI."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from waymark.commands.inspect_cmd import load_uploads, print_grouping_errors
from waymark.core.config import load_config
from waymark.core.normalization import epoch_ms_to_iso, to_epoch_ms
from waymark.core.temporal import TimelinePlayer
from waymark.core.workspace import Workspace

console = Console()


class TimeMode(str, Enum):
    full = "full"
    fixed = "fixed"
    moving = "moving"
    cumulative = "cumulative"


def parse_time_option(value: Optional[str], label: str) -> Optional[float]:
    """Epoch milliseconds or an ISO-8601 string."""
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        pass
    ms = to_epoch_ms(value)
    if ms is None:
        console.print(f"[bold red]❌ Error:[/] {label} must be epoch milliseconds or ISO-8601, got {value!r}")
        raise typer.Exit(1)
    return ms


def timeline(
    files: List[Path] = typer.Argument(..., help="Input files"),
    field: Optional[str] = typer.Option(None, "--field", "-f", help="Timestamp property (default: first detected)"),
    mode: Optional[TimeMode] = typer.Option(None, "--mode", "-m", help="Time scope mode"),
    start: Optional[str] = typer.Option(None, "--start", help="Brush start (ms or ISO-8601)"),
    end: Optional[str] = typer.Option(None, "--end", help="Brush end (ms or ISO-8601)"),
    cursor: Optional[str] = typer.Option(None, "--cursor", help="Playback cursor (ms or ISO-8601)"),
    steps: int = typer.Option(0, "--steps", help="Simulate this many playback ticks"),
    tick_ms: float = typer.Option(100.0, "--tick-ms", help="Clock interval per simulated tick"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to waymark_config.yaml"),
):
    """Show the time domain of the inputs and how many features each view keeps.

    \b
    Examples:
      waymark timeline tracks.gpx
      waymark timeline events.csv --field observed_at --mode fixed --start 2024-01-01 --end 2024-02-01
      waymark timeline tracks.gpx --mode moving --start 0 --end 600000 --steps 20
    """
    cfg = load_config(config_file)
    uploads = load_uploads(files)
    ws = Workspace()
    print_grouping_errors(ws.add_uploads(uploads))

    for ds in ws.datasets():
        outcome = ws.parse(ds.uid)
        if outcome.error is not None:
            console.print(f"[yellow]⚠[/] {ds.label}: {outcome.error.message}")

    if field is None:
        candidates = ws.time_fields()
        if not candidates:
            console.print("[yellow]No timestamp properties found[/]")
            raise typer.Exit(1)
        field = candidates[0]
        console.print(f"[dim]Using time field: {field}[/]")

    collections = ws.visible_collections()
    player = TimelinePlayer(
        collections,
        field,
        mode=mode.value if mode else cfg.time_mode,
        range_start=parse_time_option(start, "--start"),
        range_end=parse_time_option(end, "--end"),
        window_sec=cfg.window_sec,
        speed=cfg.speed,
    )
    if player.domain is None:
        console.print(f"[yellow]No parseable values for '{field}'; nothing to filter[/]")
        raise typer.Exit(1)

    at = parse_time_option(cursor, "--cursor")
    player.seek(at if at is not None else player.domain.end)

    domain = player.domain
    console.print(f"\n[bold]Domain:[/] {epoch_ms_to_iso(domain.start)} → {epoch_ms_to_iso(domain.end)}")

    def _report(title: str) -> None:
        bounds = player.bounds()
        table = Table(title=title)
        table.add_column("Dataset", style="cyan")
        table.add_column("Total", justify="right")
        table.add_column("Shown", justify="right")
        for src, view in zip(player.collections, player.filtered()):
            table.add_row(src.label, str(len(src.features)), str(len(view.features)))
        console.print(table)
        if bounds is not None:
            window = "empty" if bounds.empty else f"{epoch_ms_to_iso(bounds.lower)} → {epoch_ms_to_iso(bounds.upper)}"
            console.print(f"  mode={player.mode} cursor={epoch_ms_to_iso(player.cursor)} window={window}")

    _report(f"Timeline ({player.mode})")

    if steps > 0:
        player.seek(domain.start)
        player.play()
        for i in range(steps):
            player.tick(tick_ms)
            console.print(
                f"  tick {i + 1}: cursor={epoch_ms_to_iso(player.cursor)} "
                f"shown={sum(len(v.features) for v in player.filtered())}"
                + ("" if player.playing else " [dim](stopped)[/]")
            )
            if not player.playing:
                break
