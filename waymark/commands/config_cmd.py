"""Config command for Waymark CLI."""

from pathlib import Path
from typing import Optional
import typer
from rich.console import Console

from waymark.core.config import WaymarkConfig, load_config
from waymark.core.errors import WaymarkError

app = typer.Typer()
console = Console()


@app.command("show")
def show(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to a config file"),
):
    """Show current configuration."""
    try:
        cfg = load_config(config_file)
        summary = cfg.get_config_summary()
    except (WaymarkError, ValueError) as e:
        console.print(f"[bold red]❌ Invalid configuration:[/] {e}")
        raise typer.Exit(1)

    console.print("\n[bold]Current Configuration:[/]")
    console.print(f"  Source: [cyan]{summary['source'] or 'built-in defaults'}[/]")
    console.print(f"  Filename prefix: [cyan]{summary['filename_prefix']}[/]")
    console.print(f"  Export format: [cyan]{summary['export_format']}[/]")
    console.print(f"  CSV geometry: [cyan]{summary['csv_geometry_mode']}[/]")
    console.print(f"  Name field: [cyan]{summary['name_field']}[/]")
    console.print(f"  Raster size: [cyan]{summary['raster_size']}[/]")
    console.print(f"  Tile URL: [cyan]{summary['tile_url']}[/]")
    console.print(f"  User agent: [cyan]{summary['user_agent']}[/]")
    console.print(f"  Time mode: [cyan]{summary['time_mode']}[/]")
    console.print(f"  Playback: [cyan]{summary['window_sec']}s window × {summary['speed']}[/]")
    console.print()


@app.command("export")
def export(
    output_path: Path = typer.Option(Path("waymark_config.yaml"), "--output", "-o", help="Where to write the template"),
):
    """Export configuration template."""
    WaymarkConfig().export_template(output_path)
    console.print(f"[bold green]✔[/] Configuration template exported to [underline]{output_path}[/]")
    console.print("[dim]Edit this file to change export defaults[/]")


@app.command("validate")
def validate(config_file: Path = typer.Argument(..., help="Config file to validate")):
    """Validate a configuration file."""
    if not config_file.exists():
        console.print(f"[bold red]❌ Invalid configuration:[/] File not found: {config_file}")
        raise typer.Exit(1)
    try:
        cfg = load_config(config_file)
        cfg.export_config().validate()
    except (WaymarkError, ValueError) as e:
        console.print(f"[bold red]❌ Invalid configuration:[/] {e}")
        raise typer.Exit(1)
    console.print(f"[bold green]✔[/] Configuration file is valid: [underline]{config_file}[/]")
    summary = cfg.get_config_summary()
    console.print(f"  Export format: {summary['export_format']}")
    console.print(f"  Time mode: {summary['time_mode']}")
