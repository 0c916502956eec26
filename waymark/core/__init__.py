"""Core functionality modules for Waymark."""

__all__ = [
    "config",
    "coordinates",
    "diagnostics",
    "errors",
    "export",
    "geometry",
    "grouping",
    "ingest",
    "mercator",
    "normalization",
    "symbology",
    "temporal",
    "trace",
    "workspace",
]
