"""Waymark - convert vector and raster GIS files through a GeoJSON normal form."""

__version__ = "0.1.0"
__description__ = "Convert GIS datasets between Shapefile, GeoJSON, KML/KMZ, GPX, CSV/Excel, GeoTIFF and PNG"

from waymark.cli import app, main

__all__ = ["app", "main", "__version__"]
