"""
Diagnostics helpers.

Inventories and data-quality checks for parsed collections. They pair with
JSONL trace logs to make ingest problems easy to reproduce.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from waymark.core.geometry import iter_positions
from waymark.model import FeatureCollection, RasterDataset

NAME_KEYS = ("name", "Name", "NAME", "title", "label")


def collection_inventory(fc: FeatureCollection) -> Dict[str, Any]:
    meta = fc.metadata
    return {
        "label": meta.label,
        "source_kind": meta.source_kind,
        "feature_count": len(fc.features),
        "dropped_count": meta.dropped_count,
        "geometry_types": dict(meta.geometry_types),
        "bbox": meta.bbox.to_list() if meta.bbox else None,
        "time_fields": list(meta.time_fields),
        "property_keys": fc.property_keys(),
        "warning_count": len(meta.warnings),
    }


def raster_inventory(raster: RasterDataset) -> Dict[str, Any]:
    meta = raster.metadata
    return {
        "label": raster.label,
        "width": meta.width,
        "height": meta.height,
        "samples_per_pixel": meta.samples_per_pixel,
        "bits_per_sample": list(meta.bits_per_sample),
        "bbox": meta.bbox.to_list() if meta.bbox else None,
        "preview_size": list(raster.preview_size),
        "source_bytes": len(raster.source_bytes),
    }


def _feature_name(properties: Dict[str, Any]) -> Optional[str]:
    for key in NAME_KEYS:
        value = properties.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def check_data_quality(fc: FeatureCollection) -> Dict[str, Any]:
    """
    Check data quality and return warnings.

    Returns a dict with:
    - empty_names: list of (index, geometry_type) for features with no name-like property
    - duplicate_names: list of (name, count, indices) for names appearing multiple times
    - suspicious_coords: list of (index, name, lon, lat, reason)
    - empty_geometries: list of (index, geometry_type) with no positions
    """
    warnings: Dict[str, Any] = {
        "empty_names": [],
        "duplicate_names": [],
        "suspicious_coords": [],
        "empty_geometries": [],
    }

    name_counts: Dict[str, List[int]] = {}
    for i, feature in enumerate(fc.features):
        props = feature.properties or {}
        name = _feature_name(props)
        if name is None or name.lower() in ("untitled", "unnamed"):
            warnings["empty_names"].append((i, feature.geometry_type))
        else:
            name_counts.setdefault(name, []).append(i)

        positions: List[Tuple[float, float]] = [
            (p[0], p[1]) for p in iter_positions(feature.geometry or {})
        ]
        if not positions:
            warnings["empty_geometries"].append((i, feature.geometry_type))
            continue

        # Null island: only flag each feature once
        for lon, lat in positions:
            if abs(lat) < 0.001 and abs(lon) < 0.001:
                warnings["suspicious_coords"].append(
                    (i, name, lon, lat, "Near (0,0) - possible default/invalid coordinate")
                )
                break

    for name, indices in name_counts.items():
        if len(indices) > 1:
            warnings["duplicate_names"].append((name, len(indices), indices[:3]))  # Show first 3

    return warnings
