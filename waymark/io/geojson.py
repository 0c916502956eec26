"""
GeoJSON adapter.

Reading accepts three top-level shapes and normalises them to a
FeatureCollection:
- a FeatureCollection (its `features` member must be an array)
- a bare Feature
- a bare Geometry

Writing pretty-prints the collection, optionally with a `metadata` member.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

from waymark.core.errors import DecodeError, InputShapeError
from waymark.core.geometry import GEOMETRY_TYPES
from waymark.model import CollectionBuilder, FeatureCollection

logger = logging.getLogger(__name__)


def decode_text(data: bytes, what: str) -> str:
    """UTF-8 (with or without BOM) text, falling back to latin-1 for legacy exports."""
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.debug("%s is not UTF-8; decoding as latin-1", what)
        return data.decode("latin-1")


def _normalize_top_level(obj: Any, label: str) -> List[Any]:
    if not isinstance(obj, dict):
        raise InputShapeError(f"GeoJSON must be an object, got {type(obj).__name__}: {label}")

    gtype = obj.get("type")
    if gtype == "FeatureCollection":
        features = obj.get("features")
        if not isinstance(features, list):
            raise InputShapeError(f"FeatureCollection 'features' must be an array: {label}")
        return features
    if gtype == "Feature":
        return [obj]
    if gtype in GEOMETRY_TYPES:
        return [{"type": "Feature", "geometry": obj, "properties": {}}]
    raise InputShapeError(f"Not a FeatureCollection, Feature or Geometry (type={gtype!r}): {label}")


def read_geojson(data: bytes, *, label: str = "geojson", trace: Any = None) -> FeatureCollection:
    """
    Parse GeoJSON bytes.

    Raises:
        DecodeError: the payload is not JSON
        InputShapeError: the top-level object is not FeatureCollection-like
    """
    text = decode_text(data, label)
    if not text.strip():
        raise DecodeError(f"GeoJSON file is empty: {label}")
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Invalid JSON ({e.msg} at line {e.lineno}): {label}")

    raw_features = _normalize_top_level(obj, label)
    builder = CollectionBuilder(label, "geojson", trace=trace)
    for i, raw in enumerate(raw_features):
        if not isinstance(raw, dict):
            builder.drop(f"feature {i}: not an object")
            continue
        props = raw.get("properties")
        if props is None:
            props = {}
        elif not isinstance(props, dict):
            props = {"value": props}
        builder.add(raw.get("geometry"), props, feature_id=raw.get("id"), index=i)

    if isinstance(obj, dict) and obj.get("type") == "FeatureCollection":
        name = obj.get("name")
        if isinstance(name, str) and name:
            builder.extra["name"] = name
    return builder.build()


def write_geojson(fc: FeatureCollection, *, include_metadata: bool = False) -> bytes:
    payload: Dict[str, Any] = fc.to_geojson(include_metadata=include_metadata)
    return json.dumps(payload, indent=2, ensure_ascii=False, default=str).encode("utf-8")
