"""
KMZ adapter: a zip around a KML document.

Reading routes the first `.kml` entry (ignoring macOS resource forks) into the
KML reader. Writing stores `doc.kml` plus a `metadata.json` sidecar.
"""

from __future__ import annotations

import io
import json
import logging
import zipfile
from datetime import datetime, timezone
from typing import Any, List, Optional

from waymark.core.errors import DecodeError, InputShapeError
from waymark.core.symbology import Symbology
from waymark.io.kml import build_kml, read_kml
from waymark.model import FeatureCollection

logger = logging.getLogger(__name__)


def find_kml_entry(zf: zipfile.ZipFile) -> Optional[str]:
    for info in zf.infolist():
        name = info.filename
        if info.is_dir() or name.startswith("__MACOSX"):
            continue
        if name.lower().endswith(".kml"):
            return name
    return None


def read_kmz(data: bytes, *, label: str = "kmz", trace: Any = None) -> FeatureCollection:
    """
    Read KMZ bytes.

    Raises:
        DecodeError: not a zip archive, or the KML inside is malformed
        InputShapeError: the archive holds no KML document
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as e:
        raise DecodeError(f"Invalid KMZ archive ({e}): {label}")

    with zf:
        entry = find_kml_entry(zf)
        if entry is None:
            raise InputShapeError(f"No KML file found in KMZ archive: {label}")
        logger.debug("%s: reading KML entry %s", label, entry)
        try:
            kml_bytes = zf.read(entry)
        except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError) as e:
            raise DecodeError(f"Could not decompress {entry} ({e}): {label}")

    fc = read_kml(kml_bytes, label=label, source_kind="kmz", trace=trace)
    fc.metadata.extra["kml_entry"] = entry
    return fc


def write_kmz(
    fc: FeatureCollection,
    *,
    name_field: str = "name",
    symbology: Optional[Symbology] = None,
    warnings: Optional[List[str]] = None,
) -> bytes:
    kml_text = build_kml(fc, name_field=name_field, symbology=symbology, warnings=warnings)
    meta = {
        "exportedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "featureCount": len(fc.features),
        "metadata": fc.metadata.to_dict(),
    }
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=6) as zf:
        zf.writestr("doc.kml", kml_text)
        zf.writestr("metadata.json", json.dumps(meta, indent=2, ensure_ascii=False, default=str))
    return buf.getvalue()
