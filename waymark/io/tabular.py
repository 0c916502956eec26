"""
CSV and Excel adapters.

Both decode to a list of row dicts with trimmed headers and plain Python
values (NaN -> None, numpy scalars -> int/float, timestamps -> ISO strings),
then hand the rows to the shared coordinate heuristics.

Writing emits CSV with either a WKT `geometry` column or `lng,lat` columns.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from shapely.errors import ShapelyError
from shapely.geometry import shape

from waymark.core.coordinates import WKT_EXPORT_COLUMN, rows_to_builder
from waymark.core.errors import CoordinateError, DecodeError, InputShapeError
from waymark.core.geometry import format_number
from waymark.io.geojson import decode_text
from waymark.model import CollectionBuilder, FeatureCollection

logger = logging.getLogger(__name__)


CSV_DELIMITERS = ",\t|;"


def sniff_delimiter(text: str) -> str:
    """Guess the delimiter among comma, tab, pipe and semicolon (comma if unsure)."""
    sample = "\n".join(text.splitlines()[:50])
    if not sample.strip():
        return ","
    try:
        return csv.Sniffer().sniff(sample, delimiters=CSV_DELIMITERS).delimiter
    except csv.Error:
        return ","


def plain_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and value != value:
        return None
    if isinstance(value, (pd.Timestamp, datetime, date)):
        return value.isoformat()
    return value


def frame_to_rows(df: pd.DataFrame) -> Tuple[List[str], List[Dict[str, Any]]]:
    """Trimmed headers and row dicts of plain values; fully blank rows are skipped."""
    headers = [str(col).strip() for col in df.columns]
    df = df.copy()
    df.columns = headers
    # First column wins when two headers trim to the same name.
    df = df.loc[:, ~pd.Index(headers).duplicated()]
    df = df.dropna(how="all")

    obj = df.astype(object).where(df.notna(), None)
    rows = [{k: plain_value(v) for k, v in record.items()} for record in obj.to_dict(orient="records")]
    return [str(c) for c in df.columns], rows


def read_csv(data: bytes, *, label: str = "csv", trace: Any = None) -> FeatureCollection:
    """
    Read CSV bytes.

    A file without recognisable coordinate columns yields an empty collection
    with a warning, so it can still be exported as a table.

    Raises:
        DecodeError: the text cannot be tokenised as CSV
    """
    text = decode_text(data, label)
    builder = CollectionBuilder(label, "csv", trace=trace)
    delimiter = sniff_delimiter(text)
    builder.extra["delimiter"] = delimiter

    if not text.strip():
        builder.warn("CSV file is empty")
        rows_to_builder([], builder, headers=[])
        return builder.build()

    try:
        df = pd.read_csv(io.StringIO(text), sep=delimiter, skip_blank_lines=True)
    except pd.errors.EmptyDataError:
        df = pd.DataFrame()
    except (pd.errors.ParserError, ValueError) as e:
        raise DecodeError(f"Invalid CSV ({e}): {label}") from e

    headers, rows = frame_to_rows(df)
    builder.extra["columns"] = headers
    rows_to_builder(rows, builder, headers=headers)
    return builder.build()


def read_workbook(data: bytes, label: str) -> Dict[str, pd.DataFrame]:
    """All sheets of an .xlsx / .xls workbook, in workbook order."""
    try:
        sheets = pd.read_excel(io.BytesIO(data), sheet_name=None)
    except ImportError:
        # Missing engine (openpyxl / xlrd) is an install problem, not bad data.
        raise
    except Exception as e:
        raise DecodeError(f"Failed to read Excel workbook ({e}): {label}") from e
    return sheets


def read_excel(
    data: bytes,
    *,
    label: str = "excel",
    sheet: Optional[str] = None,
    trace: Any = None,
) -> FeatureCollection:
    """
    Read an Excel workbook. The first sheet is active unless `sheet` names another.

    Raises:
        DecodeError: the workbook cannot be decoded
        InputShapeError: the workbook has no sheets, or `sheet` does not exist
    """
    sheets = read_workbook(data, label)
    names = [str(n) for n in sheets.keys()]
    if not names:
        raise InputShapeError(f"Excel workbook has no sheets: {label}")
    active = sheet if sheet is not None else names[0]
    if active not in names:
        raise InputShapeError(f"Sheet {active!r} not found (available: {', '.join(names)}): {label}")

    frame = list(sheets.values())[names.index(active)]
    builder = CollectionBuilder(label, "excel", trace=trace)
    builder.extra["sheets"] = names
    builder.extra["active_sheet"] = active

    headers, rows = frame_to_rows(frame)
    builder.extra["columns"] = headers
    rows_to_builder(rows, builder, headers=headers)
    return builder.build()


# Writing


def _csv_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, float):
        text = format_number(value)
    elif isinstance(value, (dict, list)):
        text = json.dumps(value, ensure_ascii=False, default=str)
    else:
        text = str(value)
    if any(c in text for c in ',"\r\n'):
        return '"' + text.replace('"', '""') + '"'
    return text


def geometry_wkt(geometry: Optional[Dict[str, Any]]) -> str:
    """
    WKT for a GeoJSON geometry dict.

    Raises:
        CoordinateError: shapely cannot build the geometry
    """
    if not geometry:
        return ""
    try:
        return shape(geometry).wkt
    except (ShapelyError, ValueError, TypeError, KeyError, AttributeError) as e:
        raise CoordinateError(f"Cannot encode {geometry.get('type')} as WKT ({e})") from e


def write_csv(
    fc: FeatureCollection,
    *,
    geometry_mode: str = "wkt",
    warnings: Optional[List[str]] = None,
) -> bytes:
    """
    Serialize to CSV: property keys in first-seen order, then geometry.

    wkt mode:    <keys...>,geometry
    latlng mode: <keys...>,lng,lat[,geometry]
      Points fill lng/lat; the trailing WKT column is only present when some
      feature is not a Point. If `lng`/`lat` are already property keys the
      coordinate columns are named `geom_lng`/`geom_lat`, and a `geometry`
      property pushes the WKT column to `geom_wkt`.

    Features with no geometry get empty geometry cells. A feature whose
    geometry cannot be written as WKT is dropped.
    """
    if geometry_mode not in ("wkt", "latlng"):
        raise InputShapeError(f"Unknown CSV geometry mode {geometry_mode!r} (wkt, latlng)")

    keys = fc.property_keys()
    latlng = geometry_mode == "latlng"
    wkt_column = not latlng or any(
        f.geometry is not None and f.geometry_type != "Point" for f in fc.features
    )
    header = list(keys)
    if latlng:
        if "lng" in keys or "lat" in keys:
            header += ["geom_lng", "geom_lat"]
        else:
            header += ["lng", "lat"]
    if wkt_column:
        header.append(WKT_EXPORT_COLUMN if any(k.lower() == "geometry" for k in keys) else "geometry")

    lines = [",".join(_csv_cell(h) for h in header)]
    dropped = 0
    for feature in fc.features:
        props = feature.properties or {}
        row = [_csv_cell(props.get(k)) for k in keys]
        geom = feature.geometry
        if latlng:
            if geom is not None and feature.geometry_type == "Point":
                coords = geom["coordinates"]
                row += [format_number(coords[0]), format_number(coords[1])]
            else:
                row += ["", ""]
        if wkt_column:
            if latlng and feature.geometry_type == "Point":
                row.append("")
            else:
                try:
                    row.append(_csv_cell(geometry_wkt(geom)))
                except CoordinateError as e:
                    dropped += 1
                    logger.debug("%s: %s", fc.label, e.message)
                    continue
        lines.append(",".join(row))

    if dropped:
        msg = f"{dropped} feature(s) skipped: geometry could not be written as WKT"
        logger.info("%s: %s", fc.label, msg)
        if warnings is not None:
            warnings.append(msg)
    return ("\n".join(lines) + "\n").encode("utf-8")
