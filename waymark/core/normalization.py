"""
Shared normalization utilities.

These exist to make parsing robust across:
- XML entities and HTML entities (including double-escaped sequences like '&amp;apos;')
- property keys with stray whitespace from spreadsheet headers
- timestamp values that arrive as epoch milliseconds or ISO-8601 strings
"""

from __future__ import annotations

import html
import math
import re
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional


_TEMPORAL_KEY_RE = re.compile(r"(time|date|timestamp|epoch|_at$|^t$|^ts$|^when$)", re.IGNORECASE)
# Cheap pre-filter so plain words and numbers are not handed to fromisoformat.
_ISO_PREFIX_RE = re.compile(r"^\s*[+-]?\d{4}-\d{2}(-\d{2})?")


def normalize_entities(text: str) -> str:
    """
    Decode XML/HTML entities in a stable way.

    Unescape runs at most twice so inputs like '&amp;apos;' collapse fully.
    """
    if text is None:
        return ""

    s = str(text)
    for _ in range(2):
        s2 = html.unescape(s)
        if s2 == s:
            break
        s = s2
    return s


def normalize_name(text: str) -> str:
    """Normalize a display name (decode entities, preserve user whitespace largely)."""
    return normalize_entities(text).strip()


def trim_property_keys(properties: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Return a copy of `properties` whose keys are stripped of surrounding whitespace.

    When two keys collapse onto the same trimmed name the first one wins.
    """
    out: Dict[str, Any] = {}
    for key, value in (properties or {}).items():
        k = str(key).strip()
        if k in out:
            continue
        out[k] = value
    return out


def iso8601_to_epoch_ms(value: str) -> Optional[int]:
    """
    Convert an ISO-8601 / RFC-3339 time string to epoch ms.

    Naive values are taken as UTC. Returns None if parsing fails.
    """
    if not value or not isinstance(value, str):
        return None
    s = value.strip()
    if not _ISO_PREFIX_RE.match(s):
        return None
    if s.endswith(("Z", "z")):
        s = s[:-1] + "+00:00"
    # RFC-3339 allows a space between date and time; fromisoformat wants 'T' on older Pythons.
    if len(s) > 10 and s[10] == " ":
        s = s[:10] + "T" + s[11:]
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        try:
            d = date.fromisoformat(s[:10]) if len(s) == 10 else None
        except ValueError:
            d = None
        if d is None:
            return None
        dt = datetime(d.year, d.month, d.day)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


def to_epoch_ms(value: Any) -> Optional[float]:
    """
    Interpret a property value as a timestamp.

    Finite numbers are epoch milliseconds; strings are parsed as ISO-8601.
    Booleans, None and anything else are rejected.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.timestamp() * 1000.0
    if isinstance(value, str):
        ms = iso8601_to_epoch_ms(value)
        return float(ms) if ms is not None else None
    return None


def epoch_ms_to_iso(ms: float) -> str:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def detect_time_fields(property_maps: Iterable[Mapping[str, Any]]) -> List[str]:
    """
    Candidate timestamp properties, in first-seen key order.

    A key qualifies when at least half of its non-null values are ISO-8601
    strings, or when all of its non-null values are finite numbers and the key
    name looks temporal ("time", "date", "*_at", "t", ...).
    """
    order: List[str] = []
    seen: Dict[str, List[int]] = {}  # key -> [non_null, iso_strings, numbers]
    for props in property_maps:
        for key, value in (props or {}).items():
            if key not in seen:
                seen[key] = [0, 0, 0]
                order.append(key)
            if value is None or value == "":
                continue
            stats = seen[key]
            stats[0] += 1
            if isinstance(value, str) and iso8601_to_epoch_ms(value) is not None:
                stats[1] += 1
            elif isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
                stats[2] += 1

    fields = []
    for key in order:
        non_null, iso_count, num_count = seen[key]
        if not non_null:
            continue
        if iso_count * 2 >= non_null:
            fields.append(key)
        elif num_count == non_null and _TEMPORAL_KEY_RE.search(key):
            fields.append(key)
    return fields
