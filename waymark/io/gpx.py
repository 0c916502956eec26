"""
GPX adapter.

Reading:
- <wpt>  -> Point (elevation becomes the third coordinate)
- <trk>  -> MultiLineString, one part per <trkseg>
- <rte>  -> LineString
name, desc, cmt, sym, type and time are kept as properties, together with the
text of any extension elements. `_gpxType` records the source element so a
GPX round trip writes routes back as <rte>.

Writing builds GPX 1.1 line by line (wpt, then rte, then trk, as the schema
orders them).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from xml.sax.saxutils import escape, quoteattr
import xml.etree.ElementTree as ET

from waymark.core.errors import DecodeError, InputShapeError
from waymark.core.geometry import format_number, is_valid_position
from waymark.core.normalization import normalize_name
from waymark.model import CollectionBuilder, FeatureCollection

logger = logging.getLogger(__name__)


GPX_NS = "http://www.topografix.com/GPX/1/1"

_TEXT_FIELDS = ("name", "desc", "cmt", "sym", "type", "time")


def _local(tag: Any) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _child(elem: ET.Element, name: str) -> Optional[ET.Element]:
    for c in elem:
        if _local(c.tag) == name:
            return c
    return None


def _children(elem: ET.Element, name: str) -> List[ET.Element]:
    return [c for c in elem if _local(c.tag) == name]


def _text(elem: Optional[ET.Element]) -> str:
    if elem is None or elem.text is None:
        return ""
    return elem.text.strip()


def _extension_values(elem: ET.Element) -> Dict[str, str]:
    """Leaf elements under <extensions>, keyed by local name."""
    out: Dict[str, str] = {}
    ext = _child(elem, "extensions")
    if ext is None:
        return out
    for node in ext.iter():
        if node is ext or len(node):
            continue
        value = _text(node)
        if value:
            out.setdefault(_local(node.tag), value)
    return out


def _properties(elem: ET.Element, gpx_type: str) -> Dict[str, Any]:
    props: Dict[str, Any] = {}
    for tag in _TEXT_FIELDS:
        value = _text(_child(elem, tag))
        if value:
            props[tag] = normalize_name(value) if tag == "name" else value
    for key, value in _extension_values(elem).items():
        props.setdefault(key, value)
    props["_gpxType"] = gpx_type
    return props


def _position(pt: ET.Element) -> Optional[List[float]]:
    try:
        lat = float(pt.attrib.get("lat"))
        lon = float(pt.attrib.get("lon"))
    except (TypeError, ValueError):
        return None
    pos = [lon, lat]
    ele = _text(_child(pt, "ele"))
    if ele:
        try:
            pos.append(float(ele))
        except ValueError:
            pass
    return pos


def _points(parent: ET.Element, tag: str, skipped: List[int]) -> Tuple[List[List[float]], str]:
    """Valid positions under `parent` plus the first point's <time>."""
    out: List[List[float]] = []
    first_time = ""
    for pt in _children(parent, tag):
        pos = _position(pt)
        if pos is None or not is_valid_position(pos):
            skipped[0] += 1
            continue
        if not first_time:
            first_time = _text(_child(pt, "time"))
        out.append(pos)
    return out, first_time


def read_gpx(data: bytes, *, label: str = "gpx", trace: Any = None) -> FeatureCollection:
    """
    Read GPX bytes.

    Raises:
        DecodeError: empty file or malformed XML
        InputShapeError: root element is not <gpx>
    """
    if not data or not data.strip():
        raise DecodeError(f"GPX file is empty: {label}")
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise DecodeError(f"Invalid GPX file (XML parse error): {e}: {label}")
    if _local(root.tag).lower() != "gpx":
        raise InputShapeError(f"File does not appear to be a GPX file (root element: {_local(root.tag)}): {label}")

    builder = CollectionBuilder(label, "gpx", trace=trace)
    meta = _child(root, "metadata")
    if meta is not None and _text(_child(meta, "name")):
        builder.extra["document_name"] = normalize_name(_text(_child(meta, "name")))
    if root.attrib.get("creator"):
        builder.extra["creator"] = root.attrib["creator"]

    index = 0
    skipped = [0]

    for wpt in _children(root, "wpt"):
        pos = _position(wpt)
        if pos is None:
            builder.drop(f"wpt {index}: unparseable lat/lon")
        else:
            builder.add({"type": "Point", "coordinates": pos}, _properties(wpt, "wpt"), index=index)
        index += 1

    for rte in _children(root, "rte"):
        pts, first_time = _points(rte, "rtept", skipped)
        props = _properties(rte, "rte")
        if first_time and "time" not in props:
            props["time"] = first_time
        builder.add({"type": "LineString", "coordinates": pts}, props, index=index)
        index += 1

    for trk in _children(root, "trk"):
        segments = []
        first_time = ""
        for seg in _children(trk, "trkseg"):
            pts, seg_time = _points(seg, "trkpt", skipped)
            first_time = first_time or seg_time
            if len(pts) >= 2:
                segments.append(pts)
        props = _properties(trk, "trk")
        if first_time and "time" not in props:
            props["time"] = first_time
        if not segments:
            builder.drop(f"trk {index}: no segment with two or more valid points")
        else:
            builder.add({"type": "MultiLineString", "coordinates": segments}, props, index=index)
        index += 1

    if skipped[0]:
        builder.warn(f"{skipped[0]} track/route point(s) skipped: invalid coordinates")
    if index == 0:
        builder.warn("No waypoints, routes or tracks found in GPX")
    return builder.build()


# Writing


def _feature_name(props: Dict[str, Any], name_field: str, index: int) -> str:
    value = props.get(name_field)
    if value is None:
        value = props.get("title")
    return str(value) if value else f"feature-{index + 1}"


def _pt_attrs(pos: Sequence[float]) -> str:
    return f'lat="{format_number(pos[1])}" lon="{format_number(pos[0])}"'


def _ele(pos: Sequence[float]) -> str:
    return f"<ele>{format_number(pos[2])}</ele>" if len(pos) >= 3 else ""


def _common(props: Dict[str, Any], name: str) -> str:
    out = f"<name>{escape(name)}</name>"
    for key, tag in (("cmt", "cmt"), ("desc", "desc"), ("description", "desc")):
        value = props.get(key)
        if value and f"<{tag}>" not in out:
            out += f"<{tag}>{escape(str(value))}</{tag}>"
    return out


def _time_of(props: Dict[str, Any]) -> str:
    for key in ("time", "timestamp"):
        value = props.get(key)
        if isinstance(value, str) and value:
            return f"<time>{escape(value)}</time>"
    return ""


def _wpt(pos: Sequence[float], name: str, props: Dict[str, Any]) -> str:
    body = _ele(pos) + _time_of(props) + _common(props, name)
    for key in ("sym", "type"):
        if props.get(key):
            body += f"<{key}>{escape(str(props[key]))}</{key}>"
    return f"  <wpt {_pt_attrs(pos)}>{body}</wpt>"


def _trk(segments: List[List[Sequence[float]]], name: str, props: Dict[str, Any]) -> str:
    segs = "".join(
        "<trkseg>" + "".join(f"<trkpt {_pt_attrs(p)}>{_ele(p)}</trkpt>" for p in seg) + "</trkseg>"
        for seg in segments
    )
    type_el = f"<type>{escape(str(props['type']))}</type>" if props.get("type") else ""
    return f"  <trk>{_common(props, name)}{type_el}{segs}</trk>"


def _rte(points: List[Sequence[float]], name: str, props: Dict[str, Any]) -> str:
    pts = "".join(f"<rtept {_pt_attrs(p)}>{_ele(p)}</rtept>" for p in points)
    return f"  <rte>{_common(props, name)}{pts}</rte>"


def _valid(points: Sequence[Any]) -> List[Sequence[float]]:
    return [p for p in points or [] if is_valid_position(p)]


def _encode(
    geom: Optional[Dict[str, Any]],
    name: str,
    props: Dict[str, Any],
    wpts: List[str],
    rtes: List[str],
    trks: List[str],
) -> bool:
    if not geom:
        return False
    gtype = geom.get("type")
    coords = geom.get("coordinates")

    if gtype == "Point":
        if not is_valid_position(coords):
            return False
        wpts.append(_wpt(coords, name, props))
        return True
    if gtype == "MultiPoint":
        pts = _valid(coords)
        for k, p in enumerate(pts):
            wpts.append(_wpt(p, f"{name}-{k + 1}", props))
        return bool(pts)
    if gtype == "LineString":
        pts = _valid(coords)
        if len(pts) < 2:
            return False
        if props.get("_gpxType") == "rte":
            rtes.append(_rte(pts, name, props))
        else:
            trks.append(_trk([pts], name, props))
        return True
    if gtype == "MultiLineString":
        segs = [s for s in (_valid(seg) for seg in coords or []) if len(s) >= 2]
        if not segs:
            return False
        trks.append(_trk(segs, name, props))
        return True
    if gtype == "Polygon":
        outer = _valid((coords or [[]])[0]) if coords else []
        if len(outer) < 2:
            return False
        trks.append(_trk([outer], name, props))
        return True
    if gtype == "MultiPolygon":
        rings = [r for r in (_valid(poly[0]) for poly in coords or [] if poly) if len(r) >= 2]
        if not rings:
            return False
        trks.append(_trk(rings, name, props))
        return True
    if gtype == "GeometryCollection":
        ok = False
        for member in geom.get("geometries") or []:
            ok = _encode(member, name, props, wpts, rtes, trks) or ok
        return ok
    return False


def write_gpx(
    fc: FeatureCollection,
    *,
    name_field: str = "name",
    description: Optional[str] = None,
    warnings: Optional[List[str]] = None,
) -> bytes:
    """
    Serialize to GPX 1.1.

    Raises:
        InputShapeError: no feature could be encoded
    """
    wpts: List[str] = []
    rtes: List[str] = []
    trks: List[str] = []
    skipped = 0
    for i, feature in enumerate(fc.features):
        props = feature.properties or {}
        if not _encode(feature.geometry, _feature_name(props, name_field, i), props, wpts, rtes, trks):
            skipped += 1

    if not (wpts or rtes or trks):
        raise InputShapeError(f"GPX export requires at least one point, line or polygon feature: {fc.label}")
    if skipped:
        msg = f"{skipped} feature(s) skipped: geometry could not be encoded as GPX"
        logger.info("%s: %s", fc.label, msg)
        if warnings is not None:
            warnings.append(msg)

    now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    desc = description if description is not None else f"{len(fc.features)} features exported by Waymark"
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<gpx xmlns="{GPX_NS}" version="1.1" creator={quoteattr("Waymark")}>',
        "  <metadata>",
        f"    <name>{escape(fc.label or 'Exported')}</name>",
        f"    <desc>{escape(desc)}</desc>",
        f"    <time>{now}</time>",
        "  </metadata>",
    ]
    lines.extend(wpts)
    lines.extend(rtes)
    lines.extend(trks)
    lines.append("</gpx>")
    lines.append("")
    return "\n".join(lines).encode("utf-8")
