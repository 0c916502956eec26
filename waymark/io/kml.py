"""
KML adapter.

Reading walks Document/Folder containers in order and turns every Placemark
into a feature. Namespaces are ignored (KML 2.1, 2.2 and unqualified files all
show up in the wild), so elements are matched by local name.

Placemark properties:
- name, description, address, styleUrl
- TimeStamp/when -> timestamp, TimeSpan -> timespan_begin / timespan_end
- ExtendedData Data/value and SchemaData/SimpleData, flattened
- folder: slash-joined names of enclosing Folders

Writing builds the document line by line because descriptions are emitted as
CDATA blocks, which ElementTree cannot serialize.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence
from xml.sax.saxutils import escape, quoteattr
import xml.etree.ElementTree as ET

from waymark.core.errors import DecodeError, InputShapeError
from waymark.core.geometry import clean_rings, close_ring, format_number, is_valid_position
from waymark.core.normalization import normalize_name
from waymark.core.symbology import Symbology, to_kml_color
from waymark.model import CollectionBuilder, FeatureCollection

logger = logging.getLogger(__name__)


KML_NS = "http://www.opengis.net/kml/2.2"

_CONTAINERS = ("kml", "Document", "Folder")
_GEOMETRY_TAGS = ("Point", "LineString", "LinearRing", "Polygon", "MultiGeometry", "Track", "MultiTrack")


def _local(tag: Any) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag.split(":")[-1]


def _child(elem: ET.Element, name: str) -> Optional[ET.Element]:
    for c in elem:
        if _local(c.tag) == name:
            return c
    return None


def _children(elem: ET.Element, name: str) -> List[ET.Element]:
    return [c for c in elem if _local(c.tag) == name]


def _find(elem: ET.Element, *path: str) -> Optional[ET.Element]:
    cur: Optional[ET.Element] = elem
    for name in path:
        if cur is None:
            return None
        cur = _child(cur, name)
    return cur


def _text(elem: Optional[ET.Element]) -> str:
    if elem is None or elem.text is None:
        return ""
    return elem.text


def parse_coordinates(text: str) -> List[List[float]]:
    """
    Parse a KML coordinate list: lon,lat[,alt] tuples separated by whitespace.

    Malformed tuples are skipped; range checks happen at feature validation.
    """
    pts: List[List[float]] = []
    for token in (text or "").split():
        parts = token.split(",")
        if len(parts) < 2:
            continue
        try:
            pos = [float(parts[0]), float(parts[1])]
            if len(parts) >= 3 and parts[2] != "":
                pos.append(float(parts[2]))
        except ValueError:
            continue
        pts.append(pos)
    return pts


def _ring(elem: Optional[ET.Element]) -> List[List[float]]:
    if elem is None:
        return []
    lr = _child(elem, "LinearRing")
    coords = parse_coordinates(_text(_child(lr, "coordinates") if lr is not None else None))
    return close_ring(coords) if coords else []


def _geometry(elem: ET.Element) -> Optional[Dict[str, Any]]:
    tag = _local(elem.tag)
    if tag == "Point":
        pts = parse_coordinates(_text(_child(elem, "coordinates")))
        return {"type": "Point", "coordinates": pts[0]} if pts else None
    if tag == "LineString":
        pts = parse_coordinates(_text(_child(elem, "coordinates")))
        return {"type": "LineString", "coordinates": pts}
    if tag == "LinearRing":
        pts = parse_coordinates(_text(_child(elem, "coordinates")))
        return {"type": "Polygon", "coordinates": [close_ring(pts)]} if pts else None
    if tag == "Polygon":
        outer = _ring(_child(elem, "outerBoundaryIs"))
        if not outer:
            return None
        rings = [outer]
        for inner in _children(elem, "innerBoundaryIs"):
            # Some writers put several LinearRings in one innerBoundaryIs.
            for lr in _children(inner, "LinearRing"):
                pts = parse_coordinates(_text(_child(lr, "coordinates")))
                if pts:
                    rings.append(close_ring(pts))
        return {"type": "Polygon", "coordinates": rings}
    if tag == "Track":
        pts = []
        for coord in _children(elem, "coord"):
            parts = _text(coord).split()
            try:
                pts.append([float(p) for p in parts[:3]])
            except ValueError:
                continue
        return {"type": "LineString", "coordinates": pts}
    if tag in ("MultiGeometry", "MultiTrack"):
        members = []
        for c in elem:
            if _local(c.tag) in _GEOMETRY_TAGS:
                g = _geometry(c)
                if g is not None:
                    members.append(g)
        return {"type": "GeometryCollection", "geometries": members} if members else None
    return None


def _extended_data(pm: ET.Element) -> Dict[str, Any]:
    kv: Dict[str, Any] = {}
    ext = _child(pm, "ExtendedData")
    if ext is None:
        return kv
    for d in ext.iter():
        tag = _local(d.tag)
        if tag == "Data":
            key = (d.attrib.get("name") or "").strip()
            if key:
                kv[key] = _text(_child(d, "value")).strip()
        elif tag == "SimpleData":
            key = (d.attrib.get("name") or "").strip()
            if key:
                kv[key] = _text(d).strip()
    return kv


def _is_property_dump(text: Optional[str]) -> bool:
    return bool(text) and text.startswith("<pre>") and text.endswith("</pre>")


def _placemark_properties(pm: ET.Element, folders: Sequence[str]) -> Dict[str, Any]:
    props: Dict[str, Any] = {}
    name = _child(pm, "name")
    if name is not None:
        props["name"] = normalize_name(_text(name))
    for tag in ("description", "address"):
        el = _child(pm, tag)
        if el is not None and _text(el).strip():
            props[tag] = _text(el).strip()
    style_url = _text(_child(pm, "styleUrl")).strip()
    if style_url:
        props["styleUrl"] = style_url

    when = _text(_find(pm, "TimeStamp", "when")).strip()
    if when:
        props["timestamp"] = when
    span = _child(pm, "TimeSpan")
    if span is not None:
        begin = _text(_child(span, "begin")).strip()
        end = _text(_child(span, "end")).strip()
        if begin:
            props["timespan_begin"] = begin
        if end:
            props["timespan_end"] = end

    extended = _extended_data(pm)
    if extended:
        # Descriptions written by build_kml are a <pre> JSON dump of the Data values.
        if _is_property_dump(props.get("description")):
            del props["description"]
        props.update(extended)
    if folders:
        props["folder"] = "/".join(folders)
    return props


def _walk(elem: ET.Element, folders: List[str], builder: CollectionBuilder, counter: List[int]) -> None:
    for child in elem:
        tag = _local(child.tag)
        if tag == "Placemark":
            idx = counter[0]
            counter[0] += 1
            geom_elem = next((c for c in child if _local(c.tag) in _GEOMETRY_TAGS), None)
            if geom_elem is None:
                builder.drop(f"placemark {idx}: no geometry")
                continue
            builder.add(_geometry(geom_elem), _placemark_properties(child, folders), index=idx)
        elif tag in _CONTAINERS:
            if tag == "Folder":
                fname = normalize_name(_text(_child(child, "name"))) or "Folder"
                _walk(child, folders + [fname], builder, counter)
            else:
                _walk(child, folders, builder, counter)


def parse_kml_root(data: bytes, label: str) -> ET.Element:
    if not data or not data.strip():
        raise DecodeError(f"KML file is empty: {label}")
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise DecodeError(f"Invalid KML file (XML parse error): {e}: {label}")
    if _local(root.tag).lower() != "kml":
        raise InputShapeError(f"File does not appear to be a KML file (root element: {_local(root.tag)}): {label}")
    return root


def read_kml(data: bytes, *, label: str = "kml", source_kind: str = "kml", trace: Any = None) -> FeatureCollection:
    """
    Read KML bytes.

    Raises:
        DecodeError: empty file or malformed XML
        InputShapeError: root element is not <kml>
    """
    root = parse_kml_root(data, label)
    builder = CollectionBuilder(label, source_kind, trace=trace)

    doc_name = _text(_find(root, "Document", "name")).strip()
    if doc_name:
        builder.extra["document_name"] = normalize_name(doc_name)

    counter = [0]
    _walk(root, [], builder, counter)
    if counter[0] == 0:
        builder.warn("No Placemarks found in KML")
    return builder.build()


# Writing


def _coord_text(positions: Sequence[Sequence[float]]) -> str:
    return " ".join(",".join(format_number(v) for v in p[:3]) for p in positions)


def _geometry_kml(geom: Optional[Dict[str, Any]]) -> str:
    """KML fragment for a geometry, or "" when nothing encodable remains."""
    if not geom:
        return ""
    gtype = geom.get("type")
    coords = geom.get("coordinates")

    if gtype == "Point":
        if not is_valid_position(coords):
            return ""
        return f"<Point><coordinates>{_coord_text([coords])}</coordinates></Point>"

    if gtype == "MultiPoint":
        pts = [p for p in coords or [] if is_valid_position(p)]
        if not pts:
            return ""
        return "<MultiGeometry>" + "".join(
            f"<Point><coordinates>{_coord_text([p])}</coordinates></Point>" for p in pts
        ) + "</MultiGeometry>"

    if gtype == "LineString":
        seg = [p for p in coords or [] if is_valid_position(p)]
        if len(seg) < 2:
            return ""
        return f"<LineString><coordinates>{_coord_text(seg)}</coordinates></LineString>"

    if gtype == "MultiLineString":
        lines = [[p for p in seg or [] if is_valid_position(p)] for seg in coords or []]
        lines = [seg for seg in lines if len(seg) >= 2]
        if not lines:
            return ""
        return "<MultiGeometry>" + "".join(
            f"<LineString><coordinates>{_coord_text(seg)}</coordinates></LineString>" for seg in lines
        ) + "</MultiGeometry>"

    if gtype == "Polygon":
        return _polygon_kml(clean_rings(coords))

    if gtype == "MultiPolygon":
        polys = [clean_rings(p) for p in coords or []]
        parts = [_polygon_kml(rings) for rings in polys if rings]
        return "<MultiGeometry>" + "".join(parts) + "</MultiGeometry>" if parts else ""

    if gtype == "GeometryCollection":
        parts = [p for p in (_geometry_kml(g) for g in geom.get("geometries") or []) if p]
        return "<MultiGeometry>" + "".join(parts) + "</MultiGeometry>" if parts else ""

    return ""


def _polygon_kml(rings: List[List[Sequence[float]]]) -> str:
    if not rings:
        return ""
    outer, inners = rings[0], rings[1:]
    out = (
        "<Polygon><outerBoundaryIs><LinearRing><coordinates>"
        f"{_coord_text(outer)}"
        "</coordinates></LinearRing></outerBoundaryIs>"
    )
    for r in inners:
        out += f"<innerBoundaryIs><LinearRing><coordinates>{_coord_text(r)}</coordinates></LinearRing></innerBoundaryIs>"
    return out + "</Polygon>"


def _cdata(text: str) -> str:
    return "<![CDATA[" + text.replace("]]>", "]]]]><![CDATA[>") + "]]>"


def _placemark_name(props: Dict[str, Any], name_field: str, index: int) -> str:
    value = props.get(name_field)
    if value is None:
        value = props.get("title")
    return str(value) if value else f"feature-{index + 1}"


def _style_lines(symbology: Symbology) -> List[str]:
    lines = []
    for hx, style_id in symbology.style_ids().items():
        color = to_kml_color(hx)
        lines.extend(
            [
                f'    <Style id="{style_id}">',
                f"      <IconStyle><color>{color}</color></IconStyle>",
                f"      <LineStyle><color>{color}</color><width>2</width></LineStyle>",
                f"      <PolyStyle><color>{to_kml_color(hx, alpha=0x40)}</color></PolyStyle>",
                "    </Style>",
            ]
        )
    return lines


def _scalar_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_kml(
    fc: FeatureCollection,
    *,
    name_field: str = "name",
    symbology: Optional[Symbology] = None,
    warnings: Optional[List[str]] = None,
) -> str:
    """KML document text for a collection. Unencodable features are skipped."""
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<kml xmlns="{KML_NS}">',
        "  <Document>",
        f"    <name>{escape(fc.label or 'Exported')}</name>",
    ]
    if symbology is not None:
        lines.extend(_style_lines(symbology))

    skipped = 0
    for i, feature in enumerate(fc.features):
        geom_xml = _geometry_kml(feature.geometry)
        if not geom_xml:
            skipped += 1
            continue
        props = feature.properties or {}
        pm = [f"    <Placemark><name>{escape(_placemark_name(props, name_field, i))}</name>"]
        if props:
            body = json.dumps(props, indent=2, ensure_ascii=False, default=str)
            pm.append(f"<description>{_cdata('<pre>' + body + '</pre>')}</description>")
        ts = props.get("timestamp")
        if ts:
            pm.append(f"<TimeStamp><when>{escape(str(ts))}</when></TimeStamp>")
        elif props.get("timespan_begin") or props.get("timespan_end"):
            span = "<TimeSpan>"
            if props.get("timespan_begin"):
                span += f"<begin>{escape(str(props['timespan_begin']))}</begin>"
            if props.get("timespan_end"):
                span += f"<end>{escape(str(props['timespan_end']))}</end>"
            pm.append(span + "</TimeSpan>")
        if symbology is not None:
            pm.append(f"<styleUrl>#{symbology.style_id_for(props)}</styleUrl>")
        if props:
            data = "".join(
                f"<Data name={quoteattr(str(k))}><value>{escape(_scalar_text(v))}</value></Data>"
                for k, v in props.items()
            )
            pm.append(f"<ExtendedData>{data}</ExtendedData>")
        pm.append(geom_xml)
        pm.append("</Placemark>")
        lines.append("".join(pm))

    lines.extend(["  </Document>", "</kml>", ""])

    if skipped:
        msg = f"{skipped} feature(s) skipped: geometry could not be encoded as KML"
        logger.info("%s: %s", fc.label, msg)
        if warnings is not None:
            warnings.append(msg)
    return "\n".join(lines)


def write_kml(
    fc: FeatureCollection,
    *,
    name_field: str = "name",
    symbology: Optional[Symbology] = None,
    warnings: Optional[List[str]] = None,
) -> bytes:
    return build_kml(fc, name_field=name_field, symbology=symbology, warnings=warnings).encode("utf-8")
