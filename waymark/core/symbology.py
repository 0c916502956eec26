"""
Dataset symbology: a single colour, or a categorical value → colour mapping.

The core never renders a map, but serializers embed symbology as style hints
(KML `<Style>` elements) and the raster paths colour features with it.
"""

from __future__ import annotations

import re
import dataclasses
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Tuple


_RGB_REGEX = re.compile(r"rgba?\s*\(\s*(\d+)\s*,\s*(\d+)\s*,\s*(\d+)")

DEFAULT_COLOR = "#0d9488"

# Colours handed out to categories that have no explicit mapping.
CATEGORY_PALETTE: Tuple[str, ...] = (
    "#2563eb",
    "#ef4444",
    "#10b981",
    "#f59e0b",
    "#8b5cf6",
    "#ec4899",
    "#14b8a6",
    "#f97316",
    "#64748b",
    "#84cc16",
)


def parse_color(color_str: Optional[str], default: Tuple[int, int, int] = (13, 148, 136)) -> Tuple[int, int, int]:
    """
    Parse various color formats to an RGB tuple.

    Supports:
    - Hex: #FF0000, #ff0000, FF0000, #f00
    - RGB: rgb(255, 0, 0)
    - RGBA: rgba(255, 0, 0, 1)

    Unparseable input falls back to `default`.
    """
    if not color_str:
        return default

    s = str(color_str).strip()
    if s.startswith("#"):
        s = s[1:]

    if len(s) == 3 and all(c in "0123456789ABCDEFabcdef" for c in s):
        s = "".join(c * 2 for c in s)
    if len(s) == 6 and all(c in "0123456789ABCDEFabcdef" for c in s):
        return tuple(int(s[i : i + 2], 16) for i in (0, 2, 4))  # type: ignore[return-value]

    if s.startswith(("rgba", "rgb")):
        match = _RGB_REGEX.search(s)
        if match:
            return tuple(min(255, int(v)) for v in match.groups())  # type: ignore[return-value]

    return default


def to_hex(rgb: Tuple[int, int, int]) -> str:
    return "#{:02x}{:02x}{:02x}".format(*rgb)


def to_kml_color(color_str: Optional[str], alpha: int = 255) -> str:
    """KML colours are aabbggrr hex."""
    r, g, b = parse_color(color_str)
    return f"{alpha:02x}{b:02x}{g:02x}{r:02x}"


@dataclass
class Symbology:
    """
    Either {kind: single, color} or {kind: categorical, field, mapping}.

    Categorical values are compared as strings so numeric and textual
    property values map the same way they display.
    """

    kind: Literal["single", "categorical"] = "single"
    color: str = DEFAULT_COLOR
    field: Optional[str] = None
    mapping: Dict[str, str] = dataclasses.field(default_factory=dict)

    @classmethod
    def single(cls, color: str) -> "Symbology":
        return cls(kind="single", color=color)

    @classmethod
    def categorical(cls, field_name: str, mapping: Dict[Any, str], default: str = DEFAULT_COLOR) -> "Symbology":
        return cls(
            kind="categorical",
            color=default,
            field=field_name,
            mapping={str(k): v for k, v in mapping.items()},
        )

    @classmethod
    def from_values(cls, field_name: str, values: List[Any], default: str = DEFAULT_COLOR) -> "Symbology":
        """Categorical symbology over distinct values, coloured from the built-in palette."""
        mapping: Dict[str, str] = {}
        for v in values:
            if v is None:
                continue
            key = str(v)
            if key not in mapping:
                mapping[key] = CATEGORY_PALETTE[len(mapping) % len(CATEGORY_PALETTE)]
        return cls(kind="categorical", color=default, field=field_name, mapping=mapping)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "Symbology":
        kind = str(data.get("kind") or "single").lower()
        if kind == "categorical":
            return cls.categorical(
                str(data.get("field") or ""),
                dict(data.get("mapping") or {}),
                default=str(data.get("color") or DEFAULT_COLOR),
            )
        if kind != "single":
            raise ValueError(f"Unknown symbology kind: {kind!r}")
        return cls.single(str(data.get("color") or DEFAULT_COLOR))

    def color_for(self, properties: Optional[Dict[str, Any]]) -> str:
        if self.kind == "categorical" and self.field:
            value = (properties or {}).get(self.field)
            if value is not None:
                return self.mapping.get(str(value), self.color)
        return self.color

    def rgb_for(self, properties: Optional[Dict[str, Any]]) -> Tuple[int, int, int]:
        return parse_color(self.color_for(properties))

    def style_ids(self) -> Dict[str, str]:
        """Colour → stable style id, used by KML `<Style id=...>` elements."""
        colors = [self.color] + [c for c in self.mapping.values()]
        out: Dict[str, str] = {}
        for c in colors:
            hx = to_hex(parse_color(c))
            out.setdefault(hx, f"style-{hx[1:]}")
        return out

    def style_id_for(self, properties: Optional[Dict[str, Any]]) -> str:
        hx = to_hex(parse_color(self.color_for(properties)))
        return f"style-{hx[1:]}"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind, "color": self.color}
        if self.kind == "categorical":
            out["field"] = self.field
            out["mapping"] = dict(self.mapping)
        return out
