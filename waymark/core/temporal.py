"""
Temporal filter engine.

Given collections and a timestamp property, build a per-collection time index,
compute the global domain and serve filtered views for one of four scope
modes:

    full        [min, max]
    fixed       the brush [range_start, range_end], clamped to the domain
    moving      a window of the brush's width whose right edge is the cursor
    cumulative  everything up to the cursor

A feature is kept when lower <= t <= upper and t <= cursor. Features without
a parseable timestamp are left out of the index (and so out of filtered
views) but their source collections are never modified. With no parseable
time anywhere the domain is unknown and filtering is a pass-through.

Times are epoch milliseconds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from waymark.core.normalization import epoch_ms_to_iso, to_epoch_ms
from waymark.model import Feature, FeatureCollection

logger = logging.getLogger(__name__)


MODES = ("full", "fixed", "moving", "cumulative")
WRAPPING_MODES = ("full", "cumulative")
MIN_SPEED = 0.1


@dataclass(frozen=True)
class TimeDomain:
    start: float
    end: float

    @property
    def span(self) -> float:
        return self.end - self.start

    def clamp(self, value: float) -> float:
        return max(self.start, min(self.end, value))

    def to_dict(self) -> Dict[str, object]:
        return {
            "start": self.start,
            "end": self.end,
            "start_iso": epoch_ms_to_iso(self.start),
            "end_iso": epoch_ms_to_iso(self.end),
        }


@dataclass(frozen=True)
class TimeBounds:
    lower: float
    upper: float

    @property
    def empty(self) -> bool:
        return self.lower > self.upper


TimeIndex = List[Tuple[float, Feature]]


def index_collection(fc: FeatureCollection, field: str) -> TimeIndex:
    """(timestamp, feature) pairs in ascending time; ties keep source order."""
    entries = []
    for feature in fc.features:
        ts = to_epoch_ms((feature.properties or {}).get(field))
        if ts is not None:
            entries.append((ts, feature))
    entries.sort(key=lambda e: e[0])
    return entries


def compute_domain(indexes: Sequence[TimeIndex]) -> Optional[TimeDomain]:
    starts = [idx[0][0] for idx in indexes if idx]
    ends = [idx[-1][0] for idx in indexes if idx]
    if not starts:
        return None
    return TimeDomain(min(starts), max(ends))


def _check_mode(mode: str) -> str:
    mode = (mode or "").strip().lower()
    if mode not in MODES:
        raise ValueError(f"Unknown time scope mode {mode!r} (expected one of: {', '.join(MODES)})")
    return mode


def _brush(domain: TimeDomain, start: Optional[float], end: Optional[float]) -> Tuple[float, float]:
    lo = domain.start if start is None else start
    hi = domain.end if end is None else end
    if lo > hi:
        lo, hi = hi, lo
    return lo, hi


def rest_interval(
    mode: str,
    domain: TimeDomain,
    range_start: Optional[float] = None,
    range_end: Optional[float] = None,
) -> Tuple[float, float]:
    """The interval the cursor must stay in: the clamped brush in fixed mode, the domain otherwise."""
    if _check_mode(mode) == "fixed":
        lo, hi = _brush(domain, range_start, range_end)
        lo, hi = domain.clamp(lo), domain.clamp(hi)
        return lo, hi
    return domain.start, domain.end


def bounds_for(
    mode: str,
    domain: TimeDomain,
    *,
    cursor: float,
    range_start: Optional[float] = None,
    range_end: Optional[float] = None,
) -> TimeBounds:
    mode = _check_mode(mode)
    if mode in ("full", "cumulative"):
        return TimeBounds(domain.start, domain.end)
    lo, hi = _brush(domain, range_start, range_end)
    if mode == "fixed":
        return TimeBounds(max(lo, domain.start), min(hi, domain.end))
    width = hi - lo
    return TimeBounds(max(cursor - width, domain.start), min(cursor, domain.end))


def clamp_cursor(
    cursor: Optional[float],
    mode: str,
    domain: TimeDomain,
    range_start: Optional[float] = None,
    range_end: Optional[float] = None,
) -> float:
    lo, hi = rest_interval(mode, domain, range_start, range_end)
    if cursor is None:
        return hi
    return max(lo, min(hi, cursor))


def filter_collections(
    collections: Sequence[FeatureCollection],
    field: Optional[str],
    mode: str = "cumulative",
    range_start: Optional[float] = None,
    range_end: Optional[float] = None,
    cursor: Optional[float] = None,
) -> List[FeatureCollection]:
    """
    Filtered collections mirroring the input order.

    `cursor=None` means the end of the cursor's rest interval. Inputs are
    returned unchanged when no field is selected or no timestamp parses.
    """
    mode = _check_mode(mode)
    if not field:
        return list(collections)
    indexes = [index_collection(fc, field) for fc in collections]
    domain = compute_domain(indexes)
    if domain is None:
        logger.debug("No parseable %r values; temporal filter is a pass-through", field)
        return list(collections)

    at = cursor if cursor is not None else clamp_cursor(None, mode, domain, range_start, range_end)
    bounds = bounds_for(mode, domain, cursor=at, range_start=range_start, range_end=range_end)
    out = []
    for fc, index in zip(collections, indexes):
        if bounds.empty:
            kept: List[Feature] = []
        else:
            kept = [f for ts, f in index if bounds.lower <= ts <= bounds.upper and ts <= at]
        out.append(fc.derive(kept))
    return out


def advance_cursor(
    cursor: float,
    dt_ms: float,
    *,
    mode: str,
    domain: TimeDomain,
    window_sec: float = 60.0,
    speed: float = 1.0,
    range_start: Optional[float] = None,
    range_end: Optional[float] = None,
) -> Tuple[float, bool]:
    """
    One playback tick: move by dt/1000 * window_sec*1000 * max(0.1, speed) ms.

    Returns (next_cursor, keep_playing). Past the upper bound the cursor wraps
    to the domain start in full/cumulative modes and stops at the bound in the
    window modes.
    """
    mode = _check_mode(mode)
    lo, hi = rest_interval(mode, domain, range_start, range_end)
    delta = (dt_ms / 1000.0) * (window_sec * 1000.0 * max(MIN_SPEED, speed))
    nxt = cursor + delta
    if nxt > hi:
        if mode in WRAPPING_MODES:
            return domain.start, True
        return hi, False
    return max(lo, nxt), True


class TimelinePlayer:
    """
    Cursor state for playback over a fixed set of collections.

    An external clock calls `tick(dt_ms)`; nothing advances unless `playing`.
    Pausing keeps the cursor where the last tick left it.
    """

    def __init__(
        self,
        collections: Sequence[FeatureCollection],
        field: str,
        *,
        mode: str = "cumulative",
        range_start: Optional[float] = None,
        range_end: Optional[float] = None,
        window_sec: float = 60.0,
        speed: float = 1.0,
    ):
        self.collections = list(collections)
        self.field = field
        self.mode = _check_mode(mode)
        self.range_start = range_start
        self.range_end = range_end
        self.window_sec = window_sec
        self.speed = speed
        self.playing = False
        self.domain = compute_domain([index_collection(fc, field) for fc in self.collections])
        self.cursor: Optional[float] = self.domain.start if self.domain else None

    def _reclamp(self) -> None:
        if self.domain is not None:
            self.cursor = clamp_cursor(self.cursor, self.mode, self.domain, self.range_start, self.range_end)

    def set_mode(self, mode: str) -> None:
        self.mode = _check_mode(mode)
        self._reclamp()

    def set_brush(self, start: Optional[float], end: Optional[float]) -> None:
        self.range_start, self.range_end = start, end
        self._reclamp()

    def seek(self, cursor: float) -> None:
        self.cursor = cursor
        self._reclamp()

    def play(self) -> None:
        if self.domain is not None:
            self.playing = True

    def pause(self) -> None:
        self.playing = False

    def tick(self, dt_ms: float) -> Optional[float]:
        if not self.playing or self.domain is None or self.cursor is None:
            return self.cursor
        self.cursor, self.playing = advance_cursor(
            self.cursor,
            dt_ms,
            mode=self.mode,
            domain=self.domain,
            window_sec=self.window_sec,
            speed=self.speed,
            range_start=self.range_start,
            range_end=self.range_end,
        )
        return self.cursor

    def bounds(self) -> Optional[TimeBounds]:
        if self.domain is None or self.cursor is None:
            return None
        return bounds_for(
            self.mode, self.domain, cursor=self.cursor, range_start=self.range_start, range_end=self.range_end
        )

    def filtered(self) -> List[FeatureCollection]:
        return filter_collections(
            self.collections, self.field, self.mode, self.range_start, self.range_end, self.cursor
        )
