"""
Typed errors raised by readers, writers and the raster pipeline.

Every error carries an `ErrorKind` so callers at the conversion boundary
(`core.ingest.parse_dataset`, `core.export.run_export`) can report a stable
{kind, message} pair instead of a traceback.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict


class ErrorKind(str, Enum):
    INPUT_SHAPE = "input_shape"
    DECODE = "decode"
    COORDINATE_INVALID = "coordinate_invalid"
    INCOMPLETE = "incomplete"
    UNSUPPORTED = "unsupported"
    DOWNSTREAM_IO = "downstream_io"


class WaymarkError(ValueError):
    """Base class for all conversion errors."""

    kind: ErrorKind = ErrorKind.DECODE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}


class InputShapeError(WaymarkError):
    """Top-level structure is not what the format requires."""

    kind = ErrorKind.INPUT_SHAPE


class DecodeError(WaymarkError):
    """Bytes could not be decoded (corrupt zip, malformed XML, unreadable TIFF)."""

    kind = ErrorKind.DECODE


class CoordinateError(WaymarkError):
    """Out-of-range, non-finite or unparseable coordinate."""

    kind = ErrorKind.COORDINATE_INVALID


class IncompleteError(WaymarkError):
    kind = ErrorKind.INCOMPLETE


class UnsupportedFormatError(WaymarkError):
    kind = ErrorKind.UNSUPPORTED


class DownstreamIOError(WaymarkError):
    """Tile fetch, zip write or image encode failure."""

    kind = ErrorKind.DOWNSTREAM_IO


class RenderCancelledError(DownstreamIOError):
    """A raster render was cancelled; its canvas must not be consumed."""
