"""Format sniffing: classify a tile buffer by its leading bytes."""

import json
from enum import Enum

from .constants import (
    JSON_LEAD_CHARS,
    MAGIC_B3DM,
    MAGIC_CMPT,
    MAGIC_I3DM,
    MAGIC_PNTS,
)
from .errors import UnrecognizedFormatError


class TileFormat(str, Enum):
    json = "json"
    b3dm = MAGIC_B3DM
    i3dm = MAGIC_I3DM
    pnts = MAGIC_PNTS
    cmpt = MAGIC_CMPT


def read_magic(buffer, offset: int = 0) -> str:
    """Return the 4 bytes at ``offset`` as a latin-1 string (may be short)."""
    head = bytes(memoryview(buffer)[offset:offset + 4])
    return head.decode("latin-1")


def sniff_format(buffer, offset: int = 0) -> TileFormat:
    magic = read_magic(buffer, offset)
    if magic[:1] in JSON_LEAD_CHARS:
        return TileFormat.json
    try:
        return TileFormat(magic)
    except ValueError:
        raise UnrecognizedFormatError(magic) from None


def read_json(buffer, offset: int = 0, length: int = None):
    """Decode a UTF-8 manifest; parse errors propagate to the caller."""
    view = memoryview(buffer)
    end = len(view) if length is None else offset + length
    text = bytes(view[offset:end]).decode("utf-8")
    return json.loads(text)
