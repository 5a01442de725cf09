"""Binary 3D Tiles loaders: b3dm, i3dm, pnts and cmpt containers.

Each loader reads its header and feature table, resolves feature-table
properties to numpy views over a writable copy of the feature-table binary,
and hands any embedded GLB to :func:`tiledecoder.gltf.parse_glb`.
"""

import json
import logging
import struct
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .constants import (
    B3DM_HEADER_LENGTH,
    CMPT_HEADER_LENGTH,
    COMPONENT_DTYPES,
    COMPONENT_TYPE_FLOAT32,
    COMPONENT_TYPE_UINT8,
    COMPONENT_TYPE_UINT16,
    COMPONENT_TYPE_UINT32,
    DEFAULT_MAX_TEXTURE_SIZE,
    FEATURE_COMPONENT_TYPES,
    I3DM_HEADER_LENGTH,
    MAGIC_B3DM,
    MAGIC_CMPT,
    MAGIC_I3DM,
    MAGIC_PNTS,
    PNTS_HEADER_LENGTH,
)
from .errors import MissingContentError, TileFormatError
from .gltf import ImageLoader, parse_glb
from .models import (
    BufferAttribute,
    FeatureTable,
    PointsContent,
    TileContent,
    view_buffer,
)
from .sniffer import read_magic

logger = logging.getLogger(__name__)

# name -> (default component type, components per element)
GLOBAL_SEMANTICS: Dict[str, Tuple[int, int]] = {
    "RTC_CENTER": (COMPONENT_TYPE_FLOAT32, 3),
    "QUANTIZED_VOLUME_OFFSET": (COMPONENT_TYPE_FLOAT32, 3),
    "QUANTIZED_VOLUME_SCALE": (COMPONENT_TYPE_FLOAT32, 3),
    "CONSTANT_RGBA": (COMPONENT_TYPE_UINT8, 4),
    "BATCH_LENGTH": (COMPONENT_TYPE_UINT32, 1),
    "INSTANCES_LENGTH": (COMPONENT_TYPE_UINT32, 1),
    "POINTS_LENGTH": (COMPONENT_TYPE_UINT32, 1),
}

I3DM_SEMANTICS: Dict[str, Tuple[int, int]] = {
    "POSITION": (COMPONENT_TYPE_FLOAT32, 3),
    "POSITION_QUANTIZED": (COMPONENT_TYPE_UINT16, 3),
    "NORMAL_UP": (COMPONENT_TYPE_FLOAT32, 3),
    "NORMAL_RIGHT": (COMPONENT_TYPE_FLOAT32, 3),
    "NORMAL_UP_OCT32P": (COMPONENT_TYPE_UINT16, 2),
    "NORMAL_RIGHT_OCT32P": (COMPONENT_TYPE_UINT16, 2),
    "SCALE": (COMPONENT_TYPE_FLOAT32, 1),
    "SCALE_NON_UNIFORM": (COMPONENT_TYPE_FLOAT32, 3),
    "BATCH_ID": (COMPONENT_TYPE_UINT16, 1),
}

PNTS_SEMANTICS: Dict[str, Tuple[int, int]] = {
    "POSITION": (COMPONENT_TYPE_FLOAT32, 3),
    "POSITION_QUANTIZED": (COMPONENT_TYPE_UINT16, 3),
    "RGBA": (COMPONENT_TYPE_UINT8, 4),
    "RGB": (COMPONENT_TYPE_UINT8, 3),
    "RGB565": (COMPONENT_TYPE_UINT16, 1),
    "NORMAL": (COMPONENT_TYPE_FLOAT32, 3),
    "NORMAL_OCT16P": (COMPONENT_TYPE_UINT8, 2),
    "BATCH_ID": (COMPONENT_TYPE_UINT16, 1),
}


def _read_header(buffer, byte_offset: int, length: int, magic: str) -> Tuple[int, ...]:
    view = memoryview(buffer)
    if len(view) - byte_offset < length:
        raise TileFormatError(f"{magic}: buffer shorter than its {length}-byte header")
    found = read_magic(view, byte_offset)
    if found != magic:
        raise TileFormatError(f"Expected {magic!r} magic, found {found!r}")
    fields = struct.unpack_from("<" + "I" * ((length - 4) // 4), view, byte_offset + 4)
    version, byte_length = fields[0], fields[1]
    if version != 1:
        raise TileFormatError(f"{magic}: unsupported version {version}")
    if byte_length > len(view) - byte_offset:
        raise TileFormatError(f"{magic}: byteLength {byte_length} exceeds buffer")
    return fields


def _read_json(view: memoryview, start: int, length: int) -> Dict[str, Any]:
    if length == 0:
        return {}
    try:
        raw = bytes(view[start:start + length]).decode("utf-8").rstrip(" \x00")
        table = json.loads(raw) if raw else {}
    except ValueError as exc:
        raise TileFormatError(f"Invalid table JSON at byte {start}: {exc}") from exc
    if not isinstance(table, dict):
        raise TileFormatError(f"Table JSON at byte {start} is not an object")
    return table


def _resolve_component_type(value: Dict[str, Any], default: int) -> int:
    name = value.get("componentType")
    if name is None:
        return default
    if isinstance(name, int):
        if name not in COMPONENT_DTYPES:
            raise TileFormatError(f"Unknown feature-table componentType {name}")
        return name
    if name not in FEATURE_COMPONENT_TYPES:
        raise TileFormatError(f"Unknown feature-table componentType {name!r}")
    return FEATURE_COMPONENT_TYPES[name]


def read_feature_table(header: Dict[str, Any], binary: bytearray) -> FeatureTable:
    """Resolve global semantics, reading binary-referenced globals."""
    table = FeatureTable()
    for name, value in header.items():
        if isinstance(value, dict) and "byteOffset" in value:
            default_type, size = GLOBAL_SEMANTICS.get(name, (COMPONENT_TYPE_FLOAT32, 1))
            dtype = COMPONENT_DTYPES[_resolve_component_type(value, default_type)]
            try:
                arr = view_buffer(binary, int(value["byteOffset"]), 1, size, dtype)[0]
            except ValueError as exc:
                raise TileFormatError(f"Feature table global {name}: {exc}") from exc
            table[name] = arr.tolist() if size > 1 else arr.item()
        else:
            table[name] = value
    return table


def read_properties(header: Dict[str, Any], binary: bytearray, count: int,
                    semantics: Dict[str, Tuple[int, int]]) -> Dict[str, BufferAttribute]:
    """Per-feature properties as views into the feature-table binary."""
    data = {}
    for name, (default_type, item_size) in semantics.items():
        ref = header.get(name)
        if not isinstance(ref, dict) or "byteOffset" not in ref:
            continue
        component_type = _resolve_component_type(ref, default_type)
        dtype = COMPONENT_DTYPES[component_type]
        byte_offset = int(ref["byteOffset"])
        try:
            array = view_buffer(binary, byte_offset, count, item_size, dtype)
        except ValueError as exc:
            raise TileFormatError(f"Feature table property {name}: {exc}") from exc
        data[name] = BufferAttribute(array=array, buffer=binary, byte_offset=byte_offset,
                                     item_size=item_size, component_type=component_type)
    return data


def _dequantize_positions(data: Dict[str, BufferAttribute], table: FeatureTable,
                          transferables: List[Any]) -> None:
    """Replace POSITION_QUANTIZED with a float32 POSITION attribute."""
    if "POSITION" in data or "POSITION_QUANTIZED" not in data:
        return
    offset = table.get("QUANTIZED_VOLUME_OFFSET")
    scale = table.get("QUANTIZED_VOLUME_SCALE")
    if offset is None or scale is None:
        raise TileFormatError("POSITION_QUANTIZED requires QUANTIZED_VOLUME_OFFSET and _SCALE")
    quantized = data.pop("POSITION_QUANTIZED").array.astype(np.float64)
    positions = quantized / 65535.0 * np.asarray(scale) + np.asarray(offset)
    attribute = BufferAttribute.from_array(positions.astype(np.float32))
    data["POSITION"] = attribute
    transferables.append(attribute.buffer)


def _read_tables(view: memoryview, start: int, ft_json: int, ft_bin: int,
                 bt_json: int, bt_bin: int):
    pos = start
    ft_header = _read_json(view, pos, ft_json)
    pos += ft_json
    ft_binary = bytearray(view[pos:pos + ft_bin])
    pos += ft_bin
    batch_table = _read_json(view, pos, bt_json)
    pos += bt_json
    if bt_bin:
        batch_table = dict(batch_table)
        batch_table["_binary"] = bytes(view[pos:pos + bt_bin])
    pos += bt_bin
    return ft_header, ft_binary, batch_table, pos


def load_b3dm(buffer, byte_offset: int = 0, *,
              max_texture_size: int = DEFAULT_MAX_TEXTURE_SIZE,
              image_loader: Optional[ImageLoader] = None,
              url: Optional[str] = None) -> TileContent:
    view = memoryview(buffer)
    _, byte_length, ft_json, ft_bin, bt_json, bt_bin = _read_header(
        view, byte_offset, B3DM_HEADER_LENGTH, MAGIC_B3DM)
    ft_header, ft_binary, batch_table, pos = _read_tables(
        view, byte_offset + B3DM_HEADER_LENGTH, ft_json, ft_bin, bt_json, bt_bin)

    table = read_feature_table(ft_header, ft_binary)
    glb_length = byte_offset + byte_length - pos
    mesh = parse_glb(view, pos, glb_length, max_texture_size=max_texture_size,
                     image_loader=image_loader, url=url)
    logger.debug(f"b3dm {url}: BATCH_LENGTH={table.get('BATCH_LENGTH')}, "
                 f"RTC_CENTER={table.get('RTC_CENTER')}")
    return TileContent(mesh=mesh, feature_table=table, batch_table=batch_table,
                       magic=MAGIC_B3DM, url=url)


def load_i3dm(buffer, byte_offset: int = 0, *,
              max_texture_size: int = DEFAULT_MAX_TEXTURE_SIZE,
              image_loader: Optional[ImageLoader] = None,
              url: Optional[str] = None) -> PointsContent:
    view = memoryview(buffer)
    _, byte_length, ft_json, ft_bin, bt_json, bt_bin, gltf_format = _read_header(
        view, byte_offset, I3DM_HEADER_LENGTH, MAGIC_I3DM)
    ft_header, ft_binary, batch_table, pos = _read_tables(
        view, byte_offset + I3DM_HEADER_LENGTH, ft_json, ft_bin, bt_json, bt_bin)

    table = read_feature_table(ft_header, ft_binary)
    count = int(table.get("INSTANCES_LENGTH", 0))
    data = read_properties(ft_header, ft_binary, count, I3DM_SEMANTICS)
    transferables: List[Any] = [ft_binary]
    _dequantize_positions(data, table, transferables)
    if "POSITION" not in data:
        raise TileFormatError("i3dm: feature table has neither POSITION nor POSITION_QUANTIZED")

    if gltf_format == 0:
        uri = bytes(view[pos:byte_offset + byte_length]).decode("utf-8").rstrip(" \x00")
        raise MissingContentError(url or "<buffer>", f"external instanced glTF {uri!r} is not supported")
    mesh = parse_glb(view, pos, byte_offset + byte_length - pos,
                     max_texture_size=max_texture_size, image_loader=image_loader, url=url)
    return PointsContent(magic=MAGIC_I3DM, data=data, feature_table=table,
                         batch_table=batch_table, mesh=mesh, url=url,
                         transferables=transferables)


def load_pnts(buffer, byte_offset: int = 0, *, url: Optional[str] = None, **_) -> PointsContent:
    view = memoryview(buffer)
    _, byte_length, ft_json, ft_bin, bt_json, bt_bin = _read_header(
        view, byte_offset, PNTS_HEADER_LENGTH, MAGIC_PNTS)
    ft_header, ft_binary, batch_table, _ = _read_tables(
        view, byte_offset + PNTS_HEADER_LENGTH, ft_json, ft_bin, bt_json, bt_bin)

    table = read_feature_table(ft_header, ft_binary)
    count = int(table.get("POINTS_LENGTH", 0))
    data = read_properties(ft_header, ft_binary, count, PNTS_SEMANTICS)
    transferables: List[Any] = [ft_binary]
    _dequantize_positions(data, table, transferables)
    if "POSITION" not in data:
        raise TileFormatError("pnts: feature table has neither POSITION nor POSITION_QUANTIZED")

    return PointsContent(magic=MAGIC_PNTS, data=data, feature_table=table,
                         batch_table=batch_table, url=url, transferables=transferables)


def split_composite(buffer, byte_offset: int = 0) -> List[Tuple[int, int]]:
    """Return ``(offset, length)`` of each inner tile of a cmpt, in order."""
    view = memoryview(buffer)
    _, byte_length, tiles_length = _read_header(view, byte_offset, CMPT_HEADER_LENGTH, MAGIC_CMPT)
    end = byte_offset + byte_length
    pos = byte_offset + CMPT_HEADER_LENGTH
    tiles = []
    for i in range(tiles_length):
        if pos + 12 > end:
            raise TileFormatError(f"cmpt: inner tile {i} header runs past byteLength")
        (inner_length,) = struct.unpack_from("<I", view, pos + 8)
        if inner_length < 12 or pos + inner_length > end:
            raise TileFormatError(f"cmpt: inner tile {i} has invalid byteLength {inner_length}")
        tiles.append((pos, inner_length))
        pos += inner_length
    return tiles
