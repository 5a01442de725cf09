"""Synthetic 3D Tiles payloads for the test suite."""

import io
import json
import struct

import numpy as np
from PIL import Image as PILImage
from pyproj import Transformer


def _pad(data: bytes, fill: bytes, align: int = 4) -> bytes:
    return data + fill * ((-len(data)) % align)


def _json_bytes(obj, align: int = 8) -> bytes:
    if not obj:
        return b""
    return _pad(json.dumps(obj).encode("utf-8"), b" ", align)


def pack_glb(gltf: dict, bin_chunk: bytes = b"") -> bytes:
    json_chunk = _pad(json.dumps(gltf).encode("utf-8"), b" ")
    body = struct.pack("<II", len(json_chunk), 0x4E4F534A) + json_chunk
    if bin_chunk:
        bin_chunk = _pad(bin_chunk, b"\x00")
        body += struct.pack("<II", len(bin_chunk), 0x004E4942) + bin_chunk
    return struct.pack("<4sII", b"glTF", 2, 12 + len(body)) + body


def png_bytes(pixels: np.ndarray) -> bytes:
    """Encode an ``(h, w, 4)`` uint8 array as PNG."""
    out = io.BytesIO()
    PILImage.fromarray(np.asarray(pixels, dtype=np.uint8), "RGBA").save(out, format="PNG")
    return out.getvalue()


def triangle_glb(positions=None, nodes=None, meshes=1, image=None, normals=False,
                 extensions=None) -> bytes:
    """A GLB with ``meshes`` triangle meshes, each with its own POSITION accessor.

    ``nodes`` is a list of raw glTF node dicts; by default one node per mesh.
    ``image`` is an ``(h, w, 4)`` array embedded through a bufferView and
    bound as the base-colour texture of material 0.
    """
    if positions is None:
        positions = [[0, 0, 0], [1, 0, 0], [0, 1, 0]]
    pos = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    count = len(pos)

    bin_parts = []
    buffer_views = []
    accessors = []
    offset = 0

    def add_view(data: bytes) -> int:
        nonlocal offset
        data = _pad(data, b"\x00")
        buffer_views.append({"buffer": 0, "byteOffset": offset, "byteLength": len(data)})
        bin_parts.append(data)
        offset += len(data)
        return len(buffer_views) - 1

    gltf_meshes = []
    for _ in range(meshes):
        view = add_view(pos.tobytes())
        accessors.append({"bufferView": view, "componentType": 5126, "count": count, "type": "VEC3",
                          "min": pos.min(axis=0).tolist(), "max": pos.max(axis=0).tolist()})
        attributes = {"POSITION": len(accessors) - 1}
        if normals:
            normal_view = add_view(np.tile(np.float32([0, 0, 1]), (count, 1)).tobytes())
            accessors.append({"bufferView": normal_view, "componentType": 5126, "count": count,
                              "type": "VEC3"})
            attributes["NORMAL"] = len(accessors) - 1
        index_view = add_view(np.arange(count, dtype=np.uint16).tobytes())
        accessors.append({"bufferView": index_view, "componentType": 5123, "count": count,
                          "type": "SCALAR"})
        primitive = {"attributes": attributes, "indices": len(accessors) - 1, "mode": 4, "material": 0}
        gltf_meshes.append({"primitives": [primitive]})

    material = {"pbrMetallicRoughness": {"baseColorFactor": [1, 1, 1, 1]}}
    gltf = {
        "asset": {"version": "2.0"},
        "accessors": accessors,
        "bufferViews": buffer_views,
        "meshes": gltf_meshes,
        "materials": [material],
    }
    if image is not None:
        image_view = add_view(png_bytes(image))
        gltf["images"] = [{"bufferView": image_view, "mimeType": "image/png"}]
        gltf["textures"] = [{"source": 0}]
        material["pbrMetallicRoughness"]["baseColorTexture"] = {"index": 0}
    if nodes is None:
        nodes = [{"mesh": i} for i in range(meshes)]
    gltf["nodes"] = nodes
    gltf["scenes"] = [{"nodes": [i for i in range(len(nodes))
                                 if not any(i in n.get("children", []) for n in nodes)]}]
    if extensions:
        gltf["extensions"] = extensions

    bin_chunk = b"".join(bin_parts)
    gltf["buffers"] = [{"byteLength": len(bin_chunk)}]
    return pack_glb(gltf, bin_chunk)


def empty_glb() -> bytes:
    return pack_glb({"asset": {"version": "2.0"}})


def _tables(feature_json, feature_bin, batch_json=None, batch_bin=b""):
    ft_json = _json_bytes(feature_json)
    ft_bin = _pad(feature_bin, b"\x00", 8)
    bt_json = _json_bytes(batch_json)
    bt_bin = _pad(batch_bin, b"\x00", 8)
    return ft_json, ft_bin, bt_json, bt_bin


def make_b3dm(glb: bytes, feature_json=None, feature_bin=b"", batch_json=None) -> bytes:
    feature_json = feature_json if feature_json is not None else {"BATCH_LENGTH": 0}
    ft_json, ft_bin, bt_json, bt_bin = _tables(feature_json, feature_bin, batch_json)
    body = ft_json + ft_bin + bt_json + bt_bin + glb
    length = 28 + len(body)
    header = struct.pack("<4s6I", b"b3dm", 1, length, len(ft_json), len(ft_bin),
                         len(bt_json), len(bt_bin))
    return header + body


def make_i3dm(glb: bytes, positions, feature_json=None, gltf_format: int = 1,
              extra_bin: bytes = b"") -> bytes:
    pos = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    table = {"INSTANCES_LENGTH": len(pos), "POSITION": {"byteOffset": 0}}
    table.update(feature_json or {})
    ft_json, ft_bin, bt_json, bt_bin = _tables(table, pos.tobytes() + extra_bin)
    body = ft_json + ft_bin + bt_json + bt_bin + glb
    length = 32 + len(body)
    header = struct.pack("<4s7I", b"i3dm", 1, length, len(ft_json), len(ft_bin),
                         len(bt_json), len(bt_bin), gltf_format)
    return header + body


def make_pnts(positions, colors=None, feature_json=None) -> bytes:
    pos = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    table = {"POINTS_LENGTH": len(pos), "POSITION": {"byteOffset": 0}}
    binary = pos.tobytes()
    if colors is not None:
        table["RGB"] = {"byteOffset": len(binary)}
        binary += np.asarray(colors, dtype=np.uint8).reshape(-1, 3).tobytes()
    table.update(feature_json or {})
    return make_pnts_raw(table, binary)


def make_pnts_raw(table: dict, binary: bytes) -> bytes:
    ft_json, ft_bin, bt_json, bt_bin = _tables(table, binary)
    body = ft_json + ft_bin + bt_json + bt_bin
    length = 28 + len(body)
    header = struct.pack("<4s6I", b"pnts", 1, length, len(ft_json), len(ft_bin),
                         len(bt_json), len(bt_bin))
    return header + body


def make_cmpt(*tiles: bytes) -> bytes:
    body = b"".join(tiles)
    length = 16 + len(body)
    return struct.pack("<4s3I", b"cmpt", 1, length, len(tiles)) + body


def degrees_to_cartesian(lon_lat_h) -> np.ndarray:
    """WGS84 [lon, lat, height] in degrees/metres to ``(N, 3)`` ECEF."""
    pts = np.asarray(lon_lat_h, dtype=np.float64).reshape(-1, 3)
    x, y, z = Transformer.from_crs("EPSG:4979", "EPSG:4978", always_xy=True).transform(
        pts[:, 0], pts[:, 1], pts[:, 2])
    return np.stack([x, y, z], axis=1)


def to_column_major(m: np.ndarray) -> list:
    return [float(v) for v in np.asarray(m, dtype=np.float64).T.reshape(16)]
