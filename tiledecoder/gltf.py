"""GLB parser: the model-parsing collaborator behind every mesh-bearing tile.

Reads a binary glTF 2.0 container into a :class:`DecodedMesh`. All accessors
become numpy views into a single writable copy of the BIN chunk, so
primitives that reference the same accessor alias the same memory exactly
the way they do on disk. Embedded images are decoded to RGBA with Pillow.
"""

import base64
import io
import json
import logging
import struct
from typing import Any, Callable, Dict, List, Optional

import numpy as np
from PIL import Image as PILImage

from .constants import (
    CHUNK_TYPE_BIN,
    CHUNK_TYPE_JSON,
    COMPONENT_DTYPES,
    DEFAULT_MAX_TEXTURE_SIZE,
    GLB_MAGIC,
    GLB_VERSION_SUPPORTED,
    TRIANGLES_MODE,
    TYPE_COMPONENT_COUNT,
)
from .errors import GltfError
from .matrices import mat4_from_column_major, mat4_from_trs
from .models import (
    BufferAttribute,
    DecodedMesh,
    Image,
    Mesh,
    Node,
    Primitive,
    QuantizationUniforms,
    Texture,
    view_buffer,
)

logger = logging.getLogger(__name__)

ImageLoader = Callable[[str], Optional[Image]]

# Normalized integer ranges for KHR_mesh_quantization positions
_NORMALIZED_DIVISOR = {
    np.dtype("<i1"): 127.0,
    np.dtype("<u1"): 255.0,
    np.dtype("<i2"): 32767.0,
    np.dtype("<u2"): 65535.0,
}


def read_glb_chunks(buffer, byte_offset: int = 0, byte_length: Optional[int] = None):
    """Split a GLB container into its parsed JSON and a writable BIN copy."""
    data = memoryview(buffer)[byte_offset:]
    if byte_length is not None:
        data = data[:byte_length]
    if len(data) < 12:
        raise GltfError("Invalid GLB: buffer too small")

    magic, version, total_length = struct.unpack_from("<4sII", data, 0)
    if magic != GLB_MAGIC:
        raise GltfError(f"Invalid GLB: bad magic {bytes(magic)!r}")
    if version != GLB_VERSION_SUPPORTED:
        raise GltfError(f"Unsupported GLB version: {version} (expected {GLB_VERSION_SUPPORTED})")
    if total_length > len(data):
        raise GltfError("Invalid GLB: length mismatch")

    json_chunk = None
    bin_chunk = None

    offset = 12
    while offset < total_length:
        if offset + 8 > total_length:
            raise GltfError("Invalid GLB: truncated chunk header")
        chunk_length, chunk_type = struct.unpack_from("<II", data, offset)
        offset += 8
        if offset + chunk_length > total_length:
            raise GltfError("Invalid GLB: truncated chunk data")
        chunk_data = data[offset:offset + chunk_length]
        offset += chunk_length

        if chunk_type == CHUNK_TYPE_JSON and json_chunk is None:
            json_chunk = bytes(chunk_data)
        elif chunk_type == CHUNK_TYPE_BIN and bin_chunk is None:
            bin_chunk = bytearray(chunk_data)

    if json_chunk is None:
        raise GltfError("Invalid GLB: missing JSON chunk")

    try:
        gltf = json.loads(json_chunk.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise GltfError(f"Invalid GLB JSON chunk: {exc}") from exc
    if not isinstance(gltf, dict):
        raise GltfError("Invalid GLB: JSON root is not an object")

    return gltf, bin_chunk if bin_chunk is not None else bytearray()


def _decode_data_uri(uri: str) -> bytes:
    header, _, payload = uri.partition(",")
    if ";base64" not in header:
        raise GltfError("Only base64 data URIs are supported")
    return base64.b64decode(payload)


def decode_image(data: bytes, max_texture_size: int = DEFAULT_MAX_TEXTURE_SIZE,
                 mime_type: Optional[str] = None) -> Image:
    """Decode encoded image bytes to a flat RGBA array, capped at ``max_texture_size``."""
    img = PILImage.open(io.BytesIO(data)).convert("RGBA")
    width, height = img.size
    if max_texture_size and max(width, height) > max_texture_size:
        ratio = max_texture_size / max(width, height)
        width = max(1, int(width * ratio))
        height = max(1, int(height * ratio))
        img = img.resize((width, height), PILImage.LANCZOS)
    array = np.asarray(img, dtype=np.uint8).reshape(-1).copy()
    return Image(width=width, height=height, array=array, mime_type=mime_type)


def _item(items: List[Any], index: Any, what: str) -> Any:
    if not isinstance(index, int) or not (0 <= index < len(items)):
        raise GltfError(f"{what} index out of range: {index}")
    return items[index]


class _GltfReader:
    """Resolves one glTF document against its buffers."""

    def __init__(self, gltf: Dict[str, Any], bin_chunk: bytearray,
                 max_texture_size: int, image_loader: Optional[ImageLoader]):
        self.gltf = gltf
        self.max_texture_size = max_texture_size
        self.image_loader = image_loader
        self.buffers: List[bytearray] = []
        self._attribute_cache: Dict[int, BufferAttribute] = {}

        for i, buf in enumerate(gltf.get("buffers", [])):
            uri = buf.get("uri")
            if uri is None:
                if i != 0:
                    raise GltfError(f"buffers[{i}] has no uri and is not the GLB BIN chunk")
                self.buffers.append(bin_chunk)
            elif uri.startswith("data:"):
                self.buffers.append(bytearray(_decode_data_uri(uri)))
            else:
                raise GltfError(f"External glTF buffers are not supported: {uri}")
        if not self.buffers:
            self.buffers.append(bin_chunk)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def accessor(self, index: int) -> BufferAttribute:
        """Attribute for ``accessors[index]``; one object per accessor."""
        cached = self._attribute_cache.get(index)
        if cached is not None:
            return cached

        accessors = self.gltf.get("accessors", [])
        if not (0 <= index < len(accessors)):
            raise GltfError(f"Accessor index out of range: {index}")
        accessor = accessors[index]
        if "sparse" in accessor:
            raise GltfError("Sparse accessors are not supported")

        component_type = accessor.get("componentType")
        dtype = COMPONENT_DTYPES.get(component_type)
        if dtype is None:
            raise GltfError(f"Unsupported componentType: {component_type}")
        item_size = TYPE_COMPONENT_COUNT.get(accessor.get("type"))
        if item_size is None:
            raise GltfError(f"Unsupported accessor type: {accessor.get('type')}")
        count = int(accessor.get("count", 0))

        view_index = accessor.get("bufferView")
        if view_index is None:
            array = np.zeros((count, item_size), dtype=dtype)
            attribute = BufferAttribute.from_array(array, component_type)
        else:
            buffer_view = _item(self.gltf.get("bufferViews", []), view_index, "bufferView")
            buffer = _item(self.buffers, buffer_view.get("buffer", 0), "buffer")
            byte_offset = int(buffer_view.get("byteOffset", 0)) + int(accessor.get("byteOffset", 0))
            byte_stride = int(buffer_view.get("byteStride", 0))
            try:
                array = view_buffer(buffer, byte_offset, count, item_size, dtype, byte_stride)
            except ValueError as exc:
                raise GltfError(f"Accessor {index}: {exc}") from exc
            attribute = BufferAttribute(
                array=array,
                buffer=buffer,
                byte_offset=byte_offset,
                byte_stride=byte_stride,
                item_size=item_size,
                component_type=component_type,
            )
        attribute.normalized = bool(accessor.get("normalized", False))
        attribute.min = accessor.get("min")
        attribute.max = accessor.get("max")
        self._attribute_cache[index] = attribute
        return attribute

    def quantization(self, accessor_index: int) -> Optional[QuantizationUniforms]:
        accessor = _item(self.gltf.get("accessors", []), accessor_index, "Accessor")
        ext = accessor.get("extensions", {}).get("WEB3D_quantized_attributes")
        if ext and "decodeMatrix" in ext:
            decode = mat4_from_column_major(ext["decodeMatrix"])
            return QuantizationUniforms(
                position_min=decode[:3, 3].copy(),
                norm_constant=np.diag(decode)[:3].copy(),
            )
        dtype = COMPONENT_DTYPES.get(accessor.get("componentType"))
        if accessor.get("normalized") and dtype in _NORMALIZED_DIVISOR:
            return QuantizationUniforms(norm_constant=1.0 / _NORMALIZED_DIVISOR[dtype])
        return None

    # ------------------------------------------------------------------
    # Scene graph
    # ------------------------------------------------------------------

    def nodes(self) -> List[Node]:
        nodes = []
        for raw in self.gltf.get("nodes", []):
            if "matrix" in raw:
                matrix = raw["matrix"]
                if not (isinstance(matrix, list) and len(matrix) == 16):
                    raise GltfError("Invalid node.matrix, expected 16 numbers")
                m = mat4_from_column_major(matrix)
            else:
                m = mat4_from_trs(raw.get("translation", (0, 0, 0)),
                                  raw.get("rotation", (0, 0, 0, 1)),
                                  raw.get("scale", (1, 1, 1)))
            nodes.append(Node(name=raw.get("name"), matrix=m, mesh=raw.get("mesh"),
                              children=list(raw.get("children", []))))
        return nodes

    def root_nodes(self, nodes: List[Node]) -> List[int]:
        scenes = self.gltf.get("scenes")
        if scenes:
            scene = _item(scenes, self.gltf.get("scene", 0), "Scene")
            return list(scene.get("nodes", []))
        children = {c for node in nodes for c in node.children}
        return [i for i in range(len(nodes)) if i not in children]

    def primitive(self, raw: Dict[str, Any], matrices: List[np.ndarray], node_index: int) -> Primitive:
        if "KHR_draco_mesh_compression" in raw.get("extensions", {}):
            raise GltfError("Draco-compressed primitives are not supported")
        attributes = {name: self.accessor(idx) for name, idx in raw.get("attributes", {}).items()}
        indices = self.accessor(raw["indices"]) if "indices" in raw else None
        quantization = None
        if "POSITION" in raw.get("attributes", {}):
            quantization = self.quantization(raw["attributes"]["POSITION"])
        return Primitive(
            attributes=attributes,
            indices=indices,
            mode=int(raw.get("mode", TRIANGLES_MODE)),
            material=raw.get("material"),
            matrices=list(matrices),
            quantization=quantization,
            node=node_index,
        )

    def meshes(self, nodes: List[Node]) -> List[Mesh]:
        """One Mesh per node that instantiates a glTF mesh, in scene order."""
        raw_meshes = self.gltf.get("meshes", [])
        result = []
        stack = [(i, []) for i in reversed(self.root_nodes(nodes))]
        while stack:
            node_index, ancestors = stack.pop()
            node = _item(nodes, node_index, "Node")
            matrices = ancestors + [node.matrix]
            if node.mesh is not None:
                raw = _item(raw_meshes, node.mesh, "Mesh")
                primitives = [self.primitive(p, matrices, node_index)
                              for p in raw.get("primitives", [])]
                result.append(Mesh(name=raw.get("name"), primitives=primitives))
            for child in reversed(node.children):
                stack.append((child, matrices))
        return result

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def images(self) -> List[Image]:
        images = []
        for i, raw in enumerate(self.gltf.get("images", [])):
            mime_type = raw.get("mimeType")
            data = None
            if "bufferView" in raw:
                view = _item(self.gltf.get("bufferViews", []), raw["bufferView"], "bufferView")
                buffer = _item(self.buffers, view.get("buffer", 0), "buffer")
                start = int(view.get("byteOffset", 0))
                data = bytes(buffer[start:start + int(view.get("byteLength", 0))])
            elif raw.get("uri", "").startswith("data:"):
                data = _decode_data_uri(raw["uri"])
            elif raw.get("uri") and self.image_loader is not None:
                image = self.image_loader(raw["uri"])
                images.append(image if image is not None else Image(uri=raw["uri"]))
                continue

            if data is None:
                images.append(Image(uri=raw.get("uri"), mime_type=mime_type))
                continue
            try:
                images.append(decode_image(data, self.max_texture_size, mime_type))
            except OSError as exc:
                logger.warning(f"Could not decode image {i} ({mime_type}): {exc}")
                images.append(Image(mime_type=mime_type))
        return images

    def textures(self, images: List[Image]) -> List[Texture]:
        samplers = self.gltf.get("samplers", [])
        textures = []
        for raw in self.gltf.get("textures", []):
            source = raw.get("source")
            image = images[source] if source is not None and source < len(images) else None
            sampler = _item(samplers, raw["sampler"], "Sampler") if "sampler" in raw else None
            textures.append(Texture(image=image, sampler=sampler))
        return textures


def parse_glb(buffer, byte_offset: int = 0, byte_length: Optional[int] = None, *,
              max_texture_size: int = DEFAULT_MAX_TEXTURE_SIZE,
              image_loader: Optional[ImageLoader] = None,
              url: Optional[str] = None) -> DecodedMesh:
    """Parse a GLB at ``byte_offset`` of ``buffer`` into a DecodedMesh."""
    gltf, bin_chunk = read_glb_chunks(buffer, byte_offset, byte_length)
    reader = _GltfReader(gltf, bin_chunk, max_texture_size, image_loader)

    nodes = reader.nodes()
    meshes = reader.meshes(nodes)
    images = reader.images()
    textures = reader.textures(images)

    transferables: List[Any] = list(reader.buffers)
    transferables.extend(img.array for img in images if img.array is not None)

    decoded = DecodedMesh(
        meshes=meshes,
        nodes=nodes,
        materials=list(gltf.get("materials", [])),
        textures=textures,
        images=images,
        extensions=dict(gltf.get("extensions", {})),
        asset=dict(gltf.get("asset", {})),
        transferables=transferables,
        url=url,
    )
    primitive_count = sum(len(m.primitives) for m in meshes)
    logger.debug(f"Parsed GLB: {len(meshes)} mesh instances, {primitive_count} primitives, "
                 f"{len(images)} images")
    return decoded
