"""Data classes shared across the decode pipeline."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

import numpy as np

from .constants import (
    COMPONENT_TYPE_FLOAT32,
    DEFAULT_MAX_TEXTURE_SIZE,
    DEFAULT_PROJECTION,
    MAGIC_CMPT,
    TRIANGLES_MODE,
)


# ── Requests and configuration ───────────────────────────────────

@dataclass
class ServiceConfig:
    """Per-source options, one entry per tileset root."""
    max_texture_size: int = DEFAULT_MAX_TEXTURE_SIZE
    fetch_options: Dict[str, Any] = field(default_factory=dict)
    url_params: Optional[str] = None


@dataclass
class WorkerOptions:
    projection: str = DEFAULT_PROJECTION
    services: List[ServiceConfig] = field(default_factory=lambda: [ServiceConfig()])

    def service(self, root_index: int) -> ServiceConfig:
        if 0 <= root_index < len(self.services):
            return self.services[root_index]
        return ServiceConfig()


@dataclass(frozen=True)
class TileContentRequest:
    url: str
    raw_buffer: Optional[bytes] = None
    root_index: int = 0
    up_axis: str = "Y"
    transform: Optional[Sequence[float]] = None  # 16 floats, column-major


# ── Decoded glTF ─────────────────────────────────────────────────

@dataclass
class BufferAttribute:
    """A typed ``(count, item_size)`` view onto a shared backing buffer.

    Several attributes (and several primitives) may view the same ``buffer``;
    identity of that object plus ``byte_offset`` is what identifies the data.
    """
    array: np.ndarray
    buffer: Any
    byte_offset: int = 0
    byte_stride: int = 0
    item_size: int = 3
    component_type: int = COMPONENT_TYPE_FLOAT32
    normalized: bool = False
    min: Optional[List[float]] = None
    max: Optional[List[float]] = None

    @property
    def count(self) -> int:
        return int(self.array.shape[0])

    @classmethod
    def from_array(cls, array: np.ndarray, component_type: int = COMPONENT_TYPE_FLOAT32,
                   normalized: bool = False) -> "BufferAttribute":
        """Wrap a freshly allocated array; the array is its own backing buffer."""
        arr = np.ascontiguousarray(array)
        if arr.ndim == 1:
            arr = arr.reshape(-1, 1)
        return cls(array=arr, buffer=arr, byte_offset=0, byte_stride=0,
                   item_size=int(arr.shape[1]), component_type=component_type,
                   normalized=normalized)


def view_buffer(buffer: bytearray, byte_offset: int, count: int, item_size: int,
                dtype: np.dtype, byte_stride: int = 0) -> np.ndarray:
    """Create a writable strided numpy view into ``buffer``."""
    if count == 0:
        return np.zeros((0, item_size), dtype=dtype)
    element_size = dtype.itemsize * item_size
    stride = byte_stride or element_size
    needed = byte_offset + (count - 1) * stride + element_size
    if needed > len(buffer):
        raise ValueError(f"View of {count}x{item_size} at {byte_offset} exceeds buffer "
                         f"({needed} > {len(buffer)})")
    return np.ndarray(shape=(count, item_size), dtype=dtype, buffer=buffer,
                      offset=byte_offset, strides=(stride, dtype.itemsize))


@dataclass
class QuantizationUniforms:
    """Dequantize with ``value * norm_constant + position_min``."""
    position_min: np.ndarray = field(default_factory=lambda: np.zeros(3))
    norm_constant: Union[float, np.ndarray] = 1.0

    def dequantize(self, array: np.ndarray) -> np.ndarray:
        return np.asarray(array[:, :3], dtype=np.float64) * self.norm_constant + self.position_min[:3]


@dataclass
class Primitive:
    attributes: Dict[str, BufferAttribute] = field(default_factory=dict)
    indices: Optional[BufferAttribute] = None
    mode: int = TRIANGLES_MODE
    material: Optional[int] = None
    matrices: List[np.ndarray] = field(default_factory=list)
    quantization: Optional[QuantizationUniforms] = None
    node: Optional[int] = None


@dataclass
class Mesh:
    name: Optional[str] = None
    primitives: List[Primitive] = field(default_factory=list)


@dataclass
class Node:
    name: Optional[str] = None
    matrix: np.ndarray = field(default_factory=lambda: np.identity(4))
    mesh: Optional[int] = None
    children: List[int] = field(default_factory=list)


@dataclass
class Image:
    width: int = 0
    height: int = 0
    array: Optional[np.ndarray] = None  # flat RGBA uint8
    color: Optional[List[float]] = None
    mime_type: Optional[str] = None
    uri: Optional[str] = None


@dataclass
class Texture:
    image: Optional[Image] = None
    sampler: Optional[dict] = None


@dataclass
class DecodedMesh:
    """A parsed glTF document with its buffers resolved into numpy views."""
    meshes: List[Mesh] = field(default_factory=list)
    nodes: List[Node] = field(default_factory=list)
    materials: List[dict] = field(default_factory=list)
    textures: List[Texture] = field(default_factory=list)
    images: List[Image] = field(default_factory=list)
    extensions: Dict[str, Any] = field(default_factory=dict)
    asset: Dict[str, Any] = field(default_factory=dict)
    transferables: List[Any] = field(default_factory=list)
    url: Optional[str] = None

    def iter_primitives(self) -> Iterator[Primitive]:
        for mesh in self.meshes:
            yield from mesh.primitives


# ── Feature tables and tile contents ─────────────────────────────

class FeatureTable(dict):
    """Resolved feature-table globals (``RTC_CENTER``, ``EAST_NORTH_UP``, …)."""

    @property
    def rtc_center(self) -> Optional[List[float]]:
        center = self.get("RTC_CENTER")
        if center is None:
            return None
        return [float(v) for v in center]

    @property
    def east_north_up(self) -> bool:
        return bool(self.get("EAST_NORTH_UP", False))


@dataclass
class TileContent:
    """Decoded batched-model (b3dm) content."""
    mesh: DecodedMesh
    feature_table: FeatureTable = field(default_factory=FeatureTable)
    batch_table: Dict[str, Any] = field(default_factory=dict)
    magic: str = "b3dm"
    rtc_center: Optional[List[float]] = None
    rtc_coord: Optional[List[float]] = None
    proj_center: Optional[List[float]] = None
    share_position: bool = False
    root_index: int = 0
    url: Optional[str] = None

    @property
    def transferables(self) -> List[Any]:
        return self.mesh.transferables


@dataclass
class PointsContent:
    """Decoded point-cloud (pnts) or instanced-model (i3dm) content."""
    magic: str
    data: Dict[str, BufferAttribute] = field(default_factory=dict)
    feature_table: FeatureTable = field(default_factory=FeatureTable)
    batch_table: Dict[str, Any] = field(default_factory=dict)
    mesh: Optional[DecodedMesh] = None
    rtc_center: Optional[List[float]] = None
    rtc_coord: Optional[List[float]] = None
    root_index: int = 0
    url: Optional[str] = None
    transferables: List[Any] = field(default_factory=list)


@dataclass
class CompositeContent:
    content: List[Any] = field(default_factory=list)
    magic: str = MAGIC_CMPT

    def iter_leaves(self) -> Iterator[Union[TileContent, PointsContent]]:
        """Leaf contents in original order, however deeply nested."""
        stack = [iter(self.content)]
        while stack:
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                continue
            if isinstance(child, CompositeContent):
                stack.append(iter(child.content))
            else:
                yield child


TileData = Union[TileContent, PointsContent, CompositeContent, dict]


@dataclass
class TileResult:
    """What the host receives for one settled request."""
    error: Optional[Exception] = None
    content: Optional[TileData] = None
    transferables: List[Any] = field(default_factory=list)

    def as_tuple(self):
        return self.error, self.content, self.transferables
