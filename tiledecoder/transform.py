"""Coordinate transformer: ECEF model space → float32 renderer space.

Two modes for mesh tiles:

* **projected** (:func:`project_coordinates`): every vertex is taken to
  geodetic degrees, run through the map projection and stored relative to
  the tile's projected center.
* **shared position** (:func:`convert_coordinates`): used when primitives
  alias one position buffer under different transforms. Vertices stay in
  their modelling frame and are only rebased onto a new RTC center; the
  renderer projects at draw time.

Point clouds and instanced models go through :func:`process_points`.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .center import (
    BoundingAccumulator,
    dequantize,
    find_min_max_of_position,
    get_model_center,
)
from .constants import COMPONENT_TYPE_FLOAT32, IDENTITY_MATRIX
from .geodesy import Projection, cartesian_to_degree, cartesian_to_degrees, east_north_up_axes
from .matrices import is_identity, node_matrix, normal_matrix, transform_point, transform_points
from .models import BufferAttribute, DecodedMesh, PointsContent, TileContent

logger = logging.getLogger(__name__)


class ProcessedBuffers:
    """Side table of (buffer identity, byte offset) pairs already rewritten.

    Owned by one pipeline invocation; holds a reference to each buffer so
    identities stay valid for as long as the table lives.
    """

    def __init__(self):
        self._entries: Dict[int, Tuple[Any, set]] = {}

    def is_processed(self, attribute: BufferAttribute) -> bool:
        entry = self._entries.get(id(attribute.buffer))
        return entry is not None and attribute.byte_offset in entry[1]

    def mark(self, attribute: BufferAttribute) -> None:
        entry = self._entries.setdefault(id(attribute.buffer), (attribute.buffer, set()))
        entry[1].add(attribute.byte_offset)

    def __len__(self) -> int:
        return sum(len(offsets) for _, offsets in self._entries.values())


def is_sharing_position(mesh: Optional[DecodedMesh]) -> bool:
    """True when two primitives read POSITION from the same buffer and offset."""
    if mesh is None:
        return False
    visit_ids: Dict[int, int] = {}
    seen = set()
    for primitive in mesh.iter_primitives():
        position = primitive.attributes.get("POSITION")
        if position is None:
            continue
        visit_id = visit_ids.setdefault(id(position.buffer), len(visit_ids) + 1)
        key = (visit_id, position.byte_offset or 0)
        if key in seen:
            return True
        seen.add(key)
    return False


def rebase(vertices, center: Sequence[float]) -> np.ndarray:
    """Express double-precision vertices relative to ``center`` in float32."""
    return (np.asarray(vertices, dtype=np.float64)[:, :3]
            - np.asarray(center, dtype=np.float64)).astype(np.float32)


def _store_positions(attribute: BufferAttribute, values: np.ndarray,
                     transferables: Optional[List[Any]] = None) -> None:
    """Write float32 xyz into the attribute, in place when its layout allows."""
    values32 = np.asarray(values, dtype=np.float32)
    if attribute.component_type == COMPONENT_TYPE_FLOAT32 and attribute.item_size == 3:
        attribute.array[:] = values32
    else:
        fresh = np.ascontiguousarray(values32)
        attribute.array = fresh
        attribute.buffer = fresh
        attribute.byte_offset = 0
        attribute.byte_stride = 0
        attribute.item_size = 3
        attribute.component_type = COMPONENT_TYPE_FLOAT32
        attribute.normalized = False
        if transferables is not None:
            transferables.append(fresh)

    if len(values32):
        stored = attribute.array.astype(np.float64)
        attribute.min = stored.min(axis=0).tolist()
        attribute.max = stored.max(axis=0).tolist()
    else:
        attribute.min = [float("inf")] * 3
        attribute.max = [float("-inf")] * 3


def transform_normal_or_tangent(attribute: BufferAttribute, matrices, up_transform: np.ndarray,
                                processed: ProcessedBuffers,
                                transferables: Optional[List[Any]] = None) -> None:
    if processed.is_processed(attribute):
        return
    m = up_transform @ node_matrix(matrices)
    if is_identity(m):
        return
    vectors = attribute.array[:, :3].astype(np.float64)
    if attribute.normalized:
        vectors = vectors / float(np.iinfo(attribute.array.dtype).max)
    rotated = vectors @ normal_matrix(m).T
    lengths = np.linalg.norm(rotated, axis=1, keepdims=True)
    rotated = np.divide(rotated, lengths, out=np.zeros_like(rotated), where=lengths > 0)

    if attribute.component_type == COMPONENT_TYPE_FLOAT32:
        attribute.array[:, :3] = rotated.astype(np.float32)
    else:
        tail = attribute.array[:, 3:].astype(np.float32)
        fresh = np.ascontiguousarray(np.hstack([rotated.astype(np.float32), tail]))
        attribute.array = fresh
        attribute.buffer = fresh
        attribute.byte_offset = 0
        attribute.byte_stride = 0
        attribute.component_type = COMPONENT_TYPE_FLOAT32
        attribute.normalized = False
        if transferables is not None:
            transferables.append(fresh)
    processed.mark(attribute)


def get_proj_center(center: Sequence[float], projection: Projection) -> List[float]:
    """Projected x/y of ``center`` plus its geodetic height."""
    degree = cartesian_to_degree(center)
    x, y = projection.project_point(degree)
    return [x, y, degree[2]]


def project_vertices(attribute: BufferAttribute, primitive, rtc_center: Optional[Sequence[float]],
                     proj_center: Sequence[float], up_transform: np.ndarray,
                     transform: Optional[np.ndarray], projection: Projection,
                     processed: ProcessedBuffers,
                     transferables: Optional[List[Any]] = None) -> bool:
    """Rewrite one POSITION view into projected, center-relative float32.

    Returns False when the view was already handled through another primitive.
    """
    if processed.is_processed(attribute):
        return False

    cartesian = dequantize(attribute.array, primitive.quantization)
    cartesian = transform_points(up_transform @ node_matrix(primitive.matrices), cartesian)
    if rtc_center is not None:
        cartesian += np.asarray(rtc_center, dtype=np.float64)
    if transform is not None and not is_identity(transform):
        cartesian = transform_points(transform, cartesian)

    degrees = cartesian_to_degrees(cartesian)
    planar = projection.project(degrees) if len(degrees) else np.zeros((0, 2))
    out = np.empty_like(degrees)
    out[:, 0] = planar[:, 0] - proj_center[0]
    out[:, 1] = planar[:, 1] - proj_center[1]
    out[:, 2] = degrees[:, 2] - proj_center[2]

    _store_positions(attribute, out, transferables)
    processed.mark(attribute)
    return True


def project_coordinates(content: TileContent, projection: Projection, up_axis: Optional[str] = "Y",
                        transform: Optional[np.ndarray] = None,
                        processed: Optional[ProcessedBuffers] = None) -> TileContent:
    """Projected mode: bake node, axis, RTC and projection into every vertex."""
    processed = processed if processed is not None else ProcessedBuffers()
    mesh = content.mesh
    rtc_center, center, up_transform = get_model_center(mesh, content.feature_table, up_axis, transform)

    content.proj_center = get_proj_center(center, projection)
    content.rtc_coord = cartesian_to_degree(center)
    content.rtc_center = list(center)
    mesh.extensions["CESIUM_RTC"]["rtc_coord"] = content.rtc_coord

    projected = 0
    for primitive in mesh.iter_primitives():
        position = primitive.attributes.get("POSITION")
        if position is None:
            continue
        for name in ("NORMAL", "TANGENT"):
            if name in primitive.attributes:
                transform_normal_or_tangent(primitive.attributes[name], primitive.matrices,
                                            up_transform, processed, mesh.transferables)
        if project_vertices(position, primitive, rtc_center, content.proj_center, up_transform,
                            transform, projection, processed, mesh.transferables):
            projected += 1

    # node matrices are baked into the vertices now
    for node in mesh.nodes:
        node.matrix = IDENTITY_MATRIX.copy()
    for primitive in mesh.iter_primitives():
        primitive.matrices = []
        primitive.quantization = None

    logger.debug(f"Projected {projected} position buffers around {content.proj_center}")
    return content


def convert_coordinates(content: TileContent, up_axis: Optional[str] = "Y",
                        transform: Optional[np.ndarray] = None,
                        processed: Optional[ProcessedBuffers] = None) -> TileContent:
    """Shared-position mode: rebase vertices in their own frame, keep node matrices."""
    processed = processed if processed is not None else ProcessedBuffers()
    mesh = content.mesh
    rtc_center, center, up_transform = get_model_center(mesh, content.feature_table, up_axis)
    new_rtc_center = list(center)

    coord_center = transform_point(transform, center) if transform is not None else center
    content.rtc_coord = cartesian_to_degree(coord_center)
    mesh.extensions["CESIUM_RTC"]["rtc_coord"] = content.rtc_coord

    if rtc_center is None:
        # new vertex = invNode · (node · vertex − newCenter)
        for primitive in mesh.iter_primitives():
            position = primitive.attributes.get("POSITION")
            if position is None or processed.is_processed(position):
                continue
            matrix = up_transform @ node_matrix(primitive.matrices)
            try:
                inverse = np.linalg.inv(matrix)
            except np.linalg.LinAlgError:
                inverse = np.linalg.pinv(matrix)
            world = transform_points(matrix, dequantize(position.array, primitive.quantization))
            local = transform_points(inverse, world - np.asarray(new_rtc_center))
            _store_positions(position, local, mesh.transferables)
            processed.mark(position)
        for primitive in mesh.iter_primitives():
            primitive.quantization = None
        mesh.extensions["CESIUM_RTC"]["center"] = new_rtc_center
        content.rtc_center = new_rtc_center
    else:
        content.rtc_center = list(rtc_center)

    content.share_position = True
    mesh.asset["share_position"] = True
    return content


def process_points(content: PointsContent, transform: Optional[np.ndarray] = None,
                   root_index: int = 0) -> PointsContent:
    """Point-cloud / instanced pipeline: optional ENU rotations, then rebase."""
    data = content.data
    rtc_center = content.feature_table.rtc_center or [0.0, 0.0, 0.0]
    position = data["POSITION"]

    if (content.feature_table.east_north_up
            and "NORMAL_UP" not in data and "NORMAL_UP_OCT32P" not in data):
        fixed = position.array[:, :3].astype(np.float64) + np.asarray(rtc_center)
        # (N, 3, 3) with east/north/up columns → 9 floats per instance, column-major
        rotations = east_north_up_axes(fixed).transpose(0, 2, 1).reshape(-1, 9)
        attribute = BufferAttribute.from_array(rotations.astype(np.float32))
        data["INSTANCE_ROTATION"] = attribute
        content.transferables.append(attribute.buffer)

    acc = BoundingAccumulator()
    find_min_max_of_position(position.array, rtc_center, IDENTITY_MATRIX, acc)
    model_center = acc.center()
    new_rtc_center = list(model_center)

    shifted = (position.array[:, :3].astype(np.float64)
               + np.asarray(rtc_center, dtype=np.float64))
    _store_positions(position, rebase(shifted, new_rtc_center), content.transferables)

    if transform is not None:
        model_center = transform_point(transform, model_center).tolist()

    content.rtc_center = new_rtc_center
    content.rtc_coord = cartesian_to_degree(model_center)
    content.root_index = root_index
    return content
