"""Model-center calculation: pick one safe local origin per tile."""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from .constants import IDENTITY_MATRIX, X_TO_Z, Y_TO_Z
from .matrices import node_matrix, transform_points
from .models import DecodedMesh, FeatureTable, QuantizationUniforms

logger = logging.getLogger(__name__)

EMPTY_RTC_CENTER = (0.0, 0.0, 0.0)


@dataclass
class BoundingAccumulator:
    """Running x/y/z extrema; empty until something is folded in."""
    xmin: float = float("inf")
    xmax: float = float("-inf")
    ymin: float = float("inf")
    ymax: float = float("-inf")
    hmin: float = float("inf")
    hmax: float = float("-inf")

    def fold(self, points: np.ndarray) -> None:
        if len(points) == 0:
            return
        # NaN vertices are skipped per axis; an all-NaN column leaves the extrema as they were
        lo = np.fmin.reduce(points, axis=0)
        hi = np.fmax.reduce(points, axis=0)
        self.xmin = min(self.xmin, float(lo[0]))
        self.xmax = max(self.xmax, float(hi[0]))
        self.ymin = min(self.ymin, float(lo[1]))
        self.ymax = max(self.ymax, float(hi[1]))
        if points.shape[1] > 2:
            self.hmin = min(self.hmin, float(lo[2]))
            self.hmax = max(self.hmax, float(hi[2]))

    def is_empty(self) -> bool:
        return self.xmax == float("-inf")

    def center(self) -> List[float]:
        """Per-axis midpoint; axes nothing contributed to resolve to 0."""
        center = [
            (self.xmin + self.xmax) / 2,
            (self.ymin + self.ymax) / 2,
            (self.hmin + self.hmax) / 2,
        ]
        if self.xmax == float("-inf"):
            center[0] = 0.0
        if self.ymax == float("-inf"):
            center[1] = 0.0
        if self.hmax == float("-inf"):
            center[2] = 0.0
        if np.isnan(center[2]):
            center[2] = 0.0
        return center


def up_axis_matrix(up_axis: Optional[str]) -> np.ndarray:
    axis = (up_axis or "Y").upper()
    if axis == "X":
        return X_TO_Z
    if axis == "Z":
        return IDENTITY_MATRIX
    return Y_TO_Z


def dequantize(array: np.ndarray, quantization: Optional[QuantizationUniforms]) -> np.ndarray:
    if quantization is None:
        return np.asarray(array[:, :3], dtype=np.float64)
    return quantization.dequantize(array)


def find_min_max_of_position(array: np.ndarray, rtc_center: Sequence[float], matrix: np.ndarray,
                             acc: BoundingAccumulator,
                             quantization: Optional[QuantizationUniforms] = None) -> None:
    points = transform_points(matrix, dequantize(array, quantization))
    acc.fold(points + np.asarray(rtc_center, dtype=np.float64))


def resolve_rtc_center(mesh: DecodedMesh, feature_table: Optional[FeatureTable]) -> Optional[List[float]]:
    """Feature-table RTC_CENTER first, then the glTF CESIUM_RTC extension."""
    if feature_table is not None and feature_table.rtc_center is not None:
        return feature_table.rtc_center
    ext = mesh.extensions.get("CESIUM_RTC") or {}
    center = ext.get("center")
    return [float(v) for v in center] if center is not None else None


def get_model_center(mesh: DecodedMesh, feature_table: Optional[FeatureTable] = None,
                     up_axis: Optional[str] = "Y", transform: Optional[np.ndarray] = None):
    """Bounding-box center of every primitive in the tile's pre-projection frame.

    Returns ``(rtc_center, model_center, up_axis_transform)``. The tile's own
    RTC center (if any) is recorded on ``mesh.extensions["CESIUM_RTC"]``.
    Tiles without geometry come back centred on the origin rather than NaN.
    """
    rtc_center = resolve_rtc_center(mesh, feature_table)
    up_transform = up_axis_matrix(up_axis)

    rtc_ext = mesh.extensions.setdefault("CESIUM_RTC", {})
    if rtc_center is not None:
        rtc_ext["center"] = rtc_center

    acc = BoundingAccumulator()
    for primitive in mesh.iter_primitives():
        position = primitive.attributes.get("POSITION")
        if position is None:
            continue
        matrix = up_transform @ node_matrix(primitive.matrices)
        if transform is not None:
            matrix = transform @ matrix
        find_min_max_of_position(position.array, rtc_center or EMPTY_RTC_CENTER, matrix, acc,
                                 primitive.quantization)

    if acc.is_empty():
        logger.warning(f"No vertices contributed to the model center of {mesh.url or 'tile'}; "
                       f"using the origin")
    return rtc_center, acc.center(), up_transform
