"""Small 4x4 / 3x3 matrix helpers.

Matrices are held as row-major ``(4, 4)`` numpy arrays internally. glTF and
3D Tiles store them column-major as 16 floats, so conversion happens at the
edges with :func:`mat4_from_column_major`.
"""

from typing import Iterable, Optional, Sequence

import numpy as np

from .constants import IDENTITY_MATRIX


def mat4_identity() -> np.ndarray:
    return np.identity(4, dtype=np.float64)


def mat4_from_column_major(values: Sequence[float]) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64)
    if arr.shape == (4, 4):
        return arr.copy()
    if arr.size != 16:
        raise ValueError(f"Expected 16 matrix values, got {arr.size}")
    return arr.reshape(4, 4).T.copy()


def mat4_translation(t: Iterable[float]) -> np.ndarray:
    m = mat4_identity()
    m[:3, 3] = list(t)
    return m


def mat4_scale(s: Iterable[float]) -> np.ndarray:
    sx, sy, sz = s
    return np.diag([sx, sy, sz, 1.0]).astype(np.float64)


def mat4_rotation_from_quaternion(q: Iterable[float]) -> np.ndarray:
    x, y, z, w = q

    xx = x * x
    yy = y * y
    zz = z * z
    xy = x * y
    xz = x * z
    yz = y * z
    wx = w * x
    wy = w * y
    wz = w * z

    m = mat4_identity()
    m[0, 0] = 1 - 2 * (yy + zz)
    m[0, 1] = 2 * (xy - wz)
    m[0, 2] = 2 * (xz + wy)
    m[1, 0] = 2 * (xy + wz)
    m[1, 1] = 1 - 2 * (xx + zz)
    m[1, 2] = 2 * (yz - wx)
    m[2, 0] = 2 * (xz - wy)
    m[2, 1] = 2 * (yz + wx)
    m[2, 2] = 1 - 2 * (xx + yy)
    return m


def mat4_from_trs(translation=(0.0, 0.0, 0.0), rotation=(0.0, 0.0, 0.0, 1.0),
                  scale=(1.0, 1.0, 1.0)) -> np.ndarray:
    t = mat4_translation([float(v) for v in translation])
    r = mat4_rotation_from_quaternion([float(v) for v in rotation])
    s = mat4_scale([float(v) for v in scale])
    return t @ r @ s


def node_matrix(matrices: Optional[Sequence[np.ndarray]]) -> np.ndarray:
    """Fold ancestor node matrices (root first) into one local-to-model matrix.

    The fold runs last to first, so the result is ``m0 · m1 · … · mN``.
    """
    out = mat4_identity()
    if not matrices:
        return out
    for m in reversed(matrices):
        out = m @ out
    return out


def is_identity(m: Optional[np.ndarray]) -> bool:
    """Exact comparison, no tolerance."""
    if m is None:
        return False
    return bool(np.array_equal(m, IDENTITY_MATRIX))


def transform_points(m: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Apply a 4x4 matrix to an ``(N, 3)`` array, returning float64."""
    pts = np.asarray(points, dtype=np.float64)
    out = pts @ m[:3, :3].T + m[:3, 3]
    w = pts @ m[3, :3] + m[3, 3]
    if not np.all(w == 1.0):
        w = np.where(w == 0.0, 1.0, w)
        out = out / w[:, None]
    return out


def transform_point(m: np.ndarray, point: Sequence[float]) -> np.ndarray:
    return transform_points(m, np.asarray(point, dtype=np.float64).reshape(1, 3))[0]


def normal_matrix(m: np.ndarray) -> np.ndarray:
    """Inverse-transpose of the upper 3x3, for normals and tangents."""
    upper = m[:3, :3]
    try:
        return np.linalg.inv(upper).T
    except np.linalg.LinAlgError:
        return upper.copy()

