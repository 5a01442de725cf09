"""Earth-fixed (ECEF) / geodetic conversion, ENU frames and map projection.

Geodetic conversions go through pyproj (EPSG:4978 → EPSG:4979) on whole
vertex arrays at once; the forward map projection is a pyproj transformer
from WGS84 degrees into the configured CRS.
"""

import logging
from functools import lru_cache

import numpy as np
from pyproj import Transformer

from .constants import (
    ZERO_CARTESIAN_DEGREES,
    DEFAULT_PROJECTION,
)

logger = logging.getLogger(__name__)

# Web Mercator is undefined at the poles
MERCATOR_MAX_LAT = 85.0511287798


@lru_cache(maxsize=None)
def _ecef_to_geodetic() -> Transformer:
    return Transformer.from_crs("EPSG:4978", "EPSG:4979", always_xy=True)


@lru_cache(maxsize=None)
def _forward_transformer(code: str) -> Transformer:
    return Transformer.from_crs("EPSG:4326", code, always_xy=True)


def cartesian_to_degrees(cartesians) -> np.ndarray:
    """Convert ``(N, 3)`` ECEF metres to ``(N, 3)`` [lon, lat, height].

    Zero-length inputs have no direction; they map to
    ``(0, 0, -WGS84_A)`` rather than the earth's centre.
    """
    pts = np.asarray(cartesians, dtype=np.float64).reshape(-1, 3)
    out = np.empty_like(pts)
    zero = ~np.any(pts != 0.0, axis=1)
    if np.any(~zero):
        valid = pts[~zero]
        lon, lat, h = _ecef_to_geodetic().transform(valid[:, 0], valid[:, 1], valid[:, 2])
        out[~zero, 0] = lon
        out[~zero, 1] = lat
        out[~zero, 2] = h
    if np.any(zero):
        out[zero] = ZERO_CARTESIAN_DEGREES
    return out


def cartesian_to_degree(cartesian) -> list[float]:
    """Single-point form of :func:`cartesian_to_degrees`."""
    return [float(v) for v in cartesian_to_degrees(np.asarray(cartesian)[:3])[0]]


def east_north_up_axes(cartesians) -> np.ndarray:
    """Local tangent frame per point as ``(N, 3, 3)`` with columns east, north, up."""
    degrees = cartesian_to_degrees(cartesians)
    lon = np.radians(degrees[:, 0])
    lat = np.radians(degrees[:, 1])

    sin_lat = np.sin(lat)
    cos_lat = np.cos(lat)
    sin_lon = np.sin(lon)
    cos_lon = np.cos(lon)

    east = np.stack([-sin_lon, cos_lon, np.zeros_like(lon)], axis=1)
    north = np.stack([-sin_lat * cos_lon, -sin_lat * sin_lon, cos_lat], axis=1)
    up = np.stack([cos_lat * cos_lon, cos_lat * sin_lon, sin_lat], axis=1)
    return np.stack([east, north, up], axis=2)



class Projection:
    """Forward map projection from WGS84 degrees into ``code``."""

    def __init__(self, code: str = DEFAULT_PROJECTION):
        self.code = code.upper()
        self._is_geographic = self.code in ("EPSG:4326", "EPSG:4490", "IDENTITY")
        self._transformer = None if self._is_geographic else _forward_transformer(self.code)
        logger.debug(f"Projection ready: {self.code}")

    def project(self, degrees) -> np.ndarray:
        """Project ``(N, >=2)`` [lon, lat, ...] to ``(N, 2)`` planar x/y."""
        pts = np.atleast_2d(np.asarray(degrees, dtype=np.float64))
        lon = pts[:, 0]
        lat = pts[:, 1]
        if self._is_geographic:
            return np.stack([lon, lat], axis=1)
        if self.code == "EPSG:3857":
            lat = np.clip(lat, -MERCATOR_MAX_LAT, MERCATOR_MAX_LAT)
        x, y = self._transformer.transform(lon, lat)
        return np.stack([np.asarray(x, dtype=np.float64), np.asarray(y, dtype=np.float64)], axis=1)

    def project_point(self, degree) -> list[float]:
        return [float(v) for v in self.project(np.asarray(degree, dtype=np.float64).reshape(1, -1))[0]]

    def __repr__(self) -> str:
        return f"Projection({self.code!r})"
