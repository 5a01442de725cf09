"""Format tags, glTF enums, axis matrices and environment configuration."""

import os

import numpy as np
from dotenv import load_dotenv

# ── 3D Tiles magic tags ──────────────────────────────────────────
MAGIC_B3DM = "b3dm"
MAGIC_I3DM = "i3dm"
MAGIC_PNTS = "pnts"
MAGIC_CMPT = "cmpt"

# First characters that mark a text (JSON manifest) payload
JSON_LEAD_CHARS = ("{", " ", "<")

B3DM_HEADER_LENGTH = 28
I3DM_HEADER_LENGTH = 32
PNTS_HEADER_LENGTH = 28
CMPT_HEADER_LENGTH = 16

GLB_MAGIC = b"glTF"
GLB_VERSION_SUPPORTED = 2
CHUNK_TYPE_JSON = 0x4E4F534A  # b"JSON"
CHUNK_TYPE_BIN = 0x004E4942  # b"BIN\0"

# ── glTF component types ─────────────────────────────────────────
COMPONENT_TYPE_INT8 = 5120
COMPONENT_TYPE_UINT8 = 5121
COMPONENT_TYPE_INT16 = 5122
COMPONENT_TYPE_UINT16 = 5123
COMPONENT_TYPE_UINT32 = 5125
COMPONENT_TYPE_FLOAT32 = 5126
COMPONENT_TYPE_FLOAT64 = 5130  # feature tables only (DOUBLE)

COMPONENT_DTYPES = {
    COMPONENT_TYPE_INT8: np.dtype("<i1"),
    COMPONENT_TYPE_UINT8: np.dtype("<u1"),
    COMPONENT_TYPE_INT16: np.dtype("<i2"),
    COMPONENT_TYPE_UINT16: np.dtype("<u2"),
    COMPONENT_TYPE_UINT32: np.dtype("<u4"),
    COMPONENT_TYPE_FLOAT32: np.dtype("<f4"),
    COMPONENT_TYPE_FLOAT64: np.dtype("<f8"),
}

# Feature tables name their component types instead of using the enum
FEATURE_COMPONENT_TYPES = {
    "BYTE": COMPONENT_TYPE_INT8,
    "UNSIGNED_BYTE": COMPONENT_TYPE_UINT8,
    "SHORT": COMPONENT_TYPE_INT16,
    "UNSIGNED_SHORT": COMPONENT_TYPE_UINT16,
    "UNSIGNED_INT": COMPONENT_TYPE_UINT32,
    "FLOAT": COMPONENT_TYPE_FLOAT32,
    "DOUBLE": COMPONENT_TYPE_FLOAT64,
}

TYPE_COMPONENT_COUNT = {
    "SCALAR": 1,
    "VEC2": 2,
    "VEC3": 3,
    "VEC4": 4,
    "MAT2": 4,
    "MAT3": 9,
    "MAT4": 16,
}

TRIANGLES_MODE = 4
POINTS_MODE = 0

# ── Axis correction (column-major, glTF convention) ──────────────
IDENTITY_MATRIX = np.identity(4, dtype=np.float64)
Y_TO_Z = np.array([1, 0, 0, 0, 0, 0, 1, 0, 0, -1, 0, 0, 0, 0, 0, 1],
                  dtype=np.float64).reshape(4, 4).T
X_TO_Z = np.array([0, 0, 1, 0, 0, 1, 0, 0, -1, 0, 0, 0, 0, 0, 0, 1],
                  dtype=np.float64).reshape(4, 4).T

# ── Geodesy ──────────────────────────────────────────────────────
WGS84_A = 6378137.0

# Degenerate (zero-length) ECEF points map here instead of the earth's centre
ZERO_CARTESIAN_DEGREES = (0.0, 0.0, -WGS84_A)

# Load environment variables
load_dotenv()

DEFAULT_PROJECTION = os.environ.get("TILEDECODER_PROJECTION", "EPSG:3857")
DEFAULT_MAX_TEXTURE_SIZE = int(os.environ.get("TILEDECODER_MAX_TEXTURE_SIZE", "1024"))
FETCH_TIMEOUT = float(os.environ.get("TILEDECODER_FETCH_TIMEOUT", "30"))
DEFAULT_WORKER_COUNT = int(os.environ.get("TILEDECODER_WORKERS", "2"))

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'

