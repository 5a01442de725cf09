"""tiledecoder: decode 3D Tiles content and reproject it for rendering.

Import constants FIRST so the .env file is loaded before any module reads
its configuration.
"""

from tiledecoder import constants as _constants  # noqa: F401

from tiledecoder.errors import (
    GltfError,
    MissingContentError,
    NetworkError,
    TileDecodeError,
    TileFormatError,
    UnrecognizedFormatError,
)
from tiledecoder.models import (
    CompositeContent,
    PointsContent,
    ServiceConfig,
    TileContent,
    TileContentRequest,
    TileResult,
    WorkerOptions,
)
from tiledecoder.pool import WorkerPool
from tiledecoder.sniffer import TileFormat, sniff_format
from tiledecoder.worker import TileWorker
