import os

from tiledecoder.constants import DEFAULT_PROJECTION, DEFAULT_WORKER_COUNT

# Vite dev server by default; comma-separated list in TILEDECODER_CORS_ORIGINS
CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get(
        "TILEDECODER_CORS_ORIGINS",
        "http://localhost:5174,http://127.0.0.1:5174",
    ).split(",")
    if origin.strip()
]

POOL_SIZE = DEFAULT_WORKER_COUNT
PROJECTION = DEFAULT_PROJECTION

# Uploads larger than this are rejected before decoding
MAX_UPLOAD_BYTES = int(os.environ.get("TILEDECODER_MAX_UPLOAD_BYTES", str(256 * 1024 * 1024)))
