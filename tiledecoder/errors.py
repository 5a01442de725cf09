"""Error kinds raised while loading and decoding tile content."""

from typing import Optional


class TileDecodeError(RuntimeError):
    """Base class for per-tile failures reported back to the host."""

    status: Optional[int] = None


class UnrecognizedFormatError(TileDecodeError):
    """The buffer's magic token is not one of the known tile formats."""

    def __init__(self, magic: str):
        super().__init__(f"Unrecognized tile format: {magic!r}")
        self.magic = magic


class NetworkError(TileDecodeError):
    """Fetching the tile failed, carrying the HTTP status when there is one."""

    def __init__(self, url: str, status: Optional[int] = None, reason: str = ""):
        message = f"Failed to fetch {url}"
        if status is not None:
            message += f" (HTTP {status})"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.url = url
        self.status = status


class MissingContentError(TileDecodeError):
    """Decoded source has nothing usable; surfaces to the host as a 404."""

    status = 404

    def __init__(self, url: str, reason: str = "no usable content"):
        super().__init__(f"{url}: {reason}")
        self.url = url


class GltfError(TileDecodeError):
    pass


class TileFormatError(TileDecodeError):
    """A 3D Tiles header or feature table is malformed."""
    pass
