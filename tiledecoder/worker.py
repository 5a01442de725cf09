"""TileWorker: per-tile load, decode and reproject pipeline.

One worker owns one projection, one request tracker and the per-source
service options. Within a worker, tiles are processed one at a time; the
only suspension points are the network fetch and the threaded image fetch.
"""

import asyncio
import logging
import time
from typing import Any, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import numpy as np

from .assembler import assemble, detach_transferables
from .composite import decode_composite
from .errors import MissingContentError, NetworkError, TileDecodeError, TileFormatError
from .fetch import build_request_url, fetch_array_buffer, fetch_tile
from .geodesy import Projection
from .gltf import decode_image
from .loaders import load_b3dm, load_i3dm, load_pnts
from .matrices import mat4_from_column_major
from .models import (
    Image,
    ServiceConfig,
    TileContent,
    TileContentRequest,
    TileResult,
    WorkerOptions,
)
from .sniffer import TileFormat, read_json, sniff_format
from .textures import flatten_uniform_textures
from .tracker import AbortHandle, RequestTracker
from .transform import (
    ProcessedBuffers,
    convert_coordinates,
    is_sharing_position,
    process_points,
    project_coordinates,
)

logger = logging.getLogger(__name__)


def _is_cancelling() -> bool:
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0


def _is_remote(url: str) -> bool:
    return urlparse(url).scheme in ("http", "https")


class TileWorker:
    def __init__(self, options: Optional[WorkerOptions] = None):
        self.options = options or WorkerOptions()
        self.projection = Projection(self.options.projection)
        self.tracker = RequestTracker()

    # ------------------------------------------------------------------
    # Host-facing operations
    # ------------------------------------------------------------------

    async def load_tile(self, request: TileContentRequest) -> Optional[TileResult]:
        """Fetch (unless a buffer is supplied), decode and reproject one tile.

        Returns None when the request is aborted while in flight. JSON
        manifest parse errors propagate; every other failure comes back as
        ``TileResult.error``.
        """
        buffer = request.raw_buffer
        if buffer is None:
            service = self.options.service(request.root_index)
            request_url = build_request_url(request.url, service.url_params)
            task = asyncio.ensure_future(fetch_tile(request_url, service.fetch_options))
            handle = AbortHandle(task)
            self.tracker.track(request.url, handle)
            try:
                fetched = await task
            except asyncio.CancelledError:
                if task.cancelled() and not _is_cancelling():
                    logger.info(f"Tile request aborted: {request.url}")
                    return None
                raise
            except NetworkError as exc:
                logger.warning(str(exc))
                return assemble(None, error=exc)
            finally:
                self.tracker.settle(request.url, handle)
            buffer = fetched.data

        return self.decode(request, buffer)

    def abort_tile_loading(self, url: str) -> int:
        return self.tracker.abort(url)

    def request_image(self, url: str, service: Optional[ServiceConfig] = None) -> Optional[Image]:
        """Fetch and decode an externally referenced glTF image."""
        service = service or ServiceConfig()
        try:
            fetched = fetch_array_buffer(build_request_url(url, service.url_params),
                                         service.fetch_options)
            return decode_image(fetched.data, service.max_texture_size)
        except (NetworkError, OSError) as exc:
            logger.warning(f"Could not load image {url}: {exc}")
            return None

    # ------------------------------------------------------------------
    # Decode pipeline
    # ------------------------------------------------------------------

    def decode(self, request: TileContentRequest, buffer) -> TileResult:
        """Decode an in-memory buffer; CPU-bound and run to completion."""
        fmt = None
        try:
            fmt = sniff_format(buffer)
            if fmt is TileFormat.json:
                return assemble(read_json(buffer))

            t0 = time.perf_counter()
            processed = ProcessedBuffers()
            if fmt is TileFormat.cmpt:
                content, transferables = decode_composite(
                    buffer, lambda f, b, o: self._decode_leaf(f, b, o, request, processed))
            else:
                content, transferables = self._decode_leaf(fmt, buffer, 0, request, processed)
            elapsed = time.perf_counter() - t0
            logger.info(f"Decoded {fmt.value} tile {request.url} in {elapsed * 1000:.1f} ms "
                        f"({len(transferables)} transferable buffers)")
            return assemble(content, transferables)
        except MissingContentError as exc:
            logger.warning(f"Tile not found: {exc}")
            return assemble(None, error=exc)
        except TileDecodeError as exc:
            label = fmt.value if fmt is not None else "unknown"
            logger.error(f"Failed to decode {label} tile {request.url}: {exc}")
            return assemble(None, error=exc)

    def _image_loader(self, request: TileContentRequest):
        if not _is_remote(request.url):
            return None
        service = self.options.service(request.root_index)
        return lambda uri: self.request_image(urljoin(request.url, uri), service)

    def _decode_leaf(self, fmt: TileFormat, buffer, byte_offset: int, request: TileContentRequest,
                     processed: ProcessedBuffers) -> Tuple[Any, List[Any]]:
        service = self.options.service(request.root_index)
        transform = None
        if request.transform is not None:
            transform = mat4_from_column_major(request.transform)
        kwargs = dict(max_texture_size=service.max_texture_size,
                      image_loader=self._image_loader(request), url=request.url)

        if fmt is TileFormat.b3dm:
            content = load_b3dm(buffer, byte_offset, **kwargs)
            self._process_b3dm(content, request, transform, processed)
        elif fmt is TileFormat.i3dm:
            content = load_i3dm(buffer, byte_offset, **kwargs)
            flatten_uniform_textures(content.mesh)
            process_points(content, transform, request.root_index)
        elif fmt is TileFormat.pnts:
            content = load_pnts(buffer, byte_offset, url=request.url)
            process_points(content, transform, request.root_index)
        else:
            raise TileFormatError(f"{fmt.value} payload cannot be decoded as a tile leaf")
        return content, detach_transferables(content)

    def _process_b3dm(self, content: TileContent, request: TileContentRequest,
                      transform: Optional[np.ndarray], processed: ProcessedBuffers) -> TileContent:
        mesh = content.mesh
        if not mesh.meshes:
            raise MissingContentError(request.url, "glTF has no meshes")
        flatten_uniform_textures(mesh)
        content.root_index = request.root_index
        if is_sharing_position(mesh):
            logger.debug(f"{request.url}: position buffers are shared, rebasing in model space")
            return convert_coordinates(content, request.up_axis, transform, processed)
        return project_coordinates(content, self.projection, request.up_axis, transform, processed)
