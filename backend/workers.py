import logging
from typing import Optional

from tiledecoder.models import TileContentRequest, TileResult, WorkerOptions
from tiledecoder.pool import WorkerPool

from backend import config

logger = logging.getLogger(__name__)


class PoolManager:
    """Owns the service's WorkerPool between startup and shutdown."""

    def __init__(self) -> None:
        self.pool: Optional[WorkerPool] = None

    def start(self, size: int = config.POOL_SIZE, projection: str = config.PROJECTION) -> WorkerPool:
        if self.pool is None:
            self.pool = WorkerPool(WorkerOptions(projection=projection), size=size)
        return self.pool

    def stop(self) -> None:
        if self.pool is not None:
            self.pool.close()
            self.pool = None

    async def decode(self, request: TileContentRequest) -> Optional[TileResult]:
        """Decode on the pool; None when the request was aborted."""
        if self.pool is None:
            raise RuntimeError("Worker pool is not running")
        return await self.pool.load_tile(request)

    async def abort(self, url: str) -> bool:
        if self.pool is None:
            return False
        return await self.pool.abort(url)


# Singleton instance used across the application
pool_manager = PoolManager()
