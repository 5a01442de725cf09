"""WorkerPool: dedicated decode threads, each with its own event loop.

Every thread owns one TileWorker and nothing else, so workers share only
the read-only WorkerOptions. The host awaits results through futures; a
request's URL stays pinned to the worker that owns it so an abort reaches
the right tracker.
"""

import asyncio
import itertools
import logging
import threading
from typing import Dict, List, Optional

from .constants import DEFAULT_WORKER_COUNT
from .models import TileContentRequest, TileResult, WorkerOptions
from .worker import TileWorker

logger = logging.getLogger(__name__)


async def _abort_on(worker: TileWorker, url: str) -> int:
    return worker.abort_tile_loading(url)


class _WorkerThread:
    def __init__(self, index: int, options: WorkerOptions):
        self.index = index
        self.worker = TileWorker(options)
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self._run, name=f"tile-worker-{index}", daemon=True)
        self.thread.start()

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()
        self.loop.close()

    def stop(self) -> None:
        if not self.loop.is_closed():
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=5)


class WorkerPool:
    def __init__(self, options: Optional[WorkerOptions] = None, size: int = DEFAULT_WORKER_COUNT):
        self.options = options or WorkerOptions()
        self._threads: List[_WorkerThread] = [_WorkerThread(i, self.options)
                                              for i in range(max(1, size))]
        self._next = itertools.cycle(range(len(self._threads)))
        # url -> [worker index, in-flight count]
        self._owners: Dict[str, List[int]] = {}
        self._lock = threading.Lock()
        logger.info(f"Started {len(self._threads)} tile decode workers ({self.options.projection})")

    def __len__(self) -> int:
        return len(self._threads)

    def _acquire(self, url: str) -> _WorkerThread:
        with self._lock:
            owner = self._owners.get(url)
            if owner is None:
                owner = self._owners[url] = [next(self._next), 0]
            owner[1] += 1
            return self._threads[owner[0]]

    def _release(self, url: str) -> None:
        with self._lock:
            owner = self._owners.get(url)
            if owner is not None:
                owner[1] -= 1
                if owner[1] <= 0:
                    del self._owners[url]

    async def load_tile(self, request: TileContentRequest) -> Optional[TileResult]:
        """Decode on a worker thread; None when the request was aborted."""
        worker_thread = self._acquire(request.url)
        future = asyncio.run_coroutine_threadsafe(worker_thread.worker.load_tile(request),
                                                  worker_thread.loop)
        try:
            return await asyncio.wrap_future(future)
        finally:
            self._release(request.url)

    async def abort(self, url: str) -> bool:
        """Abort ``url`` on the worker that owns it.

        The abort is queued on the worker loop behind the load it targets, so
        it runs after that load has registered its fetch. Returns whether the
        worker actually had something in flight to cancel.
        """
        with self._lock:
            owner = self._owners.get(url)
        if owner is None:
            return False
        worker_thread = self._threads[owner[0]]
        future = asyncio.run_coroutine_threadsafe(_abort_on(worker_thread.worker, url),
                                                  worker_thread.loop)
        return await asyncio.wrap_future(future) > 0

    def close(self) -> None:
        for worker_thread in self._threads:
            worker_thread.stop()
        logger.info("Tile decode workers stopped")
