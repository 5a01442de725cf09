"""Track in-flight fetch/parse operations by URL so they can be aborted."""

import asyncio
import logging
from typing import Dict, List, Protocol

logger = logging.getLogger(__name__)


class Abortable(Protocol):
    def abort(self) -> None:
        ...


class AbortHandle:
    """Abort handle over an asyncio task; aborting cancels the task."""

    def __init__(self, task: asyncio.Future):
        self.task = task

    def abort(self) -> None:
        if not self.task.done():
            self.task.cancel()

    @property
    def aborted(self) -> bool:
        return self.task.cancelled()


class RequestTracker:
    """URL -> in-flight handles. One URL may own several concurrent handles."""

    def __init__(self):
        self._requests: Dict[str, List[Abortable]] = {}

    def track(self, url: str, handle: Abortable) -> None:
        self._requests.setdefault(url, []).append(handle)

    def settle(self, url: str, handle: Abortable) -> None:
        """Forget a handle once its operation has finished."""
        handles = self._requests.get(url)
        if not handles:
            return
        self._requests[url] = [h for h in handles if h is not handle]
        if not self._requests[url]:
            del self._requests[url]

    def abort(self, url: str) -> int:
        """Abort every handle tracked for ``url``; unknown URLs are a no-op."""
        handles = self._requests.pop(url, [])
        for handle in handles:
            handle.abort()
        if handles:
            logger.info(f"Aborted {len(handles)} request(s) for {url}")
        return len(handles)

    def is_tracking(self, url: str) -> bool:
        return url in self._requests

    def __len__(self) -> int:
        return len(self._requests)
