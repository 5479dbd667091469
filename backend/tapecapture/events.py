# backend/tapecapture/events.py
import asyncio
import contextlib
import logging
from typing import AsyncIterator, Callable, List

from .models import CaptureJob

logger = logging.getLogger(__name__)

JobListener = Callable[[CaptureJob], None]


class EventBus:
    """
    In-process "job changed" fan-out.

    Delivery is synchronous and best-effort: each listener registered at
    publish time gets its own snapshot, a failing listener is logged and
    skipped, and nothing is replayed to late subscribers.
    """

    def __init__(self):
        self._listeners: List[JobListener] = []

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, job: CaptureJob) -> None:
        for listener in list(self._listeners):
            try:
                listener(job.model_copy())
            except Exception:
                logger.exception("Job listener %r failed for job %s", listener, job.id)

    @contextlib.asynccontextmanager
    async def stream(self) -> AsyncIterator[AsyncIterator[CaptureJob]]:
        """
        Queue-backed subscription for async consumers.

        The subscription is live on entry, so a snapshot read inside the
        block cannot miss an update. Leaving the block unsubscribes.
        """
        queue: asyncio.Queue = asyncio.Queue()
        unsubscribe = self.subscribe(queue.put_nowait)

        async def updates():
            while True:
                yield await queue.get()

        try:
            yield updates()
        finally:
            unsubscribe()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
