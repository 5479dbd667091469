# backend/tapecapture/watchdog.py
import asyncio
import logging
from typing import Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


class Watchdog:
    """Per-job run-time ceiling. Fires an async callback once unless disarmed first."""

    def __init__(self, timeout: float = 30 * 60):
        self.timeout = timeout
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._fired: Dict[str, asyncio.Task] = {}

    def arm(self, job_id: str, callback: Callable[[str], Awaitable[None]]) -> None:
        self.disarm(job_id)
        loop = asyncio.get_running_loop()
        self._timers[job_id] = loop.call_later(self.timeout, self._fire, job_id, callback)

    def _fire(self, job_id: str, callback):
        self._timers.pop(job_id, None)
        logger.warning("Capture job %s exceeded %.0fs, cancelling", job_id, self.timeout)
        task = asyncio.get_running_loop().create_task(callback(job_id))
        self._fired[job_id] = task
        task.add_done_callback(lambda _t: self._fired.pop(job_id, None))

    def disarm(self, job_id: str) -> None:
        handle = self._timers.pop(job_id, None)
        if handle is not None:
            handle.cancel()

    def disarm_all(self) -> None:
        for job_id in list(self._timers):
            self.disarm(job_id)

    def armed(self, job_id: str) -> bool:
        return job_id in self._timers
