# backend/tapecapture/registry.py
"""
Capture job registry.

Owns the in-memory job table and the active-process table, and is the only
writer of either. Everything runs on one event loop: each job has its own
supervision task, and within that task every transition is persisted and
broadcast (awaited) before more output from the same process is read, so
per-job ordering of stored state and events matches the real lifecycle.

Construct one instance at process start and inject it where needed.
"""
import asyncio
import contextlib
import logging
import os
import signal
import time
import uuid
from collections import deque
from datetime import timedelta
from typing import Deque, Dict, List, Optional

import aiofiles.os

from .errors import DeviceUnavailableError, InvalidStateTransitionError, JobNotFoundError
from .events import EventBus, JobListener
from .launcher import CaptureLauncher, CaptureProcess, ExitStatus, read_lines
from .models import CaptureJob, DeviceListing, JobLogEntry, JobStatus, as_utc, utcnow
from .paths import build_output_path
from .persistence import PersistenceAdapter
from .probe import DeviceProbe
from .progress import parse_progress
from .state import is_terminal, validate_transition
from .watchdog import Watchdog

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Process interrupted by restart"
USER_CANCEL_REASON = "Cancelled by user"
DEFAULT_MAX_AGE_MS = 24 * 60 * 60 * 1000
STDERR_TAIL_LINES = 20
LOG_TAIL_LINES = 200


class JobRegistry:

    def __init__(
        self,
        persistence: PersistenceAdapter,
        probe: DeviceProbe,
        launcher: CaptureLauncher,
        emulated_launcher: Optional[CaptureLauncher] = None,
        events: Optional[EventBus] = None,
        watchdog: Optional[Watchdog] = None,
        collections_dir: str = "collections",
        cancel_grace: float = 5.0,
    ):
        self.persistence = persistence
        self.probe = probe
        self.launcher = launcher
        self.emulated_launcher = emulated_launcher
        self.events = events or EventBus()
        self.watchdog = watchdog or Watchdog()
        self.collections_dir = collections_dir
        self.cancel_grace = cancel_grace

        # job_id -> CaptureJob
        self._jobs: Dict[str, CaptureJob] = {}
        # job_id -> running process; present only until its close is handled
        self._processes: Dict[str, CaptureProcess] = {}
        # job_id -> reason, for jobs whose termination we asked for
        self._cancel_reasons: Dict[str, str] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        # job_id -> pending SIGKILL escalation
        self._kill_timers: Dict[str, asyncio.TimerHandle] = {}
        # job_id -> recent output and lifecycle notes; not persisted
        self._logs: Dict[str, Deque[JobLogEntry]] = {}
        self._loaded = False
        self._load_lock = asyncio.Lock()

    # --- startup / shutdown ---

    async def initialize(self) -> None:
        """
        Load persisted jobs. Runs once; later calls are no-ops.

        No process handle survives a restart, so any job still starting or
        running in storage is resolved to failed here.
        """
        async with self._load_lock:
            if self._loaded:
                return
            stored = await self.persistence.select_all()
            for job in stored:
                self._jobs[job.id] = job
            self._loaded = True

            interrupted = [j for j in stored if j.status in (JobStatus.STARTING, JobStatus.RUNNING)]
            for job in interrupted:
                await self._transition(job, JobStatus.FAILED, error=INTERRUPTED_ERROR)

            logger.info(
                "Loaded %d capture jobs from database (%d interrupted)", len(stored), len(interrupted)
            )

    async def shutdown(self) -> None:
        """Stop supervising. Stored statuses stay as they are and are resolved on next start."""
        self.watchdog.disarm_all()
        for handle in self._kill_timers.values():
            handle.cancel()
        self._kill_timers.clear()

        for job_id, process in list(self._processes.items()):
            logger.info("Killing capture process for job %s on shutdown", job_id)
            process.kill(signal.SIGKILL)

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for process in list(self._processes.values()):
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(process.wait(), timeout=1.0)
        self._processes.clear()

    # --- public API ---

    async def start_capture(self, collection_id: int, collection_name: str) -> str:
        await self.initialize()

        job_id = self._generate_job_id()
        now = utcnow()
        output_path = build_output_path(self.collections_dir, collection_name, now)
        await aiofiles.os.makedirs(os.path.dirname(output_path), exist_ok=True)

        job = CaptureJob(
            id=job_id,
            collection_id=collection_id,
            collection_name=collection_name,
            start_time=now,
            output_path=output_path,
        )
        self._jobs[job_id] = job
        await self.persistence.insert(job)
        self.events.publish(job)

        try:
            launcher = await self._select_launcher(job_id)
            process = await launcher.launch(output_path)
        except Exception as e:
            logger.error("Capture job %s failed to start: %s", job_id, e)
            await self._transition(job, JobStatus.FAILED, error=f"Failed to initialize capture: {e}")
            raise

        self._processes[job_id] = process
        await self._transition(job, JobStatus.RUNNING)
        self.watchdog.arm(job_id, self._on_watchdog)

        task = asyncio.get_running_loop().create_task(self._supervise(job_id, process))
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job_id, None))

        logger.info("Capture job %s running for collection %s -> %s", job_id, collection_id, output_path)
        return job_id

    def get_job(self, job_id: str) -> Optional[CaptureJob]:
        job = self._jobs.get(job_id)
        return job.model_copy() if job else None

    def get_all_jobs(self) -> List[CaptureJob]:
        return [job.model_copy() for job in self._jobs.values()]

    def get_jobs_by_collection(self, collection_id: int) -> List[CaptureJob]:
        return [job.model_copy() for job in self._jobs.values() if job.collection_id == collection_id]

    def get_job_or_raise(self, job_id: str) -> CaptureJob:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_job_logs(self, job_id: str) -> List[JobLogEntry]:
        """Most recent output lines and lifecycle notes for a job, oldest first."""
        if job_id not in self._jobs:
            raise JobNotFoundError(job_id)
        return [entry.model_copy() for entry in self._logs.get(job_id, ())]

    def is_active(self, job_id: str) -> bool:
        return job_id in self._processes

    async def list_devices(self) -> DeviceListing:
        devices = await self.probe.list_devices()
        if devices:
            return DeviceListing(emulated=False, devices=devices)
        if self.emulated_launcher is not None:
            return DeviceListing(emulated=True, devices=self.emulated_launcher.list_devices())
        return DeviceListing(emulated=False, devices=[])

    async def cancel_job(self, job_id: str) -> bool:
        """
        Ask the job's process to stop: SIGTERM now, SIGKILL after the grace
        window if it is still alive. Returns False when there is nothing to
        cancel (unknown job or no active process).
        """
        await self.initialize()
        return self._request_cancel(job_id, USER_CANCEL_REASON)

    async def cleanup_old_jobs(self, max_age_ms: int = DEFAULT_MAX_AGE_MS) -> int:
        """Drop terminal jobs at least max_age_ms old from memory and storage. Returns how many."""
        await self.initialize()
        now = utcnow()
        max_age = timedelta(milliseconds=max_age_ms)

        expired = [
            job_id for job_id, job in self._jobs.items()
            if is_terminal(job.status) and now - as_utc(job.start_time) >= max_age
        ]
        for job_id in expired:
            del self._jobs[job_id]
            self._logs.pop(job_id, None)

        if expired:
            await self.persistence.delete(expired)
            logger.info("Cleaned up %d old capture jobs", len(expired))
        return len(expired)

    def subscribe(self, listener: JobListener):
        return self.events.subscribe(listener)

    # --- internals ---

    def _generate_job_id(self) -> str:
        return f"capture_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

    async def _select_launcher(self, job_id: str) -> CaptureLauncher:
        if await self.probe.has_device():
            logger.info("Starting real DV capture for job %s", job_id)
            return self.launcher
        if self.emulated_launcher is not None:
            logger.info("Starting emulated DV capture for job %s", job_id)
            return self.emulated_launcher
        raise DeviceUnavailableError(job_id)

    def _request_cancel(self, job_id: str, reason: str) -> bool:
        job = self._jobs.get(job_id)
        process = self._processes.get(job_id)
        if job is None or process is None:
            return False

        try:
            process.kill(signal.SIGTERM)
        except OSError:
            logger.exception("Failed to cancel capture job %s", job_id)
            return False

        if job_id not in self._cancel_reasons:
            self._cancel_reasons[job_id] = reason
            self._log(job_id, "info", f"Cancel requested: {reason}")
        if job_id not in self._kill_timers:
            self._kill_timers[job_id] = asyncio.get_running_loop().call_later(
                self.cancel_grace, self._escalate, job_id, process
            )
        logger.info("Sent SIGTERM to capture job %s (%s)", job_id, reason)
        return True

    def _escalate(self, job_id: str, process: CaptureProcess):
        self._kill_timers.pop(job_id, None)
        if self._processes.get(job_id) is process and not process.exited:
            logger.warning("Capture job %s ignored SIGTERM for %.0fs, sending SIGKILL", job_id, self.cancel_grace)
            process.kill(signal.SIGKILL)

    async def _on_watchdog(self, job_id: str):
        job = self._jobs.get(job_id)
        if job is not None and job.status == JobStatus.RUNNING:
            self._request_cancel(
                job_id, f"Exceeded maximum run time of {self.watchdog.timeout:.0f}s"
            )

    async def _supervise(self, job_id: str, process: CaptureProcess):
        stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        try:
            await asyncio.gather(
                self._read_output(job_id, process.stdout),
                self._read_errors(job_id, process.stderr, stderr_tail),
            )
            exit_status = await process.wait()
        except Exception as e:
            logger.error("Capture job %s process error: %s", job_id, e)
            await self._reap(job_id, process)
            self._release(job_id)
            self._cancel_reasons.pop(job_id, None)
            job = self._jobs.get(job_id)
            if job is not None:
                await self._transition(job, JobStatus.FAILED, error=f"Capture process error: {e}")
            return

        self._release(job_id)
        job = self._jobs.get(job_id)
        if job is not None:
            await self._on_close(job, exit_status, "\n".join(stderr_tail))

    async def _reap(self, job_id: str, process: CaptureProcess):
        """Stop a process whose output can no longer be followed, so it never runs untracked."""
        if not process.exited:
            logger.warning("Killing capture process for job %s after supervision error", job_id)
            process.kill(signal.SIGKILL)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.cancel_grace)
        except Exception as e:
            logger.warning("Capture process for job %s did not close cleanly: %r", job_id, e)

    def _release(self, job_id: str):
        self.watchdog.disarm(job_id)
        handle = self._kill_timers.pop(job_id, None)
        if handle is not None:
            handle.cancel()
        self._processes.pop(job_id, None)

    def _log(self, job_id: str, level: str, message: str):
        tail = self._logs.setdefault(job_id, deque(maxlen=LOG_TAIL_LINES))
        tail.append(JobLogEntry(level=level, message=message))

    async def _read_output(self, job_id: str, stream: asyncio.StreamReader):
        async for line in read_lines(stream):
            line = line.rstrip()
            if line:
                logger.debug("Capture stdout [%s]: %s", job_id, line)
                self._log(job_id, "info", line)
                await self._apply_progress(job_id, line)

    async def _read_errors(self, job_id: str, stream: asyncio.StreamReader, tail: Deque[str]):
        async for line in read_lines(stream):
            line = line.rstrip()
            if line:
                logger.debug("Capture stderr [%s]: %s", job_id, line)
                self._log(job_id, "error", line)
                tail.append(line)

    async def _apply_progress(self, job_id: str, line: str):
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.RUNNING:
            return
        # the output path carries the collection slug, which may itself read like "50%"
        value = parse_progress(line.replace(job.output_path, ""))
        if value is None or value == job.progress:
            return
        job.progress = value
        await self.persistence.update(job)
        self.events.publish(job)

    async def _on_close(self, job: CaptureJob, exit_status: ExitStatus, stderr: str):
        reason = self._cancel_reasons.pop(job.id, None)
        sig = exit_status.term_signal
        outcome = f"Process was terminated ({sig.name})" if sig else f"Process exited with code {exit_status.code}"
        self._log(job.id, "info" if exit_status.code == 0 else "error", outcome)

        if reason is not None:
            await self._transition(job, JobStatus.CANCELLED, error=f"{reason}. {outcome}")
        elif exit_status.code == 0:
            await self._transition(job, JobStatus.COMPLETED, progress=100)
        elif sig is not None:
            await self._transition(
                job, JobStatus.FAILED, error=f"Process was terminated by {sig.name}. {stderr}".strip()
            )
        else:
            await self._transition(
                job, JobStatus.FAILED, error=f"Process exited with code {exit_status.code}. {stderr}".strip()
            )

        logger.info("Capture job %s finished with status: %s", job.id, job.status.value)
        if job.status == JobStatus.COMPLETED:
            logger.info("Output saved to: %s", job.output_path)

    async def _transition(
        self,
        job: CaptureJob,
        status: JobStatus,
        error: Optional[str] = None,
        progress: Optional[int] = None,
    ) -> bool:
        try:
            validate_transition(job.id, job.status, status)
        except InvalidStateTransitionError as e:
            logger.warning("Dropping late event: %s", e)
            return False

        job.status = status
        if error is not None:
            job.error = error
            self._log(job.id, "info" if status == JobStatus.CANCELLED else "error", error)
        if progress is not None:
            job.progress = progress
        if is_terminal(status):
            job.end_time = utcnow()

        await self.persistence.update(job)
        self.events.publish(job)
        return True
