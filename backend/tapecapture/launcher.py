# backend/tapecapture/launcher.py
"""
Capture processes and the launchers that start them.

Two implementations share one contract so the registry never needs to
know which it got:

  stdout / stderr   asyncio.StreamReader, line oriented
  wait()            resolves with an ExitStatus when the process closes,
                    raises if the process errored out
  kill(sig)         termination request (SIGTERM graceful, SIGKILL forced)

RealCaptureProcess wraps the external capture binary. EmulatedCaptureProcess
is an in-loop synthetic stand-in that prints the same progress lines and
writes a placeholder file, for machines without DV hardware.
"""
import asyncio
import logging
import os
import random
import re
import signal
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence, Tuple

import aiofiles
import aiofiles.os

from .errors import SpawnFailureError

logger = logging.getLogger(__name__)

_LINE_BREAK_RE = re.compile(rb"\r\n|\r|\n")
MAX_LINE_BYTES = 64 * 1024


@dataclass(frozen=True)
class ExitStatus:
    code: Optional[int]
    term_signal: Optional[signal.Signals] = None


async def read_lines(stream: asyncio.StreamReader, chunk_size: int = 4096) -> AsyncIterator[str]:
    """
    Yield decoded lines from a process stream.

    Splits on CR as well as LF: capture tools redraw their progress line
    with a bare carriage return, which readline() would see as one endless
    line. A fragment longer than MAX_LINE_BYTES is flushed as it is.
    """
    pending = b""
    while True:
        chunk = await stream.read(chunk_size)
        if not chunk:
            break
        pending += chunk
        parts = _LINE_BREAK_RE.split(pending)
        pending = parts.pop()
        for part in parts:
            yield part.decode(errors="replace")
        if len(pending) > MAX_LINE_BYTES:
            yield pending.decode(errors="replace")
            pending = b""
    if pending:
        yield pending.decode(errors="replace")


class CaptureProcess(ABC):
    stdout: asyncio.StreamReader
    stderr: asyncio.StreamReader

    @abstractmethod
    async def wait(self) -> ExitStatus:
        ...

    @abstractmethod
    def kill(self, sig: signal.Signals = signal.SIGTERM) -> None:
        ...

    @property
    @abstractmethod
    def exited(self) -> bool:
        ...


class CaptureLauncher(ABC):

    @abstractmethod
    async def launch(self, output_path: str) -> CaptureProcess:
        """Start a capture writing to output_path. Raises SpawnFailureError."""

    def list_devices(self) -> List[str]:
        # only launchers that own their devices can name them
        return []


# --- real hardware ---

class RealCaptureProcess(CaptureProcess):

    def __init__(self, proc: asyncio.subprocess.Process):
        self._proc = proc
        self.stdout = proc.stdout
        self.stderr = proc.stderr

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def exited(self) -> bool:
        return self._proc.returncode is not None

    async def wait(self) -> ExitStatus:
        code = await self._proc.wait()
        if code < 0:
            try:
                return ExitStatus(None, signal.Signals(-code))
            except ValueError:
                return ExitStatus(code)
        return ExitStatus(code)

    def kill(self, sig: signal.Signals = signal.SIGTERM) -> None:
        if self.exited:
            return
        try:
            self._proc.send_signal(sig)
        except ProcessLookupError:
            # exited between the check and the signal
            pass


class RealCaptureLauncher(CaptureLauncher):

    def __init__(self, command: Sequence[str] = ("dvrescue",)):
        self.command = list(command)

    def build_args(self, output_path: str):
        return self.command + ["--capture", output_path, "--verbose"]

    async def launch(self, output_path: str) -> CaptureProcess:
        args = self.build_args(output_path)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SpawnFailureError(args[0], str(e)) from e
        logger.info("Spawned %s (pid %s)", " ".join(args), proc.pid)
        return RealCaptureProcess(proc)


# --- emulated device ---

class EmulatedCaptureProcess(CaptureProcess):

    def __init__(
        self,
        output_path: str,
        start_delay: float = 0.05,
        interval: Tuple[float, float] = (2.0, 5.0),
        total_frames: Tuple[int, int] = (1000, 3000),
        rng: Optional[random.Random] = None,
    ):
        loop = asyncio.get_running_loop()
        self.output_path = output_path
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self._rng = rng or random.Random()
        self._interval = interval
        self.total_frames = self._rng.randint(*total_frames)
        self.frames = 0
        self._exit: asyncio.Future = loop.create_future()
        self._task = loop.create_task(self._run(start_delay))

    @property
    def exited(self) -> bool:
        return self._exit.done()

    async def wait(self) -> ExitStatus:
        return await asyncio.shield(self._exit)

    def kill(self, sig: signal.Signals = signal.SIGTERM) -> None:
        if self.exited:
            return
        self._task.cancel()
        if sig == signal.SIGTERM:
            self._print("DV Emulator: Capture cancelled by user")
        else:
            self._print(f"DV Emulator: Capture killed ({sig.name})")
        self._close(ExitStatus(None, sig))

    def _print(self, line: str):
        self.stdout.feed_data((line + "\n").encode())

    def _eprint(self, line: str):
        self.stderr.feed_data((line + "\n").encode())

    def _close(self, status: ExitStatus):
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        if not self._exit.done():
            self._exit.set_result(status)

    def _step(self) -> int:
        low = max(self.total_frames // 7, 1)
        high = max(self.total_frames // 4, low)
        return self._rng.randint(low, high)

    async def _run(self, start_delay: float):
        try:
            await asyncio.sleep(start_delay)
            self._print(f"DV Emulator: Starting capture to {self.output_path}")
            self._print(f"DV Emulator: Estimated {self.total_frames} frames")

            while True:
                await asyncio.sleep(self._rng.uniform(*self._interval))
                self.frames += self._step()
                if self.frames >= self.total_frames:
                    self.frames = self.total_frames
                    self._print(
                        f"DV Emulator: Capture completed - {self.frames}/{self.total_frames} frames"
                    )
                    break
                pct = round(self.frames / self.total_frames * 100)
                self._print(
                    f"DV Emulator: Progress - {self.frames}/{self.total_frames} frames ({pct}%)"
                )

            try:
                async with aiofiles.open(self.output_path, "w") as f:
                    await f.write(f"DUMMY_DV_VIDEO_DATA_{int(time.time() * 1000)}")
            except OSError as e:
                self._eprint(f"DV Emulator: Error saving file: {e}")
                self._close(ExitStatus(1))
                return

            self._print(f"DV Emulator: Saved dummy file to {self.output_path}")
            self._close(ExitStatus(0))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stdout.feed_eof()
            self.stderr.feed_eof()
            if not self._exit.done():
                self._exit.set_exception(e)


@dataclass
class EmulatedDevice:
    id: str
    name: str
    type: str = "DV"   # DV | HDV
    connected: bool = True


def default_emulated_devices() -> List[EmulatedDevice]:
    return [
        EmulatedDevice("emu-dv-001", "Sony DCR-TRV900 (Emulated)"),
        EmulatedDevice("emu-dv-002", "Canon XM2 (Emulated)"),
    ]


class EmulatedCaptureLauncher(CaptureLauncher):

    def __init__(
        self,
        start_delay: float = 0.05,
        interval: Tuple[float, float] = (2.0, 5.0),
        rng: Optional[random.Random] = None,
        devices: Optional[List[EmulatedDevice]] = None,
    ):
        self.start_delay = start_delay
        self.interval = interval
        self.rng = rng
        self.devices = default_emulated_devices() if devices is None else list(devices)

    def list_devices(self) -> List[str]:
        return [d.name for d in self.devices if d.connected]

    def add_device(self, name: str, type: str = "DV") -> str:
        device_id = f"emu-{type.lower()}-{int(time.time() * 1000)}-{len(self.devices) + 1}"
        self.devices.append(EmulatedDevice(device_id, f"{name} (Emulated)", type))
        return device_id

    async def launch(self, output_path: str) -> CaptureProcess:
        try:
            await aiofiles.os.makedirs(os.path.dirname(output_path), exist_ok=True)
        except OSError as e:
            raise SpawnFailureError("emulator", str(e)) from e
        return EmulatedCaptureProcess(
            output_path,
            start_delay=self.start_delay,
            interval=self.interval,
            rng=self.rng,
        )
