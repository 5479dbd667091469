# backend/tapecapture/probe.py
import asyncio
import logging
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

# output fragments meaning "no hardware" even on a zero exit
NO_DEVICE_MARKERS = ("device not found", "No devices", "command not found")


class DeviceProbe:
    """Bounded-time check for attached capture hardware. Fails open to "no device"."""

    def __init__(self, command: Sequence[str] = ("dvrescue", "--status"), timeout: float = 5.0):
        self.command = list(command)
        self.timeout = timeout

    async def has_device(self) -> bool:
        has_devices = bool(await self.list_devices())
        if has_devices:
            logger.info("Real DV devices detected")
        else:
            logger.info("No real DV devices available, using emulator")
        return has_devices

    async def list_devices(self) -> List[str]:
        """One entry per non-empty line of the status output; empty when there is no hardware."""
        output = await self._status_output()
        if not output or any(m in output for m in NO_DEVICE_MARKERS):
            return []
        return [line.strip() for line in output.splitlines() if line.strip()]

    async def _status_output(self) -> Optional[str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.info("Device status command unavailable (%s)", e)
            return None

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Device status command timed out after %.1fs", self.timeout)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return None

        if proc.returncode != 0:
            logger.info("Device status command exited with %s", proc.returncode)
            return None
        return stdout.decode(errors="replace").strip()
