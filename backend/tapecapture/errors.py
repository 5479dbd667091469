"""
Capture error types.

All errors inherit from CaptureError for easy catching.
Runtime failures and cancellations are job outcomes, not exceptions:
they are recorded on the job and observed by polling or subscribing.
"""


class CaptureError(Exception):
    """Base exception for all capture-related failures."""
    pass


class DeviceUnavailableError(CaptureError):
    """Raised when no capture hardware is present and emulation is disabled."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__("No capture devices available and emulation is disabled")


class SpawnFailureError(CaptureError):
    """Raised when a launcher cannot produce a running process."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start {command}: {reason}")


class JobNotFoundError(CaptureError):
    """Raised when a job cannot be found in the registry."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Capture job not found: {job_id}")


class InvalidStateTransitionError(CaptureError):
    """Raised when attempting an illegal status transition."""

    def __init__(self, job_id: str, current_state: str, target_state: str):
        self.job_id = job_id
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            f"Invalid transition for job {job_id}: "
            f"{current_state} -> {target_state}"
        )
