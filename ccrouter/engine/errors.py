"""Exception hierarchy for the session coordinator.

Only port exhaustion and permission failures are meant to reach callers.
The remaining types are raised at low level and converted to absence or
"not running" at the component boundary.
"""
from __future__ import annotations

from pathlib import Path


class RouterError(Exception):
    """Base exception for all coordinator errors."""


class PortExhausted(RouterError):
    """No bindable port in the probed range."""
    def __init__(self, start: int, span: int):
        self.start = start
        self.span = span
        super().__init__(
            f"No available ports found in range {start}-{start + span - 1}"
        )


class ProcessAbsent(RouterError):
    """Signal target PID no longer exists."""
    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(f"Process {pid} does not exist")


class PermissionDenied(RouterError):
    """The OS rejected a signal to the target PID."""
    def __init__(self, pid: int, action: str = "signal"):
        self.pid = pid
        self.action = action
        super().__init__(
            f"Permission denied to {action} process {pid}"
        )


class CorruptDescriptor(RouterError):
    """A session descriptor file could not be parsed."""
    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Corrupt session descriptor {path}: {reason}")


class CorruptMetrics(RouterError):
    """The persisted metrics file could not be parsed."""
    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Corrupt metrics file {path}: {reason}")


class StalePidFile(RouterError):
    """A pid file exists but does not hold a usable PID."""
    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Stale pid file: {path}")


class WorkerSpawnError(RouterError):
    """Failed to launch a worker process."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Failed to start worker for session {session_id}: {reason}")
