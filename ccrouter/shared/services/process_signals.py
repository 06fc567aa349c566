"""Signal delivery and liveness probing for worker processes.

Liveness only asks whether *some* process owns the PID. A recycled PID
belonging to an unrelated process counts as alive.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal

from ccrouter.engine.errors import PermissionDenied, ProcessAbsent

logger = logging.getLogger(__name__)

# Windows has no SIGKILL; TerminateProcess is what SIGTERM maps to there.
_FORCE_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)


def process_exists(pid: int | None) -> bool:
    """Probe *pid* with signal 0. EPERM means the process exists."""
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def send_signal(pid: int, sig: int) -> None:
    """Deliver *sig* to *pid*, translating OS errors to coordinator errors."""
    if pid <= 0:
        # 0 and negative values address process groups, not one worker.
        raise ValueError(f"Refusing to signal non-positive pid {pid}")
    try:
        os.kill(pid, sig)
    except ProcessLookupError as exc:
        raise ProcessAbsent(pid) from exc
    except PermissionError as exc:
        raise PermissionDenied(pid, action=signal.Signals(sig).name) from exc


async def terminate_with_escalation(pid: int, *, grace_seconds: float = 0.5) -> bool:
    """Send SIGTERM, wait *grace_seconds*, then SIGKILL if still present.

    Returns True when the forceful signal was needed. Raises
    ProcessAbsent when the PID was already gone before SIGTERM and
    PermissionDenied when the OS rejects the signal.
    """
    send_signal(pid, signal.SIGTERM)
    logger.info("Sent SIGTERM to pid=%d", pid)

    await asyncio.sleep(grace_seconds)

    if not process_exists(pid):
        return False
    try:
        send_signal(pid, _FORCE_SIGNAL)
    except ProcessAbsent:
        # Exited between the probe and the kill.
        return False
    logger.warning(
        "pid=%d still alive after %.1fs grace; sent %s",
        pid, grace_seconds, signal.Signals(_FORCE_SIGNAL).name,
    )
    return True
