"""Worker process lifecycle: start, readiness, stop with escalation, restart.

Valid transitions are enforced; invalid ones raise ValueError rather
than silently proceeding.

State Diagram:

    NOT_RUNNING ──> STARTING ──┬──> RUNNING ──> STOPPING ──> NOT_RUNNING
                               │                   ^
                               ├──> NOT_RUNNING    │ (readiness timeout
                               │                   │  or spawn failure)
                               └───────────────────┘

The in-memory state is only this process's view. Workers started or
stopped by other processes are picked up from the registry whenever the
session sits in a stable state (NOT_RUNNING or RUNNING).
"""
from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
import time
from collections.abc import Sequence

from ccrouter.shared.services.process_signals import terminate_with_escalation

from .errors import PermissionDenied, ProcessAbsent, RouterError, WorkerSpawnError
from .identity import build_model_overrides
from .models import LifecycleState, SessionDescriptor, StopResult
from .ports import find_available_port
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[LifecycleState, set[LifecycleState]] = {
    LifecycleState.NOT_RUNNING: {
        LifecycleState.STARTING,
    },
    LifecycleState.STARTING: {
        LifecycleState.RUNNING,
        LifecycleState.STOPPING,
        LifecycleState.NOT_RUNNING,  # spawn failure or readiness timeout
    },
    LifecycleState.RUNNING: {
        LifecycleState.STOPPING,
    },
    LifecycleState.STOPPING: {
        LifecycleState.NOT_RUNNING,
    },
}

_STABLE_STATES = {LifecycleState.NOT_RUNNING, LifecycleState.RUNNING}


def validate_transition(current: LifecycleState, target: LifecycleState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def default_worker_command() -> list[str]:
    return [sys.executable, "-m", "ccrouter.app", "serve"]


class ProcessLifecycle:
    """Spawn and signal detached worker processes for sessions."""

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        host: str = "127.0.0.1",
        base_port: int = 3456,
        port_span: int = 100,
        stop_grace_seconds: float = 0.5,
        poll_interval_seconds: float = 0.1,
        settle_seconds: float = 0.5,
        worker_command: Sequence[str] | None = None,
        worker_env: dict[str, str] | None = None,
    ) -> None:
        self._registry = registry
        self._host = host
        self._base_port = base_port
        self._port_span = port_span
        self._stop_grace_seconds = stop_grace_seconds
        self._poll_interval_seconds = poll_interval_seconds
        self._settle_seconds = settle_seconds
        self._worker_command = list(worker_command or default_worker_command())
        self._worker_env = dict(worker_env or {})
        self._states: dict[str, LifecycleState] = {}
        # Spawned workers stay our children until reaped.
        self._children: dict[int, subprocess.Popen] = {}

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    # ── State tracking ──

    def state_of(self, descriptor: SessionDescriptor | str) -> LifecycleState:
        """Current state, refreshed from the registry when stable."""
        self.reap_children()
        if isinstance(descriptor, str):
            found = self._registry.get(descriptor)
            if found is None:
                return self._states.get(descriptor, LifecycleState.NOT_RUNNING)
            descriptor = found
        current = self._states.get(descriptor.session_id, LifecycleState.NOT_RUNNING)
        if current in _STABLE_STATES:
            current = (
                LifecycleState.RUNNING
                if self._registry.is_alive(descriptor)
                else LifecycleState.NOT_RUNNING
            )
            self._states[descriptor.session_id] = current
        return current

    def _transition(self, descriptor: SessionDescriptor, target: LifecycleState) -> None:
        current = self._states.get(descriptor.session_id, LifecycleState.NOT_RUNNING)
        validate_transition(current, target)
        self._states[descriptor.session_id] = target
        logger.debug(
            "Session %s: %s -> %s", descriptor.session_id, current.value, target.value,
        )

    # ── Start ──

    async def start(self, descriptor: SessionDescriptor) -> int:
        """Launch a detached worker for *descriptor* and return its PID.

        Allocates and persists a port first when none is assigned. Does
        not wait for readiness; use wait_until_ready.
        """
        if self._states.get(descriptor.session_id) is LifecycleState.STARTING:
            # An earlier start whose readiness nobody waited for.
            self._states[descriptor.session_id] = (
                LifecycleState.RUNNING
                if self._registry.is_alive(descriptor)
                else LifecycleState.NOT_RUNNING
            )
        self.state_of(descriptor)
        self._transition(descriptor, LifecycleState.STARTING)
        try:
            if descriptor.port is None:
                descriptor.port = find_available_port(
                    self._base_port, host=self._host, span=self._port_span,
                )
                logger.info(
                    "Allocated port %d for session %s", descriptor.port, descriptor.session_id,
                )
            self._registry.persist(descriptor)
            pid = self._spawn(descriptor)
        except RouterError:
            self._transition(descriptor, LifecycleState.NOT_RUNNING)
            raise
        except OSError as exc:
            self._transition(descriptor, LifecycleState.NOT_RUNNING)
            raise WorkerSpawnError(descriptor.session_id, str(exc)) from exc

        logger.info(
            "Started worker for session %s (%s) pid=%d port=%s",
            descriptor.session_id, descriptor.label, pid, descriptor.port,
        )
        return pid

    def _spawn(self, descriptor: SessionDescriptor) -> int:
        env = dict(os.environ)
        env.update(self._worker_env)
        env.update(build_model_overrides(descriptor))
        kwargs: dict = {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
            "env": env,
            "close_fds": True,
        }
        if os.name == "nt":
            kwargs["creationflags"] = (
                subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
            )
        else:
            kwargs["start_new_session"] = True
        proc = subprocess.Popen(self._worker_command, **kwargs)
        self._children[proc.pid] = proc
        return int(proc.pid)

    def reap_children(self) -> list[int]:
        """Collect exit statuses of spawned workers that have exited.

        An unreaped child lingers as a zombie, which still answers the
        signal-0 liveness probe. Returns the PIDs reaped by this call.
        """
        reaped = []
        for pid, proc in list(self._children.items()):
            if proc.poll() is not None:
                del self._children[pid]
                reaped.append(pid)
                logger.info("Worker pid=%d exited with code %s", pid, proc.returncode)
        return reaped

    async def wait_until_ready(
        self,
        descriptor: SessionDescriptor,
        timeout: float = 10.0,
        initial_delay: float = 1.0,
    ) -> bool:
        """Poll liveness until the worker has recorded its PID.

        Returns False once *timeout* seconds of polling pass. Never raises.
        """
        try:
            await asyncio.sleep(initial_delay)
            deadline = time.monotonic() + timeout
            while time.monotonic() < deadline:
                self.reap_children()
                if self._registry.is_alive(descriptor):
                    await asyncio.sleep(self._settle_seconds)
                    self._mark_ready(descriptor, True)
                    return True
                await asyncio.sleep(self._poll_interval_seconds)
        except Exception:
            logger.warning(
                "Readiness check failed for session %s", descriptor.session_id, exc_info=True,
            )
        self._mark_ready(descriptor, False)
        logger.warning(
            "Session %s not ready after %.1fs", descriptor.session_id, timeout,
        )
        return False

    def _mark_ready(self, descriptor: SessionDescriptor, ready: bool) -> None:
        current = self._states.get(descriptor.session_id)
        if current is LifecycleState.STARTING:
            self._transition(
                descriptor,
                LifecycleState.RUNNING if ready else LifecycleState.NOT_RUNNING,
            )
        else:
            self.state_of(descriptor)

    # ── Stop ──

    async def stop(self, descriptor: SessionDescriptor) -> StopResult:
        """Terminate the worker recorded in the pid file.

        SIGTERM, a fixed grace delay, then SIGKILL if the process is still
        there. The pid and reference-count files are removed whatever the
        outcome. Raises PermissionDenied when the OS refuses the signal.
        """
        self.reap_children()
        pid = self._registry.read_pid(descriptor)
        if pid is None:
            self._registry.clear_pid(descriptor)
            self._states[descriptor.session_id] = LifecycleState.NOT_RUNNING
            return StopResult(
                success=False,
                message=f"Session {descriptor.session_id} is not running (no PID found)",
            )

        # A pid file counts as RUNNING even if this process never started it.
        if self._states.get(descriptor.session_id) not in (
            LifecycleState.STARTING, LifecycleState.RUNNING,
        ):
            self._states[descriptor.session_id] = LifecycleState.RUNNING
        self._transition(descriptor, LifecycleState.STOPPING)

        try:
            forced = await terminate_with_escalation(
                pid, grace_seconds=self._stop_grace_seconds,
            )
        except ProcessAbsent:
            logger.info(
                "Session %s pid=%d was already gone", descriptor.session_id, pid,
            )
            return StopResult(
                success=True,
                message=f"Session {descriptor.session_id} was already stopped",
                pid=pid,
                already_stopped=True,
            )
        except PermissionDenied:
            logger.error(
                "Permission denied stopping session %s pid=%d", descriptor.session_id, pid,
            )
            raise
        finally:
            self.reap_children()
            self._registry.clear_pid(descriptor)
            self._registry.clear_reference_count(descriptor)
            self._transition(descriptor, LifecycleState.NOT_RUNNING)

        logger.info(
            "Stopped session %s pid=%d%s",
            descriptor.session_id, pid, " (forced)" if forced else "",
        )
        return StopResult(
            success=True,
            message=f"Session {descriptor.session_id} stopped successfully",
            pid=pid,
        )

    async def restart(self, descriptor: SessionDescriptor) -> int:
        """Best-effort stop, then start. Returns the new PID."""
        try:
            await self.stop(descriptor)
        except Exception:
            logger.warning(
                "Stop during restart failed for session %s; starting anyway",
                descriptor.session_id, exc_info=True,
            )
            self._states[descriptor.session_id] = LifecycleState.NOT_RUNNING
        return await self.start(descriptor)
