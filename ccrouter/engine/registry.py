"""On-disk session registry.

Storage layout:
    <home>/sessions/{session_id}/session.json          descriptor (port, preference)
    <home>/sessions/{session_id}/router.pid            worker PID, text
    <home>/sessions/{session_id}/reference-count.txt   active users, text

The tree is shared by every worker and CLI on the host without any
locking. Readers tolerate partial or corrupt files by treating them as
absent; writers are last-writer-wins. Descriptors are never removed on
stop, so a preference keeps its port across restarts.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from ccrouter.shared.services.durable_write import atomic_write_json
from ccrouter.shared.services.process_signals import process_exists

from .errors import CorruptDescriptor, StalePidFile
from .identity import derive_session_id, parse_preference
from .models import DESCRIPTOR_FILENAME, SessionDescriptor, parse_datetime
from .ports import BASE_PORT

logger = logging.getLogger(__name__)


def _read_int(path: Path) -> int | None:
    """Parse the leading integer of a text file; trailing text is ignored."""
    raw = path.read_text(encoding="utf-8").strip()
    digits = ""
    for i, ch in enumerate(raw):
        if ch.isdigit() or (i == 0 and ch in "+-"):
            digits += ch
            continue
        break
    try:
        return int(digits)
    except ValueError:
        return None


class SessionRegistry:
    """Create, read and discover session descriptors on disk."""

    def __init__(self, sessions_dir: Path, base_port: int = BASE_PORT) -> None:
        self._sessions_dir = Path(sessions_dir)
        self._base_port = base_port

    @property
    def sessions_dir(self) -> Path:
        return self._sessions_dir

    def ensure_sessions_dir(self) -> None:
        self._sessions_dir.mkdir(parents=True, exist_ok=True)

    # ── Descriptors ──

    def _build(self, preference: str, session_id: str) -> SessionDescriptor:
        parsed = parse_preference(preference)
        return SessionDescriptor(
            preference=preference,
            session_id=session_id,
            session_dir=self._sessions_dir / session_id,
            provider=parsed.provider,
            model=parsed.model,
        )

    def _load_descriptor_file(self, path: Path) -> dict:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise CorruptDescriptor(path, str(exc)) from exc
        if not isinstance(data, dict):
            raise CorruptDescriptor(path, "not a JSON object")
        return data

    def get_or_create(self, preference: str = "") -> SessionDescriptor:
        """Descriptor for *preference*, with the persisted port if any.

        A descriptor file that exists but cannot be parsed falls back to
        the base port. Without a file the port stays unassigned.
        """
        self.ensure_sessions_dir()
        preference = preference or ""
        session_id = derive_session_id(preference)
        descriptor = self._build(preference, session_id)
        descriptor.session_dir.mkdir(parents=True, exist_ok=True)

        if descriptor.descriptor_file.exists():
            try:
                saved = self._load_descriptor_file(descriptor.descriptor_file)
                port = saved.get("port")
                descriptor.port = port if isinstance(port, int) and port > 0 else self._base_port
                descriptor.created_at = parse_datetime(saved.get("createdAt"))
            except CorruptDescriptor as exc:
                logger.warning("%s; using base port %d", exc, self._base_port)
                descriptor.port = self._base_port
        return descriptor

    def get(self, session_id: str) -> SessionDescriptor | None:
        """Load a descriptor by id; None when missing or unparsable."""
        return self._descriptor_from_dir(self._sessions_dir / session_id)

    def _descriptor_from_dir(self, session_dir: Path) -> SessionDescriptor | None:
        path = session_dir / DESCRIPTOR_FILENAME
        if not path.exists():
            return None
        try:
            saved = self._load_descriptor_file(path)
        except CorruptDescriptor as exc:
            logger.debug("Skipping session dir %s: %s", session_dir, exc)
            return None

        preference = saved.get("preference", saved.get("modelPreference")) or ""
        descriptor = self._build(str(preference), session_dir.name)
        # Keep the parsed fields that were persisted, they may predate parse rule changes.
        descriptor.provider = saved.get("provider") or descriptor.provider
        descriptor.model = saved.get("model") or descriptor.model
        port = saved.get("port")
        descriptor.port = port if isinstance(port, int) and port > 0 else None
        descriptor.created_at = parse_datetime(saved.get("createdAt"))
        return descriptor

    def persist(self, descriptor: SessionDescriptor) -> None:
        """Overwrite the descriptor file."""
        if descriptor.created_at is None:
            descriptor.created_at = datetime.now(timezone.utc)
        atomic_write_json(descriptor.descriptor_file, descriptor.to_dict())
        logger.debug(
            "Persisted session %s port=%s preference=%r",
            descriptor.session_id, descriptor.port, descriptor.preference,
        )

    def list_all(self) -> list[SessionDescriptor]:
        """Every parsable descriptor, alive or not."""
        if not self._sessions_dir.exists():
            return []
        result: list[SessionDescriptor] = []
        for entry in sorted(self._sessions_dir.iterdir()):
            if not entry.is_dir():
                continue
            descriptor = self._descriptor_from_dir(entry)
            if descriptor is not None:
                result.append(descriptor)
        return result

    def list_active(self) -> list[SessionDescriptor]:
        """Descriptors whose recorded worker process is alive."""
        self.ensure_sessions_dir()
        return [d for d in self.list_all() if self.is_alive(d)]

    # ── PID file ──

    def read_pid(self, descriptor: SessionDescriptor) -> int | None:
        """The recorded PID, or None. A non-positive or unparsable value
        is never a worker PID; the file is removed and None returned.
        """
        if not descriptor.pid_file.exists():
            return None
        try:
            pid = _read_int(descriptor.pid_file)
        except OSError:
            return None
        if pid is None or pid <= 0:
            logger.info(
                "Removing invalid pid file for session %s (%r)", descriptor.session_id, pid,
            )
            self.clear_pid(descriptor)
            return None
        return pid

    def record_pid(self, descriptor: SessionDescriptor, pid: int) -> None:
        descriptor.session_dir.mkdir(parents=True, exist_ok=True)
        descriptor.pid_file.write_text(str(pid), encoding="utf-8")

    def clear_pid(self, descriptor: SessionDescriptor) -> None:
        try:
            descriptor.pid_file.unlink(missing_ok=True)
        except OSError:
            logger.debug("Failed to remove pid file %s", descriptor.pid_file, exc_info=True)

    def is_alive(self, descriptor: SessionDescriptor) -> bool:
        """True when the PID in the pid file belongs to a live process.

        An unparsable pid file, or one naming a dead process, is deleted
        on the spot.
        """
        if not descriptor.pid_file.exists():
            return False
        try:
            pid = _read_int(descriptor.pid_file)
            if pid is None or pid <= 0:
                raise StalePidFile(descriptor.pid_file)
        except (OSError, StalePidFile) as exc:
            logger.info("Removing unreadable pid file for session %s: %s", descriptor.session_id, exc)
            self.clear_pid(descriptor)
            return False
        if not process_exists(pid):
            logger.info(
                "Session %s pid=%d is gone; removing stale pid file",
                descriptor.session_id, pid,
            )
            self.clear_pid(descriptor)
            return False
        return True

    # ── Reference count ──

    def get_reference_count(self, descriptor: SessionDescriptor) -> int:
        path = descriptor.reference_count_file
        if not path.exists():
            return 0
        try:
            count = _read_int(path)
        except OSError:
            return 0
        return count if count and count > 0 else 0

    def update_reference_count(
        self,
        descriptor: SessionDescriptor,
        mutate: Callable[[int], int],
    ) -> int:
        """Read-modify-write of the reference-count file.

        Not atomic: two processes updating concurrently can lose one of
        the updates.
        """
        current = self.get_reference_count(descriptor)
        updated = max(0, mutate(current))
        descriptor.session_dir.mkdir(parents=True, exist_ok=True)
        descriptor.reference_count_file.write_text(str(updated), encoding="utf-8")
        return updated

    def increment_reference_count(self, descriptor: SessionDescriptor) -> int:
        return self.update_reference_count(descriptor, lambda n: n + 1)

    def decrement_reference_count(self, descriptor: SessionDescriptor) -> int:
        return self.update_reference_count(descriptor, lambda n: n - 1)

    def clear_reference_count(self, descriptor: SessionDescriptor) -> None:
        try:
            descriptor.reference_count_file.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning(
                "Failed to clean up reference count file %s: %s",
                descriptor.reference_count_file, exc,
            )
