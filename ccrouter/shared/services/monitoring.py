"""Request monitoring: in-flight tracking, per-session metrics, live push.

Storage layout:
    <home>/monitoring/metrics.json           {sessions: [...], lastUpdated}
    <home>/logs/requests/YYYY-MM-DD.jsonl    one RequestLog per line

One MonitoringService is built when the worker starts and handed to the
HTTP handlers. All persistence is best-effort: write failures are logged
and the in-memory state stays authoritative for this process.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ccrouter.adapters.event_bus import Broadcaster, LogStream
from ccrouter.engine.errors import CorruptMetrics
from ccrouter.engine.identity import DEFAULT_SESSION_ID
from ccrouter.engine.models import (
    RequestLog,
    RequestStatus,
    SessionMetrics,
    WorkerResponse,
)
from ccrouter.shared.services.durable_write import append_jsonl, atomic_write_json

logger = logging.getLogger(__name__)

METRICS_FILENAME = "metrics.json"

# Broadcast event names.
REQUEST_START = "request:start"
REQUEST_UPDATE = "request:update"
REQUEST_END = "request:end"
METRICS_UPDATE = "metrics:update"
LOGS_CLEARED = "logs:cleared"
METRICS_RESET = "metrics:reset"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MonitoringService:
    """Tracks requests and aggregates metrics for every session id seen."""

    def __init__(
        self,
        monitoring_dir: Path,
        request_log_dir: Path,
        *,
        max_logs_in_memory: int = 1000,
        archive_batch_size: int = 100,
        stream_backlog: int = 50,
        broadcaster: Broadcaster | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._monitoring_dir = Path(monitoring_dir)
        self._request_log_dir = Path(request_log_dir)
        self._max_logs_in_memory = max_logs_in_memory
        self._archive_batch_size = archive_batch_size
        self._stream_backlog = stream_backlog
        self._broadcaster = broadcaster or Broadcaster()
        self._clock = clock
        self._requests: dict[str, RequestLog] = {}
        # Requests already folded into metrics, so repeated terminal updates count once.
        self._counted: set[str] = set()
        self._metrics: dict[str, SessionMetrics] = {}
        try:
            self._request_log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            logger.warning("Cannot create request log dir %s", self._request_log_dir, exc_info=True)
        self._load_persisted_metrics()

    @property
    def broadcaster(self) -> Broadcaster:
        return self._broadcaster

    @property
    def metrics_file(self) -> Path:
        return self._monitoring_dir / METRICS_FILENAME

    def day_log_path(self, when: datetime | None = None) -> Path:
        """Per-day request log, keyed by local calendar date."""
        day = (when or datetime.now()).strftime("%Y-%m-%d")
        return self._request_log_dir / f"{day}.jsonl"

    # ── Persistence ──

    def _load_persisted_metrics(self) -> None:
        path = self.metrics_file
        if not path.exists():
            return
        try:
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                sessions = data.get("sessions") or []
                loaded = [SessionMetrics.from_dict(item) for item in sessions]
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
                raise CorruptMetrics(path, str(exc)) from exc
        except CorruptMetrics as exc:
            logger.warning("%s; starting with empty metrics", exc)
            return
        for metrics in loaded:
            self._metrics[metrics.session_id] = metrics
        logger.debug("Loaded metrics for %d session(s) from %s", len(loaded), path)

    def _persist_metrics(self) -> None:
        payload = {
            "sessions": [m.to_dict() for m in self._metrics.values()],
            "lastUpdated": _utcnow().isoformat(),
        }
        try:
            atomic_write_json(self.metrics_file, payload)
        except OSError:
            logger.error("Failed to persist metrics to %s", self.metrics_file, exc_info=True)

    def _persist_request_logs(self, entries: list[RequestLog]) -> None:
        path = self.day_log_path()
        try:
            append_jsonl(path, [entry.to_dict() for entry in entries])
        except OSError:
            logger.error("Failed to persist %d request log(s) to %s", len(entries), path, exc_info=True)

    def _archive_old_logs(self) -> None:
        oldest = sorted(self._requests.values(), key=lambda r: r.timestamp)
        batch = oldest[: self._archive_batch_size]
        self._persist_request_logs(batch)
        for entry in batch:
            self._requests.pop(entry.id, None)
            self._counted.discard(entry.id)
        logger.debug(
            "Archived %d request log(s); %d remain in memory", len(batch), len(self._requests),
        )

    # ── Request tracking ──

    @staticmethod
    def _new_request_id(now: datetime) -> str:
        return f"req_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"

    def start_request(
        self,
        method: str,
        path: str,
        session_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Record a new pending request and return its id."""
        now = self._clock()
        entry = RequestLog(
            id=self._new_request_id(now),
            session_id=session_id or DEFAULT_SESSION_ID,
            method=method,
            path=path,
            timestamp=now,
            metadata=dict(metadata or {}),
        )
        self._requests[entry.id] = entry
        self._broadcaster.publish(REQUEST_START, entry.to_dict())

        if len(self._requests) > self._max_logs_in_memory:
            self._archive_old_logs()
        return entry.id

    def update_request(self, request_id: str, **fields: Any) -> None:
        """Merge *fields* into a tracked request. Unknown ids are ignored."""
        entry = self._requests.get(request_id)
        if entry is None:
            logger.debug("update_request: unknown request %s", request_id)
            return

        if "status" in fields:
            fields["status"] = RequestStatus(fields["status"])
        unknown = [name for name in fields if name == "id" or not hasattr(entry, name)]
        if unknown:
            raise TypeError(f"RequestLog has no updatable field {unknown[0]!r}")
        for name, value in fields.items():
            setattr(entry, name, value)

        if entry.session_id and entry.status.terminal and entry.id not in self._counted:
            self._update_session_metrics(entry)

        self._broadcaster.publish(REQUEST_UPDATE, entry.to_dict())

        status = fields.get("status")
        if status is not None and status.terminal:
            self._persist_request_logs([entry])

    def end_request(
        self,
        request_id: str,
        response: Any = None,
        error: BaseException | str | None = None,
    ) -> None:
        """Complete a request: duration, status, model and token usage."""
        entry = self._requests.get(request_id)
        if entry is None:
            logger.debug("end_request: unknown request %s", request_id)
            return

        elapsed = self._clock() - entry.timestamp
        updates: dict[str, Any] = {
            "duration_ms": int(elapsed.total_seconds() * 1000),
            "status": RequestStatus.ERROR if error is not None else RequestStatus.SUCCESS,
            "error": str(error) if error is not None else None,
        }

        extracted = (
            response if isinstance(response, WorkerResponse)
            else WorkerResponse.from_payload(response)
        )
        if extracted.model:
            updates["model"] = extracted.model
            if extracted.provider:
                updates["provider"] = extracted.provider
        if extracted.input_tokens is not None:
            updates["input_tokens"] = extracted.input_tokens
        if extracted.output_tokens is not None:
            updates["output_tokens"] = extracted.output_tokens

        self.update_request(request_id, **updates)
        self._broadcaster.publish(REQUEST_END, entry.to_dict())

    def _update_session_metrics(self, entry: RequestLog) -> None:
        metrics = self._metrics.get(entry.session_id)
        if metrics is None:
            metrics = SessionMetrics(session_id=entry.session_id, start_time=self._clock())
            self._metrics[entry.session_id] = metrics
        metrics.record(entry)
        self._counted.add(entry.id)
        self._persist_metrics()
        self._broadcaster.publish(METRICS_UPDATE, metrics.to_dict())

    # ── Queries ──

    def get_request(self, request_id: str) -> RequestLog | None:
        return self._requests.get(request_id)

    def get_recent_requests(
        self, session_id: str | None = None, limit: int = 100,
    ) -> list[RequestLog]:
        """Newest first, optionally filtered by session."""
        matching = [
            r for r in self._requests.values()
            if session_id is None or r.session_id == session_id
        ]
        matching.sort(key=lambda r: r.timestamp, reverse=True)
        return matching[: max(0, limit)]

    def get_session_metrics(self, session_id: str) -> SessionMetrics | None:
        return self._metrics.get(session_id)

    def get_all_session_metrics(self) -> list[SessionMetrics]:
        return list(self._metrics.values())

    def __len__(self) -> int:
        return len(self._requests)

    # ── Live streaming ──

    def stream_logs(self, session_id: str | None = None) -> LogStream:
        """Open a subscriber stream.

        The stream starts with an ``initial`` frame holding the most
        recent matching requests and a ``metrics`` snapshot, then carries
        live ``log``/``metrics`` frames until closed.
        """
        stream = LogStream(self._broadcaster, session_id=session_id)

        recent = self.get_recent_requests(session_id, self._stream_backlog)
        stream.put("initial", [r.to_dict() for r in recent])

        if session_id:
            metrics = self.get_session_metrics(session_id)
            if metrics is not None:
                stream.put("metrics", metrics.to_dict())
        else:
            stream.put("metrics", [m.to_dict() for m in self.get_all_session_metrics()])

        for event_type in (REQUEST_START, REQUEST_UPDATE, REQUEST_END):
            stream.listen(event_type, "log")
        stream.listen(METRICS_UPDATE, "metrics")
        stream.listen(LOGS_CLEARED, "cleared")
        stream.listen(METRICS_RESET, "reset")
        return stream

    # ── Maintenance ──

    def clear_logs(self, session_id: str | None = None) -> int:
        """Drop in-memory requests (all, or one session's). Returns the count."""
        if session_id:
            doomed = [rid for rid, r in self._requests.items() if r.session_id == session_id]
        else:
            doomed = list(self._requests)
        for rid in doomed:
            self._requests.pop(rid, None)
            self._counted.discard(rid)
        logger.info("Cleared %d request log(s) session=%s", len(doomed), session_id or "*")
        self._broadcaster.publish(LOGS_CLEARED, session_id)
        return len(doomed)

    def reset_metrics(self, session_id: str | None = None) -> None:
        if session_id:
            self._metrics.pop(session_id, None)
        else:
            self._metrics.clear()
        self._persist_metrics()
        logger.info("Reset metrics session=%s", session_id or "*")
        self._broadcaster.publish(METRICS_RESET, session_id)
