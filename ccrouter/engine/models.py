"""Core data models for the session coordinator and monitoring service.

All dataclasses and enums live here. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

DESCRIPTOR_FILENAME = "session.json"
PID_FILENAME = "router.pid"
REFERENCE_COUNT_FILENAME = "reference-count.txt"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        # fromisoformat rejects a trailing "Z" before 3.11
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None


class LifecycleState(str, Enum):
    """Worker process states. See lifecycle.py for transition rules."""
    NOT_RUNNING = "not_running"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class RequestStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self is not RequestStatus.PENDING


@dataclass
class ModelPreference:
    """Provider/model fields parsed out of a raw preference string."""
    raw: str
    provider: str | None = None
    model: str | None = None


@dataclass
class SessionDescriptor:
    """One worker instance bound to a model preference.

    ``port`` stays None until a port has been allocated. The file paths
    are derived from ``session_dir``, which the registry derives from
    ``session_id``.
    """

    preference: str
    session_id: str
    session_dir: Path
    provider: str | None = None
    model: str | None = None
    port: int | None = None
    created_at: datetime | None = None

    @property
    def descriptor_file(self) -> Path:
        return self.session_dir / DESCRIPTOR_FILENAME

    @property
    def pid_file(self) -> Path:
        return self.session_dir / PID_FILENAME

    @property
    def reference_count_file(self) -> Path:
        return self.session_dir / REFERENCE_COUNT_FILENAME

    @property
    def label(self) -> str:
        return self.preference or "default"

    def to_dict(self) -> dict[str, Any]:
        """On-disk descriptor shape."""
        return {
            "preference": self.preference,
            "provider": self.provider,
            "model": self.model,
            "port": self.port,
            "sessionId": self.session_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class RequestLog:
    """One inbound request, mutated in place as it completes."""

    id: str
    session_id: str
    method: str
    path: str
    timestamp: datetime = field(default_factory=_utcnow)
    status: RequestStatus = RequestStatus.PENDING
    provider: str | None = None
    model: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    duration_ms: int | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "sessionId": self.session_id,
            "method": self.method,
            "path": self.path,
            "status": self.status.value,
        }
        optional = {
            "provider": self.provider,
            "model": self.model,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "durationMs": self.duration_ms,
            "error": self.error,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RequestLog:
        return cls(
            id=str(data["id"]),
            session_id=str(data.get("sessionId") or "default"),
            method=str(data.get("method") or ""),
            path=str(data.get("path") or ""),
            timestamp=parse_datetime(data.get("timestamp")) or _utcnow(),
            status=RequestStatus(data.get("status", "pending")),
            provider=data.get("provider"),
            model=data.get("model"),
            input_tokens=_optional_int(data.get("inputTokens")),
            output_tokens=_optional_int(data.get("outputTokens")),
            duration_ms=_optional_int(data.get("durationMs")),
            error=data.get("error"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class SessionMetrics:
    """Rolling aggregate for one session id.

    ``average_response_time_ms`` is a running mean over successful
    requests that reported a duration; ``timed_success_count`` is the
    number of samples folded into it.
    """

    session_id: str
    start_time: datetime = field(default_factory=_utcnow)
    request_count: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    average_response_time_ms: float = 0.0
    timed_success_count: int = 0
    error_count: int = 0
    providers: dict[str, int] = field(default_factory=dict)
    models: dict[str, int] = field(default_factory=dict)

    def record(self, entry: RequestLog) -> None:
        """Fold one terminal request into the aggregate."""
        self.request_count += 1
        if entry.status is RequestStatus.ERROR:
            self.error_count += 1
        if entry.input_tokens:
            self.total_input_tokens += entry.input_tokens
        if entry.output_tokens:
            self.total_output_tokens += entry.output_tokens
        if entry.status is RequestStatus.SUCCESS and entry.duration_ms is not None:
            self.timed_success_count += 1
            self.average_response_time_ms += (
                entry.duration_ms - self.average_response_time_ms
            ) / self.timed_success_count
        if entry.provider:
            self.providers[entry.provider] = self.providers.get(entry.provider, 0) + 1
        if entry.model:
            self.models[entry.model] = self.models.get(entry.model, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "startTime": self.start_time.isoformat(),
            "requestCount": self.request_count,
            "totalInputTokens": self.total_input_tokens,
            "totalOutputTokens": self.total_output_tokens,
            "averageResponseTimeMs": self.average_response_time_ms,
            "timedSuccessCount": self.timed_success_count,
            "errorCount": self.error_count,
            "providers": dict(self.providers),
            "models": dict(self.models),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionMetrics:
        return cls(
            session_id=str(data["sessionId"]),
            start_time=parse_datetime(data.get("startTime")) or _utcnow(),
            request_count=int(data.get("requestCount", 0)),
            total_input_tokens=int(data.get("totalInputTokens", 0)),
            total_output_tokens=int(data.get("totalOutputTokens", 0)),
            average_response_time_ms=float(data.get("averageResponseTimeMs", 0.0)),
            timed_success_count=int(data.get("timedSuccessCount", 0)),
            error_count=int(data.get("errorCount", 0)),
            providers={str(k): int(v) for k, v in (data.get("providers") or {}).items()},
            models={str(k): int(v) for k, v in (data.get("models") or {}).items()},
        )


@dataclass
class WorkerResponse:
    """The slice of a worker response used for model/token extraction."""

    provider: str | None = None
    model: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> WorkerResponse:
        """Accept ``{"body": {...}}`` or a bare response body."""
        if not isinstance(payload, dict):
            return cls()
        body = payload.get("body", payload)
        if not isinstance(body, dict):
            return cls()

        provider = model = None
        raw_model = body.get("model")
        if isinstance(raw_model, str) and raw_model:
            parts = raw_model.split(",")
            if len(parts) == 2:
                provider, model = parts[0], parts[1]
            else:
                model = raw_model

        input_tokens = output_tokens = None
        usage = body.get("usage")
        if isinstance(usage, dict):
            input_tokens = _optional_int(usage.get("input_tokens"))
            output_tokens = _optional_int(usage.get("output_tokens"))

        return cls(
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


@dataclass
class StopResult:
    """Outcome of a stop attempt."""
    success: bool
    message: str
    pid: int | None = None
    already_stopped: bool = False
