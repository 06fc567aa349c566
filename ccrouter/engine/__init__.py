"""ccrouter engine: session identity, on-disk registry and worker lifecycle."""
from .models import (
    LifecycleState,
    ModelPreference,
    RequestLog,
    RequestStatus,
    SessionDescriptor,
    SessionMetrics,
    StopResult,
    WorkerResponse,
)
from .config import RouterConfig
from .errors import (
    CorruptDescriptor,
    CorruptMetrics,
    PermissionDenied,
    PortExhausted,
    ProcessAbsent,
    RouterError,
    StalePidFile,
    WorkerSpawnError,
)
from .identity import DEFAULT_SESSION_ID, derive_session_id, parse_preference

__all__ = [
    # Registry and lifecycle (lazy import)
    "SessionRegistry",
    "ProcessLifecycle",
    "find_available_port",
    # Identity
    "DEFAULT_SESSION_ID",
    "derive_session_id",
    "parse_preference",
    # Models
    "LifecycleState",
    "ModelPreference",
    "RequestLog",
    "RequestStatus",
    "SessionDescriptor",
    "SessionMetrics",
    "StopResult",
    "WorkerResponse",
    # Config
    "RouterConfig",
    "load_yaml_config",
    # Errors
    "CorruptDescriptor",
    "CorruptMetrics",
    "PermissionDenied",
    "PortExhausted",
    "ProcessAbsent",
    "RouterError",
    "StalePidFile",
    "WorkerSpawnError",
]


def __getattr__(name: str):
    if name == "SessionRegistry":
        from .registry import SessionRegistry
        return SessionRegistry
    if name == "ProcessLifecycle":
        from .lifecycle import ProcessLifecycle
        return ProcessLifecycle
    if name == "find_available_port":
        from .ports import find_available_port
        return find_available_port
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
