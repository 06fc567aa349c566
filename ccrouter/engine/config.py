"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CCR_* env vars, or layer
a YAML settings file on top with yaml_config.load_yaml_config().
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


def _default_home() -> Path:
    return Path.home() / ".ccrouter"


@dataclass
class RouterConfig:
    """Session router configuration."""

    # Root of the shared on-disk state (sessions, monitoring, logs).
    home_dir: Path = field(default_factory=_default_home)

    # Port allocation
    host: str = "127.0.0.1"
    base_port: int = 3456
    port_span: int = 100

    # Readiness polling after spawning a worker
    ready_timeout_seconds: float = 10.0
    ready_initial_delay_seconds: float = 1.0
    ready_poll_interval_seconds: float = 0.1
    ready_settle_seconds: float = 0.5

    # Delay between SIGTERM and the SIGKILL escalation
    stop_grace_seconds: float = 0.5

    # Monitoring
    max_logs_in_memory: int = 1000
    archive_batch_size: int = 100
    stream_backlog: int = 50

    # Logging
    log_level: str = "INFO"

    @property
    def sessions_dir(self) -> Path:
        return self.home_dir / "sessions"

    @property
    def monitoring_dir(self) -> Path:
        return self.home_dir / "monitoring"

    @property
    def log_dir(self) -> Path:
        return self.home_dir / "logs"

    @property
    def request_log_dir(self) -> Path:
        return self.log_dir / "requests"

    @property
    def settings_file(self) -> Path:
        return self.home_dir / "ccrouter.yaml"

    def ensure_dirs(self) -> None:
        for path in (self.sessions_dir, self.monitoring_dir, self.request_log_dir):
            path.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls) -> RouterConfig:
        """Load configuration from CCR_* environment variables."""
        ccr_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CCR_")
        }
        if ccr_vars:
            logger.info(
                "RouterConfig.from_env: CCR_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(ccr_vars.items())),
            )
        else:
            logger.debug("RouterConfig.from_env: no CCR_* env vars set, using defaults")

        home = os.getenv("CCR_HOME")
        config = cls(
            home_dir=Path(home).expanduser() if home else _default_home(),
            host=os.getenv("CCR_HOST", cls.host),
            base_port=int(os.getenv(
                "CCR_BASE_PORT", str(cls.base_port)
            )),
            port_span=int(os.getenv(
                "CCR_PORT_SPAN", str(cls.port_span)
            )),
            ready_timeout_seconds=float(os.getenv(
                "CCR_READY_TIMEOUT", str(cls.ready_timeout_seconds)
            )),
            ready_initial_delay_seconds=float(os.getenv(
                "CCR_READY_INITIAL_DELAY",
                str(cls.ready_initial_delay_seconds),
            )),
            stop_grace_seconds=float(os.getenv(
                "CCR_STOP_GRACE", str(cls.stop_grace_seconds)
            )),
            max_logs_in_memory=int(os.getenv(
                "CCR_MAX_LOGS", str(cls.max_logs_in_memory)
            )),
            log_level=os.getenv("CCR_LOG_LEVEL", cls.log_level),
        )
        logger.debug(
            "RouterConfig.from_env: home=%s host=%s base_port=%d log_level=%s",
            config.home_dir, config.host, config.base_port, config.log_level,
        )
        return config
