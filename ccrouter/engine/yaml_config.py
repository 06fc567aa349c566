"""YAML settings loader.

Layers an optional YAML file over the env-derived RouterConfig. Missing
keys keep their current values; unknown keys are logged and ignored.

Example YAML:
    sessions:
      base_port: 3456
      port_span: 100
      ready_timeout_seconds: 10
      stop_grace_seconds: 0.5

    monitoring:
      max_logs_in_memory: 1000
      archive_batch_size: 100
      stream_backlog: 50

    logging:
      level: DEBUG
"""
from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Any

import yaml

from .config import RouterConfig

logger = logging.getLogger(__name__)

# section -> {yaml key: RouterConfig field}
_SECTIONS: dict[str, dict[str, str]] = {
    "sessions": {
        "host": "host",
        "base_port": "base_port",
        "port_span": "port_span",
        "ready_timeout_seconds": "ready_timeout_seconds",
        "ready_initial_delay_seconds": "ready_initial_delay_seconds",
        "ready_poll_interval_seconds": "ready_poll_interval_seconds",
        "ready_settle_seconds": "ready_settle_seconds",
        "stop_grace_seconds": "stop_grace_seconds",
    },
    "monitoring": {
        "max_logs_in_memory": "max_logs_in_memory",
        "archive_batch_size": "archive_batch_size",
        "stream_backlog": "stream_backlog",
    },
    "logging": {
        "level": "log_level",
    },
}

_FIELD_TYPES = {f.name: f.type for f in dataclasses.fields(RouterConfig)}


def _coerce(field_name: str, value: Any) -> Any:
    kind = _FIELD_TYPES[field_name]
    if kind in ("int", int):
        return int(value)
    if kind in ("float", float):
        return float(value)
    return str(value)


def load_yaml_config(
    path: str | Path,
    base: RouterConfig | None = None,
) -> RouterConfig:
    """Return *base* (or RouterConfig.from_env()) updated from *path*.

    A missing file returns the base unchanged. An unreadable file, a YAML
    parse error or a badly typed value is logged and the affected
    settings keep their base values.
    """
    path = Path(path)
    config = base if base is not None else RouterConfig.from_env()
    if not path.exists():
        logger.debug("load_yaml_config: no settings file at %s", path)
        return config

    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.error("load_yaml_config: ignoring unreadable %s: %s", path, exc)
        return config

    if not isinstance(raw, dict):
        logger.error("load_yaml_config: ignoring %s, top level is not a mapping", path)
        return config

    overrides: dict[str, Any] = {}
    for section, mapping in raw.items():
        keys = _SECTIONS.get(section)
        if keys is None:
            logger.warning("load_yaml_config: unknown section %r in %s", section, path)
            continue
        if not isinstance(mapping, dict):
            logger.warning("load_yaml_config: section %r in %s is not a mapping", section, path)
            continue
        for key, value in mapping.items():
            field_name = keys.get(key)
            if field_name is None:
                logger.warning("load_yaml_config: unknown key %s.%s in %s", section, key, path)
                continue
            try:
                overrides[field_name] = _coerce(field_name, value)
            except (TypeError, ValueError):
                logger.warning(
                    "load_yaml_config: bad value for %s.%s in %s: %r",
                    section, key, path, value,
                )

    logger.info(
        "Loaded settings from %s: %s",
        path, ", ".join(sorted(overrides)) if overrides else "(nothing)",
    )
    return dataclasses.replace(config, **overrides)
