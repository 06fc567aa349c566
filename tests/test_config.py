from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

from ccrouter.engine.config import RouterConfig
from ccrouter.engine.yaml_config import load_yaml_config


def test_defaults():
    cfg = RouterConfig()
    assert cfg.base_port == 3456
    assert cfg.port_span == 100
    assert cfg.ready_timeout_seconds == 10.0
    assert cfg.stop_grace_seconds == 0.5
    assert cfg.max_logs_in_memory == 1000
    assert cfg.home_dir == Path.home() / ".ccrouter"


def test_derived_paths(tmp_path: Path):
    cfg = RouterConfig(home_dir=tmp_path)
    assert cfg.sessions_dir == tmp_path / "sessions"
    assert cfg.monitoring_dir == tmp_path / "monitoring"
    assert cfg.request_log_dir == tmp_path / "logs" / "requests"
    cfg.ensure_dirs()
    assert cfg.sessions_dir.is_dir()
    assert cfg.request_log_dir.is_dir()


def test_from_env_overrides(tmp_path: Path):
    env = {
        "CCR_HOME": str(tmp_path),
        "CCR_BASE_PORT": "4000",
        "CCR_READY_TIMEOUT": "2.5",
        "CCR_MAX_LOGS": "10",
        "CCR_LOG_LEVEL": "DEBUG",
    }
    with patch.dict(os.environ, env, clear=False):
        cfg = RouterConfig.from_env()
    assert cfg.home_dir == tmp_path
    assert cfg.base_port == 4000
    assert cfg.ready_timeout_seconds == 2.5
    assert cfg.max_logs_in_memory == 10
    assert cfg.log_level == "DEBUG"


def test_yaml_layers_over_base(tmp_path: Path):
    path = tmp_path / "ccrouter.yaml"
    path.write_text(
        "sessions:\n"
        "  base_port: 5000\n"
        "  stop_grace_seconds: 1\n"
        "monitoring:\n"
        "  max_logs_in_memory: 200\n"
        "logging:\n"
        "  level: WARNING\n",
        encoding="utf-8",
    )
    base = RouterConfig(home_dir=tmp_path, port_span=7)
    cfg = load_yaml_config(path, base=base)

    assert cfg.base_port == 5000
    assert cfg.stop_grace_seconds == 1.0
    assert isinstance(cfg.stop_grace_seconds, float)
    assert cfg.max_logs_in_memory == 200
    assert cfg.log_level == "WARNING"
    assert cfg.port_span == 7
    assert base.base_port == 3456


def test_yaml_missing_file_returns_base(tmp_path: Path):
    base = RouterConfig(home_dir=tmp_path)
    assert load_yaml_config(tmp_path / "absent.yaml", base=base) is base


def test_yaml_malformed_is_ignored(tmp_path: Path):
    path = tmp_path / "ccrouter.yaml"
    path.write_text("sessions: [unclosed\n", encoding="utf-8")
    base = RouterConfig(home_dir=tmp_path)
    assert load_yaml_config(path, base=base) == base


def test_yaml_unknown_and_bad_values_are_skipped(tmp_path: Path):
    path = tmp_path / "ccrouter.yaml"
    path.write_text(
        "sessions:\n"
        "  base_port: not-a-number\n"
        "  bogus: 1\n"
        "extras:\n"
        "  x: 1\n",
        encoding="utf-8",
    )
    base = RouterConfig(home_dir=tmp_path)
    cfg = load_yaml_config(path, base=base)
    assert cfg.base_port == 3456
