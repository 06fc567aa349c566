"""ccrouter CLI: main application entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler

from rich.console import Console
from rich.table import Table

from ccrouter.engine.config import RouterConfig
from ccrouter.engine.errors import PermissionDenied, PortExhausted, RouterError
from ccrouter.engine.lifecycle import ProcessLifecycle, default_worker_command
from ccrouter.engine.models import SessionDescriptor
from ccrouter.engine.ports import find_available_port
from ccrouter.engine.registry import SessionRegistry
from ccrouter.engine.yaml_config import load_yaml_config

logger = logging.getLogger(__name__)

console = Console()


def _load_config(args: argparse.Namespace) -> RouterConfig:
    config = RouterConfig.from_env()
    path = Path(args.config) if args.config else config.settings_file
    return load_yaml_config(path, base=config)


def _resolve_preference(args: argparse.Namespace) -> str:
    if args.preference is not None:
        return args.preference
    return os.getenv("CCR_MODEL_PREFERENCE", "")


def _configure_worker_logging(config: RouterConfig, session_id: str) -> Path:
    """Rotating file log plus stderr for a long-running worker."""
    config.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = config.log_dir / f"ccrouter-{session_id}.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _fail(message: str, hint: str | None = None) -> int:
    console.print(f"[bold red]Error:[/] {message}")
    if hint:
        console.print(f"[dim]Hint:[/] {hint}")
    return 1


def _build_lifecycle(
    config: RouterConfig,
    registry: SessionRegistry,
    args: argparse.Namespace,
) -> ProcessLifecycle:
    command = default_worker_command()
    if args.config:
        command += ["--config", str(Path(args.config).resolve())]
    return ProcessLifecycle(
        registry,
        host=config.host,
        base_port=config.base_port,
        port_span=config.port_span,
        stop_grace_seconds=config.stop_grace_seconds,
        poll_interval_seconds=config.ready_poll_interval_seconds,
        settle_seconds=config.ready_settle_seconds,
        worker_command=command,
        worker_env={"CCR_HOME": str(config.home_dir)},
    )


def _endpoint(config: RouterConfig, descriptor: SessionDescriptor) -> str:
    return f"http://{config.host}:{descriptor.port}"


# ── Commands ──


async def _cmd_start(
    config: RouterConfig,
    registry: SessionRegistry,
    lifecycle: ProcessLifecycle,
    descriptor: SessionDescriptor,
) -> int:
    if registry.is_alive(descriptor):
        console.print(
            f"Session [bold]{descriptor.session_id}[/] ({descriptor.label}) is already running "
            f"at {_endpoint(config, descriptor)}"
        )
        return 0

    try:
        pid = await lifecycle.start(descriptor)
    except PortExhausted as exc:
        return _fail(
            str(exc),
            "Free a port in that range or set CCR_BASE_PORT to another range.",
        )
    except RouterError as exc:
        return _fail(str(exc), f"Check the worker log in {config.log_dir}.")

    console.print(f"Starting session {descriptor.session_id} ({descriptor.label}) pid={pid}...")
    ready = await lifecycle.wait_until_ready(
        descriptor,
        timeout=config.ready_timeout_seconds,
        initial_delay=config.ready_initial_delay_seconds,
    )
    if not ready:
        return _fail(
            f"Session {descriptor.session_id} did not become ready within "
            f"{config.ready_timeout_seconds:.0f}s",
            f"See {config.log_dir / f'ccrouter-{descriptor.session_id}.log'}",
        )
    console.print(f"[green]Ready[/] API endpoint: {_endpoint(config, descriptor)}")
    return 0


async def _cmd_stop(
    lifecycle: ProcessLifecycle,
    descriptor: SessionDescriptor,
) -> int:
    try:
        result = await lifecycle.stop(descriptor)
    except PermissionDenied as exc:
        return _fail(str(exc), "The worker belongs to another user; stop it as that user.")
    console.print(result.message)
    return 0


async def _cmd_restart(
    config: RouterConfig,
    registry: SessionRegistry,
    lifecycle: ProcessLifecycle,
    descriptor: SessionDescriptor,
) -> int:
    try:
        pid = await lifecycle.restart(descriptor)
    except RouterError as exc:
        return _fail(str(exc), f"Check the worker log in {config.log_dir}.")
    console.print(f"Restarted session {descriptor.session_id} pid={pid}")
    ready = await lifecycle.wait_until_ready(
        descriptor,
        timeout=config.ready_timeout_seconds,
        initial_delay=config.ready_initial_delay_seconds,
    )
    if not ready:
        return _fail(f"Session {descriptor.session_id} did not become ready")
    console.print(f"[green]Ready[/] API endpoint: {_endpoint(config, descriptor)}")
    return 0


def _cmd_status(
    config: RouterConfig,
    registry: SessionRegistry,
    descriptor: SessionDescriptor,
) -> int:
    table = Table(title="ccrouter session status", show_header=False)
    table.add_row("Session ID", descriptor.session_id)
    table.add_row("Model preference", descriptor.label)
    if registry.is_alive(descriptor):
        table.add_row("Status", "[green]Running[/]")
        table.add_row("Process ID", str(registry.read_pid(descriptor)))
        table.add_row("Port", str(descriptor.port))
        table.add_row("API endpoint", _endpoint(config, descriptor))
        table.add_row("PID file", str(descriptor.pid_file))
        table.add_row("Reference count", str(registry.get_reference_count(descriptor)))
    else:
        table.add_row("Status", "[red]Not running[/]")
    console.print(table)
    return 0


def _cmd_sessions(config: RouterConfig, registry: SessionRegistry) -> int:
    sessions = registry.list_active()
    if not sessions:
        console.print("No active sessions.")
        return 0
    table = Table(title="Active sessions")
    table.add_column("Session ID")
    table.add_column("Model")
    table.add_column("Port", justify="right")
    table.add_column("PID", justify="right")
    table.add_column("Refs", justify="right")
    for descriptor in sessions:
        table.add_row(
            descriptor.session_id,
            descriptor.label,
            str(descriptor.port),
            str(registry.read_pid(descriptor)),
            str(registry.get_reference_count(descriptor)),
        )
    console.print(table)
    return 0


def _cmd_serve(
    config: RouterConfig,
    registry: SessionRegistry,
    descriptor: SessionDescriptor,
) -> int:
    from ccrouter.worker.server import RouterWorker

    log_file = _configure_worker_logging(config, descriptor.session_id)

    port_override = os.getenv("CCR_SESSION_PORT")
    if port_override:
        descriptor.port = int(port_override)
    elif descriptor.port is None:
        descriptor.port = find_available_port(
            config.base_port, host=config.host, span=config.port_span,
        )
    registry.persist(descriptor)
    logger.info(
        "Starting worker session=%s preference=%r port=%s home=%s log=%s",
        descriptor.session_id, descriptor.preference, descriptor.port,
        config.home_dir, log_file,
    )
    worker = RouterWorker(config, descriptor, registry=registry)
    asyncio.run(worker.start())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ccrouter",
        description="ccrouter - one router worker per model preference",
    )
    parser.add_argument(
        "command",
        choices=["start", "serve", "stop", "restart", "status", "sessions"],
        help="start/stop/restart a session worker, serve one in the foreground, "
             "or show status and active sessions",
    )
    parser.add_argument(
        "--preference", metavar="PREF",
        help="Model preference, e.g. openrouter,gpt-4 (default: $CCR_MODEL_PREFERENCE)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML settings file (default: <home>/ccrouter.yaml)",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    config = _load_config(args)

    if args.command != "serve":
        logging.basicConfig(
            level=getattr(logging, config.log_level.upper(), logging.INFO),
            format="%(levelname)s %(name)s: %(message)s",
        )

    registry = SessionRegistry(config.sessions_dir, config.base_port)
    if args.command == "sessions":
        sys.exit(_cmd_sessions(config, registry))

    descriptor = registry.get_or_create(_resolve_preference(args))

    if args.command == "serve":
        try:
            sys.exit(_cmd_serve(config, registry, descriptor))
        except PortExhausted as exc:
            logger.error("%s", exc)
            sys.exit(_fail(str(exc), "Set CCR_SESSION_PORT or CCR_BASE_PORT."))
    if args.command == "status":
        sys.exit(_cmd_status(config, registry, descriptor))

    lifecycle = _build_lifecycle(config, registry, args)
    if args.command == "start":
        code = asyncio.run(_cmd_start(config, registry, lifecycle, descriptor))
    elif args.command == "stop":
        code = asyncio.run(_cmd_stop(lifecycle, descriptor))
    else:
        code = asyncio.run(_cmd_restart(config, registry, lifecycle, descriptor))
    sys.exit(code)


if __name__ == "__main__":
    main()
