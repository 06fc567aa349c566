"""HTTP + SSE surface of one session worker.

Each worker owns one session (one model preference, one port). Besides
the proxied ``/v1/*`` traffic it exposes the cross-session management
API used by the CLI and the web UI, and a Server-Sent Events stream of
monitoring updates.

Usage:
    ccrouter serve            # foreground, reads CCR_* env vars
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from ccrouter.engine.config import RouterConfig
from ccrouter.engine.errors import PermissionDenied, RouterError
from ccrouter.engine.lifecycle import ProcessLifecycle
from ccrouter.engine.models import SessionDescriptor
from ccrouter.engine.registry import SessionRegistry
from ccrouter.shared.services.monitoring import MonitoringService

logger = logging.getLogger(__name__)

# Upstream call for proxied requests: returns the HTTP response and the
# decoded upstream payload (or None) for usage accounting.
ForwardHandler = Callable[[web.Request], Awaitable[tuple[web.StreamResponse, Any]]]

# Request headers copied into RequestLog metadata.
_LOGGED_HEADERS = ("user-agent", "anthropic-version", "x-session-id")

SSE_KEEPALIVE_SECONDS = 30.0


async def unrouted_forward(request: web.Request) -> tuple[web.StreamResponse, Any]:
    """Default upstream: nothing is configured to serve model traffic."""
    return (
        web.json_response(
            {"error": "No upstream provider configured for this worker"},
            status=502,
        ),
        None,
    )


class RouterWorker:
    """aiohttp application for one session.

    Thin adapter: session state lives in the registry and lifecycle,
    request accounting in the MonitoringService. This class only handles
    HTTP routing and SSE fan-out.
    """

    def __init__(
        self,
        config: RouterConfig,
        descriptor: SessionDescriptor,
        *,
        registry: SessionRegistry | None = None,
        lifecycle: ProcessLifecycle | None = None,
        monitoring: MonitoringService | None = None,
        forward: ForwardHandler | None = None,
    ) -> None:
        self._config = config
        self._descriptor = descriptor
        self._registry = registry or SessionRegistry(config.sessions_dir, config.base_port)
        self._lifecycle = lifecycle or ProcessLifecycle(
            self._registry,
            host=config.host,
            base_port=config.base_port,
            port_span=config.port_span,
            stop_grace_seconds=config.stop_grace_seconds,
            poll_interval_seconds=config.ready_poll_interval_seconds,
            settle_seconds=config.ready_settle_seconds,
        )
        self._monitoring = monitoring if monitoring is not None else MonitoringService(
            config.monitoring_dir,
            config.request_log_dir,
            max_logs_in_memory=config.max_logs_in_memory,
            archive_batch_size=config.archive_batch_size,
            stream_backlog=config.stream_backlog,
        )
        self._forward = forward or unrouted_forward
        self._sse_keepalive_seconds = SSE_KEEPALIVE_SECONDS
        self._started_at = time.time()
        self._app = web.Application(middlewares=[
            self._request_logging_middleware,
            self._monitoring_middleware,
        ])
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def monitoring(self) -> MonitoringService:
        return self._monitoring

    @property
    def descriptor(self) -> SessionDescriptor:
        return self._descriptor

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-ccr-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _monitoring_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        """Track proxied model traffic in the MonitoringService."""
        if not request.path.startswith("/v1/"):
            return await handler(request)

        metadata = await self._request_metadata(request)
        request_id = self._monitoring.start_request(
            request.method,
            request.path_qs,
            session_id=self._descriptor.session_id,
            metadata=metadata,
        )
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            self._monitoring.end_request(request_id, error=exc.reason)
            raise
        except Exception as exc:
            self._monitoring.end_request(request_id, error=exc)
            raise

        error = None if response.status < 400 else f"HTTP {response.status}"
        self._monitoring.end_request(
            request_id, response=request.get("upstream_payload"), error=error,
        )
        return response

    @staticmethod
    async def _request_metadata(request: web.Request) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "headers": {
                name: request.headers[name]
                for name in _LOGGED_HEADERS
                if name in request.headers
            },
        }
        if request.can_read_body and request.content_type == "application/json":
            try:
                body = await request.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("model"):
                metadata["model"] = body["model"]
        return metadata

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        # Session management
        r.add_get("/api/sessions", self._handle_list_sessions)
        r.add_post("/api/sessions/start", self._handle_start_session)
        r.add_post("/api/sessions/{id}/stop", self._handle_stop_session)
        # Monitoring
        r.add_get("/api/monitoring/logs", self._handle_get_logs)
        r.add_delete("/api/monitoring/logs", self._handle_clear_logs)
        r.add_get("/api/monitoring/metrics", self._handle_get_metrics)
        r.add_post("/api/monitoring/metrics/reset", self._handle_reset_metrics)
        r.add_get("/api/monitoring/stream", self._handle_stream)
        # Proxied model traffic
        r.add_route("*", "/v1/{tail:.*}", self._handle_forward)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Bind the session port, record our pid, and serve until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._descriptor.port)
        await site.start()

        self._registry.record_pid(self._descriptor, os.getpid())
        logger.info(
            "Session %s (%s) listening on %s:%s pid=%d",
            self._descriptor.session_id, self._descriptor.label,
            self._config.host, self._descriptor.port, os.getpid(),
        )

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Worker shutting down")
        finally:
            if self._registry.read_pid(self._descriptor) == os.getpid():
                self._registry.clear_pid(self._descriptor)
            await runner.cleanup()

    # ── Helpers ──

    async def _read_json(self, request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _session_summary(self, descriptor: SessionDescriptor) -> dict[str, Any]:
        summary = descriptor.to_dict()
        summary["modelPreference"] = descriptor.preference or "default"
        summary["isCurrent"] = descriptor.port == self._descriptor.port
        summary["pid"] = self._registry.read_pid(descriptor)
        summary["referenceCount"] = self._registry.get_reference_count(descriptor)
        return summary

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "sessionId": self._descriptor.session_id,
            "port": self._descriptor.port,
            "uptimeSeconds": round(max(0.0, time.time() - self._started_at), 3),
        })

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        try:
            self._lifecycle.reap_children()
            sessions = self._registry.list_active()
        except OSError:
            logger.exception("Failed to list sessions")
            return web.json_response({"error": "Failed to get sessions"}, status=500)
        return web.json_response([self._session_summary(d) for d in sessions])

    async def _handle_start_session(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        preference = body.get("preference") or body.get("modelPreference")
        if not preference or not isinstance(preference, str):
            return web.json_response({"error": "Model preference is required"}, status=400)

        descriptor = self._registry.get_or_create(preference)
        self._lifecycle.reap_children()
        if self._registry.is_alive(descriptor):
            return web.json_response({
                "success": False,
                "message": f"Session for {preference} is already running",
                "sessionId": descriptor.session_id,
                "port": descriptor.port,
            })

        try:
            pid = await self._lifecycle.start(descriptor)
        except (RouterError, ValueError) as exc:
            logger.error("Failed to start session for %r: %s", preference, exc)
            return web.json_response(
                {"error": "Failed to start session", "message": str(exc)},
                status=500,
            )
        return web.json_response({
            "success": True,
            "message": f"Session started for {preference}",
            "sessionId": descriptor.session_id,
            "port": descriptor.port,
            "pid": pid,
        })

    async def _handle_stop_session(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        self._lifecycle.reap_children()
        descriptor = next(
            (d for d in self._registry.list_active() if d.session_id == session_id),
            None,
        )
        if descriptor is None:
            logger.warning("Stop requested for unknown session %s", session_id)
            return web.json_response(
                {"error": "Session not found", "sessionId": session_id}, status=404,
            )

        try:
            result = await self._lifecycle.stop(descriptor)
        except PermissionDenied:
            return web.json_response(
                {
                    "error": "Permission denied to stop session",
                    "sessionId": session_id,
                    "message": "The session process cannot be stopped due to permissions",
                },
                status=403,
            )
        except (RouterError, OSError, ValueError) as exc:
            logger.exception("Error stopping session %s", session_id)
            return web.json_response(
                {"error": "Failed to stop session", "sessionId": session_id, "message": str(exc)},
                status=500,
            )
        return web.json_response({"success": result.success, "message": result.message})

    async def _handle_get_logs(self, request: web.Request) -> web.Response:
        session_id = request.query.get("sessionId") or None
        try:
            limit = int(request.query.get("limit", "100"))
        except ValueError:
            limit = 100
        logs = self._monitoring.get_recent_requests(session_id, limit)
        return web.json_response({"logs": [entry.to_dict() for entry in logs]})

    async def _handle_clear_logs(self, request: web.Request) -> web.Response:
        session_id = request.query.get("sessionId") or None
        self._monitoring.clear_logs(session_id)
        return web.json_response({"success": True, "message": "Logs cleared successfully"})

    async def _handle_get_metrics(self, request: web.Request) -> web.Response:
        session_id = request.query.get("sessionId") or None
        if session_id:
            metrics = self._monitoring.get_session_metrics(session_id)
            return web.json_response({"metrics": metrics.to_dict() if metrics else None})
        return web.json_response({
            "metrics": [m.to_dict() for m in self._monitoring.get_all_session_metrics()],
        })

    async def _handle_reset_metrics(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        session_id = body.get("sessionId") or None
        self._monitoring.reset_metrics(session_id)
        return web.json_response({"success": True, "message": "Metrics reset successfully"})

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )
        await response.prepare(request)

        session_id = request.query.get("sessionId") or None
        stream = self._monitoring.stream_logs(session_id)
        logger.info(
            "Monitoring stream connected req=%s session=%s listeners=%d",
            request.get("req_id", "unknown"), session_id or "*",
            self._monitoring.broadcaster.listener_count(),
        )
        try:
            while True:
                frame = await stream.get(timeout=self._sse_keepalive_seconds)
                try:
                    if frame is None:
                        await response.write(b": keepalive\n\n")
                    else:
                        await response.write(f"data: {json.dumps(frame)}\n\n".encode())
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            stream.close()
            logger.info(
                "Monitoring stream disconnected req=%s listeners=%d",
                request.get("req_id", "unknown"),
                self._monitoring.broadcaster.listener_count(),
            )
        return response

    async def _handle_forward(self, request: web.Request) -> web.StreamResponse:
        response, payload = await self._forward(request)
        request["upstream_payload"] = payload
        return response
