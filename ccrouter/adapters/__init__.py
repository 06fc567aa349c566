"""Adapters package - bridges between core services and live consumers.

Holds the broadcast channel and per-subscriber log streams that connect
the monitoring service to the worker's streaming endpoint.
"""
from __future__ import annotations

__all__ = [
    "Broadcaster",
    "LogStream",
]

from ccrouter.adapters.event_bus import Broadcaster, LogStream
