"""Port allocation by sequential bind probing on localhost.

The probe releases the port right away, so another process may take it
before the worker binds. That race is accepted; the worker surfaces the
bind failure.
"""
from __future__ import annotations

import logging
import os
import socket

from .errors import PortExhausted

logger = logging.getLogger(__name__)

BASE_PORT = 3456
MAX_PORT_RANGE = 100


def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """True when a throwaway listener can bind *port* on *host*."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        # Match the worker listener, which reuses ports held in TIME_WAIT.
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(1)
    except OSError:
        return False
    finally:
        sock.close()
    return True


def find_available_port(
    start: int = BASE_PORT,
    *,
    host: str = "127.0.0.1",
    span: int = MAX_PORT_RANGE,
) -> int:
    """Return the first bindable port in ``[start, start + span)``."""
    for port in range(start, start + span):
        if is_port_available(port, host):
            logger.debug("Port %d is available on %s", port, host)
            return port
    raise PortExhausted(start, span)
