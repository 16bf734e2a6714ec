"""
Backend process lifecycle.

The gateway fronts exactly one backend process that listens on a Unix
socket. This package spawns it on demand, waits for its socket to appear and
tears it down on shutdown.
"""

from funcd.backend.errors import (
    GatewayError,
    GatewayErrorCode,
    ProxyDialError,
    ReadinessTimeoutError,
    ShutdownError,
    StartupError,
)
from funcd.backend.process import BackendProcess, ProcessState
from funcd.backend.readiness import accepts_connections, remove_socket, wait_for_socket
from funcd.backend.supervisor import ProcessSupervisor, SupervisorState

__all__ = [
    "BackendProcess",
    "GatewayError",
    "GatewayErrorCode",
    "ProcessState",
    "ProcessSupervisor",
    "ProxyDialError",
    "ReadinessTimeoutError",
    "ShutdownError",
    "StartupError",
    "SupervisorState",
    "accepts_connections",
    "remove_socket",
    "wait_for_socket",
]
