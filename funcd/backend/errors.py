"""
Error definitions for the funcd gateway.

Error codes follow the pattern:
- STARTUP_*: The backend process could not be launched
- READINESS_*: The backend was launched but never became reachable
- PROXY_*: The backend is presumed alive but forwarding failed
- SHUTDOWN_*: Teardown failures (logged only, never surfaced to clients)
"""

from enum import Enum
from typing import Any


class GatewayErrorCode(str, Enum):
    """Gateway error codes."""

    STARTUP_FAILED = "STARTUP_FAILED"
    """Process spawn failed (binary missing, permission denied, early exit).
    The supervisor state is cleared; the next request retries."""

    READINESS_TIMEOUT = "READINESS_TIMEOUT"
    """The socket marker never appeared within the readiness bound.
    The supervisor state is cleared; the next request retries."""

    PROXY_DIAL_FAILED = "PROXY_DIAL_FAILED"
    """The socket exists but the connection was refused or broke mid-stream.
    The supervisor state is left untouched."""

    SHUTDOWN_FAILED = "SHUTDOWN_FAILED"
    """Kill or cleanup failed during shutdown. Logged only."""


class GatewayError(Exception):
    """
    Base exception for gateway errors.

    Carries the HTTP status used when the error surfaces to a client.
    """

    http_status: int = 500

    def __init__(
        self,
        code: GatewayErrorCode,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """
        Convert error to a JSON-serializable response body.

        Returns:
            Dictionary with error code, message and optional details.
        """
        result: dict[str, Any] = {
            "ok": False,
            "error_code": self.code.value,
            "error": self.message,
        }

        if self.details:
            result["details"] = self.details

        return result


class StartupError(GatewayError):
    """Raised when the backend process cannot be spawned or dies before binding."""

    http_status = 500

    def __init__(
        self,
        message: str,
        *,
        command: str | None = None,
        returncode: int | None = None,
        cause: str | None = None,
    ):
        details: dict[str, Any] = {}
        if command:
            details["command"] = command
        if returncode is not None:
            details["returncode"] = returncode
        if cause:
            details["cause"] = cause

        super().__init__(
            GatewayErrorCode.STARTUP_FAILED,
            message,
            details=details if details else None,
        )


class ReadinessTimeoutError(GatewayError):
    """Raised when the socket marker does not appear within the timeout."""

    http_status = 504

    def __init__(self, socket_path: str, timeout_seconds: float):
        super().__init__(
            GatewayErrorCode.READINESS_TIMEOUT,
            f"Backend socket not ready after {timeout_seconds}s",
            details={"socket_path": socket_path, "timeout_seconds": timeout_seconds},
        )


class ProxyDialError(GatewayError):
    """Raised when forwarding to the backend socket fails."""

    http_status = 502

    def __init__(
        self,
        message: str,
        *,
        socket_path: str | None = None,
        cause: str | None = None,
    ):
        details: dict[str, Any] = {}
        if socket_path:
            details["socket_path"] = socket_path
        if cause:
            details["cause"] = cause

        super().__init__(
            GatewayErrorCode.PROXY_DIAL_FAILED,
            message,
            details=details if details else None,
        )


class ShutdownError(GatewayError):
    """Raised when killing the backend or removing the marker fails."""

    http_status = 500

    def __init__(self, message: str, *, stage: str | None = None, cause: str | None = None):
        details: dict[str, Any] = {}
        if stage:
            details["stage"] = stage
        if cause:
            details["cause"] = cause

        super().__init__(
            GatewayErrorCode.SHUTDOWN_FAILED,
            message,
            details=details if details else None,
        )
