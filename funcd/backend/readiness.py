"""
Socket readiness gate.

The backend binds its Unix socket asynchronously relative to process spawn.
The socket file appears at bind(), slightly before the backend calls
listen(); proxying in that window only yields connection-refused churn. The
gate polls for the file, then confirms with a throwaway connection.
"""

import asyncio
import contextlib
from collections.abc import Callable
from pathlib import Path

from funcd.backend.errors import ReadinessTimeoutError, StartupError
from funcd.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL = 0.005


async def accepts_connections(path: str | Path, timeout: float) -> bool:
    """Check that something is listening on the socket.

    Args:
        path: Socket path.
        timeout: Seconds to wait for the connect to complete.

    Returns:
        True if a connection was established (and closed again).
    """
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_unix_connection(str(path)), timeout=timeout
        )
    except (ConnectionRefusedError, FileNotFoundError, TimeoutError):
        return False

    writer.close()
    # The backend may reset the empty connection first
    with contextlib.suppress(ConnectionError):
        await writer.wait_closed()
    return True


async def wait_for_socket(
    path: str | Path,
    timeout: float,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    *,
    is_alive: Callable[[], bool] | None = None,
) -> float:
    """Block until the backend socket accepts connections.

    Args:
        path: Socket marker path.
        timeout: Maximum seconds to wait.
        poll_interval: Seconds between checks.
        is_alive: Optional liveness check for the process expected to bind
            the socket. When it reports False the wait fails immediately.

    Returns:
        Seconds elapsed until the socket became connectable.

    Raises:
        ReadinessTimeoutError: The socket was not connectable within timeout.
        StartupError: The process died before binding.
    """
    marker = Path(path)
    loop = asyncio.get_running_loop()
    started = loop.time()
    deadline = started + timeout

    while True:
        if marker.exists():
            remaining = max(deadline - loop.time(), poll_interval)
            if await accepts_connections(marker, remaining):
                return loop.time() - started

        if is_alive is not None and not is_alive():
            raise StartupError(
                "Backend exited before binding its socket",
                cause="early_exit",
            )

        if loop.time() >= deadline:
            raise ReadinessTimeoutError(str(marker), timeout)

        await asyncio.sleep(poll_interval)


def remove_socket(path: str | Path) -> bool:
    """Remove a socket marker if present.

    Args:
        path: Socket marker path.

    Returns:
        True if a file was removed.

    Raises:
        OSError: The file exists but could not be removed.
    """
    marker = Path(path)
    try:
        marker.unlink()
    except FileNotFoundError:
        return False

    logger.info("Removed socket file", path=str(marker))
    return True
