"""
Backend process supervisor.

Owns the single BackendProcess and serializes its lifecycle:

    IDLE ──ensure_running──▶ STARTING ──marker seen──▶ READY
                               │                         │
                               ▼ spawn error/timeout     ▼ unexpected exit
                             FAILED ──ensure_running──▶ STARTING   (back to IDLE)

    any ──shutdown──▶ STOPPED

Concurrent callers arriving while a start attempt is in flight do not start
their own; they await the outcome of that one attempt. A failed attempt is
reported to all of its waiters and the next call starts from scratch. At most
one backend process is live at any time.
"""

import asyncio
from collections.abc import Callable
from enum import Enum

from funcd.backend.errors import GatewayError, ShutdownError, StartupError
from funcd.backend.process import BackendProcess
from funcd.backend.readiness import remove_socket, wait_for_socket
from funcd.utils.config import BackendConfig, ReadinessConfig
from funcd.utils.logging import get_logger

logger = get_logger(__name__)

ProcessFactory = Callable[[], BackendProcess]


class SupervisorState(Enum):
    """Lifecycle state of the supervisor."""

    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


class ProcessSupervisor:
    """Get-or-create access to a single lazily started backend process."""

    def __init__(
        self,
        backend: BackendConfig,
        readiness: ReadinessConfig,
        *,
        process_factory: ProcessFactory | None = None,
    ):
        """Initialize supervisor.

        Args:
            backend: Backend launch configuration.
            readiness: Readiness polling configuration.
            process_factory: Builds a fresh BackendProcess per start attempt.
                Defaults to BackendProcess.from_config(backend).
        """
        self._backend = backend
        self._readiness = readiness
        self._factory = process_factory or (lambda: BackendProcess.from_config(backend))
        self._lock = asyncio.Lock()
        self._state = SupervisorState.IDLE
        self._process: BackendProcess | None = None
        self._start_task: asyncio.Task[BackendProcess] | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._last_error: GatewayError | None = None
        self._spawn_count = 0

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def process(self) -> BackendProcess | None:
        return self._process

    @property
    def last_error(self) -> GatewayError | None:
        return self._last_error

    @property
    def spawn_count(self) -> int:
        """Number of processes successfully spawned so far."""
        return self._spawn_count

    @property
    def socket_path(self) -> str:
        return self._backend.socket_path

    async def ensure_running(self) -> BackendProcess:
        """Return the running backend, starting it if necessary.

        A READY backend is returned without contacting it. Otherwise the
        caller joins the in-flight start attempt, or launches one.

        Returns:
            The ready BackendProcess.

        Raises:
            StartupError: Spawn failed, the process died before binding, or
                the supervisor has been shut down.
            ReadinessTimeoutError: The socket never appeared.
        """
        async with self._lock:
            if self._state is SupervisorState.STOPPED:
                raise StartupError("Supervisor is shut down", cause="stopped")

            process = self._process
            if self._state is SupervisorState.READY and process is not None:
                if process.is_running:
                    return process
                # Exited before the monitor caught up
                logger.warning(
                    "Recorded backend is no longer running",
                    pid=process.pid,
                    returncode=process.returncode,
                )
                self._process = None
                self._state = SupervisorState.IDLE

            if self._start_task is None:
                self._state = SupervisorState.STARTING
                self._start_task = asyncio.create_task(
                    self._start(), name="funcd-backend-start"
                )
                self._start_task.add_done_callback(_consume_result)
            task = self._start_task

        # The attempt outlives any single waiter: cancelling a request
        # does not cut the readiness wait short.
        return await asyncio.shield(task)

    async def _start(self) -> BackendProcess:
        """Run one start attempt: clear marker, spawn, wait for socket."""
        socket_path = self.socket_path
        process: BackendProcess | None = None
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            try:
                remove_socket(socket_path)
            except OSError as e:
                raise StartupError(
                    f"Cannot remove stale socket: {e}",
                    cause=type(e).__name__,
                ) from e

            process = self._factory()
            self._process = process
            await process.start()
            self._spawn_count += 1

            await wait_for_socket(
                socket_path,
                self._readiness.timeout_seconds,
                self._readiness.poll_interval_seconds,
                is_alive=lambda: process.is_running,
            )
        except GatewayError as e:
            self._last_error = e
            logger.error(
                "Backend start failed",
                error_code=e.code.value,
                error=e.message,
                details=e.details,
            )
            try:
                await self._discard(process)
            finally:
                self._finish_attempt(SupervisorState.FAILED)
            raise
        except BaseException:
            # Cancelled by shutdown (or an unexpected bug): never leave a
            # half-started process behind.
            try:
                await self._discard(process)
            finally:
                self._finish_attempt(SupervisorState.IDLE)
            raise

        process.mark_ready()
        self._last_error = None
        self._finish_attempt(SupervisorState.READY)
        self._monitor_task = asyncio.create_task(
            self._monitor(process), name="funcd-backend-monitor"
        )
        logger.info(
            "Backend ready",
            pid=process.pid,
            socket_path=socket_path,
            elapsed_ms=round((loop.time() - started) * 1000, 2),
        )
        return process

    def _finish_attempt(self, state: SupervisorState) -> None:
        self._start_task = None
        if self._state is not SupervisorState.STOPPED:
            self._state = state

    async def _discard(self, process: BackendProcess | None) -> None:
        """Kill and reap a process from a failed attempt, then clear the marker."""
        if process is not None:
            process.mark_failed()
            if process.is_running:
                process.kill()
                try:
                    await asyncio.wait_for(
                        process.wait(), timeout=self._backend.stop_timeout_seconds
                    )
                except TimeoutError:
                    logger.warning("Failed backend did not exit after kill", pid=process.pid)
            if self._process is process:
                self._process = None

        try:
            remove_socket(self.socket_path)
        except OSError as e:
            logger.warning("Failed to remove socket file", path=self.socket_path, error=str(e))

    async def _monitor(self, process: BackendProcess) -> None:
        """Clear state when a READY backend exits on its own."""
        returncode = await process.wait()

        if self._process is not process or self._state is SupervisorState.STOPPED:
            return

        logger.warning(
            "Backend exited unexpectedly",
            pid=process.pid,
            returncode=returncode,
        )
        self._process = None
        self._state = SupervisorState.IDLE
        try:
            remove_socket(self.socket_path)
        except OSError as e:
            logger.warning("Failed to remove socket file", path=self.socket_path, error=str(e))

    def signal(self, sig: int) -> bool:
        """Send a signal to the recorded process.

        Returns:
            True if a process was recorded.
        """
        process = self._process
        if process is None:
            return False
        process.signal(sig)
        return True

    def kill(self) -> bool:
        """Forcefully terminate the recorded process.

        Returns:
            True if a process was recorded.
        """
        process = self._process
        if process is None:
            return False
        logger.info("Killing backend", pid=process.pid)
        process.kill()
        return True

    async def wait(self) -> int | None:
        """Wait for the recorded process to exit.

        Only meant for shutdown bookkeeping, never for the request path.

        Returns:
            Exit code, or None when no process is recorded.
        """
        process = self._process
        if process is None:
            return None
        return await process.wait()

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop the backend and refuse further starts.

        Cancels an in-flight start attempt, kills the recorded process and
        waits for it to exit. Failures are logged, never raised.

        Args:
            timeout: Seconds to wait for each step. Defaults to
                backend.stop_timeout_seconds.
        """
        if timeout is None:
            timeout = self._backend.stop_timeout_seconds

        self._state = SupervisorState.STOPPED

        start_task = self._start_task
        if start_task is not None and not start_task.done():
            logger.info("Cancelling in-flight backend start")
            start_task.cancel()
            _, pending = await asyncio.wait({start_task}, timeout=timeout)
            if pending:
                report_shutdown_error(
                    ShutdownError("Backend start did not cancel in time", stage="cancel")
                )

        process = self._process
        if process is not None:
            pid = process.pid
            try:
                self.kill()
                returncode = await asyncio.wait_for(process.wait(), timeout=timeout)
                logger.info("Backend stopped", pid=pid, returncode=returncode)
            except TimeoutError:
                report_shutdown_error(
                    ShutdownError(f"Backend {pid} did not exit after kill", stage="wait")
                )
            except OSError as e:
                report_shutdown_error(
                    ShutdownError(f"Failed to kill backend {pid}", stage="kill", cause=str(e))
                )
            self._process = None

        if self._monitor_task is not None:
            self._monitor_task.cancel()
            self._monitor_task = None

    def clear_marker(self) -> bool:
        """Remove the socket marker after the backend has stopped.

        Returns:
            True if the marker is absent afterwards.
        """
        try:
            remove_socket(self.socket_path)
        except OSError as e:
            report_shutdown_error(
                ShutdownError("Failed to remove socket file", stage="marker", cause=str(e))
            )
            return False
        return True


def _consume_result(task: asyncio.Task) -> None:
    # Marks the exception as retrieved even if every waiter went away.
    if not task.cancelled():
        task.exception()


def report_shutdown_error(error: ShutdownError) -> None:
    """Log a failed shutdown step; shutdown always runs to completion."""
    logger.error("Shutdown step failed", **error.to_dict())
