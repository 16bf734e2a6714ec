"""
Backend process handle.

Wraps a single asyncio subprocess: its command line, environment overlay and
the Unix socket path it is told to bind. Only ProcessSupervisor creates and
drives these objects.
"""

import asyncio
import os
import signal as signal_module
from enum import Enum

from funcd.backend.errors import StartupError
from funcd.utils.config import BackendConfig
from funcd.utils.logging import get_logger

logger = get_logger(__name__)


class ProcessState(Enum):
    """Lifecycle state of a backend process."""

    CREATED = "created"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    EXITED = "exited"


class BackendProcess:
    """A backend child process bound to a fixed socket path."""

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        *,
        socket_path: str,
        socket_env_var: str = "FUNCD_SOCKET_PATH",
        env: dict[str, str] | None = None,
        inherit_env: bool = True,
    ):
        self.command = command
        self.args = list(args or [])
        self.socket_path = socket_path
        self.socket_env_var = socket_env_var
        self.env_overlay = dict(env or {})
        self.inherit_env = inherit_env
        self.state = ProcessState.CREATED
        self._proc: asyncio.subprocess.Process | None = None

    @classmethod
    def from_config(cls, config: BackendConfig) -> "BackendProcess":
        return cls(
            config.command,
            config.args,
            socket_path=config.socket_path,
            socket_env_var=config.socket_env_var,
            env=config.env,
            inherit_env=config.inherit_env,
        )

    def __repr__(self) -> str:
        return (
            f"BackendProcess(command={self.command!r}, pid={self.pid}, "
            f"state={self.state.value})"
        )

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    def build_env(self) -> dict[str, str]:
        """Build the child environment.

        The socket path always wins over inherited or configured values.
        """
        env = dict(os.environ) if self.inherit_env else {}
        env.update(self.env_overlay)
        env[self.socket_env_var] = self.socket_path
        return env

    async def start(self) -> None:
        """Spawn the process.

        stdout/stderr are inherited from the gateway; stdin is not wired.

        Raises:
            StartupError: If the binary is missing, not executable, or the
                fork itself fails.
        """
        if self._proc is not None:
            raise RuntimeError(f"{self!r} already started")

        self.state = ProcessState.STARTING
        try:
            self._proc = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                env=self.build_env(),
                stdin=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            self.state = ProcessState.FAILED
            raise StartupError(
                f"Failed to spawn backend: {e.strerror or e}",
                command=self.command,
                cause=type(e).__name__,
            ) from e

        logger.info(
            "Backend process spawned",
            pid=self._proc.pid,
            command=self.command,
            args=self.args,
            socket_path=self.socket_path,
        )

    def mark_ready(self) -> None:
        self.state = ProcessState.READY

    def mark_failed(self) -> None:
        self.state = ProcessState.FAILED

    async def wait(self) -> int | None:
        """Wait for the process to exit and return its exit code."""
        if self._proc is None:
            return None
        returncode = await self._proc.wait()
        self.state = ProcessState.EXITED
        return returncode

    def signal(self, sig: int) -> None:
        """Send a signal to the process. No-op if it is not running."""
        if not self.is_running:
            return
        try:
            self._proc.send_signal(sig)
        except ProcessLookupError:
            # Exited between the check and the send; wait() will reap it.
            return
        logger.debug("Signal sent to backend", pid=self.pid, signal=sig)

    def kill(self) -> None:
        """Forcefully terminate the process (SIGKILL)."""
        self.signal(signal_module.SIGKILL)
