"""
Pytest fixtures and configuration for funcd tests.

=============================================================================
Test Classification
=============================================================================

- @pytest.mark.unit: Single class/function, no child processes
  - DEFAULT: Tests without marker are auto-classified as unit

- @pytest.mark.integration: Real backend child processes on a Unix socket
  - Uses tests/fixtures/unix_backend.py run by the current interpreter
  - Run only these with: pytest -m integration

=============================================================================
Mock Strategy
=============================================================================

- Backend processes: FakeBackendProcess in unit tests, real subprocess in
  integration tests
- File I/O: short temp directories under /tmp (Unix socket paths are limited
  to ~100 bytes, which pytest's tmp_path can exceed)
"""

import asyncio
import os
import signal
import socket
import sys
import tempfile
from collections.abc import Generator
from pathlib import Path

import aiohttp
import pytest
import pytest_asyncio

# Set test environment before importing anything else
os.environ["FUNCD_CONFIG_DIR"] = str(Path(__file__).parent.parent / "config")
os.environ["FUNCD_GENERAL__LOG_LEVEL"] = "DEBUG"

from funcd.backend.process import BackendProcess
from funcd.backend.supervisor import ProcessSupervisor
from funcd.proxy.runner import GatewayServer
from funcd.utils.config import BackendConfig, GatewayConfig, ReadinessConfig, Settings

BACKEND_SCRIPT = Path(__file__).parent / "fixtures" / "unix_backend.py"


# =============================================================================
# Pytest Hooks for Test Classification
# =============================================================================


def pytest_configure(config):
    """Register custom markers for test classification."""
    config.addinivalue_line(
        "markers", "unit: Unit tests with no child processes (fast, <1s/test)"
    )
    config.addinivalue_line(
        "markers", "integration: Tests driving real backend processes (<5s/test)"
    )


def pytest_collection_modifyitems(config, items):
    """Tests without explicit markers are assumed to be unit tests."""
    for item in items:
        has_classification = any(
            marker.name in ("unit", "integration") for marker in item.iter_markers()
        )
        if not has_classification:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Fake backend
# =============================================================================


class FakeBackendProcess(BackendProcess):
    """BackendProcess that never forks.

    start() binds a real Unix socket after bind_delay seconds and calls
    listen() listen_delay seconds later, simulating a backend that creates
    its socket file before it accepts connections. Connections are queued
    in the backlog and never served.
    """

    def __init__(
        self,
        socket_path: str,
        *,
        bind_delay: float | None = 0.0,
        listen_delay: float | None = 0.0,
        start_error: Exception | None = None,
        ignore_signals: bool = False,
    ):
        super().__init__("fake-backend", [], socket_path=socket_path)
        self.bind_delay = bind_delay
        self.listen_delay = listen_delay
        self.start_error = start_error
        self.ignore_signals = ignore_signals
        self.signals: list[int] = []
        self.started = False
        self.listening = False
        self._exit = asyncio.Event()
        self._returncode: int | None = None
        self._bind_task: asyncio.Task | None = None
        self._sock: socket.socket | None = None

    @property
    def pid(self) -> int | None:
        return 4242 if self.started else None

    @property
    def returncode(self) -> int | None:
        return self._returncode

    @property
    def is_running(self) -> bool:
        return self.started and self._returncode is None

    async def start(self) -> None:
        if self.start_error is not None:
            self.mark_failed()
            raise self.start_error
        self.started = True
        if self.bind_delay is not None:
            self._bind_task = asyncio.create_task(self._bind())

    async def _bind(self) -> None:
        await asyncio.sleep(self.bind_delay)
        if not self.is_running:
            return
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.bind(self.socket_path)
        self._sock = sock

        if self.listen_delay is None:
            return
        await asyncio.sleep(self.listen_delay)
        if self._sock is sock:
            sock.listen(128)
            self.listening = True

    def stop_listening(self) -> None:
        """Close the socket but leave its file behind."""
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        self.listening = False

    def exit(self, returncode: int = 0) -> None:
        """Simulate the process exiting on its own."""
        if self._returncode is None:
            self._returncode = returncode
            self.stop_listening()
            self._exit.set()

    async def wait(self) -> int | None:
        if not self.started:
            return None
        await self._exit.wait()
        return self._returncode

    def signal(self, sig: int) -> None:
        if not self.is_running:
            return
        self.signals.append(sig)
        if sig in (signal.SIGKILL, signal.SIGTERM) and not self.ignore_signals:
            self.exit(-sig)


class FakeProcessFactory:
    """Process factory recording every FakeBackendProcess it builds.

    Change the attributes between calls to script each attempt.
    """

    def __init__(self, socket_path: str):
        self.socket_path = socket_path
        self.bind_delay: float | None = 0.0
        self.listen_delay: float | None = 0.0
        self.start_error: Exception | None = None
        self.ignore_signals = False
        self.created: list[FakeBackendProcess] = []

    def __call__(self) -> FakeBackendProcess:
        process = FakeBackendProcess(
            self.socket_path,
            bind_delay=self.bind_delay,
            listen_delay=self.listen_delay,
            start_error=self.start_error,
            ignore_signals=self.ignore_signals,
        )
        self.created.append(process)
        return process

    def live(self) -> list[FakeBackendProcess]:
        return [p for p in self.created if p.is_running]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a short temporary directory (safe for Unix socket paths)."""
    with tempfile.TemporaryDirectory(prefix="funcd-", dir="/tmp") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def socket_path(temp_dir: Path) -> str:
    return str(temp_dir / "funcd.sock")


@pytest.fixture
def spawn_log(temp_dir: Path) -> Path:
    return temp_dir / "spawns.log"


@pytest.fixture
def readiness_config() -> ReadinessConfig:
    return ReadinessConfig(timeout_seconds=0.5, poll_interval_seconds=0.002)


@pytest.fixture
def fake_backend_config(socket_path: str) -> BackendConfig:
    return BackendConfig(command="fake-backend", args=[], socket_path=socket_path)


@pytest.fixture
def real_backend_config(socket_path: str, spawn_log: Path) -> BackendConfig:
    """Launch tests/fixtures/unix_backend.py with the current interpreter."""
    return BackendConfig(
        command=sys.executable,
        args=[str(BACKEND_SCRIPT)],
        env={"FUNCD_TEST_SPAWN_LOG": str(spawn_log)},
        socket_path=socket_path,
        stop_timeout_seconds=5.0,
    )


@pytest.fixture
def real_readiness_config() -> ReadinessConfig:
    # Interpreter + aiohttp import takes a while on loaded CI hosts
    return ReadinessConfig(timeout_seconds=15.0, poll_interval_seconds=0.005)


@pytest.fixture
def gateway_settings(real_backend_config: BackendConfig, real_readiness_config) -> Settings:
    return Settings(
        gateway=GatewayConfig(host="127.0.0.1", port=0, shutdown_timeout_seconds=5.0),
        backend=real_backend_config,
        readiness=real_readiness_config,
    )


@pytest_asyncio.fixture
async def real_supervisor(real_backend_config, real_readiness_config):
    """Supervisor driving the real fixture backend; always shut down."""
    supervisor = ProcessSupervisor(real_backend_config, real_readiness_config)
    yield supervisor
    await supervisor.shutdown()
    supervisor.clear_marker()


def read_spawns(spawn_log: Path) -> list[int]:
    """Pids written by every fixture backend started so far."""
    if not spawn_log.exists():
        return []
    return [int(line) for line in spawn_log.read_text().split()]


@pytest.fixture
def fake_factory(socket_path: str) -> FakeProcessFactory:
    return FakeProcessFactory(socket_path)


@pytest_asyncio.fixture
async def fake_supervisor(fake_backend_config, readiness_config, fake_factory):
    """Supervisor whose processes never fork."""
    supervisor = ProcessSupervisor(
        fake_backend_config,
        readiness_config,
        process_factory=fake_factory,
    )
    yield supervisor
    await supervisor.shutdown()
    for process in fake_factory.created:
        process.stop_listening()


@pytest.fixture
def spawned_pids(spawn_log: Path):
    """Callable returning the pids of fixture backends started so far."""
    return lambda: read_spawns(spawn_log)


@pytest_asyncio.fixture
async def gateway_server(gateway_settings: Settings):
    """GatewayServer on an ephemeral port fronting the real fixture backend."""
    server = GatewayServer(gateway_settings)
    await server.start()
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def http_session():
    async with aiohttp.ClientSession() as session:
        yield session


@pytest.fixture
def gateway_url(gateway_server: GatewayServer):
    """Callable building a URL on the running gateway."""
    return lambda path="/": f"http://127.0.0.1:{gateway_server.port}{path}"
