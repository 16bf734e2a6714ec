"""
Gateway process runner and shutdown sequencing.

    RUNNING ──SIGINT/SIGTERM──▶ DRAINING ──▶ BACKEND_STOPPED ──▶ MARKER_CLEARED ──▶ TERMINATED

New connections are refused and in-flight requests drained before the backend
is killed, and the backend is gone before its socket file is removed, so a
stale marker can never make a later cold start skip the readiness wait.
"""

import asyncio
import functools
import signal
from enum import Enum

from aiohttp import web

from funcd.backend.errors import ShutdownError
from funcd.backend.supervisor import ProcessSupervisor, report_shutdown_error
from funcd.proxy.server import ProxyGateway, create_app, create_upstream_client
from funcd.utils.config import Settings
from funcd.utils.logging import get_logger

logger = get_logger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class GatewayPhase(Enum):
    """Lifecycle phase of the gateway process."""

    CREATED = "created"
    RUNNING = "running"
    DRAINING = "draining"
    BACKEND_STOPPED = "backend_stopped"
    MARKER_CLEARED = "marker_cleared"
    TERMINATED = "terminated"


class GatewayServer:
    """HTTP listener plus the backend it fronts."""

    def __init__(self, settings: Settings, supervisor: ProcessSupervisor | None = None):
        """Initialize gateway server.

        Args:
            settings: Application settings.
            supervisor: Backend supervisor. Built from settings if None.
        """
        self.settings = settings
        self.supervisor = supervisor or ProcessSupervisor(settings.backend, settings.readiness)
        self._client = create_upstream_client(settings.backend.socket_path, settings.gateway)
        self.gateway = ProxyGateway(self.supervisor, self._client)
        self._runner: web.AppRunner | None = None
        self._stop_event = asyncio.Event()
        self._phase = GatewayPhase.CREATED

    @property
    def phase(self) -> GatewayPhase:
        return self._phase

    @property
    def port(self) -> int | None:
        """Bound TCP port (useful when configured with port 0)."""
        if self._runner is None or not self._runner.addresses:
            return None
        return self._runner.addresses[0][1]

    def _set_phase(self, phase: GatewayPhase) -> None:
        logger.info("Gateway phase", phase=phase.value, previous=self._phase.value)
        self._phase = phase

    async def start(self) -> None:
        """Clear any stale marker and start listening."""
        if self._phase is not GatewayPhase.CREATED:
            raise RuntimeError(f"Gateway already started (phase={self._phase.value})")

        # Left behind by a previous crash
        self.supervisor.clear_marker()

        gateway_config = self.settings.gateway
        app = create_app(self.gateway, client_max_size=gateway_config.max_body_bytes)
        self._runner = web.AppRunner(
            app,
            access_log=None,
            shutdown_timeout=gateway_config.shutdown_timeout_seconds,
        )
        await self._runner.setup()

        site = web.TCPSite(self._runner, gateway_config.host, gateway_config.port)
        await site.start()

        self._set_phase(GatewayPhase.RUNNING)
        logger.info(
            "Starting reverse proxy",
            host=gateway_config.host,
            port=self.port,
        )
        logger.info(
            "Forwarding requests to Unix socket",
            socket=self.settings.backend.socket_path,
        )

    def request_stop(self) -> None:
        """Ask serve() to begin the shutdown sequence."""
        self._stop_event.set()

    def _handle_signal(self, sig: int) -> None:
        logger.info("Received shutdown signal", signal=signal.Signals(sig).name)
        self.request_stop()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, functools.partial(self._handle_signal, sig))

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)

    async def wait_stopped(self) -> None:
        await self._stop_event.wait()

    async def stop(self) -> None:
        """Run the shutdown sequence. Each step is best-effort."""
        if self._phase in (GatewayPhase.CREATED, GatewayPhase.TERMINATED):
            return

        self._set_phase(GatewayPhase.DRAINING)
        if self._runner is not None:
            try:
                await self._runner.cleanup()
            except Exception as e:
                report_shutdown_error(
                    ShutdownError("Listener shutdown failed", stage="drain", cause=str(e))
                )

        await self.supervisor.shutdown()
        self._set_phase(GatewayPhase.BACKEND_STOPPED)

        self.supervisor.clear_marker()
        self._set_phase(GatewayPhase.MARKER_CLEARED)

        try:
            await self._client.aclose()
        except Exception as e:
            report_shutdown_error(
                ShutdownError("Upstream client close failed", stage="client", cause=str(e))
            )
        self._set_phase(GatewayPhase.TERMINATED)
        logger.info("Gateway shutdown complete")

    async def serve(self) -> None:
        """Start, block until a shutdown signal, then stop."""
        await self.start()
        self.install_signal_handlers()
        try:
            await self.wait_stopped()
        finally:
            self.remove_signal_handlers()
            await self.stop()


async def run_gateway(settings: Settings) -> None:
    """Run the gateway until SIGINT/SIGTERM."""
    server = GatewayServer(settings)
    await server.serve()
