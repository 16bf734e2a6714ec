"""
funcd proxy server.

Single catch-all route: every request first makes sure the backend process is
running, then is forwarded unchanged over the backend's Unix socket.

    client ──HTTP──▶ ProxyGateway.handle ──ensure_running──▶ ProcessSupervisor
                          │
                          └──httpx (uds transport)──▶ /tmp/funcd.sock

The upstream URL host is cosmetic; the transport always dials the socket and
the client's own Host header is passed through.
"""

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field

import httpx
from aiohttp import web

from funcd.backend.errors import GatewayError, ProxyDialError
from funcd.backend.supervisor import ProcessSupervisor
from funcd.utils.config import GatewayConfig
from funcd.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

UPSTREAM_BASE_URL = "http://funcd"

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)


@dataclass(frozen=True)
class RequestContext:
    """Per-request observability data. Carries no lifecycle authority."""

    method: str
    path: str
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @classmethod
    def from_request(cls, request: web.Request) -> "RequestContext":
        return cls(method=request.method, path=request.path)

    def log_context(self) -> LogContext:
        return LogContext(request_id=self.request_id, method=self.method, path=self.path)


def create_upstream_client(socket_path: str, config: GatewayConfig) -> httpx.AsyncClient:
    """Create the HTTP client that always dials the backend socket.

    Args:
        socket_path: Unix socket the backend binds.
        config: Gateway configuration (connection reuse and timeouts).

    Returns:
        AsyncClient bound to a Unix-socket transport.
    """
    transport = httpx.AsyncHTTPTransport(
        uds=socket_path,
        retries=0,
        limits=httpx.Limits(
            max_connections=None,
            max_keepalive_connections=config.max_idle_connections,
            keepalive_expiry=config.idle_timeout_seconds,
        ),
    )
    # No read/write deadline: backends may stream indefinitely.
    return httpx.AsyncClient(
        transport=transport,
        base_url=UPSTREAM_BASE_URL,
        timeout=httpx.Timeout(None, connect=config.connect_timeout_seconds),
        follow_redirects=False,
    )


def _forward_headers(headers: Mapping[str, str]) -> list[tuple[str, str]]:
    """Drop hop-by-hop headers and Content-Length (recomputed from the body)."""
    return [
        (key, value)
        for key, value in headers.items()
        if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() != "content-length"
    ]


class ProxyGateway:
    """Request handler bound to one supervisor and one upstream client."""

    def __init__(self, supervisor: ProcessSupervisor, client: httpx.AsyncClient):
        self._supervisor = supervisor
        self._client = client

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    async def handle(self, request: web.Request) -> web.StreamResponse:
        """Ensure the backend is running, then forward the request."""
        ctx = RequestContext.from_request(request)
        with ctx.log_context():
            try:
                await self._supervisor.ensure_running()
            except GatewayError as e:
                logger.error(
                    "Failed to start backend",
                    error_code=e.code.value,
                    error=e.message,
                    details=e.details,
                )
                return web.json_response(e.to_dict(), status=e.http_status)

            return await self.forward(request)

    async def forward(self, request: web.Request) -> web.StreamResponse:
        """Forward a request to the backend and stream the response back.

        Args:
            request: Incoming aiohttp request.

        Returns:
            The streamed upstream response, or a 502 JSON error when the
            backend cannot be reached.

        Raises:
            ProxyDialError: The upstream body broke after the response
                started; aiohttp drops the client connection.
        """
        body = await request.read()

        # Built directly (not via client.build_request) so the client's
        # default headers are not merged into the forwarded request.
        upstream_request = httpx.Request(
            request.method,
            f"{UPSTREAM_BASE_URL}{request.raw_path}",
            headers=_forward_headers(request.headers),
            content=body if body else None,
        )

        logger.info("Proxying")

        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.TransportError as e:
            error = ProxyDialError(
                "Backend connection failed",
                socket_path=self._supervisor.socket_path,
                cause=str(e) or type(e).__name__,
            )
            logger.error("Proxy failed", error_code=error.code.value, details=error.details)
            return web.json_response(error.to_dict(), status=error.http_status)

        try:
            response = web.StreamResponse(
                status=upstream.status_code,
                reason=upstream.reason_phrase or None,
            )
            for key, value in upstream.headers.multi_items():
                if key.lower() not in HOP_BY_HOP_HEADERS:
                    response.headers.add(key, value)

            await response.prepare(request)
            async for chunk in upstream.aiter_raw():
                await response.write(chunk)
            await response.write_eof()
        except httpx.TransportError as e:
            logger.error("Proxy stream interrupted", error=str(e) or type(e).__name__)
            raise ProxyDialError(
                "Backend stream interrupted",
                socket_path=self._supervisor.socket_path,
                cause=str(e) or type(e).__name__,
            ) from e
        finally:
            await upstream.aclose()

        logger.debug("Proxied", status=upstream.status_code)
        return response


def create_app(gateway: ProxyGateway, client_max_size: int = 1024**2) -> web.Application:
    """Create aiohttp application with a single catch-all route.

    Args:
        gateway: Request handler.
        client_max_size: Largest request body accepted, in bytes.

    Returns:
        Configured application.
    """
    app = web.Application(client_max_size=client_max_size)
    app.router.add_route("*", "/{path:.*}", gateway.handle)
    return app
