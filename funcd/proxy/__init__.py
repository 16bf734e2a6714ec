"""
funcd proxy gateway.

Exposes the Unix-socket backend over a regular TCP port. Requests lazily start
the backend through ProcessSupervisor and are forwarded unchanged.
"""

from funcd.proxy.runner import GatewayPhase, GatewayServer, run_gateway
from funcd.proxy.server import ProxyGateway, RequestContext, create_app, create_upstream_client

__all__ = [
    "GatewayPhase",
    "GatewayServer",
    "ProxyGateway",
    "RequestContext",
    "create_app",
    "create_upstream_client",
    "run_gateway",
]
