"""
Main entry point for funcd.
"""

import argparse
import asyncio
import json
import sys

from funcd.proxy.runner import run_gateway
from funcd.utils.config import Settings, get_settings
from funcd.utils.logging import configure_logging, get_logger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="funcd",
        description="funcd - HTTP gateway for a lazily started Unix-socket backend",
    )
    parser.add_argument(
        "command",
        choices=["serve", "config"],
        help="Command to run",
    )
    parser.add_argument("--host", type=str, help="Listen address")
    parser.add_argument("--port", "-p", type=int, help="Listen port")
    parser.add_argument("--socket-path", type=str, help="Unix socket the backend binds")
    parser.add_argument(
        "--ready-timeout",
        type=float,
        help="Seconds to wait for the backend socket to appear",
    )
    parser.add_argument("--log-level", type=str, help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument(
        "--console-logs",
        action="store_true",
        help="Human-readable logs instead of JSON",
    )
    return parser


def apply_cli_overrides(
    settings: Settings,
    args: argparse.Namespace,
    backend: list[str] | None = None,
) -> Settings:
    """Return a copy of settings with command-line values applied.

    Args:
        settings: Settings loaded from YAML and environment.
        args: Parsed command-line arguments.
        backend: Backend command line given after "--", if any.

    Returns:
        Updated settings (validated).
    """
    data = settings.model_dump()

    if args.host is not None:
        data["gateway"]["host"] = args.host
    if args.port is not None:
        data["gateway"]["port"] = args.port
    if args.socket_path is not None:
        data["backend"]["socket_path"] = args.socket_path
    if args.ready_timeout is not None:
        data["readiness"]["timeout_seconds"] = args.ready_timeout
    if args.log_level is not None:
        data["general"]["log_level"] = args.log_level
    if args.console_logs:
        data["general"]["log_json"] = False

    if backend:
        data["backend"]["command"] = backend[0]
        data["backend"]["args"] = backend[1:]

    return Settings.model_validate(data)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    if argv is None:
        argv = sys.argv[1:]

    # Everything after "--" is the backend command line
    backend: list[str] = []
    if "--" in argv:
        split = argv.index("--")
        argv, backend = argv[:split], argv[split + 1 :]

    args = build_parser().parse_args(argv)
    settings = apply_cli_overrides(get_settings(), args, backend)

    if args.command == "config":
        print(json.dumps(settings.model_dump(), indent=2))
        return 0

    configure_logging(settings)
    logger = get_logger(__name__)
    logger.info(
        "funcd initializing",
        version=settings.general.version,
        backend_command=settings.backend.command,
        backend_args=settings.backend.args,
    )

    try:
        asyncio.run(run_gateway(settings))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error("Fatal error", error=str(e), exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
