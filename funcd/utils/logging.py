"""
Structured logging for the funcd gateway.

Every proxied request binds request_id, method and path through
structlog contextvars, so supervisor events (spawn, readiness, exit)
logged while serving a request are attributed to it. Output goes to
stderr and optionally to a daily file under ``general.logs_dir``.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog
from structlog.types import Processor

from funcd.utils.config import GeneralConfig, Settings, get_project_root, get_settings


def _add_log_level(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    event_dict["level"] = method_name.upper()
    return event_dict


def _daily_log_file(general: GeneralConfig) -> Path:
    """Return today's gateway log file, creating the logs directory."""
    log_dir = get_project_root() / general.logs_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / f"funcd_{datetime.now().strftime('%Y%m%d')}.log"


def _renderer(json_format: bool) -> list[Processor]:
    if json_format:
        return [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    return [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]


def configure_logging(
    settings: Settings | None = None,
    *,
    log_level: str | None = None,
    log_file: str | Path | None = None,
    json_format: bool | None = None,
) -> None:
    """Configure stdlib logging and structlog for the gateway process.

    Args:
        settings: Effective settings, including CLI overrides. Falls back to
            the cached settings loaded from YAML and environment.
        log_level: Overrides ``general.log_level``.
        log_file: Explicit log file. When None, a daily file is used if
            ``general.log_to_file`` is set.
        json_format: Overrides ``general.log_json``.
    """
    general = (settings or get_settings()).general

    level_name = (log_level or general.log_level).upper()
    if json_format is None:
        json_format = general.log_json
    if log_file is None and general.log_to_file:
        log_file = _daily_log_file(general)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level_name, logging.INFO),
        handlers=handlers,
        force=True,
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=processors + _renderer(json_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Attach keys such as request_id to every log line in this task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Drop all request keys bound in the current context."""
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Bind request keys for the duration of a ``with`` block.

    ProxyGateway.handle wraps each request in one, so a backend spawn
    triggered by a cold request logs with that request's id::

        with LogContext(request_id=ctx.request_id, method="GET", path="/"):
            await supervisor.ensure_running()
    """

    def __init__(self, **kwargs: Any):
        self.context = kwargs

    def __enter__(self) -> "LogContext":
        bind_context(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        unbind_context(*self.context.keys())
