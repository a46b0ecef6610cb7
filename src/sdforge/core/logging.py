"""
sdforge structured logging.

structlog renders every event through the standard library's logging
module: the console handler honours the configured level and the daily log
file records everything, so each stage, state change and warning of an
operation leaves a trail.
"""

from __future__ import annotations

import logging
import sys
import time
from datetime import date
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from sdforge.core.config import LoggingConfig


_configured = False


def _build_handlers(config: LoggingConfig) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []

    if config.console_enabled:
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(config.level)
        handlers.append(console)

    if config.file_enabled:
        config.log_directory.mkdir(parents=True, exist_ok=True)
        path = config.log_directory / f"sdforge_{date.today():%Y%m%d}.log"
        log_file = logging.FileHandler(path, encoding="utf-8")
        log_file.setLevel(logging.DEBUG)
        handlers.append(log_file)

    return handlers


def setup_logging(config: LoggingConfig) -> None:
    """Configure structured logging for sdforge. Later calls are no-ops."""
    global _configured

    if _configured:
        return

    logging.basicConfig(level=logging.DEBUG, handlers=_build_handlers(config), format="%(message)s")

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if config.json_format:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name or "sdforge")


class OperationLogger:
    """Logs the start and the outcome of one pipeline stage, with its duration."""

    def __init__(
        self,
        operation: str,
        logger: structlog.stdlib.BoundLogger | None = None,
        **context: Any,
    ):
        self.operation = operation
        self.logger = (logger or get_logger()).bind(operation=operation, **context)
        self._started = 0.0

    def __enter__(self) -> OperationLogger:
        self._started = time.monotonic()
        self.logger.info(f"Starting {self.operation}")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        elapsed = round(time.monotonic() - self._started, 3)
        if exc_type is None:
            self.logger.info(f"Completed {self.operation}", duration_seconds=elapsed)
        else:
            self.logger.error(
                f"Failed {self.operation}",
                duration_seconds=elapsed,
                error_type=exc_type.__name__,
                error=str(exc_val),
            )
