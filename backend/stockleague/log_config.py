"""
Logging for the scoring engine, the background loop and the API.

Plain service logs go through loguru. Per-cycle events (``scoring_cycle_complete``
and friends) go through structlog so their counters stay machine readable.
Standard-library loggers (uvicorn, apscheduler, sqlalchemy) are routed into
loguru so everything lands in the same sinks.
"""

import sys
import logging
from typing import Any, List
from pathlib import Path

from loguru import logger
import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

from stockleague.config import settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

# Third-party loggers that are chatty at INFO during every cycle
QUIET_LOGGERS = {
    "apscheduler.executors.default": logging.WARNING,
    "apscheduler.scheduler": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


class UserIdFilter:
    """Mask user identifiers in structured events outside development."""

    SENSITIVE_FIELDS = {"user_id", "email", "phone", "token"}

    def __call__(self, logger: WrappedLogger, name: str, event_dict: EventDict) -> EventDict:
        if settings.is_development:
            return event_dict
        for key in list(event_dict.keys()):
            if key.lower() in self.SENSITIVE_FIELDS:
                event_dict[key] = "[REDACTED]"
        return event_dict


class InterceptHandler(logging.Handler):
    """Route standard-library log records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _add_sinks(json_output: bool) -> None:
    logger.remove()
    sink_format = "{message}" if json_output else CONSOLE_FORMAT

    logger.add(
        sys.stderr,
        format=sink_format,
        level=settings.log_level,
        serialize=json_output,
        backtrace=True,
        diagnose=settings.is_development,
    )

    if settings.log_file:
        Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            settings.log_file,
            format=sink_format,
            level=settings.log_level,
            serialize=json_output,
            rotation="100 MB",
            retention="10 days",
            compression="zip",
            diagnose=False,
        )


def _event_processors(json_output: bool) -> List[Processor]:
    processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        UserIdFilter(),
        structlog.processors.format_exc_info,
    ]
    processors.append(structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer())
    return processors


def configure_logging() -> None:
    """Set up loguru sinks, structlog events and the stdlib intercept."""
    json_output = settings.log_format == "json"
    _add_sinks(json_output)

    structlog.configure(
        processors=_event_processors(json_output),
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    logger.debug(f"Logging configured: level={settings.log_level} format={settings.log_format}")


def get_logger(name: str) -> Any:
    """Structured event logger for ``name``."""
    return structlog.get_logger(name)


configure_logging()
