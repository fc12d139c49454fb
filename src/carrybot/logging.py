"""Structured logging for the bot: structlog over stdlib logging.

Every leg step, transaction and settlement logs an event name plus keyword
fields. While a run is being worked on, its run_id (and the deposit batch,
when there is one) is bound through structlog.contextvars so that venue and
chain client logs emitted deep inside a sequence carry it too.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Loggers that flood DEBUG output with per-request noise
_QUIET_LOGGERS = ("ccxt", "aiosqlite", "urllib3", "uvicorn.access")


def _decimals_to_str(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Render Decimal fields as plain strings so JSON output never needs a float."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
    return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "console") -> None:
    """Configure structlog and route stdlib logging through it.

    Args:
        log_level: Root level name, e.g. "DEBUG".
        log_format: "json" for machine-readable lines, anything else for the
            human-readable console renderer.
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _decimals_to_str,
    ]

    if log_format.lower() == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def bound_run(run_id: str, batch: str | None = None) -> Iterator[None]:
    """Bind run_id (and batch, if given) to every log line in the block."""
    fields = {"run_id": run_id}
    if batch is not None:
        fields["batch"] = batch
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a bound structlog logger with the given name."""
    return structlog.get_logger(name)
