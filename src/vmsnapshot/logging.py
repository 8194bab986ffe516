"""
structlog setup for the controller process.

Everything goes through the standard ``logging`` module so that records
from the kubernetes client and from structlog share handlers: a console
handler (human or JSON) and an optional JSON file handler.
"""

import logging
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type

import structlog

COMPONENT = "vmsnapshot-controller"

LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def add_component(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("component", COMPONENT)
    return event_dict


def _pre_chain() -> List[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        add_component,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _formatter(renderer: Any) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=_pre_chain())


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[Path] = None,
    console_output: bool = True,
) -> None:
    """
    Route structlog and stdlib logging through shared handlers.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_output: Render the console stream as JSON lines
        log_file: Also append JSON lines to this file
        console_output: Write to stderr
    """
    numeric_level = LEVELS[level.upper()]

    structlog.configure(
        processors=_pre_chain() + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers: List[logging.Handler] = []
    if console_output:
        if json_output:
            console_renderer = structlog.processors.JSONRenderer()
        else:
            console_renderer = structlog.dev.ConsoleRenderer(
                colors=sys.stderr.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(_formatter(console_renderer))
        handlers.append(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
        handlers.append(file_handler)

    logging.basicConfig(format="%(message)s", level=numeric_level, handlers=handlers, force=True)
    # the kubernetes client logs every request at DEBUG
    logging.getLogger("kubernetes").setLevel(max(logging.INFO, numeric_level))


def get_logger(name: str = "vmsnapshot") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def log_operation(
    logger: structlog.stdlib.BoundLogger,
    operation: str,
    expected: Tuple[Type[BaseException], ...] = (),
    **context,
):
    """
    Bind ``operation`` and ``context`` for the duration of one reconcile pass.

    Passes are frequent, so start and completion are DEBUG. A failure is
    logged once with its duration and re-raised; failures of an ``expected``
    type (stale-write conflicts) stay at DEBUG.

    Usage:
        with log_operation(log, "reconcile_snapshot", key="default/snap1") as oplog:
            oplog.info("snapshot.locked")
    """
    oplog = logger.bind(operation=operation, **context)
    started = time.monotonic()
    oplog.debug(f"{operation}.started")

    def elapsed_ms() -> float:
        return round((time.monotonic() - started) * 1000, 2)

    try:
        yield oplog
    except Exception as e:
        emit = oplog.debug if isinstance(e, expected) else oplog.error
        emit(f"{operation}.failed", error=str(e), error_type=type(e).__name__, duration_ms=elapsed_ms())
        raise
    oplog.debug(f"{operation}.completed", duration_ms=elapsed_ms())
