from __future__ import annotations

import atexit
import logging
import logging.handlers
import queue
import sys
from copy import copy
from typing import Any

import structlog

_listener: logging.handlers.QueueListener | None = None
_configured = False

_SHARED_PROCESSORS: list[Any] = [
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
]


class PreservingQueueHandler(logging.handlers.QueueHandler):
    """Keep structured log records intact for ProcessorFormatter in listener thread."""

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        return copy(record)


def _service_stamper(service: str) -> Any:
    # Contextvars do not follow work onto pool and scheduler threads.
    def stamp(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("service", service)
        return event_dict

    return stamp


def _renderer(fmt: str) -> Any:
    if fmt == "console":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def configure_logging(service: str, level: str = "INFO", fmt: str = "json") -> None:
    global _configured, _listener
    if _configured:
        return

    # Worker, dispatcher and scheduler threads all log; one listener thread owns stdout.
    shared = [*_SHARED_PROCESSORS, _service_stamper(service)]
    log_queue: queue.SimpleQueue[Any] = queue.SimpleQueue()

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level.upper())
    root_logger.addHandler(PreservingQueueHandler(log_queue))

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=_renderer(fmt),
        foreign_pre_chain=shared,
    )

    sink = logging.StreamHandler(sys.stdout)
    sink.setFormatter(formatter)

    _listener = logging.handlers.QueueListener(log_queue, sink, respect_handler_level=True)
    _listener.start()
    atexit.register(_listener.stop)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            *shared,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.CallsiteParameterAdder(
                parameters=[
                    structlog.processors.CallsiteParameter.FILENAME,
                    structlog.processors.CallsiteParameter.LINENO,
                    structlog.processors.CallsiteParameter.THREAD_NAME,
                ]
            ),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # APScheduler logs every job run at INFO; the sweeps fire often.
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    _configured = True
