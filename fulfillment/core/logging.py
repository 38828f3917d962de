import logging
import sys
from collections import deque
from datetime import datetime
from typing import Any

import structlog


class LogBuffer:
    """Bounded ring buffer of recent log events for the dashboard."""

    def __init__(self, maxlen: int = 100) -> None:
        self._entries: deque[dict[str, Any]] = deque(maxlen=maxlen)

    def __call__(self, logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        extra = {k: v for k, v in event_dict.items() if k not in ("event", "level", "timestamp")}
        self._entries.append(
            {
                "timestamp": datetime.utcnow().isoformat(),
                "level": method_name,
                "message": str(event_dict.get("event", "")),
                "context": {k: str(v) for k, v in extra.items()},
            }
        )
        return event_dict

    def entries(self) -> list[dict[str, Any]]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


def configure_logging(debug: bool = False, log_buffer: LogBuffer | None = None) -> None:
    log_level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
    ]
    if log_buffer is not None:
        processors.append(log_buffer)
    processors.append(structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def bind_request_id(request_id: str) -> None:
    structlog.contextvars.bind_contextvars(request_id=request_id)
