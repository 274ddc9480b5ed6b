"""
structlog configuration.

Console output for operators plus an optional append-only JSONL file that
keeps full detail of every event. With logging disabled, ERROR and above are
still emitted.
"""

import json
import logging
import sys
import threading
from pathlib import Path
from typing import Any

import structlog


class JsonlSink:
    """structlog processor that appends each event as one JSON line."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def __call__(self, logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        line = json.dumps(event_dict, default=str, ensure_ascii=False)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        return event_dict


def configure_logging(
    enabled: bool = True,
    log_file: str | Path | None = None,
    level: int = logging.INFO,
    colors: bool | None = None,
) -> None:
    """Install the structlog pipeline used by the CLI."""
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if log_file:
        processors.append(JsonlSink(log_file))

    processors.append(structlog.dev.ConsoleRenderer(
        colors=sys.stderr.isatty() if colors is None else colors,
    ))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level if enabled else logging.ERROR),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
