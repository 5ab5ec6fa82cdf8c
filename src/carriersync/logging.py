"""Structured logging configuration for the carriersync worker.

Events go through structlog into stdlib logging and fan out to two files
under the log directory, each rotating at 10 MB with 5 backups:

``worker.log``
    The operator's view.  Every event of every logger (worker loop, CLI,
    sync phases, warnings from httpx and aiosqlite), rendered as readable
    ``key=value`` lines.

``sync.log``
    The checkpoint trail.  One JSON object per line, restricted to the
    loggers that describe what a cycle did: the sync phases
    (``carriersync.sync.*``) and the continuation queue
    (``carriersync.storage.queue``).  Every hop logs ``invocation_start`` /
    ``invocation_completed`` with ``provider_id``, ``page``,
    ``group_number`` and ``retry_number``, so a cycle can be replayed from
    this file alone by filtering on ``provider_id``.

The foreground CLI commands can additionally echo events to stderr.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
_BACKUP_COUNT = 5

WORKER_LOG = "worker.log"
SYNC_LOG = "sync.log"

# Logger prefixes whose events belong in the checkpoint trail.
SYNC_LOGGERS = ("carriersync.sync", "carriersync.storage.queue")

_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite")

_shared_processors: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.ExtraAdder(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]


class _PrefixFilter(logging.Filter):
    """Pass records whose logger is one of *prefixes* or a child of one."""

    def __init__(self, prefixes: tuple[str, ...]) -> None:
        super().__init__()
        self._prefixes = prefixes

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        return any(name == p or name.startswith(p + ".") for p in self._prefixes)


def _file_handler(path: Path, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8")
    handler.setFormatter(formatter)
    return handler


def _formatter(renderer: structlog.types.Processor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=_shared_processors)


def setup_logging(log_level: str = "info", log_dir: Path | None = None, *, console: bool = False) -> None:
    """Configure structlog and stdlib logging for the worker.

    Parameters
    ----------
    log_level:
        Python log-level name (``debug``, ``info``, ``warning``, etc.).
        Applies to both files; third-party loggers never go below WARNING.
    log_dir:
        Directory for ``worker.log`` and ``sync.log``.  When *None* no file
        handlers are created (useful for testing).
    console:
        Also render events to stderr (used by the foreground CLI commands).
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            *_shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    readable = _formatter(structlog.dev.ConsoleRenderer(colors=False))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        root.addHandler(_file_handler(log_dir / WORKER_LOG, readable))

        trail = _file_handler(log_dir / SYNC_LOG, _formatter(structlog.processors.JSONRenderer()))
        trail.addFilter(_PrefixFilter(SYNC_LOGGERS))
        root.addHandler(trail)

    if console:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(readable)
        root.addHandler(stream_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    def _excepthook(
        exc_type: type[BaseException],
        exc_value: BaseException,
        exc_tb: object,
    ) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
            return
        logging.getLogger("carriersync").critical(
            "Unhandled exception",
            exc_info=(exc_type, exc_value, exc_tb),
        )

    sys.excepthook = _excepthook  # type: ignore[assignment]
