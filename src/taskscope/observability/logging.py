"""
taskscope: structured logging setup.

File: src/taskscope/observability/logging.py
Last updated: 2026-10-19

Purpose
- Route ``structlog`` events from the library through stdlib ``logging`` with a
  queue-backed handler, rendering JSON lines (or console text) to stderr and an
  optional file.

Functional requirements
- Library modules log via ``get_logger(__name__)`` and never configure logging
  themselves; applications (and the CLI) call ``configure_logging``.
- ``correlation_scope`` binds context fields that appear on every event logged
  inside the block, including events from child tasks spawned inside it.

Non-functional requirements
- Logging never blocks the event loop: records are queued and written by a
  listener thread; a full queue drops records and counts them.
"""

from __future__ import annotations

import atexit
import logging
import logging.handlers
import queue
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Literal

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator

LogFormat = Literal["json", "console"]

DEFAULT_LOGGER_NAME: Final[str] = "taskscope"
_DEFAULT_QUEUE_SIZE: Final[int] = 4096
_LEVEL_NAMES: Final[frozenset[str]] = frozenset(
    {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
)

_ACTIVE_HANDLE_LOCK = threading.Lock()
_ACTIVE_HANDLE: LoggingHandle | None = None
_ATEXIT_REGISTERED = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Configuration for queue-backed structured logging."""

    level: int | str = "INFO"
    log_format: LogFormat = "json"
    log_file: Path | str | None = None
    log_to_stderr: bool = True
    logger_name: str = DEFAULT_LOGGER_NAME
    queue_size: int = _DEFAULT_QUEUE_SIZE

    @classmethod
    def from_mapping(cls, observability: dict[str, Any]) -> LoggingConfig:
        """Build from the ``[observability]`` table of the effective config."""

        log_file = observability.get("log_file") or None
        return cls(
            level=observability.get("log_level", "INFO"),
            log_format=observability.get("log_format", "json"),
            log_file=log_file,
        )


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Queue handler that drops records instead of blocking when the queue is full."""

    def __init__(self, log_queue: queue.Queue[Any]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class LoggingHandle:
    """Runtime handle for an active logging setup."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        log_queue: queue.Queue[Any],
        queue_handler: _DroppingQueueHandler,
        sinks: tuple[logging.Handler, ...],
        listener: logging.handlers.QueueListener,
        log_path: Path | None,
    ) -> None:
        self.logger = logger
        self.log_path = log_path
        self._queue = log_queue
        self._queue_handler = queue_handler
        self._sinks = sinks
        self._listener = listener
        self._lock = threading.Lock()
        self._is_shutdown = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks > 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._is_shutdown:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.flush()
                sink.close()
            self._is_shutdown = True


def configure_logging(config: LoggingConfig | None = None) -> LoggingHandle:
    """Configure structlog + stdlib logging and return the active handle."""

    cfg = config or LoggingConfig()
    _shutdown_active_handle()

    level = parse_log_level(cfg.level)
    if cfg.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    if not cfg.logger_name.strip():
        raise ValueError("logger_name must not be empty")

    renderer: Any
    if cfg.log_format == "json":
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
        final_processors = [structlog.processors.format_exc_info, renderer]
    elif cfg.log_format == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=False)
        final_processors = [renderer]
    else:
        raise ValueError(f"unsupported log format {cfg.log_format!r}")

    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        timestamper,
    ]
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    # Rendering happens on the producer side so the listener only writes text.
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *final_processors,
        ],
        foreign_pre_chain=shared,
    )

    sinks: list[logging.Handler] = []
    log_path: Path | None = None
    if cfg.log_file:
        log_path = Path(cfg.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        sinks.append(logging.FileHandler(log_path, encoding="utf-8"))
    if cfg.log_to_stderr:
        sinks.append(logging.StreamHandler(sys.stderr))
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(logging.Formatter("%(message)s"))

    logger = logging.getLogger(cfg.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    log_queue: queue.Queue[Any] = queue.Queue(maxsize=cfg.queue_size)
    queue_handler = _DroppingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    queue_handler.setFormatter(formatter)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)

    handle = LoggingHandle(
        logger=logger,
        log_queue=log_queue,
        queue_handler=queue_handler,
        sinks=tuple(sinks),
        listener=listener,
        log_path=log_path,
    )
    global _ACTIVE_HANDLE
    with _ACTIVE_HANDLE_LOCK:
        _ACTIVE_HANDLE = handle
    _register_atexit_shutdown()
    return handle


def get_logger(name: str | None = None, **initial_values: Any) -> Any:
    """Return a structlog logger, optionally pre-bound with ``initial_values``."""

    logger = structlog.get_logger(name)
    return logger.bind(**initial_values) if initial_values else logger


@contextmanager
def correlation_scope(**fields: Any) -> Iterator[None]:
    """Bind context fields onto every event logged inside the block."""

    with structlog.contextvars.bound_contextvars(**fields):
        yield


def get_active_logging_handle() -> LoggingHandle | None:
    with _ACTIVE_HANDLE_LOCK:
        return _ACTIVE_HANDLE


def flush_logging(handle: LoggingHandle | None = None, *, timeout_seconds: float = 2.0) -> None:
    resolved = handle or get_active_logging_handle()
    if resolved is not None:
        resolved.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(handle: LoggingHandle | None = None, *, timeout_seconds: float = 2.0) -> None:
    """Stop the listener, close sinks, and restore structlog defaults."""

    resolved = handle or get_active_logging_handle()
    if resolved is None:
        return
    resolved.shutdown(timeout_seconds=timeout_seconds)

    global _ACTIVE_HANDLE
    with _ACTIVE_HANDLE_LOCK:
        if _ACTIVE_HANDLE is resolved:
            _ACTIVE_HANDLE = None
            structlog.reset_defaults()


def parse_log_level(value: int | str) -> int:
    if isinstance(value, bool):
        raise ValueError("log level must be a level name or integer")
    if isinstance(value, int):
        return value
    normalized = str(value).strip().upper()
    if normalized not in _LEVEL_NAMES:
        raise ValueError(f"unknown log level {value!r}")
    return logging.getLevelNamesMapping()[normalized]


def _shutdown_active_handle() -> None:
    shutdown_logging()


def _register_atexit_shutdown() -> None:
    global _ATEXIT_REGISTERED
    if _ATEXIT_REGISTERED:
        return
    atexit.register(_shutdown_active_handle)
    _ATEXIT_REGISTERED = True


__all__ = [
    "DEFAULT_LOGGER_NAME",
    "LogFormat",
    "LoggingConfig",
    "LoggingHandle",
    "configure_logging",
    "correlation_scope",
    "flush_logging",
    "get_active_logging_handle",
    "get_logger",
    "parse_log_level",
    "shutdown_logging",
]
