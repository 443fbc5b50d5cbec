"""
lane-router - structured JSON-lines logging.

File: src/lane_router/observability/logging.py
Last updated: 2026-10-18

Purpose
- Render every log event (structlog or plain ``logging``) as one flat JSON object
  per line in ``<log_dir>/<instance_id>/lane_router.jsonl`` and optionally stdout.

What should be included in this file
- ``setup_logging`` / ``setup_structured_logging`` returning a shutdown handle.
- ``correlation_scope`` binding job, lane and queue fields onto every event in scope.
- Secret redaction by key name and by value pattern (assignments, bearer tokens,
  credentials embedded in broker or Redis URLs).

Functional requirements
- Callers never block on file IO: records pass through a bounded queue and are
  dropped (and counted) when it is full.
- Correlation fields are captured on the calling thread, before the record
  crosses the queue.
"""

from __future__ import annotations

import atexit
import copy
import logging
import logging.handlers
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

LogRedactor = Callable[[Any], Any]

REDACTED: Final[str] = "***REDACTED***"
_LOG_FILENAME: Final[str] = "lane_router.jsonl"
_LOGGER_NAME: Final[str] = "lane_router"
_QUEUE_SIZE: Final[int] = 4096
_CONTEXT_ATTRIBUTE: Final[str] = "lane_router_context"

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)
_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_URL_CREDENTIALS_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b([a-z][a-z0-9+.-]*://)([^:/@\s]*):([^@/\s]+)@"
)

_TIMESTAMPER: Final[Processor] = structlog.processors.TimeStamper(
    fmt="iso", utc=True, key="timestamp"
)

_ACTIVE_LOCK = threading.Lock()
_ACTIVE_HANDLE: StructuredLoggingHandle | None = None
_ATEXIT_REGISTERED = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    instance_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = _LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = _QUEUE_SIZE
    log_filename: str = _LOG_FILENAME
    log_to_stdout: bool = True
    redactor: LogRedactor | None = None


def setup_logging(
    *,
    instance_id: str,
    log_level: str = "INFO",
    log_dir: Path | str = "logs",
    log_to_stdout: bool = True,
    redact_secrets: bool = True,
) -> StructuredLoggingHandle:
    """Configure logging for one dispatcher or worker process."""

    handle = setup_structured_logging(
        LoggingConfig(
            instance_id=instance_id,
            base_log_dir=log_dir,
            level=log_level,
            log_to_stdout=log_to_stdout,
            redactor=default_log_redactor if redact_secrets else _keep,
        )
    )
    configure_structlog()
    return handle


def configure_structlog() -> None:
    """Send structlog events through stdlib logging so the JSON sink renders them."""

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            _TIMESTAMPER,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind ``job_id``, ``lane``... onto every event logged inside the block.

    ``None`` values are skipped; blank strings are rejected.
    """

    bound = {
        _non_empty(key, "correlation key"): _non_empty(value, "correlation value")
        for key, value in fields.items()
        if value is not None
    }
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def get_correlation_context() -> dict[str, Any]:
    return structlog.contextvars.get_contextvars()


def default_log_redactor(value: Any) -> Any:
    """Deep redaction of secrets by key name and by value pattern."""

    return _redact(value, key=None)


class _DropCounter:
    __slots__ = ("_lock", "_value")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    def increment(self) -> None:
        with self._lock:
            self._value += 1

    def value(self) -> int:
        with self._lock:
            return self._value


class _ContextQueueHandler(logging.handlers.QueueHandler):
    """Enqueue records unformatted, carrying the caller's bound context; drop when full."""

    def __init__(self, log_queue: queue.Queue[Any], drops: _DropCounter) -> None:
        super().__init__(log_queue)
        self._drops = drops

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The base class stringifies ``msg``, which would flatten structlog's event dict.
        prepared = copy.copy(record)
        setattr(prepared, _CONTEXT_ATTRIBUTE, structlog.contextvars.get_contextvars())
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self._drops.increment()


def _merge_record_context(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    record = event_dict.get("_record")
    context = getattr(record, _CONTEXT_ATTRIBUTE, None) if record is not None else None
    if record is not None and hasattr(record, _CONTEXT_ATTRIBUTE):
        delattr(record, _CONTEXT_ATTRIBUTE)
    for key, value in (context or {}).items():
        event_dict.setdefault(key, value)
    return event_dict


def _bind_instance(instance_id: str) -> Processor:
    def processor(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("instance_id", instance_id)
        return event_dict

    return processor


def _redaction_processor(redactor: LogRedactor) -> Processor:
    def processor(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
        return dict(redactor(event_dict))

    return processor


def build_formatter(
    instance_id: str, *, redactor: LogRedactor = default_log_redactor
) -> structlog.stdlib.ProcessorFormatter:
    """JSON formatter shared by the file and stdout sinks."""

    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            _merge_record_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ExtraAdder(),
            _TIMESTAMPER,
        ],
        processors=[
            _merge_record_context,
            _bind_instance(instance_id),
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            _redaction_processor(redactor),
            structlog.processors.JSONRenderer(sort_keys=True, ensure_ascii=False),
        ],
    )


class StructuredLoggingHandle:
    """Owns the queue listener and sinks of one logging setup."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        instance_id: str,
        log_path: Path,
        log_queue: queue.Queue[Any],
        queue_handler: _ContextQueueHandler,
        sinks: tuple[logging.Handler, ...],
        listener: logging.handlers.QueueListener,
        drops: _DropCounter,
    ) -> None:
        self.logger = logger
        self.instance_id = instance_id
        self.log_path = log_path
        self._queue = log_queue
        self._queue_handler = queue_handler
        self._sinks = sinks
        self._listener = listener
        self._drops = drops
        self._lock = threading.Lock()
        self._is_shutdown = False

    @property
    def dropped_records(self) -> int:
        return self._drops.value()

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


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Install the queue-backed JSON sink on ``config.logger_name``; replaces any earlier setup."""

    shutdown_logging()

    instance_id = _non_empty(config.instance_id, "instance_id")
    if isinstance(config.queue_size, bool) or not isinstance(config.queue_size, int):
        raise ValueError("queue_size must be a positive integer")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be a positive integer")
    log_filename = _non_empty(config.log_filename, "log_filename")
    if Path(log_filename).name != log_filename:
        raise ValueError("log_filename must not include path separators")
    level = _parse_level(config.level)

    log_dir = Path(config.base_log_dir) / instance_id
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / log_filename

    formatter = build_formatter(
        instance_id,
        redactor=config.redactor if config.redactor is not None else default_log_redactor,
    )
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(_non_empty(config.logger_name, "logger_name"))
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    log_queue: queue.Queue[Any] = queue.Queue(maxsize=config.queue_size)
    drops = _DropCounter()
    queue_handler = _ContextQueueHandler(log_queue, drops)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)

    handle = StructuredLoggingHandle(
        logger=logger,
        instance_id=instance_id,
        log_path=log_path,
        log_queue=log_queue,
        queue_handler=queue_handler,
        sinks=tuple(sinks),
        listener=listener,
        drops=drops,
    )
    global _ACTIVE_HANDLE, _ATEXIT_REGISTERED
    with _ACTIVE_LOCK:
        _ACTIVE_HANDLE = handle
        if not _ATEXIT_REGISTERED:
            atexit.register(shutdown_logging)
            _ATEXIT_REGISTERED = True
    return handle


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None,
    *,
    timeout_seconds: float = 2.0,
) -> None:
    """Drain the queue and close sinks of ``handle`` (default: the active one)."""

    global _ACTIVE_HANDLE
    with _ACTIVE_LOCK:
        resolved = handle if handle is not None else _ACTIVE_HANDLE
        if resolved is not None and resolved is _ACTIVE_HANDLE:
            _ACTIVE_HANDLE = None
    if resolved is not None:
        resolved.shutdown(timeout_seconds=timeout_seconds)


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _ACTIVE_LOCK:
        return _ACTIVE_HANDLE


def _keep(value: Any) -> Any:
    return value


def _non_empty(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{label} must not be empty")
    return normalized


def _parse_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    parsed = logging.getLevelName(str(value).strip().upper())
    if isinstance(parsed, int):
        return parsed
    raise ValueError(f"unsupported logging level {value!r}")


def _redact(value: Any, *, key: str | None) -> Any:
    if key is not None and any(term in key.lower() for term in _SENSITIVE_KEY_TERMS):
        return REDACTED
    if isinstance(value, str):
        return _redact_text(value)
    if isinstance(value, Mapping):
        return {item_key: _redact(item, key=str(item_key)) for item_key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact(item, key=None) for item in value]
    return value


def _redact_text(text: str) -> str:
    redacted = _ASSIGNMENT_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", text)
    redacted = _BEARER_PATTERN.sub(f"Bearer {REDACTED}", redacted)
    return _URL_CREDENTIALS_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}:{REDACTED}@", redacted)


__all__ = [
    "REDACTED",
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "build_formatter",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
