"""Structured logging for ptpip-tether.

Thin layer over the standard logging module that lets every call site attach
key-value data to a record:

    logger = get_logger(__name__)
    logger.info("Init command ACK", connection_number=1, ip="192.168.1.1")

Records render either as human-readable text with a trailing
``| key=value`` section or as one JSON object per line. A ``LogContext``
injects ambient fields (camera IP, connection attempt) into every record
emitted inside its scope, across threads started from executors as well as
asyncio tasks.

Untrusted values (SSIDs, mDNS service names) belong in keyword arguments,
never interpolated into the message string, so that a crafted SSID cannot
forge extra log lines.

Example:
    configure_logging(level="DEBUG")
    logger = get_logger("ptpip_tether.network.connection")

    with LogContext(camera_ip="192.168.1.1"):
        logger.info("Opening command channel", port=15740)

    configure_logging(json_format=True, force=True)
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
from collections.abc import MutableMapping
from datetime import UTC, datetime
from typing import Any, cast

ROOT_LOGGER_NAME = "ptpip_tether"

_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "ptpip_log_context", default={}
)


# =============================================================================
# Logger
# =============================================================================


class StructuredLogger(logging.Logger):
    """Logger whose level methods accept structured keyword arguments.

    ``logger.warning("Handshake failed", ip=ip, error=str(e))`` stores
    ``{"ip": ..., "error": ...}`` on the record as ``structured_data``,
    merged over any active ``LogContext`` values.
    """

    def _log(  # type: ignore[override]
        self,
        level: int,
        msg: object,
        args: tuple[Any, ...] | MutableMapping[str, Any] | None,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **kwargs: Any,
    ) -> None:
        """Merge context and keyword data into ``extra`` and emit.

        Args:
            level: Numeric level.
            msg: Message, may contain %-placeholders.
            args: %-format arguments.
            exc_info: Exception info as accepted by ``logging``.
            extra: Caller-supplied extra dict; ``structured_data`` is
                added to it.
            stack_info: Attach the current stack.
            stacklevel: Caller frame offset; one frame is added for this
                override so records point at the real call site.
            **kwargs: Structured fields. Explicit fields win over context.
        """
        structured = {**_log_context.get(), **kwargs}
        merged_extra = dict(extra) if extra else {}
        merged_extra["structured_data"] = structured
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=merged_extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


# =============================================================================
# Formatters
# =============================================================================


def _format_value(value: Any) -> str:
    """Render one structured value for the text formatter.

    None becomes ``null``, strings containing spaces are double-quoted,
    dicts/lists/tuples are JSON, everything else uses ``str()``.

    Example:
        >>> _format_value("Nikon Z8")
        '"Nikon Z8"'
        >>> _format_value(None)
        'null'
    """
    if value is None:
        return "null"
    if isinstance(value, str):
        return f'"{value}"' if " " in value else value
    if isinstance(value, dict | list | tuple):
        return json.dumps(value, default=str)
    return str(value)


class StructuredFormatter(logging.Formatter):
    """Text formatter: ``time - logger - LEVEL - message | k=v k=v``."""

    DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        include_structured: bool = True,
    ) -> None:
        """Create the formatter.

        Args:
            fmt: Base format string; defaults to ``DEFAULT_FORMAT``.
            datefmt: ``asctime`` format; ``None`` uses the logging default.
            include_structured: Append the structured section when True.
        """
        super().__init__(fmt or self.DEFAULT_FORMAT, datefmt)
        self.include_structured = include_structured

    def format(self, record: logging.LogRecord) -> str:
        """Format ``record`` and append its structured fields, if any."""
        base = super().format(record)
        structured = getattr(record, "structured_data", None)
        if not self.include_structured or not structured:
            return base
        pairs = " ".join(f"{k}={_format_value(v)}" for k, v in structured.items())
        return f"{base} | {pairs}"


class JSONFormatter(logging.Formatter):
    """NDJSON formatter for log shipping.

    Every record becomes one line holding ``timestamp`` (UTC ISO-8601),
    ``level``, ``logger``, ``message``, the structured fields at top level,
    and ``exception`` when exception info is attached.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Serialize ``record`` to a single JSON line."""
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(getattr(record, "structured_data", {}) or {})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


# =============================================================================
# Context
# =============================================================================


class LogContext:
    """Attach fields to every record logged inside a ``with`` block.

    Contexts nest; inner values override outer ones and are restored on
    exit. Backed by ``contextvars`` so concurrent connection attempts running
    as separate asyncio tasks do not see each other's fields.

    Example:
        >>> with LogContext(camera_ip="192.168.1.1", attempt=2):
        ...     logger.info("Reconnecting")
    """

    __slots__ = ("_fields", "_token")

    def __init__(self, **fields: Any) -> None:
        self._fields = fields
        self._token: contextvars.Token[dict[str, Any]] | None = None

    def __enter__(self) -> LogContext:
        self._token = _log_context.set({**_log_context.get(), **self._fields})
        return self

    def __exit__(self, *exc: Any) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None

    def __repr__(self) -> str:
        return f"LogContext({self._fields!r})"


def current_context() -> dict[str, Any]:
    """Return a copy of the fields active in the current context."""
    return dict(_log_context.get())


# =============================================================================
# Configuration
# =============================================================================

_configured = False
_config_lock = threading.Lock()


def configure_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    include_structured: bool = True,
    force: bool = False,
) -> None:
    """Install the handler on the ``ptpip_tether`` root logger.

    Idempotent unless ``force`` is set. The package root does not propagate
    to the interpreter root logger, so an embedding application's own
    handlers never print tether records twice.

    Args:
        level: Minimum level, as int or name ("DEBUG", "INFO", ...).
        json_format: Use ``JSONFormatter`` instead of text output.
        stream: Destination stream, ``sys.stderr`` by default. The MCP
            server speaks over stdout, so stdout must never be used there.
        include_structured: Append ``| k=v`` data in text mode.
        force: Drop existing handlers and configure again.

    Example:
        >>> configure_logging(level="DEBUG")
        >>> configure_logging(json_format=True, force=True)
    """
    with _config_lock:
        if force:
            _reset_logging_impl()
        _configure_logging_impl(level, json_format, stream, include_structured)


def _configure_logging_impl(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    include_structured: bool = True,
) -> None:
    """Configure the package root logger; caller holds ``_config_lock``."""
    global _configured

    if _configured:
        return

    logging.setLoggerClass(StructuredLogger)

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    formatter: logging.Formatter = (
        JSONFormatter()
        if json_format
        else StructuredFormatter(include_structured=include_structured)
    )
    handler.setFormatter(formatter)

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)
    root.addHandler(handler)
    root.propagate = False

    _configured = True


def _reset_logging_impl() -> None:
    """Remove package handlers; caller holds ``_config_lock``."""
    global _configured

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    _configured = False


def reset_logging() -> None:
    """Return logging to the unconfigured state. Intended for tests."""
    with _config_lock:
        _reset_logging_impl()


def get_logger(name: str) -> StructuredLogger:
    """Return a ``StructuredLogger`` for ``name``.

    Configures logging with defaults (INFO, text, stderr) on first use.

    Args:
        name: Dotted logger name, normally ``__name__``.

    Returns:
        Logger accepting structured keyword arguments.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("OpenSession sent", session_id=1234)
    """
    if not _configured:
        with _config_lock:
            if not _configured:  # pragma: no branch
                _configure_logging_impl()

    logger = logging.getLogger(name)
    if not isinstance(logger, StructuredLogger):
        # Created before setLoggerClass ran (e.g. by a third-party import).
        logger.__class__ = StructuredLogger
    return cast(StructuredLogger, logger)
