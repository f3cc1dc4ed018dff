"""Structured logging for the throttled cache service.

Every record leaves the process as one JSON object carrying the current
request id. Two kinds of fields are scrubbed before formatting:

- secrets and cached payloads (``api_key``, ``rpc_url``, ``value``...) are
  replaced with ``[REDACTED]``;
- limiter/cache keys (``key``, ``cache_key``, ``caller_key``) are replaced
  with a short SHA-256 prefix, so log lines for the same caller can still be
  correlated without exposing who the caller is.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging import LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, Mapping

from throttlecache.core.config import LogSettings, settings

REDACTED = "[REDACTED]"

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

SENSITIVE_KEYS_DEFAULT: frozenset[str] = frozenset(
    {
        "api_key",
        "x-api-key",
        "authorization",
        "cookie",
        "set-cookie",
        "password",
        "secret",
        "token",
        "private_key",
        "rpc_url",
        "value",
    }
)

HASHED_KEYS_DEFAULT: frozenset[str] = frozenset({"key", "cache_key", "caller_key"})

# LogRecord attributes that are never copied into the JSON payload
_RECORD_ATTRS = frozenset(
    vars(LogRecord("", 0, "", 0, "", None, None)).keys() | {"message", "asctime"}
)


def set_request_id(request_id: str | None) -> None:
    _request_id_var.set(request_id)


def get_request_id() -> str | None:
    return _request_id_var.get()


def clear_request_id() -> None:
    _request_id_var.set(None)


def hash_key(key: str) -> str:
    """Hash a limiter/cache key for logging without exposing caller identity."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]


class _Scrubber:
    """Applies redaction and key hashing to structured log fields."""

    def __init__(
        self,
        sensitive_keys: Iterable[str] | None = None,
        hashed_keys: Iterable[str] | None = None,
    ) -> None:
        if sensitive_keys is None:
            sensitive_keys = SENSITIVE_KEYS_DEFAULT
        if hashed_keys is None:
            hashed_keys = HASHED_KEYS_DEFAULT
        self.sensitive_keys = {k.lower() for k in sensitive_keys}
        self.hashed_keys = {k.lower() for k in hashed_keys}

    def field(self, name: str, value: Any) -> Any:
        lowered = name.lower()
        if lowered in self.sensitive_keys:
            return REDACTED
        if lowered in self.hashed_keys and isinstance(value, str):
            return hash_key(value)
        return self.nested(value)

    def nested(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            return {k: self.field(str(k), v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(self.nested(v) for v in value)
        return value

    def extras(self, record: LogRecord) -> dict[str, Any]:
        """Scrubbed copy of the ``extra=`` fields attached to ``record``."""
        return {
            name: self.field(name, value)
            for name, value in record.__dict__.items()
            if name not in _RECORD_ATTRS and not name.startswith("_")
        }


class RequestIdFilter(logging.Filter):
    """Attach request_id from context when absent on the record."""

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        if getattr(record, "request_id", None) is None:
            request_id = get_request_id()
            if request_id:
                record.request_id = request_id
        return True


class SensitiveDataFilter(logging.Filter):
    """Scrub the record in place so every handler sees safe fields."""

    def __init__(
        self,
        sensitive_keys: Iterable[str] | None = None,
        hashed_keys: Iterable[str] | None = None,
    ) -> None:
        super().__init__()
        self._scrubber = _Scrubber(sensitive_keys, hashed_keys)

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        for name, value in self._scrubber.extras(record).items():
            setattr(record, name, value)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, logger, message, extras."""

    def __init__(
        self,
        *,
        sensitive_keys: Iterable[str] | None = None,
        hashed_keys: Iterable[str] | None = None,
    ) -> None:
        super().__init__()
        self._scrubber = _Scrubber(sensitive_keys, hashed_keys)

    def format(self, record: LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            payload["request_id"] = request_id
        payload.update(self._scrubber.extras(record))
        if record.exc_info:
            payload["exc_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
        return json.dumps(payload, default=str)


def _build_handler(log_settings: LogSettings) -> logging.Handler:
    """Stdout handler, or a (rotating) file handler when ``LOG_OUTPUT=file``."""
    if log_settings.output.lower() != "file":
        return logging.StreamHandler(sys.stdout)

    file_path = Path(log_settings.file_path or "logs/throttlecache.log")
    file_path.parent.mkdir(parents=True, exist_ok=True)
    if log_settings.max_bytes:
        return RotatingFileHandler(
            file_path,
            maxBytes=log_settings.max_bytes,
            backupCount=log_settings.backup_count,
            encoding="utf-8",
        )
    return logging.FileHandler(file_path, encoding="utf-8")


def configure_logging(log_settings: LogSettings | None = None) -> None:
    """Install the JSON (or plain) handler on the root logger.

    Args:
        log_settings: Optional log settings; defaults to global settings if omitted.
    """
    cfg = log_settings or settings.log

    handler = _build_handler(cfg)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter())
    if cfg.format.lower() == "plain":
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    else:
        # Key fields are already hashed by the filter above.
        handler.setFormatter(JsonFormatter(hashed_keys=()))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))

    # Avoid double logging from uvicorn if it gets re-configured
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.access").propagate = False
