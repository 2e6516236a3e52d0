from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import re
import sys
from typing import Any

from app.logging_utils import get_request_id

DEFAULT_REDACT_FIELDS = {
    "api_key",
    "authorization",
    "cookie",
    "engine_id",
    "key",
    "password",
    "secret",
}
REDACTED = "[REDACTED]"

# Provider URLs carry the api key and engine id as query parameters.
_CREDENTIAL_QUERY_PARAM = re.compile(r"([?&](?:key|cx)=)[^&\s\"']+", re.IGNORECASE)

_RECORD_ATTRIBUTES = set(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "color_message"}
_LEVEL_TAGS = {
    logging.DEBUG: "DBG",
    logging.INFO: "INF",
    logging.WARNING: "WRN",
    logging.ERROR: "ERR",
    logging.CRITICAL: "CRT",
}
_CONSOLE_LEADING_KEYS = ("combination_id", "start_index", "next_start_index")
_CONSOLE_SHORT_KEYS = {
    "combination_id": "combo",
    "credential_id": "cred",
    "start_index": "start",
    "next_start_index": "next",
}
_HTTP_KEYS = ("method", "path", "status_code", "duration_ms")


def parse_redact_fields(raw: str | None) -> set[str]:
    fields = {field.strip().lower() for field in (raw or "").split(",") if field.strip()}
    return DEFAULT_REDACT_FIELDS | fields


def configure_logging(
    *,
    level: str,
    log_format: str,
    redact_fields: set[str],
    include_uvicorn_access: bool,
) -> None:
    normalized_level = logging.getLevelNamesMapping().get(level.strip().upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(normalized_level)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(normalized_level)
    handler.addFilter(RequestContextFilter())
    if log_format.strip().lower() == "json":
        handler.setFormatter(JsonLogFormatter(redact_fields=redact_fields))
    else:
        handler.setFormatter(ConsoleLogFormatter(redact_fields=redact_fields))
    root_logger.addHandler(handler)

    server_levels = {
        "uvicorn": normalized_level,
        "uvicorn.error": normalized_level,
        "uvicorn.access": normalized_level if include_uvicorn_access else logging.WARNING,
        # Request lines include the provider key in the query string.
        "httpx": logging.WARNING,
    }
    for logger_name, logger_level in server_levels.items():
        framework_logger = logging.getLogger(logger_name)
        framework_logger.handlers.clear()
        framework_logger.propagate = True
        framework_logger.setLevel(logger_level)


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            request_id = get_request_id()
            if request_id:
                record.request_id = request_id
        return True


class LogRedactor:
    """Masks sensitive keys and search credentials embedded in URLs."""

    def __init__(self, redact_fields: set[str]) -> None:
        self._fields = {field.lower() for field in redact_fields}

    def fields(self, record: logging.LogRecord) -> dict[str, Any]:
        return {
            key: self.value(key, value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        }

    def value(self, key: str, value: Any) -> Any:
        if key.lower() in self._fields:
            return REDACTED
        if isinstance(value, dict):
            return {nested_key: self.value(nested_key, item) for nested_key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.value(key, item) for item in value]
        if isinstance(value, str):
            return scrub_credentials(value)
        return value


def scrub_credentials(text: str) -> str:
    return _CREDENTIAL_QUERY_PARAM.sub(rf"\1{REDACTED}", text)


class JsonLogFormatter(logging.Formatter):
    def __init__(self, *, redact_fields: set[str]) -> None:
        super().__init__()
        self._redactor = LogRedactor(redact_fields)

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": format_timestamp(record.created),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": scrub_credentials(str(getattr(record, "event", record.getMessage()))),
        }
        payload.update(self._redactor.fields(record))
        if record.exc_info:
            payload["exception"] = scrub_credentials(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=True, default=str)


class ConsoleLogFormatter(logging.Formatter):
    """One line per record: ``time | LVL | logger | event | combo=.. | key=value``."""

    def __init__(self, *, redact_fields: set[str]) -> None:
        super().__init__()
        self._redactor = LogRedactor(redact_fields)

    def format(self, record: logging.LogRecord) -> str:
        fields = self._redactor.fields(record)
        fields.pop("event", None)
        parts = [
            format_timestamp(record.created),
            _LEVEL_TAGS.get(record.levelno, record.levelname[:3].upper()),
            record.name,
            scrub_credentials(str(getattr(record, "event", record.getMessage()))),
        ]

        request_id = fields.pop("request_id", None)
        if request_id:
            parts.append(f"rid={request_id}")
        method, path, status_code, duration_ms = (fields.pop(key, None) for key in _HTTP_KEYS)
        if method and path:
            parts.append(f"{method} {path}")
        if status_code is not None:
            parts.append(str(status_code))
        if duration_ms is not None:
            parts.append(f"{duration_ms}ms")

        leading = [key for key in _CONSOLE_LEADING_KEYS if key in fields]
        trailing = sorted(key for key in fields if key not in _CONSOLE_LEADING_KEYS)
        for key in leading + trailing:
            parts.append(f"{_CONSOLE_SHORT_KEYS.get(key, key)}={fields[key]}")

        if record.exc_info:
            parts.append(f"exception={scrub_credentials(self.formatException(record.exc_info))}")
        return " | ".join(str(part) for part in parts if part)


def format_timestamp(created_ts: float) -> str:
    dt = datetime.fromtimestamp(created_ts, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"
