"""Structured logging helpers shared by the API and the query engine."""

from __future__ import annotations

from contextvars import ContextVar
import logging
from typing import Any

_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def set_request_id(value: str | None) -> None:
    _request_id_ctx.set(value)


def structured_log(
    logger: logging.Logger,
    level: str,
    event: str,
    /,
    **fields: Any,
) -> None:
    """Emit a structured log entry.

    The event name doubles as the log message; JsonLogFormatter reads it back
    through record.getMessage(), so it is not repeated in ``extra``.

    Usage:
        structured_log(logger, "info", "queries.page_executed", combination_id=7, inserted_count=10)
    """
    log_method = getattr(logger, level.lower())
    log_method(event, extra=fields)
