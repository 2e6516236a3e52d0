from __future__ import annotations

from collections.abc import Awaitable, Callable
import logging
import math
from typing import Any, Protocol

import httpx

from app.logging_utils import structured_log
from app.services.search.errors import (
    SearchErrorCode,
    SearchNetworkError,
    SearchProviderError,
)
from app.services.search.types import SearchCredentials, SearchItem, SearchPage
from app.settings import settings

_MAX_PAGE_SIZE = 10
_RATE_LIMIT_RETRY_AFTER_SECONDS = 3600

SearchRequestFn = Callable[..., Awaitable[httpx.Response]]
logger = logging.getLogger(__name__)


class SearchProvider(Protocol):
    async def search(
        self,
        *,
        query: str,
        credentials: SearchCredentials,
        start_index: int,
    ) -> SearchPage: ...


class LiveSearchProvider:
    """Custom Search JSON API client.

    One call fetches one page. Non-2xx answers are classified into
    ``SearchProviderError`` codes; transport failures surface as
    ``SearchNetworkError`` and are left to the caller to retry.
    """

    def __init__(
        self,
        *,
        request_fn: SearchRequestFn | None = None,
        page_size: int | None = None,
    ) -> None:
        self._request_fn = request_fn or _request_search_page
        self._page_size = _normalize_page_size(page_size)

    @property
    def page_size(self) -> int:
        return self._page_size

    async def search(
        self,
        *,
        query: str,
        credentials: SearchCredentials,
        start_index: int,
    ) -> SearchPage:
        params = {
            "key": credentials.api_key,
            "cx": credentials.engine_id,
            "q": query,
            "start": str(max(int(start_index), 1)),
            "num": str(self._page_size),
        }
        structured_log(logger, "info", "search.request_started", start_index=start_index)
        try:
            response = await self._request_fn(params=params)
        except httpx.TransportError as exc:
            raise SearchNetworkError(f"network error: {exc}") from exc

        if response.status_code >= 400:
            raise classify_error_response(response)

        try:
            payload = response.json()
        except ValueError as exc:
            raise SearchProviderError(
                code=SearchErrorCode.UNKNOWN_ERROR,
                message="API error: response body is not valid JSON",
                status_code=response.status_code,
            ) from exc

        page = parse_search_page(
            payload,
            page_size=self._page_size,
            requested_start_index=start_index,
        )
        structured_log(
            logger,
            "info",
            "search.request_completed",
            start_index=page.start_index,
            item_count=len(page.items),
            has_next_page=page.has_next_page,
        )
        return page


def classify_error_response(response: httpx.Response) -> SearchProviderError:
    payload = _json_or_empty(response)
    provider_message = _provider_message(payload)
    status_code = response.status_code

    if status_code == 429:
        structured_log(logger, "warning", "search.rate_limited", status_code=status_code)
        return SearchProviderError(
            code=SearchErrorCode.RATE_LIMIT,
            message="Rate limit exceeded. Please try again later.",
            status_code=status_code,
            retry_after_seconds=_RATE_LIMIT_RETRY_AFTER_SECONDS,
            payload=payload,
        )
    if status_code == 403:
        if "quota" in provider_message.lower():
            structured_log(logger, "warning", "search.quota_exceeded", status_code=status_code)
            return SearchProviderError(
                code=SearchErrorCode.QUOTA_EXCEEDED,
                message="Daily quota exceeded. Please try again tomorrow.",
                status_code=status_code,
                payload=payload,
            )
        structured_log(logger, "warning", "search.invalid_credential", status_code=status_code)
        return SearchProviderError(
            code=SearchErrorCode.INVALID_CREDENTIAL,
            message="Invalid API credentials. Please check your API key and engine ID.",
            status_code=status_code,
            payload=payload,
        )
    if status_code == 400:
        structured_log(
            logger,
            "warning",
            "search.invalid_request",
            status_code=status_code,
            provider_message=provider_message,
        )
        return SearchProviderError(
            code=SearchErrorCode.INVALID_REQUEST,
            message=f"Invalid request: {provider_message}",
            status_code=status_code,
            payload=payload,
        )

    structured_log(
        logger,
        "error",
        "search.unknown_error",
        status_code=status_code,
        provider_payload=payload,
    )
    return SearchProviderError(
        code=SearchErrorCode.UNKNOWN_ERROR,
        message=f"API error: {provider_message}",
        status_code=status_code,
        payload=payload,
    )


def parse_search_page(
    payload: dict[str, Any],
    *,
    page_size: int,
    requested_start_index: int = 1,
) -> SearchPage:
    queries = payload.get("queries") or {}
    start_index = _first_start_index(queries.get("request")) or max(int(requested_start_index), 1)
    next_start_index = _first_start_index(queries.get("nextPage"))
    page_number = math.ceil(start_index / page_size)

    items = [
        SearchItem(
            url=str(raw.get("link") or ""),
            title=str(raw.get("title") or ""),
            snippet=str(raw.get("snippet") or ""),
            display_link=raw.get("displayLink") or None,
            formatted_url=raw.get("formattedUrl") or None,
            rank=start_index + position,
            page_number=page_number,
        )
        for position, raw in enumerate(payload.get("items") or [])
        if isinstance(raw, dict) and raw.get("link")
    ]
    return SearchPage(
        start_index=start_index,
        next_start_index=next_start_index,
        total_results=_total_results(payload),
        items=items,
    )


def _first_start_index(entries: Any) -> int | None:
    if not isinstance(entries, list) or not entries:
        return None
    first = entries[0]
    if not isinstance(first, dict):
        return None
    try:
        value = int(first.get("startIndex") or 0)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def _total_results(payload: dict[str, Any]) -> int:
    raw = (payload.get("searchInformation") or {}).get("totalResults") or "0"
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _provider_message(payload: dict[str, Any]) -> str:
    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return "Unknown error"


def _normalize_page_size(page_size: int | None) -> int:
    value = settings.search_page_size if page_size is None else page_size
    return min(max(int(value), 1), _MAX_PAGE_SIZE)


async def _request_search_page(*, params: dict[str, str]) -> httpx.Response:
    timeout_value = max(float(settings.search_timeout_seconds), 0.5)
    async with httpx.AsyncClient(
        timeout=timeout_value,
        headers={"Accept": "application/json"},
    ) as client:
        return await client.get(settings.search_api_url, params=params)
