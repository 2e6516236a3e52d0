from __future__ import annotations

from typing import Any

from app.api.errors import ApiException
from app.db.models import CombinationStatus, FetchedLink, QueryCombination
from app.services.queries.types import (
    CombinationBusyError,
    CombinationNotFoundError,
    InvalidTransitionError,
    PageExecutionResult,
    ReferenceNotFoundError,
    status_info,
)


def serialize_combination(combination: QueryCombination) -> dict[str, Any]:
    info = status_info(combination)
    return {
        "id": int(combination.id),
        "location_id": int(combination.location_id),
        "category_id": int(combination.category_id),
        "dork_id": int(combination.dork_id),
        "credential_id": int(combination.credential_id),
        "dork_string": combination.dork_string,
        "status": CombinationStatus(combination.status).value,
        "total_fetched": int(combination.total_fetched),
        "last_start_index": int(combination.last_start_index),
        "next_start_index": int(combination.next_start_index),
        "max_allowed_results": int(combination.max_allowed_results),
        "error_message": combination.error_message,
        "last_run_at": combination.last_run_at,
        "completed_at": combination.completed_at,
        "created_at": combination.created_at,
        "updated_at": combination.updated_at,
        "progress": info.progress,
        "can_fetch_more": info.can_fetch_more,
    }


def serialize_link(link: FetchedLink) -> dict[str, Any]:
    return {
        "id": int(link.id),
        "url": link.url,
        "canonical_url": link.canonical_url,
        "title": link.title or "",
        "snippet": link.snippet or "",
        "display_link": link.display_link,
        "formatted_url": link.formatted_url,
        "rank": int(link.rank),
        "page_number": int(link.page_number),
        "fetched_at": link.fetched_at,
    }


def serialize_page_result(result: PageExecutionResult) -> dict[str, Any]:
    return {
        "success": result.success,
        "inserted_count": result.inserted_count,
        "has_more": result.has_more,
        "error": result.error,
        "error_code": result.error_code.value if result.error_code else None,
    }


def parse_status_filter(raw_value: str | None) -> list[CombinationStatus] | None:
    if not raw_value:
        return None
    statuses: list[CombinationStatus] = []
    for part in raw_value.split(","):
        value = part.strip().lower()
        if not value:
            continue
        try:
            statuses.append(CombinationStatus(value))
        except ValueError as exc:
            raise ApiException(
                status_code=422,
                code="invalid_status_filter",
                message=f"Unknown status: {value}.",
            ) from exc
    return statuses or None


def api_exception_for(exc: Exception) -> ApiException:
    if isinstance(exc, CombinationNotFoundError):
        return ApiException(status_code=404, code="query_not_found", message="Query not found.")
    if isinstance(exc, ReferenceNotFoundError):
        return ApiException(
            status_code=404,
            code=f"{exc.kind}_not_found",
            message=str(exc),
            details={"id": exc.reference_id},
        )
    if isinstance(exc, InvalidTransitionError):
        return ApiException(
            status_code=409,
            code="invalid_transition",
            message=str(exc),
            details={"action": exc.action, "current_status": exc.current_status.value},
        )
    if isinstance(exc, CombinationBusyError):
        return ApiException(
            status_code=409,
            code="already_in_progress",
            message=str(exc),
        )
    raise TypeError(f"No API mapping for {type(exc).__name__}")
