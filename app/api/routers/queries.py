from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.errors import ApiException
from app.api.responses import paginated_payload, success_payload
from app.api.routers.query_serializers import (
    api_exception_for,
    parse_status_filter,
    serialize_combination,
    serialize_link,
    serialize_page_result,
)
from app.api.runtime_deps import get_dispatcher, get_execution_service, get_lifecycle_service
from app.api.schemas.queries import (
    CombinationEnvelope,
    CombinationListEnvelope,
    CreateQueryEnvelope,
    CreateQueryRequest,
    ExecutePageEnvelope,
    FetchedLinkListEnvelope,
)
from app.db.base import utcnow
from app.db.session import get_db_session
from app.services.queries.execution import PageExecutionService
from app.services.queries.exporting import export_filename, links_to_csv
from app.services.queries.lifecycle import CombinationLifecycleService
from app.services.queries.orchestrator import OrchestratorDispatcher
from app.services.queries.types import (
    CombinationBusyError,
    CombinationNotFoundError,
    CombinationTriple,
    ExecutionErrorCode,
    InvalidTransitionError,
    ReferenceNotFoundError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/queries", tags=["api-queries"])


@router.post(
    "",
    response_model=CreateQueryEnvelope,
    status_code=201,
)
async def create_query(
    payload: CreateQueryRequest,
    request: Request,
    db_session: AsyncSession = Depends(get_db_session),
    lifecycle: CombinationLifecycleService = Depends(get_lifecycle_service),
    dispatcher: OrchestratorDispatcher = Depends(get_dispatcher),
):
    triple = CombinationTriple(
        location_id=payload.location_id,
        category_id=payload.category_id,
        dork_id=payload.dork_id,
    )
    try:
        await lifecycle.validate_references(
            db_session,
            triple=triple,
            credential_id=payload.credential_id,
        )
        combination, created = await lifecycle.create_or_get(
            db_session,
            triple=triple,
            credential_id=payload.credential_id,
            max_allowed_results=payload.max_allowed_results,
        )
    except ReferenceNotFoundError as exc:
        raise api_exception_for(exc) from exc

    dispatcher.trigger(int(combination.id))
    return success_payload(
        request,
        data={
            "combination": serialize_combination(combination),
            "created": created,
        },
    )


@router.get(
    "",
    response_model=CombinationListEnvelope,
)
async def list_queries(
    request: Request,
    status: str | None = Query(default=None),
    location_id: int | None = Query(default=None, ge=1),
    category_id: int | None = Query(default=None, ge=1),
    dork_id: int | None = Query(default=None, ge=1),
    search: str | None = Query(default=None, max_length=500),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    sort_by: Literal["created_at", "updated_at", "total_fetched", "status"] = Query(default="created_at"),
    sort_order: Literal["asc", "desc"] = Query(default="desc"),
    db_session: AsyncSession = Depends(get_db_session),
    lifecycle: CombinationLifecycleService = Depends(get_lifecycle_service),
):
    result = await lifecycle.store.list_combinations(
        db_session,
        statuses=parse_status_filter(status),
        location_id=location_id,
        category_id=category_id,
        dork_id=dork_id,
        search=search,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return paginated_payload(
        request,
        data=[serialize_combination(item) for item in result.items],
        page=result.page,
        limit=result.limit,
        total=result.total,
        total_pages=result.total_pages,
    )


@router.get(
    "/{combination_id}",
    response_model=CombinationEnvelope,
)
async def get_query(
    combination_id: int,
    request: Request,
    db_session: AsyncSession = Depends(get_db_session),
    lifecycle: CombinationLifecycleService = Depends(get_lifecycle_service),
):
    try:
        info = await lifecycle.get_status(db_session, combination_id)
    except CombinationNotFoundError as exc:
        raise api_exception_for(exc) from exc
    return success_payload(request, data=serialize_combination(info.combination))


@router.post(
    "/{combination_id}/execute",
    response_model=ExecutePageEnvelope,
)
async def execute_query_page(
    combination_id: int,
    request: Request,
    db_session: AsyncSession = Depends(get_db_session),
    execution: PageExecutionService = Depends(get_execution_service),
    lifecycle: CombinationLifecycleService = Depends(get_lifecycle_service),
):
    result = await execution.execute_page_guarded(db_session, combination_id)
    if result.error_code == ExecutionErrorCode.ALREADY_IN_PROGRESS:
        raise api_exception_for(CombinationBusyError(combination_id))
    if result.error_code == ExecutionErrorCode.NOT_FOUND:
        raise api_exception_for(CombinationNotFoundError(combination_id))

    info = await lifecycle.get_status(db_session, combination_id)
    return success_payload(
        request,
        data={
            "result": serialize_page_result(result),
            "combination": serialize_combination(info.combination),
        },
    )


@router.post(
    "/{combination_id}/pause",
    response_model=CombinationEnvelope,
)
async def pause_query(
    combination_id: int,
    request: Request,
    db_session: AsyncSession = Depends(get_db_session),
    lifecycle: CombinationLifecycleService = Depends(get_lifecycle_service),
):
    try:
        combination = await lifecycle.pause(db_session, combination_id)
    except (CombinationNotFoundError, InvalidTransitionError) as exc:
        raise api_exception_for(exc) from exc
    return success_payload(request, data=serialize_combination(combination))


@router.post(
    "/{combination_id}/resume",
    response_model=CombinationEnvelope,
)
async def resume_query(
    combination_id: int,
    request: Request,
    db_session: AsyncSession = Depends(get_db_session),
    lifecycle: CombinationLifecycleService = Depends(get_lifecycle_service),
    dispatcher: OrchestratorDispatcher = Depends(get_dispatcher),
):
    try:
        combination = await lifecycle.resume(db_session, combination_id)
    except (CombinationNotFoundError, InvalidTransitionError) as exc:
        raise api_exception_for(exc) from exc
    dispatcher.trigger(combination_id)
    return success_payload(request, data=serialize_combination(combination))


@router.post(
    "/{combination_id}/reset",
    response_model=CombinationEnvelope,
)
async def reset_query(
    combination_id: int,
    request: Request,
    db_session: AsyncSession = Depends(get_db_session),
    lifecycle: CombinationLifecycleService = Depends(get_lifecycle_service),
):
    try:
        combination = await lifecycle.reset(db_session, combination_id)
    except (CombinationNotFoundError, CombinationBusyError) as exc:
        raise api_exception_for(exc) from exc
    return success_payload(request, data=serialize_combination(combination))


@router.get(
    "/{combination_id}/results",
    response_model=FetchedLinkListEnvelope,
)
async def list_query_results(
    combination_id: int,
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    sort_by: Literal["fetched_at", "rank", "page_number"] = Query(default="rank"),
    sort_order: Literal["asc", "desc"] = Query(default="asc"),
    db_session: AsyncSession = Depends(get_db_session),
    lifecycle: CombinationLifecycleService = Depends(get_lifecycle_service),
):
    try:
        await lifecycle.get_status(db_session, combination_id)
    except CombinationNotFoundError as exc:
        raise api_exception_for(exc) from exc
    result = await lifecycle.store.list_links(
        db_session,
        combination_id=combination_id,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return paginated_payload(
        request,
        data=[serialize_link(link) for link in result.items],
        page=result.page,
        limit=result.limit,
        total=result.total,
        total_pages=result.total_pages,
    )


@router.get("/{combination_id}/export")
async def export_query_results(
    combination_id: int,
    db_session: AsyncSession = Depends(get_db_session),
    lifecycle: CombinationLifecycleService = Depends(get_lifecycle_service),
):
    try:
        await lifecycle.get_status(db_session, combination_id)
    except CombinationNotFoundError as exc:
        raise api_exception_for(exc) from exc
    links = await lifecycle.store.all_links(db_session, combination_id=combination_id)
    if not links:
        raise ApiException(
            status_code=404,
            code="no_results",
            message="No results to export.",
        )
    filename = export_filename(combination_id, now=utcnow())
    return Response(
        content=links_to_csv(links),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
