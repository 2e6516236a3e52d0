from __future__ import annotations

from typing import Any

from fastapi.encoders import jsonable_encoder
from starlette.requests import Request
from starlette.responses import JSONResponse


def _request_id(request: Request) -> str | None:
    return getattr(getattr(request, "state", None), "request_id", None)


def _meta(request: Request, **extra: Any) -> dict[str, Any]:
    return {"request_id": _request_id(request), **extra}


def success_payload(request: Request, *, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": _meta(request)}


def paginated_payload(
    request: Request,
    *,
    data: Any,
    page: int,
    limit: int,
    total: int,
    total_pages: int,
) -> dict[str, Any]:
    return {
        "data": data,
        "meta": _meta(
            request,
            pagination={
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": total_pages,
            },
        ),
    }


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any | None = None,
) -> JSONResponse:
    payload = {
        "error": {"code": code, "message": message, "details": details},
        "meta": _meta(request),
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))
