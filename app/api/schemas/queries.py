from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.api.schemas.common import ApiMeta, PaginatedMeta


class CreateQueryRequest(BaseModel):
    location_id: int = Field(ge=1)
    category_id: int = Field(ge=1)
    dork_id: int = Field(ge=1)
    credential_id: int = Field(ge=1)
    max_allowed_results: int | None = Field(default=None, ge=1, le=1000)

    model_config = ConfigDict(extra="forbid")


class CombinationData(BaseModel):
    id: int
    location_id: int
    category_id: int
    dork_id: int
    credential_id: int
    dork_string: str
    status: str
    total_fetched: int
    last_start_index: int
    next_start_index: int
    max_allowed_results: int
    error_message: str | None
    last_run_at: datetime | None
    completed_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None
    progress: int
    can_fetch_more: bool

    model_config = ConfigDict(extra="forbid")


class CombinationEnvelope(BaseModel):
    data: CombinationData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class CreateQueryData(BaseModel):
    combination: CombinationData
    created: bool

    model_config = ConfigDict(extra="forbid")


class CreateQueryEnvelope(BaseModel):
    data: CreateQueryData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class CombinationListEnvelope(BaseModel):
    data: list[CombinationData]
    meta: PaginatedMeta

    model_config = ConfigDict(extra="forbid")


class PageResultData(BaseModel):
    success: bool
    inserted_count: int
    has_more: bool
    error: str | None = None
    error_code: str | None = None

    model_config = ConfigDict(extra="forbid")


class ExecutePageData(BaseModel):
    result: PageResultData
    combination: CombinationData

    model_config = ConfigDict(extra="forbid")


class ExecutePageEnvelope(BaseModel):
    data: ExecutePageData
    meta: ApiMeta

    model_config = ConfigDict(extra="forbid")


class FetchedLinkData(BaseModel):
    id: int
    url: str
    canonical_url: str
    title: str
    snippet: str
    display_link: str | None
    formatted_url: str | None
    rank: int
    page_number: int
    fetched_at: datetime

    model_config = ConfigDict(extra="forbid")


class FetchedLinkListEnvelope(BaseModel):
    data: list[FetchedLinkData]
    meta: PaginatedMeta

    model_config = ConfigDict(extra="forbid")
