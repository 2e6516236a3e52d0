from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from app.db.models import CombinationStatus, QueryCombination, TERMINAL_STATUSES
from app.services.search.errors import SearchErrorCode


class ExecutionErrorCode(StrEnum):
    RATE_LIMIT = SearchErrorCode.RATE_LIMIT.value
    QUOTA_EXCEEDED = SearchErrorCode.QUOTA_EXCEEDED.value
    INVALID_CREDENTIAL = SearchErrorCode.INVALID_CREDENTIAL.value
    INVALID_REQUEST = SearchErrorCode.INVALID_REQUEST.value
    UNKNOWN_ERROR = SearchErrorCode.UNKNOWN_ERROR.value
    NETWORK_ERROR = "NETWORK_ERROR"
    ALREADY_IN_PROGRESS = "ALREADY_IN_PROGRESS"
    NOT_EXECUTABLE = "NOT_EXECUTABLE"
    NOT_FOUND = "NOT_FOUND"
    CREDENTIAL_ERROR = "CREDENTIAL_ERROR"
    STALE_PAGE = "STALE_PAGE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(frozen=True)
class PageExecutionResult:
    success: bool
    inserted_count: int = 0
    has_more: bool = False
    error: str | None = None
    error_code: ExecutionErrorCode | None = None

    @classmethod
    def failure(cls, code: ExecutionErrorCode, message: str) -> PageExecutionResult:
        return cls(success=False, error=message, error_code=code)


@dataclass(frozen=True)
class CombinationTriple:
    location_id: int
    category_id: int
    dork_id: int


@dataclass(frozen=True)
class CombinationStatusInfo:
    combination: QueryCombination
    progress: int
    can_fetch_more: bool


@dataclass(frozen=True)
class Paged:
    items: list
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


class CombinationNotFoundError(LookupError):
    def __init__(self, combination_id: int) -> None:
        super().__init__(f"Query combination {combination_id} not found.")
        self.combination_id = combination_id


class ReferenceNotFoundError(LookupError):
    def __init__(self, kind: str, reference_id: int) -> None:
        super().__init__(f"{kind.capitalize()} not found.")
        self.kind = kind
        self.reference_id = reference_id


class InvalidTransitionError(RuntimeError):
    def __init__(self, *, action: str, current_status: CombinationStatus) -> None:
        super().__init__(f"Cannot {action} a combination that is {current_status.value}.")
        self.action = action
        self.current_status = current_status


class CombinationBusyError(RuntimeError):
    def __init__(self, combination_id: int) -> None:
        super().__init__(f"Query combination {combination_id} is already being executed.")
        self.combination_id = combination_id


def progress_percent(*, total_fetched: int, max_allowed_results: int) -> int:
    if max_allowed_results <= 0:
        return 100
    # Half-up rounding; the built-in round() would send 12.5 to 12.
    return min(100, int(total_fetched * 100 / max_allowed_results + 0.5))


def can_fetch_more(*, total_fetched: int, max_allowed_results: int, status: CombinationStatus) -> bool:
    return total_fetched < max_allowed_results and status not in TERMINAL_STATUSES


def status_info(combination: QueryCombination) -> CombinationStatusInfo:
    return CombinationStatusInfo(
        combination=combination,
        progress=progress_percent(
            total_fetched=combination.total_fetched,
            max_allowed_results=combination.max_allowed_results,
        ),
        can_fetch_more=can_fetch_more(
            total_fetched=combination.total_fetched,
            max_allowed_results=combination.max_allowed_results,
            status=combination.status,
        ),
    )
