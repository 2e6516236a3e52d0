from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.base import utcnow
from app.db.models import CombinationStatus, QueryCombination, TERMINAL_STATUSES
from app.logging_utils import structured_log
from app.services.queries.lifecycle import CombinationLifecycleService
from app.services.queries.locks import ExecutionLockRegistry, execution_locks
from app.services.queries.store import QueryStore
from app.services.queries.types import ExecutionErrorCode, PageExecutionResult
from app.services.search.client import SearchProvider
from app.services.search.credentials import CredentialResolver
from app.services.search.errors import (
    CredentialDecryptionError,
    CredentialNotFoundError,
    SearchProviderError,
    is_network_error,
)
from app.services.search.types import SearchCredentials, SearchPage
from app.settings import settings

SleepFn = Callable[[float], Awaitable[None]]
logger = logging.getLogger(__name__)

_NOT_EXECUTABLE_REASONS = {
    CombinationStatus.COMPLETED: "Query is already completed.",
    CombinationStatus.FAILED: "Query has failed. Reset it to run again.",
    CombinationStatus.PAUSED: "Query is paused.",
}


class _PageFetchFailed(Exception):
    def __init__(self, result: PageExecutionResult) -> None:
        super().__init__(result.error)
        self.result = result


@dataclass(frozen=True)
class _Cursor:
    combination_id: int
    dork_string: str
    credential_id: int
    next_start_index: int


class PageExecutionService:
    """Fetches, deduplicates and stores one page for a combination.

    ``execute_page`` never raises: every path ends in a ``PageExecutionResult``
    and failures are recorded on the combination itself.
    """

    def __init__(
        self,
        *,
        provider: SearchProvider,
        credential_resolver: CredentialResolver,
        store: QueryStore | None = None,
        lifecycle: CombinationLifecycleService | None = None,
        locks: ExecutionLockRegistry | None = None,
        sleep: SleepFn = asyncio.sleep,
        network_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
    ) -> None:
        self._provider = provider
        self._credential_resolver = credential_resolver
        self.store = store or QueryStore()
        self._lifecycle = lifecycle or CombinationLifecycleService(store=self.store, locks=locks)
        self._locks = locks or execution_locks
        self._sleep = sleep
        self._network_retries = max(
            int(settings.execution_network_retries if network_retries is None else network_retries),
            0,
        )
        self._retry_backoff_seconds = max(
            float(
                settings.execution_retry_backoff_seconds
                if retry_backoff_seconds is None
                else retry_backoff_seconds
            ),
            0.0,
        )

    @property
    def locks(self) -> ExecutionLockRegistry:
        return self._locks

    async def execute_page_guarded(
        self,
        db_session: AsyncSession,
        combination_id: int,
    ) -> PageExecutionResult:
        """Run one page under the single-flight lock."""
        if not self._locks.acquire(combination_id):
            structured_log(logger, "info", "queries.lock_busy", combination_id=combination_id)
            return PageExecutionResult.failure(
                ExecutionErrorCode.ALREADY_IN_PROGRESS,
                "Query is already being executed.",
            )
        try:
            return await self.execute_page(db_session, combination_id)
        finally:
            self._locks.release(combination_id)

    async def execute_page(
        self,
        db_session: AsyncSession,
        combination_id: int,
    ) -> PageExecutionResult:
        try:
            return await self._execute_page(db_session, combination_id)
        except Exception as exc:
            logger.exception(
                "queries.page_execution_failed",
                extra={"combination_id": combination_id},
            )
            message = str(exc) or "Unknown error occurred"
            await self._fail_safely(db_session, combination_id, message)
            return PageExecutionResult.failure(ExecutionErrorCode.INTERNAL_ERROR, message)

    async def _execute_page(
        self,
        db_session: AsyncSession,
        combination_id: int,
    ) -> PageExecutionResult:
        combination = await self.store.get(db_session, combination_id)
        if combination is None:
            return PageExecutionResult.failure(ExecutionErrorCode.NOT_FOUND, "Query not found.")

        blocked = await self._guard(db_session, combination)
        if blocked is not None:
            return blocked

        if combination.next_start_index > combination.max_allowed_results:
            await self._lifecycle.mark_completed(db_session, combination)
            return PageExecutionResult(success=True)

        cursor = _Cursor(
            combination_id=combination.id,
            dork_string=combination.dork_string,
            credential_id=combination.credential_id,
            next_start_index=combination.next_start_index,
        )
        structured_log(
            logger,
            "info",
            "queries.page_started",
            combination_id=cursor.combination_id,
            start_index=cursor.next_start_index,
            total_fetched=combination.total_fetched,
        )

        try:
            credentials = await self._credential_resolver.resolve(db_session, cursor.credential_id)
        except (CredentialNotFoundError, CredentialDecryptionError) as exc:
            await self._lifecycle.mark_failed(db_session, combination, str(exc))
            return PageExecutionResult.failure(ExecutionErrorCode.CREDENTIAL_ERROR, str(exc))

        # Release the read snapshot; the provider call can take seconds.
        await db_session.commit()

        try:
            page = await self._fetch_with_retries(cursor, credentials)
        except _PageFetchFailed as failed:
            return await self._record_fetch_failure(db_session, cursor, failed.result)

        return await self._write_page(db_session, cursor, page)

    async def _guard(
        self,
        db_session: AsyncSession,
        combination: QueryCombination,
    ) -> PageExecutionResult | None:
        reason = _NOT_EXECUTABLE_REASONS.get(combination.status)
        if reason is not None:
            return PageExecutionResult.failure(ExecutionErrorCode.NOT_EXECUTABLE, reason)
        if combination.total_fetched >= combination.max_allowed_results:
            await self._lifecycle.mark_completed(db_session, combination)
            return PageExecutionResult.failure(
                ExecutionErrorCode.NOT_EXECUTABLE,
                "Maximum results reached.",
            )
        return None

    async def _fetch_with_retries(
        self,
        cursor: _Cursor,
        credentials: SearchCredentials,
    ) -> SearchPage:
        attempt = 0
        while True:
            try:
                return await self._provider.search(
                    query=cursor.dork_string,
                    credentials=credentials,
                    start_index=cursor.next_start_index,
                )
            except SearchProviderError as exc:
                raise _PageFetchFailed(
                    PageExecutionResult.failure(ExecutionErrorCode(exc.code.value), exc.message)
                ) from exc
            except Exception as exc:
                if not is_network_error(exc):
                    raise
                attempt += 1
                if attempt > self._network_retries:
                    raise _PageFetchFailed(
                        PageExecutionResult.failure(
                            ExecutionErrorCode.NETWORK_ERROR,
                            str(exc) or "Network error",
                        )
                    ) from exc
                backoff_seconds = self._retry_backoff_seconds * (2 ** (attempt - 1))
                structured_log(
                    logger,
                    "warning",
                    "queries.network_retry_scheduled",
                    combination_id=cursor.combination_id,
                    attempt=attempt,
                    max_retries=self._network_retries,
                    backoff_seconds=backoff_seconds,
                    error=str(exc),
                )
                await self._sleep(backoff_seconds)

    async def _record_fetch_failure(
        self,
        db_session: AsyncSession,
        cursor: _Cursor,
        result: PageExecutionResult,
    ) -> PageExecutionResult:
        combination = await self.store.get_for_update(db_session, cursor.combination_id)
        if combination is None:
            await db_session.rollback()
            return PageExecutionResult.failure(ExecutionErrorCode.NOT_FOUND, "Query not found.")

        message = result.error or "Unknown error occurred"
        if result.error_code == ExecutionErrorCode.RATE_LIMIT:
            await self._lifecycle.mark_rate_limited(db_session, combination, message)
        else:
            await self._lifecycle.mark_failed(db_session, combination, message)
        return result

    async def _write_page(
        self,
        db_session: AsyncSession,
        cursor: _Cursor,
        page: SearchPage,
    ) -> PageExecutionResult:
        combination = await self.store.get_for_update(db_session, cursor.combination_id)
        if combination is None:
            await db_session.rollback()
            return PageExecutionResult.failure(ExecutionErrorCode.NOT_FOUND, "Query not found.")
        if (
            combination.next_start_index != cursor.next_start_index
            or combination.status in TERMINAL_STATUSES
        ):
            await db_session.rollback()
            structured_log(
                logger,
                "warning",
                "queries.stale_page_discarded",
                combination_id=cursor.combination_id,
                start_index=cursor.next_start_index,
                next_start_index=combination.next_start_index,
            )
            return PageExecutionResult.failure(
                ExecutionErrorCode.STALE_PAGE,
                "Query changed while the page was being fetched.",
            )

        if not page.items:
            await self._lifecycle.mark_completed(db_session, combination)
            return PageExecutionResult(success=True)

        remaining = max(combination.max_allowed_results - combination.total_fetched, 0)
        inserted_count = await self.store.insert_links(
            db_session,
            combination_id=combination.id,
            items=page.items,
            limit=remaining,
        )

        # Advance from the persisted cursor, never the provider echo.
        combination.total_fetched += inserted_count
        combination.last_start_index = cursor.next_start_index
        combination.next_start_index = cursor.next_start_index + self._page_size()
        combination.last_run_at = utcnow()
        if combination.status != CombinationStatus.PAUSED:
            combination.status = CombinationStatus.RUNNING

        has_more = page.has_next_page and combination.total_fetched < combination.max_allowed_results
        if has_more:
            await db_session.commit()
        else:
            await self._lifecycle.mark_completed(db_session, combination)

        structured_log(
            logger,
            "info",
            "queries.page_executed",
            combination_id=combination.id,
            inserted_count=inserted_count,
            total_fetched=combination.total_fetched,
            next_start_index=combination.next_start_index,
            has_more=has_more,
        )
        return PageExecutionResult(success=True, inserted_count=inserted_count, has_more=has_more)

    async def _fail_safely(self, db_session: AsyncSession, combination_id: int, message: str) -> None:
        try:
            await db_session.rollback()
            combination = await self.store.get_for_update(db_session, combination_id)
            if combination is not None:
                await self._lifecycle.mark_failed(db_session, combination, message)
        except Exception:
            logger.exception(
                "queries.mark_failed_error",
                extra={"combination_id": combination_id},
            )

    def _page_size(self) -> int:
        return int(getattr(self._provider, "page_size", settings.search_page_size))
