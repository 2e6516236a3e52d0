from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
from typing import Any, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.db.models import CombinationStatus
from app.db.session import get_session_factory
from app.logging_utils import structured_log
from app.services.queries.execution import PageExecutionService
from app.services.queries.types import ExecutionErrorCode
from app.settings import settings

T = TypeVar("T")
SleepFn = Callable[[float], Awaitable[None]]
logger = logging.getLogger(__name__)

_TRANSIENT_STEP_ERRORS = (OperationalError, InterfaceError, OSError)


@dataclass(frozen=True)
class OrchestratorRunSummary:
    combination_id: int
    success: bool
    pages_executed: int
    total_fetched: int | None = None
    status: CombinationStatus | None = None
    error: str | None = None
    error_code: ExecutionErrorCode | None = None


class PaginationOrchestrator:
    """Drives one combination page by page until it stops needing work.

    Progress lives in the combination's own cursor columns, so a run that dies
    mid-way is resumed by simply starting another run.
    """

    def __init__(
        self,
        *,
        execution: PageExecutionService,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], Any] | None = None,
        sleep: SleepFn = asyncio.sleep,
        page_delay_seconds: float | None = None,
        max_pages: int | None = None,
        step_retries: int | None = None,
        step_retry_wait_seconds: float = 1.0,
    ) -> None:
        self._execution = execution
        self._session_factory = session_factory
        self._sleep = sleep
        self._page_delay_seconds = max(
            float(settings.orchestrator_page_delay_seconds if page_delay_seconds is None else page_delay_seconds),
            0.0,
        )
        self._max_pages = max(int(settings.orchestrator_max_pages if max_pages is None else max_pages), 1)
        self._step_retries = max(
            int(settings.orchestrator_step_retries if step_retries is None else step_retries),
            1,
        )
        self._step_retry_wait_seconds = max(float(step_retry_wait_seconds), 0.0)

    async def run(self, combination_id: int) -> OrchestratorRunSummary:
        structured_log(logger, "info", "queries.orchestrator_started", combination_id=combination_id)
        await self._retrying_step(self._check_connectivity)

        locks = self._execution.locks
        pages_executed = 0
        while pages_executed < self._max_pages:
            if not locks.acquire(combination_id):
                structured_log(logger, "info", "queries.lock_busy", combination_id=combination_id)
                return OrchestratorRunSummary(
                    combination_id=combination_id,
                    success=False,
                    pages_executed=pages_executed,
                    error="Query is already being executed.",
                    error_code=ExecutionErrorCode.ALREADY_IN_PROGRESS,
                )
            try:
                async with self._new_session() as db_session:
                    result = await self._execution.execute_page(db_session, combination_id)
            finally:
                locks.release(combination_id)
            pages_executed += 1

            if not result.success:
                structured_log(
                    logger,
                    "warning",
                    "queries.orchestrator_stopped",
                    combination_id=combination_id,
                    pages_executed=pages_executed,
                    error_code=result.error_code,
                    error=result.error,
                )
                return OrchestratorRunSummary(
                    combination_id=combination_id,
                    success=False,
                    pages_executed=pages_executed,
                    error=result.error,
                    error_code=result.error_code,
                )
            if not result.has_more:
                break
            await self._sleep(self._page_delay_seconds)
        else:
            structured_log(
                logger,
                "warning",
                "queries.orchestrator_page_cap_reached",
                combination_id=combination_id,
                max_pages=self._max_pages,
            )

        total_fetched, status = await self._retrying_step(
            lambda: self._read_final_state(combination_id)
        )
        structured_log(
            logger,
            "info",
            "queries.orchestrator_finished",
            combination_id=combination_id,
            pages_executed=pages_executed,
            total_fetched=total_fetched,
            status=status,
        )
        return OrchestratorRunSummary(
            combination_id=combination_id,
            success=True,
            pages_executed=pages_executed,
            total_fetched=total_fetched,
            status=status,
        )

    async def _retrying_step(self, step: Callable[[], Awaitable[T]]) -> T:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(_TRANSIENT_STEP_ERRORS),
            stop=stop_after_attempt(self._step_retries),
            wait=wait_exponential(multiplier=self._step_retry_wait_seconds, max=30),
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                return await step()
        raise AssertionError("unreachable")

    async def _check_connectivity(self) -> None:
        async with self._new_session() as db_session:
            await db_session.execute(text("SELECT 1"))

    async def _read_final_state(self, combination_id: int) -> tuple[int | None, CombinationStatus | None]:
        async with self._new_session() as db_session:
            combination = await self._execution.store.get(db_session, combination_id)
            if combination is None:
                return None, None
            return combination.total_fetched, combination.status

    def _new_session(self):
        factory = self._session_factory or get_session_factory()
        return factory()


_background_tasks: set[asyncio.Task[Any]] = set()


class OrchestratorDispatcher:
    """Starts orchestrator runs off the request path as tracked asyncio tasks."""

    def __init__(self, orchestrator: PaginationOrchestrator) -> None:
        self._orchestrator = orchestrator
        self._active: dict[int, asyncio.Task[Any]] = {}

    def is_active(self, combination_id: int) -> bool:
        task = self._active.get(combination_id)
        return task is not None and not task.done()

    def trigger(self, combination_id: int) -> asyncio.Task[Any]:
        """Start a run unless one is already in flight for this combination."""
        if self.is_active(combination_id):
            return self._active[combination_id]
        task = asyncio.create_task(
            self._run_safely(combination_id),
            name=f"dorkharvest-orchestrator-{combination_id}",
        )
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        self._active[combination_id] = task
        task.add_done_callback(lambda _task: self._forget(combination_id, _task))
        structured_log(logger, "info", "queries.orchestrator_triggered", combination_id=combination_id)
        return task

    def _forget(self, combination_id: int, task: asyncio.Task[Any]) -> None:
        if self._active.get(combination_id) is task:
            del self._active[combination_id]

    async def _run_safely(self, combination_id: int) -> OrchestratorRunSummary | None:
        try:
            return await self._orchestrator.run(combination_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "queries.orchestrator_crashed",
                extra={"combination_id": combination_id},
            )
            return None


async def drain_background_tasks_for_tests() -> None:
    if _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)
