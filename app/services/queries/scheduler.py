from __future__ import annotations

import asyncio
import logging

from app.db.session import get_session_factory
from app.logging_utils import structured_log
from app.services.queries.locks import ExecutionLockRegistry, execution_locks
from app.services.queries.orchestrator import OrchestratorDispatcher
from app.services.queries.store import QueryStore

logger = logging.getLogger(__name__)


class CombinationScheduler:
    """Periodic sweep that restarts orchestrator runs for unfinished combinations."""

    def __init__(
        self,
        *,
        enabled: bool,
        tick_seconds: int,
        batch_size: int,
        dispatcher: OrchestratorDispatcher,
        store: QueryStore | None = None,
        locks: ExecutionLockRegistry | None = None,
        session_factory=None,
    ) -> None:
        self._enabled = enabled
        self._tick_seconds = max(5, int(tick_seconds))
        self._batch_size = max(1, int(batch_size))
        self._dispatcher = dispatcher
        self._store = store or QueryStore()
        self._locks = locks or execution_locks
        self._session_factory = session_factory
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if not self._enabled:
            structured_log(logger, "info", "scheduler.disabled")
            return
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run_loop(), name="dorkharvest-scheduler")
        structured_log(
            logger,
            "info",
            "scheduler.started",
            tick_seconds=self._tick_seconds,
            batch_size=self._batch_size,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        structured_log(logger, "info", "scheduler.stopped")

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.tick_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("scheduler.tick_failed")
            await asyncio.sleep(float(self._tick_seconds))

    async def tick_once(self) -> list[int]:
        factory = self._session_factory or get_session_factory()
        async with factory() as db_session:
            candidates = await self._store.list_executable(db_session, limit=self._batch_size)

        dispatched: list[int] = []
        for combination in candidates:
            combination_id = int(combination.id)
            if self._locks.is_locked(combination_id) or self._dispatcher.is_active(combination_id):
                continue
            self._dispatcher.trigger(combination_id)
            dispatched.append(combination_id)
        if dispatched:
            structured_log(
                logger,
                "info",
                "scheduler.combinations_dispatched",
                combination_ids=dispatched,
            )
        return dispatched
