from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.base import utcnow
from app.db.models import (
    Category,
    CombinationStatus,
    Dork,
    Location,
    QueryCombination,
    SearchCredential,
)
from app.logging_utils import structured_log
from app.services.queries.locks import ExecutionLockRegistry, execution_locks
from app.services.queries.store import QueryStore
from app.services.queries.types import (
    CombinationBusyError,
    CombinationNotFoundError,
    CombinationStatusInfo,
    CombinationTriple,
    InvalidTransitionError,
    ReferenceNotFoundError,
    status_info,
)
from app.settings import settings

PAUSABLE_STATUSES = frozenset({CombinationStatus.PENDING, CombinationStatus.RUNNING})
MIN_ALLOWED_RESULTS = 1
MAX_ALLOWED_RESULTS = 1000

logger = logging.getLogger(__name__)


def normalize_max_allowed_results(value: int | None) -> int:
    if value is None:
        value = settings.default_max_allowed_results
    return min(max(int(value), MIN_ALLOWED_RESULTS), MAX_ALLOWED_RESULTS)


class CombinationLifecycleService:
    """State transitions for query combinations.

    ``pending -> running -> {paused, completed, failed}``, ``paused -> pending``
    through resume, and ``reset`` back to ``pending`` from anywhere.
    """

    def __init__(
        self,
        *,
        store: QueryStore | None = None,
        locks: ExecutionLockRegistry | None = None,
    ) -> None:
        self.store = store or QueryStore()
        self._locks = locks or execution_locks

    async def validate_references(
        self,
        db_session: AsyncSession,
        *,
        triple: CombinationTriple,
        credential_id: int,
    ) -> None:
        checks = (
            ("location", Location, triple.location_id),
            ("category", Category, triple.category_id),
            ("dork", Dork, triple.dork_id),
            ("credential", SearchCredential, credential_id),
        )
        for kind, model, reference_id in checks:
            if await self.store.get_reference(db_session, model, reference_id) is None:
                raise ReferenceNotFoundError(kind, reference_id)

    async def create_or_get(
        self,
        db_session: AsyncSession,
        *,
        triple: CombinationTriple,
        credential_id: int,
        max_allowed_results: int | None = None,
    ) -> tuple[QueryCombination, bool]:
        dork = await self.store.get_reference(db_session, Dork, triple.dork_id)
        if dork is None:
            raise ReferenceNotFoundError("dork", triple.dork_id)

        combination, created = await self.store.create(
            db_session,
            triple=triple,
            dork_string=dork.query,
            credential_id=credential_id,
            max_allowed_results=normalize_max_allowed_results(max_allowed_results),
        )
        await db_session.commit()
        structured_log(
            logger,
            "info",
            "queries.combination_created" if created else "queries.combination_reused",
            combination_id=combination.id,
        )
        return combination, created

    async def get_status(self, db_session: AsyncSession, combination_id: int) -> CombinationStatusInfo:
        combination = await self.store.get(db_session, combination_id)
        if combination is None:
            raise CombinationNotFoundError(combination_id)
        return status_info(combination)

    async def pause(self, db_session: AsyncSession, combination_id: int) -> QueryCombination:
        combination = await self._locked(db_session, combination_id)
        current_status = combination.status
        if current_status not in PAUSABLE_STATUSES:
            await db_session.rollback()
            raise InvalidTransitionError(action="pause", current_status=current_status)
        combination.status = CombinationStatus.PAUSED
        await db_session.commit()
        structured_log(logger, "info", "queries.combination_paused", combination_id=combination_id)
        return combination

    async def resume(self, db_session: AsyncSession, combination_id: int) -> QueryCombination:
        combination = await self._locked(db_session, combination_id)
        current_status = combination.status
        if current_status != CombinationStatus.PAUSED:
            await db_session.rollback()
            raise InvalidTransitionError(action="resume", current_status=current_status)
        combination.status = CombinationStatus.PENDING
        combination.error_message = None
        await db_session.commit()
        structured_log(logger, "info", "queries.combination_resumed", combination_id=combination_id)
        return combination

    async def reset(self, db_session: AsyncSession, combination_id: int) -> QueryCombination:
        """Drop every harvested link and rewind the combination to ``pending``.

        Rejected with ``CombinationBusyError`` while a page execution holds the
        lock, so counters are never rewound under an in-flight write.
        """
        if not self._locks.acquire(combination_id):
            raise CombinationBusyError(combination_id)
        try:
            combination = await self._locked(db_session, combination_id)
            deleted = await self.store.delete_links(db_session, combination_id=combination_id)
            combination.total_fetched = 0
            combination.last_start_index = 0
            combination.next_start_index = 1
            combination.status = CombinationStatus.PENDING
            combination.error_message = None
            combination.last_run_at = None
            combination.completed_at = None
            await db_session.commit()
        finally:
            self._locks.release(combination_id)
        structured_log(
            logger,
            "info",
            "queries.combination_reset",
            combination_id=combination_id,
            deleted_links=deleted,
        )
        return combination

    async def mark_completed(self, db_session: AsyncSession, combination: QueryCombination) -> None:
        now = utcnow()
        combination.status = CombinationStatus.COMPLETED
        combination.completed_at = now
        combination.last_run_at = now
        await db_session.commit()
        structured_log(
            logger,
            "info",
            "queries.combination_completed",
            combination_id=combination.id,
            total_fetched=combination.total_fetched,
        )

    async def mark_failed(
        self,
        db_session: AsyncSession,
        combination: QueryCombination,
        message: str,
    ) -> None:
        combination.status = CombinationStatus.FAILED
        combination.error_message = message
        combination.last_run_at = utcnow()
        await db_session.commit()
        structured_log(
            logger,
            "warning",
            "queries.combination_failed",
            combination_id=combination.id,
            error=message,
        )

    async def mark_rate_limited(
        self,
        db_session: AsyncSession,
        combination: QueryCombination,
        message: str,
    ) -> None:
        combination.status = CombinationStatus.PAUSED
        combination.error_message = message
        await db_session.commit()
        structured_log(
            logger,
            "warning",
            "queries.combination_rate_limited",
            combination_id=combination.id,
        )

    async def _locked(self, db_session: AsyncSession, combination_id: int) -> QueryCombination:
        combination = await self.store.get_for_update(db_session, combination_id)
        if combination is None:
            await db_session.rollback()
            raise CombinationNotFoundError(combination_id)
        return combination
