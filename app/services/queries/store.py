from __future__ import annotations

from sqlalchemy import Select, delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.base import Base, utcnow
from app.db.models import CombinationStatus, FetchedLink, QueryCombination
from app.services.queries.types import CombinationTriple, Paged
from app.services.search.types import SearchItem
from app.services.search.url_canonical import canonicalize_url

COMBINATION_SORT_COLUMNS = {
    "created_at": QueryCombination.created_at,
    "updated_at": QueryCombination.updated_at,
    "total_fetched": QueryCombination.total_fetched,
    "status": QueryCombination.status,
}
LINK_SORT_COLUMNS = {
    "fetched_at": FetchedLink.fetched_at,
    "rank": FetchedLink.rank,
    "page_number": FetchedLink.page_number,
}
EXECUTABLE_STATUSES = (CombinationStatus.PENDING, CombinationStatus.RUNNING)


class QueryStore:
    """Reads and bulk writes for combinations and their harvested links.

    Nothing here commits; the lifecycle and execution services own the
    transaction boundaries and every status or counter change.
    """

    async def get(self, db_session: AsyncSession, combination_id: int) -> QueryCombination | None:
        return await db_session.get(QueryCombination, combination_id, populate_existing=True)

    async def get_for_update(
        self,
        db_session: AsyncSession,
        combination_id: int,
    ) -> QueryCombination | None:
        result = await db_session.execute(
            select(QueryCombination)
            .where(QueryCombination.id == combination_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_reference(self, db_session: AsyncSession, model: type[Base], reference_id: int):
        return await db_session.get(model, reference_id)

    async def find_by_triple(
        self,
        db_session: AsyncSession,
        triple: CombinationTriple,
    ) -> QueryCombination | None:
        result = await db_session.execute(
            select(QueryCombination).where(
                QueryCombination.location_id == triple.location_id,
                QueryCombination.category_id == triple.category_id,
                QueryCombination.dork_id == triple.dork_id,
            )
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        db_session: AsyncSession,
        *,
        triple: CombinationTriple,
        dork_string: str,
        credential_id: int,
        max_allowed_results: int,
    ) -> tuple[QueryCombination, bool]:
        existing = await self.find_by_triple(db_session, triple)
        if existing is not None:
            return existing, False

        combination = QueryCombination(
            location_id=triple.location_id,
            category_id=triple.category_id,
            dork_id=triple.dork_id,
            credential_id=credential_id,
            dork_string=dork_string,
            total_fetched=0,
            last_start_index=0,
            next_start_index=1,
            max_allowed_results=max_allowed_results,
            status=CombinationStatus.PENDING,
            error_message=None,
            last_run_at=None,
            completed_at=None,
        )
        try:
            async with db_session.begin_nested():
                db_session.add(combination)
                await db_session.flush()
        except IntegrityError:
            # A concurrent create won the unique triple.
            winner = await self.find_by_triple(db_session, triple)
            if winner is None:
                raise
            return winner, False
        return combination, True

    async def insert_links(
        self,
        db_session: AsyncSession,
        *,
        combination_id: int,
        items: list[SearchItem],
        limit: int | None = None,
    ) -> int:
        """Insert one page of links and return how many rows actually landed.

        With ``limit`` set, links already stored for the combination are
        skipped first and at most ``limit`` new ones are written, so a cap
        never discards unseen links further down the page.
        """
        rows: list[dict] = []
        seen: set[str] = set()
        fetched_at = utcnow()
        for item in items:
            canonical_url = canonicalize_url(item.url)
            if canonical_url in seen:
                continue
            seen.add(canonical_url)
            rows.append(
                {
                    "combination_id": combination_id,
                    "url": item.url,
                    "canonical_url": canonical_url,
                    "title": item.title,
                    "snippet": item.snippet,
                    "display_link": item.display_link,
                    "formatted_url": item.formatted_url,
                    "rank": item.rank,
                    "page_number": item.page_number,
                    "fetched_at": fetched_at,
                }
            )
        if rows and limit is not None:
            existing_result = await db_session.execute(
                select(FetchedLink.canonical_url).where(
                    FetchedLink.combination_id == combination_id,
                    FetchedLink.canonical_url.in_(seen),
                )
            )
            existing = set(existing_result.scalars().all())
            rows = [row for row in rows if row["canonical_url"] not in existing][: max(int(limit), 0)]
        if not rows:
            return 0
        result = await db_session.execute(
            pg_insert(FetchedLink)
            .values(rows)
            .on_conflict_do_nothing(
                index_elements=[FetchedLink.combination_id, FetchedLink.canonical_url]
            )
            .returning(FetchedLink.id)
        )
        return len(result.scalars().all())

    async def delete_links(self, db_session: AsyncSession, *, combination_id: int) -> int:
        result = await db_session.execute(
            delete(FetchedLink).where(FetchedLink.combination_id == combination_id)
        )
        return int(result.rowcount or 0)

    async def count_links(self, db_session: AsyncSession, *, combination_id: int) -> int:
        result = await db_session.execute(
            select(func.count())
            .select_from(FetchedLink)
            .where(FetchedLink.combination_id == combination_id)
        )
        return int(result.scalar_one())

    async def list_combinations(
        self,
        db_session: AsyncSession,
        *,
        statuses: list[CombinationStatus] | None = None,
        location_id: int | None = None,
        category_id: int | None = None,
        dork_id: int | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Paged:
        stmt = select(QueryCombination)
        if statuses:
            stmt = stmt.where(QueryCombination.status.in_(statuses))
        if location_id is not None:
            stmt = stmt.where(QueryCombination.location_id == location_id)
        if category_id is not None:
            stmt = stmt.where(QueryCombination.category_id == category_id)
        if dork_id is not None:
            stmt = stmt.where(QueryCombination.dork_id == dork_id)
        if search and search.strip():
            stmt = stmt.where(QueryCombination.dork_string.icontains(search.strip(), autoescape=True))

        sort_column = COMBINATION_SORT_COLUMNS.get(sort_by, QueryCombination.created_at)
        ordering = sort_column.asc() if sort_order == "asc" else sort_column.desc()
        stmt = stmt.order_by(ordering, QueryCombination.id.asc())
        return await _paged(db_session, stmt, page=page, limit=limit)

    async def list_links(
        self,
        db_session: AsyncSession,
        *,
        combination_id: int,
        page: int = 1,
        limit: int = 50,
        sort_by: str = "rank",
        sort_order: str = "asc",
    ) -> Paged:
        sort_column = LINK_SORT_COLUMNS.get(sort_by, FetchedLink.rank)
        ordering = sort_column.asc() if sort_order == "asc" else sort_column.desc()
        stmt = (
            select(FetchedLink)
            .where(FetchedLink.combination_id == combination_id)
            .order_by(ordering, FetchedLink.id.asc())
        )
        return await _paged(db_session, stmt, page=page, limit=limit)

    async def all_links(self, db_session: AsyncSession, *, combination_id: int) -> list[FetchedLink]:
        result = await db_session.execute(
            select(FetchedLink)
            .where(FetchedLink.combination_id == combination_id)
            .order_by(FetchedLink.rank.asc(), FetchedLink.id.asc())
        )
        return list(result.scalars().all())

    async def list_executable(self, db_session: AsyncSession, *, limit: int) -> list[QueryCombination]:
        result = await db_session.execute(
            select(QueryCombination)
            .where(
                QueryCombination.status.in_(EXECUTABLE_STATUSES),
                QueryCombination.total_fetched < QueryCombination.max_allowed_results,
            )
            .order_by(
                QueryCombination.last_run_at.asc().nulls_first(),
                QueryCombination.id.asc(),
            )
            .limit(max(1, int(limit)))
        )
        return list(result.scalars().all())


async def _paged(db_session: AsyncSession, stmt: Select, *, page: int, limit: int) -> Paged:
    page = max(1, int(page))
    limit = max(1, int(limit))
    total_result = await db_session.execute(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    )
    rows_result = await db_session.execute(stmt.offset((page - 1) * limit).limit(limit))
    return Paged(
        items=list(rows_result.scalars().all()),
        total=int(total_result.scalar_one()),
        page=page,
        limit=limit,
    )
