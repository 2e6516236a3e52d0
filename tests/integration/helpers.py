from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class SeededReferences:
    location_id: int
    category_id: int
    dork_id: int
    credential_id: int


async def insert_location(db_session: AsyncSession, *, name: str, slug: str) -> int:
    result = await db_session.execute(
        text("INSERT INTO locations (name, slug) VALUES (:name, :slug) RETURNING id"),
        {"name": name, "slug": slug},
    )
    location_id = int(result.scalar_one())
    await db_session.commit()
    return location_id


async def insert_category(db_session: AsyncSession, *, name: str, slug: str) -> int:
    result = await db_session.execute(
        text("INSERT INTO categories (name, slug) VALUES (:name, :slug) RETURNING id"),
        {"name": name, "slug": slug},
    )
    category_id = int(result.scalar_one())
    await db_session.commit()
    return category_id


async def insert_dork(db_session: AsyncSession, *, query: str) -> int:
    result = await db_session.execute(
        text("INSERT INTO dorks (query) VALUES (:query) RETURNING id"),
        {"query": query},
    )
    dork_id = int(result.scalar_one())
    await db_session.commit()
    return dork_id


async def insert_credential(
    db_session: AsyncSession,
    *,
    label: str = "primary",
    api_key: str = "test-api-key",
    engine_id: str = "test-engine",
) -> int:
    result = await db_session.execute(
        text(
            """
            INSERT INTO search_credentials (label, api_key, engine_id)
            VALUES (:label, :api_key, :engine_id)
            RETURNING id
            """
        ),
        {"label": label, "api_key": api_key, "engine_id": engine_id},
    )
    credential_id = int(result.scalar_one())
    await db_session.commit()
    return credential_id


async def seed_references(
    db_session: AsyncSession,
    *,
    suffix: str = "a",
    dork_query: str = 'site:example.com "plumber"',
) -> SeededReferences:
    return SeededReferences(
        location_id=await insert_location(db_session, name=f"Austin {suffix}", slug=f"austin-{suffix}"),
        category_id=await insert_category(db_session, name=f"Plumbing {suffix}", slug=f"plumbing-{suffix}"),
        dork_id=await insert_dork(db_session, query=dork_query),
        credential_id=await insert_credential(db_session),
    )
