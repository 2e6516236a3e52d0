from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class CombinationStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({CombinationStatus.COMPLETED, CombinationStatus.FAILED})

COMBINATION_STATUS_DB_ENUM = Enum(
    CombinationStatus,
    name="combination_status",
    values_callable=lambda members: [member.value for member in members],
)


class Location(Base):
    __tablename__ = "locations"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class Dork(Base):
    __tablename__ = "dorks"

    id: Mapped[int] = mapped_column(primary_key=True)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class SearchCredential(Base):
    __tablename__ = "search_credentials"

    id: Mapped[int] = mapped_column(primary_key=True)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    api_key: Mapped[str] = mapped_column(Text, nullable=False)
    engine_id: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class QueryCombination(Base):
    __tablename__ = "query_combinations"
    __table_args__ = (
        UniqueConstraint(
            "location_id",
            "category_id",
            "dork_id",
            name="uq_query_combinations_triple",
        ),
        CheckConstraint(
            "max_allowed_results BETWEEN 1 AND 1000",
            name="max_allowed_results_range",
        ),
        CheckConstraint("next_start_index >= 1", name="next_start_index_positive"),
        CheckConstraint("last_start_index >= 0", name="last_start_index_non_negative"),
        CheckConstraint("total_fetched >= 0", name="total_fetched_non_negative"),
        Index("ix_query_combinations_status_last_run_at", "status", "last_run_at"),
    )
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(primary_key=True)
    location_id: Mapped[int] = mapped_column(
        ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    dork_id: Mapped[int] = mapped_column(
        ForeignKey("dorks.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    credential_id: Mapped[int] = mapped_column(
        ForeignKey("search_credentials.id", ondelete="RESTRICT"), nullable=False
    )
    dork_string: Mapped[str] = mapped_column(Text, nullable=False)
    total_fetched: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    last_start_index: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    next_start_index: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("1")
    )
    max_allowed_results: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("100")
    )
    status: Mapped[CombinationStatus] = mapped_column(
        COMBINATION_STATUS_DB_ENUM,
        nullable=False,
        server_default=CombinationStatus.PENDING.value,
    )
    error_message: Mapped[str | None] = mapped_column(Text)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class FetchedLink(Base):
    __tablename__ = "fetched_links"
    __table_args__ = (
        UniqueConstraint(
            "combination_id",
            "canonical_url",
            name="uq_fetched_links_combination_canonical_url",
        ),
        Index("ix_fetched_links_combination_rank", "combination_id", "rank"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    combination_id: Mapped[int] = mapped_column(
        ForeignKey("query_combinations.id", ondelete="CASCADE"), nullable=False
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    canonical_url: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False, server_default="")
    snippet: Mapped[str] = mapped_column(Text, nullable=False, server_default="")
    display_link: Mapped[str | None] = mapped_column(String(512))
    formatted_url: Mapped[str | None] = mapped_column(Text)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    page_number: Mapped[int] = mapped_column(Integer, nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
