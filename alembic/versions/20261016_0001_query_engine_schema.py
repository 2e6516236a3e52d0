"""Create query engine schema

Revision ID: 20261016_0001
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261016_0001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


combination_status_enum = sa.Enum(
    "pending",
    "running",
    "paused",
    "completed",
    "failed",
    name="combination_status",
)
combination_status_ref = postgresql.ENUM(
    "pending",
    "running",
    "paused",
    "completed",
    "failed",
    name="combination_status",
    create_type=False,
)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    bind = op.get_bind()
    combination_status_enum.create(bind, checkfirst=True)

    op.create_table(
        "locations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_locations"),
        sa.UniqueConstraint("slug", name="uq_locations_slug"),
    )
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_categories"),
        sa.UniqueConstraint("slug", name="uq_categories_slug"),
    )
    op.create_table(
        "dorks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("query", sa.Text(), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_dorks"),
    )
    op.create_table(
        "search_credentials",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=False),
        sa.Column("api_key", sa.Text(), nullable=False),
        sa.Column("engine_id", sa.String(length=255), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_search_credentials"),
    )

    op.create_table(
        "query_combinations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("location_id", sa.Integer(), nullable=False),
        sa.Column("category_id", sa.Integer(), nullable=False),
        sa.Column("dork_id", sa.Integer(), nullable=False),
        sa.Column("credential_id", sa.Integer(), nullable=False),
        sa.Column("dork_string", sa.Text(), nullable=False),
        sa.Column("total_fetched", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_start_index", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("next_start_index", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column(
            "max_allowed_results",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("100"),
        ),
        sa.Column(
            "status",
            combination_status_ref,
            nullable=False,
            server_default="pending",
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "max_allowed_results BETWEEN 1 AND 1000",
            name="ck_query_combinations_max_allowed_results_range",
        ),
        sa.CheckConstraint(
            "next_start_index >= 1",
            name="ck_query_combinations_next_start_index_positive",
        ),
        sa.CheckConstraint(
            "last_start_index >= 0",
            name="ck_query_combinations_last_start_index_non_negative",
        ),
        sa.CheckConstraint(
            "total_fetched >= 0",
            name="ck_query_combinations_total_fetched_non_negative",
        ),
        sa.ForeignKeyConstraint(
            ["location_id"],
            ["locations.id"],
            name="fk_query_combinations_location_id_locations",
            ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["category_id"],
            ["categories.id"],
            name="fk_query_combinations_category_id_categories",
            ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["dork_id"],
            ["dorks.id"],
            name="fk_query_combinations_dork_id_dorks",
            ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["credential_id"],
            ["search_credentials.id"],
            name="fk_query_combinations_credential_id_search_credentials",
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_query_combinations"),
        sa.UniqueConstraint(
            "location_id",
            "category_id",
            "dork_id",
            name="uq_query_combinations_triple",
        ),
    )
    op.create_index(
        "ix_query_combinations_location_id",
        "query_combinations",
        ["location_id"],
    )
    op.create_index(
        "ix_query_combinations_category_id",
        "query_combinations",
        ["category_id"],
    )
    op.create_index(
        "ix_query_combinations_dork_id",
        "query_combinations",
        ["dork_id"],
    )
    op.create_index(
        "ix_query_combinations_status_last_run_at",
        "query_combinations",
        ["status", "last_run_at"],
    )

    op.create_table(
        "fetched_links",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("combination_id", sa.Integer(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("canonical_url", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False, server_default=""),
        sa.Column("snippet", sa.Text(), nullable=False, server_default=""),
        sa.Column("display_link", sa.String(length=512), nullable=True),
        sa.Column("formatted_url", sa.Text(), nullable=True),
        sa.Column("rank", sa.Integer(), nullable=False),
        sa.Column("page_number", sa.Integer(), nullable=False),
        sa.Column(
            "fetched_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.ForeignKeyConstraint(
            ["combination_id"],
            ["query_combinations.id"],
            name="fk_fetched_links_combination_id_query_combinations",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_fetched_links"),
        sa.UniqueConstraint(
            "combination_id",
            "canonical_url",
            name="uq_fetched_links_combination_canonical_url",
        ),
    )
    op.create_index(
        "ix_fetched_links_combination_rank",
        "fetched_links",
        ["combination_id", "rank"],
    )


def downgrade() -> None:
    op.drop_index("ix_fetched_links_combination_rank", table_name="fetched_links")
    op.drop_table("fetched_links")
    op.drop_index("ix_query_combinations_status_last_run_at", table_name="query_combinations")
    op.drop_index("ix_query_combinations_dork_id", table_name="query_combinations")
    op.drop_index("ix_query_combinations_category_id", table_name="query_combinations")
    op.drop_index("ix_query_combinations_location_id", table_name="query_combinations")
    op.drop_table("query_combinations")
    op.drop_table("search_credentials")
    op.drop_table("dorks")
    op.drop_table("categories")
    op.drop_table("locations")

    bind = op.get_bind()
    combination_status_enum.drop(bind, checkfirst=True)
