"""initial schema

Revision ID: 3f9a1c2b7d10
Revises:
Create Date: 2025-10-02 09:14:37.512044

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f9a1c2b7d10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _created_at():
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"))


def _updated_at():
    return sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"))


def upgrade() -> None:
    # --- identity ---
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("hashed_password", sa.String(length=1024), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_superuser", sa.Boolean(), nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False),
        sa.Column("display_name", sa.String(length=128), nullable=True),
    )
    op.create_index("ix_user_email", "user", ["email"], unique=True)
    op.create_index("ix_user_id", "user", ["id"], unique=False)

    # --- reference tables ---
    op.create_table(
        "languages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=16), nullable=False, unique=True),
        sa.Column("label", sa.String(length=64), nullable=False),
        _created_at(),
    )
    op.create_table(
        "model_domains",
        sa.Column("code", sa.String(length=32), primary_key=True),
        sa.Column("label", sa.String(length=64), nullable=False),
        _created_at(),
    )
    op.create_table(
        "models",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("domain_code", sa.String(length=32), sa.ForeignKey("model_domains.code"), nullable=False),
        sa.Column("context_len", sa.Integer(), nullable=False),
        sa.Column("page_generation_credits", sa.Integer(), nullable=True),
        sa.Column("search_credits", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.UniqueConstraint("name", "domain_code", name="uq_model_name_domain"),
    )
    op.create_table(
        "user_api_keys",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("domain_code", sa.String(length=32), sa.ForeignKey("model_domains.code"), primary_key=True),
        sa.Column("api_key_enc", sa.Text(), nullable=False),
        _created_at(),
    )
    op.create_table(
        "genres",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("slug", sa.String(length=64), nullable=False, unique=True),
        sa.Column("label", sa.String(length=128), nullable=False),
        sa.Column("prompt_boost", sa.Text(), nullable=True),
        sa.Column("book_format_prompt", sa.Text(), nullable=True),
        sa.Column("tokens_per_page", sa.Integer(), nullable=True),
        sa.Column("model_temperature", sa.Float(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_table(
        "tag_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("slug", sa.String(length=64), nullable=False, unique=True),
        sa.Column("label", sa.String(length=128), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("tag_categories.id"), nullable=True),
        sa.Column("slug", sa.String(length=64), nullable=False, unique=True),
        sa.Column("label", sa.String(length=128), nullable=False),
        sa.Column("prompt_boost", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
    )

    # --- authors & books ---
    op.create_table(
        "authors",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("pen_name", sa.String(length=128), nullable=False, unique=True),
        sa.Column("style_prompt", sa.Text(), nullable=True),
        sa.Column("bio", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_table(
        "books",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("page_count", sa.Integer(), nullable=False),
        sa.Column("cover_url", sa.String(length=256), nullable=True),
        sa.Column("book_cover_prompt", sa.Text(), nullable=True),
        sa.Column("author_id", sa.Integer(), sa.ForeignKey("authors.id"), nullable=False),
        sa.Column("genre_id", sa.Integer(), sa.ForeignKey("genres.id"), nullable=True),
        sa.Column("primary_language_id", sa.Integer(), sa.ForeignKey("languages.id"), nullable=True),
        _created_at(),
        sa.CheckConstraint("page_count > 0", name="ck_book_page_count_positive"),
    )
    op.create_index("ix_books_author_id", "books", ["author_id"])
    op.create_table(
        "book_sections",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("book_id", sa.Integer(), sa.ForeignKey("books.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("from_page", sa.Integer(), nullable=False),
        sa.Column("to_page", sa.Integer(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False, server_default=""),
        sa.Column("order_index", sa.Integer(), nullable=False),
        _created_at(),
        sa.UniqueConstraint("book_id", "order_index", name="uq_book_section_order"),
        sa.CheckConstraint("from_page >= 1", name="ck_section_from_page"),
        sa.CheckConstraint("to_page >= from_page", name="ck_section_page_range"),
    )
    op.create_index("ix_book_sections_book_order", "book_sections", ["book_id", "order_index"])

    # --- editions & pages ---
    op.create_table(
        "editions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("book_id", sa.Integer(), sa.ForeignKey("books.id", ondelete="CASCADE"), nullable=False),
        sa.Column("model_id", sa.Integer(), sa.ForeignKey("models.id"), nullable=False),
        sa.Column("language_id", sa.Integer(), sa.ForeignKey("languages.id"), nullable=False),
        _created_at(),
        sa.UniqueConstraint("book_id", "model_id", "language_id", name="uq_edition_book_model_language"),
    )
    op.create_index("ix_editions_book_id", "editions", ["book_id"])
    op.create_table(
        "book_pages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("edition_id", sa.Integer(), sa.ForeignKey("editions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("page_number", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        _created_at(),
        sa.UniqueConstraint("edition_id", "page_number", name="uq_book_page_edition_number"),
        sa.CheckConstraint("page_number > 0", name="ck_book_page_number_positive"),
    )
    op.create_index("ix_book_pages_edition_id", "book_pages", ["edition_id"])
    op.create_table(
        "book_page_images",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("hash", sa.String(length=64), nullable=False),
        sa.Column("edition_id", sa.Integer(), sa.ForeignKey("editions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("page_number", sa.Integer(), nullable=False),
        sa.Column("prompt_text", sa.Text(), nullable=False),
        sa.Column("image_url", sa.String(length=256), nullable=True),
        sa.Column("data", JSONType, nullable=True),
        _created_at(),
    )
    op.create_index("ix_book_page_images_hash", "book_page_images", ["hash"], unique=True)

    # --- search context ---
    op.create_table(
        "searches",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("hash", sa.String(length=64), nullable=False, unique=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id", ondelete="SET NULL"), nullable=True),
        sa.Column("language_id", sa.Integer(), sa.ForeignKey("languages.id"), nullable=True),
        sa.Column("genre_id", sa.Integer(), sa.ForeignKey("genres.id"), nullable=True),
        sa.Column("model_id", sa.Integer(), sa.ForeignKey("models.id"), nullable=True),
        _created_at(),
    )
    op.create_index("ix_searches_user_id", "searches", ["user_id"])
    op.create_table(
        "search_params",
        sa.Column("search_id", sa.Integer(), sa.ForeignKey("searches.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("free_text", sa.Text(), nullable=True),
        sa.Column("tag_ids", JSONType, nullable=True),
        sa.Column("extra_json", JSONType, nullable=True),
    )
    op.create_table(
        "search_books",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("search_id", sa.Integer(), sa.ForeignKey("searches.id", ondelete="CASCADE"), nullable=False),
        sa.Column("book_id", sa.Integer(), sa.ForeignKey("books.id", ondelete="CASCADE"), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=False),
        sa.Column("page_number", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint("search_id", "page_number", "rank", name="uq_search_book_slot"),
    )
    op.create_index("ix_search_books_search_id", "search_books", ["search_id"])
    op.create_index("ix_search_books_book_id", "search_books", ["book_id"])

    # --- billing ---
    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("slug", sa.String(length=32), nullable=False, unique=True),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("credits_per_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=True),
    )
    op.create_table(
        "user_billing",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("subscription_plans.id"), nullable=True),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_used_this_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_reset_at", sa.DateTime(), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint("credits >= 0", name="ck_user_billing_credits_non_negative"),
    )
    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", JSONType, nullable=True),
        _created_at(),
    )
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"])
    op.create_table(
        "pending_debits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id", ondelete="CASCADE"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", JSONType, nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("abandoned", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
    )
    op.create_index("ix_pending_debits_user_id", "pending_debits", ["user_id"])

    # --- reactions ---
    op.create_table(
        "book_reactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id", ondelete="CASCADE"), nullable=False),
        sa.Column("book_id", sa.Integer(), sa.ForeignKey("books.id", ondelete="CASCADE"), nullable=False),
        _created_at(),
        sa.UniqueConstraint("user_id", "book_id", name="uq_book_reaction_once"),
    )
    op.create_index("ix_book_reactions_user_id", "book_reactions", ["user_id"])
    op.create_index("ix_book_reactions_book_id", "book_reactions", ["book_id"])
    op.create_table(
        "page_reactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id", ondelete="CASCADE"), nullable=False),
        sa.Column("page_id", sa.Integer(), sa.ForeignKey("book_pages.id", ondelete="CASCADE"), nullable=False),
        _created_at(),
        sa.UniqueConstraint("user_id", "page_id", name="uq_page_reaction_once"),
    )
    op.create_index("ix_page_reactions_user_id", "page_reactions", ["user_id"])
    op.create_index("ix_page_reactions_page_id", "page_reactions", ["page_id"])
    op.create_table(
        "book_stats",
        sa.Column("book_id", sa.Integer(), sa.ForeignKey("books.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("likes_cnt", sa.Integer(), nullable=False, server_default="0"),
        _updated_at(),
    )
    op.create_table(
        "page_stats",
        sa.Column("page_id", sa.Integer(), sa.ForeignKey("book_pages.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("likes_cnt", sa.Integer(), nullable=False, server_default="0"),
        _updated_at(),
    )

    # --- project config ---
    op.create_table(
        "project_config",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("value", JSONType, nullable=False),
        _updated_at(),
    )


def downgrade() -> None:
    for table in (
        "project_config",
        "page_stats",
        "book_stats",
        "page_reactions",
        "book_reactions",
        "pending_debits",
        "credit_transactions",
        "user_billing",
        "subscription_plans",
        "search_books",
        "search_params",
        "searches",
        "book_page_images",
        "book_pages",
        "editions",
        "book_sections",
        "books",
        "authors",
        "tags",
        "tag_categories",
        "genres",
        "user_api_keys",
        "models",
        "model_domains",
        "languages",
        "user",
    ):
        op.drop_table(table)
