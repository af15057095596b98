"""view tracking

Revision ID: 5b7e2d9c4a11
Revises: 3f9a1c2b7d10
Create Date: 2025-10-21 16:02:51.208317

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5b7e2d9c4a11"
down_revision: Union[str, Sequence[str], None] = "3f9a1c2b7d10"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _view_columns():
    return [
        sa.Column("session_id", sa.String(length=128), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    ]


def upgrade() -> None:
    op.add_column("book_stats", sa.Column("views_cnt", sa.Integer(), nullable=False, server_default="0"))
    op.add_column("page_stats", sa.Column("views_cnt", sa.Integer(), nullable=False, server_default="0"))

    op.create_table(
        "book_view_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id", ondelete="SET NULL"), nullable=True),
        sa.Column("book_id", sa.Integer(), sa.ForeignKey("books.id", ondelete="CASCADE"), nullable=False),
        *_view_columns(),
    )
    op.create_index("ix_book_view_events_user_id", "book_view_events", ["user_id"])
    op.create_index("ix_book_view_events_book_created", "book_view_events", ["book_id", "created_at"])

    op.create_table(
        "page_view_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("user.id", ondelete="SET NULL"), nullable=True),
        sa.Column("page_id", sa.Integer(), sa.ForeignKey("book_pages.id", ondelete="CASCADE"), nullable=False),
        *_view_columns(),
    )
    op.create_index("ix_page_view_events_user_id", "page_view_events", ["user_id"])
    op.create_index("ix_page_view_events_page_created", "page_view_events", ["page_id", "created_at"])


def downgrade() -> None:
    op.drop_table("page_view_events")
    op.drop_table("book_view_events")
    op.drop_column("page_stats", "views_cnt")
    op.drop_column("book_stats", "views_cnt")
