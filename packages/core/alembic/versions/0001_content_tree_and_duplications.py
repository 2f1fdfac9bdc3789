"""Content tree (episode/part/item/block) with provenance links, and duplications

Revision ID: 0001_content_tree_and_duplications
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_content_tree_and_duplications"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    op.create_table(
        "episodes",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("orig_id", sa.BigInteger(), sa.ForeignKey("episodes.id", ondelete="SET NULL"), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_episodes_orig_id", "episodes", ["orig_id"])

    op.create_table(
        "parts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("episode_id", sa.BigInteger(), sa.ForeignKey("episodes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("orig_id", sa.BigInteger(), sa.ForeignKey("parts.id", ondelete="SET NULL"), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_parts_episode_id", "parts", ["episode_id"])
    op.create_index("ix_parts_orig_id", "parts", ["orig_id"])

    op.create_table(
        "items",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("part_id", sa.BigInteger(), sa.ForeignKey("parts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("orig_id", sa.BigInteger(), sa.ForeignKey("items.id", ondelete="SET NULL"), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_items_part_id", "items", ["part_id"])
    op.create_index("ix_items_orig_id", "items", ["orig_id"])

    op.create_table(
        "blocks",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("item_id", sa.BigInteger(), sa.ForeignKey("items.id", ondelete="CASCADE"), nullable=False),
        sa.Column("orig_id", sa.BigInteger(), sa.ForeignKey("blocks.id", ondelete="SET NULL"), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("field_1", sa.String(length=255), nullable=True),
        sa.Column("field_2", sa.String(length=255), nullable=True),
        sa.Column("field_3", sa.String(length=255), nullable=True),
        sa.Column("media", sa.String(length=255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_blocks_item_id", "blocks", ["item_id"])
    op.create_index("ix_blocks_orig_id", "blocks", ["orig_id"])

    op.create_table(
        "duplications",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("episode_id", sa.BigInteger(), sa.ForeignKey("episodes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("new_episode_id", sa.BigInteger(), sa.ForeignKey("episodes.id", ondelete="CASCADE"), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("progress", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        *_timestamps(),
    )
    op.create_index("ix_duplications_episode_id", "duplications", ["episode_id"])


def downgrade() -> None:
    op.drop_index("ix_duplications_episode_id", table_name="duplications")
    op.drop_table("duplications")
    op.drop_index("ix_blocks_orig_id", table_name="blocks")
    op.drop_index("ix_blocks_item_id", table_name="blocks")
    op.drop_table("blocks")
    op.drop_index("ix_items_orig_id", table_name="items")
    op.drop_index("ix_items_part_id", table_name="items")
    op.drop_table("items")
    op.drop_index("ix_parts_orig_id", table_name="parts")
    op.drop_index("ix_parts_episode_id", table_name="parts")
    op.drop_table("parts")
    op.drop_index("ix_episodes_orig_id", table_name="episodes")
    op.drop_table("episodes")
