"""add avatar layers, scene templates and composite cache

Revision ID: 20260305_000002
Revises: 20260301_000001
Create Date: 2026-03-05 00:00:02.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20260305_000002"
down_revision: Union[str, None] = "20260301_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AVATAR_SLOT_COLUMNS = ("background_id", "base_id", "skin_id", "outfit_id", "hair_id", "headwear_id", "accessory_id")


def upgrade() -> None:
    op.create_table(
        "avatar_items",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("layer", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("storage_key", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_avatar_items_layer"), "avatar_items", ["layer"], unique=False)

    op.create_table(
        "company_avatars",
        sa.Column("company_id", sa.String(), nullable=False),
        *[sa.Column(column, sa.String(), nullable=True) for column in AVATAR_SLOT_COLUMNS],
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        *[sa.ForeignKeyConstraint([column], ["avatar_items.id"]) for column in AVATAR_SLOT_COLUMNS],
        sa.PrimaryKeyConstraint("company_id"),
    )

    op.create_table(
        "scene_templates",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("background_key", sa.String(), nullable=False),
        sa.Column("foreground_key", sa.String(), nullable=True),
        sa.Column("avatar_slot", sa.JSON(), nullable=False),
        sa.Column("width", sa.Integer(), nullable=False),
        sa.Column("height", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "composite_cache",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("context", sa.String(), nullable=False),
        sa.Column("content_hash", sa.String(), nullable=False),
        sa.Column("storage_key", sa.String(), nullable=False),
        sa.Column("public_url", sa.String(), nullable=True),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("last_accessed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("kind", "owner_id", "context", name="uq_composite_cache_slot"),
    )
    op.create_index(op.f("ix_composite_cache_owner_id"), "composite_cache", ["owner_id"], unique=False)
    op.create_index(op.f("ix_composite_cache_last_accessed_at"), "composite_cache", ["last_accessed_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_composite_cache_last_accessed_at"), table_name="composite_cache")
    op.drop_index(op.f("ix_composite_cache_owner_id"), table_name="composite_cache")
    op.drop_table("composite_cache")
    op.drop_table("scene_templates")
    op.drop_table("company_avatars")
    op.drop_index(op.f("ix_avatar_items_layer"), table_name="avatar_items")
    op.drop_table("avatar_items")
