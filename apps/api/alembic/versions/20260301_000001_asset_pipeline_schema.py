"""create asset pipeline schema

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20260301_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "generated_assets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("asset_key", sa.String(), nullable=False),
        sa.Column("variant", sa.Integer(), nullable=False),
        sa.Column("base_prompt", sa.Text(), nullable=False),
        sa.Column("current_prompt", sa.Text(), nullable=False),
        sa.Column("prompt_version", sa.Integer(), nullable=False),
        sa.Column("rejection_count", sa.Integer(), nullable=False),
        sa.Column("system_instructions", sa.Text(), nullable=True),
        sa.Column("generation_settings", sa.JSON(), nullable=True),
        sa.Column("generation_model", sa.String(), nullable=True),
        sa.Column("private_key", sa.String(), nullable=True),
        sa.Column("processed_key", sa.String(), nullable=True),
        sa.Column("public_key", sa.String(), nullable=True),
        sa.Column("public_url", sa.String(), nullable=True),
        sa.Column("parent_asset_id", sa.Integer(), nullable=True),
        sa.Column("sprite_variant", sa.String(), nullable=True),
        sa.Column("auto_created", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("background_removed", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("pipeline_status", sa.String(), nullable=True),
        sa.Column("pipeline_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pipeline_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pipeline_error", sa.Text(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["parent_asset_id"], ["generated_assets.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("category", "asset_key", "variant", name="uq_generated_assets_version"),
    )
    op.create_index(op.f("ix_generated_assets_category"), "generated_assets", ["category"], unique=False)
    op.create_index(op.f("ix_generated_assets_asset_key"), "generated_assets", ["asset_key"], unique=False)
    op.create_index(op.f("ix_generated_assets_parent_asset_id"), "generated_assets", ["parent_asset_id"], unique=False)
    op.create_index(op.f("ix_generated_assets_status"), "generated_assets", ["status"], unique=False)
    op.create_index(op.f("ix_generated_assets_pipeline_status"), "generated_assets", ["pipeline_status"], unique=False)
    op.create_index("ix_generated_assets_active", "generated_assets", ["category", "asset_key", "is_active"], unique=False)

    op.create_table(
        "asset_rejections",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("asset_id", sa.Integer(), nullable=False),
        sa.Column("rejected_by", sa.String(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=False),
        sa.Column("prompt_at_rejection", sa.Text(), nullable=True),
        sa.Column("prompt_version", sa.Integer(), nullable=True),
        sa.Column("storage_key_rejected", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["asset_id"], ["generated_assets.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_asset_rejections_asset_id"), "asset_rejections", ["asset_id"], unique=False)

    op.create_table(
        "asset_configurations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("asset_key", sa.String(), nullable=False),
        sa.Column("active_sprite_id", sa.Integer(), nullable=True),
        sa.Column("cost_override", sa.Integer(), nullable=True),
        sa.Column("scale_override", sa.Float(), nullable=True),
        sa.Column("config_json", sa.JSON(), nullable=True),
        sa.Column("is_published", sa.Boolean(), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("published_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["active_sprite_id"], ["generated_assets.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("category", "asset_key", name="uq_asset_configurations_key"),
    )
    op.create_index(op.f("ix_asset_configurations_category"), "asset_configurations", ["category"], unique=False)
    op.create_index(op.f("ix_asset_configurations_is_published"), "asset_configurations", ["is_published"], unique=False)

    op.create_table(
        "asset_generation_queue",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("asset_id", sa.Integer(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("queue_job_id", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["asset_id"], ["generated_assets.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_asset_generation_queue_asset_id"), "asset_generation_queue", ["asset_id"], unique=False)
    op.create_index(op.f("ix_asset_generation_queue_status"), "asset_generation_queue", ["status"], unique=False)

    op.create_table(
        "asset_audit_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("asset_id", sa.Integer(), nullable=True),
        sa.Column("actor", sa.String(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["asset_id"], ["generated_assets.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_asset_audit_log_action"), "asset_audit_log", ["action"], unique=False)
    op.create_index(op.f("ix_asset_audit_log_asset_id"), "asset_audit_log", ["asset_id"], unique=False)
    op.create_index(op.f("ix_asset_audit_log_created_at"), "asset_audit_log", ["created_at"], unique=False)

    op.create_table(
        "prompt_templates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("asset_key", sa.String(), nullable=False),
        sa.Column("template_name", sa.String(), nullable=True),
        sa.Column("base_prompt", sa.Text(), nullable=False),
        sa.Column("style_guide", sa.Text(), nullable=True),
        sa.Column("system_instructions", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("change_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_prompt_templates_lookup", "prompt_templates", ["category", "asset_key", "is_active"], unique=False)

    op.create_table(
        "reference_images",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("storage_key", sa.String(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=True),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("uploaded_by", sa.String(), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False),
        sa.Column("is_archived", sa.Boolean(), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_reference_images_category"), "reference_images", ["category"], unique=False)
    op.create_index(op.f("ix_reference_images_is_archived"), "reference_images", ["is_archived"], unique=False)

    op.create_table(
        "asset_reference_links",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("asset_id", sa.Integer(), nullable=False),
        sa.Column("reference_image_id", sa.Integer(), nullable=True),
        sa.Column("approved_asset_id", sa.Integer(), nullable=True),
        sa.Column("link_type", sa.String(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.CheckConstraint(
            "(link_type = 'library' AND reference_image_id IS NOT NULL AND approved_asset_id IS NULL) OR "
            "(link_type = 'approved_asset' AND approved_asset_id IS NOT NULL AND reference_image_id IS NULL)",
            name="ck_asset_reference_links_target",
        ),
        sa.ForeignKeyConstraint(["asset_id"], ["generated_assets.id"]),
        sa.ForeignKeyConstraint(["approved_asset_id"], ["generated_assets.id"]),
        sa.ForeignKeyConstraint(["reference_image_id"], ["reference_images.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_asset_reference_links_asset_id"), "asset_reference_links", ["asset_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_asset_reference_links_asset_id"), table_name="asset_reference_links")
    op.drop_table("asset_reference_links")
    op.drop_index(op.f("ix_reference_images_is_archived"), table_name="reference_images")
    op.drop_index(op.f("ix_reference_images_category"), table_name="reference_images")
    op.drop_table("reference_images")
    op.drop_index("ix_prompt_templates_lookup", table_name="prompt_templates")
    op.drop_table("prompt_templates")
    op.drop_index(op.f("ix_asset_audit_log_created_at"), table_name="asset_audit_log")
    op.drop_index(op.f("ix_asset_audit_log_asset_id"), table_name="asset_audit_log")
    op.drop_index(op.f("ix_asset_audit_log_action"), table_name="asset_audit_log")
    op.drop_table("asset_audit_log")
    op.drop_index(op.f("ix_asset_generation_queue_status"), table_name="asset_generation_queue")
    op.drop_index(op.f("ix_asset_generation_queue_asset_id"), table_name="asset_generation_queue")
    op.drop_table("asset_generation_queue")
    op.drop_index(op.f("ix_asset_configurations_is_published"), table_name="asset_configurations")
    op.drop_index(op.f("ix_asset_configurations_category"), table_name="asset_configurations")
    op.drop_table("asset_configurations")
    op.drop_index(op.f("ix_asset_rejections_asset_id"), table_name="asset_rejections")
    op.drop_table("asset_rejections")
    op.drop_index("ix_generated_assets_active", table_name="generated_assets")
    op.drop_index(op.f("ix_generated_assets_pipeline_status"), table_name="generated_assets")
    op.drop_index(op.f("ix_generated_assets_status"), table_name="generated_assets")
    op.drop_index(op.f("ix_generated_assets_parent_asset_id"), table_name="generated_assets")
    op.drop_index(op.f("ix_generated_assets_asset_key"), table_name="generated_assets")
    op.drop_index(op.f("ix_generated_assets_category"), table_name="generated_assets")
    op.drop_table("generated_assets")
