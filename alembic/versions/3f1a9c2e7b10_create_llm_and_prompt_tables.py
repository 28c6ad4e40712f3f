"""create llm provider, usage and prompt tables

Revision ID: 3f1a9c2e7b10
Revises:
Create Date: 2026-10-19 09:12:44.120318

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '3f1a9c2e7b10'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

MONEY = sa.Numeric(18, 8)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "llm_providers",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.String(1000), nullable=False),
        sa.Column("kind", sa.String(50), nullable=False),
        sa.Column("endpoint", sa.String(2048), nullable=False),
        sa.Column("encrypted_api_key", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("default_model", sa.String(255), nullable=False),
        sa.Column("requests_per_minute", sa.Integer(), nullable=False),
        sa.Column("tokens_per_minute", sa.Integer(), nullable=False),
        sa.Column(
            "fallback_provider_id", sa.Uuid(), sa.ForeignKey("llm_providers.id"), nullable=True
        ),
        *_timestamps(),
    )
    op.create_index("ix_llm_providers_is_active", "llm_providers", ["is_active"])

    op.create_table(
        "llm_models",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("provider_id", sa.Uuid(), sa.ForeignKey("llm_providers.id"), nullable=False),
        sa.Column("model_id", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("context_window", sa.Integer(), nullable=False),
        sa.Column("input_cost_per_1k", MONEY, nullable=False),
        sa.Column("output_cost_per_1k", MONEY, nullable=False),
        sa.Column("text_generation", sa.Boolean(), nullable=False),
        sa.Column("code_generation", sa.Boolean(), nullable=False),
        sa.Column("image_analysis", sa.Boolean(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("provider_id", "model_id"),
    )
    op.create_index("ix_llm_models_provider_id", "llm_models", ["provider_id"])

    op.create_table(
        "llm_usage",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("custom_provider_settings", sa.Boolean(), nullable=False),
        sa.Column(
            "preferred_provider_id", sa.Uuid(), sa.ForeignKey("llm_providers.id"), nullable=True
        ),
        sa.Column("has_limit", sa.Boolean(), nullable=False),
        sa.Column("monthly_token_limit", sa.Integer(), nullable=False),
        sa.Column("alert_threshold", sa.Float(), nullable=False),
        sa.Column("current_tokens", sa.Integer(), nullable=False),
        sa.Column("current_requests", sa.Integer(), nullable=False),
        sa.Column("current_cost", MONEY, nullable=False),
        sa.Column("last_updated", sa.DateTime(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_llm_usage_tenant_id", "llm_usage", ["tenant_id"], unique=True)

    op.create_table(
        "llm_model_overrides",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("provider_id", sa.Uuid(), sa.ForeignKey("llm_providers.id"), nullable=False),
        sa.Column("model_id", sa.String(255), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "provider_id"),
    )
    op.create_index("ix_llm_model_overrides_tenant_id", "llm_model_overrides", ["tenant_id"])

    op.create_table(
        "llm_usage_history",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("tokens", sa.Integer(), nullable=False),
        sa.Column("requests", sa.Integer(), nullable=False),
        sa.Column("cost", MONEY, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "year", "month"),
    )
    op.create_index("ix_llm_usage_history_tenant_id", "llm_usage_history", ["tenant_id"])

    op.create_table(
        "llm_usage_alerts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("message", sa.String(2000), nullable=False),
        sa.Column("acknowledged", sa.Boolean(), nullable=False),
        sa.Column("acknowledged_by", sa.Uuid(), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_llm_usage_alerts_tenant_id", "llm_usage_alerts", ["tenant_id"])

    op.create_table(
        "prompts",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.String(1000), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("is_system", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False),
        sa.Column("success_rate", sa.Float(), nullable=False),
        sa.Column("average_tokens", sa.Float(), nullable=False),
        sa.Column("average_response_time_ms", sa.Float(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_prompts_tenant_id", "prompts", ["tenant_id"])

    op.create_table(
        "prompt_versions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("prompt_id", sa.Uuid(), sa.ForeignKey("prompts.id"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("changed_by", sa.Uuid(), nullable=True),
        sa.Column("changed_at", sa.DateTime(), nullable=False),
        sa.Column("change_reason", sa.String(500), nullable=False),
        sa.UniqueConstraint("prompt_id", "version"),
    )
    op.create_index("ix_prompt_versions_prompt_id", "prompt_versions", ["prompt_id"])


def downgrade() -> None:
    op.drop_table("prompt_versions")
    op.drop_table("prompts")
    op.drop_table("llm_usage_alerts")
    op.drop_table("llm_usage_history")
    op.drop_table("llm_model_overrides")
    op.drop_table("llm_usage")
    op.drop_table("llm_models")
    op.drop_table("llm_providers")
