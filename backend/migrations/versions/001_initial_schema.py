"""Initial schema: users, integrations, quota ledger and project data

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

Tables:
- users, integrations (seeded catalog), user_integrations, oauth_states
- subscriptions, credit_balances, credit_transactions, usage_logs
- projects, mockups, brand_kits, prompt_templates, imported_products
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def _user_fk(unique: bool = False) -> sa.Column:
    return sa.Column(
        "user_id",
        sa.Integer(),
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=unique,
        index=True,
    )


def upgrade() -> None:
    """Create all tables."""

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("email", sa.String(255), unique=True, index=True, nullable=False),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "integrations",
        sa.Column(
            "id",
            sa.String(50),
            primary_key=True,
            comment="Platform slug (e.g., 'shopify', 'google-drive')",
        ),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("category", sa.String(30), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("status", sa.String(20), server_default="active", nullable=False),
        sa.Column(
            "oauth_provider",
            sa.String(50),
            nullable=True,
            comment="Key into the OAuth provider registry",
        ),
    )

    op.create_table(
        "user_integrations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _user_fk(),
        sa.Column(
            "integration_id",
            sa.String(50),
            sa.ForeignKey("integrations.id"),
            nullable=False,
            index=True,
        ),
        sa.Column("access_token", sa.Text(), nullable=False, comment="Encrypted access token"),
        sa.Column("refresh_token", sa.Text(), nullable=True, comment="Encrypted refresh token"),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("connected_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_id", "integration_id", name="uq_user_integrations_user_integration"),
    )

    op.create_table(
        "oauth_states",
        sa.Column("state", sa.String(128), primary_key=True),
        _user_fk(),
        sa.Column("integration_id", sa.String(50), sa.ForeignKey("integrations.id"), nullable=False),
        sa.Column("settings", sa.JSON(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        _user_fk(unique=True),
        sa.Column("plan_id", sa.String(20), server_default="free", nullable=False),
        sa.Column("status", sa.String(20), server_default="active", nullable=False),
        sa.Column("monthly_quota", sa.Integer(), nullable=False),
        sa.Column("remaining_quota", sa.Integer(), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("remaining_quota >= 0", name="ck_subscriptions_remaining_quota"),
    )

    op.create_table(
        "credit_balances",
        sa.Column("id", sa.Integer(), primary_key=True),
        _user_fk(unique=True),
        sa.Column("balance", sa.Integer(), server_default="0", nullable=False),
        *_timestamps(),
        sa.CheckConstraint("balance >= 0", name="ck_credit_balances_balance"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        _user_fk(),
        sa.Column("transaction_type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False, comment="Signed credit delta"),
        sa.Column("package_id", sa.String(20), nullable=True),
        sa.Column("operation_kind", sa.String(40), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "usage_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        _user_fk(),
        sa.Column("operation_kind", sa.String(40), nullable=False),
        sa.Column("quota_used", sa.Integer(), server_default="0", nullable=False),
        sa.Column("credits_used", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "projects",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _user_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=True),
        sa.Column("aspect_ratio", sa.String(10), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "mockups",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "project_id",
            sa.Uuid(),
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        _user_fk(),
        sa.Column("image_path", sa.String(500), nullable=False),
        sa.Column("thumbnail_path", sa.String(500), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "brand_kits",
        sa.Column("id", sa.Integer(), primary_key=True),
        _user_fk(unique=True),
        sa.Column("logo_path", sa.String(500), nullable=True),
        sa.Column("use_watermark", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("colors", sa.JSON(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "prompt_templates",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _user_fk(),
        sa.Column("text", sa.Text(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "imported_products",
        sa.Column("id", sa.Uuid(), primary_key=True),
        _user_fk(),
        sa.Column("platform", sa.String(50), nullable=False),
        sa.Column("remote_id", sa.String(100), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("vendor", sa.String(255), nullable=True),
        sa.Column("product_type", sa.String(255), nullable=True),
        sa.Column("handle", sa.String(255), nullable=True),
        sa.Column("images", sa.JSON(), nullable=False),
        sa.Column("variants", sa.JSON(), nullable=False),
        sa.Column("product_metadata", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "platform", "remote_id", name="uq_imported_products_remote"),
    )


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    for table in (
        "imported_products",
        "prompt_templates",
        "brand_kits",
        "mockups",
        "projects",
        "usage_logs",
        "credit_transactions",
        "credit_balances",
        "subscriptions",
        "oauth_states",
        "user_integrations",
        "integrations",
        "users",
    ):
        op.drop_table(table)
