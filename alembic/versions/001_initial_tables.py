"""initial subscription tracker tables

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- subscription_categories ---
    op.create_table(
        "subscription_categories",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_subscription_categories_user_id", "subscription_categories", ["user_id"])

    # --- subscriptions ---
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("price", sa.Float, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("billing_cycle", sa.String(16), nullable=False, server_default="Monthly"),
        sa.Column("start_date", sa.Date, nullable=False),
        sa.Column("next_billing_date", sa.Date, nullable=False),
        sa.Column(
            "category_id",
            sa.String(36),
            sa.ForeignKey("subscription_categories.id"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_category_id", "subscriptions", ["category_id"])

    # --- user_access ---
    op.create_table(
        "user_access",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("user_type", sa.String(16), nullable=False, server_default="new"),
        sa.Column("has_lifetime_access", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("subscription_status", sa.String(16), nullable=False, server_default="free"),
        sa.Column("trial_start_date", sa.DateTime, nullable=True),
        sa.Column("trial_end_date", sa.DateTime, nullable=True),
        sa.Column("subscription_start_date", sa.DateTime, nullable=True),
        sa.Column("subscription_end_date", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_user_access_user_id", "user_access", ["user_id"], unique=True)

    # --- user_preferences ---
    op.create_table(
        "user_preferences",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_user_preferences_user_id", "user_preferences", ["user_id"], unique=True)

    # --- payment_webhook_events ---
    op.create_table(
        "payment_webhook_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(255), nullable=False, unique=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("payment_id", sa.String(255), nullable=True),
        sa.Column("user_id", sa.String(128), nullable=True),
        sa.Column("raw_data", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_payment_webhook_events_user_id", "payment_webhook_events", ["user_id"])


def downgrade() -> None:
    op.drop_table("payment_webhook_events")
    op.drop_table("user_preferences")
    op.drop_table("user_access")
    op.drop_table("subscriptions")
    op.drop_table("subscription_categories")
