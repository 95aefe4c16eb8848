"""Initial schema - users, saas_products, pricing_plans, price_snapshots, tracked_subscriptions, price_alerts.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users
    op.create_table(
        "users",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(320), unique=True, nullable=False),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column(
            "notification_preferences",
            JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # Products
    op.create_table(
        "saas_products",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("slug", sa.String(100), unique=True, nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("source_url", sa.Text(), nullable=False),
        sa.Column("category", sa.String(100), nullable=False, server_default="Other"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "extraction_status",
            sa.Enum(
                "pending",
                "in_progress",
                "success",
                "failed",
                name="extraction_status_enum",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("last_extracted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_saas_products_last_extracted_at", "saas_products", ["last_extracted_at"]
    )

    # Plans
    op.create_table(
        "pricing_plans",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "product_id",
            UUID(as_uuid=True),
            sa.ForeignKey("saas_products.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("billing_cycle", sa.String(20), nullable=False, server_default="monthly"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("features", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("current_price", sa.Float(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_pricing_plans_product_id", "pricing_plans", ["product_id"])

    # Price snapshots (append-only)
    op.create_table(
        "price_snapshots",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "plan_id",
            UUID(as_uuid=True),
            sa.ForeignKey("pricing_plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("features", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_price_snapshots_plan_id_observed_at",
        "price_snapshots",
        ["plan_id", "observed_at"],
    )

    # Tracked subscriptions
    op.create_table(
        "tracked_subscriptions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "plan_id",
            UUID(as_uuid=True),
            sa.ForeignKey("pricing_plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("alert_on_increase", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("alert_on_decrease", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "alert_on_new_features", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("target_price", sa.Float(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("user_id", "plan_id", name="uq_tracked_subscriptions_user_plan"),
    )
    op.create_index(
        "ix_tracked_subscriptions_plan_id", "tracked_subscriptions", ["plan_id"]
    )

    # Alerts
    op.create_table(
        "price_alerts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "plan_id",
            UUID(as_uuid=True),
            sa.ForeignKey("pricing_plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("old_price", sa.Float(), nullable=False),
        sa.Column("new_price", sa.Float(), nullable=False),
        sa.Column("delta_abs", sa.Float(), nullable=False),
        sa.Column("delta_percent", sa.Float(), nullable=True),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_price_alerts_user_id", "price_alerts", ["user_id"])


def downgrade() -> None:
    op.drop_table("price_alerts")
    op.drop_table("tracked_subscriptions")
    op.drop_table("price_snapshots")
    op.drop_table("pricing_plans")
    op.drop_table("saas_products")
    op.drop_table("users")
    sa.Enum(name="extraction_status_enum").drop(op.get_bind())  # type: ignore[arg-type]
