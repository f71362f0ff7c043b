"""Create subscription, payment and onboarding_progress tables.

Revision ID: b1c2d3e4f5a6
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "b1c2d3e4f5a6"
down_revision = None
branch_labels = None
depends_on = None


def _audit_columns():
    return [
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("modified_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    """Create the billing tables.

    ``uq_subscription_org_open`` is a partial unique index: an organization may
    keep any number of cancelled subscriptions but only one open one.
    """
    op.create_table(
        "subscription",
        *_audit_columns(),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("external_ref", sa.String(length=255), nullable=False),
        sa.Column("plan_id", sa.String(length=100), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("monthly_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("current_period_start", sa.DateTime(), nullable=True),
        sa.Column("current_period_end", sa.DateTime(), nullable=True),
        sa.Column("status_event_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_subscription_external_ref", "subscription", ["external_ref"], unique=True
    )
    op.create_index(
        "uq_subscription_org_open",
        "subscription",
        ["organization_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'cancelled'"),
        sqlite_where=sa.text("status <> 'cancelled'"),
    )
    op.create_index(
        "idx_subscription_organization_id", "subscription", ["organization_id"]
    )

    op.create_table(
        "payment",
        *_audit_columns(),
        sa.Column("external_ref", sa.String(length=255), nullable=False),
        sa.Column("ref_kind", sa.String(length=32), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=True),
        sa.Column("organization_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("plan_id", sa.String(length=100), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("payment_method", sa.String(length=64), nullable=False),
        sa.ForeignKeyConstraint(
            ["subscription_id"], ["subscription.id"], name="fk_payment_subscription_id"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("uq_payment_external_ref", "payment", ["external_ref"], unique=True)
    op.create_index("idx_payment_subscription_id", "payment", ["subscription_id"])

    op.create_table(
        "onboarding_progress",
        *_audit_columns(),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("current_step", sa.String(length=64), nullable=True),
        sa.Column("subscription_data", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )


def downgrade():
    """Drop the billing tables."""
    op.drop_table("onboarding_progress")
    op.drop_index("idx_payment_subscription_id", table_name="payment")
    op.drop_index("uq_payment_external_ref", table_name="payment")
    op.drop_table("payment")
    op.drop_index("idx_subscription_organization_id", table_name="subscription")
    op.drop_index("uq_subscription_org_open", table_name="subscription")
    op.drop_index("uq_subscription_external_ref", table_name="subscription")
    op.drop_table("subscription")
