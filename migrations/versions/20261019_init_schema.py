"""init schema: users and humanizations

Revision ID: 20261019_init_schema
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_init_schema"
down_revision = None
branch_labels = None
depends_on = None

PLAN_VALUES = ("free", "starter", "pro", "premium")
BILLING_PERIOD_VALUES = ("monthly", "annual")
SUBSCRIPTION_STATUS_VALUES = ("none", "active", "canceling", "canceled")


def upgrade() -> None:
    plan_type = sa.Enum(*PLAN_VALUES, name="plan_type")
    billing_period = sa.Enum(*BILLING_PERIOD_VALUES, name="billing_period")
    subscription_status = sa.Enum(
        *SUBSCRIPTION_STATUS_VALUES, name="subscription_status"
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("plan", plan_type, nullable=False, server_default="free"),
        sa.Column("word_limit", sa.Integer, nullable=False, server_default="500"),
        sa.Column("words_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("billing_period", billing_period, nullable=True),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=True),
        sa.Column(
            "subscription_status",
            subscription_status,
            nullable=False,
            server_default="none",
        ),
        sa.Column("subscription_period_end", sa.DateTime(timezone=True)),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.CheckConstraint("words_used >= 0", name="ck_users_words_used_nonneg"),
    )
    op.create_index(
        "ix_users_stripe_subscription_id", "users", ["stripe_subscription_id"]
    )

    op.create_table(
        "humanizations",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "user_id",
            sa.String(64),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("input_text", sa.Text, nullable=False),
        sa.Column("output_text", sa.Text, nullable=False),
        sa.Column("words_used", sa.Integer, nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    )
    op.create_index("ix_humanizations_user_id", "humanizations", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_humanizations_user_id", table_name="humanizations")
    op.drop_table("humanizations")
    op.drop_index("ix_users_stripe_subscription_id", table_name="users")
    op.drop_table("users")
    sa.Enum(name="subscription_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="billing_period").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="plan_type").drop(op.get_bind(), checkfirst=True)
