"""Create users, membership tiers, subscriptions and processed events tables

Revision ID: a1c4e7f20b38
Revises:
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "a1c4e7f20b38"
down_revision = None
branch_labels = None
depends_on = None

_OPEN_STATUS_PREDICATE = sa.text("status IN ('active', 'paused')")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("stripe_customer_id", name="uq_users_stripe_customer_id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "membership_tiers",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column(
            "creator_id",
            sa.BigInteger(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("interval", sa.String(length=16), nullable=False),
        sa.Column("perks", sa.JSON(), nullable=False),
        sa.Column("max_subscribers", sa.Integer(), nullable=True),
        sa.Column("current_subscribers", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "current_subscribers >= 0", name="ck_membership_tiers_count_non_negative"
        ),
        sa.CheckConstraint(
            "max_subscribers IS NULL OR current_subscribers <= max_subscribers",
            name="ck_membership_tiers_count_within_capacity",
        ),
        sa.CheckConstraint("price > 0", name="ck_membership_tiers_price_positive"),
    )
    op.create_index("ix_membership_tiers_creator_id", "membership_tiers", ["creator_id"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column(
            "subscriber_id",
            sa.BigInteger(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "creator_id",
            sa.BigInteger(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "tier_id", sa.BigInteger(), sa.ForeignKey("membership_tiers.id"), nullable=False
        ),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_anchor_day", sa.SmallInteger(), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("at_risk", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("payment_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_payment_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_paid_invoice_id", sa.String(length=64), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=64), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=64), nullable=True),
        sa.Column("checkout_session_id", sa.String(length=128), nullable=True),
        sa.Column("checkout_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "stripe_subscription_id", name="uq_subscriptions_stripe_subscription_id"
        ),
        sa.UniqueConstraint("checkout_session_id", name="uq_subscriptions_checkout_session_id"),
    )
    op.create_index("ix_subscriptions_subscriber_id", "subscriptions", ["subscriber_id"])
    op.create_index("ix_subscriptions_tier_id", "subscriptions", ["tier_id"])
    op.create_index(
        "ix_subscriptions_creator_status", "subscriptions", ["creator_id", "status"]
    )
    # 同一订阅者对同一创作者至多一条 active / paused 订阅
    op.create_index(
        "uq_subscriptions_open_pair",
        "subscriptions",
        ["subscriber_id", "creator_id"],
        unique=True,
        postgresql_where=_OPEN_STATUS_PREDICATE,
    )

    op.create_table(
        "processed_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("outcome", sa.String(length=16), nullable=False),
        sa.Column("error", sa.String(length=255), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_processed_events_event_id", "processed_events", ["event_id"], unique=True
    )


def downgrade() -> None:
    op.drop_index("ix_processed_events_event_id", table_name="processed_events")
    op.drop_table("processed_events")
    op.drop_index("uq_subscriptions_open_pair", table_name="subscriptions")
    op.drop_index("ix_subscriptions_creator_status", table_name="subscriptions")
    op.drop_index("ix_subscriptions_tier_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_subscriber_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_membership_tiers_creator_id", table_name="membership_tiers")
    op.drop_table("membership_tiers")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
