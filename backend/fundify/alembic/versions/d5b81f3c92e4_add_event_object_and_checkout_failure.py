"""Add processed event object id, processor pause flag and checkout failure columns

Revision ID: d5b81f3c92e4
Revises: a1c4e7f20b38
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "d5b81f3c92e4"
down_revision = "a1c4e7f20b38"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "processed_events", sa.Column("object_id", sa.String(length=255), nullable=True)
    )
    op.create_index("ix_processed_events_object_id", "processed_events", ["object_id"])

    op.add_column(
        "subscriptions",
        sa.Column(
            "paused_by_processor", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
    )
    op.add_column("subscriptions", sa.Column("failure_code", sa.Integer(), nullable=True))
    op.add_column(
        "subscriptions", sa.Column("failure_reason", sa.String(length=255), nullable=True)
    )


def downgrade() -> None:
    op.drop_column("subscriptions", "failure_reason")
    op.drop_column("subscriptions", "failure_code")
    op.drop_column("subscriptions", "paused_by_processor")
    op.drop_index("ix_processed_events_object_id", table_name="processed_events")
    op.drop_column("processed_events", "object_id")
