"""Initial notification schema."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261017_01_initial"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

KINDS = (
    "message", "match", "like", "superlike", "rizz", "connection", "system",
    "promotional", "reminder", "update", "alert", "warning", "error", "success",
    "info", "achievement", "event", "social", "payment", "security", "maintenance",
    "date_request", "date_accepted", "date_declined", "date_canceled", "date_reminder",
)
PRIORITIES = ("low", "normal", "high", "urgent")
STATES = ("pending", "sent", "delivered", "read", "failed")


def upgrade() -> None:
    op.create_table(
        "notifications",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("recipient", sa.String(100), nullable=False),
        sa.Column("producer", sa.String(120), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column(
            "kind",
            sa.Enum(*KINDS, name="notification_kind", native_enum=False, length=32),
            nullable=False,
        ),
        sa.Column(
            "priority",
            sa.Enum(*PRIORITIES, name="notification_priority", native_enum=False, length=16),
            nullable=False,
        ),
        sa.Column("priority_rank", sa.Integer(), nullable=False),
        sa.Column(
            "state",
            sa.Enum(*STATES, name="notification_state", native_enum=False, length=16),
            nullable=False,
        ),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("read_flag", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("metadata", JSON_TYPE, nullable=False),
        sa.Column("per_channel", JSON_TYPE, nullable=False),
        sa.Column("scheduled_for", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_notifications_recipient_created",
        "notifications",
        ["recipient", sa.text("created_at DESC")],
    )
    op.create_index(
        "idx_notifications_recipient_kind",
        "notifications",
        ["recipient", "kind", sa.text("created_at DESC")],
    )
    op.create_index(
        "idx_notifications_recipient_read",
        "notifications",
        ["recipient", "read_flag", sa.text("created_at DESC")],
    )
    op.create_index(
        "idx_notifications_in_flight",
        "notifications",
        ["state", "scheduled_for"],
        postgresql_where=sa.text("state IN ('pending', 'sent')"),
        sqlite_where=sa.text("state IN ('pending', 'sent')"),
    )
    op.create_index("idx_notifications_expires", "notifications", ["expires_at"])

    op.create_table(
        "idempotency_keys",
        sa.Column("key", sa.String(255), primary_key=True),
        sa.Column("producer", sa.String(120), primary_key=True),
        sa.Column("request_hash", sa.String(64), nullable=False),
        sa.Column("notification_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("response_body", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index("idx_idempotency_created", "idempotency_keys", ["created_at"])


def downgrade() -> None:
    op.drop_index("idx_idempotency_created", table_name="idempotency_keys")
    op.drop_table("idempotency_keys")
    op.drop_index("idx_notifications_expires", table_name="notifications")
    op.drop_index("idx_notifications_in_flight", table_name="notifications")
    op.drop_index("idx_notifications_recipient_read", table_name="notifications")
    op.drop_index("idx_notifications_recipient_kind", table_name="notifications")
    op.drop_index("idx_notifications_recipient_created", table_name="notifications")
    op.drop_table("notifications")
