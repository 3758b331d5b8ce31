"""Track the next outstanding dispatch per notification."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from notification_service.delivery.state import dispatch_due_at
from notification_service.models.enums import NotificationState
from notification_service.models.notification import as_utc

revision = "20261017_02_dispatch_due"
down_revision = "20261017_01_initial"
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

notifications = sa.table(
    "notifications",
    sa.column("id", sa.Uuid(as_uuid=True)),
    sa.column("state", sa.String(16)),
    sa.column("per_channel", JSON_TYPE),
    sa.column("scheduled_for", sa.TIMESTAMP(timezone=True)),
    sa.column("created_at", sa.TIMESTAMP(timezone=True)),
    sa.column("next_dispatch_at", sa.TIMESTAMP(timezone=True)),
)


def upgrade() -> None:
    op.add_column(
        "notifications",
        sa.Column("next_dispatch_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )

    connection = op.get_bind()
    rows = connection.execute(
        sa.select(
            notifications.c.id,
            notifications.c.state,
            notifications.c.per_channel,
            notifications.c.scheduled_for,
            notifications.c.created_at,
        ).where(notifications.c.state.in_(["pending", "sent", "delivered"]))
    ).all()
    for row in rows:
        due = dispatch_due_at(
            NotificationState(row.state),
            row.per_channel or {},
            as_utc(row.scheduled_for),
            as_utc(row.created_at),
        )
        if due is not None:
            connection.execute(
                sa.update(notifications)
                .where(notifications.c.id == row.id)
                .values(next_dispatch_at=due)
            )

    op.drop_index("idx_notifications_in_flight", table_name="notifications")
    op.create_index(
        "idx_notifications_dispatch_due",
        "notifications",
        ["next_dispatch_at", "id"],
        postgresql_where=sa.text("next_dispatch_at IS NOT NULL"),
        sqlite_where=sa.text("next_dispatch_at IS NOT NULL"),
    )


def downgrade() -> None:
    op.drop_index("idx_notifications_dispatch_due", table_name="notifications")
    op.create_index(
        "idx_notifications_in_flight",
        "notifications",
        ["state", "scheduled_for"],
        postgresql_where=sa.text("state IN ('pending', 'sent')"),
        sqlite_where=sa.text("state IN ('pending', 'sent')"),
    )
    with op.batch_alter_table("notifications") as batch_op:
        batch_op.drop_column("next_dispatch_at")
