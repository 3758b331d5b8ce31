"""
Tests for the Alembic migrations shipped with the package.
"""

import uuid
from datetime import timedelta
from pathlib import Path

import sqlalchemy as sa
from alembic.script import ScriptDirectory
from sqlalchemy.dialects import postgresql

import notification_service
from notification_service.database import _alembic_config, create_engine, migrate_db
from notification_service.delivery.state import new_channel_vector
from notification_service.models.enums import Channel
from notification_service.models.notification import as_utc, utcnow
from scripts.check_migrations import _partial_index_problems

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

notifications = sa.table(
    "notifications",
    sa.column("id", sa.Uuid(as_uuid=True)),
    sa.column("recipient", sa.String()),
    sa.column("producer", sa.String()),
    sa.column("title", sa.String()),
    sa.column("body", sa.Text()),
    sa.column("kind", sa.String()),
    sa.column("priority", sa.String()),
    sa.column("priority_rank", sa.Integer()),
    sa.column("state", sa.String()),
    sa.column("metadata", JSON_TYPE),
    sa.column("per_channel", JSON_TYPE),
    sa.column("scheduled_for", sa.TIMESTAMP(timezone=True)),
    sa.column("created_at", sa.TIMESTAMP(timezone=True)),
    sa.column("updated_at", sa.TIMESTAMP(timezone=True)),
    sa.column("next_dispatch_at", sa.TIMESTAMP(timezone=True)),
)


def row(state: str, per_channel: dict, **values) -> dict:
    now = utcnow()
    return {
        "id": uuid.uuid4(),
        "recipient": "U1",
        "producer": "U1",
        "title": "T",
        "body": "M",
        "kind": "like",
        "priority": "normal",
        "priority_rank": 1,
        "state": state,
        "metadata": {},
        "per_channel": per_channel,
        "scheduled_for": None,
        "created_at": now,
        "updated_at": now,
        **values,
    }


class TestMigrationScripts:
    """The migration environment ships inside the package."""

    def test_config_points_inside_package(self):
        """Migrations resolve without an alembic.ini next to the code."""
        config = _alembic_config("sqlite+aiosqlite:///unused.db")
        location = Path(config.get_main_option("script_location"))

        assert config.config_file_name is None
        assert location.parent == Path(notification_service.__file__).resolve().parent
        assert (location / "env.py").is_file()
        assert ScriptDirectory.from_config(config).get_heads() == ["20261017_02_dispatch_due"]

    async def test_upgrade_creates_dispatch_due_column(self, tmp_path):
        """A fresh database migrated to head has the recovery column and index."""
        url = f"sqlite+aiosqlite:///{tmp_path / 'migrated.db'}"
        await migrate_db("head", url)

        engine = create_engine(url)
        async with engine.connect() as conn:
            columns = await conn.run_sync(
                lambda sync: {c["name"] for c in sa.inspect(sync).get_columns("notifications")}
            )
            indexes = await conn.run_sync(
                lambda sync: {ix["name"] for ix in sa.inspect(sync).get_indexes("notifications")}
            )
        await engine.dispose()

        assert "next_dispatch_at" in columns
        assert "idx_notifications_dispatch_due" in indexes
        assert "idx_notifications_in_flight" not in indexes

    async def test_upgrade_backfills_outstanding_work(self, tmp_path):
        """Existing records get a due time only if a channel is still outstanding."""
        url = f"sqlite+aiosqlite:///{tmp_path / 'backfill.db'}"
        await migrate_db("20261017_01_initial", url)

        scheduled_at = utcnow() + timedelta(hours=1)
        settled = new_channel_vector([Channel.PUSH])
        settled["push"]["dispatched"] = True
        pending = row("pending", new_channel_vector([Channel.PUSH]))
        scheduled = row("pending", new_channel_vector([Channel.PUSH]), scheduled_for=scheduled_at)
        done = row("sent", settled)
        read = row("read", new_channel_vector([Channel.PUSH]))

        engine = create_engine(url)
        async with engine.begin() as conn:
            await conn.execute(sa.insert(notifications), [pending, scheduled, done, read])
        await engine.dispose()

        await migrate_db("head", url)

        engine = create_engine(url)
        async with engine.connect() as conn:
            result = await conn.execute(
                sa.select(notifications.c.id, notifications.c.next_dispatch_at)
            )
            due = {r.id: as_utc(r.next_dispatch_at) for r in result}
        await engine.dispose()

        assert due[pending["id"]] is not None
        assert abs(due[scheduled["id"]] - scheduled_at) < timedelta(seconds=1)
        assert due[done["id"]] is None
        assert due[read["id"]] is None


async def partial_problems(url: str) -> list[str]:
    engine = create_engine(url)
    async with engine.connect() as conn:
        problems = await conn.run_sync(_partial_index_problems)
    await engine.dispose()
    return problems


class TestCheckMigrations:
    """The schema check catches partial indexes autogenerate cannot compare."""

    async def test_migrated_head_has_no_partial_index_problems(self, tmp_path):
        """A database at head matches every partial index of the models."""
        url = f"sqlite+aiosqlite:///{tmp_path / 'head.db'}"
        await migrate_db("head", url)

        assert await partial_problems(url) == []

    async def test_missing_partial_index_is_reported(self, tmp_path):
        """Dropping the recovery index shows up as missing."""
        url = f"sqlite+aiosqlite:///{tmp_path / 'missing.db'}"
        await migrate_db("head", url)

        engine = create_engine(url)
        async with engine.begin() as conn:
            await conn.execute(sa.text("DROP INDEX idx_notifications_dispatch_due"))
        await engine.dispose()

        assert await partial_problems(url) == [
            "notifications.idx_notifications_dispatch_due: missing"
        ]

    async def test_full_index_is_reported_as_not_partial(self, tmp_path):
        """An index with the right name but no predicate is flagged."""
        url = f"sqlite+aiosqlite:///{tmp_path / 'full.db'}"
        await migrate_db("head", url)

        engine = create_engine(url)
        async with engine.begin() as conn:
            await conn.execute(sa.text("DROP INDEX idx_notifications_dispatch_due"))
            await conn.execute(
                sa.text(
                    "CREATE INDEX idx_notifications_dispatch_due "
                    "ON notifications (next_dispatch_at, id)"
                )
            )
        await engine.dispose()

        assert await partial_problems(url) == [
            "notifications.idx_notifications_dispatch_due: not partial"
        ]
