"""
Check that the migrations build the schema the models describe.

Autogenerate comparison does not look at partial index predicates, and the
recovery query relies on ``idx_notifications_dispatch_due`` being partial, so
those are checked against the reflected database separately. With
``--roundtrip`` every revision is also downgraded and re-applied.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from alembic.autogenerate import compare_metadata
from alembic.migration import MigrationContext
from sqlalchemy import inspect

from notification_service import models  # noqa: F401  # Ensure models are registered
from notification_service.config import settings
from notification_service.database import Base, create_engine, migrate_db


def _schema_diffs(connection) -> list[object]:
    context = MigrationContext.configure(connection, opts={"compare_type": True})
    return compare_metadata(context, Base.metadata)


def _partial_index_problems(connection) -> list[str]:
    """Model indexes declared partial for this dialect but not partial in the database."""
    dialect = connection.dialect.name
    option = f"{dialect}_where"
    inspector = inspect(connection)
    problems = []
    for table in Base.metadata.sorted_tables:
        reflected = {ix["name"]: ix for ix in inspector.get_indexes(table.name)}
        for index in table.indexes:
            if index.dialect_options[dialect].get("where") is None:
                continue
            found = reflected.get(index.name)
            if found is None:
                problems.append(f"{table.name}.{index.name}: missing")
            elif not found.get("dialect_options", {}).get(option):
                problems.append(f"{table.name}.{index.name}: not partial")
    return problems


async def check(url: str) -> list[str]:
    engine = create_engine(url)
    try:
        async with engine.connect() as conn:
            diffs = await conn.run_sync(_schema_diffs)
            partial = await conn.run_sync(_partial_index_problems)
    finally:
        await engine.dispose()
    return [str(diff) for diff in diffs] + partial


async def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Compare migrated schema with the models")
    parser.add_argument(
        "url",
        nargs="?",
        default=None,
        help="Database URL to migrate (default: DATABASE_URL)",
    )
    parser.add_argument(
        "--roundtrip",
        action="store_true",
        help="Downgrade to base and upgrade again before comparing",
    )
    args = parser.parse_args(argv)
    url = args.url or settings.database_url

    await migrate_db("head", url)
    if args.roundtrip:
        await migrate_db("base", url)
        await migrate_db("head", url)

    problems = await check(url)
    if problems:
        print("Migrations and notification models disagree:")
        for problem in problems:
            print(f"  {problem}")
        return 1

    print("Migrated schema matches the models.")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
