"""Dialect-aware INSERT ... ON CONFLICT DO NOTHING.

Uniqueness constraints are the pipeline's only mutual-exclusion mechanism, so
every idempotent write goes through here. The statement carries no conflict
target: any unique violation (including partial indexes) turns the insert into
a no-op, and RETURNING yields no row.
"""

from typing import Any

from sqlalchemy import Table
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def _insert_for(session: AsyncSession, table: Table):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(table)
    if dialect == "sqlite":
        return sqlite_insert(table)
    raise RuntimeError(f"Unsupported database dialect for conflict-free inserts: {dialect}")


async def insert_or_ignore(session: AsyncSession, table: Table, values: dict[str, Any], returning) -> Any | None:
    """Insert one row unless it violates a unique constraint.

    Returns the ``returning`` column of the new row, or None when the row was
    not inserted because a conflicting row already exists.
    """
    stmt = _insert_for(session, table).values(**values).on_conflict_do_nothing().returning(returning)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
