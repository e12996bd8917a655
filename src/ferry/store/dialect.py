"""Dialect-aware SQL helpers — insert-or-ignore and engine detection."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy import Engine
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession


def get_dialect(engine: Engine | AsyncEngine) -> str:
    """Return 'sqlite', 'postgresql', or the raw dialect name."""
    # AsyncEngine wraps a sync engine
    sync_engine = getattr(engine, "sync_engine", engine)
    name = sync_engine.dialect.name
    if name in ("postgresql", "postgres"):
        return "postgresql"
    return name


def session_dialect(session: AsyncSession) -> str:
    bind = session.bind
    return get_dialect(bind) if bind is not None else "sqlite"


async def insert_ignore(
    session: AsyncSession,
    model: type,
    rows: Iterable[dict[str, Any]],
    conflict_keys: list[str],
    *,
    dialect: str | None = None,
) -> int:
    """Insert *rows*, skipping any that collide on *conflict_keys*.

    Uses ``INSERT ... ON CONFLICT DO NOTHING`` on SQLite and PostgreSQL.
    Rows are inserted one statement at a time so the rowcount of each
    statement says whether that row was new.  Returns the number of rows
    actually inserted.
    """
    from sqlalchemy.dialects import sqlite as sqlite_dialect

    dialect = dialect or session_dialect(session)
    dialect_module = sqlite_dialect
    if dialect == "postgresql":
        from sqlalchemy.dialects import postgresql as pg_dialect

        dialect_module = pg_dialect

    inserted = 0
    for values in rows:
        stmt = (
            dialect_module.insert(model)
            .values(**values)
            .on_conflict_do_nothing(index_elements=conflict_keys)
        )
        result = await session.execute(stmt)
        inserted += max(result.rowcount or 0, 0)  # type: ignore[attr-defined]
    return inserted
