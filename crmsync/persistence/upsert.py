from __future__ import annotations

from typing import Any, Iterable, Sequence

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_insert(session: AsyncSession, model: type) -> Any:
    # ON CONFLICT support lives in the dialect-specific insert constructs.
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"upsert is not supported for dialect {dialect}")


def upsert_statement(
    session: AsyncSession,
    model: type,
    rows: Sequence[dict[str, Any]],
    *,
    conflict_columns: Iterable[str],
    update_columns: Iterable[str],
) -> Any:
    # Insert-or-update keyed on a unique constraint; every row must carry the same keys.
    stmt = dialect_insert(session, model).values(list(rows))
    return stmt.on_conflict_do_update(
        index_elements=list(conflict_columns),
        set_={column: stmt.excluded[column] for column in update_columns},
    )


def insert_if_absent_statement(
    session: AsyncSession,
    model: type,
    row: dict[str, Any],
    *,
    conflict_columns: Iterable[str],
) -> Any:
    return dialect_insert(session, model).values(row).on_conflict_do_nothing(
        index_elements=list(conflict_columns)
    )
