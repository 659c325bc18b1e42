"""Shared utility functions for service layer."""
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_insert(db: AsyncSession, model: type) -> postgresql.Insert | sqlite.Insert:
    """
    Build a dialect-specific INSERT for the session's database.

    The returned statement supports `.on_conflict_do_nothing()`, used wherever
    concurrent writers may insert the same unique row (tag names, tag
    attachments): the first insert wins and later ones are no-ops instead of
    IntegrityErrors.

    Args:
        db: Database session (its bind decides the dialect).
        model: Mapped class to insert into.

    Raises:
        NotImplementedError: For databases other than PostgreSQL and SQLite.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")
