"""
INSERT ... ON CONFLICT builder.

PostgreSQL in production, SQLite under test. Both dialect inserts expose
on_conflict_do_nothing / on_conflict_do_update and the `excluded` namespace,
so callers write one statement for either backend.
"""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def insert_for(session: AsyncSession, model):
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)
