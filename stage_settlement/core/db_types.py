"""
Dialect-aware database types.
Provides PostgreSQL JSONB when available,
falls back to generic JSON for SQLite.
"""

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.types import TypeDecorator


class UniversalJSON(TypeDecorator):
    """
    JSON column used for ranking payloads, participation maps and
    settlement snapshots. JSONB on PostgreSQL, JSON elsewhere.
    """
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())
