"""
Storage Package.

Async database access shared by the copy-trade engine.

Modules:
- database: engine and session management
- models.base: declarative base and mixins
"""

from .database import Database, get_database_url
from .models.base import Base, TimestampMixin, new_id


__all__ = [
    "Base",
    "Database",
    "TimestampMixin",
    "get_database_url",
    "new_id",
]
