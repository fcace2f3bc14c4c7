"""Repository package for database access."""

from .priorities import SqliteActivityRepository, SqlitePriorityRepository
from .links import SqliteSyncConfigRepository, SqliteWorkItemLinkRepository

__all__ = [
    "SqlitePriorityRepository",
    "SqliteActivityRepository",
    "SqliteWorkItemLinkRepository",
    "SqliteSyncConfigRepository",
]
