"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any

import aiosqlite

from prioritysync.db.repositories.priorities import (
    SqliteActivityRepository,
    SqlitePriorityRepository,
)
from prioritysync.db.repositories.links import (
    SqliteSyncConfigRepository,
    SqliteWorkItemLinkRepository,
)


def get_priority_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqlitePriorityRepository(db)
    from prioritysync.db.repositories.postgres.priorities import PostgresPriorityRepository
    return PostgresPriorityRepository(db)


def get_activity_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteActivityRepository(db)
    from prioritysync.db.repositories.postgres.priorities import PostgresActivityRepository
    return PostgresActivityRepository(db)


def get_work_item_link_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteWorkItemLinkRepository(db)
    from prioritysync.db.repositories.postgres.links import PostgresWorkItemLinkRepository
    return PostgresWorkItemLinkRepository(db)


def get_sync_config_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteSyncConfigRepository(db)
    from prioritysync.db.repositories.postgres.links import PostgresSyncConfigRepository
    return PostgresSyncConfigRepository(db)
