"""Database schema creation and versioning.

All CREATE TABLE statements for the sync store.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("prioritysync.db")

SCHEMA_VERSION = 3

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Local tasks ("priorities") ──────────────────────────────────
CREATE TABLE IF NOT EXISTS priorities (
    id                  TEXT PRIMARY KEY,
    owner               TEXT DEFAULT '',
    title               TEXT NOT NULL,
    description         TEXT DEFAULT '',
    status              TEXT NOT NULL DEFAULT 'ON_TRACK',
    checklist_json      TEXT DEFAULT '[]',
    evidence_links_json TEXT DEFAULT '[]',
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_priorities_owner ON priorities(owner, updated_at DESC);

-- Immutable activity trail (audit records, comments)
CREATE TABLE IF NOT EXISTS priority_activity (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    priority_id   TEXT NOT NULL,
    actor         TEXT DEFAULT '',
    kind          TEXT NOT NULL DEFAULT 'comment',
    message       TEXT DEFAULT '',
    changes_json  TEXT DEFAULT '[]',
    created_at    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_activity_priority ON priority_activity(priority_id, created_at);

-- ── 2. Installation configuration ──────────────────────────────────
CREATE TABLE IF NOT EXISTS sync_configs (
    installation_id       TEXT PRIMARY KEY,
    organization          TEXT NOT NULL,
    project               TEXT NOT NULL,
    personal_access_token TEXT NOT NULL,
    identity              TEXT DEFAULT '',
    sync_enabled          INTEGER DEFAULT 0,
    state_mapping_json    TEXT DEFAULT '{}',
    work_item_types_json  TEXT DEFAULT '["User Story", "Bug"]',
    last_sync_at          TEXT DEFAULT '',
    created_at            TEXT NOT NULL,
    updated_at            TEXT NOT NULL
);

-- ── 3. Work item links ─────────────────────────────────────────────
-- No foreign key to priorities: a deleted priority must leave a detectable orphan.
CREATE TABLE IF NOT EXISTS work_item_links (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    priority_id        TEXT NOT NULL UNIQUE,
    work_item_id       INTEGER NOT NULL,
    work_item_type     TEXT DEFAULT '',
    organization       TEXT NOT NULL,
    project            TEXT NOT NULL,
    installation_id    TEXT NOT NULL DEFAULT 'default',
    last_synced_state  TEXT DEFAULT '',
    last_sync_at       TEXT DEFAULT '',
    version            INTEGER NOT NULL DEFAULT 0,
    sync_errors_json   TEXT DEFAULT '[]',
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_links_work_item ON work_item_links(organization, project, work_item_id);
CREATE INDEX IF NOT EXISTS idx_links_installation ON work_item_links(installation_id);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info("Schema is up to date (version %s)", current_version)
        return

    logger.info("Running migrations: %s → %s", current_version, SCHEMA_VERSION)

    await db.executescript(_TABLES)

    # Explicit table upgrades for existing DBs.
    await _ensure_column(db, "work_item_links", "version", "INTEGER NOT NULL DEFAULT 0")
    await _ensure_column(db, "work_item_links", "sync_errors_json", "TEXT DEFAULT '[]'")
    await _ensure_column(db, "priorities", "evidence_links_json", "TEXT DEFAULT '[]'")
    await _ensure_column(db, "sync_configs", "work_item_types_json", "TEXT DEFAULT '[\"User Story\", \"Bug\"]'")

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info("Migrations complete, schema version %s", SCHEMA_VERSION)
