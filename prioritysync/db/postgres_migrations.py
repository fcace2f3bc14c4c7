"""PostgreSQL schema creation and versioning."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("prioritysync.db")

SCHEMA_VERSION = 3

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

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

CREATE TABLE IF NOT EXISTS priority_activity (
    id            BIGSERIAL PRIMARY KEY,
    priority_id   TEXT NOT NULL,
    actor         TEXT DEFAULT '',
    kind          TEXT NOT NULL DEFAULT 'comment',
    message       TEXT DEFAULT '',
    changes_json  TEXT DEFAULT '[]',
    created_at    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_activity_priority ON priority_activity(priority_id, created_at);

CREATE TABLE IF NOT EXISTS sync_configs (
    installation_id       TEXT PRIMARY KEY,
    organization          TEXT NOT NULL,
    project               TEXT NOT NULL,
    personal_access_token TEXT NOT NULL,
    identity              TEXT DEFAULT '',
    sync_enabled          BOOLEAN DEFAULT FALSE,
    state_mapping_json    TEXT DEFAULT '{}',
    work_item_types_json  TEXT DEFAULT '["User Story", "Bug"]',
    last_sync_at          TEXT DEFAULT '',
    created_at            TEXT NOT NULL,
    updated_at            TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS work_item_links (
    id                 BIGSERIAL PRIMARY KEY,
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


async def run_migrations(db: asyncpg.Pool) -> None:
    """Create all tables. Idempotent."""
    async with db.acquire() as conn:
        async with conn.transaction():
            await conn.execute(_TABLES)
            current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
            if current_version >= SCHEMA_VERSION:
                logger.info("Schema is up to date (version %s)", current_version)
                return
            await conn.execute(
                "INSERT INTO schema_version (version) VALUES ($1)",
                SCHEMA_VERSION,
            )
    logger.info("Migrations complete, schema version %s", SCHEMA_VERSION)
