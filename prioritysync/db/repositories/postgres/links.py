"""PostgreSQL implementation of work item links and sync configuration."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import asyncpg

from prioritysync.errors import AlreadyLinkedError


class PostgresWorkItemLinkRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def create(self, link_data: dict) -> dict:
        now = datetime.now(timezone.utc).isoformat()
        try:
            await self.db.execute(
                """INSERT INTO work_item_links (
                    priority_id, work_item_id, work_item_type, organization, project,
                    installation_id, last_synced_state, last_sync_at, version,
                    sync_errors_json, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 0, '[]', $9, $10)""",
                link_data["priorityId"],
                int(link_data["workItemId"]),
                link_data.get("workItemType", ""),
                link_data["organization"],
                link_data["project"],
                link_data.get("installationId", "default"),
                link_data.get("lastSyncedState", ""),
                link_data.get("lastSyncAt") or now,
                now,
                now,
            )
        except asyncpg.UniqueViolationError as exc:
            raise AlreadyLinkedError(
                f"Priority {link_data['priorityId']} is already linked",
                priority_id=link_data["priorityId"],
            ) from exc
        return await self.get_by_priority(link_data["priorityId"]) or {}

    async def get_by_priority(self, priority_id: str) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM work_item_links WHERE priority_id = $1", priority_id
        )
        return dict(row) if row else None

    async def list_by_work_item(self, organization: str, project: str, work_item_id: int) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT * FROM work_item_links
               WHERE organization = $1 AND project = $2 AND work_item_id = $3
               ORDER BY id""",
            organization, project, int(work_item_id),
        )
        return [dict(r) for r in rows]

    async def list_all(self, installation_id: str | None = None) -> list[dict]:
        if installation_id:
            rows = await self.db.fetch(
                "SELECT * FROM work_item_links WHERE installation_id = $1 ORDER BY id", installation_id
            )
        else:
            rows = await self.db.fetch("SELECT * FROM work_item_links ORDER BY id")
        return [dict(r) for r in rows]

    async def list_orphaned(self, installation_id: str | None = None) -> list[dict]:
        query = """SELECT l.* FROM work_item_links l
                   LEFT JOIN priorities p ON p.id = l.priority_id
                   WHERE p.id IS NULL"""
        if installation_id:
            rows = await self.db.fetch(query + " AND l.installation_id = $1 ORDER BY l.id", installation_id)
        else:
            rows = await self.db.fetch(query + " ORDER BY l.id")
        return [dict(r) for r in rows]

    async def advance_sync_state(
        self,
        priority_id: str,
        expected_version: int,
        last_synced_state: str,
        synced_at: str | None = None,
    ) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        result = await self.db.execute(
            """UPDATE work_item_links
               SET last_synced_state = $1, last_sync_at = $2, version = version + 1, updated_at = $3
               WHERE priority_id = $4 AND version = $5""",
            last_synced_state, synced_at or now, now, priority_id, expected_version,
        )
        return result.endswith(" 1")

    async def record_sync_error(self, priority_id: str, error: str, max_errors: int = 20) -> None:
        row = await self.get_by_priority(priority_id)
        if not row:
            return
        try:
            errors = json.loads(row.get("sync_errors_json") or "[]")
        except ValueError:
            errors = []
        errors.append({"error": error, "date": datetime.now(timezone.utc).isoformat()})
        errors = errors[-max(1, max_errors):]
        await self.db.execute(
            "UPDATE work_item_links SET sync_errors_json = $1 WHERE priority_id = $2",
            json.dumps(errors), priority_id,
        )

    async def delete(self, priority_id: str) -> bool:
        result = await self.db.execute(
            "DELETE FROM work_item_links WHERE priority_id = $1", priority_id
        )
        return not result.endswith(" 0")


class PostgresSyncConfigRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def get(self, installation_id: str) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM sync_configs WHERE installation_id = $1", installation_id
        )
        return dict(row) if row else None

    async def upsert(self, config_data: dict) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO sync_configs (
                installation_id, organization, project, personal_access_token, identity,
                sync_enabled, state_mapping_json, work_item_types_json, last_sync_at,
                created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT(installation_id) DO UPDATE SET
                organization=EXCLUDED.organization, project=EXCLUDED.project,
                personal_access_token=EXCLUDED.personal_access_token,
                identity=EXCLUDED.identity, sync_enabled=EXCLUDED.sync_enabled,
                state_mapping_json=EXCLUDED.state_mapping_json,
                work_item_types_json=EXCLUDED.work_item_types_json,
                updated_at=EXCLUDED.updated_at""",
            config_data["installationId"],
            config_data["organization"],
            config_data["project"],
            config_data["personalAccessToken"],
            config_data.get("identity", ""),
            bool(config_data.get("syncEnabled")),
            json.dumps(config_data.get("stateMapping", {})),
            json.dumps(config_data.get("workItemTypes", ["User Story", "Bug"])),
            config_data.get("lastSyncAt", ""),
            now,
            now,
        )

    async def touch_last_sync(self, installation_id: str, synced_at: str | None = None) -> None:
        await self.db.execute(
            "UPDATE sync_configs SET last_sync_at = $1 WHERE installation_id = $2",
            synced_at or datetime.now(timezone.utc).isoformat(), installation_id,
        )

    async def delete(self, installation_id: str) -> None:
        await self.db.execute("DELETE FROM sync_configs WHERE installation_id = $1", installation_id)
