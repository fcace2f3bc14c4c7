"""SQLite implementation of WorkItemLinkRepository and SyncConfigRepository."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from prioritysync.errors import AlreadyLinkedError
from prioritysync.models import WorkItemLink


def _json_value(raw: Any, default: Any) -> Any:
    if not raw:
        return default
    if isinstance(raw, type(default)):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return default
    return parsed if isinstance(parsed, type(default)) else default


def link_from_row(row: dict) -> WorkItemLink:
    return WorkItemLink(
        priorityId=row["priority_id"],
        workItemId=int(row["work_item_id"]),
        workItemType=row.get("work_item_type") or "",
        organization=row["organization"],
        project=row["project"],
        installationId=row.get("installation_id") or "default",
        lastSyncedState=row.get("last_synced_state") or "",
        lastSyncAt=row.get("last_sync_at") or "",
        version=int(row.get("version") or 0),
        syncErrors=_json_value(row.get("sync_errors_json"), []),
        createdAt=row.get("created_at") or "",
    )


def config_from_row(row: dict) -> dict:
    """Map a sync_configs row onto SyncConfiguration field names."""
    return {
        "installationId": row["installation_id"],
        "organization": row["organization"],
        "project": row["project"],
        "personalAccessToken": row["personal_access_token"],
        "identity": row.get("identity") or "",
        "syncEnabled": bool(row.get("sync_enabled")),
        "stateMapping": _json_value(row.get("state_mapping_json"), {}),
        "workItemTypes": _json_value(row.get("work_item_types_json"), []),
        "lastSyncAt": row.get("last_sync_at") or "",
    }


class SqliteWorkItemLinkRepository:
    """Durable priority <-> work item correlation with optimistic versioning."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def create(self, link_data: dict) -> dict:
        now = datetime.now(timezone.utc).isoformat()
        try:
            await self.db.execute(
                """INSERT INTO work_item_links (
                    priority_id, work_item_id, work_item_type, organization, project,
                    installation_id, last_synced_state, last_sync_at, version,
                    sync_errors_json, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, '[]', ?, ?)""",
                (
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
                ),
            )
        except aiosqlite.IntegrityError as exc:
            await self.db.rollback()
            raise AlreadyLinkedError(
                f"Priority {link_data['priorityId']} is already linked",
                priority_id=link_data["priorityId"],
            ) from exc
        await self.db.commit()
        return await self.get_by_priority(link_data["priorityId"]) or {}

    async def get_by_priority(self, priority_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM work_item_links WHERE priority_id = ?", (priority_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_by_work_item(self, organization: str, project: str, work_item_id: int) -> list[dict]:
        async with self.db.execute(
            """SELECT * FROM work_item_links
               WHERE organization = ? AND project = ? AND work_item_id = ?
               ORDER BY id""",
            (organization, project, int(work_item_id)),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def list_all(self, installation_id: str | None = None) -> list[dict]:
        if installation_id:
            async with self.db.execute(
                "SELECT * FROM work_item_links WHERE installation_id = ? ORDER BY id",
                (installation_id,),
            ) as cur:
                return [dict(r) for r in await cur.fetchall()]
        async with self.db.execute("SELECT * FROM work_item_links ORDER BY id") as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def list_orphaned(self, installation_id: str | None = None) -> list[dict]:
        """Links whose local priority no longer exists."""
        query = """SELECT l.* FROM work_item_links l
                   LEFT JOIN priorities p ON p.id = l.priority_id
                   WHERE p.id IS NULL"""
        params: tuple = ()
        if installation_id:
            query += " AND l.installation_id = ?"
            params = (installation_id,)
        async with self.db.execute(query + " ORDER BY l.id", params) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def advance_sync_state(
        self,
        priority_id: str,
        expected_version: int,
        last_synced_state: str,
        synced_at: str | None = None,
    ) -> bool:
        """Compare-and-set on ``version``; False when another sync got there first."""
        now = datetime.now(timezone.utc).isoformat()
        async with self.db.execute(
            """UPDATE work_item_links
               SET last_synced_state = ?, last_sync_at = ?, version = version + 1, updated_at = ?
               WHERE priority_id = ? AND version = ?""",
            (last_synced_state, synced_at or now, now, priority_id, expected_version),
        ) as cur:
            advanced = cur.rowcount == 1
        await self.db.commit()
        return advanced

    async def record_sync_error(self, priority_id: str, error: str, max_errors: int = 20) -> None:
        row = await self.get_by_priority(priority_id)
        if not row:
            return
        errors = _json_value(row.get("sync_errors_json"), [])
        errors.append({"error": error, "date": datetime.now(timezone.utc).isoformat()})
        errors = errors[-max(1, max_errors):]
        await self.db.execute(
            "UPDATE work_item_links SET sync_errors_json = ? WHERE priority_id = ?",
            (json.dumps(errors), priority_id),
        )
        await self.db.commit()

    async def delete(self, priority_id: str) -> bool:
        async with self.db.execute(
            "DELETE FROM work_item_links WHERE priority_id = ?", (priority_id,)
        ) as cur:
            deleted = cur.rowcount > 0
        await self.db.commit()
        return deleted


class SqliteSyncConfigRepository:
    """One configuration row per installation."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, installation_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM sync_configs WHERE installation_id = ?", (installation_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def upsert(self, config_data: dict) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO sync_configs (
                installation_id, organization, project, personal_access_token, identity,
                sync_enabled, state_mapping_json, work_item_types_json, last_sync_at,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(installation_id) DO UPDATE SET
                organization=excluded.organization, project=excluded.project,
                personal_access_token=excluded.personal_access_token,
                identity=excluded.identity, sync_enabled=excluded.sync_enabled,
                state_mapping_json=excluded.state_mapping_json,
                work_item_types_json=excluded.work_item_types_json,
                updated_at=excluded.updated_at""",
            (
                config_data["installationId"],
                config_data["organization"],
                config_data["project"],
                config_data["personalAccessToken"],
                config_data.get("identity", ""),
                1 if config_data.get("syncEnabled") else 0,
                json.dumps(config_data.get("stateMapping", {})),
                json.dumps(config_data.get("workItemTypes", ["User Story", "Bug"])),
                config_data.get("lastSyncAt", ""),
                now,
                now,
            ),
        )
        await self.db.commit()

    async def touch_last_sync(self, installation_id: str, synced_at: str | None = None) -> None:
        await self.db.execute(
            "UPDATE sync_configs SET last_sync_at = ? WHERE installation_id = ?",
            (synced_at or datetime.now(timezone.utc).isoformat(), installation_id),
        )
        await self.db.commit()

    async def delete(self, installation_id: str) -> None:
        await self.db.execute("DELETE FROM sync_configs WHERE installation_id = ?", (installation_id,))
        await self.db.commit()
