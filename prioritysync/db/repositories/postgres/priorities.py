"""PostgreSQL implementation of PriorityRepository and ActivityRepository."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import asyncpg

from prioritysync.db.repositories.priorities import new_priority_id


class PostgresPriorityRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def create(self, data: dict) -> dict:
        now = datetime.now(timezone.utc).isoformat()
        priority_id = data.get("id") or new_priority_id()
        await self.db.execute(
            """INSERT INTO priorities (
                id, owner, title, description, status,
                checklist_json, evidence_links_json, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)""",
            priority_id,
            data.get("owner", ""),
            data["title"],
            data.get("description", ""),
            data.get("status", "ON_TRACK"),
            json.dumps(data.get("checklist", [])),
            json.dumps(data.get("evidenceLinks", [])),
            data.get("createdAt") or now,
            now,
        )
        return await self.get_by_id(priority_id) or {}

    async def get_by_id(self, priority_id: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM priorities WHERE id = $1", priority_id)
        return dict(row) if row else None

    async def list_all(self, owner: str | None = None) -> list[dict]:
        if owner:
            rows = await self.db.fetch(
                "SELECT * FROM priorities WHERE owner = $1 ORDER BY updated_at DESC", owner
            )
        else:
            rows = await self.db.fetch("SELECT * FROM priorities ORDER BY updated_at DESC")
        return [dict(r) for r in rows]

    async def update_sync_fields(
        self,
        priority_id: str,
        status: str,
        checklist: list[dict],
        evidence_links: list[dict],
    ) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        result = await self.db.execute(
            """UPDATE priorities
               SET status = $1, checklist_json = $2, evidence_links_json = $3, updated_at = $4
               WHERE id = $5""",
            status, json.dumps(checklist), json.dumps(evidence_links), now, priority_id,
        )
        return result.endswith(" 1")

    async def delete(self, priority_id: str) -> None:
        await self.db.execute("DELETE FROM priorities WHERE id = $1", priority_id)


class PostgresActivityRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def append(
        self,
        priority_id: str,
        actor: str,
        kind: str,
        message: str,
        changes: list[str] | None = None,
    ) -> int:
        now = datetime.now(timezone.utc).isoformat()
        return await self.db.fetchval(
            """INSERT INTO priority_activity (priority_id, actor, kind, message, changes_json, created_at)
               VALUES ($1, $2, $3, $4, $5, $6) RETURNING id""",
            priority_id, actor, kind, message, json.dumps(changes or []), now,
        )

    async def list_for(self, priority_id: str, kind: str | None = None) -> list[dict]:
        if kind:
            rows = await self.db.fetch(
                "SELECT * FROM priority_activity WHERE priority_id = $1 AND kind = $2 ORDER BY id",
                priority_id, kind,
            )
        else:
            rows = await self.db.fetch(
                "SELECT * FROM priority_activity WHERE priority_id = $1 ORDER BY id", priority_id
            )
        return [dict(r) for r in rows]
