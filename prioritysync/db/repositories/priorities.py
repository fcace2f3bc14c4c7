"""SQLite implementation of PriorityRepository and ActivityRepository."""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from prioritysync.models import ActivityEntry, Priority


def _json_list(raw: Any) -> list:
    if not raw:
        return []
    if isinstance(raw, list):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return parsed if isinstance(parsed, list) else []


def new_priority_id() -> str:
    return f"P-{uuid.uuid4().hex[:16]}"


def priority_from_row(row: dict) -> Priority:
    return Priority(
        id=row["id"],
        title=row["title"],
        description=row.get("description") or "",
        status=row.get("status") or "ON_TRACK",
        owner=row.get("owner") or "",
        checklist=_json_list(row.get("checklist_json")),
        evidenceLinks=_json_list(row.get("evidence_links_json")),
        createdAt=row.get("created_at") or "",
        updatedAt=row.get("updated_at") or "",
    )


def activity_from_row(row: dict) -> ActivityEntry:
    return ActivityEntry(
        id=row["id"],
        priorityId=row["priority_id"],
        actor=row.get("actor") or "",
        kind=row.get("kind") or "comment",
        message=row.get("message") or "",
        changes=_json_list(row.get("changes_json")),
        createdAt=row.get("created_at") or "",
    )


class SqlitePriorityRepository:
    """Local task storage; owned by the CRUD layer, mutated by the sync executor."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def create(self, data: dict) -> dict:
        now = datetime.now(timezone.utc).isoformat()
        priority_id = data.get("id") or new_priority_id()
        await self.db.execute(
            """INSERT INTO priorities (
                id, owner, title, description, status,
                checklist_json, evidence_links_json, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                priority_id,
                data.get("owner", ""),
                data["title"],
                data.get("description", ""),
                data.get("status", "ON_TRACK"),
                json.dumps(data.get("checklist", [])),
                json.dumps(data.get("evidenceLinks", [])),
                data.get("createdAt") or now,
                now,
            ),
        )
        await self.db.commit()
        return await self.get_by_id(priority_id) or {}

    async def get_by_id(self, priority_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM priorities WHERE id = ?", (priority_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_all(self, owner: str | None = None) -> list[dict]:
        if owner:
            async with self.db.execute(
                "SELECT * FROM priorities WHERE owner = ? ORDER BY updated_at DESC",
                (owner,),
            ) as cur:
                return [dict(r) for r in await cur.fetchall()]
        async with self.db.execute(
            "SELECT * FROM priorities ORDER BY updated_at DESC"
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def update_sync_fields(
        self,
        priority_id: str,
        status: str,
        checklist: list[dict],
        evidence_links: list[dict],
    ) -> bool:
        """Write status, checklist and evidence links in one statement."""
        now = datetime.now(timezone.utc).isoformat()
        async with self.db.execute(
            """UPDATE priorities
               SET status = ?, checklist_json = ?, evidence_links_json = ?, updated_at = ?
               WHERE id = ?""",
            (status, json.dumps(checklist), json.dumps(evidence_links), now, priority_id),
        ) as cur:
            updated = cur.rowcount == 1
        await self.db.commit()
        return updated

    async def delete(self, priority_id: str) -> None:
        await self.db.execute("DELETE FROM priorities WHERE id = ?", (priority_id,))
        await self.db.commit()


class SqliteActivityRepository:
    """Append-only activity trail per priority."""

    def __init__(self, db: aiosqlite.Connection):
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
        async with self.db.execute(
            """INSERT INTO priority_activity (priority_id, actor, kind, message, changes_json, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (priority_id, actor, kind, message, json.dumps(changes or []), now),
        ) as cur:
            await self.db.commit()
            return cur.lastrowid or 0

    async def list_for(self, priority_id: str, kind: str | None = None) -> list[dict]:
        if kind:
            query = "SELECT * FROM priority_activity WHERE priority_id = ? AND kind = ? ORDER BY id"
            params: tuple = (priority_id, kind)
        else:
            query = "SELECT * FROM priority_activity WHERE priority_id = ? ORDER BY id"
            params = (priority_id,)
        async with self.db.execute(query, params) as cur:
            return [dict(r) for r in await cur.fetchall()]
