"""Priority (local task) API used by the dashboard alongside the sync endpoints."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from prioritysync.db import connection
from prioritysync.db.factory import (
    get_activity_repository,
    get_priority_repository,
    get_work_item_link_repository,
)
from prioritysync.db.repositories.links import link_from_row
from prioritysync.db.repositories.priorities import activity_from_row, priority_from_row
from prioritysync.models import (
    ActivityEntry,
    ChecklistItem,
    EvidenceLink,
    LocalStatus,
    Priority,
    WorkItemLink,
)

priorities_router = APIRouter(prefix="/api/priorities", tags=["priorities"])


class PriorityCreate(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    status: LocalStatus = LocalStatus.ON_TRACK
    owner: str = ""
    checklist: list[ChecklistItem] = Field(default_factory=list)
    evidenceLinks: list[EvidenceLink] = Field(default_factory=list)


class PriorityDetail(Priority):
    link: Optional[WorkItemLink] = None


@priorities_router.get("", response_model=list[Priority])
async def list_priorities(owner: Optional[str] = Query(None)):
    db = await connection.get_connection()
    rows = await get_priority_repository(db).list_all(owner=owner)
    return [priority_from_row(row) for row in rows]


@priorities_router.post("", response_model=Priority, status_code=201)
async def create_priority(payload: PriorityCreate):
    db = await connection.get_connection()
    data = payload.model_dump(mode="json")
    row = await get_priority_repository(db).create(data)
    return priority_from_row(row)


@priorities_router.get("/{priority_id}", response_model=PriorityDetail)
async def get_priority(priority_id: str):
    db = await connection.get_connection()
    row = await get_priority_repository(db).get_by_id(priority_id)
    if not row:
        raise HTTPException(status_code=404, detail=f"Priority {priority_id} not found")
    link_row = await get_work_item_link_repository(db).get_by_priority(priority_id)
    return PriorityDetail(
        **priority_from_row(row).model_dump(),
        link=link_from_row(link_row) if link_row else None,
    )


@priorities_router.delete("/{priority_id}", status_code=204)
async def delete_priority(priority_id: str):
    """Delete a priority. Its link, if any, stays behind as an orphan until unlinked."""
    db = await connection.get_connection()
    repo = get_priority_repository(db)
    if not await repo.get_by_id(priority_id):
        raise HTTPException(status_code=404, detail=f"Priority {priority_id} not found")
    await repo.delete(priority_id)


@priorities_router.get("/{priority_id}/activity", response_model=list[ActivityEntry])
async def list_priority_activity(priority_id: str, kind: Optional[str] = Query(None)):
    db = await connection.get_connection()
    rows = await get_activity_repository(db).list_for(priority_id, kind=kind)
    return [activity_from_row(row) for row in rows]
