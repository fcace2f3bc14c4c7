"""Applies a computed ``SyncPreview`` to both systems.

Order of effects is fixed: hours validation (no writes), local write, remote
writes, link advance, audit entry. A remote failure after the local write
yields a partial result listing the remote changes that did land; the local
write is kept and the link stays where it was, so the next preview
re-derives the remaining remote work.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from prioritysync.errors import (
    AzureDevOpsError,
    HoursRequiredError,
    OrphanedLinkError,
    RemoteRejectedError,
)
from prioritysync.models import (
    ChecklistItem,
    DirectionResult,
    EvidenceLink,
    LocalStatus,
    Priority,
    SyncPreview,
    SyncResult,
    TaskPreview,
    WorkItemLink,
)
from prioritysync.observability import start_span
from prioritysync.services.state_translation import closing_state

logger = logging.getLogger("prioritysync.sync")

SYNC_ACTIVITY_KIND = "azure_devops_sync"


def validate_hours(required: list[str], hours: Optional[Mapping[str, Any]]) -> dict[str, float]:
    """Return the validated hours for ``required`` task ids or raise ``HoursRequiredError``."""
    hours = hours or {}
    missing: list[str] = []
    invalid: list[str] = []
    validated: dict[str, float] = {}
    for task_id in required:
        raw = hours.get(task_id)
        if raw is None:
            missing.append(task_id)
            continue
        if isinstance(raw, bool):
            invalid.append(task_id)
            continue
        try:
            value = float(raw)
        except (TypeError, ValueError):
            invalid.append(task_id)
            continue
        if not math.isfinite(value) or value < 0:
            invalid.append(task_id)
            continue
        validated[task_id] = value
    if missing or invalid:
        raise HoursRequiredError(missing, invalid)
    return validated


def _format_hours(value: float) -> str:
    return f"{value:g}h"


class SyncExecutor:
    def __init__(
        self,
        priority_repo,
        activity_repo,
        link_repo,
        gateway,
        state_mapping: Optional[Mapping[str, LocalStatus]] = None,
        assigned_to: str = "",
    ):
        self.priority_repo = priority_repo
        self.activity_repo = activity_repo
        self.link_repo = link_repo
        self.gateway = gateway
        self.state_mapping = state_mapping or {}
        self.assigned_to = assigned_to

    async def execute(
        self,
        preview: SyncPreview,
        priority: Priority,
        link: WorkItemLink,
        hours: Optional[Mapping[str, Any]] = None,
        actor: str = "",
    ) -> SyncResult:
        validated_hours = validate_hours(preview.hoursRequired, hours)

        if not preview.hasChanges:
            return SyncResult(
                priorityId=priority.id,
                workItemId=link.workItemId,
                noop=True,
                newRemoteState=preview.remoteState,
            )

        with start_span("sync.execute", {"priority_id": priority.id, "work_item_id": link.workItemId}):
            from_result = await self._apply_local(preview, priority, link, validated_hours)
            result = SyncResult(
                priorityId=priority.id,
                workItemId=link.workItemId,
                localApplied=True,
                newRemoteState=preview.remoteState,
                fromRemote=from_result,
            )

            try:
                await self._apply_remote(preview, validated_hours, result)
            except AzureDevOpsError as exc:
                logger.warning(
                    "Remote phase failed for priority %s (work item #%s); local changes kept: %s",
                    priority.id,
                    link.workItemId,
                    exc,
                )
                result.remoteError = str(exc)
                return result
            result.remoteApplied = True

            result.linkAdvanced = await self.link_repo.advance_sync_state(
                priority.id, link.version, result.newRemoteState
            )
            if not result.linkAdvanced:
                logger.warning(
                    "Link for priority %s moved past version %s during sync; not advancing",
                    priority.id,
                    link.version,
                )
                return result

            changes = result.fromRemote.changes + result.toRemote.changes
            message = (
                f"Synchronized with Azure DevOps #{link.workItemId}"
                if changes
                else f"Azure DevOps #{link.workItemId} state refreshed to {result.newRemoteState}"
            )
            await self.activity_repo.append(priority.id, actor, SYNC_ACTIVITY_KIND, message, changes)
            logger.info(
                "Synced priority %s <-> #%s (%d change(s))", priority.id, link.workItemId, len(changes)
            )
            return result

    async def _apply_local(
        self,
        preview: SyncPreview,
        priority: Priority,
        link: WorkItemLink,
        hours: Mapping[str, float],
    ) -> DirectionResult:
        now = datetime.now(timezone.utc).isoformat()
        changes = list(preview.fromRemote.changes)

        status = preview.targetLocalState if preview.willUpdateLocalState else priority.status
        checklist = [item.model_copy() for item in priority.checklist]
        # Correlated entries come first, one per checklist item, in checklist order.
        local_entries: list[TaskPreview] = preview.tasks[: len(checklist)]
        for index, entry in enumerate(local_entries):
            if not entry.willClose or entry.text != checklist[index].text:
                continue
            checklist[index] = checklist[index].model_copy(
                update={"completed": True, "completedHours": hours[entry.taskId]}
            )
            changes.append(f"Recorded {_format_hours(hours[entry.taskId])} on {entry.text}")

        for entry in preview.tasks[len(checklist):]:
            if not entry.isNew:
                continue
            completed = bool(entry.remoteCompleted)
            checklist.append(
                ChecklistItem(
                    text=entry.text,
                    completed=completed,
                    completedHours=entry.remoteCompletedWork if completed else None,
                    createdAt=now,
                )
            )

        evidence = [item.model_copy() for item in priority.evidenceLinks]
        evidence.extend(
            EvidenceLink(title=item.title, url=item.url, createdAt=item.createdAt or now)
            for item in preview.newEvidenceLinks
        )

        if not preview.fromRemote.willUpdate:
            return DirectionResult(updated=False, changes=[])

        written = await self.priority_repo.update_sync_fields(
            priority.id,
            LocalStatus(status).value,
            [item.model_dump() for item in checklist],
            [item.model_dump() for item in evidence],
        )
        if not written:
            raise OrphanedLinkError("local", priority.id, link.workItemId)
        return DirectionResult(updated=True, changes=changes)

    async def _apply_remote(
        self,
        preview: SyncPreview,
        hours: Mapping[str, float],
        result: SyncResult,
    ) -> None:
        """Push to-remote changes, recording each one on ``result`` as it lands."""
        applied = result.toRemote

        def _record(change: str) -> None:
            applied.changes.append(change)
            applied.updated = True

        if preview.willUpdateRemoteState and preview.targetRemoteState:
            updated = await self.gateway.patch_state(preview.workItemId, preview.targetRemoteState)
            result.newRemoteState = updated.state or preview.targetRemoteState
            _record(f"Work item state {preview.remoteState} -> {result.newRemoteState}")

        close_to = closing_state(self.state_mapping)
        for entry in preview.tasks:
            if entry.willCreateRemote:
                task = await self.gateway.create_child_task(preview.workItemId, entry.text, self.assigned_to)
                _record(f"Created task #{task.id} in Azure DevOps: {entry.text}")
                if entry.localCompleted:
                    await self._close_remote_task(task.id, entry, close_to, entry.localCompletedHours, _record)
                continue
            if not entry.taskId:
                continue
            if entry.willCloseRemote:
                await self._close_remote_task(
                    int(entry.taskId), entry, close_to, entry.localCompletedHours, _record
                )
            elif entry.willClose or entry.willLogHours:
                logged = hours[entry.taskId] if entry.willClose else entry.localCompletedHours
                try:
                    await self.gateway.log_completed_work(int(entry.taskId), logged)
                    _record(f"Logged {_format_hours(logged)} on task {entry.text}")
                except RemoteRejectedError as exc:
                    logger.warning("Azure DevOps refused hours for task %s: %s", entry.taskId, exc)
                    _record(f"Azure DevOps refused hours for task {entry.text}; left unchanged")

    async def _close_remote_task(
        self,
        task_id: int,
        entry: TaskPreview,
        close_to: str,
        completed_work: Optional[float],
        record: Callable[[str], None],
    ) -> None:
        try:
            await self.gateway.complete_task(task_id, close_to, completed_work)
            record(f"Closed task in Azure DevOps: {entry.text}")
        except RemoteRejectedError as exc:
            logger.warning("Azure DevOps refused to close task %s: %s", task_id, exc)
            record(f"Azure DevOps refused to close task {entry.text}; left unchanged")
