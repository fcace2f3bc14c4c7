"""Side-effect-free diff between a priority and its linked work item.

``build_sync_preview`` compares three inputs: the local priority, the
persisted link (the memory of what the remote looked like at the end of the
previous sync) and a fresh fetch of the work item with its child tasks. The
result describes what a sync would change in each direction; nothing here
touches the database or the network.

State direction rules:

* remote state differs from ``link.lastSyncedState`` -> the remote moved since
  the last sync; its translated status wins over the local one.
* remote state unchanged but the local status translates to a different
  remote class -> the local side moved; the work item gets patched.
* a remote move that translates to the current local status only refreshes
  the link.

Child task rules (see ``task_correlation`` for how items are paired):

* remote only -> ``isNew``; a checklist item will be created locally.
* remote closed, local open -> ``willClose``; the local item gets completed
  and worked hours must be supplied for it.
* local completed, remote open -> ``willCloseRemote``; the child gets closed
  remotely.
* local only -> ``willCreateRemote``; a child task is created remotely and
  closed with its hours when the item is already completed.
* both closed, local hours set, remote reports no completed work ->
  ``willLogHours``; the hours are sent again.
* other agreeing pairs produce no change.
"""
from __future__ import annotations

from typing import Mapping, Optional, Sequence

from prioritysync.models import (
    DirectionSummary,
    EvidenceLink,
    LocalStatus,
    Priority,
    SyncPreview,
    TaskPreview,
    WorkItem,
    WorkItemLink,
)
from prioritysync.services.state_translation import (
    is_closed_state,
    local_to_remote,
    remote_to_local,
)
from prioritysync.services.task_correlation import TaskPair, correlate_by_text


def _hours_label(hours: Optional[float]) -> str:
    return f", {hours:g}h" if hours else ""


def _classify_pair(
    pair: TaskPair,
    overrides: Optional[Mapping[str, LocalStatus]],
) -> tuple[TaskPreview, str]:
    """Return the task entry plus the change line it contributes ("" for none)."""
    if pair.remote is None:
        local = pair.local
        completed = bool(local and local.completed)
        hours = local.completedHours if local and completed else None
        state = f" (completed{_hours_label(hours)})" if completed else ""
        return (
            TaskPreview(
                text=pair.text,
                localCompleted=completed,
                localCompletedHours=hours,
                willCreateRemote=True,
                direction="to-remote",
            ),
            f"New task in Azure DevOps: {pair.text}{state}",
        )

    child = pair.remote
    remote_closed = is_closed_state(child.state, overrides)
    base = {
        "text": pair.text,
        "taskId": str(child.id),
        "remoteCompleted": remote_closed,
        "remoteState": child.state,
        "remoteCompletedWork": child.completedWork,
    }

    if pair.local is None:
        suffix = " (already completed)" if remote_closed else ""
        return (
            TaskPreview(**base, isNew=True, direction="from-remote"),
            f"New task from Azure DevOps: {pair.text}{suffix}",
        )

    local_completed = pair.local.completed
    local_hours = pair.local.completedHours
    base["localCompleted"] = local_completed
    base["localCompletedHours"] = local_hours
    if remote_closed and not local_completed:
        return (
            TaskPreview(**base, willClose=True, direction="from-remote"),
            f"Task completed in Azure DevOps: {pair.text} (hours required)",
        )
    if local_completed and not remote_closed:
        return (
            TaskPreview(**base, willCloseRemote=True, direction="to-remote"),
            f"Close task in Azure DevOps: {pair.text} ({child.state} -> closed{_hours_label(local_hours)})",
        )
    # Hours stamped locally but absent remotely: an earlier remote write failed.
    if local_completed and local_hours and local_hours > 0 and not child.completedWork:
        return (
            TaskPreview(**base, willLogHours=True, direction="to-remote"),
            f"Log {local_hours:g}h on task in Azure DevOps: {pair.text}",
        )
    return TaskPreview(**base), ""


def _new_evidence_links(priority: Priority, comment_links: Sequence[EvidenceLink]) -> list[EvidenceLink]:
    seen = {link.url for link in priority.evidenceLinks}
    fresh: list[EvidenceLink] = []
    for link in comment_links:
        if link.url in seen:
            continue
        seen.add(link.url)
        fresh.append(link)
    return fresh


def build_sync_preview(
    priority: Priority,
    link: WorkItemLink,
    work_item: WorkItem,
    children: Sequence[WorkItem],
    state_mapping: Optional[Mapping[str, LocalStatus]] = None,
    comment_links: Sequence[EvidenceLink] = (),
) -> SyncPreview:
    remote_state = work_item.state
    mapped = remote_to_local(remote_state, state_mapping)
    local_status = LocalStatus(priority.status)
    remote_moved = remote_state != link.lastSyncedState

    from_changes: list[str] = []
    to_changes: list[str] = []

    will_update_local = remote_moved and mapped != local_status
    if will_update_local:
        from_changes.append(
            f"Status {local_status.value} -> {mapped.value} "
            f"(Azure DevOps state {link.lastSyncedState or 'unknown'} -> {remote_state})"
        )

    target_remote: Optional[str] = None
    if not remote_moved and mapped != local_status:
        candidate = local_to_remote(local_status)
        if candidate != remote_state:
            target_remote = candidate
            to_changes.append(f"Work item state {remote_state} -> {candidate}")

    tasks: list[TaskPreview] = []
    hours_required: list[str] = []
    for pair in correlate_by_text(priority.checklist, list(children)):
        entry, change = _classify_pair(pair, state_mapping)
        tasks.append(entry)
        if entry.willClose and entry.taskId:
            hours_required.append(entry.taskId)
        if not change:
            continue
        if entry.direction == "from-remote":
            from_changes.append(change)
        else:
            to_changes.append(change)

    new_links = _new_evidence_links(priority, comment_links)
    for evidence in new_links:
        from_changes.append(f"Evidence link from discussion: {evidence.url}")

    has_changes = bool(from_changes or to_changes or remote_moved)

    return SyncPreview(
        priorityId=priority.id,
        workItemId=work_item.id,
        workItemType=work_item.type,
        title=priority.title,
        localState=local_status.value,
        remoteState=remote_state,
        remoteStateMapped=mapped,
        lastSyncedState=link.lastSyncedState,
        willUpdateLocalState=will_update_local,
        targetLocalState=mapped if will_update_local else None,
        willUpdateRemoteState=target_remote is not None,
        targetRemoteState=target_remote,
        willRefreshLink=remote_moved,
        tasks=tasks,
        newEvidenceLinks=new_links,
        hoursRequired=hours_required,
        fromRemote=DirectionSummary(changes=from_changes, willUpdate=bool(from_changes)),
        toRemote=DirectionSummary(changes=to_changes, willUpdate=bool(to_changes)),
        hasChanges=has_changes,
    )
