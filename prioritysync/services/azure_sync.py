"""Azure DevOps synchronization service.

``AzureSyncService`` is the entry point the routers talk to. It loads the
installation configuration, opens a gateway per invocation, serializes work
per link and delegates the diff to ``build_sync_preview`` and the writes to
``SyncExecutor``. Batch runs are tracked as observable operations.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from prioritysync import config
from prioritysync.configuration import load_configuration, validate_configuration
from prioritysync.db.factory import (
    get_activity_repository,
    get_priority_repository,
    get_sync_config_repository,
    get_work_item_link_repository,
)
from prioritysync.db.repositories.links import link_from_row
from prioritysync.db.repositories.priorities import priority_from_row
from prioritysync.errors import (
    AlreadyLinkedError,
    AzureDevOpsAuthError,
    DuplicateRemoteLinkError,
    LinkNotFoundError,
    OrphanedLinkError,
    PriorityNotFoundError,
    PrioritySyncError,
    RemoteRejectedError,
    WorkItemNotFoundError,
)
from prioritysync.models import (
    BatchSyncResult,
    ChecklistItem,
    EvidenceLink,
    ImportResult,
    Priority,
    SyncConfiguration,
    SyncPreview,
    SyncResult,
    WorkItemLink,
)
from prioritysync.observability import record_sync_outcome, start_span
from prioritysync.services.azure_devops_client import AzureDevOpsClient
from prioritysync.services.state_translation import (
    closing_state,
    is_closed_state,
    local_to_remote,
    remote_to_local,
)
from prioritysync.services.sync_executor import SyncExecutor
from prioritysync.services.sync_preview import build_sync_preview
from prioritysync.services.task_correlation import correlate_by_text

logger = logging.getLogger("prioritysync.sync")

IMPORT_ACTIVITY_KIND = "azure_devops_import"
EXPORT_ACTIVITY_KIND = "azure_devops_export"
HOURS_ACTIVITY_KIND = "azure_devops_hours"
UNLINK_ACTIVITY_KIND = "azure_devops_unlink"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AzureSyncService:
    def __init__(
        self,
        db: Any,
        gateway_factory: Callable[[SyncConfiguration], Any] | None = None,
    ):
        self.db = db
        self.priority_repo = get_priority_repository(db)
        self.activity_repo = get_activity_repository(db)
        self.link_repo = get_work_item_link_repository(db)
        self.config_repo = get_sync_config_repository(db)
        self._gateway_factory = gateway_factory or (lambda configuration: AzureDevOpsClient(configuration))
        self._link_locks: dict[str, asyncio.Lock] = {}
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = 40

    # ── Configuration and plumbing ─────────────────────────────────

    async def load_configuration(self, installation_id: str | None = None) -> SyncConfiguration:
        return await load_configuration(self.db, installation_id or config.INSTALLATION_ID)

    async def _enabled_configuration(self, installation_id: str | None) -> SyncConfiguration:
        configuration = await self.load_configuration(installation_id)
        return configuration.require_enabled()

    @asynccontextmanager
    async def _open_gateway(self, configuration: SyncConfiguration):
        gateway = self._gateway_factory(configuration)
        try:
            yield gateway
        finally:
            await gateway.aclose()

    def _link_lock(self, priority_id: str) -> asyncio.Lock:
        return self._link_locks.setdefault(priority_id, asyncio.Lock())

    async def _load_link(self, priority_id: str) -> WorkItemLink:
        row = await self.link_repo.get_by_priority(priority_id)
        if not row:
            raise LinkNotFoundError(priority_id)
        return link_from_row(row)

    async def _load_linked_pair(self, priority_id: str) -> tuple[Priority, WorkItemLink]:
        link = await self._load_link(priority_id)
        row = await self.priority_repo.get_by_id(priority_id)
        if not row:
            raise OrphanedLinkError("local", priority_id, link.workItemId)
        siblings = await self.link_repo.list_by_work_item(link.organization, link.project, link.workItemId)
        if len(siblings) > 1:
            raise DuplicateRemoteLinkError(link.workItemId, [s["priority_id"] for s in siblings])
        return priority_from_row(row), link

    async def _preview_with(
        self,
        gateway: Any,
        configuration: SyncConfiguration,
        priority_id: str,
    ) -> tuple[SyncPreview, Priority, WorkItemLink]:
        priority, link = await self._load_linked_pair(priority_id)
        try:
            work_item = await gateway.fetch_work_item(link.workItemId)
        except WorkItemNotFoundError as exc:
            raise OrphanedLinkError("remote", priority_id, link.workItemId) from exc
        children, comment_links = await asyncio.gather(
            gateway.fetch_child_tasks(link.workItemId),
            gateway.fetch_comment_links(link.workItemId),
        )
        preview = build_sync_preview(
            priority,
            link,
            work_item,
            children,
            configuration.stateMapping,
            comment_links,
        )
        return preview, priority, link

    # ── Core operations ────────────────────────────────────────────

    async def compute_preview(self, priority_id: str, installation_id: str | None = None) -> SyncPreview:
        configuration = await self._enabled_configuration(installation_id)
        with start_span("sync.preview", {"priority_id": priority_id}):
            async with self._open_gateway(configuration) as gateway:
                preview, _, _ = await self._preview_with(gateway, configuration, priority_id)
        return preview

    async def _sync_one(
        self,
        gateway: Any,
        configuration: SyncConfiguration,
        priority_id: str,
        hours: Optional[Mapping[str, Any]],
        actor: str,
        skip_when_hours_required: bool = False,
    ) -> tuple[SyncPreview, Optional[SyncResult]]:
        """Preview and execute one link under its lock.

        Returns ``(preview, None)`` when ``skip_when_hours_required`` is set and
        the preview needs hours.
        """
        started = time.monotonic()
        outcome = "failed"
        try:
            async with self._link_lock(priority_id):
                preview, priority, link = await self._preview_with(gateway, configuration, priority_id)
                if skip_when_hours_required and preview.hoursRequired:
                    outcome = "skipped"
                    return preview, None
                executor = SyncExecutor(
                    self.priority_repo,
                    self.activity_repo,
                    self.link_repo,
                    gateway,
                    configuration.stateMapping,
                    assigned_to=configuration.identity,
                )
                result = await executor.execute(preview, priority, link, hours, actor)
            if result.noop:
                outcome = "noop"
            elif result.fully_synced:
                outcome = "synced"
            else:
                outcome = "partial"
            return preview, result
        finally:
            record_sync_outcome(
                outcome,
                (time.monotonic() - started) * 1000,
                installation_id=configuration.installationId,
            )

    async def execute_sync(
        self,
        priority_id: str,
        hours: Optional[Mapping[str, Any]] = None,
        actor: str = "",
        installation_id: str | None = None,
    ) -> SyncResult:
        configuration = await self._enabled_configuration(installation_id)
        async with self._open_gateway(configuration) as gateway:
            _, result = await self._sync_one(gateway, configuration, priority_id, hours, actor)
        if result.remoteError:
            await self.link_repo.record_sync_error(priority_id, result.remoteError, config.MAX_LINK_SYNC_ERRORS)
        return result

    async def import_as_new_task(
        self,
        work_item_id: int,
        owner: str = "",
        actor: str = "",
        installation_id: str | None = None,
    ) -> ImportResult:
        """Create a local priority from a remote work item and link the two."""
        configuration = await self._enabled_configuration(installation_id)
        existing = await self.link_repo.list_by_work_item(
            configuration.organization, configuration.project, work_item_id
        )
        if existing:
            raise AlreadyLinkedError(
                f"Work item #{work_item_id} is already linked to priority {existing[0]['priority_id']}",
                priority_id=existing[0]["priority_id"],
                work_item_id=work_item_id,
            )

        async with self._open_gateway(configuration) as gateway:
            work_item = await gateway.fetch_work_item(work_item_id)
            children, comment_links = await asyncio.gather(
                gateway.fetch_child_tasks(work_item_id),
                gateway.fetch_comment_links(work_item_id),
            )

        now = _now()
        checklist = []
        for child in children:
            closed = is_closed_state(child.state, configuration.stateMapping)
            checklist.append(
                ChecklistItem(
                    text=child.title,
                    completed=closed,
                    completedHours=child.completedWork if closed else None,
                    createdAt=now,
                ).model_dump()
            )
        web_url = configuration.work_item_web_url(work_item.id, config.ADO_BASE_URL)
        evidence = [EvidenceLink(title=f"Azure DevOps #{work_item.id}", url=web_url, createdAt=now)]
        evidence.extend(
            EvidenceLink(title=item.title, url=item.url, createdAt=now)
            for item in comment_links
            if item.url != web_url
        )

        priority_row = await self.priority_repo.create(
            {
                "title": work_item.title or f"Work item #{work_item.id}",
                "description": work_item.description,
                "status": remote_to_local(work_item.state, configuration.stateMapping).value,
                "owner": owner,
                "checklist": checklist,
                "evidenceLinks": [item.model_dump() for item in evidence],
            }
        )
        priority_id = priority_row["id"]
        link_row = await self.link_repo.create(
            {
                "priorityId": priority_id,
                "workItemId": work_item.id,
                "workItemType": work_item.type,
                "organization": configuration.organization,
                "project": configuration.project,
                "installationId": configuration.installationId,
                "lastSyncedState": work_item.state,
                "lastSyncAt": now,
            }
        )
        await self.activity_repo.append(
            priority_id,
            actor,
            IMPORT_ACTIVITY_KIND,
            f"Imported from Azure DevOps #{work_item.id}",
            [f"{len(children)} child task(s) imported"],
        )
        logger.info("Imported work item #%s as priority %s", work_item.id, priority_id)
        return ImportResult(
            priorityId=priority_id,
            workItemId=work_item.id,
            title=work_item.title,
            childTasksCount=len(children),
            link=link_from_row(link_row),
        )

    # ── Batch sync ─────────────────────────────────────────────────

    async def sync_all(
        self,
        actor: str = "",
        installation_id: str | None = None,
        operation_id: str | None = None,
        trigger: str = "api",
    ) -> BatchSyncResult:
        configuration = await self._enabled_configuration(installation_id)
        if not operation_id:
            operation_id = await self.start_operation("azure_sync_all", configuration.installationId, trigger)
        result = BatchSyncResult(operationId=operation_id)

        try:
            links = [link_from_row(row) for row in await self.link_repo.list_all(configuration.installationId)]
            result.total = len(links)
            await self._update_operation(
                operation_id, phase="syncing", progress={"total": result.total, "processed": 0}
            )

            async with self._open_gateway(configuration) as gateway:
                for index, link in enumerate(links, start=1):
                    await self._sync_batch_item(gateway, configuration, link, actor, result)
                    await self._update_operation(
                        operation_id,
                        progress={"processed": index},
                        counters={
                            "updated": result.updated,
                            "unchanged": result.unchanged,
                            "skipped": len(result.skipped),
                            "errors": len(result.errors),
                        },
                    )

            await self.config_repo.touch_last_sync(configuration.installationId)
        except Exception as exc:
            await self._finish_operation(operation_id, status="failed", error=str(exc))
            raise

        await self._finish_operation(
            operation_id,
            status="completed",
            stats={
                "total": result.total,
                "updated": result.updated,
                "unchanged": result.unchanged,
                "skipped": len(result.skipped),
                "errors": len(result.errors),
            },
        )
        return result

    async def _sync_batch_item(
        self,
        gateway: Any,
        configuration: SyncConfiguration,
        link: WorkItemLink,
        actor: str,
        result: BatchSyncResult,
    ) -> None:
        entry = {"priorityId": link.priorityId, "workItemId": link.workItemId}
        try:
            preview, outcome = await self._sync_one(
                gateway,
                configuration,
                link.priorityId,
                None,
                actor,
                skip_when_hours_required=config.BATCH_SYNC_SKIP_HOURS_REQUIRED,
            )
        except AzureDevOpsAuthError:
            raise
        except OrphanedLinkError as exc:
            result.errors.append({**entry, "error": str(exc), "orphaned": exc.side})
            await self.link_repo.record_sync_error(link.priorityId, str(exc), config.MAX_LINK_SYNC_ERRORS)
            return
        except PrioritySyncError as exc:
            result.errors.append({**entry, "error": str(exc)})
            await self.link_repo.record_sync_error(link.priorityId, str(exc), config.MAX_LINK_SYNC_ERRORS)
            return
        except Exception as exc:
            logger.exception("Unexpected error syncing priority %s", link.priorityId)
            result.errors.append({**entry, "error": f"unexpected error: {exc}"})
            return

        if outcome is None:
            result.skipped.append({**entry, "reason": "hours_required", "taskIds": preview.hoursRequired})
            return
        if outcome.noop:
            result.unchanged += 1
        elif outcome.fully_synced:
            result.updated += 1
        else:
            message = outcome.remoteError or "link not advanced (concurrent update)"
            result.errors.append({**entry, "error": message, "localApplied": outcome.localApplied})
            await self.link_repo.record_sync_error(link.priorityId, message, config.MAX_LINK_SYNC_ERRORS)

    # ── Supplementary operations ───────────────────────────────────

    async def list_assigned_work_items(self, installation_id: str | None = None) -> list[dict[str, Any]]:
        """Work items assigned to the configured identity, flagged when already linked."""
        configuration = await self.load_configuration(installation_id)
        async with self._open_gateway(configuration) as gateway:
            items = await gateway.list_assigned_work_items(configuration.identity)
        linked: dict[int, str] = {}
        for row in await self.link_repo.list_all(configuration.installationId):
            if row["organization"] == configuration.organization and row["project"] == configuration.project:
                linked[int(row["work_item_id"])] = row["priority_id"]
        return [
            {**item.model_dump(), "linked": item.id in linked, "linkedPriorityId": linked.get(item.id)}
            for item in items
        ]

    async def export_priority(
        self,
        priority_id: str,
        work_item_type: str = "User Story",
        actor: str = "",
        installation_id: str | None = None,
    ) -> WorkItemLink:
        """Create a remote work item (plus one child task per checklist item) from a priority."""
        configuration = await self._enabled_configuration(installation_id)
        row = await self.priority_repo.get_by_id(priority_id)
        if not row:
            raise PriorityNotFoundError(priority_id)
        if await self.link_repo.get_by_priority(priority_id):
            raise AlreadyLinkedError(f"Priority {priority_id} is already linked", priority_id=priority_id)
        priority = priority_from_row(row)

        changes: list[str] = []
        async with self._open_gateway(configuration) as gateway:
            work_item = await gateway.create_work_item(
                work_item_type, priority.title, priority.description, configuration.identity
            )
            state = work_item.state
            target = local_to_remote(priority.status)
            if target != state:
                try:
                    state = (await gateway.patch_state(work_item.id, target)).state or target
                except RemoteRejectedError as exc:
                    logger.warning("Work item #%s kept state %s: %s", work_item.id, state, exc)

            link_row = await self.link_repo.create(
                {
                    "priorityId": priority_id,
                    "workItemId": work_item.id,
                    "workItemType": work_item_type,
                    "organization": configuration.organization,
                    "project": configuration.project,
                    "installationId": configuration.installationId,
                    "lastSyncedState": state,
                }
            )
            changes.append(f"Created {work_item_type} #{work_item.id} in state {state}")

            close_to = closing_state(configuration.stateMapping)
            for item in priority.checklist:
                task = await gateway.create_child_task(work_item.id, item.text, configuration.identity)
                changes.append(f"Created task #{task.id}: {item.text}")
                if item.completed:
                    await gateway.complete_task(task.id, close_to, item.completedHours)

        await self.activity_repo.append(
            priority_id, actor, EXPORT_ACTIVITY_KIND, f"Exported to Azure DevOps #{work_item.id}", changes
        )
        logger.info("Exported priority %s as %s #%s", priority_id, work_item_type, work_item.id)
        return link_from_row(link_row)

    async def refresh_completed_hours(
        self,
        priority_id: str,
        actor: str = "",
        installation_id: str | None = None,
    ) -> dict[str, Any]:
        """Copy positive remote ``completedWork`` values onto matching checklist items."""
        configuration = await self._enabled_configuration(installation_id)
        async with self._link_lock(priority_id):
            priority, link = await self._load_linked_pair(priority_id)
            async with self._open_gateway(configuration) as gateway:
                children = await gateway.fetch_child_tasks(link.workItemId)

            checklist = [item.model_copy() for item in priority.checklist]
            changes: list[str] = []
            for pair in correlate_by_text(priority.checklist, children):
                if pair.local is None or pair.remote is None or pair.local_index is None:
                    continue
                remote_hours = pair.remote.completedWork
                if not remote_hours or remote_hours <= 0 or remote_hours == pair.local.completedHours:
                    continue
                checklist[pair.local_index] = pair.local.model_copy(update={"completedHours": remote_hours})
                changes.append(f"{pair.text}: {pair.local.completedHours or 0:g}h -> {remote_hours:g}h")

            if changes:
                await self.priority_repo.update_sync_fields(
                    priority.id,
                    priority.status.value,
                    [item.model_dump() for item in checklist],
                    [item.model_dump() for item in priority.evidenceLinks],
                )
                await self.activity_repo.append(
                    priority.id, actor, HOURS_ACTIVITY_KIND, "Completed hours refreshed from Azure DevOps", changes
                )
        return {"priorityId": priority_id, "updated": len(changes), "changes": changes}

    async def list_orphaned_links(self, installation_id: str | None = None) -> list[WorkItemLink]:
        rows = await self.link_repo.list_orphaned(installation_id or config.INSTALLATION_ID)
        return [link_from_row(row) for row in rows]

    async def unlink(self, priority_id: str, actor: str = "") -> bool:
        async with self._link_lock(priority_id):
            link = await self._load_link(priority_id)
            deleted = await self.link_repo.delete(priority_id)
            if deleted and await self.priority_repo.get_by_id(priority_id):
                await self.activity_repo.append(
                    priority_id, actor, UNLINK_ACTIVITY_KIND, f"Unlinked from Azure DevOps #{link.workItemId}", []
                )
        self._link_locks.pop(priority_id, None)
        logger.info("Removed link %s <-> #%s", priority_id, link.workItemId)
        return deleted

    async def test_connection(self, raw_configuration: dict[str, Any] | SyncConfiguration) -> bool:
        configuration = (
            raw_configuration
            if isinstance(raw_configuration, SyncConfiguration)
            else validate_configuration(raw_configuration)
        )
        async with self._open_gateway(configuration) as gateway:
            return await gateway.test_connection()

    # ── Operation tracking ─────────────────────────────────────────

    async def start_operation(
        self,
        kind: str,
        installation_id: str,
        trigger: str = "api",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Create an observable operation and return its ID."""
        op_id = f"OP-{uuid.uuid4()}"
        now = _now()
        payload = {
            "id": op_id,
            "kind": kind,
            "installationId": installation_id,
            "trigger": trigger,
            "status": "running",
            "phase": "queued",
            "message": "",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "progress": {},
            "counters": {},
            "stats": {},
            "metadata": metadata or {},
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history :]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (installation=%s trigger=%s)", op_id, kind, installation_id, trigger)
        return op_id

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Batch runs, newest first."""
        async with self._ops_lock:
            return self._snapshots(self._operation_order[: max(1, limit)])

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        async with self._ops_lock:
            found = self._snapshots([operation_id])
        return found[0] if found else None

    async def get_observability_snapshot(self) -> dict[str, Any]:
        async with self._ops_lock:
            running = self._snapshots(
                [op_id for op_id in self._operation_order if op_id in self._active_operation_ids]
            )
            return {
                "activeOperationCount": len(running),
                "activeOperations": running,
                "recentOperations": self._snapshots(self._operation_order[:5]),
                "trackedOperationCount": len(self._operations),
            }

    def _snapshots(self, op_ids: list[str]) -> list[dict[str, Any]]:
        # Caller holds _ops_lock.
        return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def _update_operation(
        self,
        operation_id: str | None,
        *,
        phase: str | None = None,
        message: str | None = None,
        progress: dict[str, Any] | None = None,
        counters: dict[str, Any] | None = None,
    ) -> None:
        if not operation_id:
            return
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            if phase and phase != operation.get("phase"):
                operation["phase"] = phase
                logger.info("Operation update [%s] %s", operation_id, phase)
            if message is not None:
                operation["message"] = message
            if progress:
                operation.setdefault("progress", {}).update(progress)
            if counters:
                operation.setdefault("counters", {}).update(counters)
            operation["updatedAt"] = _now()

    async def _finish_operation(
        self,
        operation_id: str | None,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        if not operation_id:
            return
        now = _now()
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = status
            operation["phase"] = status
            operation["updatedAt"] = now
            operation["finishedAt"] = now
            if stats:
                operation.setdefault("stats", {}).update(stats)
            if error:
                operation["error"] = error
            started_at = datetime.fromisoformat(operation["startedAt"])
            operation["durationMs"] = max(0, int((datetime.fromisoformat(now) - started_at).total_seconds() * 1000))
            self._active_operation_ids.discard(operation_id)

        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)
