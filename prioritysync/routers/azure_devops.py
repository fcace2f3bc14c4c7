"""Azure DevOps sync API."""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from pydantic import BaseModel, Field

from prioritysync import config
from prioritysync.configuration import save_configuration, validate_configuration
from prioritysync.errors import (
    AlreadyLinkedError,
    AzureDevOpsAuthError,
    AzureDevOpsError,
    ConfigurationMissingError,
    DuplicateRemoteLinkError,
    HoursRequiredError,
    InvalidConfigurationError,
    LinkNotFoundError,
    OrphanedLinkError,
    PriorityNotFoundError,
    PrioritySyncError,
    RemoteRejectedError,
    SyncDisabledError,
    WorkItemNotFoundError,
)
from prioritysync.models import (
    BatchSyncResult,
    ImportResult,
    LocalStatus,
    SyncPreview,
    SyncResult,
    WorkItemLink,
)

logger = logging.getLogger("prioritysync.api")

azure_devops_router = APIRouter(prefix="/api/azure-devops", tags=["azure-devops"])


class ConfigurationPayload(BaseModel):
    organization: str
    project: str
    personalAccessToken: str = ""
    identity: str = ""
    syncEnabled: bool = False
    stateMapping: dict[str, LocalStatus] = Field(default_factory=dict)
    workItemTypes: list[str] = Field(default_factory=lambda: ["User Story", "Bug"])


class SyncRequest(BaseModel):
    hours: dict[str, float] = Field(default_factory=dict)
    actor: str = ""


class ImportRequest(BaseModel):
    workItemId: int
    owner: str = ""
    actor: str = ""


class ExportRequest(BaseModel):
    priorityId: str
    workItemType: str = "User Story"
    actor: str = ""


class SyncAllRequest(BaseModel):
    background: bool = True
    actor: str = ""
    trigger: str = "api"


class ActorRequest(BaseModel):
    actor: str = ""


def _get_sync_service(request: Request):
    service = getattr(request.app.state, "azure_sync", None)
    if not service:
        raise HTTPException(status_code=503, detail="Azure DevOps sync service not initialized")
    return service


def _http_error(exc: PrioritySyncError) -> HTTPException:
    """Translate a sync engine error into the HTTP status the dashboard expects."""
    if isinstance(exc, HoursRequiredError):
        return HTTPException(
            status_code=400,
            detail={
                "message": str(exc),
                "missingTaskIds": exc.missing_task_ids,
                "invalidTaskIds": exc.invalid_task_ids,
            },
        )
    if isinstance(exc, (InvalidConfigurationError, RemoteRejectedError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, AzureDevOpsAuthError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, (PriorityNotFoundError, LinkNotFoundError, WorkItemNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, OrphanedLinkError):
        return HTTPException(
            status_code=409,
            detail={"message": str(exc), "orphaned": exc.side, "workItemId": exc.work_item_id},
        )
    if isinstance(exc, (DuplicateRemoteLinkError, AlreadyLinkedError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (ConfigurationMissingError, SyncDisabledError)):
        return HTTPException(status_code=412, detail=str(exc))
    if isinstance(exc, AzureDevOpsError):
        return HTTPException(status_code=502, detail=str(exc))
    logger.error("Unmapped sync error: %s", exc)
    return HTTPException(status_code=500, detail=str(exc))


def _masked(configuration) -> dict[str, Any]:
    payload = configuration.model_dump(mode="json")
    token = payload.pop("personalAccessToken", "")
    payload["hasPersonalAccessToken"] = bool(token)
    return payload


# ── Configuration ──────────────────────────────────────────────────

@azure_devops_router.get("/config")
async def get_configuration(request: Request):
    service = _get_sync_service(request)
    try:
        configuration = await service.load_configuration()
    except PrioritySyncError as exc:
        raise _http_error(exc) from exc
    return _masked(configuration)


@azure_devops_router.put("/config")
async def update_configuration(request: Request, payload: ConfigurationPayload):
    """Save the installation configuration; enabling sync requires a passing connection test."""
    service = _get_sync_service(request)
    data = payload.model_dump(mode="json")
    data["installationId"] = config.INSTALLATION_ID
    if not data["personalAccessToken"]:
        try:
            data["personalAccessToken"] = (await service.load_configuration()).personalAccessToken
        except ConfigurationMissingError as exc:
            raise HTTPException(status_code=400, detail="personalAccessToken is required") from exc
        except PrioritySyncError as exc:
            raise _http_error(exc) from exc

    try:
        candidate = validate_configuration(data)
        if candidate.syncEnabled and not await service.test_connection(candidate):
            raise HTTPException(
                status_code=400,
                detail="Connection test failed; sync cannot be enabled with these credentials",
            )
        saved = await save_configuration(service.db, data)
    except PrioritySyncError as exc:
        raise _http_error(exc) from exc
    return _masked(saved)


@azure_devops_router.post("/config/test")
async def test_configuration(request: Request, payload: ConfigurationPayload):
    service = _get_sync_service(request)
    data = payload.model_dump(mode="json")
    data["installationId"] = config.INSTALLATION_ID
    try:
        ok = await service.test_connection(data)
    except PrioritySyncError as exc:
        raise _http_error(exc) from exc
    return {"status": "ok" if ok else "failed", "connected": ok}


# ── Work items and single-link sync ────────────────────────────────

@azure_devops_router.get("/work-items")
async def list_work_items(request: Request):
    service = _get_sync_service(request)
    try:
        items = await service.list_assigned_work_items()
    except PrioritySyncError as exc:
        raise _http_error(exc) from exc
    return {"status": "ok", "count": len(items), "items": items}


@azure_devops_router.get("/preview/{priority_id}", response_model=SyncPreview)
async def get_sync_preview(request: Request, priority_id: str):
    service = _get_sync_service(request)
    try:
        return await service.compute_preview(priority_id)
    except PrioritySyncError as exc:
        raise _http_error(exc) from exc


@azure_devops_router.post("/sync/{priority_id}", response_model=SyncResult)
async def sync_priority(request: Request, priority_id: str, payload: SyncRequest):
    service = _get_sync_service(request)
    try:
        return await service.execute_sync(priority_id, hours=payload.hours, actor=payload.actor)
    except PrioritySyncError as exc:
        raise _http_error(exc) from exc


@azure_devops_router.post("/import", response_model=ImportResult, status_code=201)
async def import_work_item(request: Request, payload: ImportRequest):
    service = _get_sync_service(request)
    try:
        return await service.import_as_new_task(payload.workItemId, owner=payload.owner, actor=payload.actor)
    except PrioritySyncError as exc:
        raise _http_error(exc) from exc


@azure_devops_router.post("/export", response_model=WorkItemLink, status_code=201)
async def export_priority(request: Request, payload: ExportRequest):
    service = _get_sync_service(request)
    try:
        return await service.export_priority(
            payload.priorityId, work_item_type=payload.workItemType, actor=payload.actor
        )
    except PrioritySyncError as exc:
        raise _http_error(exc) from exc


@azure_devops_router.post("/refresh-hours/{priority_id}")
async def refresh_hours(request: Request, priority_id: str, payload: Optional[ActorRequest] = None):
    service = _get_sync_service(request)
    try:
        return await service.refresh_completed_hours(priority_id, actor=(payload.actor if payload else ""))
    except PrioritySyncError as exc:
        raise _http_error(exc) from exc


# ── Batch sync and operations ──────────────────────────────────────

@azure_devops_router.post("/sync-all")
async def sync_all(request: Request, background_tasks: BackgroundTasks, payload: SyncAllRequest):
    service = _get_sync_service(request)
    try:
        configuration = (await service.load_configuration()).require_enabled()
    except PrioritySyncError as exc:
        raise _http_error(exc) from exc

    if payload.background:
        operation_id = await service.start_operation(
            "azure_sync_all", configuration.installationId, payload.trigger, {"actor": payload.actor}
        )

        async def _run() -> None:
            try:
                await service.sync_all(actor=payload.actor, operation_id=operation_id, trigger=payload.trigger)
            except Exception:
                logger.exception("Background Azure DevOps sync failed [%s]", operation_id)

        background_tasks.add_task(_run)
        return {"status": "accepted", "mode": "background", "operationId": operation_id}

    try:
        result: BatchSyncResult = await service.sync_all(actor=payload.actor, trigger=payload.trigger)
    except PrioritySyncError as exc:
        raise _http_error(exc) from exc
    return {"status": "ok", "mode": "foreground", "operationId": result.operationId, "result": result}


@azure_devops_router.get("/status")
async def get_sync_status(request: Request):
    service = _get_sync_service(request)
    observability = await service.get_observability_snapshot()
    try:
        configuration = await service.load_configuration()
        installation = {
            "installationId": configuration.installationId,
            "syncEnabled": configuration.syncEnabled,
            "lastSyncAt": configuration.lastSyncAt,
        }
    except PrioritySyncError:
        installation = {"installationId": config.INSTALLATION_ID, "syncEnabled": False, "lastSyncAt": ""}
    return {"status": "active", "installation": installation, "operations": observability}


@azure_devops_router.get("/operations")
async def list_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    service = _get_sync_service(request)
    operations = await service.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@azure_devops_router.get("/operations/{operation_id}")
async def get_operation(request: Request, operation_id: str):
    service = _get_sync_service(request)
    operation = await service.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return operation


# ── Link administration ────────────────────────────────────────────

@azure_devops_router.get("/orphans", response_model=list[WorkItemLink])
async def list_orphans(request: Request):
    service = _get_sync_service(request)
    return await service.list_orphaned_links()


@azure_devops_router.delete("/links/{priority_id}")
async def unlink_priority(request: Request, priority_id: str, actor: str = Query("")):
    service = _get_sync_service(request)
    try:
        deleted = await service.unlink(priority_id, actor=actor)
    except PrioritySyncError as exc:
        raise _http_error(exc) from exc
    return {"status": "ok", "priorityId": priority_id, "deleted": deleted}
