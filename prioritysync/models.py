"""Pydantic models shared by the sync engine, repositories and routers."""
from __future__ import annotations

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from prioritysync.errors import SyncDisabledError


class LocalStatus(str, Enum):
    ON_TRACK = "ON_TRACK"
    AT_RISK = "AT_RISK"
    BLOCKED = "BLOCKED"
    DONE = "DONE"


# Remote states that must always land on DONE, whatever the override table says.
CLOSED_CLASS_REMOTE_STATES = ("Closed", "Done")


# ── Local task ("Priority") models ─────────────────────────────────

class ChecklistItem(BaseModel):
    text: str
    completed: bool = False
    completedHours: Optional[float] = None
    createdAt: str = ""


class EvidenceLink(BaseModel):
    title: str = ""
    url: str
    createdAt: str = ""


class Priority(BaseModel):
    id: str
    title: str
    description: str = ""
    status: LocalStatus = LocalStatus.ON_TRACK
    owner: str = ""
    checklist: list[ChecklistItem] = Field(default_factory=list)
    evidenceLinks: list[EvidenceLink] = Field(default_factory=list)
    createdAt: str = ""
    updatedAt: str = ""


class ActivityEntry(BaseModel):
    id: int
    priorityId: str
    actor: str = ""
    kind: str = "comment"  # "comment" | "azure_devops_sync" | "azure_devops_hours"
    message: str = ""
    changes: list[str] = Field(default_factory=list)
    createdAt: str = ""


# ── Remote work item models ────────────────────────────────────────

class WorkItem(BaseModel):
    id: int
    title: str = ""
    state: str = ""
    type: str = ""  # "User Story" | "Bug" | "Task" | ...
    description: str = ""
    assignedTo: str = ""
    completedWork: Optional[float] = None
    originalEstimate: Optional[float] = None
    remainingWork: Optional[float] = None
    url: str = ""


class WorkItemLink(BaseModel):
    priorityId: str
    workItemId: int
    workItemType: str = ""
    organization: str
    project: str
    installationId: str = "default"
    lastSyncedState: str = ""
    lastSyncAt: str = ""
    version: int = 0
    syncErrors: list[dict] = Field(default_factory=list)
    createdAt: str = ""


# ── Installation configuration ─────────────────────────────────────

class SyncConfiguration(BaseModel):
    """Validated per-installation settings, built once per sync invocation."""

    model_config = ConfigDict(frozen=True)

    installationId: str = "default"
    organization: str
    project: str
    personalAccessToken: str
    identity: str = ""
    syncEnabled: bool = False
    stateMapping: dict[str, LocalStatus] = Field(default_factory=dict)
    workItemTypes: list[str] = Field(default_factory=lambda: ["User Story", "Bug"])
    lastSyncAt: str = ""

    @field_validator("organization", "project", "personalAccessToken")
    @classmethod
    def _required_text(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("workItemTypes")
    @classmethod
    def _non_empty_types(cls, value: list[str]) -> list[str]:
        cleaned = [item.strip() for item in value if item and item.strip()]
        return cleaned or ["User Story", "Bug"]

    @model_validator(mode="after")
    def _closed_states_stay_done(self) -> "SyncConfiguration":
        for remote_state in CLOSED_CLASS_REMOTE_STATES:
            mapped = self.stateMapping.get(remote_state)
            if mapped is not None and mapped != LocalStatus.DONE:
                raise ValueError(
                    f"stateMapping cannot map closed remote state '{remote_state}' to {mapped.value}"
                )
        return self

    def require_enabled(self) -> "SyncConfiguration":
        if not self.syncEnabled:
            raise SyncDisabledError(self.installationId)
        return self

    def work_item_web_url(self, work_item_id: int, base_url: str = "https://dev.azure.com") -> str:
        return f"{base_url}/{self.organization}/{self.project}/_workitems/edit/{work_item_id}"


# ── Preview / result models ────────────────────────────────────────

TaskDirection = Literal["from-remote", "to-remote", "none"]


class TaskPreview(BaseModel):
    text: str
    taskId: Optional[str] = None  # remote child id; None for local-only items
    localCompleted: Optional[bool] = None  # None when the item only exists remotely
    remoteCompleted: Optional[bool] = None  # None when the item only exists locally
    remoteState: str = ""
    localCompletedHours: Optional[float] = None
    remoteCompletedWork: Optional[float] = None
    willClose: bool = False
    willReopen: bool = False
    willCloseRemote: bool = False
    willCreateRemote: bool = False  # local-only item, child task gets created
    willLogHours: bool = False  # both closed, local hours never reached the remote
    isNew: bool = False
    direction: TaskDirection = "none"


class DirectionSummary(BaseModel):
    changes: list[str] = Field(default_factory=list)
    willUpdate: bool = False


class SyncPreview(BaseModel):
    priorityId: str
    workItemId: int
    workItemType: str = ""
    title: str = ""
    localState: str
    remoteState: str
    remoteStateMapped: LocalStatus
    lastSyncedState: str = ""
    willUpdateLocalState: bool = False
    targetLocalState: Optional[LocalStatus] = None
    willUpdateRemoteState: bool = False
    targetRemoteState: Optional[str] = None
    willRefreshLink: bool = False
    tasks: list[TaskPreview] = Field(default_factory=list)
    newEvidenceLinks: list[EvidenceLink] = Field(default_factory=list)
    hoursRequired: list[str] = Field(default_factory=list)
    fromRemote: DirectionSummary = Field(default_factory=DirectionSummary)
    toRemote: DirectionSummary = Field(default_factory=DirectionSummary)
    hasChanges: bool = False


class DirectionResult(BaseModel):
    updated: bool = False
    changes: list[str] = Field(default_factory=list)


class SyncResult(BaseModel):
    priorityId: str
    workItemId: int
    noop: bool = False
    localApplied: bool = False
    remoteApplied: bool = False
    linkAdvanced: bool = False
    remoteError: Optional[str] = None
    newRemoteState: str = ""
    fromRemote: DirectionResult = Field(default_factory=DirectionResult)
    toRemote: DirectionResult = Field(default_factory=DirectionResult)

    @property
    def fully_synced(self) -> bool:
        return self.noop or (self.localApplied and self.remoteApplied and self.linkAdvanced)


class ImportResult(BaseModel):
    priorityId: str
    workItemId: int
    title: str = ""
    childTasksCount: int = 0
    link: WorkItemLink


class BatchSyncResult(BaseModel):
    operationId: str = ""
    total: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: list[dict] = Field(default_factory=list)
    errors: list[dict] = Field(default_factory=list)
