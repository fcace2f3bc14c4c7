"""Error taxonomy for the Azure DevOps synchronization engine."""
from __future__ import annotations


class PrioritySyncError(Exception):
    """Base class for every error raised by the sync engine."""


# ── Gateway errors ─────────────────────────────────────────────────

class AzureDevOpsError(PrioritySyncError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AzureDevOpsAuthError(AzureDevOpsError):
    """Credential rejected (401/403)."""


class AzureDevOpsTransportError(AzureDevOpsError):
    """Network failure, timeout or unexpected non-2xx response."""


class WorkItemNotFoundError(AzureDevOpsError):
    def __init__(self, work_item_id: int):
        super().__init__(f"Work item {work_item_id} not found", status_code=404)
        self.work_item_id = work_item_id


class RemoteRejectedError(AzureDevOpsError):
    """The remote refused the update (400), e.g. an invalid state transition."""


# ── Preconditions ──────────────────────────────────────────────────

class ConfigurationMissingError(PrioritySyncError):
    def __init__(self, installation_id: str):
        super().__init__(f"No Azure DevOps configuration for installation '{installation_id}'")
        self.installation_id = installation_id


class SyncDisabledError(PrioritySyncError):
    def __init__(self, installation_id: str):
        super().__init__(f"Azure DevOps sync is disabled for installation '{installation_id}'")
        self.installation_id = installation_id


class InvalidConfigurationError(PrioritySyncError):
    pass


# ── Local entities and links ───────────────────────────────────────

class PriorityNotFoundError(PrioritySyncError):
    def __init__(self, priority_id: str):
        super().__init__(f"Priority {priority_id} not found")
        self.priority_id = priority_id


class LinkNotFoundError(PrioritySyncError):
    def __init__(self, priority_id: str):
        super().__init__(f"Priority {priority_id} is not linked to Azure DevOps")
        self.priority_id = priority_id


class AlreadyLinkedError(PrioritySyncError):
    def __init__(self, message: str, priority_id: str = "", work_item_id: int | None = None):
        super().__init__(message)
        self.priority_id = priority_id
        self.work_item_id = work_item_id


class OrphanedLinkError(PrioritySyncError):
    """A Link whose local task or remote work item no longer exists."""

    def __init__(self, side: str, priority_id: str, work_item_id: int):
        target = "local priority" if side == "local" else "remote work item"
        super().__init__(
            f"Link {priority_id} <-> #{work_item_id} is orphaned: {target} no longer exists; unlink it manually"
        )
        self.side = side
        self.priority_id = priority_id
        self.work_item_id = work_item_id


class DuplicateRemoteLinkError(PrioritySyncError):
    def __init__(self, work_item_id: int, priority_ids: list[str]):
        super().__init__(
            f"Work item #{work_item_id} is linked to more than one priority: {', '.join(priority_ids)}"
        )
        self.work_item_id = work_item_id
        self.priority_ids = priority_ids


# ── Human input ────────────────────────────────────────────────────

class HoursRequiredError(PrioritySyncError):
    """Worked hours are missing or invalid for tasks that are about to be closed."""

    def __init__(self, missing_task_ids: list[str], invalid_task_ids: list[str] | None = None):
        invalid_task_ids = invalid_task_ids or []
        parts = []
        if missing_task_ids:
            parts.append(f"missing hours for tasks {', '.join(missing_task_ids)}")
        if invalid_task_ids:
            parts.append(f"invalid hours for tasks {', '.join(invalid_task_ids)}")
        super().__init__("; ".join(parts) or "hours required")
        self.missing_task_ids = missing_task_ids
        self.invalid_task_ids = invalid_task_ids
