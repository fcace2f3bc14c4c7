"""Async Azure DevOps REST gateway.

Every remote interaction of the sync engine goes through ``AzureDevOpsClient``.
HTTP failures are mapped onto the ``AzureDevOpsError`` family so that callers
never see ``httpx`` exceptions:

* 401/403 -> ``AzureDevOpsAuthError``
* 404 -> ``WorkItemNotFoundError``
* 400 -> ``RemoteRejectedError``
* anything else non-2xx, timeouts and connection errors -> ``AzureDevOpsTransportError``

``fetch_child_tasks`` and ``fetch_comment_links`` are best-effort enrichments
and return an empty list instead of raising.
"""
from __future__ import annotations

import logging
import re
import time
from typing import Any, Optional, Sequence

import httpx

from prioritysync import config
from prioritysync.errors import (
    AzureDevOpsAuthError,
    AzureDevOpsError,
    AzureDevOpsTransportError,
    RemoteRejectedError,
    WorkItemNotFoundError,
)
from prioritysync.models import EvidenceLink, SyncConfiguration, WorkItem
from prioritysync.observability import record_remote_call, start_span

logger = logging.getLogger("prioritysync.azure_devops")

JSON_PATCH_CONTENT_TYPE = "application/json-patch+json"
CHILD_RELATION = "System.LinkTypes.Hierarchy-Forward"
PARENT_RELATION = "System.LinkTypes.Hierarchy-Reverse"
COMPLETED_WORK_FIELD = "Microsoft.VSTS.Scheduling.CompletedWork"
EXCLUDED_WIQL_STATES = ("Closed", "Removed", "Done")
MAX_BATCH_IDS = 200

_URL_RE = re.compile(r"(https?://[^\s<>\"{}|\\^`\[\]]+)", re.IGNORECASE)


def _wiql_literal(value: str) -> str:
    return "'" + (value or "").replace("'", "''") + "'"


def _as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def work_item_from_payload(payload: dict) -> WorkItem:
    fields = payload.get("fields") or {}
    assigned = fields.get("System.AssignedTo")
    if isinstance(assigned, dict):
        assigned = assigned.get("uniqueName") or assigned.get("displayName") or ""
    links = payload.get("_links") or {}
    html = links.get("html") if isinstance(links, dict) else None
    return WorkItem(
        id=int(payload["id"]),
        title=fields.get("System.Title") or "",
        state=fields.get("System.State") or "",
        type=fields.get("System.WorkItemType") or "",
        description=fields.get("System.Description") or "",
        assignedTo=assigned or "",
        completedWork=_as_float(fields.get(COMPLETED_WORK_FIELD)),
        originalEstimate=_as_float(fields.get("Microsoft.VSTS.Scheduling.OriginalEstimate")),
        remainingWork=_as_float(fields.get("Microsoft.VSTS.Scheduling.RemainingWork")),
        url=(html or {}).get("href") or payload.get("url") or "",
    )


def extract_comment_links(comments: Sequence[dict]) -> list[EvidenceLink]:
    """Pull unique URLs out of discussion comments, titled by the text before them."""
    links: list[EvidenceLink] = []
    seen: set[str] = set()
    for comment in comments:
        text = (comment or {}).get("text") or ""
        for match in _URL_RE.finditer(text):
            url = match.group(1)
            if url in seen:
                continue
            seen.add(url)
            title = text[max(0, match.start() - 50):match.start()].strip()
            links.append(EvidenceLink(title=title or f"Link {len(links) + 1}", url=url))
    return links


def _state_patch(state: str) -> list[dict]:
    return [{"op": "add", "path": "/fields/System.State", "value": state}]


class AzureDevOpsClient:
    """Gateway bound to one organization/project and credential."""

    def __init__(
        self,
        configuration: SyncConfiguration,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.organization = configuration.organization
        self.project = configuration.project
        self.work_item_types = list(configuration.workItemTypes)
        self.base_url = f"{(base_url or config.ADO_BASE_URL).rstrip('/')}/{self.organization}/{self.project}/_apis"
        self._auth = httpx.BasicAuth("", configuration.personalAccessToken)
        self._timeout = timeout if timeout is not None else config.ADO_TIMEOUT_SECONDS
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=self._auth,
                timeout=self._timeout,
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AzureDevOpsClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        json_patch: bool = False,
        work_item_id: int | None = None,
    ) -> Any:
        query = {"api-version": config.ADO_API_VERSION}
        query.update(params or {})
        headers = {"Content-Type": JSON_PATCH_CONTENT_TYPE} if json_patch else None
        client = await self._get_client()
        started = time.monotonic()
        status = "error"
        try:
            with start_span(f"azure_devops.{operation}", {"work_item_id": work_item_id}):
                response = await client.request(method, path, params=query, json=json_body, headers=headers)
            status = str(response.status_code)
        except httpx.HTTPError as exc:
            logger.warning("Azure DevOps %s failed: %s", operation, exc)
            raise AzureDevOpsTransportError(f"Azure DevOps {operation} failed: {exc}") from exc
        finally:
            record_remote_call(operation, status, (time.monotonic() - started) * 1000)

        if response.is_success:
            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as exc:
                raise AzureDevOpsTransportError(
                    f"Azure DevOps {operation} returned malformed JSON", response.status_code
                ) from exc

        detail = response.text[:500]
        code = response.status_code
        if code in (401, 403):
            raise AzureDevOpsAuthError(f"Azure DevOps rejected the credential ({code})", code)
        if code == 404 and work_item_id is not None:
            raise WorkItemNotFoundError(work_item_id)
        if code == 400:
            raise RemoteRejectedError(f"Azure DevOps rejected {operation}: {detail}", code)
        raise AzureDevOpsTransportError(f"Azure DevOps {operation} returned {code}: {detail}", code)

    # ── Reads ──────────────────────────────────────────────────────

    async def fetch_work_item(self, work_item_id: int) -> WorkItem:
        payload = await self._request(
            "fetch_work_item", "GET", f"/wit/workitems/{int(work_item_id)}", work_item_id=int(work_item_id)
        )
        return work_item_from_payload(payload)

    async def fetch_work_items(self, ids: Sequence[int]) -> list[WorkItem]:
        """Batch fetch preserving the order of ``ids``."""
        items: list[WorkItem] = []
        id_list = [int(i) for i in ids]
        for start in range(0, len(id_list), MAX_BATCH_IDS):
            chunk = id_list[start:start + MAX_BATCH_IDS]
            payload = await self._request(
                "fetch_work_items",
                "GET",
                "/wit/workitems",
                params={"ids": ",".join(str(i) for i in chunk), "errorPolicy": "omit"},
            )
            for entry in (payload or {}).get("value") or []:
                if entry:
                    items.append(work_item_from_payload(entry))
        order = {item_id: index for index, item_id in enumerate(id_list)}
        items.sort(key=lambda item: order.get(item.id, len(order)))
        return items

    async def list_assigned_work_items(self, identity: str) -> list[WorkItem]:
        """Open work items of the configured types assigned to ``identity``, newest change first."""
        types = ", ".join(_wiql_literal(t) for t in self.work_item_types)
        excluded = ", ".join(_wiql_literal(s) for s in EXCLUDED_WIQL_STATES)
        query = (
            "SELECT [System.Id], [System.Title], [System.State], [System.WorkItemType] "
            "FROM WorkItems "
            f"WHERE [System.AssignedTo] = {_wiql_literal(identity)} "
            f"AND [System.WorkItemType] IN ({types}) "
            f"AND [System.State] NOT IN ({excluded}) "
            "ORDER BY [System.ChangedDate] DESC"
        )
        payload = await self._request("query_work_items", "POST", "/wit/wiql", json_body={"query": query})
        ids = [int(ref["id"]) for ref in (payload or {}).get("workItems") or [] if ref.get("id") is not None]
        if not ids:
            return []
        return await self.fetch_work_items(ids)

    async def fetch_child_tasks(self, work_item_id: int) -> list[WorkItem]:
        try:
            payload = await self._request(
                "fetch_relations",
                "GET",
                f"/wit/workitems/{int(work_item_id)}",
                params={"$expand": "relations"},
                work_item_id=int(work_item_id),
            )
            child_ids: list[int] = []
            for relation in (payload or {}).get("relations") or []:
                if relation.get("rel") != CHILD_RELATION:
                    continue
                tail = str(relation.get("url") or "").rstrip("/").rsplit("/", 1)[-1]
                if tail.isdigit():
                    child_ids.append(int(tail))
            if not child_ids:
                return []
            return await self.fetch_work_items(child_ids)
        except AzureDevOpsError as exc:
            logger.warning("Child tasks for work item %s unavailable: %s", work_item_id, exc)
            return []

    async def fetch_comment_links(self, work_item_id: int) -> list[EvidenceLink]:
        try:
            payload = await self._request(
                "fetch_comments",
                "GET",
                f"/wit/workitems/{int(work_item_id)}/comments",
                params={"api-version": config.ADO_COMMENTS_API_VERSION},
                work_item_id=int(work_item_id),
            )
        except AzureDevOpsError as exc:
            logger.warning("Comments for work item %s unavailable: %s", work_item_id, exc)
            return []
        return extract_comment_links((payload or {}).get("comments") or [])

    async def test_connection(self) -> bool:
        try:
            await self._request("test_connection", "GET", "/wit/workitemtypes")
        except AzureDevOpsError as exc:
            logger.info("Azure DevOps connection test failed for %s/%s: %s", self.organization, self.project, exc)
            return False
        return True

    # ── Writes ─────────────────────────────────────────────────────

    async def patch_state(self, work_item_id: int, state: str) -> WorkItem:
        payload = await self._request(
            "patch_state",
            "PATCH",
            f"/wit/workitems/{int(work_item_id)}",
            json_body=_state_patch(state),
            json_patch=True,
            work_item_id=int(work_item_id),
        )
        logger.info("Work item %s moved to %s", work_item_id, state)
        return work_item_from_payload(payload)

    async def complete_task(self, task_id: int, state: str, completed_work: float | None = None) -> WorkItem:
        """Close a child task, optionally recording worked hours in the same patch."""
        document = _state_patch(state)
        if completed_work is not None:
            document.append({"op": "add", "path": f"/fields/{COMPLETED_WORK_FIELD}", "value": float(completed_work)})
        payload = await self._request(
            "complete_task",
            "PATCH",
            f"/wit/workitems/{int(task_id)}",
            json_body=document,
            json_patch=True,
            work_item_id=int(task_id),
        )
        return work_item_from_payload(payload)

    async def log_completed_work(self, task_id: int, hours: float) -> None:
        await self._request(
            "log_completed_work",
            "PATCH",
            f"/wit/workitems/{int(task_id)}",
            json_body=[{"op": "add", "path": f"/fields/{COMPLETED_WORK_FIELD}", "value": float(hours)}],
            json_patch=True,
            work_item_id=int(task_id),
        )

    async def create_work_item(
        self,
        work_item_type: str,
        title: str,
        description: str = "",
        assigned_to: str = "",
    ) -> WorkItem:
        document = [{"op": "add", "path": "/fields/System.Title", "value": title}]
        if description:
            document.append({"op": "add", "path": "/fields/System.Description", "value": description})
        if assigned_to:
            document.append({"op": "add", "path": "/fields/System.AssignedTo", "value": assigned_to})
        payload = await self._request(
            "create_work_item",
            "POST",
            f"/wit/workitems/${work_item_type}",
            json_body=document,
            json_patch=True,
        )
        item = work_item_from_payload(payload)
        logger.info("Created %s #%s in %s/%s", work_item_type, item.id, self.organization, self.project)
        return item

    async def create_child_task(self, parent_id: int, title: str, assigned_to: str = "") -> WorkItem:
        document = [{"op": "add", "path": "/fields/System.Title", "value": title}]
        if assigned_to:
            document.append({"op": "add", "path": "/fields/System.AssignedTo", "value": assigned_to})
        payload = await self._request(
            "create_child_task", "POST", "/wit/workitems/$Task", json_body=document, json_patch=True
        )
        task = work_item_from_payload(payload)
        parent_url = f"{self.base_url}/wit/workItems/{int(parent_id)}"
        await self._request(
            "link_child_task",
            "PATCH",
            f"/wit/workitems/{task.id}",
            json_body=[
                {
                    "op": "add",
                    "path": "/relations/-",
                    "value": {"rel": PARENT_RELATION, "url": parent_url},
                }
            ],
            json_patch=True,
            work_item_id=task.id,
        )
        return task
