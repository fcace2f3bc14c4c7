import json
import unittest

import httpx

from prioritysync.errors import (
    AzureDevOpsAuthError,
    AzureDevOpsTransportError,
    RemoteRejectedError,
    WorkItemNotFoundError,
)
from prioritysync.models import SyncConfiguration
from prioritysync.services.azure_devops_client import AzureDevOpsClient, extract_comment_links

API = "/acme/billing/_apis"


def _payload(item_id: int, title: str, state: str, item_type: str = "Task", **fields) -> dict:
    return {
        "id": item_id,
        "fields": {
            "System.Title": title,
            "System.State": state,
            "System.WorkItemType": item_type,
            **fields,
        },
        "_links": {"html": {"href": f"https://dev.azure.com/acme/billing/_workitems/edit/{item_id}"}},
    }


class _Router:
    """Maps (method, path) to canned responses and records every request."""

    def __init__(self, routes: dict) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"message": "not found"})
        if callable(handler):
            return handler(request)
        status, body = handler
        return httpx.Response(status, json=body)


def _client(routes: dict) -> tuple[AzureDevOpsClient, _Router]:
    router = _Router(routes)
    configuration = SyncConfiguration(
        organization="acme",
        project="billing",
        personalAccessToken="pat",
        workItemTypes=["User Story", "Bug"],
    )
    client = AzureDevOpsClient(
        configuration,
        base_url="https://dev.azure.com",
        timeout=5.0,
        transport=httpx.MockTransport(router),
    )
    return client, router


class AzureDevOpsClientReadTests(unittest.IsolatedAsyncioTestCase):
    async def test_fetch_work_item_parses_fields_and_sends_basic_auth(self) -> None:
        client, router = _client(
            {
                ("GET", f"{API}/wit/workitems/7"): (
                    200,
                    _payload(
                        7,
                        "Fix rounding",
                        "Active",
                        "Bug",
                        **{
                            "System.AssignedTo": {"uniqueName": "dana@acme.test"},
                            "Microsoft.VSTS.Scheduling.CompletedWork": 1.5,
                        },
                    ),
                )
            }
        )
        async with client:
            item = await client.fetch_work_item(7)

        self.assertEqual(item.title, "Fix rounding")
        self.assertEqual(item.type, "Bug")
        self.assertEqual(item.assignedTo, "dana@acme.test")
        self.assertEqual(item.completedWork, 1.5)
        self.assertTrue(item.url.endswith("/_workitems/edit/7"))
        request = router.requests[0]
        self.assertEqual(request.headers["authorization"], "Basic OnBhdA==")
        self.assertEqual(request.url.params["api-version"], "7.0")

    async def test_status_codes_map_to_error_types(self) -> None:
        cases = [
            (404, WorkItemNotFoundError),
            (401, AzureDevOpsAuthError),
            (403, AzureDevOpsAuthError),
            (503, AzureDevOpsTransportError),
        ]
        for status, error in cases:
            with self.subTest(status=status):
                client, _ = _client({("GET", f"{API}/wit/workitems/7"): (status, {"message": "nope"})})
                async with client:
                    with self.assertRaises(error):
                        await client.fetch_work_item(7)

    async def test_network_error_becomes_transport_error(self) -> None:
        def _boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = _client({("GET", f"{API}/wit/workitems/7"): _boom})
        async with client:
            with self.assertRaises(AzureDevOpsTransportError):
                await client.fetch_work_item(7)

    async def test_list_assigned_runs_wiql_then_batch_fetch(self) -> None:
        def _wiql(request):
            body = json.loads(request.content)
            self.assertIn("[System.AssignedTo] = 'o''brien@acme.test'", body["query"])
            self.assertIn("IN ('User Story', 'Bug')", body["query"])
            self.assertIn("NOT IN ('Closed', 'Removed', 'Done')", body["query"])
            return httpx.Response(200, json={"workItems": [{"id": 3}, {"id": 1}]})

        def _batch(request):
            self.assertEqual(request.url.params["ids"], "3,1")
            return httpx.Response(
                200,
                json={"value": [_payload(1, "Older", "New", "Bug"), _payload(3, "Newer", "Active", "User Story")]},
            )

        client, _ = _client({("POST", f"{API}/wit/wiql"): _wiql, ("GET", f"{API}/wit/workitems"): _batch})
        async with client:
            items = await client.list_assigned_work_items("o'brien@acme.test")

        self.assertEqual([item.id for item in items], [3, 1])

    async def test_list_assigned_with_no_results_skips_batch(self) -> None:
        client, router = _client({("POST", f"{API}/wit/wiql"): (200, {"workItems": []})})
        async with client:
            self.assertEqual(await client.list_assigned_work_items("dana@acme.test"), [])
        self.assertEqual(len(router.requests), 1)

    async def test_fetch_child_tasks_follows_forward_relations(self) -> None:
        def _parent(request):
            self.assertEqual(request.url.params["$expand"], "relations")
            return httpx.Response(
                200,
                json={
                    **_payload(10, "Story", "Active", "User Story"),
                    "relations": [
                        {"rel": "System.LinkTypes.Hierarchy-Forward", "url": "https://dev.azure.com/acme/_apis/wit/workItems/11"},
                        {"rel": "System.LinkTypes.Related", "url": "https://dev.azure.com/acme/_apis/wit/workItems/99"},
                        {"rel": "System.LinkTypes.Hierarchy-Forward", "url": "https://dev.azure.com/acme/_apis/wit/workItems/12"},
                    ],
                },
            )

        def _batch(request):
            self.assertEqual(request.url.params["ids"], "11,12")
            return httpx.Response(200, json={"value": [_payload(11, "a", "New"), _payload(12, "b", "Closed")]})

        client, _ = _client({("GET", f"{API}/wit/workitems/10"): _parent, ("GET", f"{API}/wit/workitems"): _batch})
        async with client:
            children = await client.fetch_child_tasks(10)

        self.assertEqual([(c.id, c.state) for c in children], [(11, "New"), (12, "Closed")])

    async def test_fetch_child_tasks_returns_empty_on_failure(self) -> None:
        client, _ = _client({("GET", f"{API}/wit/workitems/10"): (500, {"message": "down"})})
        async with client:
            with self.assertLogs("prioritysync.azure_devops", level="WARNING"):
                self.assertEqual(await client.fetch_child_tasks(10), [])

    async def test_fetch_comment_links_uses_comments_api_version(self) -> None:
        def _comments(request):
            self.assertEqual(request.url.params["api-version"], "7.0-preview.3")
            return httpx.Response(
                200,
                json={"comments": [{"text": "Design doc https://wiki.acme.test/design see also https://wiki.acme.test/design"}]},
            )

        client, _ = _client({("GET", f"{API}/wit/workitems/10/comments"): _comments})
        async with client:
            links = await client.fetch_comment_links(10)

        self.assertEqual(len(links), 1)
        self.assertEqual(links[0].title, "Design doc")

    async def test_fetch_comment_links_never_raises(self) -> None:
        client, _ = _client({})
        async with client:
            with self.assertLogs("prioritysync.azure_devops", level="WARNING"):
                self.assertEqual(await client.fetch_comment_links(10), [])

    async def test_test_connection(self) -> None:
        client, _ = _client({("GET", f"{API}/wit/workitemtypes"): (200, {"value": []})})
        async with client:
            self.assertTrue(await client.test_connection())

        client, _ = _client({("GET", f"{API}/wit/workitemtypes"): (401, {})})
        async with client:
            self.assertFalse(await client.test_connection())


class AzureDevOpsClientWriteTests(unittest.IsolatedAsyncioTestCase):
    async def test_patch_state_sends_json_patch(self) -> None:
        def _patch(request):
            self.assertEqual(request.headers["content-type"], "application/json-patch+json")
            self.assertEqual(
                json.loads(request.content),
                [{"op": "add", "path": "/fields/System.State", "value": "Closed"}],
            )
            return httpx.Response(200, json=_payload(7, "Story", "Closed", "User Story"))

        client, _ = _client({("PATCH", f"{API}/wit/workitems/7"): _patch})
        async with client:
            item = await client.patch_state(7, "Closed")

        self.assertEqual(item.state, "Closed")

    async def test_invalid_transition_is_rejected_error(self) -> None:
        client, _ = _client({("PATCH", f"{API}/wit/workitems/7"): (400, {"message": "invalid state"})})
        async with client:
            with self.assertRaises(RemoteRejectedError) as ctx:
                await client.patch_state(7, "Bogus")
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_complete_task_includes_completed_work(self) -> None:
        captured = {}

        def _patch(request):
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json=_payload(12, "b", "Closed"))

        client, _ = _client({("PATCH", f"{API}/wit/workitems/12"): _patch})
        async with client:
            await client.complete_task(12, "Closed", 2)

        self.assertEqual(
            captured["body"][1],
            {"op": "add", "path": "/fields/Microsoft.VSTS.Scheduling.CompletedWork", "value": 2.0},
        )

    async def test_create_child_task_links_to_parent(self) -> None:
        def _create(request):
            self.assertTrue(request.url.path.endswith("Task"))
            return httpx.Response(200, json=_payload(31, "write docs", "New"))

        def _link(request):
            body = json.loads(request.content)
            self.assertEqual(body[0]["path"], "/relations/-")
            self.assertEqual(body[0]["value"]["rel"], "System.LinkTypes.Hierarchy-Reverse")
            self.assertTrue(body[0]["value"]["url"].endswith("/wit/workItems/30"))
            return httpx.Response(200, json=_payload(31, "write docs", "New"))

        client, router = _client(
            {
                ("POST", f"{API}/wit/workitems/$Task"): _create,
                ("POST", f"{API}/wit/workitems/%24Task"): _create,
                ("PATCH", f"{API}/wit/workitems/31"): _link,
            }
        )
        async with client:
            task = await client.create_child_task(30, "write docs")

        self.assertEqual(task.id, 31)
        self.assertEqual([r.method for r in router.requests], ["POST", "PATCH"])


class ExtractCommentLinksTests(unittest.TestCase):
    def test_titles_fall_back_to_numbered_label(self) -> None:
        links = extract_comment_links(
            [
                {"text": "https://a.example.com/x"},
                {"text": "<div>see https://b.example.com/y</div>"},
                {"text": None},
            ]
        )

        self.assertEqual([link.url for link in links], ["https://a.example.com/x", "https://b.example.com/y"])
        self.assertEqual(links[0].title, "Link 1")
        self.assertEqual(links[1].title, "<div>see")


if __name__ == "__main__":
    unittest.main()
