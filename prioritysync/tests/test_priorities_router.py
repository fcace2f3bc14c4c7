import unittest
from unittest.mock import patch

from fastapi import HTTPException

from prioritysync.routers import priorities as priorities_router


class _FakePriorityRepo:
    def __init__(self) -> None:
        self.rows = {
            "P-1": {
                "id": "P-1",
                "title": "Ship billing export",
                "status": "AT_RISK",
                "owner": "dana",
                "checklist_json": '[{"text": "load test", "completed": true, "completedHours": 2}]',
                "evidence_links_json": "[]",
            }
        }
        self.created: list[dict] = []
        self.deleted: list[str] = []

    async def list_all(self, owner=None):
        return [row for row in self.rows.values() if not owner or row["owner"] == owner]

    async def get_by_id(self, priority_id):
        return self.rows.get(priority_id)

    async def create(self, data):
        self.created.append(data)
        return {"id": "P-new", "title": data["title"], "status": data["status"], "checklist_json": "[]"}

    async def delete(self, priority_id):
        self.deleted.append(priority_id)


class _FakeLinkRepo:
    async def get_by_priority(self, priority_id):
        if priority_id != "P-1":
            return None
        return {
            "priority_id": "P-1",
            "work_item_id": 42,
            "organization": "acme",
            "project": "billing",
            "last_synced_state": "Active",
            "version": 3,
        }


class _FakeActivityRepo:
    async def list_for(self, priority_id, kind=None):
        return [
            {
                "id": 1,
                "priority_id": priority_id,
                "actor": "dana",
                "kind": kind or "azure_devops_sync",
                "message": "Synchronized with Azure DevOps #42",
                "changes_json": '["Status ON_TRACK -> DONE"]',
            }
        ]


class PrioritiesRouterTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.repo = _FakePriorityRepo()
        self.patches = [
            patch.object(priorities_router.connection, "get_connection", return_value=object()),
            patch.object(priorities_router, "get_priority_repository", return_value=self.repo),
            patch.object(priorities_router, "get_work_item_link_repository", return_value=_FakeLinkRepo()),
            patch.object(priorities_router, "get_activity_repository", return_value=_FakeActivityRepo()),
        ]
        for p in self.patches:
            p.start()

    def tearDown(self) -> None:
        for p in self.patches:
            p.stop()

    async def test_get_priority_includes_link(self) -> None:
        detail = await priorities_router.get_priority("P-1")

        self.assertEqual(detail.status.value, "AT_RISK")
        self.assertEqual(detail.checklist[0].completedHours, 2.0)
        self.assertEqual(detail.link.workItemId, 42)
        self.assertEqual(detail.link.version, 3)

    async def test_get_missing_priority_is_404(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await priorities_router.get_priority("P-missing")
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_list_filters_by_owner(self) -> None:
        self.assertEqual(len(await priorities_router.list_priorities(owner="dana")), 1)
        self.assertEqual(await priorities_router.list_priorities(owner="someone"), [])

    async def test_create_serializes_enum_status(self) -> None:
        created = await priorities_router.create_priority(
            priorities_router.PriorityCreate(title="New one", status="BLOCKED")
        )

        self.assertEqual(self.repo.created[0]["status"], "BLOCKED")
        self.assertEqual(created.id, "P-new")

    async def test_delete_missing_is_404(self) -> None:
        with self.assertRaises(HTTPException):
            await priorities_router.delete_priority("P-missing")
        await priorities_router.delete_priority("P-1")
        self.assertEqual(self.repo.deleted, ["P-1"])

    async def test_activity_is_parsed(self) -> None:
        entries = await priorities_router.list_priority_activity("P-1", kind=None)

        self.assertEqual(entries[0].changes, ["Status ON_TRACK -> DONE"])


if __name__ == "__main__":
    unittest.main()
