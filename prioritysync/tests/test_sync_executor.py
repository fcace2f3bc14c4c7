import json
import unittest

import aiosqlite

from prioritysync.db.repositories.links import SqliteWorkItemLinkRepository, link_from_row
from prioritysync.db.repositories.priorities import (
    SqliteActivityRepository,
    SqlitePriorityRepository,
    priority_from_row,
)
from prioritysync.db.sqlite_migrations import run_migrations
from prioritysync.errors import AzureDevOpsTransportError, HoursRequiredError, RemoteRejectedError
from prioritysync.models import WorkItem
from prioritysync.services.sync_executor import SyncExecutor, validate_hours
from prioritysync.services.sync_preview import build_sync_preview


class _FakeGateway:
    def __init__(self, fail_on: str = "", reject_on: str = "") -> None:
        self.calls: list[tuple] = []
        self.fail_on = fail_on
        self.reject_on = reject_on
        self.closed_with: dict[int, float | None] = {}
        self.created: list[tuple] = []
        self._next_id = 700

    def _maybe_raise(self, name: str) -> None:
        if name == self.fail_on:
            raise AzureDevOpsTransportError(f"{name} timed out")
        if name == self.reject_on:
            raise RemoteRejectedError(f"{name} rejected", 400)

    async def patch_state(self, work_item_id, state):
        self.calls.append(("patch_state", work_item_id, state))
        self._maybe_raise("patch_state")
        return WorkItem(id=work_item_id, state=state)

    async def complete_task(self, task_id, state, completed_work=None):
        self.calls.append(("complete_task", task_id, state))
        self._maybe_raise("complete_task")
        self.closed_with[task_id] = completed_work
        return WorkItem(id=task_id, state=state)

    async def log_completed_work(self, task_id, hours):
        self.calls.append(("log_completed_work", task_id, hours))
        self._maybe_raise("log_completed_work")

    async def create_child_task(self, parent_id, title, assigned_to=""):
        self._next_id += 1
        self.calls.append(("create_child_task", parent_id, title))
        self._maybe_raise("create_child_task")
        self.created.append((self._next_id, title, assigned_to))
        return WorkItem(id=self._next_id, title=title, state="New", type="Task")


def _child(item_id: int, title: str, state: str, completed_work=None) -> WorkItem:
    return WorkItem(id=item_id, title=title, state=state, type="Task", completedWork=completed_work)


class ValidateHoursTests(unittest.TestCase):
    def test_accepts_zero_and_numeric_strings(self) -> None:
        self.assertEqual(validate_hours(["1", "2"], {"1": 0, "2": "2.5"}), {"1": 0.0, "2": 2.5})

    def test_reports_missing_and_invalid_separately(self) -> None:
        with self.assertRaises(HoursRequiredError) as ctx:
            validate_hours(["1", "2", "3", "4"], {"2": -1, "3": float("inf"), "4": "abc"})

        self.assertEqual(ctx.exception.missing_task_ids, ["1"])
        self.assertEqual(ctx.exception.invalid_task_ids, ["2", "3", "4"])


class SyncExecutorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.priorities = SqlitePriorityRepository(self.db)
        self.activity = SqliteActivityRepository(self.db)
        self.links = SqliteWorkItemLinkRepository(self.db)
        await self.priorities.create(
            {
                "id": "P-1",
                "title": "Ship billing export",
                "status": "ON_TRACK",
                "checklist": [
                    {"text": "load test", "completed": False},
                    {"text": "docs", "completed": True, "completedHours": 1.0},
                ],
            }
        )
        await self.links.create(
            {
                "priorityId": "P-1",
                "workItemId": 100,
                "workItemType": "User Story",
                "organization": "acme",
                "project": "billing",
                "lastSyncedState": "Active",
            }
        )

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _state(self):
        priority = priority_from_row(await self.priorities.get_by_id("P-1"))
        link = link_from_row(await self.links.get_by_priority("P-1"))
        return priority, link

    async def _preview(self, remote_state: str, children):
        priority, link = await self._state()
        work_item = WorkItem(id=100, title=priority.title, state=remote_state, type="User Story")
        return build_sync_preview(priority, link, work_item, children), priority, link

    def _children(self):
        return [
            _child(55, "load test", "Closed"),
            _child(56, "docs", "Active"),
            _child(57, "rollback plan", "New"),
        ]

    async def test_missing_hours_reject_before_any_write(self) -> None:
        gateway = _FakeGateway()
        preview, priority, link = await self._preview("Resolved", self._children())
        before = await self.priorities.get_by_id("P-1")

        with self.assertRaises(HoursRequiredError) as ctx:
            await SyncExecutor(self.priorities, self.activity, self.links, gateway).execute(
                preview, priority, link, hours={}
            )

        self.assertEqual(ctx.exception.missing_task_ids, ["55"])
        self.assertEqual(gateway.calls, [])
        self.assertEqual(await self.priorities.get_by_id("P-1"), before)
        _, link_after = await self._state()
        self.assertEqual(link_after.version, 0)
        self.assertEqual(await self.activity.list_for("P-1"), [])

    async def test_full_sync_applies_both_directions_and_audits(self) -> None:
        gateway = _FakeGateway()
        preview, priority, link = await self._preview("Resolved", self._children())

        result = await SyncExecutor(self.priorities, self.activity, self.links, gateway).execute(
            preview, priority, link, hours={"55": 4}, actor="dana"
        )

        self.assertTrue(result.fully_synced)
        self.assertTrue(result.fromRemote.updated)
        self.assertTrue(result.toRemote.updated)
        self.assertEqual(result.newRemoteState, "Resolved")
        self.assertEqual(
            gateway.calls,
            [("log_completed_work", 55, 4.0), ("complete_task", 56, "Closed")],
        )
        self.assertEqual(gateway.closed_with, {56: 1.0})

        updated, link_after = await self._state()
        self.assertEqual(updated.status.value, "DONE")
        self.assertTrue(updated.checklist[0].completed)
        self.assertEqual(updated.checklist[0].completedHours, 4.0)
        self.assertEqual(updated.checklist[2].text, "rollback plan")
        self.assertFalse(updated.checklist[2].completed)
        self.assertEqual(link_after.version, 1)
        self.assertEqual(link_after.lastSyncedState, "Resolved")

        audit = await self.activity.list_for("P-1", kind="azure_devops_sync")
        self.assertEqual(len(audit), 1)
        self.assertEqual(audit[0]["actor"], "dana")
        self.assertTrue(any("rollback plan" in change for change in json.loads(audit[0]["changes_json"])))

    async def test_no_changes_is_a_noop_without_writes(self) -> None:
        gateway = _FakeGateway()
        preview, priority, link = await self._preview(
            "Active", [_child(55, "load test", "Active"), _child(56, "docs", "Closed", 1.0)]
        )
        before = await self.priorities.get_by_id("P-1")

        result = await SyncExecutor(self.priorities, self.activity, self.links, gateway).execute(
            preview, priority, link
        )

        self.assertTrue(result.noop)
        self.assertTrue(result.fully_synced)
        self.assertEqual(gateway.calls, [])
        self.assertEqual(await self.priorities.get_by_id("P-1"), before)
        self.assertEqual(await self.activity.list_for("P-1"), [])
        _, link_after = await self._state()
        self.assertEqual(link_after.version, 0)

    async def test_remote_failure_keeps_local_write_and_link(self) -> None:
        gateway = _FakeGateway(fail_on="complete_task")
        preview, priority, link = await self._preview("Resolved", self._children())

        result = await SyncExecutor(self.priorities, self.activity, self.links, gateway).execute(
            preview, priority, link, hours={"55": 2}
        )

        self.assertTrue(result.localApplied)
        self.assertFalse(result.remoteApplied)
        self.assertFalse(result.linkAdvanced)
        self.assertIn("timed out", result.remoteError)
        self.assertTrue(result.toRemote.updated)
        self.assertEqual(result.toRemote.changes, ["Logged 2h on task load test"])
        updated, link_after = await self._state()
        self.assertEqual(updated.status.value, "DONE")
        self.assertEqual(link_after.version, 0)
        self.assertEqual(link_after.lastSyncedState, "Active")
        self.assertEqual(await self.activity.list_for("P-1"), [])

    async def test_rejected_child_close_is_recorded_not_fatal(self) -> None:
        gateway = _FakeGateway(reject_on="complete_task")
        preview, priority, link = await self._preview("Active", [_child(56, "docs", "Active")])

        result = await SyncExecutor(self.priorities, self.activity, self.links, gateway).execute(
            preview, priority, link
        )

        self.assertTrue(result.remoteApplied)
        self.assertTrue(result.linkAdvanced)
        self.assertTrue(any("refused" in change for change in result.toRemote.changes))

    async def test_local_status_change_patches_parent(self) -> None:
        await self.priorities.update_sync_fields("P-1", "DONE", [], [])
        gateway = _FakeGateway()
        preview, priority, link = await self._preview("Active", [])

        result = await SyncExecutor(self.priorities, self.activity, self.links, gateway).execute(
            preview, priority, link
        )

        self.assertEqual(gateway.calls, [("patch_state", 100, "Closed")])
        self.assertEqual(result.newRemoteState, "Closed")
        self.assertFalse(result.fromRemote.updated)
        _, link_after = await self._state()
        self.assertEqual(link_after.lastSyncedState, "Closed")

    async def test_stale_link_version_is_not_advanced(self) -> None:
        gateway = _FakeGateway()
        preview, priority, link = await self._preview("Active", [_child(56, "docs", "Active")])
        await self.links.advance_sync_state("P-1", 0, "Active")

        result = await SyncExecutor(self.priorities, self.activity, self.links, gateway).execute(
            preview, priority, link
        )

        self.assertTrue(result.remoteApplied)
        self.assertFalse(result.linkAdvanced)
        self.assertFalse(result.fully_synced)
        self.assertEqual(await self.activity.list_for("P-1"), [])

    async def test_retry_after_partial_failure_resends_stamped_hours(self) -> None:
        failing = _FakeGateway(fail_on="log_completed_work")
        preview, priority, link = await self._preview("Resolved", self._children())

        first = await SyncExecutor(self.priorities, self.activity, self.links, failing).execute(
            preview, priority, link, hours={"55": 4}
        )

        self.assertTrue(first.localApplied)
        self.assertFalse(first.remoteApplied)
        self.assertEqual(first.toRemote.changes, [])

        # Remote is untouched: 55 still has no completed work, 56 is still open.
        children = [
            _child(55, "load test", "Closed"),
            _child(56, "docs", "Active"),
            _child(57, "rollback plan", "New"),
        ]
        retry_preview, priority, link = await self._preview("Resolved", children)

        self.assertEqual(retry_preview.hoursRequired, [])
        self.assertTrue(retry_preview.tasks[0].willLogHours)
        self.assertEqual(retry_preview.tasks[0].localCompletedHours, 4.0)

        gateway = _FakeGateway()
        retry = await SyncExecutor(self.priorities, self.activity, self.links, gateway).execute(
            retry_preview, priority, link
        )

        self.assertTrue(retry.fully_synced)
        self.assertEqual(
            gateway.calls,
            [("log_completed_work", 55, 4.0), ("complete_task", 56, "Closed")],
        )
        _, link_after = await self._state()
        self.assertEqual(link_after.lastSyncedState, "Resolved")
        self.assertEqual(link_after.version, 1)

    async def test_local_only_items_are_created_remotely(self) -> None:
        gateway = _FakeGateway()
        preview, priority, link = await self._preview("Active", [])

        self.assertTrue(preview.hasChanges)
        self.assertTrue(all(entry.willCreateRemote for entry in preview.tasks))

        result = await SyncExecutor(
            self.priorities, self.activity, self.links, gateway, assigned_to="dana@acme.test"
        ).execute(preview, priority, link)

        self.assertTrue(result.fully_synced)
        self.assertEqual(
            gateway.calls,
            [
                ("create_child_task", 100, "load test"),
                ("create_child_task", 100, "docs"),
                ("complete_task", 702, "Closed"),
            ],
        )
        self.assertEqual(gateway.closed_with, {702: 1.0})
        self.assertEqual([assignee for _, _, assignee in gateway.created], ["dana@acme.test"] * 2)
        self.assertFalse(result.fromRemote.updated)

        created = [_child(701, "load test", "New"), _child(702, "docs", "Closed", 1.0)]
        again, _, _ = await self._preview("Active", created)
        self.assertFalse(again.hasChanges)

    async def test_failed_child_creation_keeps_earlier_remote_changes(self) -> None:
        await self.priorities.update_sync_fields(
            "P-1", "DONE", [{"text": "load test", "completed": False}], []
        )
        gateway = _FakeGateway(fail_on="create_child_task")
        preview, priority, link = await self._preview("Active", [])

        result = await SyncExecutor(self.priorities, self.activity, self.links, gateway).execute(
            preview, priority, link
        )

        self.assertFalse(result.remoteApplied)
        self.assertEqual(result.newRemoteState, "Closed")
        self.assertEqual(result.toRemote.changes, ["Work item state Active -> Closed"])
        _, link_after = await self._state()
        self.assertEqual(link_after.lastSyncedState, "Active")


if __name__ == "__main__":
    unittest.main()
