"""Correlation of local checklist items with remote child tasks.

The two systems share no stable id for a sub-task, so items are joined on
their text: exact, case- and whitespace-sensitive equality between the
checklist item text and the child work item title. Everything that depends
on the join goes through ``correlate_by_text``.
"""
from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Optional

from prioritysync.models import ChecklistItem, WorkItem


@dataclass(frozen=True)
class TaskPair:
    text: str
    local_index: Optional[int] = None
    local: Optional[ChecklistItem] = None
    remote: Optional[WorkItem] = None

    @property
    def is_local_only(self) -> bool:
        return self.remote is None

    @property
    def is_remote_only(self) -> bool:
        return self.local is None


def correlate_by_text(checklist: list[ChecklistItem], children: list[WorkItem]) -> list[TaskPair]:
    """Pair checklist items with child work items.

    Local items come first in checklist order, followed by unmatched remote
    children in remote order. Repeated texts pair up in order of appearance.
    """
    remaining: dict[str, deque[WorkItem]] = defaultdict(deque)
    for child in children:
        remaining[child.title].append(child)

    pairs: list[TaskPair] = []
    for index, item in enumerate(checklist):
        queue = remaining.get(item.text)
        remote = queue.popleft() if queue else None
        pairs.append(TaskPair(text=item.text, local_index=index, local=item, remote=remote))

    for child in children:
        queue = remaining.get(child.title)
        if queue and queue[0] is child:
            queue.popleft()
            pairs.append(TaskPair(text=child.title, remote=child))
    return pairs
