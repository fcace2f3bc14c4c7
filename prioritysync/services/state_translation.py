"""Translation between Azure DevOps state names and local priority statuses.

Both directions are lossy. Several remote states collapse onto one local
status, and AT_RISK has no remote counterpart of its own, so
``remote_to_local(local_to_remote(s))`` is not the identity. The only
guarantee is that the closed class survives the round trip: DONE is written
as "Closed" and "Closed"/"Done" always read back as DONE.
"""
from __future__ import annotations

import logging
from typing import Mapping, Optional

from prioritysync.models import CLOSED_CLASS_REMOTE_STATES, LocalStatus

logger = logging.getLogger("prioritysync.azure_devops")

DEFAULT_REMOTE_TO_LOCAL: dict[str, LocalStatus] = {
    "New": LocalStatus.ON_TRACK,
    "Active": LocalStatus.ON_TRACK,
    "Committed": LocalStatus.ON_TRACK,
    "In Progress": LocalStatus.ON_TRACK,
    "Review": LocalStatus.ON_TRACK,
    "In Review": LocalStatus.ON_TRACK,
    "Resolved": LocalStatus.DONE,
    "Closed": LocalStatus.DONE,
    "Done": LocalStatus.DONE,
    "Removed": LocalStatus.BLOCKED,
}

# No per-installation override in this direction; see DESIGN.md.
LOCAL_TO_REMOTE: dict[LocalStatus, str] = {
    LocalStatus.ON_TRACK: "Active",
    LocalStatus.AT_RISK: "Active",
    LocalStatus.BLOCKED: "Removed",
    LocalStatus.DONE: "Closed",
}

DEFAULT_CLOSING_STATE = "Closed"


def remote_to_local(
    remote_state: str,
    overrides: Optional[Mapping[str, LocalStatus | str]] = None,
) -> LocalStatus:
    """Map a remote state onto a local status; unknown states become ON_TRACK."""
    if overrides and remote_state in overrides:
        raw = overrides[remote_state]
        try:
            return LocalStatus(raw)
        except ValueError:
            logger.warning("Ignoring invalid state override %r -> %r", remote_state, raw)

    mapped = DEFAULT_REMOTE_TO_LOCAL.get(remote_state)
    if mapped is None:
        logger.warning(
            "Unknown Azure DevOps state %r mapped to %s; extend the state mapping to silence this",
            remote_state,
            LocalStatus.ON_TRACK.value,
        )
        return LocalStatus.ON_TRACK
    return mapped


def local_to_remote(local_status: LocalStatus | str) -> str:
    return LOCAL_TO_REMOTE[LocalStatus(local_status)]


def is_closed_state(
    remote_state: str,
    overrides: Optional[Mapping[str, LocalStatus | str]] = None,
) -> bool:
    return remote_to_local(remote_state, overrides) == LocalStatus.DONE


def closing_state(overrides: Optional[Mapping[str, LocalStatus | str]] = None) -> str:
    """Remote state written when a child task has to be closed.

    An installation whose overrides name their own DONE states (and not the
    stock "Closed"/"Done") closes with the first of those.
    """
    custom_done = [
        remote_state
        for remote_state, local in (overrides or {}).items()
        if str(getattr(local, "value", local)) == LocalStatus.DONE.value
    ]
    if not custom_done or any(state in CLOSED_CLASS_REMOTE_STATES for state in custom_done):
        return DEFAULT_CLOSING_STATE
    return custom_done[0]
