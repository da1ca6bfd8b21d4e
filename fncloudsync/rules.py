"""Pure decision rules shared by the task service, scheduler and poller."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from datetime import datetime

from fncloudsync.domain import (
    FailureRecord,
    FileIndexEntry,
    OperationQueueItem,
    SyncAction,
    SyncActionType,
    TaskDirection,
    TaskFailureSummary,
    TaskQueueSummary,
    TaskStatus,
)

_ACTION_TYPES = frozenset(member.value for member in SyncActionType)

_LOCAL_SOURCE = frozenset(
    {
        SyncActionType.UPLOAD_FILE.value,
        SyncActionType.CREATE_DIR_REMOTE.value,
        SyncActionType.DELETE_REMOTE.value,
        SyncActionType.MOVE_REMOTE.value,
        SyncActionType.MOVE_CONFLICT_REMOTE.value,
    }
)

_REMOTE_SOURCE = frozenset(
    {
        SyncActionType.DOWNLOAD_FILE.value,
        SyncActionType.CREATE_DIR_LOCAL.value,
        SyncActionType.DELETE_LOCAL.value,
        SyncActionType.MOVE_LOCAL.value,
        SyncActionType.MOVE_CONFLICT_LOCAL.value,
    }
)

_REMOTE_DISCOVERED = _REMOTE_SOURCE

_SCHEDULABLE = frozenset(
    {TaskStatus.RUNNING.value, TaskStatus.DEGRADED.value, TaskStatus.RETRYING.value}
)

_EXECUTABLE_QUEUE_STATUSES = frozenset({"queued", "pending", "retry_wait"})


def _text(value: object) -> str:
    return "" if value is None else str(value)


def is_action_op_type(op_type: str) -> bool:
    """Tell whether a queue op type names a single sync action."""
    return _text(op_type) in _ACTION_TYPES


def action_source_side(direction: TaskDirection | str, action_type: SyncActionType | str) -> str:
    """Return which side ("local" or "remote") an action reads its data from."""
    kind = _text(action_type)
    if kind in _LOCAL_SOURCE:
        return "local"
    if kind in _REMOTE_SOURCE:
        return "remote"
    return "local" if _text(direction) == TaskDirection.UPLOAD.value else "remote"


def summarize_queue(items: Iterable[OperationQueueItem]) -> TaskQueueSummary:
    """Count queue items by status."""
    items = list(items)
    counts = Counter(item.status for item in items)
    return TaskQueueSummary(
        total=len(items),
        queued=counts["queued"],
        pending=counts["queued"] + counts["pending"],
        executing=counts["executing"],
        retry_wait=counts["retry_wait"],
        succeeded=counts["succeeded"],
        failed=counts["failed"],
    )


def summarize_failures(items: Iterable[FailureRecord]) -> TaskFailureSummary:
    """Count failure records as open or resolved."""
    items = list(items)
    open_count = sum(1 for item in items if item.resolved_at is None)
    return TaskFailureSummary(
        total=len(items), resolved=len(items) - open_count, open=open_count
    )


def is_retryable_queue_match(record: FailureRecord, item: OperationQueueItem) -> bool:
    """Tell whether a waiting queue item is the one a failure record refers to."""
    if item.status not in ("retry_wait", "executing"):
        return False
    if item.op_type != record.op_type:
        return False
    if not record.path:
        return True
    return item.target_path == record.path or item.target_path.endswith("/" + record.path)


def is_executable_queue_status(status: str) -> bool:
    """Tell whether a queue item in this status may be run now."""
    return status in _EXECUTABLE_QUEUE_STATUSES


def is_schedulable_status(status: TaskStatus | str | None) -> bool:
    """Tell whether a task in this status takes part in periodic runs."""
    return _text(status) in _SCHEDULABLE


def is_remote_discovered_action(action_type: SyncActionType | str) -> bool:
    """Tell whether an action was caused by a change found on the remote side."""
    return _text(action_type) in _REMOTE_DISCOVERED


def remote_discovered_paths(actions: Iterable[SyncAction]) -> list[str]:
    """Return the sorted, distinct relative paths of remote-discovered actions."""
    return sorted(
        {
            action.relative_path
            for action in actions
            if is_remote_discovered_action(action.type) and action.relative_path
        }
    )


def action_already_applied(entry: FileIndexEntry, action: SyncAction) -> bool:
    """Tell whether the file index shows that an action has already taken effect."""
    if entry.last_sync_at is None:
        return False
    healthy = not entry.deleted_tombstone and not entry.conflict_flag
    on_both_sides = entry.local_exists and entry.remote_exists
    kind = _text(action.type)

    if kind in (SyncActionType.CREATE_DIR_LOCAL.value, SyncActionType.CREATE_DIR_REMOTE.value):
        return entry.entry_type == "dir" and on_both_sides and healthy
    if kind in (
        SyncActionType.UPLOAD_FILE.value,
        SyncActionType.DOWNLOAD_FILE.value,
        SyncActionType.MOVE_LOCAL.value,
        SyncActionType.MOVE_REMOTE.value,
    ):
        return (
            entry.entry_type == "file"
            and on_both_sides
            and entry.sync_state == "synced"
            and healthy
        )
    if kind == SyncActionType.DELETE_LOCAL.value:
        return not entry.local_exists and entry.deleted_tombstone
    if kind == SyncActionType.DELETE_REMOTE.value:
        return not entry.remote_exists and entry.deleted_tombstone
    if kind in (
        SyncActionType.MOVE_CONFLICT_LOCAL.value,
        SyncActionType.MOVE_CONFLICT_REMOTE.value,
    ):
        return entry.conflict_flag and entry.sync_state == "conflicted"
    if kind == SyncActionType.REFRESH_METADATA.value:
        return True
    return False


def scan_timestamp_for_local(direction: TaskDirection | str, now: datetime) -> datetime | None:
    """Return now if a run in this direction scans the local side, else None."""
    if _text(direction) in (TaskDirection.UPLOAD.value, TaskDirection.BIDIRECTIONAL.value):
        return now
    return None


def scan_timestamp_for_remote(direction: TaskDirection | str, now: datetime) -> datetime | None:
    """Return now if a run in this direction scans the remote side, else None."""
    if _text(direction) in (TaskDirection.DOWNLOAD.value, TaskDirection.BIDIRECTIONAL.value):
        return now
    return None