"""Running sync tasks: state transitions, planned actions, queue execution and polling."""

from __future__ import annotations

import dataclasses
import json
from contextlib import suppress
from datetime import datetime, timedelta, timezone
from typing import Any

from fncloudsync.domain import (
    ConflictError,
    Connection,
    FailureRecord,
    OperationQueueItem,
    SyncAction,
    Task,
    TaskDirection,
    TaskEvent,
    TaskRuntimeState,
    TaskStatus,
    action_from_json,
    action_to_json,
)
from fncloudsync.rules import (
    action_already_applied,
    action_source_side,
    is_action_op_type,
    is_executable_queue_status,
    is_schedulable_status,
    remote_discovered_paths,
    scan_timestamp_for_local,
    scan_timestamp_for_remote,
)
from fncloudsync.task_queries import TaskQueries

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_RETRY_DELAY = timedelta(seconds=1)


class _DegradedError(Exception):
    """A planned action failed; the task keeps running in a degraded state."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"action execution degraded\n{cause}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _unix_nano(moment: datetime) -> int:
    return (moment - _EPOCH) // timedelta(microseconds=1) * 1000


def _rfc3339_nano(moment: datetime) -> str:
    base = moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
    fraction = f"{moment.microsecond:06d}".rstrip("0")
    return base + (f".{fraction}" if fraction else "") + "Z"


def _encode(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class TaskService(TaskQueries):
    """Starts, pauses and stops tasks and carries out their sync work."""

    def start(self, task_id: str) -> Task:
        """Mark a task running and execute it once."""
        task = self._transition_status(task_id, TaskStatus.RUNNING)
        self._record_event(
            task.id, "task_started", "info", "task started", {"status": str(task.status)}
        )
        return self._execute_task(task)

    def pause(self, task_id: str) -> Task:
        """Mark a task paused."""
        task = self._transition_status(task_id, TaskStatus.PAUSED)
        self._record_event(
            task.id, "task_paused", "info", "task paused", {"status": str(task.status)}
        )
        self._upsert_runtime(TaskRuntimeState(task_id=task.id, phase="paused", updated_at=_utcnow()))
        return task

    def stop(self, task_id: str) -> Task:
        """Mark a task stopped."""
        task = self._transition_status(task_id, TaskStatus.STOPPED)
        self._record_event(
            task.id, "task_stopped", "info", "task stopped", {"status": str(task.status)}
        )
        self._upsert_runtime(
            TaskRuntimeState(task_id=task.id, phase="stopped", updated_at=_utcnow())
        )
        return task

    def execute_running_task(self, task_id: str) -> None:
        """Run one sync pass of a schedulable task without changing its status."""
        task = self.get_by_id(task_id)
        if not is_schedulable_status(task.status):
            raise ConflictError()
        self._log(
            "task execution started task_id=%s status=%s direction=%s",
            task.id,
            task.status,
            task.direction,
        )
        try:
            self._execute_task(task)
        except Exception as exc:
            self._log("task execution failed task_id=%s error=%s", task.id, exc)
            raise
        self._log("task execution finished task_id=%s status=%s", task.id, task.status)

    def poll_remote_task(self, task_id: str) -> None:
        """Record a remote poll checkpoint and run a sync pass of a pulling task."""
        task = self.get_by_id(task_id)
        if not is_schedulable_status(task.status):
            raise ConflictError()
        if str(task.direction) == TaskDirection.UPLOAD.value:
            raise ConflictError()

        now = _utcnow()
        checkpoint = f'{{"remote":{{"trigger":"poller","polled_at":"{_rfc3339_nano(now)}"}}}}'
        state = TaskRuntimeState(
            task_id=task.id, phase="polling_remote", checkpoint_json=checkpoint, updated_at=now
        )
        if self._runtime is not None:
            try:
                existing = self._runtime.get_by_task_id(task.id)
            except Exception:
                existing = None
            if existing is not None:
                state.last_local_scan_at = existing.last_local_scan_at
                state.last_remote_scan_at = existing.last_remote_scan_at
                state.last_reconcile_at = existing.last_reconcile_at
                state.last_success_at = existing.last_success_at
                state.backoff_until = existing.backoff_until
                state.retry_streak = existing.retry_streak
                state.last_error = existing.last_error
        self._upsert_runtime(state)
        self._record_event(
            task.id, "remote_poll_started", "info", "remote poll triggered", {"checkpoint": checkpoint}
        )
        self._log("remote poll started task_id=%s direction=%s", task.id, task.direction)
        self._execute_task(task)

    def execute_queue_operation(self, item: OperationQueueItem) -> None:
        """Execute the single sync action stored in a queue item."""
        task, connection, password = self._resolve_task_execution(item.task_id)
        self._log(
            "queue operation started task_id=%s queue_op_id=%s op_type=%s",
            item.task_id,
            item.id,
            item.op_type,
        )
        self._execute_queue_operation_resolved(task, connection, password, item)

    def _transition_status(self, task_id: str, status: TaskStatus) -> Task:
        task = dataclasses.replace(self.get_by_id(task_id), status=status, updated_at=_utcnow())
        self._repo.update(task)
        self._record_event(
            task.id,
            "task_status_changed",
            "info",
            f"task status changed to {status}",
            {"status": str(status)},
        )
        return task

    def _resolve_task_execution(self, task_id: str) -> tuple[Task, Connection, str]:
        task = self.get_by_id(task_id)
        if str(task.status) != TaskStatus.RUNNING.value:
            raise ConflictError()
        connection, password = self._resolve_connection(task)
        return task, connection, password

    def _resolve_connection(self, task: Task) -> tuple[Connection, str]:
        if self._connections is None or self._secrets is None:
            raise RuntimeError("task execution is not configured")
        connection = self._connections.get_by_id(task.connection_id)
        password = self._secrets.decrypt_string(connection.password_ciphertext)
        return connection, password

    def _execute_task(self, task: Task) -> Task:
        task = dataclasses.replace(task)
        self._upsert_runtime(TaskRuntimeState(task_id=task.id, phase="running", updated_at=_utcnow()))

        if self._connections is not None and self._secrets is not None and self._runner is not None:
            try:
                connection, password = self._resolve_connection(task)
            except Exception as exc:
                self._mark_task(task, TaskStatus.FAILED, str(exc))
                raise

            existing = TaskRuntimeState()
            if self._runtime is not None:
                with suppress(Exception):
                    existing = self._runtime.get_by_task_id(task.id)

            try:
                self._execute_planned_actions(task, connection, password)
            except _DegradedError as exc:
                streak = existing.retry_streak + 1
                status = TaskStatus.RETRYING if streak > 1 else TaskStatus.DEGRADED
                self._mark_task(task, status, str(exc))
                self._upsert_runtime(
                    TaskRuntimeState(
                        task_id=task.id,
                        phase="degraded",
                        retry_streak=streak,
                        last_error=str(exc),
                        updated_at=_utcnow(),
                    )
                )
                return task
            except Exception as exc:
                self._mark_task(task, TaskStatus.FAILED, str(exc))
                self._upsert_runtime(
                    TaskRuntimeState(
                        task_id=task.id,
                        phase="failed",
                        retry_streak=existing.retry_streak + 1,
                        last_error=str(exc),
                        updated_at=_utcnow(),
                    )
                )
                self._record_failure(task, exc)
                raise

        if str(task.status) == TaskStatus.DEGRADED.value:
            self._mark_task(task, TaskStatus.RUNNING, "")

        now = _utcnow()
        self._upsert_runtime(
            TaskRuntimeState(
                task_id=task.id,
                phase="idle",
                retry_streak=0,
                last_error="",
                last_local_scan_at=scan_timestamp_for_local(task.direction, now),
                last_remote_scan_at=scan_timestamp_for_remote(task.direction, now),
                last_success_at=now,
                last_reconcile_at=now,
                updated_at=now,
            )
        )
        return task

    def _mark_task(self, task: Task, status: TaskStatus, error: str) -> None:
        task.status = status
        task.last_error = error
        task.updated_at = _utcnow()
        with suppress(Exception):
            self._repo.update(task)

    def _execute_planned_actions(self, task: Task, connection: Connection, password: str) -> None:
        if self._queue is None:
            self._runner.run_once(task, connection, password)
            return

        actions = list(self._runner.plan(task, connection, password) or [])
        self._log(
            "task planned actions task_id=%s planned_actions=%d direction=%s",
            task.id,
            len(actions),
            task.direction,
        )
        self._update_remote_checkpoint_paths(task.id, actions)

        now = _utcnow()
        stamp = _unix_nano(now)
        for index, action in enumerate(actions):
            self._queue.enqueue(
                OperationQueueItem(
                    id=f"{task.id}-action-{stamp}-{index}",
                    task_id=task.id,
                    op_type=str(action.type),
                    target_path=action.remote_path,
                    src_side=action_source_side(task.direction, action.type),
                    reason="planned sync action",
                    payload_json=action_to_json(action),
                    status="queued",
                    attempt_count=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            self._log(
                "queue operation enqueued task_id=%s queue_index=%d op_type=%s target_path=%s",
                task.id,
                index,
                action.type,
                action.remote_path,
            )

        for item in self._queue.list_by_task_id(task.id) or []:
            if not is_action_op_type(item.op_type) or not is_executable_queue_status(item.status):
                continue
            try:
                self._execute_queue_operation_resolved(task, connection, password, item)
            except Exception as exc:
                self._log("queue operation degraded task_id=%s queue_op_id=%s error=%s", task.id, item.id, exc)
                failed_at = _utcnow()
                with suppress(Exception):
                    self._queue.reschedule(
                        dataclasses.replace(
                            item,
                            attempt_count=item.attempt_count + 1,
                            last_error=str(exc),
                            next_attempt_at=failed_at + _RETRY_DELAY,
                            status="retry_wait",
                            updated_at=failed_at,
                        )
                    )
                raise _DegradedError(exc) from exc
            self._log("queue operation completed task_id=%s queue_op_id=%s", task.id, item.id)
            with suppress(Exception):
                self._queue.dequeue(item.id)

    def _execute_queue_operation_resolved(
        self, task: Task, connection: Connection, password: str, item: OperationQueueItem
    ) -> None:
        action = action_from_json(item.payload_json)
        if self._should_skip(item, action):
            return
        if self._queue is not None:
            with suppress(Exception):
                self._queue.reschedule(
                    dataclasses.replace(item, status="executing", updated_at=_utcnow())
                )
        try:
            self._runner.execute_action(task, connection, password, action)
        except Exception as exc:
            self._record_action_failure(task, item, action, exc)
            self._log(
                "queue action failed task_id=%s queue_op_id=%s op_type=%s path=%s error=%s",
                task.id,
                item.id,
                item.op_type,
                action.relative_path,
                exc,
            )
            raise
        self._log(
            "queue action succeeded task_id=%s queue_op_id=%s op_type=%s path=%s",
            task.id,
            item.id,
            item.op_type,
            action.relative_path,
        )

    def _should_skip(self, item: OperationQueueItem, action: SyncAction) -> bool:
        if (
            item.attempt_count <= 0
            or self._file_index is None
            or not item.task_id
            or not action.relative_path
        ):
            return False
        try:
            entry = self._file_index.get_by_task_id_and_path(item.task_id, action.relative_path)
        except Exception:
            return False
        return action_already_applied(entry, action)

    def _upsert_runtime(self, state: TaskRuntimeState) -> None:
        if self._runtime is None:
            return
        if not state.checkpoint_json:
            with suppress(Exception):
                existing = self._runtime.get_by_task_id(state.task_id)
                state = dataclasses.replace(state, checkpoint_json=existing.checkpoint_json)
        with suppress(Exception):
            self._runtime.upsert(state)

    def _update_remote_checkpoint_paths(self, task_id: str, actions: list[SyncAction]) -> None:
        if self._runtime is None or not task_id:
            return
        paths = remote_discovered_paths(actions)
        if not paths:
            return
        try:
            state = self._runtime.get_by_task_id(task_id)
        except Exception:
            return
        if not state.checkpoint_json:
            return
        try:
            payload = json.loads(state.checkpoint_json)
        except ValueError:
            return
        if not isinstance(payload, dict):
            return
        remote = payload.get("remote")
        if not isinstance(remote, dict):
            remote = {}
        remote["changed_paths"] = paths
        payload["remote"] = remote
        self._upsert_runtime(
            dataclasses.replace(state, checkpoint_json=_encode(payload), updated_at=_utcnow())
        )

    def _record_failure(self, task: Task, error: Exception) -> None:
        now = _utcnow()
        stamp = _unix_nano(now)
        if self._failures is not None:
            with suppress(Exception):
                self._failures.create(
                    FailureRecord(
                        id=f"{task.id}-failure-{stamp}",
                        task_id=task.id,
                        path=task.remote_path,
                        op_type="baseline_sync",
                        error_code="baseline_failed",
                        error_message=str(error),
                        retryable=True,
                        first_failed_at=now,
                        last_failed_at=now,
                        attempt_count=1,
                    )
                )
        self._record_event(task.id, "task_failed", "error", str(error), {"op_type": "baseline_sync"})
        if self._queue is not None:
            with suppress(Exception):
                self._queue.enqueue(
                    OperationQueueItem(
                        id=f"{task.id}-queue-{stamp}",
                        task_id=task.id,
                        op_type="baseline_sync",
                        target_path=task.remote_path,
                        reason="retry failed baseline sync",
                        status="queued",
                        attempt_count=0,
                        last_error=str(error),
                        created_at=now,
                        updated_at=now,
                    )
                )

    def _record_action_failure(
        self, task: Task, item: OperationQueueItem, action: SyncAction, error: Exception
    ) -> None:
        if self._failures is None:
            return
        now = _utcnow()
        path = action.relative_path or item.target_path
        with suppress(Exception):
            self._failures.create(
                FailureRecord(
                    id=f"{task.id}-action-failure-{_unix_nano(now)}",
                    task_id=task.id,
                    path=path,
                    op_type=item.op_type,
                    error_code="action_failed",
                    error_message=str(error),
                    retryable=True,
                    first_failed_at=now,
                    last_failed_at=now,
                    attempt_count=max(item.attempt_count + 1, 1),
                )
            )
        self._record_event(
            task.id, "action_failed", "error", str(error), {"path": path, "op_type": item.op_type}
        )

    def _record_event(
        self, task_id: str, event_type: str, level: str, message: str, details: dict[str, Any]
    ) -> None:
        if self._events is None or not task_id:
            return
        details_json = ""
        if details:
            with suppress(TypeError, ValueError):
                details_json = _encode(details)
        now = _utcnow()
        with suppress(Exception):
            self._events.create(
                TaskEvent(
                    id=f"{task_id}-event-{_unix_nano(now)}",
                    task_id=task_id,
                    event_type=event_type,
                    level=level,
                    message=message,
                    details_json=details_json,
                    created_at=now,
                )
            )