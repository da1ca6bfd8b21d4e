"""Task bookkeeping: CRUD, failure retries, runtime views, metrics and timelines."""

from __future__ import annotations

import dataclasses
from datetime import datetime, timezone
from typing import Any

from fncloudsync.domain import (
    ConflictError,
    ConflictRecord,
    FailureRecord,
    InvalidArgumentError,
    NotFoundError,
    Task,
    TaskEvent,
    TaskMetrics,
    TaskRuntimeView,
)
from fncloudsync.rules import is_retryable_queue_match, summarize_failures, summarize_queue


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _status_key(status: object) -> str:
    return "" if status is None else str(status)


class TaskQueries:
    """Stores tasks and reads back their failures, queue, events and metrics.

    Every collaborator except the task repository is optional; an absent one
    makes the related queries return empty results.
    """

    def __init__(
        self,
        repo: Any,
        *,
        connections: Any = None,
        secrets: Any = None,
        runner: Any = None,
        runtime: Any = None,
        failures: Any = None,
        queue: Any = None,
        file_index: Any = None,
        events: Any = None,
        conflicts: Any = None,
        logger: Any = None,
    ) -> None:
        self._repo = repo
        self._connections = connections
        self._secrets = secrets
        self._runner = runner
        self._runtime = runtime
        self._failures = failures
        self._queue = queue
        self._file_index = file_index
        self._events = events
        self._conflicts = conflicts
        self._logger = logger

    def _log(self, message: str, *args: object) -> None:
        if self._logger is not None:
            self._logger.info(message, *args)

    def create(self, task: Task) -> Task:
        """Validate and store a new task, filling in status and timestamps."""
        task = dataclasses.replace(task)
        task.apply_defaults()
        task.validate()
        if task.created_at is None:
            task.created_at = _utcnow()
        if task.updated_at is None:
            task.updated_at = task.created_at
        self._repo.create(task)
        return task

    def list(self) -> list[Task]:
        """Return every stored task."""
        return list(self._repo.list() or [])

    def get_by_id(self, task_id: str) -> Task:
        """Return one task; an empty id is an invalid argument."""
        if not task_id:
            raise InvalidArgumentError()
        return self._repo.get_by_id(task_id)

    def update(self, task: Task) -> Task:
        """Store changes to a task; unset fields keep their stored values."""
        existing = self.get_by_id(task.id)
        task = dataclasses.replace(task, created_at=existing.created_at)
        if not task.status:
            task.status = existing.status
        if task.poll_interval_sec == 0:
            task.poll_interval_sec = existing.poll_interval_sec
        if not task.conflict_policy:
            task.conflict_policy = existing.conflict_policy
        if not task.delete_policy:
            task.delete_policy = existing.delete_policy
        if not task.empty_dir_policy:
            task.empty_dir_policy = existing.empty_dir_policy
        if not task.hash_mode:
            task.hash_mode = existing.hash_mode
        if task.max_workers == 0:
            task.max_workers = existing.max_workers
        task.validate()
        if task.updated_at is None:
            task.updated_at = _utcnow()
        self._repo.update(task)
        return task

    def delete(self, task_id: str) -> None:
        """Remove a task; an empty id is an invalid argument."""
        if not task_id:
            raise InvalidArgumentError()
        self._repo.delete(task_id)

    def list_failures(self, task_id: str) -> list[FailureRecord]:
        """Return the failure records of an existing task."""
        if not task_id:
            raise InvalidArgumentError()
        self.get_by_id(task_id)
        if self._failures is None:
            return []
        return list(self._failures.list_by_task_id(task_id) or [])

    def retry_failures(self, task_id: str) -> int:
        """Requeue every retryable queue item of a task; return how many."""
        if not task_id:
            raise InvalidArgumentError()
        self.get_by_id(task_id)
        if self._queue is None:
            return 0
        return self._queue.reset_retryable_by_task_id(task_id)

    def retry_failure_by_id(self, task_id: str, failure_id: str) -> int:
        """Requeue the queue items behind one failure and resolve it if any matched."""
        if not task_id or not failure_id:
            raise InvalidArgumentError()
        self.get_by_id(task_id)
        if self._failures is None or self._queue is None:
            return 0
        record = self._failures.get_by_id(failure_id)
        if record.task_id != task_id:
            raise ConflictError()

        now = _utcnow()
        count = 0
        for item in self._queue.list_by_task_id(task_id) or []:
            if not is_retryable_queue_match(record, item):
                continue
            self._queue.reschedule(
                dataclasses.replace(item, status="queued", next_attempt_at=None, updated_at=now)
            )
            count += 1
        if count:
            self._failures.resolve(failure_id, now)
        return count

    def get_runtime_view(self, task_id: str) -> TaskRuntimeView:
        """Gather a task with its runtime state, queue and failures."""
        if not task_id:
            raise InvalidArgumentError()
        view = TaskRuntimeView(task=self.get_by_id(task_id))

        if self._runtime is not None:
            try:
                view.runtime = self._runtime.get_by_task_id(task_id)
            except NotFoundError:
                pass

        if self._queue is not None:
            view.queue = list(self._queue.list_by_task_id(task_id) or [])
            view.queue_summary = summarize_queue(view.queue)

        if self._failures is not None:
            view.failures = list(self._failures.list_by_task_id(task_id) or [])
            view.failure_summary = summarize_failures(view.failures)

        return view

    def get_metrics(self) -> TaskMetrics:
        """Count tasks by status and total up queue items and failures."""
        metrics = TaskMetrics()
        for task in self.list():
            key = _status_key(task.status)
            metrics.task_states[key] = metrics.task_states.get(key, 0) + 1

            if self._queue is not None:
                summary = summarize_queue(self._queue.list_by_task_id(task.id) or [])
                queue = metrics.queue
                queue.total += summary.total
                queue.queued += summary.queued
                queue.executing += summary.executing
                queue.retry_wait += summary.retry_wait
                queue.succeeded += summary.succeeded
                queue.failed += summary.failed

            if self._failures is not None:
                for record in self._failures.list_by_task_id(task.id) or []:
                    metrics.failures.total += 1
                    if record.resolved_at is None:
                        metrics.failures.open += 1
                        if record.retryable:
                            metrics.failures.retryable_open += 1
                    else:
                        metrics.failures.resolved += 1
        return metrics

    def list_events(self, task_id: str, limit: int = 0) -> list[TaskEvent]:
        """Return the event timeline of an existing task."""
        if not task_id:
            raise InvalidArgumentError()
        self.get_by_id(task_id)
        if self._events is None:
            return []
        return list(self._events.list_by_task_id(task_id, limit) or [])

    def list_conflicts(self, task_id: str) -> list[ConflictRecord]:
        """Return the conflict history of an existing task."""
        if not task_id:
            raise InvalidArgumentError()
        self.get_by_id(task_id)
        if self._conflicts is None:
            return []
        return list(self._conflicts.list_by_task_id(task_id) or [])