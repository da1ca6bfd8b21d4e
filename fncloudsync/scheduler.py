"""Periodic execution of running tasks and of due queue operations."""

from __future__ import annotations

import dataclasses
import threading
from datetime import datetime, timedelta, timezone
from typing import Any

from fncloudsync.domain import NotFoundError, Task, TaskRuntimeState
from fncloudsync.rules import is_action_op_type, is_schedulable_status

_DUE_BATCH = 64
_MAX_ATTEMPTS = 10
_MAX_BACKOFF = timedelta(minutes=5)


def _seconds(interval: float | timedelta) -> float:
    if isinstance(interval, timedelta):
        return interval.total_seconds()
    return float(interval)


def should_run(now: datetime, task: Task, state: TaskRuntimeState) -> bool:
    """Tell whether the task's last reconcile is older than its poll interval."""
    if state.last_reconcile_at is None:
        return True
    interval = timedelta(seconds=task.poll_interval_sec)
    if interval <= timedelta(0):
        interval = timedelta(seconds=1)
    return now - state.last_reconcile_at >= interval


def next_backoff(attempt: int) -> timedelta:
    """Return the delay before retry number attempt: doubling, capped."""
    if attempt <= 1:
        return timedelta(seconds=1)
    backoff = timedelta(seconds=1 << min(attempt - 1, 8))
    return min(backoff, _MAX_BACKOFF)


class Scheduler:
    """Runs due tasks and drains due queue operations on a fixed interval."""

    def __init__(
        self,
        tasks: Any,
        runtime: Any,
        queue: Any,
        interval: float | timedelta,
        logger: Any = None,
    ) -> None:
        self._tasks = tasks
        self._runtime = runtime
        self._queue = queue
        self._interval = _seconds(interval)
        self._logger = logger

    def _log(self, message: str, *args: object) -> None:
        if self._logger is not None:
            self._logger.info(message, *args)

    def run(self, stop: threading.Event) -> None:
        """Tick at once, then every interval until stop is set."""
        self.tick()
        while not stop.wait(self._interval):
            self.tick()

    def tick(self) -> None:
        """Run due tasks, then execute due queue operations of other tasks."""
        try:
            items = self._tasks.list()
        except Exception:
            return

        now = datetime.now(timezone.utc)
        executed: set[str] = set()
        for task in items:
            if not is_schedulable_status(task.status):
                continue
            try:
                state = self._runtime.get_by_task_id(task.id)
            except NotFoundError:
                state = TaskRuntimeState()
            except Exception:
                continue
            if not should_run(now, task, state):
                continue
            self._log("scheduler task triggered task_id=%s status=%s", task.id, task.status)
            try:
                self._tasks.execute_running_task(task.id)
            except Exception as exc:
                self._log("scheduler task failed task_id=%s error=%s", task.id, exc)
            else:
                executed.add(task.id)
                self._log("scheduler task finished task_id=%s", task.id)

        if self._queue is None:
            return
        try:
            ops = self._queue.list_due(now, _DUE_BATCH)
        except Exception:
            return

        for op in ops:
            if op.task_id in executed:
                continue
            self._log(
                "scheduler queue triggered task_id=%s queue_op_id=%s op_type=%s",
                op.task_id,
                op.id,
                op.op_type,
            )
            try:
                if is_action_op_type(op.op_type):
                    self._tasks.execute_queue_operation(op)
                else:
                    self._tasks.execute_running_task(op.task_id)
            except Exception as exc:
                self._handle_failure(op, exc, now)
                continue
            self._log("scheduler queue finished task_id=%s queue_op_id=%s", op.task_id, op.id)
            try:
                self._queue.dequeue(op.id)
            except Exception:
                pass

    def _handle_failure(self, op: Any, exc: Exception, now: datetime) -> None:
        self._log(
            "scheduler queue failed task_id=%s queue_op_id=%s error=%s", op.task_id, op.id, exc
        )
        message = str(exc)
        attempts = op.attempt_count + 1
        try:
            if attempts >= _MAX_ATTEMPTS:
                self._queue.mark_failed(op.id, message)
            else:
                self._queue.reschedule(
                    dataclasses.replace(
                        op,
                        attempt_count=attempts,
                        last_error=message,
                        next_attempt_at=now + next_backoff(attempts),
                        updated_at=now,
                    )
                )
        except Exception:
            pass