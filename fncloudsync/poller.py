"""Periodic trigger of remote polls for tasks that pull from the server."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any

from fncloudsync.domain import NotFoundError, Task, TaskDirection, TaskRuntimeState
from fncloudsync.rules import is_schedulable_status


def _seconds(interval: float | timedelta) -> float:
    if isinstance(interval, timedelta):
        return interval.total_seconds()
    return float(interval)


def should_poll(now: datetime, task: Task, state: TaskRuntimeState) -> bool:
    """Tell whether the task's last remote scan is older than its poll interval."""
    if state.last_remote_scan_at is None:
        return True
    interval = timedelta(seconds=task.poll_interval_sec)
    if interval <= timedelta(0):
        interval = timedelta(seconds=1)
    return now - state.last_remote_scan_at >= interval


class Poller:
    """Asks the task service to poll the remote side of due tasks."""

    def __init__(
        self,
        tasks: Any,
        runtime: Any,
        interval: float | timedelta,
        logger: Any = None,
    ) -> None:
        self._tasks = tasks
        self._runtime = runtime
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
        """Trigger a remote poll for every due, pollable task."""
        try:
            items = self._tasks.list()
        except Exception:
            return

        now = datetime.now(timezone.utc)
        for task in items:
            if str(task.direction) == TaskDirection.UPLOAD.value:
                continue
            if not is_schedulable_status(task.status):
                continue
            try:
                state = self._runtime.get_by_task_id(task.id)
            except NotFoundError:
                state = TaskRuntimeState()
            except Exception:
                continue
            if not should_poll(now, task, state):
                continue
            self._log("poller trigger task_id=%s direction=%s", task.id, task.direction)
            try:
                self._tasks.poll_remote_task(task.id)
            except Exception:
                continue