import threading
from datetime import datetime, timedelta, timezone

from fncloudsync.domain import NotFoundError, Task, TaskDirection, TaskRuntimeState, TaskStatus
from fncloudsync.poller import Poller, should_poll


class StubTaskPoller:
    def __init__(self, items, poll_error=None, list_error=None):
        self.items = items
        self.polled = []
        self.poll_error = poll_error
        self.list_error = list_error

    def list(self):
        if self.list_error is not None:
            raise self.list_error
        return self.items

    def poll_remote_task(self, task_id):
        self.polled.append(task_id)
        if self.poll_error is not None:
            raise self.poll_error


class StubRuntimeReader:
    def __init__(self, states, error=None):
        self.states = states
        self.error = error

    def get_by_task_id(self, task_id):
        if self.error is not None:
            raise self.error
        try:
            return self.states[task_id]
        except KeyError:
            raise NotFoundError() from None


class StubLogger:
    def __init__(self):
        self.lines = []

    def info(self, message, *args):
        self.lines.append(message % args)


def _now():
    return datetime.now(timezone.utc)


def test_poller_runs_due_remote_tasks_only():
    now = _now()
    tasks = StubTaskPoller(
        [
            Task(id="task-upload", status=TaskStatus.RUNNING, direction=TaskDirection.UPLOAD, poll_interval_sec=1),
            Task(id="task-download", status=TaskStatus.RUNNING, direction=TaskDirection.DOWNLOAD, poll_interval_sec=1),
            Task(
                id="task-bidirectional",
                status=TaskStatus.DEGRADED,
                direction=TaskDirection.BIDIRECTIONAL,
                poll_interval_sec=1,
            ),
            Task(id="task-paused", status=TaskStatus.PAUSED, direction=TaskDirection.DOWNLOAD, poll_interval_sec=1),
        ]
    )
    runtime = StubRuntimeReader(
        {
            "task-download": TaskRuntimeState(task_id="task-download", last_remote_scan_at=now - timedelta(seconds=2)),
            "task-bidirectional": TaskRuntimeState(
                task_id="task-bidirectional", last_remote_scan_at=now - timedelta(seconds=2)
            ),
            "task-paused": TaskRuntimeState(task_id="task-paused", last_remote_scan_at=now - timedelta(seconds=2)),
        }
    )
    poller = Poller(tasks, runtime, 0.01)
    stop = threading.Event()
    timer = threading.Timer(0.05, stop.set)
    timer.start()
    try:
        poller.run(stop)
    finally:
        timer.cancel()

    assert "task-download" in tasks.polled
    assert "task-bidirectional" in tasks.polled
    assert "task-upload" not in tasks.polled
    assert "task-paused" not in tasks.polled


def test_poller_skips_tasks_when_remote_scan_is_fresh():
    tasks = StubTaskPoller(
        [Task(id="task-download", status=TaskStatus.RUNNING, direction=TaskDirection.DOWNLOAD, poll_interval_sec=60)]
    )
    runtime = StubRuntimeReader(
        {"task-download": TaskRuntimeState(task_id="task-download", last_remote_scan_at=_now())}
    )
    Poller(tasks, runtime, timedelta(hours=1)).tick()
    assert tasks.polled == []


def test_poller_handles_poll_remote_task_error():
    tasks = StubTaskPoller(
        [Task(id="task-1", status=TaskStatus.RUNNING, direction=TaskDirection.DOWNLOAD, poll_interval_sec=1)],
        poll_error=TimeoutError("deadline exceeded"),
    )
    runtime = StubRuntimeReader(
        {"task-1": TaskRuntimeState(task_id="task-1", last_remote_scan_at=_now() - timedelta(seconds=2))}
    )
    Poller(tasks, runtime, 3600).tick()
    assert tasks.polled == ["task-1"]


def test_poller_polls_retrying_tasks():
    tasks = StubTaskPoller(
        [Task(id="task-1", status=TaskStatus.RETRYING, direction=TaskDirection.BIDIRECTIONAL, poll_interval_sec=1)]
    )
    runtime = StubRuntimeReader(
        {"task-1": TaskRuntimeState(task_id="task-1", last_remote_scan_at=_now() - timedelta(seconds=2))}
    )
    Poller(tasks, runtime, 3600).tick()
    assert tasks.polled == ["task-1"]


def test_poller_polls_task_without_runtime_state_and_logs():
    tasks = StubTaskPoller(
        [Task(id="task-1", status=TaskStatus.RUNNING, direction=TaskDirection.DOWNLOAD, poll_interval_sec=60)]
    )
    logger = StubLogger()
    Poller(tasks, StubRuntimeReader({}), 3600, logger).tick()
    assert tasks.polled == ["task-1"]
    assert any("task_id=task-1" in line for line in logger.lines)


def test_poller_skips_task_when_runtime_read_fails():
    tasks = StubTaskPoller(
        [Task(id="task-1", status=TaskStatus.RUNNING, direction=TaskDirection.DOWNLOAD, poll_interval_sec=1)]
    )
    runtime = StubRuntimeReader({}, error=RuntimeError("database locked"))
    Poller(tasks, runtime, 3600).tick()
    assert tasks.polled == []


def test_poller_tick_survives_list_error():
    tasks = StubTaskPoller([], list_error=RuntimeError("boom"))
    Poller(tasks, StubRuntimeReader({}), 3600).tick()
    assert tasks.polled == []


def test_should_poll_interval_boundaries():
    now = _now()
    task = Task(id="task-1", poll_interval_sec=60)
    assert should_poll(now, task, TaskRuntimeState()) is True
    assert should_poll(now, task, TaskRuntimeState(last_remote_scan_at=now - timedelta(seconds=60))) is True
    assert should_poll(now, task, TaskRuntimeState(last_remote_scan_at=now - timedelta(seconds=59))) is False


def test_should_poll_non_positive_interval_means_one_second():
    now = _now()
    task = Task(id="task-1", poll_interval_sec=0)
    assert should_poll(now, task, TaskRuntimeState(last_remote_scan_at=now - timedelta(seconds=1))) is True
    assert should_poll(now, task, TaskRuntimeState(last_remote_scan_at=now - timedelta(milliseconds=500))) is False