from __future__ import annotations

from datetime import datetime, timezone

import pytest

from fncloudsync.domain import (
    ConflictError,
    ConflictRecord,
    FailureRecord,
    InvalidArgumentError,
    NotFoundError,
    OperationQueueItem,
    Task,
    TaskDirection,
    TaskEvent,
    TaskRuntimeState,
    TaskStatus,
)
from fncloudsync.task_queries import TaskQueries


class StubTaskRepository:
    def __init__(self, get_result=None, list_result=None):
        self.get_result = get_result if get_result is not None else Task()
        self.list_result = list_result or []
        self.last_created = None
        self.last_updated = None
        self.deleted = []

    def create(self, task):
        self.last_created = task

    def get_by_id(self, task_id):
        return self.get_result

    def list(self):
        return self.list_result

    def update(self, task):
        self.last_updated = task

    def delete(self, task_id):
        self.deleted.append(task_id)


class StubRuntimeRepository:
    def __init__(self, states=None):
        self.states = states or []

    def upsert(self, state):
        self.states.append(state)

    def get_by_task_id(self, task_id):
        for state in self.states:
            if state.task_id == task_id:
                return state
        raise NotFoundError()


class StubFailureRepository:
    def __init__(self, records=None):
        self.records = records or []
        self.resolved_id = ""

    def create(self, record):
        self.records.append(record)

    def list_by_task_id(self, task_id):
        return [r for r in self.records if r.task_id == task_id]

    def get_by_id(self, failure_id):
        for record in self.records:
            if record.id == failure_id:
                return record
        raise NotFoundError()

    def resolve(self, failure_id, resolved_at):
        self.resolved_id = failure_id
        for record in self.records:
            if record.id == failure_id:
                record.resolved_at = resolved_at
                return
        raise NotFoundError()


class StubQueueRepository:
    def __init__(self, items=None, retry_reset_count=0):
        self.items = items or []
        self.rescheduled = []
        self.dequeued = []
        self.retry_reset_task_id = ""
        self.retry_reset_count = retry_reset_count

    def enqueue(self, item):
        self.items.append(item)

    def list_by_task_id(self, task_id):
        return [i for i in self.items if i.task_id == task_id]

    def dequeue(self, item_id):
        self.dequeued.append(item_id)

    def reschedule(self, item):
        self.rescheduled.append(item)

    def reset_retryable_by_task_id(self, task_id):
        self.retry_reset_task_id = task_id
        return self.retry_reset_count

    def mark_failed(self, item_id, last_error):
        pass


class StubEventRepository:
    def __init__(self, events=None):
        self.events = events or []

    def create(self, event):
        self.events.append(event)

    def list_by_task_id(self, task_id, limit):
        items = [e for e in self.events if e.task_id == task_id]
        if limit > 0:
            items = items[:limit]
        return items


class StubConflictRepository:
    def __init__(self, records):
        self.records = records

    def list_by_task_id(self, task_id):
        return [r for r in self.records if r.task_id == task_id]


def _valid_task(**overrides):
    values = dict(
        id="task-1",
        name="sync-home",
        connection_id="conn-1",
        local_path="/tmp/local",
        remote_path="/remote",
        direction=TaskDirection.UPLOAD,
    )
    values.update(overrides)
    return Task(**values)


def test_create_applies_defaults():
    repo = StubTaskRepository()
    service = TaskQueries(repo)

    created = service.create(_valid_task())

    assert repo.last_created.status == TaskStatus.CREATED
    assert created.status == TaskStatus.CREATED
    assert created.created_at is not None
    assert created.updated_at == created.created_at


def test_create_validates_input():
    service = TaskQueries(StubTaskRepository())
    with pytest.raises(InvalidArgumentError):
        service.create(Task())


def test_get_by_id_returns_repository_value():
    service = TaskQueries(StubTaskRepository(get_result=Task(id="task-1", name="sync-home")))
    assert service.get_by_id("task-1").id == "task-1"


def test_get_by_id_rejects_empty_id():
    service = TaskQueries(StubTaskRepository())
    with pytest.raises(InvalidArgumentError):
        service.get_by_id("")


def test_update_validates_input():
    service = TaskQueries(StubTaskRepository())
    with pytest.raises(InvalidArgumentError):
        service.update(Task())


def test_update_preserves_created_at_and_status_when_unset():
    created_at = datetime(2026, 3, 24, 10, 0, 0, tzinfo=timezone.utc)
    repo = StubTaskRepository(
        get_result=_valid_task(
            status=TaskStatus.CREATED, created_at=created_at, updated_at=created_at
        )
    )
    service = TaskQueries(repo)

    updated = service.update(_valid_task(name="sync-home-updated"))

    assert updated.created_at == created_at
    assert updated.status == TaskStatus.CREATED
    assert updated.name == "sync-home-updated"
    assert repo.last_updated.name == "sync-home-updated"
    assert updated.updated_at is not None


def test_update_fills_unset_settings_from_stored_task():
    repo = StubTaskRepository(
        get_result=_valid_task(
            poll_interval_sec=30,
            conflict_policy="keep_both",
            delete_policy="mirror",
            empty_dir_policy="keep",
            hash_mode="sha256",
            max_workers=4,
        )
    )
    updated = TaskQueries(repo).update(_valid_task(max_workers=8))

    assert updated.poll_interval_sec == 30
    assert updated.conflict_policy == "keep_both"
    assert updated.delete_policy == "mirror"
    assert updated.empty_dir_policy == "keep"
    assert updated.hash_mode == "sha256"
    assert updated.max_workers == 8


def test_delete_rejects_empty_id_and_forwards_others():
    repo = StubTaskRepository()
    service = TaskQueries(repo)
    with pytest.raises(InvalidArgumentError):
        service.delete("")
    service.delete("task-1")
    assert repo.deleted == ["task-1"]


def test_list_failures_returns_task_records():
    failures = StubFailureRepository(
        [FailureRecord(id="fail-1", task_id="task-1", path="report.txt", op_type="UploadFile")]
    )
    service = TaskQueries(StubTaskRepository(get_result=Task(id="task-1")), failures=failures)

    items = service.list_failures("task-1")

    assert [item.id for item in items] == ["fail-1"]


def test_list_failures_without_repository_is_empty():
    service = TaskQueries(StubTaskRepository(get_result=Task(id="task-1")))
    assert service.list_failures("task-1") == []


def test_retry_failures_resets_queue_items():
    queue = StubQueueRepository(retry_reset_count=2)
    service = TaskQueries(StubTaskRepository(get_result=Task(id="task-1")), queue=queue)

    assert service.retry_failures("task-1") == 2
    assert queue.retry_reset_task_id == "task-1"


def test_retry_failure_by_id_reschedules_matching_item_and_resolves_record():
    failures = StubFailureRepository(
        [FailureRecord(id="fail-1", task_id="task-1", path="report.txt", op_type="UploadFile")]
    )
    queue = StubQueueRepository(
        [
            OperationQueueItem(
                id="op-1",
                task_id="task-1",
                op_type="UploadFile",
                target_path="/remote/report.txt",
                status="retry_wait",
            )
        ]
    )
    service = TaskQueries(
        StubTaskRepository(get_result=Task(id="task-1")), failures=failures, queue=queue
    )

    assert service.retry_failure_by_id("task-1", "fail-1") == 1
    assert queue.rescheduled[-1].status == "queued"
    assert queue.rescheduled[-1].next_attempt_at is None
    assert failures.resolved_id == "fail-1"


def test_retry_failure_by_id_without_match_leaves_record_open():
    failures = StubFailureRepository(
        [FailureRecord(id="fail-1", task_id="task-1", path="report.txt", op_type="UploadFile")]
    )
    queue = StubQueueRepository(
        [OperationQueueItem(id="op-1", task_id="task-1", op_type="UploadFile", status="queued")]
    )
    service = TaskQueries(
        StubTaskRepository(get_result=Task(id="task-1")), failures=failures, queue=queue
    )

    assert service.retry_failure_by_id("task-1", "fail-1") == 0
    assert failures.resolved_id == ""


def test_retry_failure_by_id_rejects_record_of_other_task():
    failures = StubFailureRepository([FailureRecord(id="fail-1", task_id="task-2")])
    service = TaskQueries(
        StubTaskRepository(get_result=Task(id="task-1")),
        failures=failures,
        queue=StubQueueRepository(),
    )
    with pytest.raises(ConflictError):
        service.retry_failure_by_id("task-1", "fail-1")


def test_retry_failure_by_id_requires_both_ids():
    service = TaskQueries(StubTaskRepository())
    with pytest.raises(InvalidArgumentError):
        service.retry_failure_by_id("task-1", "")


def test_get_runtime_view_aggregates_runtime_queue_and_failures():
    service = TaskQueries(
        StubTaskRepository(get_result=Task(id="task-1", status=TaskStatus.RUNNING)),
        runtime=StubRuntimeRepository([TaskRuntimeState(task_id="task-1", phase="idle")]),
        queue=StubQueueRepository(
            [
                OperationQueueItem(id="op-1", task_id="task-1", status="queued"),
                OperationQueueItem(id="op-2", task_id="task-1", status="retry_wait"),
                OperationQueueItem(id="op-3", task_id="task-1", status="succeeded"),
            ]
        ),
        failures=StubFailureRepository(
            [
                FailureRecord(id="fail-1", task_id="task-1"),
                FailureRecord(
                    id="fail-2", task_id="task-1", resolved_at=datetime.now(timezone.utc)
                ),
            ]
        ),
    )

    view = service.get_runtime_view("task-1")

    assert view.runtime.phase == "idle"
    assert view.queue_summary.total == 3
    assert view.queue_summary.queued == 1
    assert view.queue_summary.retry_wait == 1
    assert view.queue_summary.succeeded == 1
    assert view.failure_summary.open == 1
    assert view.failure_summary.resolved == 1


def test_get_runtime_view_tolerates_missing_runtime_state():
    service = TaskQueries(
        StubTaskRepository(get_result=Task(id="task-1")), runtime=StubRuntimeRepository()
    )
    view = service.get_runtime_view("task-1")
    assert view.runtime.phase == ""
    assert view.task.id == "task-1"


def test_get_metrics_aggregates_task_queue_and_failure_counts():
    service = TaskQueries(
        StubTaskRepository(
            list_result=[
                Task(id="task-1", status=TaskStatus.RUNNING),
                Task(id="task-2", status=TaskStatus.DEGRADED),
                Task(id="task-3", status=TaskStatus.RUNNING),
            ]
        ),
        queue=StubQueueRepository(
            [
                OperationQueueItem(id="op-1", task_id="task-1", status="queued"),
                OperationQueueItem(id="op-2", task_id="task-1", status="retry_wait"),
                OperationQueueItem(id="op-3", task_id="task-2", status="succeeded"),
            ]
        ),
        failures=StubFailureRepository(
            [
                FailureRecord(id="fail-1", task_id="task-1", retryable=True),
                FailureRecord(
                    id="fail-2",
                    task_id="task-1",
                    retryable=False,
                    resolved_at=datetime.now(timezone.utc),
                ),
                FailureRecord(id="fail-3", task_id="task-2", retryable=True),
            ]
        ),
    )

    metrics = service.get_metrics()

    assert metrics.task_states["running"] == 2
    assert metrics.task_states["degraded"] == 1
    assert metrics.queue.total == 3
    assert metrics.queue.retry_wait == 1
    assert metrics.failures.total == 3
    assert metrics.failures.retryable_open == 2
    assert metrics.failures.resolved == 1


def test_list_events_returns_task_timeline():
    events = StubEventRepository(
        [TaskEvent(id="event-1", task_id="task-1", event_type="task_started")]
    )
    service = TaskQueries(StubTaskRepository(get_result=Task(id="task-1")), events=events)

    items = service.list_events("task-1", 10)

    assert [item.id for item in items] == ["event-1"]


def test_list_conflicts_returns_task_records():
    conflicts = StubConflictRepository(
        [
            ConflictRecord(id="c-1", task_id="task-1", relative_path="a.txt"),
            ConflictRecord(id="c-2", task_id="task-2", relative_path="b.txt"),
        ]
    )
    service = TaskQueries(StubTaskRepository(get_result=Task(id="task-1")), conflicts=conflicts)

    assert [item.id for item in service.list_conflicts("task-1")] == ["c-1"]


def test_list_conflicts_rejects_empty_id():
    service = TaskQueries(StubTaskRepository())
    with pytest.raises(InvalidArgumentError):
        service.list_conflicts("")