# fncloudsync

This package provides building blocks for keeping a local directory and a WebDAV share in step. It covers four things:

- It models sync tasks and the work they produce.
- It stores planned actions in an operation queue.
- It retries failed actions with backoff.
- It polls the remote side for changes.

## Modules

- `fncloudsync.domain` holds the data model, the JSON codec and the error types.
  - Task types: `Task`, `TaskDirection`, `TaskStatus`, `TaskRuntimeState`.
  - Connection types: `Connection`, `ConnectionCapabilities`, `RemoteEntry`.
  - Work types: `SyncAction`, `SyncActionType`, `OperationQueueItem`, `FailureRecord`, `FileIndexEntry`, `ConflictRecord`, `TaskEvent`.
  - Summary types: `TaskRuntimeView`, `TaskMetrics`.
  - `action_to_json` and `action_from_json` encode and decode the queue payload of a `SyncAction`.
  - Errors: `InvalidArgumentError`, `NotFoundError`, `ConflictError` and `ReferencedResourceError`. All of them derive from `DomainError`.
- `fncloudsync.secret_box` provides `SecretManager`.
  - It encrypts strings with AES-256-GCM.
  - It needs a key of exactly 32 bytes.
  - The result is base64 text that holds the nonce followed by the sealed data.
  - `decrypt_string` raises `ValueError` on bad input.
- `fncloudsync.config` provides `load(environ=None)`. It reads these variables:
  - `APP_ADDR`, default `:8080`.
  - `APP_DB_PATH`, default `fn-cloudsync.db`.
  - `APP_SECRET_KEY`, which is required. If it is missing or empty, `load` raises `ConfigError`.
- `fncloudsync.logger` provides `new_logger(stream=None)`.
  - It returns a `logging.Logger` that writes to standard output, or to the stream you pass.
  - Each line reads `fn-cloudsync YYYY/MM/DD HH:MM:SS.ffffff message`.
- `fncloudsync.webdav` provides `WebDAVClient`, a small client built on `requests`. Its methods are `probe`, `stat`, `list`, `mkdir_all`, `delete`, `move`, `upload`, `download` and `health_check`.
- `fncloudsync.rules` holds pure decision helpers that the services use.
  - Queue summaries.
  - Which side an action reads from.
  - Whether a retried action has already taken effect.
  - Which paths a plan discovered on the remote side.
- `fncloudsync.task_queries` provides `TaskQueries`. It covers the following:
  - Create, read, update and delete for tasks.
  - Listing failures and retrying them.
  - Runtime views, metrics, event timelines and conflict history.
- `fncloudsync.task_service` provides `TaskService`, a subclass of `TaskQueries`. It runs the task lifecycle through these methods: `start`, `pause`, `stop`, `execute_running_task`, `poll_remote_task` and `execute_queue_operation`.
- `fncloudsync.scheduler` and `fncloudsync.poller` provide `Scheduler` and `Poller`. Both are periodic loops. `run(stop)` ticks once straight away, then ticks once every interval until the `threading.Event` is set.

## Configuration and secrets

```python
import os

from fncloudsync.config import load
from fncloudsync.secret_box import SecretManager

config = load(os.environ)
secret_manager = SecretManager(config.secret_key)

password = "password"
stored = secret_manager.encrypt_string(password)
assert secret_manager.decrypt_string(stored) == password
```

## Talking to a WebDAV server

```python
from fncloudsync.domain import Connection
from fncloudsync.webdav import WebDAVClient

connection = Connection(
    id="conn-1",
    name="home",
    endpoint="https://dav.example.com",
    username="alice",
    root_path="/dav",
)
password = "password"

client = WebDAVClient()
capabilities = client.probe(connection, password)
for entry in client.list(connection, password, "/"):
    print(entry.path, entry.is_dir, entry.size, entry.mtime)

client.upload(connection, password, "/report.txt", b"payload", "text/plain")
content, entry = client.download(connection, password, "/report.txt")
```

How the client behaves:

- Basic authentication is sent only when the connection has a username.
- `list` returns the children of a collection, not the collection itself.
- `mkdir_all` sends one `MKCOL` for each path segment.
- `download` returns the whole body together with a `RemoteEntry` that carries the ETag and Last-Modified time.
- The client raises on network errors and on malformed PROPFIND replies. It does not treat HTTP error status codes as failures.
- The `recursive` argument of `delete` does not change the request.

## Tasks

You supply the storage. The services call methods on the objects you pass in. Plain in-memory objects are enough.

```python
from fncloudsync.domain import NotFoundError, Task, TaskDirection, TaskStatus
from fncloudsync.task_service import TaskService


class MemoryTasks:
    def __init__(self):
        self.items = {}

    def create(self, task):
        self.items[task.id] = task

    def get_by_id(self, task_id):
        try:
            return self.items[task_id]
        except KeyError:
            raise NotFoundError() from None

    def list(self):
        return list(self.items.values())

    def update(self, task):
        self.items[task.id] = task

    def delete(self, task_id):
        self.items.pop(task_id, None)


service = TaskService(MemoryTasks())
service.create(
    Task(
        id="task-1",
        name="home",
        connection_id="conn-1",
        local_path="/srv/home",
        remote_path="/backup/home",
        direction=TaskDirection.UPLOAD,
    )
)
assert service.start("task-1").status is TaskStatus.RUNNING
```

`create` does three things:

1. It checks the name, connection id, local path, remote path and direction. If any of them is missing or wrong, it raises `InvalidArgumentError`.
2. It sets the status to `created`.
3. It fills in the timestamps.

`update` keeps the stored value of every field you leave unset.

All collaborators are keyword arguments of the constructor, and all of them are optional. When one is absent, the queries that use it return empty results.

| Keyword | Methods it must provide |
| --- | --- |
| `connections` | `get_by_id(connection_id)` |
| `secrets` | `decrypt_string(ciphertext)`, for example a `SecretManager` |
| `runner` | `run_once(task, connection, password)`, `plan(task, connection, password)` returning `SyncAction`s, and `execute_action(task, connection, password, action)` |
| `runtime` | `upsert(state)`, and `get_by_task_id(task_id)` raising `NotFoundError` when there is no state |
| `failures` | `create`, `list_by_task_id`, `get_by_id` and `resolve(failure_id, resolved_at)` |
| `queue` | `enqueue`, `list_by_task_id`, `dequeue`, `reschedule` and `reset_retryable_by_task_id`. The `Scheduler` also calls `list_due(now, limit)` and `mark_failed(op_id, error)`. |
| `file_index` | `get_by_task_id_and_path(task_id, relative_path)` |
| `events` | `create(event)` and `list_by_task_id(task_id, limit)` |
| `conflicts` | `list_by_task_id(task_id)` |
| `logger` | an `info(message, *args)` method, such as a `logging.Logger` |

### Running a task

A run does sync work only when `connections`, `secrets` and `runner` are all given. The run goes like this:

- Without a queue, it calls `runner.run_once`.
- With a queue, it plans the actions, queues each one, and then executes each queued action in turn.

When a single action fails:

- Its queue item is rescheduled as `retry_wait`.
- A failure record and an event are stored.
- The task becomes `degraded`. If the stored runtime state already shows a retry streak, the task becomes `retrying` instead.

When the whole run fails:

- The task is marked `failed`.
- A `baseline_sync` failure record and a `baseline_sync` queue item are stored.
- The error is raised.

A successful run brings a `degraded` task back to `running` and records the scan and success times.

`poll_remote_task` works only on download and bidirectional tasks. It writes a polling checkpoint. During planning, the remote-discovered paths are added to that checkpoint as `changed_paths`.

### Scheduler and poller

```python
import threading

from fncloudsync.poller import Poller
from fncloudsync.scheduler import Scheduler

stop = threading.Event()
scheduler = Scheduler(service, runtime_repo, queue_repo, interval=1.0)
poller = Poller(service, runtime_repo, interval=5.0)
threading.Thread(target=scheduler.run, args=(stop,), daemon=True).start()
threading.Thread(target=poller.run, args=(stop,), daemon=True).start()
```

On each tick, the `Scheduler` does the following:

- It runs every `running`, `degraded` or `retrying` task whose last reconcile is older than the task's poll interval.
- It then takes up to 64 due queue items and executes them, skipping items of tasks it has just run.
- When a queue item fails, it is retried with a backoff of 1, 2, 4, … seconds, up to 256 seconds. After ten attempts it is marked failed.

The `Poller` triggers `poll_remote_task` for download and bidirectional tasks in those same statuses, once their last remote scan is older than the poll interval.

## What the package does not do

- It has no persistent storage. Every repository is yours to provide.
- It does not plan or carry out file transfers itself. That is the job of the `runner` you pass in, which can use `WebDAVClient`.
- It has no HTTP API, no server and no command-line program.

## Tests

The test suite uses pytest. Install it with the `test` extra.