"""Core domain types: tasks, connections, queue items and sync actions."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class DomainError(Exception):
    """Base class for errors raised by the domain layer."""

    default_message = "domain error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class InvalidArgumentError(DomainError):
    """An argument or entity failed validation."""

    default_message = "invalid argument"


class NotFoundError(DomainError):
    """The requested entity does not exist."""

    default_message = "not found"


class ConflictError(DomainError):
    """The operation conflicts with the current state."""

    default_message = "conflict"


class ReferencedResourceError(DomainError):
    """The entity is still referenced by another resource."""

    default_message = "referenced resource"


class _StrEnum(str, Enum):
    def __str__(self) -> str:
        return str(self.value)


class TaskDirection(_StrEnum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    BIDIRECTIONAL = "bidirectional"


class TaskStatus(_StrEnum):
    CREATED = "created"
    DEGRADED = "degraded"
    PAUSED = "paused"
    RUNNING = "running"
    RETRYING = "retrying"
    FAILED = "failed"
    STOPPED = "stopped"


class TLSMode(_StrEnum):
    STRICT = "strict"
    INSECURE = "insecure"


class SyncActionType(_StrEnum):
    CREATE_DIR_LOCAL = "CreateDirLocal"
    CREATE_DIR_REMOTE = "CreateDirRemote"
    UPLOAD_FILE = "UploadFile"
    DOWNLOAD_FILE = "DownloadFile"
    DELETE_LOCAL = "DeleteLocal"
    DELETE_REMOTE = "DeleteRemote"
    MOVE_LOCAL = "MoveLocal"
    MOVE_REMOTE = "MoveRemote"
    MOVE_CONFLICT_LOCAL = "MoveConflictLocal"
    MOVE_CONFLICT_REMOTE = "MoveConflictRemote"
    REFRESH_METADATA = "RefreshMetadata"


@dataclass
class Task:
    """A configured synchronisation task."""

    id: str = ""
    name: str = ""
    connection_id: str = ""
    local_path: str = ""
    remote_path: str = ""
    direction: TaskDirection | str | None = None
    poll_interval_sec: int = 0
    conflict_policy: str = ""
    delete_policy: str = ""
    empty_dir_policy: str = ""
    bandwidth_limit_kbps: int = 0
    max_workers: int = 0
    encryption_enabled: bool = False
    hash_mode: str = ""
    status: TaskStatus | None = None
    desired_state: str = ""
    last_error: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def apply_defaults(self) -> None:
        """Fill in the status of a new task."""
        if not self.status:
            self.status = TaskStatus.CREATED

    def validate(self) -> None:
        """Raise InvalidArgumentError if a required field is missing or wrong."""
        required = (
            (self.name, "name is required"),
            (self.connection_id, "connection_id is required"),
            (self.local_path, "local_path is required"),
            (self.remote_path, "remote_path is required"),
        )
        for value, message in required:
            if not value.strip():
                raise InvalidArgumentError(message)
        try:
            TaskDirection(self.direction)
        except ValueError:
            raise InvalidArgumentError("direction is invalid") from None


@dataclass
class Connection:
    """A WebDAV endpoint with encrypted credentials."""

    id: str = ""
    name: str = ""
    endpoint: str = ""
    username: str = ""
    password_ciphertext: str = ""
    root_path: str = ""
    tls_mode: TLSMode | None = None
    timeout_sec: int = 0
    capabilities_json: str = ""
    status: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def validate(self) -> None:
        """Raise InvalidArgumentError if a required field is missing."""
        required = (
            (self.name, "name is required"),
            (self.endpoint, "endpoint is required"),
            (self.username, "username is required"),
        )
        for value, message in required:
            if not value.strip():
                raise InvalidArgumentError(message)


@dataclass
class ConnectionCapabilities:
    supports_etag: bool = False
    supports_last_modified: bool = False
    supports_content_length: bool = False
    supports_recursive_propfind: bool = False
    supports_move: bool = False
    path_encoding_mode: str = ""
    mtime_precision: str = ""
    server_fingerprint: str = ""
    probe_warnings: list[str] = field(default_factory=list)


@dataclass
class ConnectionTestResult:
    success: bool = False
    capabilities: ConnectionCapabilities = field(default_factory=ConnectionCapabilities)


@dataclass
class RemoteEntry:
    path: str = ""
    is_dir: bool = False
    size: int = 0
    mtime: datetime | None = None
    etag: str = ""
    content_type: str = ""
    exists: bool = False


@dataclass
class TaskRuntimeState:
    task_id: str = ""
    phase: str = ""
    last_local_scan_at: datetime | None = None
    last_remote_scan_at: datetime | None = None
    last_reconcile_at: datetime | None = None
    last_success_at: datetime | None = None
    backoff_until: datetime | None = None
    retry_streak: int = 0
    last_error: str = ""
    checkpoint_json: str = ""
    updated_at: datetime | None = None


@dataclass
class OperationQueueItem:
    id: str = ""
    task_id: str = ""
    op_type: str = ""
    target_path: str = ""
    src_side: str = ""
    reason: str = ""
    payload_json: str = ""
    priority: int = 0
    status: str = ""
    attempt_count: int = 0
    next_attempt_at: datetime | None = None
    last_error: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class FailureRecord:
    id: str = ""
    task_id: str = ""
    path: str = ""
    op_type: str = ""
    error_code: str = ""
    error_message: str = ""
    retryable: bool = False
    first_failed_at: datetime | None = None
    last_failed_at: datetime | None = None
    attempt_count: int = 0
    resolved_at: datetime | None = None


@dataclass
class FileIndexEntry:
    id: str = ""
    task_id: str = ""
    relative_path: str = ""
    entry_type: str = ""
    local_exists: bool = False
    remote_exists: bool = False
    local_size: int = 0
    remote_size: int = 0
    local_mtime: datetime | None = None
    remote_mtime: datetime | None = None
    local_file_id: str = ""
    remote_etag: str = ""
    content_hash: str = ""
    last_sync_direction: str = ""
    last_sync_at: datetime | None = None
    version: int = 0
    sync_state: str = ""
    conflict_flag: bool = False
    deleted_tombstone: bool = False


@dataclass
class ConflictRecord:
    id: str = ""
    task_id: str = ""
    relative_path: str = ""
    local_conflict_path: str = ""
    remote_conflict_path: str = ""
    policy: str = ""
    detected_at: datetime | None = None


@dataclass
class TaskEvent:
    id: str = ""
    task_id: str = ""
    event_type: str = ""
    level: str = ""
    message: str = ""
    details_json: str = ""
    created_at: datetime | None = None


@dataclass
class SyncAction:
    type: SyncActionType | str = ""
    relative_path: str = ""
    source_relative_path: str = ""
    local_path: str = ""
    source_local_path: str = ""
    remote_path: str = ""
    source_remote_path: str = ""
    conflict_path: str = ""
    is_dir: bool = False


@dataclass
class TaskQueueSummary:
    total: int = 0
    queued: int = 0
    pending: int = 0
    executing: int = 0
    retry_wait: int = 0
    succeeded: int = 0
    failed: int = 0


@dataclass
class TaskFailureSummary:
    total: int = 0
    resolved: int = 0
    open: int = 0


@dataclass
class TaskRuntimeView:
    task: Task
    runtime: TaskRuntimeState = field(default_factory=TaskRuntimeState)
    queue: list[OperationQueueItem] = field(default_factory=list)
    failures: list[FailureRecord] = field(default_factory=list)
    queue_summary: TaskQueueSummary = field(default_factory=TaskQueueSummary)
    failure_summary: TaskFailureSummary = field(default_factory=TaskFailureSummary)


@dataclass
class QueueMetrics:
    total: int = 0
    queued: int = 0
    executing: int = 0
    retry_wait: int = 0
    succeeded: int = 0
    failed: int = 0


@dataclass
class FailureMetrics:
    total: int = 0
    open: int = 0
    resolved: int = 0
    retryable_open: int = 0


@dataclass
class TaskMetrics:
    task_states: dict[str, int] = field(default_factory=dict)
    queue: QueueMetrics = field(default_factory=QueueMetrics)
    failures: FailureMetrics = field(default_factory=FailureMetrics)


_ACTION_FIELDS = (
    ("type", "Type"),
    ("relative_path", "RelativePath"),
    ("source_relative_path", "SourceRelativePath"),
    ("local_path", "LocalPath"),
    ("source_local_path", "SourceLocalPath"),
    ("remote_path", "RemotePath"),
    ("source_remote_path", "SourceRemotePath"),
    ("conflict_path", "ConflictPath"),
    ("is_dir", "IsDir"),
)

_HTML_SAFE = str.maketrans(
    {
        "<": "\\u003c",
        ">": "\\u003e",
        "&": "\\u0026",
        "\u2028": "\\u2028",
        "\u2029": "\\u2029",
    }
)


def _coerce_action_type(value: str) -> SyncActionType | str:
    try:
        return SyncActionType(value)
    except ValueError:
        return value


def action_to_json(action: SyncAction) -> str:
    """Encode a sync action as the compact JSON stored in queue payloads."""
    payload = {}
    for attr, key in _ACTION_FIELDS:
        value = getattr(action, attr)
        payload[key] = value if attr == "is_dir" else str(value)
    text = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return text.translate(_HTML_SAFE)


def action_from_json(text: str | bytes) -> SyncAction:
    """Decode a queue payload into a SyncAction; keys match case-insensitively."""
    payload = json.loads(text)
    if payload is None:
        return SyncAction()
    if not isinstance(payload, dict):
        raise ValueError("sync action payload must be a JSON object")
    lookup = {key.lower(): value for key, value in payload.items()}
    values: dict[str, object] = {}
    for attr, key in _ACTION_FIELDS:
        value = lookup.get(key.lower())
        if value is None:
            continue
        if attr == "is_dir":
            if not isinstance(value, bool):
                raise ValueError(f"field {key} must be a boolean")
            values[attr] = value
            continue
        if not isinstance(value, str):
            raise ValueError(f"field {key} must be a string")
        values[attr] = _coerce_action_type(value) if attr == "type" else value
    return SyncAction(**values)