"""Sync local directories with WebDAV storage through queued, retried actions."""

__version__ = "0.1.0"

__all__ = [
    "config",
    "domain",
    "logger",
    "poller",
    "rules",
    "scheduler",
    "secret_box",
    "task_queries",
    "task_service",
    "webdav",
]