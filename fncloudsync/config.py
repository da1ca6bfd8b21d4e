"""Process configuration read from environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(Exception):
    """The environment does not hold a usable configuration."""


@dataclass(frozen=True)
class Config:
    addr: str
    db_path: str
    secret_key: str


def _env_or_default(environ: Mapping[str, str], key: str, fallback: str) -> str:
    return environ.get(key) or fallback


def load(environ: Mapping[str, str] | None = None) -> Config:
    """Build a Config from the environment; APP_SECRET_KEY is required."""
    env = os.environ if environ is None else environ
    config = Config(
        addr=_env_or_default(env, "APP_ADDR", ":8080"),
        db_path=_env_or_default(env, "APP_DB_PATH", "fn-cloudsync.db"),
        secret_key=env.get("APP_SECRET_KEY", ""),
    )
    if not config.secret_key:
        raise ConfigError("APP_SECRET_KEY is required")
    return config