import pytest

from fncloudsync.config import ConfigError, load


def test_load_uses_defaults():
    config = load({"APP_SECRET_KEY": "secret"})
    assert config.addr == ":8080"
    assert config.db_path == "fn-cloudsync.db"
    assert config.secret_key == "secret"


def test_load_reads_overrides():
    config = load(
        {"APP_SECRET_KEY": "secret", "APP_ADDR": "127.0.0.1:9000", "APP_DB_PATH": "/tmp/sync.db"}
    )
    assert config.addr == "127.0.0.1:9000"
    assert config.db_path == "/tmp/sync.db"


def test_empty_values_fall_back_to_defaults():
    config = load({"APP_SECRET_KEY": "secret", "APP_ADDR": "", "APP_DB_PATH": ""})
    assert config.addr == ":8080"
    assert config.db_path == "fn-cloudsync.db"


def test_missing_secret_key_raises():
    with pytest.raises(ConfigError, match="APP_SECRET_KEY is required"):
        load({"APP_ADDR": ":8080"})


def test_empty_secret_key_raises():
    with pytest.raises(ConfigError):
        load({"APP_SECRET_KEY": ""})


def test_load_reads_process_environment(monkeypatch):
    monkeypatch.setenv("APP_SECRET_KEY", "secret")
    monkeypatch.setenv("APP_DB_PATH", "/tmp/from-env.db")
    monkeypatch.delenv("APP_ADDR", raising=False)
    config = load()
    assert config.db_path == "/tmp/from-env.db"
    assert config.addr == ":8080"