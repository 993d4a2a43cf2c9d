"""Unit tests for settings validation"""

import pytest
from pydantic import ValidationError

from lab_platform.core.config import Settings


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.LOCK_BACKEND == "memory"
    assert settings.QUEUE_MAX_ATTEMPTS == 3
    assert settings.CONTAINER_NAME_PREFIX == "lab"


def test_log_level_is_normalized():
    assert Settings(_env_file=None, LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"


@pytest.mark.parametrize("overrides", [
    {"LOCK_BACKEND": "zookeeper"},
    {"SSH_PORT": 70000},
    {"LOG_LEVEL": "LOUD"},
    {"READINESS_TIMEOUT_SECONDS": 0},
    {"QUEUE_MAX_ATTEMPTS": 0},
])
def test_invalid_values_rejected(overrides):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **overrides)


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("LOCK_BACKEND", "REDIS")
    monkeypatch.setenv("QUEUE_WORKER_CONCURRENCY", "8")

    settings = Settings(_env_file=None)

    assert settings.LOCK_BACKEND == "redis"
    assert settings.QUEUE_WORKER_CONCURRENCY == 8
