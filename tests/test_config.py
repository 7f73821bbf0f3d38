from __future__ import annotations

from pathlib import Path

import allure
import pytest

from smartx_orchestrator.config import CompletionSettings, QueueSettings, Settings
from smartx_orchestrator.retention.policies import RetentionPolicy

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_defaults() -> None:
    settings = Settings.from_env(db_path=Path("custom.db"))

    assert settings.db_path == Path("custom.db")
    assert settings.queue.prefix == "smartx"
    assert settings.queue.task_max_attempts == 3
    assert settings.default_retention == RetentionPolicy(90, 180, 30)
    assert settings.worker.worker_id
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SMARTX_DB_PATH", "/tmp/smartx-test.db")
    monkeypatch.setenv("SMARTX_LOG_LEVEL", " debug ")
    monkeypatch.setenv("SMARTX_QUEUE_PREFIX", "tenant-a")
    monkeypatch.setenv("SMARTX_TASK_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("SMARTX_QUEUE_BACKOFF_BASE_SECONDS", "0.5")
    monkeypatch.setenv("SMARTX_WORKER_ID", "worker-7")
    monkeypatch.setenv("SMARTX_COMPLETION_PROVIDER", "ECHO")
    monkeypatch.setenv("SMARTX_COMPLETION_MAX_TOKENS", "256")
    monkeypatch.setenv("SMARTX_DEFAULT_TRANSCRIPT_RETENTION_DAYS", "unlimited")
    monkeypatch.setenv("SMARTX_DEFAULT_JOB_RETENTION_DAYS", "7")

    settings = Settings.from_env()

    assert settings.db_path == Path("/tmp/smartx-test.db")
    assert settings.log_level == "DEBUG"
    assert settings.queue.prefix == "tenant-a"
    assert settings.queue.task_max_attempts == 5
    assert settings.queue.backoff_base_seconds == 0.5
    assert settings.worker.worker_id == "worker-7"
    assert settings.completion.provider == "echo"
    assert settings.completion.max_tokens == 256
    assert settings.default_retention == RetentionPolicy(
        transcript_days=None,
        repository_days=180,
        job_days=7,
    )
    settings.validate()
    settings.validate_for_completion()


def test_from_env_rejects_non_integer_retention(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SMARTX_DEFAULT_REPOSITORY_RETENTION_DAYS", "forever")

    with pytest.raises(ValueError, match="SMARTX_DEFAULT_REPOSITORY_RETENTION_DAYS"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(log_level="LOUD"), "SMARTX_LOG_LEVEL"),
        (Settings(queue=QueueSettings(prefix="a:b")), "SMARTX_QUEUE_PREFIX"),
        (Settings(queue=QueueSettings(task_max_attempts=0)), "SMARTX_TASK_MAX_ATTEMPTS"),
        (
            Settings(queue=QueueSettings(backoff_base_seconds=10, backoff_max_seconds=1)),
            "SMARTX_QUEUE_BACKOFF_MAX_SECONDS",
        ),
        (
            Settings(queue=QueueSettings(visibility_timeout_seconds=0)),
            "SMARTX_QUEUE_VISIBILITY_TIMEOUT_SECONDS",
        ),
        (
            Settings(default_retention=RetentionPolicy(job_days=-1)),
            "SMARTX_DEFAULT_JOB_RETENTION_DAYS",
        ),
    ],
)
def test_validate_rejects_bad_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


@pytest.mark.parametrize(
    ("completion", "message"),
    [
        (CompletionSettings(provider="carrier-pigeon"), "SMARTX_COMPLETION_PROVIDER"),
        (CompletionSettings(base_url="ftp://models.local"), "Invalid SMARTX_COMPLETION_BASE_URL"),
        (CompletionSettings(model=""), "SMARTX_COMPLETION_MODEL"),
        (CompletionSettings(temperature=3.0), "SMARTX_COMPLETION_TEMPERATURE"),
        (CompletionSettings(max_tokens=0), "SMARTX_COMPLETION_MAX_TOKENS"),
        (CompletionSettings(timeout_seconds=0), "SMARTX_COMPLETION_TIMEOUT_SECONDS"),
    ],
)
def test_validate_for_completion_rejects_bad_values(
    completion: CompletionSettings,
    message: str,
) -> None:
    with pytest.raises(ValueError, match=message):
        Settings(completion=completion).validate_for_completion()


def test_echo_provider_skips_http_checks() -> None:
    Settings(
        completion=CompletionSettings(provider="echo", base_url="not a url"),
    ).validate_for_completion()
