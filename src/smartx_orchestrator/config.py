"""Runtime configuration for orchestrator, workers and retention."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse
from uuid import uuid4

from smartx_orchestrator.retention.policies import RetentionPolicy
from smartx_orchestrator.services.completion import (
    DEFAULT_BASE_URL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL,
    DEFAULT_TEMPERATURE,
    DEFAULT_TIMEOUT_SECONDS,
)

COMPLETION_PROVIDERS = ("http", "echo")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_UNLIMITED = {"", "none", "null", "unlimited"}


@dataclass(slots=True)
class QueueSettings:
    """Broker delivery and backoff settings."""

    prefix: str = "smartx"
    task_max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 300.0
    visibility_timeout_seconds: float = 300.0


@dataclass(slots=True)
class WorkerSettings:
    worker_id: str = field(default_factory=lambda: _default_worker_id())
    poll_interval_seconds: float = 2.0


@dataclass(slots=True)
class CompletionSettings:
    """Text completion client settings."""

    provider: str = "http"
    base_url: str = DEFAULT_BASE_URL
    api_key: str | None = None
    model: str = DEFAULT_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".smartx.db")
    blob_root: Path = Path(".smartx-blobs")
    log_level: str = "INFO"
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    completion: CompletionSettings = field(default_factory=CompletionSettings)
    default_retention: RetentionPolicy = field(default_factory=RetentionPolicy)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        defaults = RetentionPolicy()
        return cls(
            db_path=db_path or Path(os.getenv("SMARTX_DB_PATH", ".smartx.db")),
            blob_root=Path(os.getenv("SMARTX_BLOB_ROOT", ".smartx-blobs")),
            log_level=os.getenv("SMARTX_LOG_LEVEL", "INFO").strip().upper(),
            queue=QueueSettings(
                prefix=os.getenv("SMARTX_QUEUE_PREFIX", "smartx").strip(),
                task_max_attempts=int(os.getenv("SMARTX_TASK_MAX_ATTEMPTS", "3")),
                backoff_base_seconds=float(os.getenv("SMARTX_QUEUE_BACKOFF_BASE_SECONDS", "1")),
                backoff_max_seconds=float(os.getenv("SMARTX_QUEUE_BACKOFF_MAX_SECONDS", "300")),
                visibility_timeout_seconds=float(
                    os.getenv("SMARTX_QUEUE_VISIBILITY_TIMEOUT_SECONDS", "300"),
                ),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("SMARTX_WORKER_ID", "").strip() or _default_worker_id(),
                poll_interval_seconds=float(
                    os.getenv("SMARTX_WORKER_POLL_INTERVAL_SECONDS", "2"),
                ),
            ),
            completion=CompletionSettings(
                provider=os.getenv("SMARTX_COMPLETION_PROVIDER", "http").strip().lower(),
                base_url=os.getenv("SMARTX_COMPLETION_BASE_URL", DEFAULT_BASE_URL).strip(),
                api_key=os.getenv("SMARTX_COMPLETION_API_KEY") or None,
                model=os.getenv("SMARTX_COMPLETION_MODEL", DEFAULT_MODEL).strip(),
                temperature=float(
                    os.getenv("SMARTX_COMPLETION_TEMPERATURE", str(DEFAULT_TEMPERATURE)),
                ),
                max_tokens=int(os.getenv("SMARTX_COMPLETION_MAX_TOKENS", str(DEFAULT_MAX_TOKENS))),
                timeout_seconds=float(
                    os.getenv("SMARTX_COMPLETION_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS)),
                ),
                max_retries=int(
                    os.getenv("SMARTX_COMPLETION_MAX_RETRIES", str(DEFAULT_MAX_RETRIES)),
                ),
            ),
            default_retention=RetentionPolicy(
                transcript_days=_env_optional_int(
                    "SMARTX_DEFAULT_TRANSCRIPT_RETENTION_DAYS",
                    default=defaults.transcript_days,
                ),
                repository_days=_env_optional_int(
                    "SMARTX_DEFAULT_REPOSITORY_RETENTION_DAYS",
                    default=defaults.repository_days,
                ),
                job_days=_env_optional_int(
                    "SMARTX_DEFAULT_JOB_RETENTION_DAYS",
                    default=defaults.job_days,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the runtime cannot work with."""

        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"SMARTX_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}: {self.log_level!r}",
            )
        if not self.queue.prefix or ":" in self.queue.prefix:
            raise ValueError("SMARTX_QUEUE_PREFIX must be non-empty and must not contain ':'.")
        if self.queue.task_max_attempts < 1:
            raise ValueError("SMARTX_TASK_MAX_ATTEMPTS must be >= 1.")
        if self.queue.backoff_base_seconds < 0:
            raise ValueError("SMARTX_QUEUE_BACKOFF_BASE_SECONDS must be >= 0.")
        if self.queue.backoff_max_seconds < self.queue.backoff_base_seconds:
            raise ValueError(
                "SMARTX_QUEUE_BACKOFF_MAX_SECONDS must be >= SMARTX_QUEUE_BACKOFF_BASE_SECONDS.",
            )
        if self.queue.visibility_timeout_seconds <= 0:
            raise ValueError("SMARTX_QUEUE_VISIBILITY_TIMEOUT_SECONDS must be > 0.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("SMARTX_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        for name, days in (
            ("SMARTX_DEFAULT_TRANSCRIPT_RETENTION_DAYS", self.default_retention.transcript_days),
            ("SMARTX_DEFAULT_REPOSITORY_RETENTION_DAYS", self.default_retention.repository_days),
            ("SMARTX_DEFAULT_JOB_RETENTION_DAYS", self.default_retention.job_days),
        ):
            if days is not None and days < 0:
                raise ValueError(f"{name} must be >= 0 or 'unlimited'.")

    def validate_for_completion(self) -> None:
        """Raise configuration error if the completion client cannot be built."""

        completion = self.completion
        if completion.provider not in COMPLETION_PROVIDERS:
            raise ValueError(
                "SMARTX_COMPLETION_PROVIDER must be one of "
                f"{', '.join(COMPLETION_PROVIDERS)}: {completion.provider!r}",
            )
        if completion.provider == "echo":
            return
        parsed = urlparse(completion.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid SMARTX_COMPLETION_BASE_URL: "
                f"{completion.base_url!r}. Expected an absolute http(s) URL.",
            )
        if not completion.model:
            raise ValueError("SMARTX_COMPLETION_MODEL must be set.")
        if not 0.0 <= completion.temperature <= 2.0:  # noqa: PLR2004
            raise ValueError("SMARTX_COMPLETION_TEMPERATURE must be within [0, 2].")
        if completion.max_tokens <= 0:
            raise ValueError("SMARTX_COMPLETION_MAX_TOKENS must be > 0.")
        if completion.timeout_seconds <= 0:
            raise ValueError("SMARTX_COMPLETION_TIMEOUT_SECONDS must be > 0.")
        if completion.max_retries < 0:
            raise ValueError("SMARTX_COMPLETION_MAX_RETRIES must be >= 0.")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


def _env_optional_int(name: str, *, default: int | None) -> int | None:
    """Integer env value where empty or 'unlimited' means no limit."""

    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in _UNLIMITED:
        return None
    try:
        return int(normalized)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error
