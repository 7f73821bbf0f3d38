"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from smartx_orchestrator.dispatcher import Dispatcher
from smartx_orchestrator.jobs.repository import JobStore
from smartx_orchestrator.queue.broker import QueueBroker
from smartx_orchestrator.queue.models import BackoffPolicy
from smartx_orchestrator.services.blob_store import LocalBlobStore
from smartx_orchestrator.services.completion import CompletionOptions
from smartx_orchestrator.tenants.repository import TenantStore

TENANT_ID = "acme"


class ScriptedCompletion:
    """Completion double that replays queued replies; exceptions are raised."""

    def __init__(self) -> None:
        self.replies: list[str | Exception] = []
        self.prompts: list[str] = []
        self.options: list[CompletionOptions | None] = []

    def complete(self, prompt: str, options: CompletionOptions | None = None) -> str:
        self.prompts.append(prompt)
        self.options.append(options)
        if not self.replies:
            raise AssertionError("No scripted completion reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def close(self) -> None:
        return None


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "smartx.db"


@pytest.fixture()
def job_store(db_path: Path) -> Iterator[JobStore]:
    store = JobStore(db_path)
    store.init_schema()
    yield store
    store.close()


@pytest.fixture()
def broker(job_store: JobStore) -> Iterator[QueueBroker]:
    queue_broker = QueueBroker(job_store.db_path)
    yield queue_broker
    queue_broker.close()


@pytest.fixture()
def tenants(job_store: JobStore) -> Iterator[TenantStore]:
    store = TenantStore(job_store.db_path)
    store.upsert_tenant(
        tenant_id=TENANT_ID,
        name="Acme",
        has_meet=True,
        has_doc=True,
        has_code=True,
    )
    yield store
    store.close()


@pytest.fixture()
def dispatcher(job_store: JobStore, broker: QueueBroker, tenants: TenantStore) -> Dispatcher:
    return Dispatcher(
        job_store=job_store,
        broker=broker,
        tenants=tenants,
        backoff=BackoffPolicy(base_seconds=0.0, max_seconds=0.0),
    )


@pytest.fixture()
def blob_store(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture()
def completion() -> ScriptedCompletion:
    return ScriptedCompletion()
