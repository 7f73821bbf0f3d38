"""Queue broker message models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class MessageState(str, Enum):
    """Durable message lifecycle states."""

    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    ACKED = "acked"
    DEAD = "dead"


LIVE_MESSAGE_STATES = (MessageState.QUEUED.value, MessageState.IN_FLIGHT.value)


class NackOutcome(str, Enum):
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    STALE = "stale"


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Exponential redelivery delay: base * 2 ** (attempt - 1), capped."""

    base_seconds: float = 1.0
    max_seconds: float = 300.0

    def delay_for(self, attempt: int) -> float:
        return min(self.max_seconds, self.base_seconds * (2 ** max(attempt - 1, 0)))


@dataclass(frozen=True, slots=True)
class EnqueueOptions:
    """Per-message delivery options; `job_id` de-duplicates live messages."""

    job_id: str
    tenant_id: str
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)


@dataclass(frozen=True, slots=True)
class AckHandle:
    """Identifies one delivery; stale after the lease is redelivered."""

    message_id: str
    attempt: int
    consumer_id: str


@dataclass(frozen=True, slots=True)
class Delivery:
    """One claimed message."""

    queue: str
    task_id: str
    tenant_id: str
    payload: dict[str, Any]
    attempt: int
    max_attempts: int
    ack_handle: AckHandle

    @property
    def is_redelivery(self) -> bool:
        return self.attempt > 1


@dataclass(slots=True)
class HandledMessage:
    """Result of processing one message through a handler."""

    delivery: Delivery
    acked: bool
    nack_outcome: NackOutcome | None = None
    error: str | None = None
    value: Any = None


@dataclass(slots=True)
class QueueStats:
    queue: str
    state: MessageState
    count: int
    oldest_created_at: datetime | None = None
