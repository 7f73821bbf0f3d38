"""Durable at-least-once queue broker backed by SQLite."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, func, select

from smartx_orchestrator.errors import QueueBrokerError, QueueDeliveryExhausted
from smartx_orchestrator.queue.models import (
    LIVE_MESSAGE_STATES,
    AckHandle,
    BackoffPolicy,
    Delivery,
    EnqueueOptions,
    HandledMessage,
    MessageState,
    NackOutcome,
    QueueStats,
)
from smartx_orchestrator.storage.alembic_runner import upgrade_head
from smartx_orchestrator.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    dump_json,
    load_json_dict,
    optional_utc,
    to_db_datetime,
    utc_now,
)
from smartx_orchestrator.storage.sqlmodel_models import QueueMessage

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_PREFIX = "smartx"
DEFAULT_VISIBILITY_TIMEOUT_SECONDS = 300.0
LEASE_EXPIRED_ERROR = "visibility timeout expired before ack"

DeadLetterHandler = Callable[[QueueDeliveryExhausted], None]


def queue_name_for(worker: str, *, prefix: str = DEFAULT_QUEUE_PREFIX) -> str:
    """One queue per worker kind, e.g. `smartx:transcribe`."""

    return f"{prefix}:{worker.lower()}"


class QueueBroker:
    """Queue facade: enqueue, claim with visibility lease, ack/nack, dead letters."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._dead_letter_handlers: list[DeadLetterHandler] = []

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def add_dead_letter_handler(self, handler: DeadLetterHandler) -> None:
        self._dead_letter_handlers.append(handler)

    def enqueue(self, queue: str, payload: dict[str, Any], options: EnqueueOptions) -> str:
        """Enqueue a message; a live message with the same job id is reused."""

        try:
            existing = self._find_live_message_id(queue=queue, job_id=options.job_id)
            if existing is not None:
                return existing
            return self._insert_message(queue=queue, payload=payload, options=options)
        except IntegrityError:
            # A concurrent enqueue for the same job won the unique live index.
            existing = self._find_live_message_id(queue=queue, job_id=options.job_id)
            if existing is None:
                raise QueueBrokerError(
                    f"Enqueue conflict for job {options.job_id} on {queue}",
                ) from None
            return existing
        except SQLAlchemyError as error:
            raise QueueBrokerError(f"Enqueue failed for job {options.job_id}: {error}") from error

    def claim(
        self,
        queue: str,
        *,
        consumer_id: str,
        visibility_timeout_seconds: float = DEFAULT_VISIBILITY_TIMEOUT_SECONDS,
    ) -> Delivery | None:
        """Atomically claim the oldest ready message of a queue."""

        self.recover_expired_leases(queue=queue)
        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueMessage)
                    .where(
                        QueueMessage.queue == queue,
                        QueueMessage.state == MessageState.QUEUED.value,
                        QueueMessage.run_after <= now,
                    )
                    .order_by(
                        col(QueueMessage.run_after).asc(),
                        col(QueueMessage.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                attempt = candidate.attempt + 1
                result = session.exec(
                    sa_update(QueueMessage)
                    .where(
                        col(QueueMessage.id) == candidate.id,
                        col(QueueMessage.state) == MessageState.QUEUED.value,
                        col(QueueMessage.attempt) == candidate.attempt,
                    )
                    .values(
                        state=MessageState.IN_FLIGHT.value,
                        attempt=attempt,
                        consumer_id=consumer_id,
                        lease_expires_at=now + timedelta(seconds=visibility_timeout_seconds),
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return Delivery(
                    queue=queue,
                    task_id=candidate.job_id,
                    tenant_id=candidate.tenant_id,
                    payload=load_json_dict(candidate.payload_json),
                    attempt=attempt,
                    max_attempts=candidate.max_attempts,
                    ack_handle=AckHandle(
                        message_id=candidate.id,
                        attempt=attempt,
                        consumer_id=consumer_id,
                    ),
                )

    def ack(self, delivery: Delivery) -> bool:
        """Acknowledge a delivery; a stale handle is a no-op."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueMessage)
                .where(
                    col(QueueMessage.id) == delivery.ack_handle.message_id,
                    col(QueueMessage.state) == MessageState.IN_FLIGHT.value,
                    col(QueueMessage.attempt) == delivery.ack_handle.attempt,
                )
                .values(
                    state=MessageState.ACKED.value,
                    lease_expires_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.info(
                    "Stale ack ignored for job %s (attempt %d)",
                    delivery.task_id,
                    delivery.attempt,
                )
                return False
            session.commit()
            return True

    def nack(self, delivery: Delivery, *, error: str) -> NackOutcome:
        """Reject a delivery: schedule redelivery with backoff or dead-letter it."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueMessage).where(QueueMessage.id == delivery.ack_handle.message_id),
            ).one_or_none()
            if (
                row is None
                or row.state != MessageState.IN_FLIGHT.value
                or row.attempt != delivery.ack_handle.attempt
            ):
                return NackOutcome.STALE
            exhausted = _exhausted(row, error=error)
            outcome = self._release(session=session, row=row, error=error, now=now)
            if outcome == NackOutcome.STALE:
                session.rollback()
                return outcome
            session.commit()
        if outcome == NackOutcome.DEAD_LETTERED:
            self._notify_dead_letter(exhausted=exhausted)
        return outcome

    def recover_expired_leases(self, *, queue: str | None = None) -> int:
        """Return in-flight messages whose lease expired to the queue (or dead-letter them)."""

        now = to_db_datetime(utc_now())
        recovered = 0
        exhausted: list[QueueDeliveryExhausted] = []
        with Session(self.engine) as session:
            statement = select(QueueMessage).where(
                QueueMessage.state == MessageState.IN_FLIGHT.value,
                col(QueueMessage.lease_expires_at) <= now,
            )
            if queue is not None:
                statement = statement.where(QueueMessage.queue == queue)
            rows = session.exec(statement).all()
            for row in rows:
                outcome = self._release(
                    session=session,
                    row=row,
                    error=LEASE_EXPIRED_ERROR,
                    now=now,
                )
                if outcome == NackOutcome.STALE:
                    continue
                recovered += 1
                logger.warning(
                    "Lease expired for job %s on %s (attempt %d/%d): %s",
                    row.job_id,
                    row.queue,
                    row.attempt,
                    row.max_attempts,
                    outcome.value,
                )
                if outcome == NackOutcome.DEAD_LETTERED:
                    exhausted.append(_exhausted(row, error=LEASE_EXPIRED_ERROR))
            session.commit()
        for item in exhausted:
            self._notify_dead_letter(exhausted=item)
        return recovered

    def consume(
        self,
        queue: str,
        *,
        consumer_id: str,
        visibility_timeout_seconds: float = DEFAULT_VISIBILITY_TIMEOUT_SECONDS,
    ) -> Iterator[Delivery]:
        """Yield claimed deliveries until the queue has nothing ready."""

        while True:
            delivery = self.claim(
                queue,
                consumer_id=consumer_id,
                visibility_timeout_seconds=visibility_timeout_seconds,
            )
            if delivery is None:
                return
            yield delivery

    def on_message(
        self,
        queue: str,
        handler: Callable[[Delivery], Any],
        *,
        consumer_id: str,
        visibility_timeout_seconds: float = DEFAULT_VISIBILITY_TIMEOUT_SECONDS,
    ) -> HandledMessage | None:
        """Process one message: ack when the handler returns, nack when it raises."""

        delivery = self.claim(
            queue,
            consumer_id=consumer_id,
            visibility_timeout_seconds=visibility_timeout_seconds,
        )
        if delivery is None:
            return None
        try:
            value = handler(delivery)
        except Exception as error:  # noqa: BLE001
            summary = f"{type(error).__name__}: {error}"
            outcome = self.nack(delivery, error=summary)
            logger.warning(
                "Handler failed for job %s on %s (attempt %d/%d): %s -> %s",
                delivery.task_id,
                queue,
                delivery.attempt,
                delivery.max_attempts,
                summary,
                outcome.value,
            )
            return HandledMessage(
                delivery=delivery,
                acked=False,
                nack_outcome=outcome,
                error=summary,
            )
        return HandledMessage(delivery=delivery, acked=self.ack(delivery), value=value)

    def queue_stats(self) -> list[QueueStats]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(
                    QueueMessage.queue,
                    QueueMessage.state,
                    func.count(),
                    func.min(QueueMessage.created_at),
                )
                .group_by(QueueMessage.queue, QueueMessage.state)
                .order_by(QueueMessage.queue, QueueMessage.state),
            ).all()
        return [
            QueueStats(
                queue=queue,
                state=MessageState(state),
                count=int(count),
                oldest_created_at=optional_utc(oldest),
            )
            for queue, state, count, oldest in rows
        ]

    def _find_live_message_id(self, *, queue: str, job_id: str) -> str | None:
        with Session(self.engine) as session:
            return session.exec(
                select(QueueMessage.id).where(
                    QueueMessage.queue == queue,
                    QueueMessage.job_id == job_id,
                    col(QueueMessage.state).in_(LIVE_MESSAGE_STATES),
                ),
            ).first()

    def _insert_message(
        self,
        *,
        queue: str,
        payload: dict[str, Any],
        options: EnqueueOptions,
    ) -> str:
        now = to_db_datetime(utc_now())
        message_id = str(uuid4())
        with Session(self.engine) as session:
            session.add(
                QueueMessage(
                    id=message_id,
                    queue=queue,
                    job_id=options.job_id,
                    tenant_id=options.tenant_id,
                    state=MessageState.QUEUED.value,
                    payload_json=dump_json(payload),
                    attempt=0,
                    max_attempts=max(1, options.max_attempts),
                    backoff_base_seconds=options.backoff.base_seconds,
                    backoff_max_seconds=options.backoff.max_seconds,
                    run_after=now,
                    created_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
        return message_id

    def _release(
        self,
        *,
        session: Session,
        row: QueueMessage,
        error: str,
        now: datetime,
    ) -> NackOutcome:
        exhausted = row.attempt >= row.max_attempts
        if exhausted:
            values: dict[str, Any] = {"state": MessageState.DEAD.value}
            outcome = NackOutcome.DEAD_LETTERED
        else:
            backoff = BackoffPolicy(
                base_seconds=row.backoff_base_seconds,
                max_seconds=row.backoff_max_seconds,
            )
            values = {
                "state": MessageState.QUEUED.value,
                "run_after": now + timedelta(seconds=backoff.delay_for(row.attempt)),
            }
            outcome = NackOutcome.RETRY_SCHEDULED
        result = session.exec(
            sa_update(QueueMessage)
            .where(
                col(QueueMessage.id) == row.id,
                col(QueueMessage.state) == MessageState.IN_FLIGHT.value,
                col(QueueMessage.attempt) == row.attempt,
            )
            .values(
                **values,
                lease_expires_at=None,
                consumer_id=None,
                last_error=error,
                updated_at=now,
            ),
        )
        if result.rowcount != 1:
            return NackOutcome.STALE
        return outcome

    def _notify_dead_letter(self, *, exhausted: QueueDeliveryExhausted) -> None:
        logger.error("Dead-lettered: %s", exhausted)
        for handler in self._dead_letter_handlers:
            handler(exhausted)


def _exhausted(row: QueueMessage, *, error: str) -> QueueDeliveryExhausted:
    return QueueDeliveryExhausted(
        queue=row.queue,
        job_id=row.job_id,
        tenant_id=row.tenant_id,
        attempts=row.attempt,
        last_error=error,
    )
