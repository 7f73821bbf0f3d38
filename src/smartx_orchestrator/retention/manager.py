"""Tenant-scoped retention sweep: soft-deletes content past its window."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, func, select

from smartx_orchestrator.jobs.models import JobStatus
from smartx_orchestrator.jobs.repository import JobStore
from smartx_orchestrator.retention.policies import EntityClass, RetentionPolicy
from smartx_orchestrator.storage.common import to_db_datetime, utc_now
from smartx_orchestrator.storage.sqlmodel_models import (
    CodeRepository,
    MasterJob,
    Meeting,
    TranscriptSegment,
)
from smartx_orchestrator.tenants.repository import TenantStore

logger = logging.getLogger(__name__)

_TERMINAL_STATUSES = (JobStatus.SUCCESS.value, JobStatus.FAILED.value)


@dataclass(slots=True)
class EntitySweep:
    """Outcome for one tenant and entity class."""

    tenant_id: str
    entity: EntityClass
    window_days: int
    cutoff: datetime
    candidates: int = 0
    deleted: int = 0
    failed: int = 0


@dataclass(slots=True)
class SkippedClass:
    tenant_id: str
    entity: EntityClass
    reason: str


@dataclass(slots=True)
class RetentionSweepResult:
    now: datetime
    dry_run: bool
    sweeps: list[EntitySweep] = field(default_factory=list)
    skipped: list[SkippedClass] = field(default_factory=list)

    @property
    def candidates(self) -> int:
        return sum(item.candidates for item in self.sweeps)

    @property
    def deleted(self) -> int:
        return sum(item.deleted for item in self.sweeps)

    @property
    def failed(self) -> int:
        return sum(item.failed for item in self.sweeps)


@dataclass(slots=True)
class RetentionStatistics:
    """Active vs soft-deleted counts for one tenant."""

    tenant_id: str
    policy: RetentionPolicy
    meetings_active: int = 0
    meetings_deleted: int = 0
    segments_active: int = 0
    segments_deleted: int = 0
    repositories_pinned: int = 0
    repositories_unpinned: int = 0
    repositories_deleted: int = 0
    jobs_by_status: dict[str, int] = field(default_factory=dict)
    jobs_deleted: int = 0


class RetentionManager:
    """Applies each tenant's retention windows to meetings, repositories and jobs."""

    def __init__(self, *, job_store: JobStore, tenants: TenantStore) -> None:
        self.job_store = job_store
        self.tenants = tenants
        self.engine = job_store.engine

    def sweep(self, *, now: datetime | None = None, dry_run: bool = False) -> RetentionSweepResult:
        now = now or utc_now()
        result = RetentionSweepResult(now=now, dry_run=dry_run)
        for tenant in self.tenants.list_tenants():
            for entity in EntityClass:
                days = tenant.retention.days_for(entity)
                if days is None:
                    logger.info("Tenant %s: unlimited %s retention", tenant.id, entity.value)
                    result.skipped.append(SkippedClass(tenant.id, entity, "unlimited"))
                    continue
                if days < 0:
                    logger.warning(
                        "Tenant %s: invalid %s retention window %d; skipping",
                        tenant.id,
                        entity.value,
                        days,
                    )
                    result.skipped.append(SkippedClass(tenant.id, entity, "invalid window"))
                    continue
                result.sweeps.append(
                    self._sweep_class(
                        tenant_id=tenant.id,
                        entity=entity,
                        days=days,
                        now=now,
                        dry_run=dry_run,
                    ),
                )
        logger.info(
            "Retention sweep%s finished: %d candidates, %d deleted, %d failed",
            " (dry run)" if dry_run else "",
            result.candidates,
            result.deleted,
            result.failed,
        )
        return result

    def statistics(self, tenant_id: str) -> RetentionStatistics:
        tenant = self.tenants.require_tenant(tenant_id)
        stats = RetentionStatistics(tenant_id=tenant_id, policy=tenant.retention)
        with Session(self.engine) as session:
            for deleted, count in session.exec(
                select(col(Meeting.deleted_at).is_not(None), func.count())
                .where(Meeting.tenant_id == tenant_id)
                .group_by(col(Meeting.deleted_at).is_not(None)),
            ).all():
                if deleted:
                    stats.meetings_deleted = int(count)
                else:
                    stats.meetings_active = int(count)
            for deleted, count in session.exec(
                select(col(TranscriptSegment.deleted_at).is_not(None), func.count())
                .where(TranscriptSegment.tenant_id == tenant_id)
                .group_by(col(TranscriptSegment.deleted_at).is_not(None)),
            ).all():
                if deleted:
                    stats.segments_deleted = int(count)
                else:
                    stats.segments_active = int(count)
            for pinned, deleted, count in session.exec(
                select(
                    CodeRepository.is_pinned,
                    col(CodeRepository.deleted_at).is_not(None),
                    func.count(),
                )
                .where(CodeRepository.tenant_id == tenant_id)
                .group_by(CodeRepository.is_pinned, col(CodeRepository.deleted_at).is_not(None)),
            ).all():
                if deleted:
                    stats.repositories_deleted += int(count)
                elif pinned:
                    stats.repositories_pinned += int(count)
                else:
                    stats.repositories_unpinned += int(count)
            for status, deleted, count in session.exec(
                select(MasterJob.status, col(MasterJob.deleted_at).is_not(None), func.count())
                .where(MasterJob.tenant_id == tenant_id)
                .group_by(MasterJob.status, col(MasterJob.deleted_at).is_not(None)),
            ).all():
                if deleted:
                    stats.jobs_deleted += int(count)
                else:
                    stats.jobs_by_status[status] = int(count)
        return stats

    def _sweep_class(
        self,
        *,
        tenant_id: str,
        entity: EntityClass,
        days: int,
        now: datetime,
        dry_run: bool,
    ) -> EntitySweep:
        cutoff = now - timedelta(days=days)
        item = EntitySweep(tenant_id=tenant_id, entity=entity, window_days=days, cutoff=cutoff)
        candidates = self._candidates(tenant_id=tenant_id, entity=entity, cutoff=cutoff)
        item.candidates = len(candidates)
        if dry_run:
            logger.info(
                "Tenant %s: %d %s older than %d days would be deleted",
                tenant_id,
                len(candidates),
                entity.value,
                days,
            )
            return item

        for entity_id in candidates:
            try:
                deleted = self._soft_delete(
                    tenant_id=tenant_id,
                    entity=entity,
                    entity_id=entity_id,
                    now=now,
                )
            except SQLAlchemyError:
                item.failed += 1
                logger.exception(
                    "Tenant %s: failed to soft delete %s %s",
                    tenant_id,
                    entity.value,
                    entity_id,
                )
                continue
            if deleted:
                item.deleted += 1
                logger.info("Tenant %s: soft deleted %s %s", tenant_id, entity.value, entity_id)
        return item

    def _candidates(self, *, tenant_id: str, entity: EntityClass, cutoff: datetime) -> list[str]:
        cutoff_db = to_db_datetime(cutoff)
        with Session(self.engine) as session:
            if entity == EntityClass.TRANSCRIPTS:
                statement = select(Meeting.id).where(
                    Meeting.tenant_id == tenant_id,
                    col(Meeting.deleted_at).is_(None),
                    col(Meeting.created_at) <= cutoff_db,
                )
            elif entity == EntityClass.REPOSITORIES:
                statement = select(CodeRepository.id).where(
                    CodeRepository.tenant_id == tenant_id,
                    col(CodeRepository.deleted_at).is_(None),
                    col(CodeRepository.is_pinned).is_(False),
                    col(CodeRepository.created_at) <= cutoff_db,
                )
            else:
                statement = select(MasterJob.id).where(
                    MasterJob.tenant_id == tenant_id,
                    col(MasterJob.deleted_at).is_(None),
                    col(MasterJob.status).in_(_TERMINAL_STATUSES),
                    col(MasterJob.updated_at) <= cutoff_db,
                )
            return list(session.exec(statement).all())

    def _soft_delete(
        self,
        *,
        tenant_id: str,
        entity: EntityClass,
        entity_id: str,
        now: datetime,
    ) -> bool:
        if entity == EntityClass.JOBS:
            return self.job_store.soft_delete_master_job(
                tenant_id=tenant_id,
                master_job_id=entity_id,
                terminal_only=True,
                deleted_at=now,
            )

        stamp = to_db_datetime(now)
        with Session(self.engine) as session:
            if entity == EntityClass.TRANSCRIPTS:
                result = session.exec(
                    sa_update(Meeting)
                    .where(
                        col(Meeting.id) == entity_id,
                        col(Meeting.tenant_id) == tenant_id,
                        col(Meeting.deleted_at).is_(None),
                    )
                    .values(deleted_at=stamp, updated_at=stamp),
                )
                if result.rowcount != 1:
                    session.rollback()
                    return False
                session.exec(
                    sa_update(TranscriptSegment)
                    .where(
                        col(TranscriptSegment.meeting_id) == entity_id,
                        col(TranscriptSegment.deleted_at).is_(None),
                    )
                    .values(deleted_at=stamp),
                )
            else:
                result = session.exec(
                    sa_update(CodeRepository)
                    .where(
                        col(CodeRepository.id) == entity_id,
                        col(CodeRepository.tenant_id) == tenant_id,
                        col(CodeRepository.deleted_at).is_(None),
                        col(CodeRepository.is_pinned).is_(False),
                    )
                    .values(deleted_at=stamp, updated_at=stamp),
                )
                if result.rowcount != 1:
                    session.rollback()
                    return False
            session.commit()
            return True
