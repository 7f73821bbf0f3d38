"""Tenant records, feature flags and tenant-owned content rows."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlmodel import Session, col, or_, select

from smartx_orchestrator.errors import RecordNotFound, TenantNotFound
from smartx_orchestrator.jobs.models import MasterJobType
from smartx_orchestrator.retention.policies import RetentionPolicy, RetentionTier, policy_for_tier
from smartx_orchestrator.storage.alembic_runner import upgrade_head
from smartx_orchestrator.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from smartx_orchestrator.storage.sqlmodel_models import (
    CodeRepository,
    Meeting,
    Tenant,
    TranscriptSegment,
)

logger = logging.getLogger(__name__)

# Values assumed for tenants created before feature gating existed.
FEATURE_DEFAULTS = {"has_meet": True, "has_doc": False, "has_code": False}

FEATURE_BY_JOB_TYPE = {
    MasterJobType.MEETING_PIPELINE.value: "has_meet",
    MasterJobType.DOCUMENT_PIPELINE.value: "has_doc",
    MasterJobType.CODE_PIPELINE.value: "has_code",
}


@dataclass(slots=True)
class TenantView:
    id: str
    name: str
    has_meet: bool
    has_doc: bool
    has_code: bool
    retention: RetentionPolicy
    created_at: datetime
    updated_at: datetime

    def feature_enabled(self, feature: str) -> bool:
        return bool(getattr(self, feature))


class TenantStore:
    """Tenant registry plus the meetings and repositories retention acts on."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        default_policy: RetentionPolicy | None = None,
    ) -> None:
        self.db_path = db_path
        self.default_policy = default_policy or RetentionPolicy()
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def upsert_tenant(  # noqa: PLR0913
        self,
        *,
        tenant_id: str,
        name: str,
        has_meet: bool = True,
        has_doc: bool = False,
        has_code: bool = False,
        policy: RetentionPolicy | None = None,
    ) -> TenantView:
        """Create or update a tenant.

        A new tenant without an explicit policy gets the configured default
        windows; an existing tenant keeps its windows unless `policy` is given.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Tenant, tenant_id)
            if row is None:
                effective = policy or self.default_policy
                row = Tenant(
                    id=tenant_id,
                    name=name,
                    created_at=now,
                    updated_at=now,
                )
                _apply_policy(row, effective)
            elif policy is not None:
                _apply_policy(row, policy)
            row.name = name
            row.has_meet = has_meet
            row.has_doc = has_doc
            row.has_code = has_code
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_tenant_view(row)

    def get_tenant(self, tenant_id: str) -> TenantView | None:
        with Session(self.engine) as session:
            row = session.get(Tenant, tenant_id)
            return _to_tenant_view(row) if row is not None else None

    def require_tenant(self, tenant_id: str) -> TenantView:
        tenant = self.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFound(tenant_id)
        return tenant

    def list_tenants(self) -> list[TenantView]:
        with Session(self.engine) as session:
            rows = session.exec(select(Tenant).order_by(col(Tenant.id).asc())).all()
            return [_to_tenant_view(row) for row in rows]

    def set_retention_policy(self, *, tenant_id: str, policy: RetentionPolicy) -> TenantView:
        with Session(self.engine) as session:
            row = session.get(Tenant, tenant_id)
            if row is None:
                raise TenantNotFound(tenant_id)
            _apply_policy(row, policy)
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_tenant_view(row)

    def apply_retention_tier(self, *, tenant_id: str, tier: RetentionTier | str) -> TenantView:
        policy = policy_for_tier(tier)
        view = self.set_retention_policy(tenant_id=tenant_id, policy=policy)
        logger.info("Applied %s retention tier to tenant %s", RetentionTier(tier).value, tenant_id)
        return view

    def backfill_feature_flags(self) -> list[str]:
        """Fill NULL feature flags with their defaults; returns updated tenant ids."""

        updated: list[str] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(Tenant).where(
                    or_(
                        col(Tenant.has_meet).is_(None),
                        col(Tenant.has_doc).is_(None),
                        col(Tenant.has_code).is_(None),
                    ),
                ),
            ).all()
            now = to_db_datetime(utc_now())
            for row in rows:
                for feature, default in FEATURE_DEFAULTS.items():
                    if getattr(row, feature) is None:
                        setattr(row, feature, default)
                row.updated_at = now
                session.add(row)
                updated.append(row.id)
                logger.info("Backfilled feature flags for tenant %s (%s)", row.id, row.name)
            session.commit()
        return updated

    def add_meeting(
        self,
        *,
        tenant_id: str,
        title: str = "",
        project_id: str | None = None,
        meeting_id: str | None = None,
        created_at: datetime | None = None,
    ) -> str:
        now = to_db_datetime(created_at or utc_now())
        meeting_key = meeting_id or str(uuid4())
        meeting = Meeting(
            id=meeting_key,
            tenant_id=tenant_id,
            project_id=project_id,
            title=title,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            if session.get(Tenant, tenant_id) is None:
                raise TenantNotFound(tenant_id)
            session.add(meeting)
            session.commit()
        return meeting_key

    def add_transcript_segment(  # noqa: PLR0913
        self,
        *,
        tenant_id: str,
        meeting_id: str,
        text: str,
        speaker: str | None = None,
        start_seconds: float = 0.0,
        end_seconds: float = 0.0,
    ) -> int:
        with Session(self.engine) as session:
            meeting = session.get(Meeting, meeting_id)
            if meeting is None or meeting.tenant_id != tenant_id:
                raise RecordNotFound("meeting", meeting_id)
            segment = TranscriptSegment(
                meeting_id=meeting_id,
                tenant_id=tenant_id,
                speaker=speaker,
                text=text,
                start_seconds=start_seconds,
                end_seconds=end_seconds,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(segment)
            session.commit()
            session.refresh(segment)
            if segment.id is None:
                raise RuntimeError("Transcript segment id was not assigned.")
            return segment.id

    def add_repository(  # noqa: PLR0913
        self,
        *,
        tenant_id: str,
        project_id: str | None = None,
        stack: str | None = None,
        is_pinned: bool = False,
        repository_id: str | None = None,
        created_at: datetime | None = None,
    ) -> str:
        now = to_db_datetime(created_at or utc_now())
        repository_key = repository_id or str(uuid4())
        repository = CodeRepository(
            id=repository_key,
            tenant_id=tenant_id,
            project_id=project_id,
            stack=stack,
            is_pinned=is_pinned,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            if session.get(Tenant, tenant_id) is None:
                raise TenantNotFound(tenant_id)
            session.add(repository)
            session.commit()
        return repository_key

    def set_repository_pinned(self, *, tenant_id: str, repository_id: str, pinned: bool) -> None:
        with Session(self.engine) as session:
            row = _tenant_repository(session, tenant_id=tenant_id, repository_id=repository_id)
            row.is_pinned = pinned
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()

    def touch_repository(
        self,
        *,
        tenant_id: str,
        repository_id: str,
        accessed_at: datetime | None = None,
    ) -> datetime:
        """Record an access; returned timestamp is UTC-aware."""

        when = to_db_datetime(accessed_at or utc_now())
        with Session(self.engine) as session:
            row = _tenant_repository(session, tenant_id=tenant_id, repository_id=repository_id)
            row.last_accessed_at = when
            session.add(row)
            session.commit()
        return to_utc_aware_datetime(when)

    def repository_last_accessed(self, *, tenant_id: str, repository_id: str) -> datetime | None:
        with Session(self.engine) as session:
            row = _tenant_repository(session, tenant_id=tenant_id, repository_id=repository_id)
            return optional_utc(row.last_accessed_at)


def _tenant_repository(session: Session, *, tenant_id: str, repository_id: str) -> CodeRepository:
    row = session.get(CodeRepository, repository_id)
    if row is None or row.tenant_id != tenant_id:
        raise RecordNotFound("repository", repository_id)
    return row


def _apply_policy(row: Tenant, policy: RetentionPolicy) -> None:
    row.transcript_retention_days = policy.transcript_days
    row.repository_retention_days = policy.repository_days
    row.job_retention_days = policy.job_days


def _to_tenant_view(row: Tenant) -> TenantView:
    return TenantView(
        id=row.id,
        name=row.name,
        has_meet=FEATURE_DEFAULTS["has_meet"] if row.has_meet is None else row.has_meet,
        has_doc=FEATURE_DEFAULTS["has_doc"] if row.has_doc is None else row.has_doc,
        has_code=FEATURE_DEFAULTS["has_code"] if row.has_code is None else row.has_code,
        retention=RetentionPolicy(
            transcript_days=row.transcript_retention_days,
            repository_days=row.repository_retention_days,
            job_days=row.job_retention_days,
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
