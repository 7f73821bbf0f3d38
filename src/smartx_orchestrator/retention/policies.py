"""Per-tenant retention windows and the built-in tiers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from smartx_orchestrator.storage.sqlmodel_models import (
    DEFAULT_JOB_RETENTION_DAYS,
    DEFAULT_REPOSITORY_RETENTION_DAYS,
    DEFAULT_TRANSCRIPT_RETENTION_DAYS,
)


class RetentionTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class EntityClass(str, Enum):
    """Data classes with independent retention windows."""

    TRANSCRIPTS = "transcripts"
    REPOSITORIES = "repositories"
    JOBS = "jobs"


@dataclass(frozen=True, slots=True)
class RetentionPolicy:
    """Retention windows in days; `None` means keep forever."""

    transcript_days: int | None = DEFAULT_TRANSCRIPT_RETENTION_DAYS
    repository_days: int | None = DEFAULT_REPOSITORY_RETENTION_DAYS
    job_days: int | None = DEFAULT_JOB_RETENTION_DAYS

    def days_for(self, entity: EntityClass) -> int | None:
        if entity == EntityClass.TRANSCRIPTS:
            return self.transcript_days
        if entity == EntityClass.REPOSITORIES:
            return self.repository_days
        return self.job_days


TIER_POLICIES: dict[RetentionTier, RetentionPolicy] = {
    RetentionTier.FREE: RetentionPolicy(
        transcript_days=90,
        repository_days=180,
        job_days=30,
    ),
    RetentionTier.PRO: RetentionPolicy(
        transcript_days=365,
        repository_days=365,
        job_days=90,
    ),
    RetentionTier.ENTERPRISE: RetentionPolicy(
        transcript_days=None,
        repository_days=None,
        job_days=365,
    ),
}


def policy_for_tier(tier: RetentionTier | str) -> RetentionPolicy:
    try:
        key = RetentionTier(tier)
    except ValueError as error:
        allowed = ", ".join(item.value for item in RetentionTier)
        raise ValueError(f"Unknown retention tier {tier!r}; expected one of: {allowed}") from error
    return TIER_POLICIES[key]
