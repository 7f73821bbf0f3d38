"""Error taxonomy shared by dispatcher, queue, workers and retention."""

from __future__ import annotations


class SmartxError(Exception):
    """Base class for orchestrator errors."""


class UnknownPipelineType(SmartxError):  # noqa: N818
    """No pipeline definition is registered for the requested type."""

    def __init__(self, job_type: str) -> None:
        super().__init__(f"Unknown pipeline type: {job_type}")
        self.job_type = job_type


class InvalidPipelinePayload(SmartxError):  # noqa: N818
    """Pipeline payload is missing required fields."""


class TenantNotFound(SmartxError):  # noqa: N818
    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Tenant not found: {tenant_id}")
        self.tenant_id = tenant_id


class FeatureNotEnabled(SmartxError):  # noqa: N818
    """Tenant has the feature flag for this pipeline switched off."""

    def __init__(self, tenant_id: str, feature: str) -> None:
        super().__init__(f"Feature {feature!r} is not enabled for tenant {tenant_id}")
        self.tenant_id = tenant_id
        self.feature = feature


class PermissionDenied(SmartxError):  # noqa: N818
    def __init__(self, role: str, capability: str) -> None:
        super().__init__(f"Role {role!r} lacks capability {capability!r}")
        self.role = role
        self.capability = capability


class JobNotFound(SmartxError):  # noqa: N818
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransition(SmartxError):  # noqa: N818
    """Requested state change is not allowed from the current status."""


class DependencyResolutionError(SmartxError):
    """Symbolic input reference could not be resolved from an upstream result."""

    def __init__(self, task_id: str, reference: str, reason: str) -> None:
        super().__init__(f"Cannot resolve {reference} for task {task_id}: {reason}")
        self.task_id = task_id
        self.reference = reference
        self.reason = reason


class WorkerExecutionError(SmartxError):
    """Worker transform failed; `retryable` decides redelivery vs terminal failure."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool,
        reason_code: str = "worker_error",
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.reason_code = reason_code
        self.details = details or {}


class MalformedGenerationResponse(SmartxError):  # noqa: N818
    """Completion output could not be parsed into the expected shape."""


class QueueBrokerError(SmartxError):
    """Broker storage failure; the caller may retry later."""


class QueueDeliveryExhausted(SmartxError):  # noqa: N818
    """A message ran out of delivery attempts and was dead-lettered."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: str,
        job_id: str,
        tenant_id: str,
        attempts: int,
        last_error: str | None,
    ) -> None:
        super().__init__(
            f"Delivery exhausted for job {job_id} on {queue} after {attempts} attempts",
        )
        self.queue = queue
        self.job_id = job_id
        self.tenant_id = tenant_id
        self.attempts = attempts
        self.last_error = last_error


class BlobNotFoundError(SmartxError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Blob not found: {key}")
        self.key = key


class BlobAlreadyExistsError(SmartxError):
    """Blob keys are write-once."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Blob already exists: {key}")
        self.key = key


class CompletionError(SmartxError):
    """Completion service call failed."""

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class CompletionTransientError(CompletionError):
    """Network, timeout or rate-limit failure worth retrying."""


class CompletionRejectedError(CompletionError):
    """Provider rejected the request (auth, quota, unknown model)."""


class RecordNotFound(SmartxError):  # noqa: N818
    """Tenant-owned content row (meeting, repository) is missing."""

    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} not found: {record_id}")
        self.kind = kind
        self.record_id = record_id
