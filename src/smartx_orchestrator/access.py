"""Role to capability mapping for administrative job operations."""

from __future__ import annotations

from enum import Enum

from smartx_orchestrator.errors import PermissionDenied


class Capability(str, Enum):
    READ_MEETINGS = "read:meetings"
    READ_DOCUMENTS = "read:documents"
    READ_REPOSITORIES = "read:repositories"
    READ_JOBS = "read:jobs"
    CREATE_JOBS = "create:jobs"
    UPDATE_JOBS = "update:jobs"
    ADMIN_RETENTION = "admin:retention"


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"
    GUEST = "guest"


ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.ADMIN: frozenset(Capability),
    Role.USER: frozenset(
        {
            Capability.READ_MEETINGS,
            Capability.READ_DOCUMENTS,
            Capability.READ_REPOSITORIES,
            Capability.READ_JOBS,
            Capability.CREATE_JOBS,
            Capability.UPDATE_JOBS,
        },
    ),
    Role.GUEST: frozenset(
        {
            Capability.READ_MEETINGS,
            Capability.READ_DOCUMENTS,
            Capability.READ_REPOSITORIES,
            Capability.READ_JOBS,
        },
    ),
}


def has_capability(role: Role | str, capability: Capability | str) -> bool:
    """Unknown roles or capabilities have no access."""

    try:
        resolved_role = Role(role)
        resolved_capability = Capability(capability)
    except ValueError:
        return False
    return resolved_capability in ROLE_CAPABILITIES[resolved_role]


def require_capability(role: Role | str | None, capability: Capability) -> None:
    """`None` is a trusted internal caller."""

    if role is None:
        return
    if not has_capability(role, capability):
        raise PermissionDenied(str(getattr(role, "value", role)), capability.value)
