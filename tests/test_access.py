from __future__ import annotations

import allure
import pytest

from smartx_orchestrator.access import Capability, Role, has_capability, require_capability
from smartx_orchestrator.errors import PermissionDenied

pytestmark = [
    allure.epic("Access Control"),
    allure.feature("Role Capabilities"),
]


@pytest.mark.parametrize(
    ("role", "capability", "allowed"),
    [
        (Role.ADMIN, Capability.ADMIN_RETENTION, True),
        (Role.USER, Capability.UPDATE_JOBS, True),
        (Role.USER, Capability.ADMIN_RETENTION, False),
        (Role.GUEST, Capability.READ_JOBS, True),
        (Role.GUEST, Capability.CREATE_JOBS, False),
        ("user", "create:jobs", True),
        ("owner", "read:jobs", False),
        ("admin", "delete:everything", False),
    ],
)
def test_role_capabilities(role: Role | str, capability: Capability | str, allowed: bool) -> None:
    assert has_capability(role, capability) is allowed


def test_require_capability() -> None:
    require_capability(None, Capability.ADMIN_RETENTION)
    require_capability("admin", Capability.UPDATE_JOBS)

    with pytest.raises(PermissionDenied, match="'guest' lacks capability 'update:jobs'"):
        require_capability(Role.GUEST, Capability.UPDATE_JOBS)
