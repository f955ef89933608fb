from __future__ import annotations

from typing import Iterable, List, Set

from authbase.storage.models import Principal

ROLE_AUTHORITY_PREFIX = "ROLE_"


def role_authority(role_name: str) -> str:
    """Map a role name to the authority tag used in request authorization."""
    return f"{ROLE_AUTHORITY_PREFIX}{role_name}"


class PermissionResolver:
    """Set arithmetic over a principal's already-loaded role graph.

    No I/O; callers making security-sensitive decisions should pass a
    principal freshly read from the credential store, not one rebuilt from
    access-token claims.
    """

    def resolve(self, principal: Principal) -> Set[str]:
        permissions: Set[str] = set()
        for role in principal.roles:
            permissions |= role.permission_names
        return permissions

    def role_names(self, principal: Principal) -> List[str]:
        return sorted({role.name for role in principal.roles})

    def authorities(self, principal: Principal) -> Set[str]:
        return {role_authority(role.name) for role in principal.roles} | self.resolve(principal)

    def has_role(self, principal: Principal, role_name: str) -> bool:
        return any(role.name == role_name for role in principal.roles)

    def has_any_role(self, principal: Principal, role_names: Iterable[str]) -> bool:
        held = {role.name for role in principal.roles}
        return any(name in held for name in role_names)

    def has_permission(self, principal: Principal, permission_name: str) -> bool:
        return permission_name in self.resolve(principal)

    def has_any(self, principal: Principal, permission_names: Iterable[str]) -> bool:
        granted = self.resolve(principal)
        return any(name in granted for name in permission_names)

    def has_all(self, principal: Principal, permission_names: Iterable[str]) -> bool:
        granted = self.resolve(principal)
        return all(name in granted for name in permission_names)
