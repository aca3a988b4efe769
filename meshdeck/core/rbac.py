"""Role/permission catalog and hierarchy checks.

The catalog is static, read-mostly data: five system roles ordered by a
numeric level, resource:action permissions, and the role → permission
table seeded into the record store. Role names are a closed enum; strings
are converted with ``parse_role`` at the boundary and an unknown name is a
configuration error.
"""

import enum
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional


class RoleName(str, enum.Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    OPERATOR = "OPERATOR"
    AUDITOR = "AUDITOR"
    USER = "USER"


class PermissionName(str, enum.Enum):
    NODES_READ = "nodes:read"
    NODES_WRITE = "nodes:write"
    NODES_DELETE = "nodes:delete"
    ROUTES_READ = "routes:read"
    ROUTES_WRITE = "routes:write"
    ACL_READ = "acl:read"
    ACL_WRITE = "acl:write"
    USERS_READ = "users:read"
    USERS_WRITE = "users:write"
    USERS_DELETE = "users:delete"
    KEYS_READ = "keys:read"
    KEYS_WRITE = "keys:write"
    KEYS_DELETE = "keys:delete"
    AUDIT_READ = "audit:read"
    SETTINGS_READ = "settings:read"
    SETTINGS_WRITE = "settings:write"
    ROLES_READ = "roles:read"
    ROLES_WRITE = "roles:write"

    @property
    def resource(self) -> str:
        return self.value.split(":", 1)[0]

    @property
    def action(self) -> str:
        return self.value.split(":", 1)[1]


# Higher = more privileged
ROLE_HIERARCHY: Dict[RoleName, int] = {
    RoleName.OWNER: 100,
    RoleName.ADMIN: 80,
    RoleName.OPERATOR: 60,
    RoleName.AUDITOR: 40,
    RoleName.USER: 20,
}

ROLE_DESCRIPTIONS: Dict[RoleName, str] = {
    RoleName.OWNER: "Full access to everything including role management",
    RoleName.ADMIN: "Manage configuration, users, ACLs, DNS - cannot assign OWNER role",
    RoleName.OPERATOR: "Manage machines, routes, health checks - cannot change ACLs/DNS",
    RoleName.AUDITOR: "Read-only access to all screens including audit log",
    RoleName.USER: "User portal only - manage own devices and keys",
}

P = PermissionName

ROLE_PERMISSIONS: Dict[RoleName, FrozenSet[PermissionName]] = {
    RoleName.OWNER: frozenset(PermissionName),
    RoleName.ADMIN: frozenset(PermissionName) - {P.ROLES_WRITE},
    RoleName.OPERATOR: frozenset({
        P.NODES_READ, P.NODES_WRITE, P.ROUTES_READ, P.ROUTES_WRITE,
        P.USERS_READ, P.KEYS_READ, P.KEYS_WRITE, P.KEYS_DELETE,
        P.AUDIT_READ, P.SETTINGS_READ,
    }),
    RoleName.AUDITOR: frozenset({
        P.NODES_READ, P.ROUTES_READ, P.ACL_READ, P.USERS_READ,
        P.KEYS_READ, P.AUDIT_READ, P.SETTINGS_READ, P.ROLES_READ,
    }),
    RoleName.USER: frozenset({P.NODES_READ, P.KEYS_READ, P.KEYS_WRITE}),
}


def sort_roles(roles: Iterable[RoleName]) -> List[RoleName]:
    """Deduplicate and order roles highest level first."""
    return sorted(set(roles), key=lambda r: ROLE_HIERARCHY[r], reverse=True)


ALL_ROLES: List[RoleName] = sort_roles(RoleName)
TOP_ROLE: RoleName = ALL_ROLES[0]
LOWEST_ROLE: RoleName = ALL_ROLES[-1]


def parse_role(name: str) -> RoleName:
    """Convert a role string into a RoleName.

    Raises:
        ValueError: If the name is not in the catalog.
    """
    try:
        return RoleName(name)
    except ValueError:
        raise ValueError(f"Unknown role '{name}'. Valid roles: {', '.join(r.value for r in ALL_ROLES)}")


def has_role(user_roles: Iterable[RoleName], role: RoleName) -> bool:
    """Exact membership check."""
    return role in set(user_roles)


def meets_minimum_role(user_roles: Iterable[RoleName], minimum_role: RoleName) -> bool:
    """True if any held role sits at or above ``minimum_role`` in the hierarchy."""
    minimum_level = ROLE_HIERARCHY[minimum_role]
    return any(ROLE_HIERARCHY[r] >= minimum_level for r in user_roles)


def has_any_role(user_roles: Iterable[RoleName], allowed: Iterable[RoleName]) -> bool:
    held = set(user_roles)
    return any(r in held for r in allowed)


def roles_at_or_above(role: RoleName) -> List[RoleName]:
    """All roles whose level is >= the given role's level, highest first."""
    level = ROLE_HIERARCHY[role]
    return [r for r in ALL_ROLES if ROLE_HIERARCHY[r] >= level]


def highest_role(user_roles: Iterable[RoleName]) -> Optional[RoleName]:
    ordered = sort_roles(user_roles)
    return ordered[0] if ordered else None


def role_has_permission(role: RoleName, permission: PermissionName) -> bool:
    return permission in ROLE_PERMISSIONS[role]


def roles_have_permission(user_roles: Iterable[RoleName], permission: PermissionName) -> bool:
    return any(role_has_permission(r, permission) for r in user_roles)


def get_assignable_roles(assigner: RoleName) -> List[RoleName]:
    """OWNER can assign every role, ADMIN every role but OWNER, others none."""
    if assigner == RoleName.OWNER:
        return list(ALL_ROLES)
    if assigner == RoleName.ADMIN:
        return [r for r in ALL_ROLES if r != RoleName.OWNER]
    return []


def can_assign_role(assigner_roles: Iterable[RoleName], target: RoleName) -> bool:
    top = highest_role(assigner_roles)
    if top is None:
        return False
    return target in get_assignable_roles(top)


def validate_catalog(
    group_role_map: Mapping[str, str],
    hierarchy: Optional[Mapping[RoleName, int]] = None,
    role_permissions: Optional[Mapping[RoleName, Iterable[PermissionName]]] = None,
) -> Dict[str, RoleName]:
    """Check the catalog and the group table once at startup.

    Returns the group table with its values converted to RoleName.

    Raises:
        ValueError: On unknown role names, duplicated levels, roles missing
            from the hierarchy, or unknown permissions.
    """
    hierarchy = ROLE_HIERARCHY if hierarchy is None else hierarchy
    role_permissions = ROLE_PERMISSIONS if role_permissions is None else role_permissions

    missing = [r.value for r in RoleName if r not in hierarchy]
    if missing:
        raise ValueError(f"Roles without a hierarchy level: {', '.join(missing)}")

    levels = list(hierarchy.values())
    if len(set(levels)) != len(levels):
        raise ValueError("Role hierarchy levels must be distinct")

    for role, permissions in role_permissions.items():
        for permission in permissions:
            PermissionName(permission)

    return {group: parse_role(role) for group, role in group_role_map.items()}
