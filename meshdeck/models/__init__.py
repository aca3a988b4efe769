"""Models package — import all models so the metadata knows every table."""

from meshdeck.models.role import Role, Permission, RolePermission
from meshdeck.models.user import User, UserRole, RoleSource
from meshdeck.models.audit_log import AuditLog

__all__ = [
    "Role", "Permission", "RolePermission",
    "User", "UserRole", "RoleSource",
    "AuditLog",
]
