"""Seed the role/permission catalog into the database."""

import logging

from sqlalchemy.orm import Session

from meshdeck.core.rbac import (
    ALL_ROLES, ROLE_DESCRIPTIONS, ROLE_HIERARCHY, ROLE_PERMISSIONS, PermissionName,
)
from meshdeck.models.role import Role, Permission, RolePermission

logger = logging.getLogger("meshdeck")


def seed_roles(db: Session) -> None:
    """Upsert the system roles. Descriptions and levels follow the catalog."""
    for role_name in ALL_ROLES:
        existing = db.query(Role).filter(Role.name == role_name.value).first()
        if existing:
            existing.description = ROLE_DESCRIPTIONS[role_name]
            existing.level = ROLE_HIERARCHY[role_name]
            existing.is_system = True
        else:
            db.add(Role(
                name=role_name.value,
                description=ROLE_DESCRIPTIONS[role_name],
                level=ROLE_HIERARCHY[role_name],
                is_system=True,
            ))
    db.commit()
    logger.info("Seeded %d roles", len(ALL_ROLES))


def seed_permissions(db: Session) -> None:
    """Insert permissions that don't already exist."""
    for permission in PermissionName:
        existing = db.query(Permission).filter(Permission.name == permission.value).first()
        if not existing:
            db.add(Permission(
                name=permission.value,
                resource=permission.resource,
                action=permission.action,
            ))
    db.commit()
    logger.info("Seeded %d permissions", len(PermissionName))


def seed_role_permissions(db: Session) -> None:
    """Insert missing role → permission pairs."""
    roles = {r.name: r for r in db.query(Role).all()}
    permissions = {p.name: p for p in db.query(Permission).all()}
    existing = {(rp.role_id, rp.permission_id) for rp in db.query(RolePermission).all()}

    created = 0
    for role_name, granted in ROLE_PERMISSIONS.items():
        role = roles[role_name.value]
        for permission_name in sorted(granted, key=lambda p: p.value):
            permission = permissions[permission_name.value]
            if (role.id, permission.id) in existing:
                continue
            db.add(RolePermission(role_id=role.id, permission_id=permission.id))
            existing.add((role.id, permission.id))
            created += 1
    db.commit()
    logger.info("Seeded %d role-permission mappings", created)


def seed_rbac(db: Session) -> None:
    seed_roles(db)
    seed_permissions(db)
    seed_role_permissions(db)
